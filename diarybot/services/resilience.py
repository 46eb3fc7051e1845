"""
Resilience layer: error taxonomy, bounded retry and per-resource circuit breakers.

Every call to an outside dependency (database, LLM, LINE) goes through
`ResilienceLayer.execute_with_protection`, which runs a retry loop inside
the named circuit breaker. The breaker sees one outcome per retry loop,
never the individual attempts.

The layer is plain state: construct one per process and pass it to the
services that need it. Clock and sleep are injectable so tests can drive
time without waiting.

Public API
----------
ResilienceLayer.classify(error, context)                              -> ResilienceError
ResilienceLayer.execute_with_retry(operation, context, config)        -> result
ResilienceLayer.execute_with_circuit_breaker(operation, key, context) -> result
ResilienceLayer.execute_with_protection(operation, key, context, cfg) -> result
ResilienceLayer.circuit_status(key) / all_circuit_status() / reset_circuit(key)
user_message_for(error)                                                -> str
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from diarybot.core import messages
from diarybot.core.errors import DiaryInputError, LLMError, MessagingError, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CIRCUIT_DATABASE = "database"
CIRCUIT_LLM = "llm"
CIRCUIT_MESSAGING = "messaging"
DEFAULT_CIRCUITS = (CIRCUIT_DATABASE, CIRCUIT_LLM, CIRCUIT_MESSAGING)

_TRANSIENT_DB_MARKERS = ("timeout", "timed out", "connection", "network")


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------

class ErrorCategory(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.TEMPORARY: messages.SERVICE_TEMPORARY_ISSUE,
    ErrorCategory.RATE_LIMIT: messages.SERVICE_TEMPORARY_ISSUE,
    ErrorCategory.NETWORK: messages.SERVICE_TEMPORARY_ISSUE,
    ErrorCategory.PERMANENT: messages.ANALYSIS_ERROR,
    ErrorCategory.VALIDATION: messages.INVALID_INPUT,
    ErrorCategory.UNKNOWN: messages.ANALYSIS_ERROR,
}


class ResilienceError(Exception):
    """An error that has been through classification."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory,
        is_retryable: bool,
        context: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        user_message: Optional[str] = None,
    ):
        self.message = message
        self.category = category
        self.is_retryable = is_retryable
        self.context = context
        self.status_code = status_code
        self.retry_after = retry_after
        self.user_message = user_message or _USER_MESSAGES[category]
        super().__init__(message)

    def log_data(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "category": self.category.value,
            "retryable": self.is_retryable,
            "context": self.context,
        }
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        if self.__cause__ is not None:
            data["cause"] = type(self.__cause__).__name__
        return data


class CircuitOpenError(ResilienceError):
    """Raised without invoking the operation while a circuit is open."""

    def __init__(self, circuit_key: str, context: str = ""):
        self.circuit_key = circuit_key
        super().__init__(
            f"Circuit '{circuit_key}' is open",
            category=ErrorCategory.TEMPORARY,
            is_retryable=False,
            context=context,
        )


def _categorize(error: BaseException) -> tuple[ErrorCategory, bool, Optional[int], Optional[float]]:
    """Map a raw error to (category, retryable, status_code, retry_after)."""
    if isinstance(error, LLMError):
        code = error.status_code
        if code == 429:
            return ErrorCategory.RATE_LIMIT, True, code, error.retry_after
        if code is not None and code >= 500:
            return ErrorCategory.TEMPORARY, True, code, None
        if code is not None and 400 <= code < 500:
            return ErrorCategory.PERMANENT, False, code, None
        return ErrorCategory.NETWORK, True, code, None

    if isinstance(error, MessagingError):
        code = error.status_code
        if code == 429:
            return ErrorCategory.RATE_LIMIT, True, code, None
        if code is not None and code >= 500:
            return ErrorCategory.TEMPORARY, True, code, None
        return ErrorCategory.PERMANENT, False, code, None

    if isinstance(error, StoreError):
        text = str(error).lower()
        if any(marker in text for marker in _TRANSIENT_DB_MARKERS):
            return ErrorCategory.TEMPORARY, True, None, None
        return ErrorCategory.PERMANENT, False, None, None

    if isinstance(error, (DiaryInputError, ValueError)):
        return ErrorCategory.VALIDATION, False, None, None

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException,
                          httpx.TransportError, ConnectionError)):
        return ErrorCategory.NETWORK, True, None, None

    return ErrorCategory.UNKNOWN, False, None, None


def user_message_for(error: BaseException) -> str:
    """Canned user-facing text for any error; never the raw message."""
    if isinstance(error, ResilienceError):
        return error.user_message
    category, _, _, _ = _categorize(error)
    return _USER_MESSAGES[category]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class RetryConfig:
    """
    Delay before retry n (0-based) is min(base_delay * multiplier**n, max_delay)
    seconds. Rate-limited errors wait at least their retry_after.
    """
    max_retries: int = 1
    base_delay: float = 0.5
    max_delay: float = 2.0
    backoff_multiplier: float = 2.0
    retry_condition: Optional[Callable[[ResilienceError], bool]] = None

    def delay_for(self, attempt: int, error: ResilienceError) -> float:
        delay = min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if error.category is ErrorCategory.RATE_LIMIT and error.retry_after:
            delay = max(delay, error.retry_after)
        return delay


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    next_attempt_time: Optional[float] = None
    probe_in_flight: bool = False


# ---------------------------------------------------------------------------
# Layer
# ---------------------------------------------------------------------------

class ResilienceLayer:
    def __init__(
        self,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        default_retry: Optional[RetryConfig] = None,
        retry_policies: Optional[dict[str, RetryConfig]] = None,
        *,
        circuit_keys: tuple[str, ...] = DEFAULT_CIRCUITS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self.default_retry = default_retry or RetryConfig()
        self.retry_policies = dict(retry_policies or {})
        self._clock = clock
        self._sleep = sleep
        self._circuits: dict[str, CircuitBreakerState] = {
            key: CircuitBreakerState() for key in circuit_keys
        }

    # -- classification -----------------------------------------------------

    def classify(self, error: BaseException, context: str = "") -> ResilienceError:
        if isinstance(error, ResilienceError):
            return error
        category, retryable, status_code, retry_after = _categorize(error)
        classified = ResilienceError(
            str(error) or type(error).__name__,
            category=category,
            is_retryable=retryable,
            context=context,
            status_code=status_code,
            retry_after=retry_after,
        )
        classified.__cause__ = error
        return classified

    # -- retry --------------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str,
        retry_config: Optional[RetryConfig] = None,
    ) -> T:
        config = retry_config or self.default_retry
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                classified = self.classify(exc, context)
                exhausted = attempt >= config.max_retries
                rejected = (
                    config.retry_condition is not None
                    and not config.retry_condition(classified)
                )
                if not classified.is_retryable or exhausted or rejected:
                    self._log_failure(classified, context, attempt, terminal=True)
                    if classified is exc:
                        raise
                    raise classified from exc

                delay = config.delay_for(attempt, classified)
                self._log_failure(classified, context, attempt, terminal=False, delay=delay)
                await self._sleep(delay)
                attempt += 1

    # -- circuit breaker ----------------------------------------------------

    async def execute_with_circuit_breaker(
        self,
        operation: Callable[[], Awaitable[T]],
        circuit_key: str,
        context: str,
    ) -> T:
        if not self._allow(circuit_key):
            logger.warning(
                f"Circuit '{circuit_key}' open, rejecting {context}",
                extra={"circuit": circuit_key, "context": context},
            )
            raise CircuitOpenError(circuit_key, context)

        try:
            result = await operation()
        except asyncio.CancelledError:
            self._circuit(circuit_key).probe_in_flight = False
            raise
        except Exception as exc:
            self._record_failure(circuit_key)
            classified = self.classify(exc, context)
            if classified is exc:
                raise
            raise classified from exc

        self._record_success(circuit_key)
        return result

    async def execute_with_protection(
        self,
        operation: Callable[[], Awaitable[T]],
        circuit_key: str,
        context: str,
        retry_config: Optional[RetryConfig] = None,
    ) -> T:
        config = retry_config or self.retry_policies.get(circuit_key, self.default_retry)
        return await self.execute_with_circuit_breaker(
            lambda: self.execute_with_retry(operation, context, config),
            circuit_key,
            context,
        )

    # -- breaker state ------------------------------------------------------

    def _circuit(self, key: str) -> CircuitBreakerState:
        state = self._circuits.get(key)
        if state is None:
            state = CircuitBreakerState()
            self._circuits[key] = state
        return state

    def _allow(self, key: str) -> bool:
        circuit = self._circuit(key)
        if circuit.state is CircuitState.CLOSED:
            return True

        if circuit.state is CircuitState.OPEN:
            if circuit.next_attempt_time is not None and self._clock() < circuit.next_attempt_time:
                return False
            circuit.state = CircuitState.HALF_OPEN
            circuit.probe_in_flight = False
            logger.info(f"Circuit '{key}' half-open, letting one probe through")

        # HALF_OPEN: one probe at a time.
        if circuit.probe_in_flight:
            return False
        circuit.probe_in_flight = True
        return True

    def _record_success(self, key: str) -> None:
        circuit = self._circuit(key)
        if circuit.state is not CircuitState.CLOSED:
            logger.info(f"Circuit '{key}' closed after successful call")
        circuit.state = CircuitState.CLOSED
        circuit.failure_count = 0
        circuit.next_attempt_time = None
        circuit.probe_in_flight = False

    def _record_failure(self, key: str) -> None:
        circuit = self._circuit(key)
        now = self._clock()
        circuit.failure_count += 1
        circuit.last_failure_time = now
        circuit.probe_in_flight = False

        threshold = self.breaker_config.failure_threshold
        if circuit.state is CircuitState.HALF_OPEN or circuit.failure_count >= threshold:
            circuit.state = CircuitState.OPEN
            circuit.next_attempt_time = now + self.breaker_config.reset_timeout
            logger.warning(
                f"Circuit '{key}' opened after {circuit.failure_count} failures",
                extra={"circuit": key, "failure_count": circuit.failure_count},
            )

    # -- operator surface ---------------------------------------------------

    def known_circuits(self) -> list[str]:
        return sorted(self._circuits)

    def circuit_status(self, key: str) -> dict[str, Any]:
        circuit = self._circuits.get(key) or CircuitBreakerState()
        now = self._clock()
        retry_in = None
        if circuit.state is CircuitState.OPEN and circuit.next_attempt_time is not None:
            retry_in = round(max(0.0, circuit.next_attempt_time - now), 3)
        since_failure = None
        if circuit.last_failure_time is not None:
            since_failure = round(now - circuit.last_failure_time, 3)
        return {
            "circuit": key,
            "state": circuit.state.value,
            "failure_count": circuit.failure_count,
            "seconds_since_last_failure": since_failure,
            "retry_in_seconds": retry_in,
        }

    def all_circuit_status(self) -> dict[str, dict[str, Any]]:
        return {key: self.circuit_status(key) for key in self.known_circuits()}

    def reset_circuit(self, key: str) -> bool:
        if key not in self._circuits:
            return False
        self._circuits[key] = CircuitBreakerState()
        logger.info(f"Circuit '{key}' reset by operator")
        return True

    # -- logging ------------------------------------------------------------

    def _log_failure(
        self,
        error: ResilienceError,
        context: str,
        attempt: int,
        *,
        terminal: bool,
        delay: Optional[float] = None,
    ) -> None:
        level = logging.WARNING if error.category is ErrorCategory.TEMPORARY else logging.ERROR
        extra = {**error.log_data(), "attempt": attempt + 1, "terminal": terminal}
        if terminal:
            logger.log(level, f"{context} failed after {attempt + 1} attempt(s): {error.message}", extra=extra)
        else:
            extra["retry_delay"] = delay
            logger.log(level, f"{context} attempt {attempt + 1} failed, retrying in {delay:.2f}s: {error.message}", extra=extra)
