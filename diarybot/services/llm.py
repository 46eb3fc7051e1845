"""
OpenAI chat-completions client.

Single responsibility: one HTTP call per `complete()`. No retries here;
callers wrap it in the resilience layer, which reads the status code and
retry hint off the raised LLMError.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Optional, Protocol

import httpx

from diarybot.core.errors import LLMError

logger = logging.getLogger(__name__)

RATE_LIMIT_RESET_HEADER = "x-ratelimit-reset-requests"

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

ChatMessage = dict[str, str]


class LLMClient(Protocol):
    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]: ...


def parse_reset_duration(value: Optional[str]) -> Optional[float]:
    """Seconds from an OpenAI reset header such as "1s", "6m0s" or "250ms"."""
    if not value:
        return None
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass
    parts = _DURATION_PART_RE.findall(value)
    if not parts:
        return None
    return sum(float(amount) * _DURATION_UNITS[unit] for amount, unit in parts)


def extract_text(response: dict[str, Any]) -> str:
    """First choice's message content; empty content is an error."""
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise LLMError("Chat completion response has no choices")
    if not content or not str(content).strip():
        raise LLMError("Chat completion returned empty content")
    return str(content).strip()


class OpenAIChatClient:
    """
    Thin wrapper over POST {base_url}/chat/completions.

    The httpx.AsyncClient is owned by the caller (created at startup,
    closed on shutdown) so connections are pooled across requests.
    """

    def __init__(self, http: httpx.AsyncClient, api_key: str, base_url: str, timeout: float = 30.0):
        self._http = http
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        url = f"{self._base_url}/chat/completions"

        try:
            response = await self._http.post(url, json=payload, headers=self.headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise LLMError(f"Chat completion timed out: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise LLMError(f"Chat completion transport error: {exc!r}") from exc

        if response.status_code >= 400:
            retry_after = None
            if response.status_code == 429:
                retry_after = parse_reset_duration(
                    response.headers.get("retry-after") or response.headers.get(RATE_LIMIT_RESET_HEADER)
                )
            logger.warning(
                f"Chat completion HTTP {response.status_code}",
                extra={"status_code": response.status_code, "model": model},
            )
            raise LLMError(
                f"Chat completion HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                retry_after=retry_after,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise LLMError("Chat completion returned invalid JSON", status_code=response.status_code) from exc
