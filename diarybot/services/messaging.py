"""
LINE Messaging API client.

reply(reply_token, texts)  -> None
push(user_id, texts)       -> None
show_typing(user_id, secs) -> None   (loading animation, best-effort)

Raises MessagingError with the HTTP status; retries belong to the caller.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

import httpx

from diarybot.core.errors import MessagingError

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 5000
MAX_MESSAGES_PER_CALL = 5
MAX_TYPING_SECONDS = 60


class MessagingClient(Protocol):
    async def reply(self, reply_token: str, texts: Sequence[str]) -> None: ...

    async def push(self, user_id: str, texts: Sequence[str]) -> None: ...

    async def show_typing(self, user_id: str, seconds: int) -> None: ...


def build_text_messages(texts: Sequence[str]) -> list[dict[str, str]]:
    """LINE text message objects, clipped to the API's size limits."""
    clipped = []
    for text in texts[:MAX_MESSAGES_PER_CALL]:
        if len(text) > MAX_TEXT_LENGTH:
            text = text[: MAX_TEXT_LENGTH - 1] + "…"
        clipped.append({"type": "text", "text": text})
    return clipped


class LineMessagingClient:
    def __init__(self, http: httpx.AsyncClient, access_token: str, base_url: str, timeout: float = 15.0):
        self._http = http
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        url = f"{self._base_url}{path}"
        logger.debug(f"POST {url}")
        try:
            response = await self._http.post(url, json=payload, headers=self.headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise MessagingError(f"LINE API timed out on {path}") from exc
        except httpx.TransportError as exc:
            raise MessagingError(f"LINE API transport error on {path}: {exc!r}") from exc

        if response.status_code >= 400:
            raise MessagingError(
                f"LINE API HTTP {response.status_code} on {path}: {response.text[:200]}",
                status_code=response.status_code,
            )

    async def reply(self, reply_token: str, texts: Sequence[str]) -> None:
        await self._post(
            "/v2/bot/message/reply",
            {"replyToken": reply_token, "messages": build_text_messages(texts)},
        )

    async def push(self, user_id: str, texts: Sequence[str]) -> None:
        await self._post(
            "/v2/bot/message/push",
            {"to": user_id, "messages": build_text_messages(texts)},
        )

    async def show_typing(self, user_id: str, seconds: int) -> None:
        # LINE accepts multiples of 5 between 5 and 60.
        seconds = min(MAX_TYPING_SECONDS, max(5, (seconds // 5) * 5))
        await self._post(
            "/v2/bot/chat/loading/start",
            {"chatId": user_id, "loadingSeconds": seconds},
        )
