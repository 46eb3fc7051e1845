"""
LINE webhook payload schemas.

Only the fields the diary flow reads are modelled; everything else LINE
sends is ignored. Non-text events parse fine and are skipped by the router.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _LineModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EventSource(_LineModel):
    type: str = Field(description='"user", "group" or "room".')
    user_id: Optional[str] = Field(default=None, alias="userId")


class EventMessage(_LineModel):
    id: Optional[str] = None
    type: str = Field(description='Message type; only "text" is analysed.')
    text: Optional[str] = None


class WebhookEvent(_LineModel):
    type: str = Field(description='Event type; only "message" is analysed.')
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    source: Optional[EventSource] = None
    message: Optional[EventMessage] = None
    timestamp: Optional[int] = None

    @property
    def diary_text(self) -> Optional[str]:
        """Text of a user text message, else None."""
        if self.type != "message" or self.message is None or self.message.type != "text":
            return None
        return self.message.text

    @property
    def user_id(self) -> Optional[str]:
        return self.source.user_id if self.source else None


class WebhookPayload(_LineModel):
    destination: Optional[str] = None
    events: list[WebhookEvent] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    status: str = "ok"
    processed: int = Field(description="Number of diary messages handled from this delivery.")
