from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict

MEDIA_MESSAGE_TYPES = {"image", "video", "audio", "file", "sticker", "location"}


class LineSource(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "user"
    userId: Optional[str] = None
    groupId: Optional[str] = None
    roomId: Optional[str] = None


class LineMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: str
    text: Optional[str] = None


class LineEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    timestamp: Optional[int] = None  # epoch milliseconds
    replyToken: Optional[str] = None
    source: Optional[LineSource] = None
    message: Optional[LineMessage] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.source.userId if self.source else None

    @property
    def sent_at(self) -> Optional[datetime]:
        if self.timestamp is None:
            return None
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)

    @property
    def is_text(self) -> bool:
        return self.type == "message" and self.message is not None and self.message.type == "text"

    @property
    def is_media(self) -> bool:
        return self.type == "message" and self.message is not None and self.message.type in MEDIA_MESSAGE_TYPES


class LineWebhookBody(BaseModel):
    destination: Optional[str] = None
    events: list[LineEvent] = []


class LineWebhookResponse(BaseModel):
    status: str = "ok"
    processed: int = 0
