from abc import ABC, abstractmethod
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("line_service")

LINE_TEXT_LIMIT = 5000


class ChatTransport(ABC):
    """Outbound side of the chat platform."""

    @abstractmethod
    def reply(self, reply_token: str, text: str) -> dict:
        """Answer an inbound event via its reply token."""
        pass

    @abstractmethod
    def push(self, user_id: str, text: str) -> dict:
        """Send an unsolicited message to a user."""
        pass

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[dict]:
        """Return {"displayName": ...} or None."""
        pass


class LineMessagingService(ChatTransport):
    """LINE Messaging API client."""

    BASE_URL = "https://api.line.me/v2/bot"

    def __init__(self, channel_access_token: Optional[str], timeout_seconds: float = 10.0):
        self.channel_access_token = channel_access_token
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.channel_access_token}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: dict) -> dict:
        if not self.channel_access_token:
            logger.warning(f"LINE token missing, dropping {path}")
            return {"ok": False, "error": "missing_token"}
        url = f"{self.BASE_URL}{path}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(url, headers=self._headers(), json=payload)
        except Exception as e:
            logger.error(f"LINE API error: {e}")
            return {"ok": False, "error": str(e)}

        if response.status_code != 200:
            logger.error(f"LINE API {path} failed: {response.status_code} - {response.text[:200]}")
            return {"ok": False, "status_code": response.status_code, "error": response.text[:200]}
        return {"ok": True}

    @staticmethod
    def _text_messages(text: str) -> list[dict]:
        return [{"type": "text", "text": text[:LINE_TEXT_LIMIT]}]

    def reply(self, reply_token: str, text: str) -> dict:
        return self._post("/message/reply", {"replyToken": reply_token, "messages": self._text_messages(text)})

    def push(self, user_id: str, text: str) -> dict:
        return self._post("/message/push", {"to": user_id, "messages": self._text_messages(text)})

    def get_profile(self, user_id: str) -> Optional[dict]:
        if not self.channel_access_token:
            return None
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(f"{self.BASE_URL}/profile/{user_id}", headers=self._headers())
        except Exception as e:
            logger.warning(f"LINE profile lookup failed: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"LINE profile lookup status {response.status_code} for {user_id}")
            return None
        return response.json()
