"""Inbound chat command parsing.

Slash commands match on their first token. Localized natural-language
equivalents only count when they are the whole message, so a sentence that
mentions "complaint" inside an open session stays complaint content.
"""

from enum import Enum
from typing import Optional


class Command(str, Enum):
    START = "start"
    SUBMIT = "submit"
    CANCEL = "cancel"
    HELP = "help"
    STATUS = "status"
    GREETING = "greeting"
    UNKNOWN = "unknown"


SLASH_COMMANDS = {
    "/complain": Command.START,
    "/complaint": Command.START,
    "/start": Command.START,
    "/submit": Command.SUBMIT,
    "/done": Command.SUBMIT,
    "/cancel": Command.CANCEL,
    "/help": Command.HELP,
    "/status": Command.STATUS,
}

PHRASE_COMMANDS = {
    "complain": Command.START,
    "complaint": Command.START,
    "ร้องเรียน": Command.START,
    "submit": Command.SUBMIT,
    "ส่ง": Command.SUBMIT,
    "ส่งเรื่อง": Command.SUBMIT,
    "cancel": Command.CANCEL,
    "ยกเลิก": Command.CANCEL,
    "help": Command.HELP,
    "ช่วยเหลือ": Command.HELP,
    "status": Command.STATUS,
    "สถานะ": Command.STATUS,
    "hi": Command.GREETING,
    "hello": Command.GREETING,
    "สวัสดี": Command.GREETING,
    "สวัสดีค่ะ": Command.GREETING,
    "สวัสดีครับ": Command.GREETING,
}


def normalize_text(text: Optional[str]) -> str:
    return " ".join((text or "").split()).lower()


def parse_command(text: Optional[str]) -> Optional[Command]:
    """Return the command carried by ``text``, or None for plain content."""
    normalized = normalize_text(text)
    if not normalized:
        return None

    if normalized.startswith("/"):
        head = normalized.split(" ", 1)[0]
        return SLASH_COMMANDS.get(head, Command.UNKNOWN)

    return PHRASE_COMMANDS.get(normalized.rstrip("!.?"))


def split_command(text: Optional[str]) -> tuple[str, str]:
    """Split a slash command into its token and whatever the user typed after it."""
    stripped = (text or "").strip()
    if not stripped.startswith("/"):
        return stripped, ""
    parts = stripped.split(None, 1)
    return parts[0], parts[1].strip() if len(parts) > 1 else ""
