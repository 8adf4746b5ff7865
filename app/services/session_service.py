"""Per-user complaint conversation state machine.

Each inbound event is handled as one database transaction under a per-user
lock. Timers are armed or disarmed only after that transaction commits, and
enrichment is dispatched only after the reply went out.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from contextlib import asynccontextmanager
from functools import partial
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.config import settings as app_settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.services import session_store, user_directory
from app.services.commands import Command, parse_command, split_command
from app.services.enrichment_service import EnrichmentOrchestrator, get_orchestrator
from app.services.errors import ComplaintError, ConflictError, InsufficientDetailError, TranscriptFullError
from app.services.line_service import ChatTransport, LineMessagingService
from app.services.session_store import ensure_timezone, utcnow
from app.services.state_machine import SessionState, cancel, open_session, state_of, submit
from app.services.timer_registry import InactivityTimerRegistry

logger = get_logger("session_service")

MSG_STARTED = (
    "Hello {name}! 👋\n\n"
    "I'm here to help you submit a complaint. Please describe your issue in detail.\n\n"
    "When you're done, type /submit to finalize your complaint.\n"
    "Type /cancel if you want to cancel.\n\n"
    "📝 Complaint ID: {complaint_id}"
)
MSG_ALREADY_OPEN = (
    "You already have an active complaint session (ID: {complaint_id}). "
    "Please continue with your complaint or type /submit to finalize it."
)
ACK_RESPONSES = (
    "Thank you for the additional information. Please continue if you have more details to add.",
    "Got it! Please continue with your complaint details.",
    "I've recorded that information. Feel free to add more details.",
    "Understood. Please provide any additional information if needed.",
)
MSG_ACK = "{ack}\n\nType /submit when you're ready to finalize your complaint.\nComplaint ID: {complaint_id}"
MSG_SUBMITTED = (
    "✅ Your complaint has been submitted successfully!\n\n"
    "📋 Complaint ID: {complaint_id}\n"
    "📅 Submitted: {submitted_at}\n\n"
    "Your complaint will be reviewed by our HR team. Thank you for bringing this to our attention."
)
MSG_INSUFFICIENT_DETAIL = (
    "Please describe your issue before submitting. "
    "Complaint {complaint_id} has no details yet.\n\nType /cancel if you no longer want to file it."
)
MSG_CANCELLED = "❌ Your complaint session has been canceled."
MSG_NO_SESSION_TO_SUBMIT = "You don't have an active complaint session. Type /complain to start a new complaint."
MSG_NO_SESSION_TO_CANCEL = "You don't have an active complaint session to cancel."
MSG_NO_SESSION_HINT = "To submit a complaint, please start by typing /complain.\n\nType /help to see all available commands."
MSG_MEDIA_NO_SESSION = "To attach files or images to a complaint, start one first by typing /complain."
MSG_WELCOME = "Hello! 👋 I'm the complaint bot. Type /complain to file a complaint or /help to see what I can do."
MSG_UNKNOWN_COMMAND = "Unknown command. Type /help to see available commands."
MSG_HELP = (
    "🤖 Complaint Bot Help\n\n"
    "Available commands:\n"
    "• /complain - Start a new complaint\n"
    "• /submit - Submit your current complaint\n"
    "• /cancel - Cancel current complaint session\n"
    "• /status - Show your complaint status\n"
    "• /help - Show this help message\n\n"
    "How to use:\n"
    "1. Type /complain to start\n"
    "2. Describe your issue in detail\n"
    "3. Type /submit when done\n\n"
    "Sessions close automatically after {minutes} minutes of inactivity.\n"
    "Need assistance? Contact HR directly."
)
MSG_STATUS_OPEN = (
    "📝 Complaint {complaint_id} is open with {count} message(s) recorded.\n"
    "Type /submit when you're done or /cancel to cancel."
)
MSG_STATUS_LAST = "Your most recent complaint {complaint_id} is {status}."
MSG_STATUS_NONE = "You have no complaints on record. Type /complain to start one."
MSG_TRANSCRIPT_FULL = (
    "Complaint {complaint_id} has reached its maximum length. Please type /submit to finalize it."
)
MSG_TIMEOUT_SUBMITTED = (
    "⏰ Your complaint was inactive for {minutes} minutes, so it has been submitted automatically.\n\n"
    "📋 Complaint ID: {complaint_id}\n\n"
    "Your complaint will be reviewed by our HR team."
)
MSG_GENERIC_ERROR = "Sorry, something went wrong. Please try again later."

NOTE_TIMEOUT_SUBMITTED = "Session auto-submitted after {minutes} minutes of inactivity"
NOTE_TIMEOUT_CANCELLED = "Session auto-cancelled after {minutes} minutes of inactivity with no content"

# Timers may wake marginally before the stored activity clock says they should
EXPIRY_TOLERANCE = timedelta(seconds=1)


@dataclass
class Outcome:
    reply: str
    session_id: Optional[str] = None
    complaint_id: Optional[str] = None
    arm: bool = False
    disarm: bool = False
    dispatch: bool = False
    state: Optional[SessionState] = None


class ComplaintSessionManager:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        transport: Optional[ChatTransport] = None,
        timers: Optional[InactivityTimerRegistry] = None,
        orchestrator: Optional[EnrichmentOrchestrator] = None,
        settings=None,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or app_settings
        self.transport = transport or LineMessagingService(self.settings.line_channel_access_token)
        self.timers = timers or InactivityTimerRegistry()
        self.orchestrator = orchestrator or get_orchestrator()
        self.rng = rng or random.Random()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def timeout_seconds(self) -> float:
        return float(self.settings.session_timeout_seconds)

    @property
    def timeout_minutes(self) -> int:
        return max(1, round(self.timeout_seconds / 60))

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        """Serialize work for one user. The lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[user_id] - 1
            if remaining:
                self._lock_users[user_id] = remaining
            else:
                del self._lock_users[user_id]
                del self._locks[user_id]

    # === INBOUND EVENTS ===

    async def handle_message(
        self,
        user_id: str,
        text: str,
        *,
        reply_token: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        kind: str = "text",
        display_name: Optional[str] = None,
    ) -> str:
        """Apply one inbound event and answer it. Returns the reply text."""
        now = ensure_timezone(timestamp) or utcnow()
        command = parse_command(text) if kind == "text" else None

        if command == Command.START and display_name is None:
            profile = await asyncio.to_thread(self.transport.get_profile, user_id)
            if profile:
                display_name = profile.get("displayName")

        async with self._user_lock(user_id):
            db = self.session_factory()
            try:
                outcome = self._apply(db, user_id, text, command, kind, now, display_name)
                db.commit()
            except (ComplaintError, SQLAlchemyError) as exc:
                db.rollback()
                logger.error(
                    "Failed to handle chat message",
                    extra={"context": {"user_id": user_id, "error": str(exc)}},
                    exc_info=True,
                )
                outcome = Outcome(reply=MSG_GENERIC_ERROR)
            finally:
                db.close()

            self._apply_timer(user_id, outcome)
            await self._send(user_id, outcome.reply, reply_token)

        if outcome.dispatch:
            self.orchestrator.dispatch(outcome.session_id)
        return outcome.reply

    def _apply(
        self,
        db,
        user_id: str,
        text: str,
        command: Optional[Command],
        kind: str,
        now: datetime,
        display_name: Optional[str],
    ) -> Outcome:
        session = session_store.get_open_session(db, user_id)
        state = state_of(session.status if session else None)

        if state == SessionState.NONE:
            return self._apply_without_session(db, user_id, text, command, kind, now, display_name)

        if command == Command.START:
            self._append_remainder(db, session, split_command(text)[1], now)
            session_store.touch_activity(db, session.id, now)
            return self._keep_open(session, MSG_ALREADY_OPEN.format(complaint_id=session.complaint_id))
        if command == Command.SUBMIT:
            return self._submit(db, session, text, now)
        if command == Command.CANCEL:
            session_store.append_entry(
                db,
                session,
                direction="user",
                kind="command",
                body=text,
                now=now,
                max_entries=self.settings.transcript_max_entries,
            )
            cancel(state)
            session_store.close_session(db, session.id, SessionState.CANCELLED, now)
            logger.info("Complaint cancelled", extra={"context": {"complaint_id": session.complaint_id}})
            return Outcome(
                reply=MSG_CANCELLED,
                session_id=session.id,
                complaint_id=session.complaint_id,
                disarm=True,
                state=SessionState.CANCELLED,
            )
        if command in (Command.HELP, Command.STATUS, Command.UNKNOWN):
            session_store.touch_activity(db, session.id, now)
            if command == Command.HELP:
                reply = MSG_HELP.format(minutes=self.timeout_minutes)
            elif command == Command.STATUS:
                count = session_store.count_user_content(db, session.id)
                reply = MSG_STATUS_OPEN.format(complaint_id=session.complaint_id, count=count)
            else:
                reply = MSG_UNKNOWN_COMMAND
            return self._keep_open(session, reply)

        return self._append_content(db, session, text, kind, now)

    def _apply_without_session(self, db, user_id, text, command, kind, now, display_name) -> Outcome:
        if command == Command.START:
            return self._start(db, user_id, text, now, display_name)
        if command == Command.HELP:
            return Outcome(reply=MSG_HELP.format(minutes=self.timeout_minutes))
        if command == Command.STATUS:
            latest = session_store.get_latest_session(db, user_id)
            if latest is None:
                return Outcome(reply=MSG_STATUS_NONE)
            return Outcome(reply=MSG_STATUS_LAST.format(complaint_id=latest.complaint_id, status=latest.status))
        if command == Command.SUBMIT:
            return Outcome(reply=MSG_NO_SESSION_TO_SUBMIT)
        if command == Command.CANCEL:
            return Outcome(reply=MSG_NO_SESSION_TO_CANCEL)
        if command == Command.GREETING:
            return Outcome(reply=MSG_WELCOME)
        if command == Command.UNKNOWN:
            return Outcome(reply=MSG_UNKNOWN_COMMAND)
        if kind == "media":
            return Outcome(reply=MSG_MEDIA_NO_SESSION)
        return Outcome(reply=MSG_NO_SESSION_HINT)

    def _start(self, db, user_id: str, text: str, now: datetime, display_name: Optional[str]) -> Outcome:
        profile = user_directory.lookup_or_register(db, user_id, display_name)
        name = profile.display_name
        department = profile.department
        # Session creation may roll back on an id collision; keep the profile
        db.commit()

        token, remainder = split_command(text)
        open_session(SessionState.NONE)
        try:
            session = session_store.create_session(
                db,
                user_id,
                department=department,
                command_text=token,
                now=now,
                max_retries=self.settings.complaint_id_max_retries,
            )
        except ConflictError as exc:
            existing = exc.existing
            self._append_remainder(db, existing, remainder, now)
            session_store.touch_activity(db, existing.id, now)
            return self._keep_open(existing, MSG_ALREADY_OPEN.format(complaint_id=existing.complaint_id))

        self._append_remainder(db, session, remainder, now, reserve=2)
        reply = MSG_STARTED.format(name=name, complaint_id=session.complaint_id)
        session_store.append_entry(
            db,
            session,
            direction="bot",
            kind="text",
            body=reply,
            now=now,
            reserve=1,
            max_entries=self.settings.transcript_max_entries,
        )
        logger.info(
            "Complaint session opened",
            extra={"context": {"user_id": user_id, "complaint_id": session.complaint_id, "session_id": session.id}},
        )
        return self._keep_open(session, reply)

    def _append_content(self, db, session, text: str, kind: str, now: datetime) -> Outcome:
        limit = self.settings.transcript_max_entries
        try:
            session_store.append_entry(
                db, session, direction="user", kind=kind, body=text, now=now, reserve=2, max_entries=limit
            )
        except TranscriptFullError:
            logger.warning("Transcript full", extra={"context": {"complaint_id": session.complaint_id}})
            session_store.touch_activity(db, session.id, now)
            return self._keep_open(session, MSG_TRANSCRIPT_FULL.format(complaint_id=session.complaint_id))

        reply = MSG_ACK.format(ack=self.rng.choice(ACK_RESPONSES), complaint_id=session.complaint_id)
        session_store.append_entry(
            db, session, direction="bot", kind="text", body=reply, now=now, reserve=1, max_entries=limit
        )
        session_store.touch_activity(db, session.id, now)
        return self._keep_open(session, reply)

    def _submit(self, db, session, text: str, now: datetime) -> Outcome:
        token, remainder = split_command(text)
        self._append_remainder(db, session, remainder, now)
        submit(SessionState.OPEN)
        try:
            session_store.submit_session(
                db,
                session,
                command_text=token,
                now=now,
                max_entries=self.settings.transcript_max_entries,
            )
        except InsufficientDetailError:
            session_store.touch_activity(db, session.id, now)
            return self._keep_open(session, MSG_INSUFFICIENT_DETAIL.format(complaint_id=session.complaint_id))
        logger.info("Complaint submitted", extra={"context": {"complaint_id": session.complaint_id}})
        return Outcome(
            reply=MSG_SUBMITTED.format(
                complaint_id=session.complaint_id,
                submitted_at=now.strftime("%Y-%m-%d %H:%M UTC"),
            ),
            session_id=session.id,
            complaint_id=session.complaint_id,
            disarm=True,
            dispatch=True,
            state=SessionState.SUBMITTED,
        )

    def _append_remainder(self, db, session, remainder: str, now: datetime, reserve: int = 1) -> None:
        """Store text typed after a slash command as ordinary complaint content."""
        if not remainder:
            return
        try:
            session_store.append_entry(
                db,
                session,
                direction="user",
                kind="text",
                body=remainder,
                now=now,
                reserve=reserve,
                max_entries=self.settings.transcript_max_entries,
            )
        except TranscriptFullError:
            logger.warning("No room for text after command", extra={"context": {"complaint_id": session.complaint_id}})

    @staticmethod
    def _keep_open(session, reply: str) -> Outcome:
        return Outcome(
            reply=reply,
            session_id=session.id,
            complaint_id=session.complaint_id,
            arm=True,
            state=SessionState.OPEN,
        )

    # === TIMERS ===

    def _apply_timer(self, user_id: str, outcome: Outcome) -> None:
        if outcome.disarm:
            self.timers.disarm(user_id)
        elif outcome.arm and outcome.session_id:
            self.timers.arm(
                user_id,
                self.timeout_seconds,
                partial(self.handle_timeout, user_id, outcome.session_id),
            )

    async def handle_timeout(self, user_id: str, session_id: str) -> Optional[SessionState]:
        """Close ``session_id`` if it is still open and idle. Returns the new state, if any."""
        now = utcnow()
        async with self._user_lock(user_id):
            db = self.session_factory()
            try:
                outcome = self._expire(db, session_id, now)
                db.commit()
            except (ComplaintError, SQLAlchemyError) as exc:
                db.rollback()
                logger.error(
                    "Failed to expire complaint session",
                    extra={"context": {"session_id": session_id, "error": str(exc)}},
                    exc_info=True,
                )
                return None
            finally:
                db.close()

            if outcome is None:
                return None
            self.timers.disarm(user_id)
            if outcome.state == SessionState.SUBMITTED:
                await self._send(user_id, outcome.reply, None)

        if outcome.dispatch:
            self.orchestrator.dispatch(session_id)
        return outcome.state

    def _expire(self, db, session_id: str, now: datetime) -> Optional[Outcome]:
        session = session_store.get_session(db, session_id)
        if session is None or session.status != SessionState.OPEN.value:
            return None
        idle = now - ensure_timezone(session.last_activity_at)
        if idle + EXPIRY_TOLERANCE < timedelta(seconds=self.timeout_seconds):
            return None

        minutes = self.timeout_minutes
        if session_store.has_user_content(db, session.id):
            new_state, note = SessionState.SUBMITTED, NOTE_TIMEOUT_SUBMITTED.format(minutes=minutes)
        else:
            new_state, note = SessionState.CANCELLED, NOTE_TIMEOUT_CANCELLED.format(minutes=minutes)

        try:
            session_store.append_entry(
                db,
                session,
                direction="system",
                kind="timeout",
                body=note,
                now=now,
                max_entries=self.settings.transcript_max_entries,
            )
        except TranscriptFullError:
            logger.warning("No room for timeout note", extra={"context": {"session_id": session.id}})
        session_store.close_session(db, session.id, new_state, now)
        logger.info(
            "Complaint session timed out",
            extra={"context": {"complaint_id": session.complaint_id, "status": new_state.value}},
        )

        if new_state == SessionState.SUBMITTED:
            return Outcome(
                reply=MSG_TIMEOUT_SUBMITTED.format(minutes=minutes, complaint_id=session.complaint_id),
                session_id=session.id,
                complaint_id=session.complaint_id,
                disarm=True,
                dispatch=True,
                state=new_state,
            )
        return Outcome(reply="", session_id=session.id, complaint_id=session.complaint_id, disarm=True, state=new_state)

    async def sweep_expired_sessions(self) -> int:
        """Close idle open sessions whose in-process timer was lost. Returns how many closed."""
        cutoff = utcnow() - timedelta(seconds=self.timeout_seconds)
        db = self.session_factory()
        try:
            expired = [(row.user_id, row.id) for row in session_store.find_expired_open_sessions(db, cutoff)]
        finally:
            db.close()

        closed = 0
        for user_id, session_id in expired:
            if await self.handle_timeout(user_id, session_id) is not None:
                closed += 1
        if closed:
            logger.info("Timeout sweep closed sessions", extra={"context": {"closed": closed}})
        return closed

    # === OUTBOUND ===

    async def _send(self, user_id: str, text: str, reply_token: Optional[str]) -> None:
        if not text:
            return
        if reply_token:
            result = await asyncio.to_thread(self.transport.reply, reply_token, text)
        else:
            result = await asyncio.to_thread(self.transport.push, user_id, text)
        if not result or not result.get("ok"):
            logger.warning("Chat reply not delivered", extra={"context": {"user_id": user_id, "result": result}})


_manager: Optional[ComplaintSessionManager] = None


def get_session_manager() -> ComplaintSessionManager:
    global _manager
    if _manager is None:
        _manager = ComplaintSessionManager()
    return _manager
