"""Typed access to complaint sessions and their transcripts.

Every mutator keeps the session invariants on the database side: appends are
guarded by a conditional update on ``status = 'open'`` and the entry counter,
and closing a session only succeeds while it is still open. Callers own the
transaction (commit/rollback).
"""

import secrets
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import AnalysisRecord, ComplaintSession, TranscriptEntry
from app.services.errors import (
    ConflictError,
    InsufficientDetailError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    TranscriptFullError,
)
from app.services.state_machine import SessionState, is_terminal

logger = get_logger("session_store")

COMPLAINT_ID_PREFIX = "CMP"
COMPLAINT_SEQ_MAX = 9999
USER_CONTENT_KINDS = ("text", "media")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def generate_session_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"sess_{now:%Y%m%d%H%M%S%f}_{secrets.token_hex(3)}"


def complaint_id_prefix(day: date) -> str:
    return f"{COMPLAINT_ID_PREFIX}-{day:%Y-%m-%d}-"


def next_complaint_id(db: Session, now: Optional[datetime] = None) -> str:
    """Next id in today's sequence. Fixed-width numbering keeps ids lexically sortable."""
    now = now or utcnow()
    prefix = complaint_id_prefix(now.date())
    latest = (
        db.query(func.max(ComplaintSession.complaint_id))
        .filter(ComplaintSession.complaint_id.like(f"{prefix}%"))
        .scalar()
    )
    seq = 1
    if latest:
        try:
            seq = int(latest[len(prefix):]) + 1
        except ValueError:
            logger.warning(f"Unparseable complaint id in store: {latest}")
    if seq > COMPLAINT_SEQ_MAX:
        raise StorageError(f"Complaint id sequence exhausted for {now.date().isoformat()}")
    return f"{prefix}{seq:04d}"


# === READS ===


def get_session(db: Session, session_id: str) -> Optional[ComplaintSession]:
    return db.query(ComplaintSession).filter(ComplaintSession.id == session_id).first()


def require_session(db: Session, session_id: str) -> ComplaintSession:
    session = get_session(db, session_id)
    if session is None:
        raise NotFoundError(f"Complaint session not found: {session_id}")
    return session


def find_session(db: Session, identifier: str) -> Optional[ComplaintSession]:
    """Look up by session id or by complaint id."""
    if identifier.upper().startswith(f"{COMPLAINT_ID_PREFIX}-"):
        return (
            db.query(ComplaintSession)
            .filter(ComplaintSession.complaint_id == identifier.upper())
            .first()
        )
    return get_session(db, identifier)


def get_open_session(db: Session, user_id: str) -> Optional[ComplaintSession]:
    return (
        db.query(ComplaintSession)
        .filter(ComplaintSession.user_id == user_id, ComplaintSession.status == SessionState.OPEN.value)
        .order_by(ComplaintSession.start_time.desc())
        .first()
    )


def get_latest_session(db: Session, user_id: str) -> Optional[ComplaintSession]:
    return (
        db.query(ComplaintSession)
        .filter(ComplaintSession.user_id == user_id)
        .order_by(ComplaintSession.start_time.desc())
        .first()
    )


def list_entries(db: Session, session_id: str) -> list[TranscriptEntry]:
    return (
        db.query(TranscriptEntry)
        .filter(TranscriptEntry.session_id == session_id)
        .order_by(TranscriptEntry.seq)
        .all()
    )


def count_user_content(db: Session, session_id: str) -> int:
    return (
        db.query(func.count(TranscriptEntry.id))
        .filter(
            TranscriptEntry.session_id == session_id,
            TranscriptEntry.direction == "user",
            TranscriptEntry.kind.in_(USER_CONTENT_KINDS),
        )
        .scalar()
        or 0
    )


def has_user_content(db: Session, session_id: str) -> bool:
    return count_user_content(db, session_id) > 0


def list_sessions(
    db: Session,
    *,
    status: Optional[str] = None,
    department: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
) -> tuple[list[ComplaintSession], int]:
    query = db.query(ComplaintSession)
    if status:
        query = query.filter(ComplaintSession.status == status)
    if department:
        query = query.filter(ComplaintSession.department == department)
    total = query.count()
    rows = query.order_by(ComplaintSession.start_time.desc()).offset(skip).limit(limit).all()
    return rows, total


def list_unanalyzed(
    db: Session,
    *,
    limit: int = 50,
    skip: int = 0,
    department: Optional[str] = None,
) -> tuple[list[ComplaintSession], int]:
    """Submitted sessions without an analysis record, oldest first."""
    analyzed = select(AnalysisRecord.session_id)
    query = db.query(ComplaintSession).filter(
        ComplaintSession.status == SessionState.SUBMITTED.value,
        ComplaintSession.id.not_in(analyzed),
    )
    if department:
        query = query.filter(ComplaintSession.department == department)
    total = query.count()
    rows = query.order_by(ComplaintSession.start_time.asc()).offset(skip).limit(limit).all()
    return rows, total


def find_expired_open_sessions(db: Session, cutoff: datetime) -> list[ComplaintSession]:
    return (
        db.query(ComplaintSession)
        .filter(
            ComplaintSession.status == SessionState.OPEN.value,
            ComplaintSession.last_activity_at < cutoff,
        )
        .all()
    )


# === MUTATORS ===


def create_session(
    db: Session,
    user_id: str,
    *,
    department: Optional[str],
    command_text: str,
    now: Optional[datetime] = None,
    max_retries: Optional[int] = None,
) -> ComplaintSession:
    """Create an open session seeded with the initiating command.

    Raises ConflictError (with the winning session) when another open session
    exists for the user. Complaint id collisions are retried a bounded number
    of times; each retry rolls back the caller's transaction, so this must be
    the first write of the unit of work.
    """
    now = now or utcnow()
    attempts = max_retries if max_retries is not None else settings.complaint_id_max_retries

    existing = get_open_session(db, user_id)
    if existing is not None:
        raise ConflictError(f"User {user_id} already has an open session", existing=existing)

    for attempt in range(1, attempts + 1):
        complaint_id = next_complaint_id(db, now)
        session = ComplaintSession(
            id=generate_session_id(now),
            complaint_id=complaint_id,
            user_id=user_id,
            status=SessionState.OPEN.value,
            start_time=now,
            last_activity_at=now,
            department=department,
            entry_count=0,
            analysis_attempts=0,
        )
        db.add(session)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = get_open_session(db, user_id)
            if existing is not None:
                raise ConflictError(f"User {user_id} already has an open session", existing=existing)
            logger.warning(
                "Complaint id collision, retrying",
                extra={"context": {"complaint_id": complaint_id, "attempt": attempt}},
            )
            continue

        append_entry(db, session, direction="user", kind="command", body=command_text, now=now)
        return session

    raise StorageError(f"Could not allocate a unique complaint id after {attempts} attempts")


def append_entry(
    db: Session,
    session: ComplaintSession,
    *,
    direction: str,
    kind: str,
    body: str,
    now: Optional[datetime] = None,
    reserve: int = 0,
    max_entries: Optional[int] = None,
) -> TranscriptEntry:
    """Append one transcript entry as a single conditional counter bump.

    ``reserve`` keeps that many slots free after this entry, so closing
    entries always fit.
    """
    now = now or utcnow()
    limit = max_entries if max_entries is not None else settings.transcript_max_entries

    result = db.execute(
        update(ComplaintSession)
        .where(
            ComplaintSession.id == session.id,
            ComplaintSession.status == SessionState.OPEN.value,
            ComplaintSession.entry_count + 1 + reserve <= limit,
        )
        .values(entry_count=ComplaintSession.entry_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        status = db.execute(select(ComplaintSession.status).where(ComplaintSession.id == session.id)).scalar()
        if status is None:
            raise NotFoundError(f"Complaint session not found: {session.id}")
        if status != SessionState.OPEN.value:
            raise InvalidStateError(f"Session {session.id} is {status}; transcript is closed")
        raise TranscriptFullError(f"Session {session.id} reached {limit} transcript entries")

    seq = db.execute(select(ComplaintSession.entry_count).where(ComplaintSession.id == session.id)).scalar_one()
    entry = TranscriptEntry(
        session_id=session.id,
        seq=seq,
        timestamp=now,
        direction=direction,
        kind=kind,
        body=body,
    )
    db.add(entry)
    db.flush()
    return entry


def touch_activity(db: Session, session_id: str, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    result = db.execute(
        update(ComplaintSession)
        .where(ComplaintSession.id == session_id, ComplaintSession.status == SessionState.OPEN.value)
        .values(last_activity_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def close_session(
    db: Session,
    session_id: str,
    new_state: SessionState,
    now: Optional[datetime] = None,
) -> bool:
    """Move an open session to a terminal state. False if it was no longer open."""
    if not is_terminal(new_state):
        raise InvalidStateError(f"Not a terminal state: {new_state.value}")
    now = now or utcnow()
    values = {"status": new_state.value, "end_time": now, "updated_at": now}
    if new_state == SessionState.SUBMITTED:
        values["analysis_status"] = "pending"
    result = db.execute(
        update(ComplaintSession)
        .where(ComplaintSession.id == session_id, ComplaintSession.status == SessionState.OPEN.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def submit_session(
    db: Session,
    session: ComplaintSession,
    *,
    command_text: str,
    now: Optional[datetime] = None,
    max_entries: Optional[int] = None,
) -> bool:
    """Record the submit command and close the session as submitted.

    Raises InsufficientDetailError, before writing anything, when the user has
    not added any content beyond the start command.
    """
    if not has_user_content(db, session.id):
        raise InsufficientDetailError(f"Complaint {session.complaint_id} has no details to submit")
    append_entry(db, session, direction="user", kind="command", body=command_text, now=now, max_entries=max_entries)
    return close_session(db, session.id, SessionState.SUBMITTED, now)


def record_analysis_outcome(db: Session, session_id: str, *, error: Optional[str] = None) -> None:
    values = {
        "analysis_attempts": ComplaintSession.analysis_attempts + 1,
        "analysis_status": "failed" if error else "completed",
        "analysis_last_error": error[:1000] if error else None,
    }
    db.execute(
        update(ComplaintSession)
        .where(ComplaintSession.id == session_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
