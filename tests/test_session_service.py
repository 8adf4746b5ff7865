import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from app.models import AnalysisRecord, ComplaintSession
from app.services import session_store
from app.services.session_service import (
    ACK_RESPONSES,
    MSG_CANCELLED,
    MSG_GENERIC_ERROR,
    MSG_MEDIA_NO_SESSION,
    MSG_NO_SESSION_HINT,
    MSG_NO_SESSION_TO_SUBMIT,
    MSG_STATUS_NONE,
    MSG_UNKNOWN_COMMAND,
    MSG_WELCOME,
)

T0 = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)


def _open_session(session_factory, user_id="U1"):
    db = session_factory()
    try:
        return session_store.get_open_session(db, user_id)
    finally:
        db.close()


def _session(session_factory, session_id):
    db = session_factory()
    try:
        return session_store.get_session(db, session_id)
    finally:
        db.close()


def _entries(session_factory, session_id):
    db = session_factory()
    try:
        return [(e.direction, e.kind, e.body) for e in session_store.list_entries(db, session_id)]
    finally:
        db.close()


class TestStartCommand:
    @pytest.mark.asyncio
    async def test_start_opens_session_and_arms_timer(self, manager, transport, session_factory):
        reply = await manager.handle_message("U1", "/complain", reply_token="r1", timestamp=T0)

        session = _open_session(session_factory)
        assert session is not None
        assert session.complaint_id == "CMP-2025-03-14-0001"
        assert "Somchai" in reply
        assert session.complaint_id in reply
        assert transport.replies == [("r1", reply)]
        assert manager.timers.is_armed("U1")
        assert _entries(session_factory, session.id) == [
            ("user", "command", "/complain"),
            ("bot", "text", reply),
        ]

    @pytest.mark.asyncio
    async def test_natural_language_start(self, manager, session_factory):
        await manager.handle_message("U1", "ร้องเรียน", timestamp=T0)
        assert _open_session(session_factory) is not None

    @pytest.mark.asyncio
    async def test_repeated_start_is_noop(self, manager, session_factory):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        first = _open_session(session_factory)

        reply = await manager.handle_message("U1", "/complain", timestamp=T0 + timedelta(minutes=1))

        assert "already have an active complaint session" in reply
        assert first.complaint_id in reply
        assert _open_session(session_factory).id == first.id
        assert len(_entries(session_factory, first.id)) == 2
        assert manager.timers.is_armed("U1")

    @pytest.mark.asyncio
    async def test_two_rapid_starts_create_one_session(self, manager, session_factory):
        replies = await asyncio.gather(
            manager.handle_message("U1", "/complain", timestamp=T0),
            manager.handle_message("U1", "/complain", timestamp=T0),
        )

        db = session_factory()
        try:
            count = db.query(func.count(ComplaintSession.id)).filter(ComplaintSession.user_id == "U1").scalar()
        finally:
            db.close()
        assert count == 1
        assert sum("already have an active complaint session" in reply for reply in replies) == 1


class TestContent:
    @pytest.mark.asyncio
    async def test_text_is_appended_and_acknowledged(self, manager, session_factory):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        reply = await manager.handle_message("U1", "My manager shouts at us", timestamp=T0 + timedelta(minutes=1))

        session = _open_session(session_factory)
        assert any(reply.startswith(ack) for ack in ACK_RESPONSES)
        assert session.complaint_id in reply
        assert _entries(session_factory, session.id)[2:] == [
            ("user", "text", "My manager shouts at us"),
            ("bot", "text", reply),
        ]
        assert session_store.ensure_timezone(session.last_activity_at) == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_sentence_with_command_word_is_content(self, manager, session_factory):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        await manager.handle_message("U1", "This complaint is about parking", timestamp=T0)

        session = _open_session(session_factory)
        assert ("user", "text", "This complaint is about parking") in _entries(session_factory, session.id)

    @pytest.mark.asyncio
    async def test_media_is_appended_as_placeholder(self, manager, session_factory):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        await manager.handle_message("U1", "[image]", kind="media", timestamp=T0)

        session = _open_session(session_factory)
        assert ("user", "media", "[image]") in _entries(session_factory, session.id)

    @pytest.mark.asyncio
    async def test_transcript_full_asks_to_submit(self, manager, session_factory, test_settings):
        test_settings.transcript_max_entries = 6
        await manager.handle_message("U1", "/complain", timestamp=T0)
        await manager.handle_message("U1", "first detail", timestamp=T0)

        reply = await manager.handle_message("U1", "second detail", timestamp=T0)
        assert "maximum length" in reply

        reply = await manager.handle_message("U1", "/submit", timestamp=T0)
        assert "submitted successfully" in reply


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_without_content_is_rejected(self, manager, session_factory):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        reply = await manager.handle_message("U1", "/submit", timestamp=T0)

        session = _open_session(session_factory)
        assert session is not None
        assert "no details yet" in reply
        assert len(_entries(session_factory, session.id)) == 2
        assert manager.timers.is_armed("U1")

    @pytest.mark.asyncio
    async def test_submit_replies_before_analysis(self, manager, session_factory, provider, orchestrator):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        await manager.handle_message("U1", "Unpaid overtime every week", timestamp=T0)
        session_id = _open_session(session_factory).id

        reply = await manager.handle_message("U1", "/submit", timestamp=T0 + timedelta(minutes=2))

        assert "submitted successfully" in reply
        assert provider.calls == []
        assert not manager.timers.is_armed("U1")

        await orchestrator.drain()

        stored = _session(session_factory, session_id)
        assert stored.status == "submitted"
        assert stored.analysis_status == "completed"
        assert _entries(session_factory, session_id)[-1] == ("user", "command", "/submit")
        assert orchestrator.get_analysis(session_id) is not None


    @pytest.mark.asyncio
    async def test_text_after_start_command_counts_as_detail(self, manager, session_factory, orchestrator):
        await manager.handle_message("U1", "/complain my manager assigns unpaid overtime", timestamp=T0)
        session_id = _open_session(session_factory).id

        reply = await manager.handle_message("U1", "/submit", timestamp=T0)
        await orchestrator.drain()

        assert "submitted successfully" in reply
        assert _session(session_factory, session_id).status == "submitted"
        entries = _entries(session_factory, session_id)
        assert entries[0] == ("user", "command", "/complain")
        assert entries[1] == ("user", "text", "my manager assigns unpaid overtime")
        assert entries[-1] == ("user", "command", "/submit")

    @pytest.mark.asyncio
    async def test_text_after_submit_command_is_kept(self, manager, session_factory, orchestrator):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        session_id = _open_session(session_factory).id

        reply = await manager.handle_message("U1", "/submit the printer room has no ventilation", timestamp=T0)
        await orchestrator.drain()

        assert "submitted successfully" in reply
        assert _entries(session_factory, session_id)[-2:] == [
            ("user", "text", "the printer room has no ventilation"),
            ("user", "command", "/submit"),
        ]

    @pytest.mark.asyncio
    async def test_user_locks_are_released(self, manager, orchestrator):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        await manager.handle_message("U1", "Broken air conditioning", timestamp=T0)
        assert manager._locks == {}

        await manager.handle_message("U1", "/submit", timestamp=T0)
        await orchestrator.drain()

        assert manager._locks == {}
        assert manager._lock_users == {}

class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_closes_session(self, manager, session_factory, orchestrator):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        session_id = _open_session(session_factory).id

        reply = await manager.handle_message("U1", "ยกเลิก", timestamp=T0)
        await orchestrator.drain()

        assert reply == MSG_CANCELLED
        assert _session(session_factory, session_id).status == "cancelled"
        assert not manager.timers.is_armed("U1")
        assert orchestrator.get_analysis(session_id) is None


class TestWithoutSession:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,kind,expected",
        [
            ("hello", "text", MSG_WELCOME),
            ("/submit", "text", MSG_NO_SESSION_TO_SUBMIT),
            ("/whatever", "text", MSG_UNKNOWN_COMMAND),
            ("/status", "text", MSG_STATUS_NONE),
            ("I want to talk", "text", MSG_NO_SESSION_HINT),
            ("[image]", "media", MSG_MEDIA_NO_SESSION),
        ],
    )
    async def test_informational_replies(self, manager, session_factory, text, kind, expected):
        reply = await manager.handle_message("U1", text, kind=kind, timestamp=T0)

        assert reply == expected
        assert _open_session(session_factory) is None
        assert not manager.timers.is_armed("U1")

    @pytest.mark.asyncio
    async def test_help_lists_commands(self, manager):
        reply = await manager.handle_message("U1", "/help", timestamp=T0)
        assert "/complain" in reply
        assert "/submit" in reply

    @pytest.mark.asyncio
    async def test_status_reports_latest_session(self, manager):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        await manager.handle_message("U1", "/cancel", timestamp=T0)

        reply = await manager.handle_message("U1", "/status", timestamp=T0)
        assert reply == "Your most recent complaint CMP-2025-03-14-0001 is cancelled."


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_with_content_auto_submits(self, manager, transport, session_factory, orchestrator, test_settings):
        test_settings.session_timeout_seconds = 0.05
        await manager.handle_message("U1", "/complain")
        await manager.handle_message("U1", "The lift has been broken for a month")
        session_id = _open_session(session_factory).id

        await asyncio.sleep(0.5)
        await orchestrator.drain()

        stored = _session(session_factory, session_id)
        assert stored.status == "submitted"
        assert _entries(session_factory, session_id)[-1][:2] == ("system", "timeout")
        assert len(transport.pushes) == 1
        assert transport.pushes[0][0] == "U1"
        assert stored.complaint_id in transport.pushes[0][1]
        assert orchestrator.get_analysis(session_id) is not None
        assert not manager.timers.is_armed("U1")

    @pytest.mark.asyncio
    async def test_timeout_without_content_cancels_silently(self, manager, transport, session_factory, test_settings):
        test_settings.session_timeout_seconds = 0.05
        await manager.handle_message("U1", "/complain")
        session_id = _open_session(session_factory).id

        await asyncio.sleep(0.5)

        assert _session(session_factory, session_id).status == "cancelled"
        assert _entries(session_factory, session_id)[-1][:2] == ("system", "timeout")
        assert transport.pushes == []

    @pytest.mark.asyncio
    async def test_timeout_ignores_recent_activity(self, manager, session_factory):
        await manager.handle_message("U1", "/complain")
        session_id = _open_session(session_factory).id

        assert await manager.handle_timeout("U1", session_id) is None
        assert _session(session_factory, session_id).status == "open"

    @pytest.mark.asyncio
    async def test_sweep_closes_stale_sessions(self, manager, session_factory, orchestrator):
        stale = datetime.now(timezone.utc) - timedelta(hours=1)
        await manager.handle_message("U1", "/complain", timestamp=stale)
        await manager.handle_message("U1", "Noise in the office", timestamp=stale)
        await manager.handle_message("U2", "/complain")
        manager.timers.cancel_all()

        closed = await manager.sweep_expired_sessions()
        await orchestrator.drain()

        assert closed == 1
        assert _open_session(session_factory, "U1") is None
        assert _open_session(session_factory, "U2") is not None


class TestFailures:
    @pytest.mark.asyncio
    async def test_storage_error_gives_generic_apology(self, manager, session_factory):
        await manager.handle_message("U1", "/complain", timestamp=T0)
        session_id = _open_session(session_factory).id

        with patch("app.services.session_store.append_entry", side_effect=SQLAlchemyError("db down")):
            reply = await manager.handle_message("U1", "details", timestamp=T0)

        assert reply == MSG_GENERIC_ERROR
        assert _session(session_factory, session_id).status == "open"
        assert len(_entries(session_factory, session_id)) == 2


class TestOneOpenSessionProperty:
    @pytest.mark.asyncio
    async def test_random_sequences(self, manager, session_factory, orchestrator):
        rng = random.Random(20250314)
        users = ["U1", "U2", "U3"]
        ops = ["/complain", "ร้องเรียน", "/submit", "/cancel", "/status", "help", "hi", "/bogus", "text", "media", "timeout"]
        clock = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)

        for step in range(150):
            user = rng.choice(users)
            op = rng.choice(ops)
            clock += timedelta(seconds=rng.randint(1, 30))
            if op == "timeout":
                current = _open_session(session_factory, user)
                if current is not None:
                    await manager.handle_timeout(user, current.id)
            elif op == "text":
                await manager.handle_message(user, f"detail {step}", timestamp=clock)
            elif op == "media":
                await manager.handle_message(user, "[image]", kind="media", timestamp=clock)
            else:
                await manager.handle_message(user, op, timestamp=clock)
            await orchestrator.drain()

            db = session_factory()
            try:
                open_counts = dict(
                    db.query(ComplaintSession.user_id, func.count(ComplaintSession.id))
                    .filter(ComplaintSession.status == "open")
                    .group_by(ComplaintSession.user_id)
                    .all()
                )
            finally:
                db.close()
            for name in users:
                assert open_counts.get(name, 0) <= 1
                assert manager.timers.is_armed(name) == (open_counts.get(name, 0) == 1)

        db = session_factory()
        try:
            for session in db.query(ComplaintSession).all():
                seqs = [entry.seq for entry in session_store.list_entries(db, session.id)]
                assert seqs == list(range(1, session.entry_count + 1))
                if session.status == "submitted":
                    assert session_store.has_user_content(db, session.id)
            analyzed = db.query(AnalysisRecord.session_id).all()
            submitted = db.query(ComplaintSession.id).filter(ComplaintSession.status == "submitted").all()
            assert {row[0] for row in analyzed} == {row[0] for row in submitted}
        finally:
            db.close()
