import copy
import json
import os
import random
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WORKER_ENABLED", "false")

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401
from app.config import Settings
from app.database import Base
from app.services import session_store, user_directory
from app.services.enrichment_service import EnrichmentOrchestrator
from app.services.line_service import ChatTransport
from app.services.llm.base import LLMProvider, LLMResponse
from app.services.session_service import ComplaintSessionManager
from app.services.state_machine import SessionState
from app.services.timer_registry import InactivityTimerRegistry

VALID_ANALYSIS = {
    "sentiment_analysis": {"overall_sentiment": "negative", "sentiment_score": -0.7, "confidence_level": 0.9},
    "issue_classification": {
        "primary_category": "workload_stress",
        "secondary_categories": ["management_issues"],
        "severity_level": "high",
        "urgency_score": 8,
    },
    "key_phrases": {
        "keywords": [
            {"word": "overtime", "frequency": 3, "relevance_score": 0.9},
            {"word": "deadline", "frequency": 1, "relevance_score": 0.6},
        ],
        "key_phrases": ["unpaid overtime"],
        "emotional_indicators": ["exhausted"],
    },
    "ai_summary": "Employee reports sustained unpaid overtime.",
    "recommended_actions": ["Review overtime policy", "Meet with the team lead"],
}


class FakeTransport(ChatTransport):
    def __init__(self, profiles=None):
        self.replies: list[tuple[str, str]] = []
        self.pushes: list[tuple[str, str]] = []
        self.profiles = profiles or {}

    def reply(self, reply_token: str, text: str) -> dict:
        self.replies.append((reply_token, text))
        return {"ok": True}

    def push(self, user_id: str, text: str) -> dict:
        self.pushes.append((user_id, text))
        return {"ok": True}

    def get_profile(self, user_id: str):
        name = self.profiles.get(user_id)
        return {"displayName": name} if name else None


class FakeProvider(LLMProvider):
    """Scripted provider: pops queued responses (strings or exceptions), then repeats the default."""

    name = "fake"

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default if default is not None else json.dumps(VALID_ANALYSIS)
        self.calls: list[str] = []

    def generate(self, prompt, model=None, temperature=0.3, max_tokens=2000, timeout_seconds=None):
        self.calls.append(prompt)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        return LLMResponse(content=item, model="fake-model", usage={"total_tokens": 42})


@pytest.fixture
def valid_analysis():
    return copy.deepcopy(VALID_ANALYSIS)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        session_timeout_seconds=600,
        transcript_max_entries=500,
        analysis_max_attempts=2,
        analysis_retry_backoff_seconds=0,
        batch_delay_seconds=0,
        line_channel_access_token=None,
        worker_enabled=False,
    )


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'complaints.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def transport():
    return FakeTransport(profiles={"U1": "Somchai"})


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(session_factory, provider, test_settings):
    return EnrichmentOrchestrator(
        session_factory,
        provider_factory=lambda: provider,
        settings=test_settings,
        sleep=lambda _: None,
    )


@pytest_asyncio.fixture
async def manager(session_factory, transport, orchestrator, test_settings):
    manager = ComplaintSessionManager(
        session_factory,
        transport=transport,
        timers=InactivityTimerRegistry(),
        orchestrator=orchestrator,
        settings=test_settings,
        rng=random.Random(7),
    )
    yield manager
    manager.timers.cancel_all()
    await orchestrator.drain()


def make_submitted_session(
    db,
    user_id: str,
    texts: list[str],
    *,
    department: str = "Engineering",
    display_name: str = "Test User",
    now: datetime = None,
):
    """Store a submitted session with the given user messages; returns the session id."""
    now = now or datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)
    profile = user_directory.lookup_or_register(db, user_id, display_name)
    profile.department = department
    db.commit()

    session = session_store.create_session(db, user_id, department=department, command_text="/complain", now=now)
    for text in texts:
        session_store.append_entry(db, session, direction="user", kind="text", body=text, now=now)
        session_store.append_entry(db, session, direction="bot", kind="text", body="Got it!", now=now)
    session_store.append_entry(db, session, direction="user", kind="command", body="/submit", now=now)
    session_store.close_session(db, session.id, SessionState.SUBMITTED, now)
    db.commit()
    return session.id


@pytest.fixture
def submitted_session(db):
    def factory(user_id: str, texts: list[str], **kwargs):
        return make_submitted_session(db, user_id, texts, **kwargs)

    return factory


@pytest.fixture
def make_provider():
    return FakeProvider
