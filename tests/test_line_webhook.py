from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.schemas.line import LineEvent, LineWebhookBody
from app.services.session_service import get_session_manager


def _text_event(text, user_id="U1", reply_token="rt-1", timestamp=1741942800000):
    return {
        "type": "message",
        "timestamp": timestamp,
        "replyToken": reply_token,
        "source": {"type": "user", "userId": user_id},
        "message": {"id": "m1", "type": "text", "text": text},
    }


class TestLineSchemas:
    def test_text_event(self):
        event = LineEvent(**_text_event("/complain"))

        assert event.user_id == "U1"
        assert event.is_text is True
        assert event.is_media is False
        assert event.sent_at == datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)

    def test_media_event(self):
        event = LineEvent(type="message", source={"type": "user", "userId": "U1"}, message={"type": "image"})

        assert event.is_media is True
        assert event.is_text is False
        assert event.sent_at is None

    def test_follow_event_has_no_message(self):
        event = LineEvent(type="follow", source={"type": "user", "userId": "U1"})

        assert event.is_text is False
        assert event.is_media is False

    def test_body_keeps_unknown_fields(self):
        body = LineWebhookBody(destination="Uabc", events=[{**_text_event("hi"), "mode": "active"}])
        assert body.events[0].model_extra["mode"] == "active"


@pytest.fixture
def manager():
    manager = Mock()
    manager.handle_message = AsyncMock()
    return manager


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_session_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestLineWebhook:
    def test_text_message_is_routed(self, client, manager):
        response = client.post("/line/webhook", json={"events": [_text_event("/complain")]})

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "processed": 1}
        manager.handle_message.assert_awaited_once_with(
            "U1",
            "/complain",
            reply_token="rt-1",
            timestamp=datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc),
        )

    def test_media_message_uses_placeholder(self, client, manager):
        event = _text_event(None)
        event["message"] = {"id": "m2", "type": "image"}

        response = client.post("/line/webhook", json={"events": [event]})

        assert response.json()["processed"] == 1
        args, kwargs = manager.handle_message.call_args
        assert args == ("U1", "[image]")
        assert kwargs["kind"] == "media"

    def test_group_and_unsupported_events_are_ignored(self, client, manager):
        group_event = _text_event("hello")
        group_event["source"] = {"type": "group", "groupId": "G1", "userId": "U1"}
        follow_event = {"type": "follow", "source": {"type": "user", "userId": "U1"}}

        response = client.post("/line/webhook", json={"events": [group_event, follow_event]})

        assert response.json() == {"status": "ok", "processed": 0}
        manager.handle_message.assert_not_awaited()

    def test_invalid_json_is_acknowledged(self, client, manager):
        response = client.post(
            "/line/webhook", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        manager.handle_message.assert_not_awaited()

    def test_invalid_body_is_acknowledged(self, client):
        response = client.post("/line/webhook", json={"events": "nope"})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.parametrize("payload", [[], "events", 42, None])
    def test_non_object_body_is_acknowledged(self, client, manager, payload):
        response = client.post("/line/webhook", json=payload)

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "processed": 0}
        manager.handle_message.assert_not_awaited()

    def test_failing_event_does_not_block_others(self, client, manager):
        manager.handle_message.side_effect = [RuntimeError("boom"), None]

        response = client.post(
            "/line/webhook",
            json={"events": [_text_event("first", user_id="U1"), _text_event("second", user_id="U2")]},
        )

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        assert manager.handle_message.await_count == 2
