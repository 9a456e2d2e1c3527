from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from conftest import INSTANCE_KEY, REMOTE_JID
from wacanda.config import settings
from wacanda.database import get_db
from wacanda.main import app
from wacanda.models import Conversation, HandoffRequest, Message
from wacanda.routers.instances import get_reconciliation_engine
from wacanda.services.llm import LLMResponse
from wacanda.services.reconciliation_service import ReconciliationEngine
from wacanda.services.result import Result
from wacanda.services.retrieval_composer import RetrievalComposer, get_retrieval_composer


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upsert(message):
    return {"event": "messages.upsert", "instance": INSTANCE_KEY, "data": message}


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_db_check_counts(self, client, instance):
        data = client.get("/db-check").json()
        assert data["instances"] == 1
        assert data["messages"] == 0


class TestWebhook:
    def test_message_upsert_is_stored(self, client, db, instance, make_message):
        response = client.post("/webhook", json=_upsert(make_message("m1", text="Hello")))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["event"] == "MESSAGES_UPSERT"
        assert body["detail"]["inserted"] == 1
        assert db.query(Message).count() == 1

    def test_instance_in_path(self, client, db, instance, make_message):
        response = client.post(
            f"/webhook/{INSTANCE_KEY}", json={"event": "messages.upsert", "data": make_message("m1")}
        )

        assert response.json()["action"] == "messages_stored"
        assert db.query(Conversation).count() == 1

    def test_unknown_event_acknowledged(self, client, instance):
        response = client.post("/webhook", json={"event": "labels.edit", "instance": INSTANCE_KEY, "data": {}})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["action"] == "ignored"

    def test_alternate_field_names(self, client, instance):
        response = client.post("/webhook", json={"type": "connection.update", "instanceName": INSTANCE_KEY, "data": {"state": "open"}})

        assert response.json()["detail"] == {"status": "connected"}

    def test_invalid_json(self, client):
        response = client.post("/webhook", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_missing_event_name(self, client):
        response = client.post("/webhook", json={"instance": INSTANCE_KEY})

        assert response.json() == {
            "success": False,
            "message": "Invalid webhook payload",
            "event": None,
            "action": None,
            "detail": {},
        }

    def test_secret_required_when_configured(self, client, instance, make_message, monkeypatch):
        monkeypatch.setattr(settings, "webhook_secret", "s3cret")

        assert client.post("/webhook", json=_upsert(make_message("m1"))).status_code == 401
        assert (
            client.post("/webhook", json=_upsert(make_message("m1")), headers={"X-Webhook-Secret": "wrong"}).status_code
            == 401
        )
        accepted = client.post("/webhook?webhook_secret=s3cret", json=_upsert(make_message("m1")))
        assert accepted.status_code == 200

    def test_get_reports_reachable(self, client):
        response = client.get(f"/webhook/{INSTANCE_KEY}")
        assert response.json()["ok"] is True

    def test_auto_reply_scheduled_for_new_inbound(self, client, instance, make_message, monkeypatch):
        pipeline = Mock()
        monkeypatch.setattr(settings, "auto_reply_enabled", True)
        monkeypatch.setattr("wacanda.routers.webhook.run_pipeline_for_new_messages", pipeline)

        client.post("/webhook", json=_upsert(make_message("m1")))
        client.post("/webhook", json=_upsert(make_message("m1")))

        pipeline.assert_called_once()
        assert pipeline.call_args[0][0][0][1] == "m1"


class TestInstanceSync:
    def test_sync_runs_reconciliation(self, client, db, session_factory, instance, make_message):
        provider = Mock()
        provider.list_all_messages.return_value = Result.success([make_message("m1"), make_message("m2", timestamp=1700000100)])
        app.dependency_overrides[get_reconciliation_engine] = lambda: ReconciliationEngine(
            provider, session_factory, max_workers=1
        )

        response = client.post(f"/instances/{INSTANCE_KEY}/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["inserted_messages"] == 2
        assert db.query(Conversation).one().message_count == 2

    def test_conversation_sync(self, client, session_factory, instance, make_message):
        provider = Mock()
        provider.list_messages.return_value = Result.success([make_message("m1")])
        app.dependency_overrides[get_reconciliation_engine] = lambda: ReconciliationEngine(
            provider, session_factory, max_workers=1
        )

        response = client.post(f"/instances/{INSTANCE_KEY}/conversations/{REMOTE_JID}/sync")

        assert response.json()["inserted_messages"] == 1

    def test_unknown_instance(self, client):
        app.dependency_overrides[get_reconciliation_engine] = lambda: Mock()
        assert client.post("/instances/ghost/sync").status_code == 404


class TestRespondAndHandoffs:
    @pytest.fixture
    def composer(self):
        llm = Mock()
        llm.complete.return_value = LLMResponse(content="We can help with that.", model="gpt-4o-mini", usage={})
        composer = RetrievalComposer(llm, embed=Mock(return_value=[0.1]), search=Mock(return_value=[]))
        app.dependency_overrides[get_retrieval_composer] = lambda: composer
        return composer

    @pytest.fixture
    def conversation_id(self, client, db, instance, make_message):
        client.post("/webhook", json=_upsert(make_message("m1", text="I want a refund")))
        return db.query(Conversation).one().id

    def test_respond_stores_reply_and_hands_off(self, client, db, composer, conversation_id, monkeypatch):
        monkeypatch.setattr("wacanda.services.handoff_service.alert_warning", Mock())

        response = client.post(
            f"/conversations/{conversation_id}/respond",
            json={"message": "I want a refund", "external_message_id": "m1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["reply"] == "We can help with that."
        assert body["confidence"] == 0.3
        assert body["handoff"]["should_handoff"] is True
        assert body["handoff"]["urgency"] == "high"
        assert body["handoff_request_id"] is not None
        assert db.query(Message).count() == 2

    def test_respond_unknown_conversation(self, client, composer):
        response = client.post(
            "/conversations/00000000-0000-0000-0000-000000000000/respond", json={"message": "hi"}
        )
        assert response.status_code == 404

    def test_handoff_endpoints(self, client, db, owner_id, composer, conversation_id, monkeypatch):
        monkeypatch.setattr("wacanda.services.handoff_service.alert_warning", Mock())
        client.post(f"/conversations/{conversation_id}/respond", json={"message": "I want a refund"})
        handoff_id = db.query(HandoffRequest).one().id

        pending = client.get("/handoffs/pending", params={"owner_id": str(owner_id)}).json()
        assigned = client.post(f"/handoffs/{handoff_id}/assign", json={"agent_id": "agent-1"})
        resolved = client.post(f"/handoffs/{handoff_id}/resolve", json={"resolution_notes": "done"})
        again = client.post(f"/handoffs/{handoff_id}/assign", json={"agent_id": "agent-2"})
        stats = client.get("/handoffs/statistics", params={"owner_id": str(owner_id)}).json()

        assert [item["id"] for item in pending] == [str(handoff_id)]
        assert assigned.json()["status"] == "assigned"
        assert resolved.json()["status"] == "resolved"
        assert again.status_code == 409
        assert stats["total"] == 1
        assert stats["resolved"] == 1
