# tests/api/test_api_routes.py
"""
HTTP-level tests with the database session mocked out

Coverage:
- Domain errors rendered as JSON with their status codes
- Carrier webhook always answers empty TwiML
- Stats degrade to zeros on database failure
- Upload and chat validation
- Worker agent routes, lookups and chat history

Run with: pytest tests/api/test_api_routes.py -v
"""

import pytest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from mcacrm.database import get_db
from mcacrm.main import app


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def client(mock_db):
    async def override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db
    # no context manager: startup (create_all, scheduler) is not run
    yield TestClient(app)
    app.dependency_overrides.clear()


def db_down():
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "OK"
        assert response.json()["registered_tables"] >= 10
        assert response.json()["websocket"]["total_connections"] == 0

    def test_stats_degrade_on_db_failure(self, client, mock_db):
        mock_db.execute.side_effect = db_down()

        response = client.get("/api/stats")

        assert response.status_code == 200
        assert response.json()["error"] is True
        assert response.json()["totalConversations"] == 0


class TestErrorRendering:

    def test_invalid_reference_is_400(self, client):
        response = client.get("/api/conversations/lead-abc")

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["fields"] == ["id"]

    def test_unknown_conversation_is_404(self, client):
        response = client.get("/api/conversations/1001")

        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "Conversation not found",
            "conversation_id": "1001",
        }

    def test_unknown_lender_roster_entry(self, client, mock_db):
        response = client.get("/api/lenders/6f1c6a56-8a43-4b0c-9d2a-3c5f1b9f7a10")

        assert response.status_code == 404

    def test_invalid_job_status(self, client):
        response = client.post(
            "/api/worker/jobs/6f1c6a56-8a43-4b0c-9d2a-3c5f1b9f7a10/update",
            json={"status": "done"},
        )

        assert response.status_code == 400
        assert response.json()["fields"] == ["status"]


class TestSmsWebhook:

    def test_unmatched_sender_still_acknowledged(self, client):
        response = client.post("/api/messages/webhook/receive", data={
            "From": "+19995550000", "To": "+18005550000", "Body": "hi", "MessageSid": "SM1",
        })

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert response.text == "<Response></Response>"

    def test_storage_failure_still_acknowledged(self, client, mock_db):
        mock_db.execute.side_effect = db_down()

        response = client.post("/api/messages/webhook/receive", data={
            "From": "+15165550123", "Body": "interested", "MessageSid": "SM2",
        })

        assert response.status_code == 200
        assert response.text == "<Response></Response>"


class TestValidation:

    def test_csv_upload_requires_csv_extension(self, client):
        response = client.post(
            "/api/csv-import/upload",
            files={"csvFile": ("leads.xlsx", b"data", "application/octet-stream")},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "File must be a CSV file"

    def test_chat_requires_query(self, client):
        response = client.post("/api/ai/chat", json={"query": "  "})

        assert response.status_code == 400
        assert response.json()["error"] == "Query is required"

    def test_bulk_delete_without_valid_ids(self, client):
        response = client.post("/api/conversations/bulk-delete", json={"conversationIds": ["x"]})

        assert response.status_code == 400


class TestWorkerRoutes:

    def test_empty_queue_returns_no_job(self, client):
        response = client.get("/api/worker/jobs/next")

        assert response.status_code == 200
        assert response.json() == {"success": True, "job": None}

    def test_list_jobs(self, client):
        response = client.get("/api/worker/jobs?status=queued")

        assert response.status_code == 200
        assert response.json() == {"success": True, "jobs": []}

    def test_batch_update_refuses_unlisted_columns(self, client):
        response = client.post("/api/worker/batch-update", json={
            "conversation_ids": ["6f1c6a56-8a43-4b0c-9d2a-3c5f1b9f7a10"],
            "updates": {"ssn": "123-45-6789"},
        })

        assert response.status_code == 400
        assert response.json()["error"] == "No valid update fields provided"

    def test_context_for_unknown_conversation(self, client):
        response = client.get("/api/worker/conversations/1001/context")

        assert response.status_code == 404

    def test_pending_leads_empty(self, client):
        response = client.get("/api/worker/leads/pending?state=NEW")

        assert response.status_code == 200
        assert response.json() == {"success": True, "leads": [], "total": 0}

    def test_websocket_emit_requires_event(self, client):
        response = client.post("/api/worker/websocket/emit", json={"data": {"x": 1}})

        assert response.status_code == 400
        assert response.json()["fields"] == ["event"]

    def test_websocket_emit_broadcasts(self, client):
        with patch('mcacrm.routers.worker.broadcast', new_callable=AsyncMock) as broadcast:
            response = client.post("/api/worker/websocket/emit", json={
                "event": "lead_updated", "data": {"conversation_id": "1001"},
            })

        assert response.json() == {"success": True, "event": "lead_updated", "emitted": True}
        broadcast.assert_awaited_once_with("lead_updated", {"conversation_id": "1001"})

    def test_websocket_emit_to_conversation_room(self, client):
        with patch('mcacrm.routers.worker.emit_to_conversation', new_callable=AsyncMock) as emit:
            client.post("/api/worker/websocket/emit", json={"event": "typing", "conversation_id": "abc"})

        emit.assert_awaited_once_with("typing", "abc", {})


class TestLookups:

    def test_all_lookups(self, client):
        response = client.get("/api/lookups")

        lookups = response.json()["lookups"]
        assert len(lookups["states"]) == 50
        assert {"value": "DEAD", "label": "Dead/Cold"} in lookups["conversation_states"]
        assert {"value": 3, "label": "Urgent"} in lookups["priorities"]
        assert lookups["industries"][-1] == "Other"

    def test_states(self, client):
        states = client.get("/api/lookups/states").json()["states"]

        assert states[0] == {"code": "AL", "name": "Alabama"}

    def test_industries(self, client):
        response = client.get("/api/lookups/industries")

        assert response.json()["success"] is True
        assert "Restaurant" in response.json()["industries"]


class TestAIChatHistory:

    def test_save_requires_role_and_content(self, client):
        response = client.post("/api/ai/chat/1001/messages", json={"role": "user"})

        assert response.status_code == 400
        assert response.json()["error"] == "Role and content are required"

    def test_history_for_unknown_conversation(self, client):
        response = client.get("/api/ai/chat/1001")

        assert response.status_code == 404
