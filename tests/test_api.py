"""
HTTP facade tests - envelopes, status codes and the read endpoints.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from storeagent.agents.llm import RuleBasedToolCaller
from storeagent.api.main import Services, create_app


@pytest.fixture
def services(db_path):
    return Services.build(db_path, caller=RuleBasedToolCaller())


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def order(services):
    return services.store.create_order("grace@example.com", [{"sku": "CAP-03", "qty": 1}], 15.0,
                                       status="DELIVERED")


class TestHealthAndStatus:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["dbHealth"] is True
        assert data["actions"] == 24

    def test_agent_status(self, client):
        data = client.get("/agent/status").json()

        assert data["status"] == "online"
        assert data["approvals"] == {"pending": 0, "consumed": 0, "expired": 0}
        assert data["logs"]["total"] == 0

    def test_actions_catalog(self, client):
        data = client.get("/agent/actions").json()

        names = {a["name"] for a in data["actions"]}
        assert "processRefund" in names
        assert data["count"] == len(data["actions"])


class TestCommandEndpoint:

    def test_direct_safe_command(self, client):
        response = client.post("/agent/command", json={"command": "clearCache", "taskId": "t-1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "SUCCESS"
        assert body["taskId"] == "t-1"
        assert "lastCacheClear" in body["data"]

    def test_refund_requires_approval_then_executes_once(self, client, services, order):
        payload = {"command": "processRefund", "params": {"orderId": order.id, "reason": "damaged"}}

        first = client.post("/agent/command", json=payload)
        assert first.status_code == 202
        body = first.json()
        assert body["requiredAction"] == "processRefund"
        approval_id = body["approvalId"]

        second = client.post("/agent/command", json={**payload, "approvalId": approval_id})
        assert second.status_code == 200
        assert services.store.get_order(order.id).status == "REFUNDED"

        third = client.post("/agent/command", json={**payload, "approvalId": approval_id})
        assert third.status_code == 409
        assert third.json()["error"]["code"] == "APPROVAL_ALREADY_CONSUMED"

    def test_instruction_is_routed(self, client):
        response = client.post("/agent/command", json={"command": "set maintenance mode on"})

        assert response.status_code == 202
        assert response.json()["requiredAction"] == "toggleMaintenance"

    def test_instruction_resent_with_approval_and_same_task_id(self, client, services):
        payload = {"command": "set maintenance mode on", "taskId": "op-7"}

        first = client.post("/agent/command", json=payload)
        assert first.status_code == 202
        approval_id = first.json()["approvalId"]

        second = client.post("/agent/command", json={**payload, "approvalId": approval_id})
        assert second.status_code == 200
        assert second.json()["taskId"] == "op-7"
        assert services.store.get_site_config().maintenance_mode is True

        logs = client.get("/logs", params={"taskId": "op-7"}).json()
        assert logs["count"] == 2

    def test_conversational_reply(self, client):
        response = client.post("/agent/command", json={"prompt": "hello"})

        assert response.status_code == 200
        assert response.json()["data"] == {"reply": RuleBasedToolCaller.GREETING_REPLY}

    def test_missing_command(self, client):
        response = client.post("/agent/command", json={})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_action_in_actions_list(self, client):
        response = client.post("/agent/command", json={"actions": [{"action": "launchRocket"}]})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "UNKNOWN_ACTION"

    def test_invalid_params(self, client):
        response = client.post("/agent/command", json={
            "command": "updateProductStock", "params": {"productId": 1, "stock": -3}
        })
        assert response.status_code == 422

    def test_partial_multi_action(self, client):
        response = client.post("/agent/command", json={"actions": [
            {"action": "clearCache"},
            {"action": "getOrder", "params": {"orderId": 404}},
        ]})

        assert response.status_code == 207
        assert [i["status"] for i in response.json()["items"]] == ["SUCCESS", "FAILED"]


class TestApprovalEndpoints:

    def test_create_get_and_list(self, client, order):
        response = client.post("/approvals", json={
            "action": "processRefund",
            "params": {"orderId": order.id, "reason": "damaged"},
            "reason": "Customer complaint",
            "requester": "ops",
        })
        assert response.status_code == 201
        approval = response.json()
        assert approval["state"] == "PENDING"
        assert approval["actionName"] == "processRefund"

        fetched = client.get(f"/approvals/{approval['id']}").json()
        assert fetched["id"] == approval["id"]

        pending = client.get("/approvals/pending").json()
        assert pending["count"] == 1

    def test_safe_action_cannot_be_approved(self, client):
        response = client.post("/approvals", json={"action": "clearCache", "reason": "routine"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "NOT_SENSITIVE"

    def test_unknown_approval(self, client):
        assert client.get("/approvals/missing").status_code == 404


class TestLogEndpoints:

    def test_logs_after_command(self, client):
        result = client.post("/agent/command", json={"command": "clearCache"}).json()

        top_level = client.get("/logs", params={"topLevel": True}).json()
        assert top_level["count"] == 1

        entry = client.get(f"/logs/{result['logId']}").json()
        assert entry["status"] == "SUCCESS"
        assert len(entry["children"]) == 1

        stats = client.get("/logs/stats").json()
        assert stats["total"] == 2
        assert stats["successRate"] == "100.00%"

    def test_invalid_status_filter(self, client):
        assert client.get("/logs", params={"status": "DONE"}).status_code == 422

    def test_missing_log(self, client):
        assert client.get("/logs/999").status_code == 404


class TestBulkSchedule:

    def test_bulk_schedule(self, client, services):
        posts = [services.store.create_post(f"Post {i}") for i in range(3)]
        start = (datetime.now() + timedelta(days=1)).isoformat()

        response = client.post("/posts/bulk-schedule", json={
            "postIds": [p.id for p in posts], "startDate": start, "interval": "12h"
        })

        assert response.status_code == 200
        assert len(response.json()["items"]) == 3
        assert all(services.store.get_post(p.id).status == "SCHEDULED" for p in posts)

    def test_bad_interval(self, client):
        start = (datetime.now() + timedelta(days=1)).isoformat()
        response = client.post("/posts/bulk-schedule", json={"postIds": [1], "startDate": start, "interval": "1w"})

        assert response.status_code == 422
