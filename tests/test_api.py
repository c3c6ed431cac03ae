"""
HTTP API tests - routing, caller identity, admin checks and error mapping.
"""

import pytest
from fastapi.testclient import TestClient

from gateway.api.main import app


@pytest.fixture
def client(db_path):
    return TestClient(app)


def as_user(user):
    return {"X-User-Id": str(user.id)}


class TestHealthAndIdentity:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db_health"] == True
        assert data["version"] == "1.0.0"

    def test_me(self, client, member):
        response = client.get("/me", headers=as_user(member))
        assert response.status_code == 200
        assert response.json() == {
            "id": member.id, "name": "Member User", "email": "member@example.com",
            "role": "member", "credits": 10,
        }

    def test_missing_identity(self, client):
        response = client.get("/me")
        assert response.status_code == 401
        assert response.json()["error_type"] == "UNAUTHENTICATED"

    def test_unknown_identity(self, client):
        response = client.get("/me", headers={"X-User-Id": "999"})
        assert response.status_code == 401

    def test_member_cannot_use_admin_routes(self, client, member):
        for method, path in [("get", "/rules"), ("get", "/users"), ("get", "/audit"),
                             ("get", "/approvals/pending"), ("post", "/escalations/process")]:
            response = getattr(client, method)(path, headers=as_user(member))
            assert response.status_code == 403, path
            assert response.json()["error_type"] == "FORBIDDEN"


class TestCommandRoutes:

    def test_submit_and_fetch(self, client, admin, member):
        client.post("/rules", json={"pattern": "^ls", "action": "AUTO_ACCEPT", "cost": 2}, headers=as_user(admin))

        response = client.post("/commands", json={"command_text": "ls -la"}, headers=as_user(member))
        assert response.status_code == 200
        result = response.json()
        assert result["status"] == "executed"
        assert result["cost"] == 2
        assert result["output"] == "Execution mocked: would run 'ls -la'"

        command = client.get(f"/commands/{result['command_id']}", headers=as_user(member)).json()
        assert command["status"] == "executed"
        assert client.get("/me", headers=as_user(member)).json()["credits"] == 8

    def test_empty_command_is_422(self, client, member):
        response = client.post("/commands", json={"command_text": "  "}, headers=as_user(member))
        assert response.status_code == 422

    def test_members_only_see_own_commands(self, client, admin, member):
        other = client.post("/users", json={"name": "Other", "initial_credits": 5}, headers=as_user(admin)).json()
        theirs = client.post("/commands", json={"command_text": "whoami"},
                             headers={"X-User-Id": str(other["id"])}).json()
        mine = client.post("/commands", json={"command_text": "whoami"}, headers=as_user(member)).json()

        listed = client.get("/commands", headers=as_user(member)).json()["commands"]
        assert [c["id"] for c in listed] == [mine["command_id"]]

        response = client.get(f"/commands/{theirs['command_id']}", headers=as_user(member))
        assert response.status_code == 404
        assert response.json()["error_type"] == "NOT_FOUND"

        all_commands = client.get("/commands", headers=as_user(admin)).json()["commands"]
        assert len(all_commands) == 2


class TestApprovalRoutes:

    @pytest.fixture
    def pending_id(self, client, admin, member):
        client.post("/rules", json={"pattern": "^deploy", "action": "REQUIRE_APPROVAL", "voting_threshold": 1},
                    headers=as_user(admin))
        return client.post("/commands", json={"command_text": "deploy"}, headers=as_user(member)).json()["command_id"]

    def test_pending_list(self, client, admin, pending_id):
        pending = client.get("/approvals/pending", headers=as_user(admin)).json()["pending"]
        assert [p["id"] for p in pending] == [pending_id]
        assert pending[0]["votes"] == {"approve": 0, "reject": 0, "total": 0}

    def test_vote_reaching_threshold_executes(self, client, admin, pending_id):
        response = client.post(f"/commands/{pending_id}/votes", json={"vote_type": "approve"}, headers=as_user(admin))
        assert response.status_code == 200
        assert response.json()["status"] == "executed"
        assert response.json()["votes"]["approve"] == 1

        again = client.post(f"/commands/{pending_id}/votes", json={"vote_type": "approve"}, headers=as_user(admin))
        assert again.status_code == 409
        assert again.json()["error_type"] == "NOT_PENDING_APPROVAL"

    def test_approve(self, client, admin, pending_id):
        response = client.post(f"/commands/{pending_id}/approve", json={"reason": "ok"}, headers=as_user(admin))
        assert response.status_code == 200
        assert response.json()["status"] == "executed"
        assert response.json()["approval_reason"] == "ok"

    def test_approve_with_insufficient_credits(self, client, admin, member, pending_id):
        client.post("/credits/adjust", json={"user_id": member.id, "amount": -10}, headers=as_user(admin))
        response = client.post(f"/commands/{pending_id}/approve", headers=as_user(admin))
        assert response.status_code == 402
        assert response.json()["error_type"] == "INSUFFICIENT_CREDITS"

    def test_reject(self, client, admin, pending_id):
        response = client.post(f"/commands/{pending_id}/reject", json={"reason": "nope"}, headers=as_user(admin))
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_reject_missing_command(self, client, admin):
        response = client.post("/commands/999/reject", json={"reason": "nope"}, headers=as_user(admin))
        assert response.status_code == 404


class TestRuleRoutes:

    def test_rule_lifecycle(self, client, admin):
        created = client.post("/rules", json={
            "pattern": "^git", "action": "AUTO_ACCEPT", "priority": 3,
            "schedule": {"type": "cron", "cron_expression": "* 9-17 * * 1-5"},
        }, headers=as_user(admin))
        assert created.status_code == 200
        rule = created.json()["rule"]
        assert rule["schedule"]["cron_expression"] == "* 9-17 * * 1-5"
        assert created.json()["conflicts"] == []

        patched = client.patch(f"/rules/{rule['id']}", json={"priority": 7}, headers=as_user(admin))
        assert patched.json()["priority"] == 7
        assert patched.json()["action"] == "AUTO_ACCEPT"

        rules = client.get("/rules", headers=as_user(admin)).json()["rules"]
        assert [r["id"] for r in rules] == [rule["id"]]

        deleted = client.delete(f"/rules/{rule['id']}", headers=as_user(admin))
        assert deleted.json() == {"success": True, "rule_id": rule["id"]}
        assert client.get("/rules", headers=as_user(admin)).json()["rules"] == []

    def test_create_reports_conflicts(self, client, admin):
        client.post("/rules", json={"pattern": "rm", "action": "AUTO_REJECT"}, headers=as_user(admin))
        response = client.post("/rules", json={"pattern": "rm -rf", "action": "AUTO_ACCEPT"}, headers=as_user(admin))
        assert response.status_code == 200
        assert [c["conflict_type"] for c in response.json()["conflicts"]] == ["conflicting_action"]

    def test_invalid_pattern(self, client, admin):
        response = client.post("/rules", json={"pattern": "(oops", "action": "AUTO_ACCEPT"}, headers=as_user(admin))
        assert response.status_code == 400
        assert response.json()["error_type"] == "INVALID_PATTERN"

    def test_conflict_check(self, client, admin):
        client.post("/rules", json={"pattern": "^ls", "action": "AUTO_ACCEPT"}, headers=as_user(admin))
        response = client.post("/rules/conflicts", json={"pattern": "^ls", "action": "AUTO_ACCEPT"},
                               headers=as_user(admin))
        assert [c["conflict_type"] for c in response.json()["conflicts"]] == ["exact_duplicate"]

    def test_update_missing_rule(self, client, admin):
        response = client.patch("/rules/999", json={"priority": 1}, headers=as_user(admin))
        assert response.status_code == 404


class TestAdminRoutes:

    def test_create_and_list_users(self, client, admin):
        created = client.post("/users", json={"name": "New", "email": "new@example.com", "initial_credits": 7},
                              headers=as_user(admin))
        assert created.status_code == 200
        assert created.json()["credits"] == 7

        users = client.get("/users", headers=as_user(admin)).json()["users"]
        assert {u["email"]: u["credits"] for u in users} == {"admin@example.com": 100, "new@example.com": 7}

    def test_duplicate_email(self, client, admin):
        response = client.post("/users", json={"name": "Again", "email": "admin@example.com"}, headers=as_user(admin))
        assert response.status_code == 400

    def test_adjust_credits(self, client, admin, member):
        response = client.post("/credits/adjust", json={"user_id": member.id, "amount": 5, "reason": "bonus"},
                               headers=as_user(admin))
        assert response.json() == {"user_id": member.id, "balance": 15}

    def test_audit_filters(self, client, admin, member):
        client.post("/credits/adjust", json={"user_id": member.id, "amount": 5}, headers=as_user(admin))
        logs = client.get("/audit", params={"user_id": member.id, "event_type": "CREDITS_UPDATED"},
                          headers=as_user(admin)).json()["logs"]
        assert len(logs) == 2
        assert logs[0]["details"]["amount"] == 5

        limited = client.get("/audit", params={"limit": 1}, headers=as_user(admin)).json()["logs"]
        assert len(limited) == 1

    def test_audit_unknown_event_type(self, client, admin):
        response = client.get("/audit", params={"event_type": "COMMAND_EXPLODED"}, headers=as_user(admin))
        assert response.status_code == 400
        body = response.json()
        assert body["error_type"] == "INVALID_FILTER"
        assert set(body) == {"error_type", "message", "details", "timestamp"}

    def test_error_model_documented(self, client):
        schema = client.get("/openapi.json").json()
        assert "ErrorResponse" in schema["components"]["schemas"]
        responses = schema["paths"]["/commands"]["post"]["responses"]
        assert responses["402"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")

    def test_process_escalations(self, client, admin):
        response = client.post("/escalations/process", headers=as_user(admin))
        assert response.json() == {"processed": 0, "skipped": 0, "failed": 0}
