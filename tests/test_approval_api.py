"""
Approval & workflow HTTP API tests.

Tests cover:
  - workflow CRUD endpoints and their error envelopes
  - initiate / decide endpoints, conflict and not-found responses
  - overdue, stats and manual sweep endpoints
  - identity resolution: gateway headers, bearer JWT, unknown tenant/user
  - health endpoints
"""

from datetime import timedelta

import pytest

from procurement.models import db
from procurement.models.auth import Tenant
from procurement.models.rfp import RFP
from procurement.models.workflow import ApprovalRequest
from procurement.services.jwt_service import generate_access_token
from procurement.utils.helpers import utcnow


STAGES = [
    {"name": "Draft Review", "approverRole": "procurement_manager", "slaHours": 24, "order": 1},
    {"name": "Legal Review", "approverRole": "legal_counsel", "slaHours": 48, "order": 2},
]


@pytest.fixture()
def headers(tenant, requester, auth_headers):
    return auth_headers(tenant.id, requester.id, ("procurement_manager",))


@pytest.fixture()
def wf(client, headers):
    res = client.post("/api/v1/workflows", json={"name": "Two Stage", "stages": STAGES}, headers=headers)
    assert res.status_code == 201
    return res.get_json()


@pytest.fixture()
def process(client, headers, rfp, wf):
    res = client.post("/api/v1/processes", json={"rfp_id": rfp.id, "workflow_id": wf["id"]}, headers=headers)
    assert res.status_code == 201
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# WORKFLOWS
# ═════════════════════════════════════════════════════════════════════════

class TestWorkflowAPI:
    def test_create_and_get(self, client, headers, wf):
        assert wf["name"] == "Two Stage"
        assert [s["name"] for s in wf["stages"]] == ["Draft Review", "Legal Review"]
        res = client.get(f"/api/v1/workflows/{wf['id']}", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["id"] == wf["id"]

    def test_validation_error_lists_problems(self, client, headers):
        res = client.post("/api/v1/workflows", json={
            "name": "Broken",
            "stages": [{"name": "A", "approverRole": "r", "slaHours": 0, "order": 1}],
        }, headers=headers)
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_CONSTRAINT"
        assert "Stage 1: SLA hours must be greater than 0" in body["details"]["errors"]

    def test_malformed_body(self, client, headers):
        res = client.post("/api/v1/workflows", data="not json", headers=headers,
                          content_type="application/json")
        assert res.status_code == 400

    def test_list_and_include_inactive(self, client, headers, wf):
        res = client.delete(f"/api/v1/workflows/{wf['id']}", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["workflow"]["is_active"] is False

        assert client.get("/api/v1/workflows", headers=headers).get_json() == []
        everything = client.get("/api/v1/workflows?include_inactive=true", headers=headers).get_json()
        assert [w["id"] for w in everything] == [wf["id"]]

    def test_update(self, client, headers, wf):
        res = client.put(f"/api/v1/workflows/{wf['id']}", json={"description": "updated"}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["description"] == "updated"

    def test_deactivate_in_flight_conflicts(self, client, headers, wf, process):
        res = client.delete(f"/api/v1/workflows/{wf['id']}", headers=headers)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_missing_workflow(self, client, headers):
        res = client.get("/api/v1/workflows/9999", headers=headers)
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ═════════════════════════════════════════════════════════════════════════
# PROCESSES & DECISIONS
# ═════════════════════════════════════════════════════════════════════════

class TestProcessAPI:
    def test_initiate_returns_requests(self, process):
        assert process["status"] == "in_progress"
        assert [r["status"] for r in process["requests"]] == ["pending", "waiting"]

    def test_initiate_requires_ids(self, client, headers):
        res = client.post("/api/v1/processes", json={"rfp_id": "one"}, headers=headers)
        assert res.status_code == 400

    def test_duplicate_initiate_conflicts(self, client, headers, rfp, wf, process):
        res = client.post("/api/v1/processes", json={"rfp_id": rfp.id, "workflow_id": wf["id"]},
                          headers=headers)
        assert res.status_code == 409

    def test_get_by_rfp(self, client, headers, rfp, process):
        res = client.get(f"/api/v1/rfps/{rfp.id}/approval-process", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["id"] == process["id"]

    def test_full_approval(self, client, headers, rfp, process):
        for req in process["requests"]:
            res = client.post(f"/api/v1/requests/{req['id']}/decide",
                              json={"decision": "approve"}, headers=headers)
            assert res.status_code == 200
        body = res.get_json()
        assert body["process"]["status"] == "completed"
        assert db.session.get(RFP, rfp.id).status == "approved"

    def test_reject(self, client, headers, rfp, process):
        first = process["requests"][0]
        res = client.post(f"/api/v1/requests/{first['id']}/decide",
                          json={"decision": "reject", "comments": "Budget missing"}, headers=headers)
        assert res.status_code == 200
        body = res.get_json()
        assert body["request"]["status"] == "rejected"
        assert body["request"]["comments"] == "Budget missing"
        assert body["process"]["status"] == "rejected"
        assert body["process"]["requests"][1]["status"] == "waiting"

    def test_decide_twice_conflicts(self, client, headers, process):
        first = process["requests"][0]
        url = f"/api/v1/requests/{first['id']}/decide"
        assert client.post(url, json={"decision": "approve"}, headers=headers).status_code == 200
        res = client.post(url, json={"decision": "approve"}, headers=headers)
        assert res.status_code == 409
        assert res.get_json()["error"] == "Approval request is not pending"

    def test_invalid_decision(self, client, headers, process):
        first = process["requests"][0]
        res = client.post(f"/api/v1/requests/{first['id']}/decide",
                          json={"decision": "defer"}, headers=headers)
        assert res.status_code == 400

    def test_list_requests_by_role(self, client, headers, process):
        res = client.get("/api/v1/requests?approver_role=legal_counsel", headers=headers)
        assert [r["stage_name"] for r in res.get_json()] == ["Legal Review"]

    def test_list_processes_invalid_status(self, client, headers):
        res = client.get("/api/v1/processes?status=paused", headers=headers)
        assert res.status_code == 422


class TestSlaAPI:
    def test_overdue_and_stats(self, client, headers, process):
        req = db.session.get(ApprovalRequest, process["requests"][0]["id"])
        req.due_at = utcnow() - timedelta(hours=3)
        db.session.commit()

        overdue = client.get("/api/v1/approvals/overdue", headers=headers).get_json()
        assert [r["id"] for r in overdue] == [req.id]
        assert overdue[0]["sla"]["is_compliant"] is False

        stats = client.get("/api/v1/approvals/stats", headers=headers).get_json()
        assert stats["active_processes"] == 1
        assert stats["overdue_requests"] == 1

        res = client.post("/api/v1/approvals/sla-sweep", headers=headers)
        assert res.status_code == 200
        assert res.get_json()["overdue_requests"] == 1


# ═════════════════════════════════════════════════════════════════════════
# IDENTITY
# ═════════════════════════════════════════════════════════════════════════

class TestIdentity:
    def test_missing_identity_is_401(self, client):
        res = client.get("/api/v1/workflows")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_write_requires_user(self, client, tenant, auth_headers):
        res = client.post("/api/v1/workflows", json={"name": "x", "stages": STAGES},
                          headers=auth_headers(tenant.id))
        assert res.status_code == 401

    def test_unknown_tenant_is_403(self, client, auth_headers):
        res = client.get("/api/v1/workflows", headers=auth_headers(9999))
        assert res.status_code == 403

    def test_inactive_tenant_is_403(self, client, tenant, auth_headers):
        db.session.get(Tenant, tenant.id).is_active = False
        db.session.commit()
        res = client.get("/api/v1/workflows", headers=auth_headers(tenant.id))
        assert res.status_code == 403

    def test_user_of_other_tenant_is_401(self, client, other_tenant, requester, auth_headers):
        res = client.get("/api/v1/workflows", headers=auth_headers(other_tenant.id, requester.id))
        assert res.status_code == 401

    def test_bearer_token(self, client, tenant, requester):
        token = generate_access_token(requester.id, tenant.id, ["procurement_manager"])
        res = client.post("/api/v1/workflows", json={"name": "Via JWT", "stages": STAGES},
                          headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 201
        assert res.get_json()["created_by"] == requester.id

    def test_invalid_bearer_token_falls_through(self, client):
        res = client.get("/api/v1/workflows", headers={"Authorization": "Bearer garbage"})
        assert res.status_code == 401

    def test_tenant_isolation(self, client, headers, wf, other_tenant, auth_headers):
        res = client.get(f"/api/v1/workflows/{wf['id']}", headers=auth_headers(other_tenant.id))
        assert res.status_code == 404


class TestHealth:
    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        body = res.get_json()
        assert body["checks"]["database"]["status"] == "ok"
        assert "sla_sweep" in body["checks"]["scheduler"]["jobs"]

    def test_request_id_header(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.headers.get("X-Request-ID")
