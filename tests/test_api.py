# tests/test_api.py
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from medflag.compliance_logger import ComplianceLogger
from medflag.engine import FlaggingEngine, get_flagging_engine
from medflag.exceptions import AuditIntegrityError
from medflag.main import app
from medflag.routers.errors import http_error
from medflag.schemas import ComplianceResult

from conftest import NOW, make_appointment

API = "/api/v1"


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_flagging_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def run_pass(client):
    response = client.post(f"{API}/flagging/run", json={"now": NOW.isoformat()})
    assert response.status_code == 200
    return response.json()


def parse_timestamp(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def test_health(client):
    response = client.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_summary_missing_is_404(client):
    response = client.get(f"{API}/patients/p1/flag-summary")
    assert response.status_code == 404


def test_flagging_run_and_reads(client, appointments):
    appointments.put(make_appointment())

    result = run_pass(client)
    assert result == {"processed_count": 1, "new_flags_count": 1, "errors": []}

    summary = client.get(f"{API}/patients/p1/flag-summary").json()
    assert summary["risk_level"] == "medium"
    assert summary["flags_by_severity"] == {"low": 0, "medium": 1, "high": 0}
    assert parse_timestamp(summary["last_flag_date"]) == NOW

    flags = client.get(f"{API}/patients/p1/flags").json()
    assert len(flags) == 1
    assert parse_timestamp(flags[0]["created_at"]).utcoffset().total_seconds() == 0

    alerts = client.get(f"{API}/doctors/d1/alerts", params={"unread_only": True}).json()
    assert [a["flag_id"] for a in alerts] == [flags[0]["id"]]

    patients = client.get(f"{API}/doctors/d1/flagged-patients").json()
    assert patients == [{
        "patient_id": "p1",
        "patient_name": "Ana Popescu",
        "flag_count": 1,
        "risk_level": "medium",
        "last_flag_date": summary["last_flag_date"],
    }]


def test_resolve_flow(client, appointments):
    appointments.put(make_appointment())
    run_pass(client)
    flag_id = client.get(f"{API}/patients/p1/flags").json()[0]["id"]
    body = {"resolution_notes": "Reached by phone", "resolved_by": "doc-1"}

    response = client.post(f"{API}/flags/{flag_id}/resolve", json=body)
    assert response.status_code == 200
    assert response.json()["status"] == "resolved"

    again = client.post(f"{API}/flags/{flag_id}/resolve", json=body)
    assert again.status_code == 409

    missing = client.post(f"{API}/flags/nope/resolve", json=body)
    assert missing.status_code == 404

    active = client.get(f"{API}/patients/p1/flags", params={"include_resolved": False}).json()
    assert active == []

    audit = client.get(f"{API}/flags/{flag_id}/audit").json()
    assert [e["action"] for e in audit] == ["created", "resolved"]


def test_resolve_by_system_is_rejected(client):
    response = client.post(
        f"{API}/flags/any/resolve",
        json={"resolution_notes": "x", "resolved_by": "cron", "resolved_by_type": "system"},
    )
    assert response.status_code == 422


def test_alert_transitions(client, appointments):
    appointments.put(make_appointment())
    run_pass(client)
    alert_id = client.get(f"{API}/doctors/d1/alerts").json()[0]["id"]

    read = client.post(f"{API}/alerts/{alert_id}/read").json()
    assert read["read"] is True
    assert client.post(f"{API}/alerts/{alert_id}/acknowledge").json()["acknowledged"] is True
    assert client.post(f"{API}/alerts/{alert_id}/dismiss").json()["dismissed"] is True
    assert client.get(f"{API}/doctors/d1/alerts", params={"unread_only": True}).json() == []
    assert client.post(f"{API}/alerts/unknown/read").status_code == 404


def test_manual_flag_and_amendment(client):
    created = client.post(f"{API}/flags", json={
        "patient_id": "p7",
        "patient_name": "Maria Ionescu",
        "doctor_id": "d1",
        "severity": "low",
        "description": "Did not confirm by phone",
        "performed_by": "doc-1",
    })
    assert created.status_code == 201
    flag_id = created.json()["id"]

    amended = client.post(f"{API}/flags/{flag_id}/amendments", json={
        "approved_changes": {"severity": "high"},
        "performed_by": "doc-1",
        "reason": "Escalated",
    })
    assert amended.status_code == 200
    assert amended.json()["version"] == 2

    versions = client.get(f"{API}/flags/{flag_id}/versions").json()
    assert [v["version_number"] for v in versions] == [1]

    rejected = client.post(f"{API}/flags/{flag_id}/amendments", json={
        "approved_changes": {"status": "resolved"},
        "performed_by": "doc-1",
        "reason": "Trying to close it",
    })
    assert rejected.status_code == 422


def test_compliance_failure_is_403(store, appointments, settings):
    def deny(patient_id, doctor_id):
        return ComplianceResult(compliant=False, errors=["Patient objected to processing"])

    engine = FlaggingEngine(store, appointments, settings=settings,
                            compliance=ComplianceLogger(deny), clock=lambda: NOW)
    app.dependency_overrides[get_flagging_engine] = lambda: engine
    try:
        with TestClient(app) as client:
            response = client.post(f"{API}/flags", json={
                "patient_id": "p7",
                "patient_name": "Maria Ionescu",
                "doctor_id": "d1",
                "description": "Manual",
                "performed_by": "doc-1",
            })
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    assert response.json()["detail"]["errors"] == ["Patient objected to processing"]


def test_configuration_endpoints(client):
    config = client.get(f"{API}/doctors/d1/flagging-configuration").json()
    assert config["response_timeout_hours"] == 2

    updated = client.put(f"{API}/doctors/d1/flagging-configuration", json={"response_timeout_hours": 6})
    assert updated.status_code == 200
    assert updated.json()["response_timeout_hours"] == 6

    empty = client.put(f"{API}/doctors/d1/flagging-configuration", json={})
    assert empty.status_code == 422


def test_doctor_flagging_summary_endpoint(client, appointments):
    appointments.put(make_appointment())
    run_pass(client)

    summary = client.get(f"{API}/doctors/d1/flagging-summary").json()

    assert summary["total_flagged"] == 1
    assert summary["high_risk"] == 0
    assert summary["needs_attention"] == 0
    [recent] = summary["recent_flags"]
    assert recent["patient_name"] == "Ana Popescu"
    assert recent["reason"] == "no_response_to_notifications"
    assert parse_timestamp(recent["flag_date"]) == NOW


def test_flagging_statistics_endpoint(client, appointments):
    appointments.put(make_appointment())
    run_pass(client)

    stats = client.get(f"{API}/flagging/statistics").json()

    assert stats == {
        "total_active_flags": 1,
        "flags_today": 1,
        "flags_this_week": 1,
        "top_reasons": [{"reason": "no_response_to_notifications", "count": 1}],
    }


def test_audit_integrity_error_maps_to_conflict():
    assert http_error(AuditIntegrityError("Audit entry x is immutable")).status_code == 409
