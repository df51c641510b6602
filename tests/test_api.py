from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from osteo_sync import api
from osteo_sync.store import InMemoryStore

AUTH = {"Authorization": "Bearer secret"}
PARAMS = {"osteopath_id": "osteo-1"}


@pytest.fixture
def api_store():
    return InMemoryStore()


@pytest.fixture
def http(api_store, monkeypatch):
    monkeypatch.setattr(api, "ADMIN_KEY", "secret")
    monkeypatch.delenv("AUDIT_SINK", raising=False)
    api.app.dependency_overrides[api.get_store] = lambda: api_store
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()


def _upcoming(days):
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(microsecond=0)


def test_requires_admin_key(http):
    assert http.post("/patients/sync", params=PARAMS).status_code == 401
    resp = http.post("/patients/sync", params=PARAMS, headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401


def test_requires_tenant(http):
    assert http.post("/integrity/verify", headers=AUTH).status_code == 422


def test_verify_returns_camel_case_report(http, api_store):
    api_store.add("patients", "P1", {"osteopathId": "osteo-1"})
    api_store.add("appointments", "A1", {"osteopathId": "osteo-1", "patientId": "ghost"})

    resp = http.post("/integrity/verify", params=PARAMS, headers=AUTH)

    assert resp.status_code == 200
    assert resp.json() == {
        "brokenPatientReferences": 1,
        "brokenAppointmentReferences": 1,
        "brokenConsultationReferences": 0,
        "brokenInvoiceReferences": 0,
        "fixedReferences": 1,
    }
    assert api_store.snapshot("appointments")["A1"]["patientMissing"] is True


def test_appointment_lifecycle(http, api_store):
    api_store.add("patients", "P1", {"osteopathId": "osteo-1"})
    when = _upcoming(3)

    resp = http.post("/appointments", params=PARAMS, headers=AUTH, json={"patientId": "P1", "date": when.isoformat()})
    assert resp.status_code == 201
    appointment_id = resp.json()["appointmentId"]

    resp = http.patch(f"/appointments/{appointment_id}", params=PARAMS, headers=AUTH, json={"status": "confirmed"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "confirmed"

    resp = http.patch(f"/appointments/{appointment_id}", params=PARAMS, headers=AUTH, json={"status": "cancelled"})
    assert resp.json()["status"] == "cancelled"
    resp = http.patch(f"/appointments/{appointment_id}", params=PARAMS, headers=AUTH, json={"status": "confirmed"})
    assert resp.status_code == 409

    resp = http.delete(f"/appointments/{appointment_id}", params=PARAMS, headers=AUTH)
    assert resp.status_code == 204
    assert api_store.snapshot("appointments") == {}


def test_error_mapping(http, api_store):
    api_store.add("appointments", "A9", {"osteopathId": "osteo-2", "patientId": "P9", "date": _upcoming(1)})

    resp = http.post("/appointments", params=PARAMS, headers=AUTH, json={"patientId": "ghost", "date": _upcoming(1).isoformat()})
    assert resp.status_code == 422
    assert http.delete("/appointments/nope", params=PARAMS, headers=AUTH).status_code == 404
    assert http.delete("/appointments/A9", params=PARAMS, headers=AUTH).status_code == 403


def test_store_outage_maps_to_503(http, api_store):
    api_store.fail_on.add(("query", "patients", "*"))

    resp = http.post("/patients/sync", params=PARAMS, headers=AUTH)

    assert resp.status_code == 503


def test_sync_single_patient_reports_skip(http, api_store):
    resp = http.post("/patients/gone/sync", params=PARAMS, headers=AUTH)

    assert resp.json() == {"patientId": "gone", "skipped": True, "nextAppointment": None}


def test_migration_report_and_run(http, api_store):
    api_store.add("patients", "P1", {"osteopathId": "osteo-1", "isTestData": True})

    report = http.get("/migration/report", params=PARAMS, headers=AUTH).json()
    assert (report["testPatients"], report["realPatients"]) == (1, 0)

    resp = http.post("/migration/run", params={**PARAMS, "actor": "admin-7"}, headers=AUTH)
    assert resp.json()["patientsUpdated"] == 1
    assert api_store.snapshot("patients")["P1"]["migratedBy"] == "admin-7"


def test_consultation_changes_move_the_pointer(http, api_store):
    api_store.add("patients", "P1", {"osteopathId": "osteo-1"})
    when = _upcoming(4)

    resp = http.post("/consultations", params=PARAMS, headers=AUTH, json={"patientId": "P1", "date": when.isoformat()})
    assert resp.status_code == 201
    consultation_id = resp.json()["consultationId"]
    assert api_store.snapshot("patients")["P1"]["nextAppointment"] == when.strftime("%Y-%m-%dT%H:%M:00")

    resp = http.patch(f"/consultations/{consultation_id}", params=PARAMS, headers=AUTH, json={"status": "cancelled"})
    assert resp.json()["status"] == "cancelled"
    assert api_store.snapshot("patients")["P1"]["nextAppointment"] is None

    assert http.delete(f"/consultations/{consultation_id}", params=PARAMS, headers=AUTH).status_code == 204
    assert api_store.snapshot("consultations") == {}


def test_null_status_in_patch_leaves_status_alone(http, api_store):
    api_store.add("patients", "P1", {"osteopathId": "osteo-1"})
    api_store.add("appointments", "A1", {"osteopathId": "osteo-1", "patientId": "P1", "date": _upcoming(2)})

    resp = http.patch("/appointments/A1", params=PARAMS, headers=AUTH, json={"status": None})

    assert resp.status_code == 200
    assert resp.json()["status"] == "scheduled"


def test_unreadable_appointment_maps_to_422(http, api_store):
    api_store.add("appointments", "A1", {"osteopathId": "osteo-1", "patientId": "P1", "date": "garbage"})

    resp = http.patch("/appointments/A1", params=PARAMS, headers=AUTH, json={"notes": "call back"})

    assert resp.status_code == 422
