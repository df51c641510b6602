import json, pathlib
from datetime import datetime, timezone

import pytest, respx, httpx
from osteo_sync import client as cl
from osteo_sync.errors import StoreUnavailable


# no credentials: talk to the emulator-style endpoint without a token
cl._CLIENT_ID = None
cl._CLIENT_SECRET = None

FIX = pathlib.Path(__file__).parent / "fixtures"
TOKEN_RESP = {"access_token": "fake", "expires_in": 3600}
BASE = "https://firestore.googleapis.com/v1"
DOCS = "/projects/osteo-app/databases/(default)/documents"


@pytest.fixture
def fs():
    return cl.FirestoreStore(base_url=BASE, project_id="osteo-app", database="(default)")


@pytest.mark.asyncio
async def test_get_decodes_typed_fields(fs):
    payload = json.loads((FIX / "patient_get.json").read_text())
    with respx.mock(base_url=BASE) as m:
        m.get(f"{DOCS}/patients/P1").respond(200, json=payload)

        doc = await fs.get("patients", "P1")

    assert doc["id"] == "P1"
    assert doc["isTestData"] is False
    assert doc["visits"] == 4
    assert doc["updatedAt"] == datetime(2025, 3, 10, 9, 0, 0, 123456, tzinfo=timezone.utc)
    assert doc["address"] == {"city": "Lyon"}
    assert doc["tags"] == ["sport", "back"]
    assert doc["notes"] is None


@pytest.mark.asyncio
async def test_get_missing_document_returns_none(fs):
    with respx.mock(base_url=BASE) as m:
        m.get(f"{DOCS}/patients/nope").respond(404, json={"error": {"code": 404, "status": "NOT_FOUND"}})

        assert await fs.get("patients", "nope") is None


@pytest.mark.asyncio
async def test_query_sends_and_filter(fs):
    rows = json.loads((FIX / "consultations_query.json").read_text())
    with respx.mock(base_url=BASE) as m:
        route = m.post(f"{DOCS}:runQuery").respond(200, json=rows)

        docs = await fs.query_by_equality("consultations", {"osteopathId": "osteo-1", "patientId": "P1"})

    body = json.loads(route.calls.last.request.content)
    query = body["structuredQuery"]
    assert query["from"] == [{"collectionId": "consultations"}]
    assert query["where"]["compositeFilter"]["op"] == "AND"
    assert query["where"]["compositeFilter"]["filters"][1] == {
        "fieldFilter": {"field": {"fieldPath": "patientId"}, "op": "EQUAL", "value": {"stringValue": "P1"}}
    }
    assert [d["id"] for d in docs] == ["C1", "C2"]
    assert docs[0]["date"] == datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_query_single_field_and_empty_result(fs):
    rows = json.loads((FIX / "empty_query.json").read_text())
    with respx.mock(base_url=BASE) as m:
        route = m.post(f"{DOCS}:runQuery").respond(200, json=rows)

        docs = await fs.query_by_equality("patients", {"osteopathId": "osteo-1"})

    where = json.loads(route.calls.last.request.content)["structuredQuery"]["where"]
    assert "fieldFilter" in where
    assert docs == []


@pytest.mark.asyncio
async def test_put_encodes_record_without_id(fs):
    with respx.mock(base_url=BASE) as m:
        route = m.patch(f"{DOCS}/patients/P1").respond(200, json={})

        await fs.put(
            "patients",
            "P1",
            {
                "id": "P1",
                "isTestData": False,
                "nextAppointment": None,
                "updatedAt": datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc),
            },
        )

    fields = json.loads(route.calls.last.request.content)["fields"]
    assert "id" not in fields
    assert fields["isTestData"] == {"booleanValue": False}
    assert fields["nextAppointment"] == {"nullValue": None}
    assert fields["updatedAt"] == {"timestampValue": "2025-03-10T09:00:00Z"}


@pytest.mark.asyncio
async def test_server_error_raises_store_unavailable(fs):
    with respx.mock(base_url=BASE) as m:
        m.delete(f"{DOCS}/appointments/A1").respond(503, text="backend unavailable")

        with pytest.raises(StoreUnavailable):
            await fs.delete("appointments", "A1")


@pytest.mark.asyncio
async def test_network_error_raises_store_unavailable(fs):
    with respx.mock(base_url=BASE) as m:
        m.get(f"{DOCS}/patients/P1").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(StoreUnavailable):
            await fs.get("patients", "P1")


@pytest.mark.asyncio
async def test_token_is_fetched_once_and_sent(fs, monkeypatch):
    monkeypatch.setattr(cl, "_CLIENT_ID", "dummy")
    monkeypatch.setattr(cl, "_CLIENT_SECRET", "dummy")
    # reset token cache so POST /token is invoked in this test
    cl._TOKEN_CACHE.update(token=None, exp=0)

    with respx.mock() as m:
        token = m.post(cl._TOKEN_URL).respond(200, json=TOKEN_RESP)
        doc = m.delete(f"{BASE}{DOCS}/invoices/I1").respond(200, json={})

        await fs.delete("invoices", "I1")
        await fs.delete("invoices", "I1")

    assert token.call_count == 1
    assert doc.calls.last.request.headers["Authorization"] == "Bearer fake"
    cl._TOKEN_CACHE.update(token=None, exp=0)


def test_unsupported_value_type_is_rejected():
    with pytest.raises(TypeError):
        cl.encode_value(object())
