from datetime import timedelta

import pytest

from osteo_sync.errors import PermissionDenied, StoreUnavailable
from osteo_sync.models import Consultation
from osteo_sync.sync import PointerSynchronizer, next_appointment_for
from osteo_sync.time_utils import format_pointer


@pytest.fixture
def synchronizer(store, tenant, audit, clock):
    return PointerSynchronizer(store, tenant, audit=audit, now=clock)


@pytest.mark.asyncio
async def test_scheduled_consultation_wins_over_completed(synchronizer, seed, store, now):
    seed("patients", "P1")
    seed("consultations", "c1", patientId="P1", date=now + timedelta(days=1), status="scheduled")
    seed("consultations", "c2", patientId="P1", date=now + timedelta(days=2), status="completed")

    await synchronizer.sync_patient_next_appointment("P1")

    patient = store.snapshot("patients")["P1"]
    assert patient["nextAppointment"] == "2025-03-11T09:00:00"
    assert patient["updatedAt"] == now


@pytest.mark.asyncio
async def test_only_cancelled_consultation_clears_pointer(synchronizer, seed, store, now):
    seed("patients", "P1", nextAppointment="2025-03-11T09:00:00")
    seed("consultations", "c1", patientId="P1", date=now + timedelta(days=1), status="cancelled")

    await synchronizer.sync_patient_next_appointment("P1")

    assert store.snapshot("patients")["P1"]["nextAppointment"] is None


@pytest.mark.asyncio
async def test_pointer_is_earliest_upcoming_non_terminal(synchronizer, seed, store, now):
    seed("patients", "P1", firstName="Ada")
    seed("consultations", "past", patientId="P1", date=now - timedelta(hours=1), status="draft")
    seed("consultations", "exactly-now", patientId="P1", date=now, status="draft")
    seed("consultations", "later", patientId="P1", date=now + timedelta(days=5), status="draft")
    seed("consultations", "soon", patientId="P1", date=(now + timedelta(hours=3)).isoformat(), status="draft")
    seed("consultations", "no-date", patientId="P1", status="draft")
    seed("consultations", "other-patient", patientId="P9", date=now + timedelta(minutes=5), status="draft")
    seed(
        "consultations",
        "other-tenant",
        patientId="P1",
        osteopathId="osteo-2",
        date=now + timedelta(minutes=5),
        status="draft",
    )

    patient = await synchronizer.sync_patient_next_appointment("P1")

    assert patient.next_appointment == format_pointer(now + timedelta(hours=3))
    stored = store.snapshot("patients")["P1"]
    assert stored["nextAppointment"] == "2025-03-10T12:00:00"
    assert stored["firstName"] == "Ada"


@pytest.mark.asyncio
async def test_sync_twice_writes_same_state(synchronizer, seed, store, now):
    seed("patients", "P1")
    seed("consultations", "c1", patientId="P1", date=now + timedelta(days=1, minutes=42, seconds=17))

    await synchronizer.sync_patient_next_appointment("P1")
    first = store.snapshot("patients")["P1"]
    await synchronizer.sync_patient_next_appointment("P1")

    assert store.snapshot("patients")["P1"] == first
    assert first["nextAppointment"] == "2025-03-11T09:42:00"


@pytest.mark.asyncio
async def test_missing_patient_is_skipped_without_write(synchronizer, store, caplog):
    result = await synchronizer.sync_patient_next_appointment("gone")

    assert result is None
    assert store.writes == []
    assert "skipping" in caplog.text


@pytest.mark.asyncio
async def test_patient_of_other_osteopath_is_refused(synchronizer, seed):
    seed("patients", "P1", osteopathId="osteo-2")

    with pytest.raises(PermissionDenied):
        await synchronizer.sync_patient_next_appointment("P1")


@pytest.mark.asyncio
async def test_store_failure_propagates(synchronizer, seed, store):
    seed("patients", "P1")
    store.fail_on.add(("put", "patients", "P1"))

    with pytest.raises(StoreUnavailable):
        await synchronizer.sync_patient_next_appointment("P1")


@pytest.mark.asyncio
async def test_sync_all_counts_failures_and_continues(synchronizer, seed, store, sink, now):
    for pid in ("P1", "P2", "P3"):
        seed("patients", pid)
        seed("consultations", f"c-{pid}", patientId=pid, date=now + timedelta(days=1))
    seed("patients", "other", osteopathId="osteo-2")
    store.fail_on.add(("put", "patients", "P2"))

    summary = await synchronizer.sync_all_patient_appointments()

    assert (summary.processed, summary.updated, summary.errors) == (3, 2, 1)
    patients = store.snapshot("patients")
    assert patients["P1"]["nextAppointment"] == "2025-03-11T09:00:00"
    assert "nextAppointment" not in patients["P2"]
    assert "nextAppointment" not in patients["other"]
    assert sink.events[-1].detail == {"processed": 3, "updated": 2, "errors": 1}


@pytest.mark.asyncio
async def test_sync_all_aborts_when_patients_cannot_be_listed(synchronizer, store, sink):
    store.fail_on.add(("query", "patients", "*"))

    with pytest.raises(StoreUnavailable):
        await synchronizer.sync_all_patient_appointments()

    assert sink.events[-1].outcome == "failure"


def test_next_appointment_for_empty_set(now):
    assert next_appointment_for([], now) is None


def test_next_appointment_treats_naive_dates_as_utc(now):
    consultation = Consultation(id="c", osteopathId="o", date=now.replace(tzinfo=None) + timedelta(days=1))
    assert next_appointment_for([consultation], now) == now + timedelta(days=1)


@pytest.mark.asyncio
async def test_unreadable_consultation_does_not_block_pointer(synchronizer, seed, store, now, caplog):
    seed("patients", "P1")
    seed("consultations", "good", patientId="P1", date=now + timedelta(days=1), status="draft")
    seed("consultations", "bad", patientId="P1", date="", status="draft")

    summary = await synchronizer.sync_all_patient_appointments()

    assert (summary.processed, summary.updated, summary.errors) == (1, 1, 0)
    assert store.snapshot("patients")["P1"]["nextAppointment"] == "2025-03-11T09:00:00"
    assert "Ignoring consultation bad" in caplog.text
