"""Appointment lifecycle: create, update and delete appointments for one osteopath.

Every mutation that can move a patient's earliest upcoming visit is followed by
a pointer sync. The appointment write always lands first, so an interruption
between the two writes leaves a stale pointer that the next sync repairs.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, Mapping, Optional
from uuid import uuid4

from .audit import AuditEventKind, AuditLogger, Sensitivity
from .errors import InvalidTransition, NotFound, PermissionDenied, ReferenceNotFound
from .models import (
    APPOINTMENTS,
    CONSULTATIONS,
    PATIENTS,
    Appointment,
    AppointmentStatus,
    BulkDeleteResult,
    Consultation,
    Patient,
    parse_record,
)
from .store import EntityStore
from .sync import Clock, PointerSynchronizer
from .time_utils import parse_pointer, utc_now

logger = logging.getLogger(__name__)

S = AppointmentStatus

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    S.SCHEDULED.value: frozenset({S.CONFIRMED.value, S.CANCELLED.value}),
    S.CONFIRMED.value: frozenset({S.COMPLETED.value, S.CANCELLED.value}),
    S.COMPLETED.value: frozenset(),
    S.CANCELLED.value: frozenset(),
}

# recording the consultation completes an appointment that was never confirmed
CONSULTATION_TRANSITIONS: Dict[str, frozenset] = {
    **ALLOWED_TRANSITIONS,
    S.SCHEDULED.value: ALLOWED_TRANSITIONS[S.SCHEDULED.value] | {S.COMPLETED.value},
}

TERMINAL_APPOINTMENT_STATUSES = frozenset({S.COMPLETED.value, S.CANCELLED.value})

HISTORICAL_DURATION = timedelta(hours=1)


def check_transition(current: str, requested: Any, table: Mapping[str, frozenset] = ALLOWED_TRANSITIONS) -> str:
    """Return the normalised target status or raise :class:`InvalidTransition`."""
    try:
        target = AppointmentStatus(requested).value
    except ValueError:
        raise InvalidTransition(current, str(requested)) from None
    if target != current and target not in table.get(current, frozenset()):
        raise InvalidTransition(current, target)
    return target


class AppointmentManager:
    def __init__(
        self,
        store: EntityStore,
        osteopath_id: str,
        *,
        audit: Optional[AuditLogger] = None,
        synchronizer: Optional[PointerSynchronizer] = None,
        now: Clock = utc_now,
    ) -> None:
        self.store = store
        self.osteopath_id = osteopath_id
        self.audit = audit or AuditLogger(actor=osteopath_id)
        self.now = now
        self.sync = synchronizer or PointerSynchronizer(store, osteopath_id, audit=self.audit, now=now)

    async def _failed(self, kind: AuditEventKind, resource: str, action: str, exc: Exception) -> None:
        logger.error("Appointment %s on %s failed: %s", action, resource, exc)
        await self.audit.log(kind, resource, action, Sensitivity.SENSITIVE, "failure", {"error": str(exc)})

    async def _owned_appointment(self, appointment_id: str) -> Dict[str, Any]:
        """Fetch the raw appointment document, checking only existence and ownership."""
        doc = await self.store.get(APPOINTMENTS, appointment_id)
        if doc is None:
            raise NotFound(f"Appointment '{appointment_id}' not found")
        if doc.get("osteopathId") != self.osteopath_id:
            raise PermissionDenied(f"Appointment '{appointment_id}' belongs to another osteopath")
        return doc

    async def _our_patient(self, patient_id: Optional[str]) -> Optional[Patient]:
        """Resolve a patient for a follow-up sync; a patient of another osteopath counts as absent."""
        if not patient_id:
            return None
        try:
            return await self.sync.load_patient(patient_id)
        except PermissionDenied:
            logger.warning("Patient %s belongs to another osteopath, skipping pointer sync", patient_id)
            return None

    async def create_appointment(self, data: Mapping[str, Any]) -> str:
        """Store a new appointment and return its id.

        When the appointment is upcoming and earlier than the patient's current
        pointer, the pointer is moved forward right away; the next full sync
        settles any difference with the consultations.
        """
        try:
            patient_id = data.get("patientId")
            patient = await self.sync.load_patient(patient_id) if patient_id else None
            if patient is None:
                raise ReferenceNotFound(f"Patient '{patient_id}' not found")

            appointment_id = uuid4().hex
            stamp = self.now()
            appointment = parse_record(
                Appointment,
                {
                    **data,
                    "id": appointment_id,
                    "osteopathId": self.osteopath_id,
                    "createdAt": stamp,
                    "updatedAt": stamp,
                    "createdBy": self.audit.actor or self.osteopath_id,
                },
            )
            await self.store.put(APPOINTMENTS, appointment_id, appointment.to_document())

            if appointment.status not in TERMINAL_APPOINTMENT_STATUSES and appointment.date > stamp:
                current = parse_pointer(patient.next_appointment)
                if current is None or appointment.date < current:
                    await self.sync.write_pointer(patient, appointment.date)
                    logger.info("Patient %s next appointment moved to %s", patient.id, patient.next_appointment)
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_CREATION, APPOINTMENTS, "create", exc)
            raise

        await self.audit.log(
            AuditEventKind.DATA_CREATION,
            f"{APPOINTMENTS}/{appointment_id}",
            "create",
            Sensitivity.SENSITIVE,
            "success",
            {"patientId": patient.id},
        )
        return appointment_id

    async def _resync(self, patient_id: Optional[str]) -> None:
        if await self._our_patient(patient_id) is not None:
            await self.sync.sync_patient_next_appointment(patient_id)

    async def update_appointment(self, appointment_id: str, updates: Mapping[str, Any]) -> Appointment:
        resource = f"{APPOINTMENTS}/{appointment_id}"
        try:
            doc = await self._owned_appointment(appointment_id)
            # a null field in a partial update means "leave unchanged"
            changes = {key: value for key, value in updates.items() if value is not None}

            old_patient_id = doc.get("patientId")
            new_patient_id = changes.get("patientId")
            patient_changed = bool(new_patient_id) and new_patient_id != old_patient_id
            if patient_changed and await self.sync.load_patient(new_patient_id) is None:
                raise ReferenceNotFound(f"Patient '{new_patient_id}' not found")

            if "status" in changes:
                changes["status"] = check_transition(doc.get("status") or S.SCHEDULED.value, changes["status"])

            updated = parse_record(
                Appointment,
                {**doc, **changes, "id": appointment_id, "osteopathId": self.osteopath_id, "updatedAt": self.now()},
            )
            await self.store.put(APPOINTMENTS, appointment_id, updated.to_document())

            if any(key in changes for key in ("date", "status", "patientId")):
                await self._resync(old_patient_id)
                if patient_changed:
                    await self.sync.sync_patient_next_appointment(new_patient_id)
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_MODIFICATION, resource, "update", exc)
            raise

        await self.audit.log(
            AuditEventKind.DATA_MODIFICATION,
            resource,
            "update",
            Sensitivity.SENSITIVE,
            "success",
            {"patientId": updated.patient_id, "fields": sorted(changes)},
        )
        return updated

    async def delete_appointment(self, appointment_id: str) -> None:
        resource = f"{APPOINTMENTS}/{appointment_id}"
        try:
            doc = await self._owned_appointment(appointment_id)
            patient_id = doc.get("patientId")
            patient = await self._our_patient(patient_id)
            if patient is None:
                logger.warning("Patient %s is not available, deleting appointment without pointer sync", patient_id)

            await self.store.delete(APPOINTMENTS, appointment_id)

            if patient is not None:
                await self.sync.sync_patient_next_appointment(patient.id)
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_DELETION, resource, "delete", exc)
            raise

        await self.audit.log(
            AuditEventKind.DATA_DELETION,
            resource,
            "delete",
            Sensitivity.SENSITIVE,
            "success",
            {"patientId": patient_id, "pointerSynced": patient is not None},
        )

    async def delete_all_appointments(self) -> BulkDeleteResult:
        """Delete every appointment of the osteopath, then resync each touched patient once."""
        await self.audit.log(
            AuditEventKind.DATA_DELETION, APPOINTMENTS, "delete_all", Sensitivity.HIGHLY_SENSITIVE, "started"
        )
        try:
            docs = await self.store.query_by_equality(APPOINTMENTS, {"osteopathId": self.osteopath_id})
        except Exception as exc:
            await self.audit.log(
                AuditEventKind.DATA_DELETION,
                APPOINTMENTS,
                "delete_all",
                Sensitivity.HIGHLY_SENSITIVE,
                "failure",
                {"error": str(exc)},
            )
            raise

        result = BulkDeleteResult()
        patient_ids: list[str] = []
        for doc in docs:
            patient_id = doc.get("patientId")
            if patient_id and patient_id not in patient_ids:
                patient_ids.append(patient_id)
            try:
                await self.store.delete(APPOINTMENTS, doc["id"])
            except Exception:
                logger.exception("Failed to delete appointment %s", doc["id"])
                result.errors += 1
                continue
            result.count += 1

        for patient_id in patient_ids:
            try:
                await self.sync.sync_patient_next_appointment(patient_id)
            except Exception:
                logger.exception("Failed to sync patient %s after bulk delete", patient_id)

        await self.audit.log(
            AuditEventKind.DATA_DELETION,
            APPOINTMENTS,
            "delete_all",
            Sensitivity.HIGHLY_SENSITIVE,
            "success",
            result.model_dump(),
        )
        return result

    async def add_consultation_from_appointment(self, appointment_id: str, data: Mapping[str, Any]) -> str:
        """Record the consultation held for an appointment and mark the appointment completed."""
        try:
            doc = await self._owned_appointment(appointment_id)
            appointment = parse_record(Appointment, doc)
            status = check_transition(appointment.status, S.COMPLETED, CONSULTATION_TRANSITIONS)
            patient = await self.sync.load_patient(appointment.patient_id)
            if patient is None:
                raise ReferenceNotFound(f"Patient '{appointment.patient_id}' no longer exists")

            consultation_id = uuid4().hex
            stamp = self.now()
            consultation = parse_record(
                Consultation,
                {
                    "date": appointment.date,
                    **({"patientName": doc["patientName"]} if "patientName" in doc else {}),
                    **data,
                    "id": consultation_id,
                    "appointmentId": appointment_id,
                    "patientId": patient.id,
                    "osteopathId": self.osteopath_id,
                    "createdAt": stamp,
                    "updatedAt": stamp,
                },
            )
            await self.store.put(CONSULTATIONS, consultation_id, consultation.to_document())

            appointment.status = status
            appointment.consultation_id = consultation_id
            record = appointment.to_document()
            record["updatedAt"] = stamp
            await self.store.put(APPOINTMENTS, appointment_id, record)

            await self.sync.sync_patient_next_appointment(patient.id)
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_CREATION, CONSULTATIONS, "create_from_appointment", exc)
            raise

        await self.audit.log(
            AuditEventKind.DATA_CREATION,
            f"{CONSULTATIONS}/{consultation_id}",
            "create_from_appointment",
            Sensitivity.SENSITIVE,
            "success",
            {"appointmentId": appointment_id, "patientId": patient.id},
        )
        return consultation_id

    async def create_appointment_from_consultation(self, consultation_id: str, data: Mapping[str, Any]) -> str:
        """Book a follow-up appointment linked back to an existing consultation."""
        try:
            doc = await self.store.get(CONSULTATIONS, consultation_id)
            if doc is None:
                raise NotFound(f"Consultation '{consultation_id}' not found")
            if doc.get("osteopathId") != self.osteopath_id:
                raise PermissionDenied(f"Consultation '{consultation_id}' belongs to another osteopath")
            consultation = parse_record(Consultation, doc)

            payload = {**data, "patientId": consultation.patient_id, "consultationId": consultation_id}
            if "patientName" in doc:
                payload["patientName"] = doc["patientName"]
            appointment_id = await self.create_appointment(payload)
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_CREATION, APPOINTMENTS, "create_from_consultation", exc)
            raise

        await self.audit.log(
            AuditEventKind.DATA_CREATION,
            f"{APPOINTMENTS}/{appointment_id}",
            "create_from_consultation",
            Sensitivity.SENSITIVE,
            "success",
            {"consultationId": consultation_id, "patientId": consultation.patient_id},
        )
        return appointment_id

    async def has_patient_appointments(self, patient_id: str) -> bool:
        docs = await self.store.query_by_equality(
            APPOINTMENTS, {"osteopathId": self.osteopath_id, "patientId": patient_id}
        )
        return bool(docs)

    async def create_historical_appointments(self, patient_id: str, past: Iterable[Mapping[str, Any]]) -> int:
        """Back-fill completed appointments from a patient's visit history.

        Each entry needs a ``date`` and may carry ``notes``. Entries that fail to
        store are logged and skipped; the number created is returned.
        """
        patient = await self.sync.load_patient(patient_id)
        if patient is None:
            raise ReferenceNotFound(f"Patient '{patient_id}' not found")

        created = 0
        for entry in past:
            try:
                appointment_id = uuid4().hex
                stamp = self.now()
                appointment = parse_record(
                    Appointment,
                    {
                        "id": appointment_id,
                        "osteopathId": self.osteopath_id,
                        "patientId": patient_id,
                        "date": entry["date"],
                        "status": S.COMPLETED.value,
                        "notes": entry.get("notes") or "Historical appointment",
                        "durationMinutes": int(HISTORICAL_DURATION.total_seconds() // 60),
                        "isHistorical": True,
                        "isTestData": patient.is_test_data,
                        "createdAt": stamp,
                        "updatedAt": stamp,
                    },
                )
                record = appointment.to_document()
                record["endTime"] = appointment.date + HISTORICAL_DURATION
                await self.store.put(APPOINTMENTS, appointment_id, record)
                created += 1
            except Exception:
                logger.exception("Failed to create historical appointment for patient %s", patient_id)

        await self.audit.log(
            AuditEventKind.DATA_CREATION,
            f"{PATIENTS}/{patient_id}",
            "create_historical_appointments",
            Sensitivity.SENSITIVE,
            "success",
            {"count": created},
        )
        return created
