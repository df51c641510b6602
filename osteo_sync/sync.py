"""Keep each patient's ``nextAppointment`` pointer in line with their consultations.

The pointer is a cached value: it is derived from the consultations collection
and rewritten as a whole by :class:`PointerSynchronizer`. Nothing else computes
it, so re-running a sync always heals a stale pointer.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from .audit import AuditEventKind, AuditLogger, Sensitivity
from .errors import InvalidRecord, PermissionDenied
from .models import CONSULTATIONS, PATIENTS, Consultation, Patient, SyncSummary, parse_record
from .store import EntityStore
from .time_utils import ensure_utc, format_pointer, utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def next_appointment_for(consultations: Iterable[Consultation], now: datetime) -> Optional[datetime]:
    """Return the earliest non-terminal consultation date strictly after ``now``."""
    now = ensure_utc(now)
    upcoming = [
        c.date
        for c in consultations
        if c.date is not None and c.date > now and not c.is_terminal
    ]
    return min(upcoming) if upcoming else None


class PointerSynchronizer:
    """Recompute the ``nextAppointment`` pointer for one osteopath's patients."""

    def __init__(
        self,
        store: EntityStore,
        osteopath_id: str,
        *,
        audit: Optional[AuditLogger] = None,
        now: Clock = utc_now,
    ) -> None:
        self.store = store
        self.osteopath_id = osteopath_id
        self.audit = audit or AuditLogger(actor=osteopath_id)
        self.now = now

    async def load_patient(self, patient_id: str) -> Optional[Patient]:
        doc = await self.store.get(PATIENTS, patient_id)
        if doc is None:
            return None
        if doc.get("osteopathId") != self.osteopath_id:
            raise PermissionDenied(f"Patient '{patient_id}' belongs to another osteopath")
        return parse_record(Patient, doc)

    async def write_pointer(self, patient: Patient, when: Optional[datetime]) -> Patient:
        """Store ``when`` as the patient's pointer. The only writer of ``nextAppointment``."""
        patient.next_appointment = format_pointer(when) if when is not None else None
        doc = patient.to_document()
        doc["updatedAt"] = self.now()
        await self.store.put(PATIENTS, patient.id, doc)
        return patient

    async def sync_patient_next_appointment(self, patient_id: str) -> Optional[Patient]:
        """Rewrite one patient's pointer from their consultations.

        Returns the updated patient, or ``None`` when the patient no longer
        exists (it may have been deleted concurrently; nothing is written).
        Store failures propagate to the caller.
        """
        patient = await self.load_patient(patient_id)
        if patient is None:
            logger.warning("Patient %s not found, skipping next appointment sync", patient_id)
            return None

        docs = await self.store.query_by_equality(
            CONSULTATIONS, {"osteopathId": self.osteopath_id, "patientId": patient_id}
        )
        consultations = []
        for doc in docs:
            try:
                consultations.append(parse_record(Consultation, doc))
            except InvalidRecord as exc:
                # unreadable dates never count as upcoming
                logger.warning("Ignoring consultation %s for patient %s: %s", doc.get("id"), patient_id, exc)
        upcoming = next_appointment_for(consultations, self.now())

        await self.write_pointer(patient, upcoming)
        logger.info("Patient %s next appointment set to %s", patient_id, patient.next_appointment)
        return patient

    async def sync_all_patient_appointments(self) -> SyncSummary:
        """Sync every patient of the osteopath, one at a time.

        A failure on one patient is counted and the batch carries on; failing
        to list the patients aborts the whole run.
        """
        try:
            patients = await self.store.query_by_equality(PATIENTS, {"osteopathId": self.osteopath_id})
        except Exception as exc:
            await self.audit.log(
                AuditEventKind.DATA_MODIFICATION,
                PATIENTS,
                "sync_appointments",
                Sensitivity.INTERNAL,
                "failure",
                {"error": str(exc)},
            )
            raise

        logger.info("Syncing next appointments for %d patients", len(patients))
        summary = SyncSummary()
        for doc in patients:
            summary.processed += 1
            try:
                if await self.sync_patient_next_appointment(doc["id"]) is not None:
                    summary.updated += 1
            except Exception:
                logger.exception("Error syncing patient %s", doc["id"])
                summary.errors += 1

        await self.audit.log(
            AuditEventKind.DATA_MODIFICATION,
            PATIENTS,
            "sync_appointments",
            Sensitivity.INTERNAL,
            "success",
            summary.model_dump(),
        )
        return summary
