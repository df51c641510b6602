"""Detect and remove records whose ``patientId`` no longer resolves to a patient.

Detection and removal are separate steps. :class:`IntegrityVerifier` only tags
orphans with ``patientMissing = true``; :class:`ReferenceRepairer` deletes what
was tagged. Both scan whole collections and are meant to be run by an operator,
not after every write.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

from .audit import AuditEventKind, AuditLogger, Sensitivity
from .models import (
    APPOINTMENTS,
    CONSULTATIONS,
    DEPENDENT_COLLECTIONS,
    INVOICES,
    PATIENTS,
    IntegrityReport,
    RepairResult,
    SyncSummary,
)
from .store import EntityStore
from .sync import Clock, PointerSynchronizer
from .time_utils import utc_now

logger = logging.getLogger(__name__)

_BROKEN_COUNTERS = {
    APPOINTMENTS: "broken_appointment_references",
    CONSULTATIONS: "broken_consultation_references",
    INVOICES: "broken_invoice_references",
}

_FIXED_COUNTERS = {
    APPOINTMENTS: "fixed_appointments",
    CONSULTATIONS: "fixed_consultations",
    INVOICES: "fixed_invoices",
}


class IntegrityVerifier:
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

    async def _set_flag(self, collection: str, doc: dict, missing: bool) -> bool:
        record = {**doc, "patientMissing": missing, "updatedAt": self.now()}
        try:
            await self.store.put(collection, doc["id"], record)
        except Exception:
            logger.exception("Failed to set patientMissing=%s on %s/%s", missing, collection, doc["id"])
            return False
        return True

    async def verify_data_integrity(self) -> IntegrityReport:
        """Tag every appointment, consultation and invoice pointing at a missing patient.

        Records whose patient does exist lose any ``patientMissing`` tag left by
        an earlier run, so after a run the tag marks exactly the current orphans.
        """
        await self.audit.log(
            AuditEventKind.DATA_ACCESS, "all", "verify_integrity", Sensitivity.INTERNAL, "started"
        )
        report = IntegrityReport()
        try:
            patients = await self.store.query_by_equality(PATIENTS, {"osteopathId": self.osteopath_id})
            patient_ids = {doc["id"] for doc in patients}

            for collection in DEPENDENT_COLLECTIONS:
                docs = await self.store.query_by_equality(collection, {"osteopathId": self.osteopath_id})
                for doc in docs:
                    if doc.get("patientId") in patient_ids:
                        if doc.get("patientMissing"):
                            await self._set_flag(collection, doc, False)
                        continue

                    counter = _BROKEN_COUNTERS[collection]
                    setattr(report, counter, getattr(report, counter) + 1)
                    report.broken_patient_references += 1
                    logger.info("%s/%s references missing patient %s", collection, doc["id"], doc.get("patientId"))
                    if await self._set_flag(collection, doc, True):
                        report.fixed_references += 1
        except Exception as exc:
            logger.error("Failed to verify data integrity: %s", exc)
            await self.audit.log(
                AuditEventKind.DATA_ACCESS,
                "all",
                "verify_integrity",
                Sensitivity.INTERNAL,
                "failure",
                {"error": str(exc)},
            )
            raise

        await self.audit.log(
            AuditEventKind.DATA_ACCESS,
            "all",
            "verify_integrity",
            Sensitivity.INTERNAL,
            "success",
            report.model_dump(),
        )
        return report


class ReferenceRepairer:
    """Permanently delete records tagged ``patientMissing`` by the verifier.

    Irreversible. Run it only right after :meth:`IntegrityVerifier.verify_data_integrity`.
    """

    def __init__(self, store: EntityStore, osteopath_id: str, *, audit: Optional[AuditLogger] = None) -> None:
        self.store = store
        self.osteopath_id = osteopath_id
        self.audit = audit or AuditLogger(actor=osteopath_id)

    async def repair_broken_references(self) -> RepairResult:
        await self.audit.log(
            AuditEventKind.DATA_DELETION, "all", "repair_references", Sensitivity.HIGHLY_SENSITIVE, "started"
        )
        result = RepairResult()
        try:
            for collection in DEPENDENT_COLLECTIONS:
                tagged = await self.store.query_by_equality(
                    collection, {"osteopathId": self.osteopath_id, "patientMissing": True}
                )
                for doc in tagged:
                    try:
                        await self.store.delete(collection, doc["id"])
                    except Exception:
                        logger.exception("Failed to delete orphaned %s/%s", collection, doc["id"])
                        result.errors += 1
                        result.failed_ids.append(f"{collection}/{doc['id']}")
                        continue
                    counter = _FIXED_COUNTERS[collection]
                    setattr(result, counter, getattr(result, counter) + 1)
        except Exception as exc:
            logger.error("Failed to repair broken references: %s", exc)
            # deletions already made are permanent, report them with the failure
            await self.audit.log(
                AuditEventKind.DATA_DELETION,
                "all",
                "repair_references",
                Sensitivity.HIGHLY_SENSITIVE,
                "failure",
                {"error": str(exc), **result.model_dump()},
            )
            raise

        logger.info(
            "Removed %d appointments, %d consultations, %d invoices with missing patients (%d errors)",
            result.fixed_appointments,
            result.fixed_consultations,
            result.fixed_invoices,
            result.errors,
        )
        await self.audit.log(
            AuditEventKind.DATA_DELETION,
            "all",
            "repair_references",
            Sensitivity.HIGHLY_SENSITIVE,
            "success",
            result.model_dump(),
        )
        return result


async def verify_and_repair(
    store: EntityStore,
    osteopath_id: str,
    *,
    audit: Optional[AuditLogger] = None,
    now: Clock = utc_now,
) -> Tuple[IntegrityReport, RepairResult, SyncSummary]:
    """Operator flow: tag orphans, delete them, then resync every patient pointer."""
    audit = audit or AuditLogger(actor=osteopath_id)
    report = await IntegrityVerifier(store, osteopath_id, audit=audit, now=now).verify_data_integrity()
    repaired = await ReferenceRepairer(store, osteopath_id, audit=audit).repair_broken_references()
    summary = await PointerSynchronizer(store, osteopath_id, audit=audit, now=now).sync_all_patient_appointments()
    return report, repaired, summary
