"""Promote test records to production and report test/real counts per collection."""
from __future__ import annotations

import logging
from typing import Optional

from .audit import AuditEventKind, AuditLogger, Sensitivity
from .models import (
    ALL_COLLECTIONS,
    APPOINTMENTS,
    CONSULTATIONS,
    PATIENTS,
    MigrationReport,
    MigrationResult,
)
from .store import EntityStore
from .sync import Clock, PointerSynchronizer
from .time_utils import utc_now

logger = logging.getLogger(__name__)

# consultation documents carry clinical notes
_SENSITIVITY = {CONSULTATIONS: Sensitivity.HIGHLY_SENSITIVE}


class StatusMigrator:
    def __init__(
        self,
        store: EntityStore,
        osteopath_id: str,
        *,
        actor: Optional[str] = None,
        audit: Optional[AuditLogger] = None,
        synchronizer: Optional[PointerSynchronizer] = None,
        now: Clock = utc_now,
    ) -> None:
        self.store = store
        self.osteopath_id = osteopath_id
        self.actor = actor or osteopath_id
        self.audit = audit or AuditLogger(actor=self.actor)
        self.now = now
        self.sync = synchronizer or PointerSynchronizer(store, osteopath_id, audit=self.audit, now=now)

    async def _migrate_collection(self, collection: str) -> tuple[int, int]:
        """Flip ``isTestData`` on every test record of ``collection``; return (updated, errors)."""
        try:
            docs = await self.store.query_by_equality(
                collection, {"osteopathId": self.osteopath_id, "isTestData": True}
            )
        except Exception:
            logger.exception("Failed to list test %s", collection)
            return 0, 1

        updated = errors = 0
        for doc in docs:
            stamp = self.now()
            record = {**doc, "isTestData": False, "updatedAt": stamp, "migratedAt": stamp, "migratedBy": self.actor}
            try:
                await self.store.put(collection, doc["id"], record)
            except Exception:
                logger.exception("Failed to migrate %s/%s", collection, doc["id"])
                errors += 1
                continue
            updated += 1
            await self.audit.log(
                AuditEventKind.DATA_MODIFICATION,
                f"{collection}/{doc['id']}",
                "migrate_to_production",
                _SENSITIVITY.get(collection, Sensitivity.SENSITIVE),
                "success",
            )
        logger.info("Migrated %d %s to production (%d errors)", updated, collection, errors)
        return updated, errors

    async def migrate_test_data(self) -> MigrationResult:
        """Promote every test record of the osteopath, then resync all patient pointers."""
        await self.audit.log(
            AuditEventKind.DATA_MODIFICATION, "all", "migrate_test_data", Sensitivity.HIGHLY_SENSITIVE, "started"
        )
        result = MigrationResult()
        for collection in ALL_COLLECTIONS:
            updated, errors = await self._migrate_collection(collection)
            setattr(result, f"{collection}_updated", updated)
            result.errors += errors

        try:
            await self.sync.sync_all_patient_appointments()
        except Exception as exc:
            await self.audit.log(
                AuditEventKind.DATA_MODIFICATION,
                "all",
                "migrate_test_data",
                Sensitivity.HIGHLY_SENSITIVE,
                "failure",
                {"error": str(exc), **result.model_dump()},
            )
            raise

        await self.audit.log(
            AuditEventKind.DATA_MODIFICATION,
            "all",
            "migrate_test_data",
            Sensitivity.HIGHLY_SENSITIVE,
            "success",
            result.model_dump(),
        )
        return result


class MigrationReporter:
    """Read-only counts of test, real and dangling records."""

    def __init__(self, store: EntityStore, osteopath_id: str, *, audit: Optional[AuditLogger] = None) -> None:
        self.store = store
        self.osteopath_id = osteopath_id
        self.audit = audit or AuditLogger(actor=osteopath_id)

    async def generate_migration_report(self) -> MigrationReport:
        report = MigrationReport()
        try:
            for collection in ALL_COLLECTIONS:
                docs = await self.store.query_by_equality(collection, {"osteopathId": self.osteopath_id})
                test = sum(1 for doc in docs if doc.get("isTestData"))
                setattr(report, f"total_{collection}", len(docs))
                setattr(report, f"test_{collection}", test)
                setattr(report, f"real_{collection}", len(docs) - test)

                if collection == APPOINTMENTS:
                    report.broken_references = await self._count_unresolved(docs)
        except Exception as exc:
            logger.error("Failed to generate migration report: %s", exc)
            await self.audit.log(
                AuditEventKind.DATA_ACCESS,
                "all",
                "migration_report",
                Sensitivity.INTERNAL,
                "failure",
                {"error": str(exc)},
            )
            raise

        await self.audit.log(
            AuditEventKind.DATA_ACCESS, "all", "migration_report", Sensitivity.INTERNAL, "success", report.model_dump()
        )
        return report

    async def _count_unresolved(self, appointments: list) -> int:
        broken = 0
        known: dict[str, bool] = {}
        for doc in appointments:
            patient_id = doc.get("patientId")
            if not patient_id:
                broken += 1
                continue
            if patient_id not in known:
                known[patient_id] = await self.store.get(PATIENTS, patient_id) is not None
            if not known[patient_id]:
                broken += 1
        return broken
