"""Consultation create, update and delete for one osteopath.

Consultations drive the ``nextAppointment`` pointer, so every mutation here is
followed by a pointer sync of the patients it touched. The consultation write
is the operation; a sync that fails afterwards is logged and left for the next
full sync to heal.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from .audit import AuditEventKind, AuditLogger, Sensitivity
from .errors import NotFound, PermissionDenied, ReferenceNotFound
from .models import CONSULTATIONS, Consultation, parse_record
from .store import EntityStore
from .sync import Clock, PointerSynchronizer
from .time_utils import utc_now

logger = logging.getLogger(__name__)


class ConsultationManager:
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

    async def _owned_consultation(self, consultation_id: str) -> Dict[str, Any]:
        doc = await self.store.get(CONSULTATIONS, consultation_id)
        if doc is None:
            raise NotFound(f"Consultation '{consultation_id}' not found")
        if doc.get("osteopathId") != self.osteopath_id:
            raise PermissionDenied(f"Consultation '{consultation_id}' belongs to another osteopath")
        return doc

    async def _require_patient(self, patient_id: Optional[str]) -> None:
        if not patient_id or await self.sync.load_patient(patient_id) is None:
            raise ReferenceNotFound(f"Patient '{patient_id}' not found")

    async def _resync(self, patient_ids: List[Optional[str]]) -> bool:
        synced = True
        for patient_id in dict.fromkeys(pid for pid in patient_ids if pid):
            try:
                await self.sync.sync_patient_next_appointment(patient_id)
            except Exception as exc:
                logger.warning("Pointer sync for patient %s failed after consultation change: %s", patient_id, exc)
                synced = False
        return synced

    async def _failed(self, kind: AuditEventKind, resource: str, action: str, exc: Exception) -> None:
        logger.error("Consultation %s on %s failed: %s", action, resource, exc)
        await self.audit.log(kind, resource, action, Sensitivity.SENSITIVE, "failure", {"error": str(exc)})

    async def create_consultation(self, data: Mapping[str, Any]) -> str:
        """Store a new consultation for an existing patient and return its id."""
        try:
            patient_id = data.get("patientId")
            await self._require_patient(patient_id)

            consultation_id = uuid4().hex
            stamp = self.now()
            consultation = parse_record(
                Consultation,
                {
                    **data,
                    "id": consultation_id,
                    "osteopathId": self.osteopath_id,
                    "createdAt": stamp,
                    "updatedAt": stamp,
                },
            )
            await self.store.put(CONSULTATIONS, consultation_id, consultation.to_document())
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_CREATION, CONSULTATIONS, "create", exc)
            raise

        synced = await self._resync([patient_id])
        await self.audit.log(
            AuditEventKind.DATA_CREATION,
            f"{CONSULTATIONS}/{consultation_id}",
            "create",
            Sensitivity.SENSITIVE,
            "success",
            {"patientId": patient_id, "pointerSynced": synced},
        )
        return consultation_id

    async def update_consultation(self, consultation_id: str, updates: Mapping[str, Any]) -> Consultation:
        """Apply a partial update; ``None`` values leave the stored field unchanged.

        Moving the consultation to another patient resyncs both patients.
        """
        resource = f"{CONSULTATIONS}/{consultation_id}"
        try:
            doc = await self._owned_consultation(consultation_id)
            changes = {key: value for key, value in updates.items() if value is not None}

            old_patient_id = doc.get("patientId")
            new_patient_id = changes.get("patientId")
            if new_patient_id and new_patient_id != old_patient_id:
                await self._require_patient(new_patient_id)

            updated = parse_record(
                Consultation,
                {**doc, **changes, "id": consultation_id, "osteopathId": self.osteopath_id, "updatedAt": self.now()},
            )
            await self.store.put(CONSULTATIONS, consultation_id, updated.to_document())
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_MODIFICATION, resource, "update", exc)
            raise

        synced = await self._resync([old_patient_id, updated.patient_id])
        await self.audit.log(
            AuditEventKind.DATA_MODIFICATION,
            resource,
            "update",
            Sensitivity.SENSITIVE,
            "success",
            {"fields": sorted(changes), "pointerSynced": synced},
        )
        return updated

    async def delete_consultation(self, consultation_id: str) -> None:
        resource = f"{CONSULTATIONS}/{consultation_id}"
        try:
            doc = await self._owned_consultation(consultation_id)
            patient_id = doc.get("patientId")
            await self.store.delete(CONSULTATIONS, consultation_id)
        except Exception as exc:
            await self._failed(AuditEventKind.DATA_DELETION, resource, "delete", exc)
            raise

        synced = await self._resync([patient_id])
        await self.audit.log(
            AuditEventKind.DATA_DELETION,
            resource,
            "delete",
            Sensitivity.SENSITIVE,
            "success",
            {"patientId": patient_id, "pointerSynced": synced},
        )
