"""Fire-and-forget audit events for mutating operations.

Audit transport belongs to the surrounding application; the core only hands
one :class:`AuditEvent` per operation to an :class:`AuditSink`. A sink failure
is logged and never reaches the operation that produced the event.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .models import AUDIT_LOGS
from .store import EntityStore
from .time_utils import utc_now

logger = logging.getLogger(__name__)


class AuditEventKind(str, Enum):
    DATA_ACCESS = "DATA_ACCESS"
    DATA_CREATION = "DATA_CREATION"
    DATA_MODIFICATION = "DATA_MODIFICATION"
    DATA_DELETION = "DATA_DELETION"
    ADMIN_ACTION = "ADMIN_ACTION"


class Sensitivity(str, Enum):
    PUBLIC = "PUBLIC"
    INTERNAL = "INTERNAL"
    SENSITIVE = "SENSITIVE"
    HIGHLY_SENSITIVE = "HIGHLY_SENSITIVE"


class AuditEvent(BaseModel):
    event_kind: AuditEventKind = Field(alias="eventKind")
    resource_path: str = Field(alias="resourcePath")  # e.g. appointments/abc123
    action: str
    sensitivity: Sensitivity
    outcome: str  # started | success | failure
    detail: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink:
    """Write audit events to the ``osteo_sync.audit`` logger."""

    async def emit(self, event: AuditEvent) -> None:
        logger.info(
            "audit %s %s %s outcome=%s actor=%s detail=%s",
            event.event_kind,
            event.resource_path,
            event.action,
            event.outcome,
            event.actor,
            event.detail,
        )


class StoreAuditSink:
    """Persist audit events into the ``audit_logs`` collection."""

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    async def emit(self, event: AuditEvent) -> None:
        await self.store.put(AUDIT_LOGS, uuid4().hex, event.model_dump(by_alias=True))


class MemoryAuditSink:
    """Keep events in a list; handy in tests."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self, outcome: Optional[str] = None) -> List[str]:
        return [e.action for e in self.events if outcome is None or e.outcome == outcome]


class AuditLogger:
    """Build and emit audit events on behalf of one actor."""

    def __init__(self, sink: Optional[AuditSink] = None, actor: Optional[str] = None) -> None:
        self.sink = sink or LoggingAuditSink()
        self.actor = actor

    async def log(
        self,
        event_kind: AuditEventKind,
        resource_path: str,
        action: str,
        sensitivity: Sensitivity,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            event_kind=event_kind,
            resource_path=resource_path,
            action=action,
            sensitivity=sensitivity,
            outcome=outcome,
            detail=detail or {},
            actor=self.actor,
        )
        try:
            await self.sink.emit(event)
        except Exception:  # sink failures must not abort the audited operation
            logger.exception("Failed to emit audit event %s %s", action, resource_path)


def audit_from_env(store: EntityStore, actor: Optional[str] = None) -> AuditLogger:
    """Pick the sink named by ``AUDIT_SINK`` (``logging`` or ``store``)."""
    kind = os.getenv("AUDIT_SINK", "logging").lower()
    sink: AuditSink = StoreAuditSink(store) if kind == "store" else LoggingAuditSink()
    return AuditLogger(sink, actor=actor)
