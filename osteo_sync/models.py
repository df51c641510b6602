from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidRecord
from .time_utils import ensure_utc

PATIENTS = "patients"
APPOINTMENTS = "appointments"
CONSULTATIONS = "consultations"
INVOICES = "invoices"
AUDIT_LOGS = "audit_logs"

# collections holding a patientId foreign key
DEPENDENT_COLLECTIONS = (APPOINTMENTS, CONSULTATIONS, INVOICES)
ALL_COLLECTIONS = (PATIENTS, APPOINTMENTS, CONSULTATIONS, INVOICES)


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ConsultationStatus(str, Enum):
    DRAFT = "draft"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# consultations in these states never count as an upcoming appointment
TERMINAL_CONSULTATION_STATUSES = frozenset(
    {ConsultationStatus.COMPLETED.value, ConsultationStatus.CANCELLED.value}
)


class StoredRecord(BaseModel):
    """Fields shared by every tenant-scoped document.

    Unknown fields are kept so a read-modify-write never drops data the
    surrounding application stores on the same document.
    """

    id: str
    osteopath_id: str = Field(alias="osteopathId")
    is_test_data: bool = Field(False, alias="isTestData")

    model_config = ConfigDict(populate_by_name=True, extra="allow", use_enum_values=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Patient(StoredRecord):
    next_appointment: Optional[str] = Field(None, alias="nextAppointment")  # YYYY-MM-DDThh:mm:00


class DependentRecord(StoredRecord):
    patient_id: Optional[str] = Field(None, alias="patientId")
    patient_missing: bool = Field(False, alias="patientMissing")


class Appointment(DependentRecord):
    patient_id: str = Field(alias="patientId")
    date: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED.value
    consultation_id: Optional[str] = Field(None, alias="consultationId")

    @field_validator("date")
    @classmethod
    def _date_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Consultation(DependentRecord):
    date: Optional[datetime] = None
    # stored data also carries "scheduled"/"confirmed", so keep the raw text
    status: str = ConsultationStatus.DRAFT.value
    appointment_id: Optional[str] = Field(None, alias="appointmentId")

    @field_validator("date")
    @classmethod
    def _date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CONSULTATION_STATUSES


class Invoice(DependentRecord):
    pass


RecordT = TypeVar("RecordT", bound=StoredRecord)


def parse_record(model: Type[RecordT], data: Mapping[str, Any]) -> RecordT:
    """Validate ``data`` as ``model``, raising :class:`InvalidRecord` instead of a pydantic error."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        name = model.__name__.lower()
        raise InvalidRecord(f"Invalid {name} {data.get('id')!r}: {exc.error_count()} field error(s)") from exc


class _ResultModel(BaseModel):
    """Counters returned by batch operations; serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncSummary(_ResultModel):
    processed: int = 0
    updated: int = 0
    errors: int = 0


class BulkDeleteResult(_ResultModel):
    count: int = 0
    errors: int = 0


class IntegrityReport(_ResultModel):
    broken_patient_references: int = 0
    broken_appointment_references: int = 0
    broken_consultation_references: int = 0
    broken_invoice_references: int = 0
    fixed_references: int = 0


class RepairResult(_ResultModel):
    fixed_appointments: int = 0
    fixed_consultations: int = 0
    fixed_invoices: int = 0
    errors: int = 0
    failed_ids: list[str] = Field(default_factory=list)  # "collection/id" of records left behind


class MigrationResult(_ResultModel):
    patients_updated: int = 0
    appointments_updated: int = 0
    consultations_updated: int = 0
    invoices_updated: int = 0
    errors: int = 0


class MigrationReport(_ResultModel):
    total_patients: int = 0
    total_appointments: int = 0
    total_consultations: int = 0
    total_invoices: int = 0
    test_patients: int = 0
    test_appointments: int = 0
    test_consultations: int = 0
    test_invoices: int = 0
    real_patients: int = 0
    real_appointments: int = 0
    real_consultations: int = 0
    real_invoices: int = 0
    broken_references: int = 0


class AppointmentCreate(BaseModel):
    """Payload accepted by the admin surface to book an appointment."""

    patient_id: str = Field(alias="patientId")
    date: datetime  # ISO-8601 dateTime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED.value
    consultation_id: Optional[str] = Field(None, alias="consultationId")
    is_test_data: bool = Field(False, alias="isTestData")

    model_config = ConfigDict(populate_by_name=True, extra="allow", use_enum_values=True)


class AppointmentUpdate(BaseModel):
    patient_id: Optional[str] = Field(None, alias="patientId")
    date: Optional[datetime] = None
    status: Optional[AppointmentStatus] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow", use_enum_values=True)


class ConsultationCreate(BaseModel):
    patient_id: str = Field(alias="patientId")
    date: datetime
    status: str = ConsultationStatus.DRAFT.value
    appointment_id: Optional[str] = Field(None, alias="appointmentId")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ConsultationUpdate(BaseModel):
    patient_id: Optional[str] = Field(None, alias="patientId")
    date: Optional[datetime] = None
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")
