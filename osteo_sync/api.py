import os
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .appointments import AppointmentManager
from .audit import audit_from_env
from .client import FirestoreStore
from .consultations import ConsultationManager
from .errors import (
    InvalidRecord,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    PracticeDataError,
    ReferenceNotFound,
    StoreUnavailable,
)
from .integrity import IntegrityVerifier, ReferenceRepairer
from .migration import MigrationReporter, StatusMigrator
from .models import (
    AppointmentCreate,
    AppointmentUpdate,
    BulkDeleteResult,
    ConsultationCreate,
    ConsultationUpdate,
    IntegrityReport,
    MigrationReport,
    MigrationResult,
    RepairResult,
    SyncSummary,
)
from .store import EntityStore, InMemoryStore
from .sync import PointerSynchronizer

ADMIN_KEY = os.getenv("ADMIN_API_KEY", "")
# HTTPBearer scheme so Swagger-UI can attach the Authorization header globally
auth_scheme = HTTPBearer(auto_error=False)

app = FastAPI(title="Osteo Sync Admin")

_offline_store = InMemoryStore()

# most specific first: ReferenceNotFound is a NotFound
_STATUS_BY_ERROR = (
    (ReferenceNotFound, 422),
    (InvalidRecord, 422),
    (NotFound, 404),
    (PermissionDenied, 403),
    (InvalidTransition, 409),
    (StoreUnavailable, 503),
)


def verify_admin(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)):
    """Validate Bearer token provided via Authorization header"""
    if credentials is None or credentials.scheme.lower() != "bearer" or credentials.credentials != ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_store() -> EntityStore:
    # Short-circuit in OFFLINE_MODE: keep everything in process memory
    if os.getenv("OFFLINE_MODE", "0") == "1":
        return _offline_store
    return FirestoreStore()


def tenant(osteopath_id: str = Query(..., description="Owning osteopath (tenant) id")) -> str:
    return osteopath_id


@app.exception_handler(PracticeDataError)
async def practice_error_handler(request, exc: PracticeDataError):
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# Pointer maintenance -------------------------------------------------------

@app.post("/patients/sync", dependencies=[Depends(verify_admin)], response_model=SyncSummary)
async def sync_all(osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)):
    """Recompute the next appointment of every patient."""
    sync = PointerSynchronizer(store, osteopath_id, audit=audit_from_env(store, osteopath_id))
    return await sync.sync_all_patient_appointments()


@app.post("/patients/{patient_id}/sync", dependencies=[Depends(verify_admin)])
async def sync_patient(patient_id: str, osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)):
    sync = PointerSynchronizer(store, osteopath_id, audit=audit_from_env(store, osteopath_id))
    patient = await sync.sync_patient_next_appointment(patient_id)
    if patient is None:
        return {"patientId": patient_id, "skipped": True, "nextAppointment": None}
    return {"patientId": patient_id, "skipped": False, "nextAppointment": patient.next_appointment}


# Integrity -----------------------------------------------------------------

@app.post("/integrity/verify", dependencies=[Depends(verify_admin)], response_model=IntegrityReport)
async def verify(osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)):
    return await IntegrityVerifier(store, osteopath_id, audit=audit_from_env(store, osteopath_id)).verify_data_integrity()


@app.post("/integrity/repair", dependencies=[Depends(verify_admin)], response_model=RepairResult)
async def repair(
    osteopath_id: str = Depends(tenant),
    resync: bool = Query(True, description="Resync all patient pointers after the repair"),
    store: EntityStore = Depends(get_store),
):
    """Delete records tagged by the last verification (irreversible)."""
    audit = audit_from_env(store, osteopath_id)
    result = await ReferenceRepairer(store, osteopath_id, audit=audit).repair_broken_references()
    if resync:
        await PointerSynchronizer(store, osteopath_id, audit=audit).sync_all_patient_appointments()
    return result


# Migration -----------------------------------------------------------------

@app.post("/migration/run", dependencies=[Depends(verify_admin)], response_model=MigrationResult)
async def run_migration(
    osteopath_id: str = Depends(tenant),
    actor: Optional[str] = Query(None, description="Who triggered the migration; defaults to the osteopath"),
    store: EntityStore = Depends(get_store),
):
    migrator = StatusMigrator(store, osteopath_id, actor=actor, audit=audit_from_env(store, actor or osteopath_id))
    return await migrator.migrate_test_data()


@app.get("/migration/report", dependencies=[Depends(verify_admin)], response_model=MigrationReport)
async def migration_report(osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)):
    return await MigrationReporter(store, osteopath_id, audit=audit_from_env(store, osteopath_id)).generate_migration_report()


# Consultations -------------------------------------------------------------

def _consultations(store: EntityStore, osteopath_id: str) -> ConsultationManager:
    return ConsultationManager(store, osteopath_id, audit=audit_from_env(store, osteopath_id))


@app.post("/consultations", dependencies=[Depends(verify_admin)], status_code=201)
async def create_consultation(
    req: ConsultationCreate, osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)
):
    consultation_id = await _consultations(store, osteopath_id).create_consultation(req.model_dump(by_alias=True))
    return {"consultationId": consultation_id}


@app.patch("/consultations/{consultation_id}", dependencies=[Depends(verify_admin)])
async def update_consultation(
    consultation_id: str,
    req: ConsultationUpdate,
    osteopath_id: str = Depends(tenant),
    store: EntityStore = Depends(get_store),
):
    updates = req.model_dump(by_alias=True, exclude_unset=True)
    consultation = await _consultations(store, osteopath_id).update_consultation(consultation_id, updates)
    return consultation.model_dump(by_alias=True, mode="json")


@app.delete("/consultations/{consultation_id}", dependencies=[Depends(verify_admin)], status_code=204)
async def delete_consultation(
    consultation_id: str, osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)
):
    await _consultations(store, osteopath_id).delete_consultation(consultation_id)
    return None


# Appointments --------------------------------------------------------------

def _manager(store: EntityStore, osteopath_id: str) -> AppointmentManager:
    return AppointmentManager(store, osteopath_id, audit=audit_from_env(store, osteopath_id))


@app.post("/appointments", dependencies=[Depends(verify_admin)], status_code=201)
async def create_appointment(
    req: AppointmentCreate, osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)
):
    appointment_id = await _manager(store, osteopath_id).create_appointment(req.model_dump(by_alias=True))
    return {"appointmentId": appointment_id}


@app.patch("/appointments/{appointment_id}", dependencies=[Depends(verify_admin)])
async def update_appointment(
    appointment_id: str,
    req: AppointmentUpdate,
    osteopath_id: str = Depends(tenant),
    store: EntityStore = Depends(get_store),
):
    updates = req.model_dump(by_alias=True, exclude_unset=True)
    appointment = await _manager(store, osteopath_id).update_appointment(appointment_id, updates)
    return appointment.model_dump(by_alias=True, mode="json")


@app.delete("/appointments/{appointment_id}", dependencies=[Depends(verify_admin)], status_code=204)
async def delete_appointment(appointment_id: str, osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)):
    await _manager(store, osteopath_id).delete_appointment(appointment_id)
    return None


@app.delete("/appointments", dependencies=[Depends(verify_admin)], response_model=BulkDeleteResult)
async def delete_all_appointments(osteopath_id: str = Depends(tenant), store: EntityStore = Depends(get_store)):
    return await _manager(store, osteopath_id).delete_all_appointments()
