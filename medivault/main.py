import logging
import mimetypes
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Optional
from fastapi import FastAPI, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from contextlib import asynccontextmanager
from fastapi import status
from . import models, database
from .config import settings
from .errors import (
    DuplicateEmail,
    InvalidCredentials,
    MedivaultError,
    NotFound,
    StorageFailure,
    UnknownPatient,
    ValidationFailed,
)
from .models import RecordOwner, Role
from .schemas import (
    LabRegister,
    LabUpdate,
    Login,
    PatientRegister,
    PatientUpdate,
    RecordCreate,
    SessionContext,
)
from .services.attachments import AttachmentManager
from .services.credential_store import CredentialStore
from .services.profiles import ProfileStore
from .services.record_store import RecordStore, create_record_with_payload, resolve_owner

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    DuplicateEmail: status.HTTP_400_BAD_REQUEST,
    InvalidCredentials: status.HTTP_401_UNAUTHORIZED,
    UnknownPatient: status.HTTP_404_NOT_FOUND,
    NotFound: status.HTTP_404_NOT_FOUND,
    ValidationFailed: status.HTTP_400_BAD_REQUEST,
    StorageFailure: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        async with database.engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)
    except SQLAlchemyError as e:
        logger.error("Failed to create database tables: %s", e)
        raise
    get_attachment_manager()
    yield
    # Shutdown
    await database.engine.dispose()

app = FastAPI(lifespan=lifespan)


@app.exception_handler(MedivaultError)
async def medivault_error_handler(request: Request, exc: MedivaultError):
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=status_code, content={"detail": exc.detail})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error in %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Database error"},
    )


@lru_cache
def get_attachment_manager() -> AttachmentManager:
    return AttachmentManager(settings.UPLOAD_DIR)


def get_session_context(
    userRole: Role = Query(...),
    patientId: Optional[str] = Query(None),
    labId: Optional[int] = Query(None),
) -> SessionContext:
    return SessionContext(role=userRole, patient_id=patientId, lab_id=labId)


def _optional_int(value: Optional[str], field: str) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationFailed(f"Invalid {field}") from None


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationFailed("Date must be an ISO date (YYYY-MM-DD)") from None


async def _read_upload(file: UploadFile) -> bytes:
    if file.content_type not in settings.ALLOWED_CONTENT_TYPES:
        raise ValidationFailed("Unsupported file type")
    payload = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(payload) > settings.MAX_UPLOAD_BYTES:
        raise ValidationFailed("File too large")
    return payload


# Authentication

@app.post("/api/auth/patient/register", status_code=status.HTTP_201_CREATED)
async def register_patient(body: PatientRegister, db: AsyncSession = Depends(database.get_db)):
    patient = await CredentialStore(db).register_patient(
        body.first_name, body.last_name, body.email, body.password
    )
    return {"message": "Patient registered successfully", "patient": patient}


@app.post("/api/auth/lab/register", status_code=status.HTTP_201_CREATED)
async def register_lab(body: LabRegister, db: AsyncSession = Depends(database.get_db)):
    lab = await CredentialStore(db).register_lab(
        body.lab_name,
        body.email,
        body.password,
        phone=body.phone,
        address=body.address,
        license_number=body.license_number,
        description=body.description,
    )
    return {"message": "Laboratory registered successfully", "lab": lab}


@app.post("/api/auth/patient/login")
async def login_patient(body: Login, db: AsyncSession = Depends(database.get_db)):
    principal = await CredentialStore(db).authenticate(Role.PATIENT, body.email, body.password)
    return {"message": "Login successful", "user": principal.as_user()}


@app.post("/api/auth/lab/login")
async def login_lab(body: Login, db: AsyncSession = Depends(database.get_db)):
    principal = await CredentialStore(db).authenticate(Role.PATHLAB, body.email, body.password)
    return {"message": "Login successful", "user": principal.as_user()}


# Records

@app.get("/api/records")
async def list_records(
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    return await RecordStore(db).list_by_owner(ctx.role, ctx.scope_key)


@app.get("/api/records/patient/{patient_id}")
async def list_patient_records(
    patient_id: str,
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    store = RecordStore(db)
    if ctx.role == Role.PATHLAB:
        # A lab only re-displays what it authored for this patient
        return await store.list_by_patient(patient_id, lab_id=ctx.scope_key)
    if ctx.scope_key != patient_id:
        raise NotFound("Patient not found")
    return await store.list_by_patient(patient_id)


@app.get("/api/records/lab/{lab_id}")
async def list_lab_records(
    lab_id: int,
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    if ctx.role != Role.PATHLAB or ctx.scope_key != lab_id:
        raise NotFound("Laboratory not found")
    return await RecordStore(db).list_by_lab(lab_id)


@app.get("/api/records/{record_id}")
async def get_record(
    record_id: int,
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    return await RecordStore(db).get_scoped(record_id, ctx.role, ctx.scope_key)


def _require_own_authorship(ctx: SessionContext, data: RecordCreate):
    """Callers may only file records as themselves."""
    scope_key = ctx.scope_key
    owner = resolve_owner(data.owner)
    if ctx.role == Role.PATHLAB:
        if owner != RecordOwner.LAB or data.lab_id != scope_key:
            raise ValidationFailed("Labs may only file records under their own lab ID")
    elif owner != RecordOwner.PATIENT or (data.patient_id or "").strip() != scope_key:
        raise ValidationFailed("Patients may only file records for themselves")


@app.post("/api/records", status_code=status.HTTP_201_CREATED)
async def create_record(
    title: Optional[str] = Form(None),
    date: Optional[str] = Form(None),
    provider: Optional[str] = Form(None),
    doctor: Optional[str] = Form(None),
    type: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    notes: Optional[str] = Form(None),
    owner: Optional[str] = Form(None),
    patient_id: Optional[str] = Form(None),
    patientId: Optional[str] = Form(None),
    lab_id: Optional[str] = Form(None),
    labId: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
    attachments: AttachmentManager = Depends(get_attachment_manager),
):
    data = RecordCreate(
        title=title,
        date=_parse_date(date),
        provider=provider,
        doctor=doctor,
        type=type,
        category=category,
        notes=notes,
        owner=owner,
        patient_id=patient_id or patientId,
        lab_id=_optional_int(lab_id if lab_id is not None else labId, "lab ID"),
    )
    _require_own_authorship(ctx, data)

    payload = None
    original_name = None
    if file is not None and file.filename:
        payload = await _read_upload(file)
        original_name = file.filename

    return await create_record_with_payload(
        RecordStore(db), attachments, data, payload, original_name
    )


@app.get("/uploads/{stored_name}")
async def download_attachment(
    stored_name: str,
    inline: bool = Query(False),
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
    attachments: AttachmentManager = Depends(get_attachment_manager),
):
    await RecordStore(db).find_by_attachment(stored_name, ctx.role, ctx.scope_key)
    attachment = await attachments.retrieve(stored_name, inline=inline)
    media_type = mimetypes.guess_type(stored_name)[0] or "application/octet-stream"
    return StreamingResponse(
        attachment.iter_bytes(),
        media_type=media_type,
        headers={
            "Content-Disposition": attachment.content_disposition,
            "Content-Length": str(attachment.size),
            "Access-Control-Expose-Headers": "Content-Disposition",
        },
    )


# Patients and labs

@app.get("/api/patients/verify/{patient_id}")
async def verify_patient(patient_id: str, db: AsyncSession = Depends(database.get_db)):
    return await RecordStore(db).verify_patient(patient_id)


async def _own_patient_profile(profiles: ProfileStore, patient_pk: int, ctx: SessionContext):
    if ctx.role != Role.PATIENT:
        raise NotFound("Patient not found")
    profile = await profiles.get_profile(Role.PATIENT, patient_pk)
    if profile.patient_id != ctx.scope_key:
        raise NotFound("Patient not found")
    return profile


@app.get("/api/patients/{patient_pk}")
async def get_patient(
    patient_pk: int,
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    return await _own_patient_profile(ProfileStore(db), patient_pk, ctx)


@app.put("/api/patients/{patient_pk}")
async def update_patient(
    patient_pk: int,
    body: PatientUpdate,
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    profiles = ProfileStore(db)
    await _own_patient_profile(profiles, patient_pk, ctx)
    return await profiles.update_profile(Role.PATIENT, patient_pk, body.model_dump(exclude_unset=True))


def _require_own_lab(lab_pk: int, ctx: SessionContext):
    if ctx.role != Role.PATHLAB or ctx.scope_key != lab_pk:
        raise NotFound("Laboratory not found")


@app.get("/api/labs/{lab_pk}")
async def get_lab(
    lab_pk: int,
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    _require_own_lab(lab_pk, ctx)
    return await ProfileStore(db).get_profile(Role.PATHLAB, lab_pk)


@app.put("/api/labs/{lab_pk}")
async def update_lab(
    lab_pk: int,
    body: LabUpdate,
    ctx: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(database.get_db),
):
    _require_own_lab(lab_pk, ctx)
    return await ProfileStore(db).update_profile(Role.PATHLAB, lab_pk, body.model_dump(exclude_unset=True))


@app.get("/")
async def health_check():
    return {
        "status": "healthy",
        "version": "1.0.0",
        "database": "connected" if database.engine else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
