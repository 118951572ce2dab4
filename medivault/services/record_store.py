"""
Scoped access to the shared pool of records.

Every list operation here requires a scope key: a lab sees the records it
authored, a patient sees the records filed under its identifier. There is
deliberately no operation that lists every record.

Records are written once through a single validation gate, ``create_record``,
which is also where a lab's reference to a patient identifier is confirmed.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from ..errors import NotFound, OrphanedAttachment, UnknownPatient, ValidationFailed
from ..models import Lab, Patient, Record, RecordOwner, Role
from ..schemas import (
    PatientVerification,
    RecordCreate,
    RecordOut,
    RecordWithLab,
    RecordWithPatient,
)
from .attachments import AttachmentManager, StoredAttachment

logger = logging.getLogger(__name__)

# Values callers send for ``owner``; the web client still uses "user" and "pathlab"
OWNER_ALIASES = {
    "patient": RecordOwner.PATIENT,
    "user": RecordOwner.PATIENT,
    "lab": RecordOwner.LAB,
    "pathlab": RecordOwner.LAB,
}


@dataclass(frozen=True)
class PatientAuthored:
    patient_identifier: str


@dataclass(frozen=True)
class LabAuthored:
    patient_identifier: str
    lab_id: int


Authorship = Union[PatientAuthored, LabAuthored]


def resolve_owner(owner: Optional[str]) -> RecordOwner:
    try:
        return OWNER_ALIASES[(owner or "").strip().lower()]
    except KeyError:
        raise ValidationFailed("Owner must be patient or lab") from None


def _lab_scope(scope_key) -> int:
    try:
        return int(scope_key)
    except (TypeError, ValueError):
        raise ValidationFailed("Invalid lab ID") from None


def _patient_scope(scope_key) -> str:
    if not isinstance(scope_key, str) or not scope_key.strip():
        raise ValidationFailed("Invalid patient ID")
    return scope_key.strip()


def _scope_filter(role, scope_key):
    try:
        role = Role(role)
    except ValueError:
        raise ValidationFailed("Unknown role") from None
    if role == Role.PATHLAB:
        return Record.lab_id == _lab_scope(scope_key)
    return Record.patient_id == _patient_scope(scope_key)


_NEWEST_FIRST = (Record.created_at.desc(), Record.id.desc())


class RecordStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def verify_patient(self, patient_identifier: str) -> PatientVerification:
        """Confirm a patient identifier exists, returning only non-sensitive fields."""
        result = await self.db.execute(
            select(Patient.patient_id, Patient.first_name, Patient.last_name).filter(
                Patient.patient_id == (patient_identifier or "").strip()
            )
        )
        row = result.first()
        if row is None:
            raise NotFound("Patient not found")
        return PatientVerification(
            patient_id=row.patient_id, first_name=row.first_name, last_name=row.last_name
        )

    async def validate(self, data: RecordCreate) -> Authorship:
        """Check a creation request and decide who authored it.

        Runs before any attachment is written so a rejected request never
        leaves a blob behind.
        """
        if not (data.title or "").strip():
            raise ValidationFailed("Title is required")
        if data.date is None:
            raise ValidationFailed("Date is required")

        owner = resolve_owner(data.owner)
        patient_identifier = (data.patient_id or "").strip()
        if not patient_identifier:
            raise ValidationFailed("Patient ID is required")

        if owner == RecordOwner.PATIENT:
            if data.lab_id is not None:
                raise ValidationFailed("Patient records cannot carry a lab ID")
        elif data.lab_id is None:
            raise ValidationFailed("Lab ID is required for lab records")
        else:
            lab = await self.db.get(Lab, data.lab_id)
            if lab is None:
                raise ValidationFailed("Unknown lab")

        try:
            await self.verify_patient(patient_identifier)
        except NotFound:
            logger.info("Rejected record for unknown patient %s", patient_identifier)
            raise UnknownPatient() from None

        if owner == RecordOwner.LAB:
            return LabAuthored(patient_identifier=patient_identifier, lab_id=data.lab_id)
        return PatientAuthored(patient_identifier=patient_identifier)

    async def insert(
        self,
        authorship: Authorship,
        data: RecordCreate,
        attachment: Optional[StoredAttachment] = None,
    ) -> RecordOut:
        record = Record(
            title=data.title.strip(),
            date=data.date,
            provider=data.provider,
            doctor=data.doctor,
            type=data.type,
            category=data.category,
            notes=data.notes,
            patient_id=authorship.patient_identifier,
        )
        if isinstance(authorship, LabAuthored):
            record.owner = RecordOwner.LAB.value
            record.lab_id = authorship.lab_id
        else:
            record.owner = RecordOwner.PATIENT.value
            record.lab_id = None
        if attachment is not None:
            record.file_name = attachment.stored_name
            record.file_size = attachment.size

        self.db.add(record)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        await self.db.refresh(record)
        logger.info(
            "Created %s record %s for patient %s", record.owner, record.id, record.patient_id
        )
        return RecordOut.model_validate(record)

    async def create_record(
        self, data: RecordCreate, attachment: Optional[StoredAttachment] = None
    ) -> RecordOut:
        authorship = await self.validate(data)
        return await self.insert(authorship, data, attachment)

    async def list_by_owner(self, role, scope_key) -> List[RecordOut]:
        query = select(Record).filter(_scope_filter(role, scope_key)).order_by(*_NEWEST_FIRST)
        result = await self.db.execute(query)
        return [RecordOut.model_validate(r) for r in result.scalars().all()]

    async def list_by_patient(
        self, patient_identifier: str, lab_id: Optional[int] = None
    ) -> List[RecordWithLab]:
        """A patient's records with the issuing lab's name.

        Passing ``lab_id`` narrows the list to what that lab authored.
        """
        query = (
            select(Record, Lab.lab_name)
            .outerjoin(Lab, Record.lab_id == Lab.id)
            .filter(Record.patient_id == _patient_scope(patient_identifier))
        )
        if lab_id is not None:
            query = query.filter(Record.lab_id == _lab_scope(lab_id))
        result = await self.db.execute(query.order_by(*_NEWEST_FIRST))
        return [
            RecordWithLab(**RecordOut.model_validate(record).model_dump(), lab_name=lab_name)
            for record, lab_name in result.all()
        ]

    async def list_by_lab(self, lab_id) -> List[RecordWithPatient]:
        query = (
            select(Record, Patient.first_name, Patient.last_name)
            .join(Patient, Record.patient_id == Patient.patient_id)
            .filter(Record.lab_id == _lab_scope(lab_id))
            .order_by(*_NEWEST_FIRST)
        )
        result = await self.db.execute(query)
        return [
            RecordWithPatient(
                **RecordOut.model_validate(record).model_dump(),
                first_name=first_name,
                last_name=last_name,
            )
            for record, first_name, last_name in result.all()
        ]

    async def get_by_id(self, record_id: int) -> RecordOut:
        """Unscoped lookup. Use ``get_scoped`` for anything a caller can reach."""
        record = await self.db.get(Record, record_id)
        if record is None:
            raise NotFound("Record not found")
        return RecordOut.model_validate(record)

    async def get_scoped(self, record_id: int, role, scope_key) -> RecordOut:
        # Out of scope and missing look the same to the caller
        result = await self.db.execute(
            select(Record).filter(Record.id == record_id, _scope_filter(role, scope_key))
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFound("Record not found")
        return RecordOut.model_validate(record)

    async def find_by_attachment(self, stored_name: str, role, scope_key) -> RecordOut:
        result = await self.db.execute(
            select(Record)
            .filter(Record.file_name == stored_name, _scope_filter(role, scope_key))
            .limit(1)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFound("Attachment not found")
        return RecordOut.model_validate(record)


async def create_record_with_payload(
    store: RecordStore,
    attachments: AttachmentManager,
    data: RecordCreate,
    payload: Optional[bytes] = None,
    original_name: Optional[str] = None,
) -> RecordOut:
    """Validate, write the blob, then insert the row.

    A failure after the blob is written leaves it orphaned; that is logged
    and the original error propagates.
    """
    authorship = await store.validate(data)
    if payload is None:
        return await store.insert(authorship, data)

    stored = await attachments.store(payload, original_name or "upload")
    try:
        return await store.insert(authorship, data, stored)
    except Exception:
        logger.warning("%s", OrphanedAttachment(stored.stored_name))
        raise
