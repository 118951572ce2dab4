import asyncio
import functools
import logging
import time
from typing import Callable, Optional

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from ..config import settings
from ..errors import DuplicateEmail, InvalidCredentials, MedivaultError, ValidationFailed
from ..models import Lab, Patient, Role
from ..schemas import LabOut, PatientOut, Principal
from .identifiers import derive_patient_identifier

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_ATTEMPTS = 3
# bcrypt rejects longer inputs outright
MAX_PASSWORD_BYTES = 72


@functools.lru_cache(maxsize=None)
def _dummy_hash(rounds: int) -> bytes:
    # Compared against when an email is unknown so both failure paths cost one bcrypt check
    return bcrypt.hashpw(b"medivault-dummy-password", bcrypt.gensalt(rounds))


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _namespace(role) -> type:
    try:
        role = Role(role)
    except ValueError:
        raise ValidationFailed("Unknown role") from None
    return Patient if role == Role.PATIENT else Lab


class CredentialStore:
    """
    Registers and authenticates patients and labs.

    The two principal kinds live in separate tables, so an email may be
    registered once as a patient and once as a lab. No session or token is
    issued here; callers carry the returned ``Principal`` forward themselves.
    """

    def __init__(
        self,
        db: AsyncSession,
        rounds: Optional[int] = None,
        clock: Callable[[], int] = time.time_ns,
    ):
        self.db = db
        self.rounds = rounds or settings.BCRYPT_ROUNDS
        self.clock = clock

    async def _hash(self, password: str) -> str:
        if len(password.encode()) > MAX_PASSWORD_BYTES:
            raise ValidationFailed(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        hashed = await asyncio.to_thread(
            bcrypt.hashpw, password.encode(), bcrypt.gensalt(self.rounds)
        )
        return hashed.decode()

    async def _email_taken(self, model, email: str) -> bool:
        result = await self.db.execute(select(model.id).filter(model.email == email))
        return result.first() is not None

    async def register_patient(self, first_name: str, last_name: str, email: str, password: str) -> PatientOut:
        if not (first_name or "").strip() or not (last_name or "").strip():
            raise ValidationFailed("First and last name are required")
        email = _normalize_email(email)
        if await self._email_taken(Patient, email):
            raise DuplicateEmail()

        hashed_password = await self._hash(password)

        for attempt in range(1, MAX_IDENTIFIER_ATTEMPTS + 1):
            patient = Patient(
                patient_id=derive_patient_identifier(first_name, self.clock),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                email=email,
                password=hashed_password,
            )
            self.db.add(patient)
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                # A concurrent registration may have claimed the email meanwhile
                if await self._email_taken(Patient, email):
                    raise DuplicateEmail()
                logger.warning(
                    "Patient identifier collision on attempt %d/%d, retrying with a fresh timestamp",
                    attempt, MAX_IDENTIFIER_ATTEMPTS,
                )
                continue
            await self.db.refresh(patient)
            logger.info("Registered patient %s", patient.patient_id)
            return PatientOut.model_validate(patient)

        raise MedivaultError("Failed to register patient")

    async def register_lab(
        self,
        lab_name: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        license_number: str = "",
        description: Optional[str] = None,
    ) -> LabOut:
        if not (lab_name or "").strip():
            raise ValidationFailed("Lab name is required")
        email = _normalize_email(email)
        if await self._email_taken(Lab, email):
            raise DuplicateEmail()
        if not (license_number or "").strip():
            raise ValidationFailed("License number is required")

        lab = Lab(
            lab_name=lab_name.strip(),
            email=email,
            password=await self._hash(password),
            phone=phone,
            address=address,
            license_number=license_number.strip(),
            description=description,
        )
        self.db.add(lab)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEmail()
        await self.db.refresh(lab)
        logger.info("Registered lab %s", lab.id)
        return LabOut.model_validate(lab)

    async def authenticate(self, role, email: str, password: str) -> Principal:
        model = _namespace(role)
        result = await self.db.execute(
            select(model).filter(model.email == _normalize_email(email))
        )
        row = result.scalar_one_or_none()

        stored_hash = row.password.encode() if row is not None else _dummy_hash(self.rounds)
        candidate = (password or "").encode()
        too_long = len(candidate) > MAX_PASSWORD_BYTES
        if too_long:
            # Never a valid password, but still pay for one check against the dummy
            candidate, stored_hash = b"", _dummy_hash(self.rounds)
        matches = await asyncio.to_thread(bcrypt.checkpw, candidate, stored_hash)
        if row is None or too_long or not matches:
            raise InvalidCredentials()

        if model is Patient:
            return Principal(role=Role.PATIENT, profile=PatientOut.model_validate(row))
        return Principal(role=Role.PATHLAB, profile=LabOut.model_validate(row))
