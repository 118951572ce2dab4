import logging
from typing import Any, Dict, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, ValidationFailed
from ..models import Lab, Patient, Role
from ..schemas import LabOut, PatientOut

logger = logging.getLogger(__name__)

# Credentials, identifiers, email and timestamps never appear here
MUTABLE_FIELDS = {
    Role.PATIENT: frozenset(
        {"first_name", "last_name", "phone", "dob", "blood_type", "allergies", "conditions", "medications"}
    ),
    Role.PATHLAB: frozenset(
        {"lab_name", "phone", "address", "license_number", "description"}
    ),
}

REQUIRED_FIELDS = frozenset({"first_name", "last_name", "lab_name", "license_number"})

_MODELS = {Role.PATIENT: (Patient, PatientOut), Role.PATHLAB: (Lab, LabOut)}


def _kind(role):
    try:
        return Role(role)
    except ValueError:
        raise ValidationFailed("Unknown role") from None


class ProfileStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, role: Role, principal_id: int):
        model, _ = _MODELS[role]
        row = await self.db.get(model, principal_id)
        if row is None:
            raise NotFound("Patient not found" if role == Role.PATIENT else "Laboratory not found")
        return row

    async def get_profile(self, role, principal_id: int) -> Union[PatientOut, LabOut]:
        role = _kind(role)
        row = await self._load(role, principal_id)
        return _MODELS[role][1].model_validate(row)

    async def update_profile(self, role, principal_id: int, updates: Dict[str, Any]) -> Union[PatientOut, LabOut]:
        """
        Apply whitelisted profile edits. Anything else in ``updates``,
        including the password, is dropped. Concurrent edits by the same
        principal are last-writer-wins.
        """
        role = _kind(role)
        row = await self._load(role, principal_id)

        allowed = MUTABLE_FIELDS[role]
        dropped = sorted(k for k in updates if k not in allowed)
        if dropped:
            logger.debug("Ignoring non-editable profile fields %s", dropped)

        changes = {k: v for k, v in updates.items() if k in allowed}
        for key in REQUIRED_FIELDS.intersection(changes):
            if changes[key] is None or not str(changes[key]).strip():
                raise ValidationFailed(f"{key} cannot be empty")
        for key, value in changes.items():
            setattr(row, key, value)

        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        await self.db.refresh(row)
        return _MODELS[role][1].model_validate(row)
