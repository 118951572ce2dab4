import datetime as dt
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationFailed
from .models import Role


class PatientRegister(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(alias="firstName", min_length=1)
    last_name: str = Field(alias="lastName", min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class LabRegister(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lab_name: str = Field(alias="labName", min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None
    license_number: str = Field(alias="licenseNumber", min_length=1)
    description: Optional[str] = None


class Login(BaseModel):
    email: str
    password: str


class PatientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    dob: Optional[dt.date] = None
    blood_type: Optional[str] = None
    allergies: Optional[str] = None
    conditions: Optional[str] = None
    medications: Optional[str] = None
    created_at: dt.datetime


class LabOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lab_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    license_number: str
    description: Optional[str] = None
    created_at: dt.datetime


class Principal(BaseModel):
    """An authenticated patient or lab, minus its credential hash."""
    role: Role
    profile: Union[PatientOut, LabOut]

    def as_user(self) -> dict:
        return {**self.profile.model_dump(mode="json"), "role": self.role.value}


class PatientVerification(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patient_id: str
    first_name: str
    last_name: str


class RecordCreate(BaseModel):
    title: Optional[str] = None
    date: Optional[dt.date] = None
    provider: Optional[str] = None
    doctor: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    # Accepts the caller aliases too; resolved by the record store
    owner: Optional[str] = None
    patient_id: Optional[str] = None
    lab_id: Optional[int] = None


class RecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    date: dt.date
    provider: Optional[str] = None
    doctor: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    patient_id: str
    lab_id: Optional[int] = None
    owner: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    created_at: dt.datetime


class RecordWithLab(RecordOut):
    lab_name: Optional[str] = None


class RecordWithPatient(RecordOut):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class SessionContext(BaseModel):
    """Caller identity carried by the collaborator's session.

    Built per request from what the caller passes in; nothing here is
    inferred from ambient state.
    """
    role: Role
    patient_id: Optional[str] = None
    lab_id: Optional[int] = None

    @property
    def scope_key(self) -> Union[str, int]:
        if self.role == Role.PATHLAB:
            if self.lab_id is None:
                raise ValidationFailed("labId is required for pathlab callers")
            return self.lab_id
        if not self.patient_id:
            raise ValidationFailed("patientId is required for patient callers")
        return self.patient_id


class PatientUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    dob: Optional[dt.date] = None
    blood_type: Optional[str] = None
    allergies: Optional[str] = None
    conditions: Optional[str] = None
    medications: Optional[str] = None


class LabUpdate(BaseModel):
    lab_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    license_number: Optional[str] = None
    description: Optional[str] = None
