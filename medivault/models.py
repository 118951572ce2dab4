import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Date, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    """Principal kind a caller authenticated as."""
    PATIENT = "patient"
    PATHLAB = "pathlab"


class RecordOwner(str, enum.Enum):
    """Which creation path authored a record."""
    PATIENT = "patient"
    LAB = "lab"


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password = Column(Text, nullable=False)
    phone = Column(String(50))
    dob = Column(Date)
    blood_type = Column(String(10))
    allergies = Column(Text)
    conditions = Column(Text)
    medications = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Lab(Base):
    __tablename__ = "labs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lab_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password = Column(Text, nullable=False)
    phone = Column(String(50))
    address = Column(Text)
    license_number = Column(String(100), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    records = relationship("Record", back_populates="lab")


class Record(Base):
    __tablename__ = "records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    date = Column(Date, nullable=False)
    provider = Column(String(255))
    doctor = Column(String(255))
    type = Column(String(100))
    category = Column(String(100))
    notes = Column(Text)
    # Value reference to Patient.patient_id, not an ownership relation
    patient_id = Column(String(255), nullable=False, index=True)
    lab_id = Column(Integer, ForeignKey("labs.id"), index=True)
    owner = Column(String(20), nullable=False)
    file_name = Column(String(512), index=True)
    file_size = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    lab = relationship("Lab", back_populates="records")
