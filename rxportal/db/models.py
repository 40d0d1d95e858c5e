"""SQLAlchemy models for prescriptions, pharmacies and admin tags."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class PrescriptionType(str, enum.Enum):
    PRESCRIPTION = "prescription"
    REFILL = "refill"


class Patient(Base):
    __tablename__ = "patients"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    first_name = sa.Column(String, nullable=True)
    last_name = sa.Column(String, nullable=True, index=True)
    date_of_birth = sa.Column(String, nullable=True)
    gender = sa.Column(String, nullable=True)
    email = sa.Column(String, nullable=True)
    phone = sa.Column(String, nullable=True)
    physical_address = sa.Column(sa.JSON, nullable=True)


class Provider(Base):
    __tablename__ = "providers"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    user_id = sa.Column(String(36), nullable=False, unique=True, index=True)
    first_name = sa.Column(String, nullable=True)
    last_name = sa.Column(String, nullable=True)
    npi_number = sa.Column(String, nullable=True)
    phone = sa.Column(String, nullable=True)
    physical_address = sa.Column(sa.JSON, nullable=True)
    signature_url = sa.Column(Text, nullable=True)


class Pharmacy(Base):
    __tablename__ = "pharmacies"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    name = sa.Column(String, nullable=False)
    primary_color = sa.Column(String, nullable=True)


class PharmacyBackend(Base):
    __tablename__ = "pharmacy_backends"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    pharmacy_id = sa.Column(String(36), ForeignKey("pharmacies.id"), nullable=True, index=True)
    system_type = sa.Column(String, nullable=False, default="DigitalRx")
    api_key_encrypted = sa.Column(Text, nullable=False)
    api_url = sa.Column(String, nullable=True)
    store_id = sa.Column(String, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    prescriber_id = sa.Column(String(36), nullable=False, index=True)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=True)
    pharmacy_id = sa.Column(String(36), ForeignKey("pharmacies.id"), nullable=True)
    parent_prescription_id = sa.Column(
        String(36), ForeignKey("prescriptions.id"), nullable=True, index=True
    )
    prescription_type = sa.Column(
        String, nullable=False, default=PrescriptionType.PRESCRIPTION.value
    )
    medication = sa.Column(String, nullable=False, default="")
    dosage = sa.Column(String, nullable=True)
    quantity = sa.Column(Integer, nullable=False, default=1)
    sig = sa.Column(Text, nullable=True)
    status = sa.Column(String, nullable=True, default="submitted")
    payment_status = sa.Column(String, nullable=True)
    order_progress = sa.Column(String, nullable=True)
    queue_id = sa.Column(String, nullable=True)
    tracking_number = sa.Column(String, nullable=True)
    submitted_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    submitted_to_pharmacy_at = sa.Column(DateTime(timezone=True), nullable=True)
    next_refill_date = sa.Column(DateTime(timezone=True), nullable=True, index=True)
    refill_frequency_days = sa.Column(Integer, nullable=True)
    refills = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    total_refills_to_date = sa.Column(
        Integer, nullable=False, default=0, server_default=sa.text("0")
    )
    pdf_storage_path = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        sa.Index("idx_prescriptions_prescriber_type", "prescriber_id", "prescription_type"),
        sa.CheckConstraint(
            "(prescription_type = 'refill' AND parent_prescription_id IS NOT NULL)"
            " OR (prescription_type = 'prescription' AND parent_prescription_id IS NULL)",
            name="ck_prescriptions_parent_matches_type",
        ),
    )


class Tag(Base):
    __tablename__ = "tags"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    name = sa.Column(String(50), nullable=False, unique=True)
    slug = sa.Column(String, nullable=False)
    usage_count = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=True, default=_utcnow, onupdate=_utcnow)


class Resource(Base):
    __tablename__ = "resources"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    title = sa.Column(String, nullable=False)
    tags = sa.Column(sa.JSON, nullable=False, default=list)


__all__ = [
    "Base",
    "Patient",
    "Pharmacy",
    "PharmacyBackend",
    "Prescription",
    "PrescriptionType",
    "Provider",
    "Resource",
    "Tag",
]
