#!/usr/bin/env python3
"""Create the RxPortal tables and optionally seed demo data."""

from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from typing import List, Tuple

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from rxportal.auth import create_access_token
from rxportal.db.config import get_database_settings
from rxportal.db.models import (
    Patient,
    Pharmacy,
    PharmacyBackend,
    Prescription,
    PrescriptionType,
    Provider,
    Resource,
    Tag,
)
from rxportal.db.session import init_schema
from rxportal.encryption import encrypt_api_key
from rxportal.tags import generate_slug
from rxportal.time_utils import utc_now

DEMO_PROVIDER_USER_ID = "00000000-0000-4000-8000-000000000001"
DEMO_ADMIN_USER_ID = "00000000-0000-4000-8000-000000000099"
DEMO_TAGS = ("Weight Loss", "Peptides", "Onboarding")


def seed_demo_data(session: Session, api_key: str) -> List[Tuple[str, str]]:
    """Insert demo rows unless the demo provider already exists."""

    created: List[Tuple[str, str]] = []
    existing = session.execute(
        select(Provider).where(Provider.user_id == DEMO_PROVIDER_USER_ID)
    ).scalar_one_or_none()
    if existing is not None:
        return created

    now = utc_now()
    provider = Provider(
        user_id=DEMO_PROVIDER_USER_ID,
        first_name="Dana",
        last_name="Reyes",
        npi_number="1234567890",
        phone="555-0100",
        physical_address={"street": "1 Main St", "city": "Austin", "state": "TX", "zipCode": "73301"},
    )
    patient = Patient(
        first_name="Sam",
        last_name="Taylor",
        date_of_birth="1985-04-12",
        gender="female",
        phone="555-0199",
        physical_address={"street": "9 Elm St", "city": "Austin", "state": "TX", "zipCode": "73301"},
    )
    pharmacy = Pharmacy(name="Demo Compounding", primary_color="#0f766e")
    session.add_all([provider, patient, pharmacy])
    session.flush()
    session.add(
        PharmacyBackend(
            pharmacy_id=pharmacy.id,
            api_key_encrypted=encrypt_api_key(api_key),
            store_id="190190",
        )
    )
    original = Prescription(
        prescriber_id=DEMO_PROVIDER_USER_ID,
        patient_id=patient.id,
        pharmacy_id=pharmacy.id,
        prescription_type=PrescriptionType.PRESCRIPTION.value,
        medication="Semaglutide",
        dosage="0.25mg",
        quantity=1,
        status="submitted",
        payment_status="paid",
        submitted_at=now - timedelta(days=30),
        next_refill_date=now + timedelta(days=1),
        refill_frequency_days=30,
        refills=3,
        total_refills_to_date=1,
    )
    session.add(original)
    session.flush()
    session.add(
        Prescription(
            prescriber_id=DEMO_PROVIDER_USER_ID,
            patient_id=patient.id,
            pharmacy_id=pharmacy.id,
            prescription_type=PrescriptionType.REFILL.value,
            parent_prescription_id=original.id,
            medication="Semaglutide",
            dosage="0.25mg",
            status="pending_payment",
            payment_status="pending",
            submitted_at=now - timedelta(days=1),
        )
    )
    for index, name in enumerate(DEMO_TAGS):
        session.add(Tag(name=name, slug=generate_slug(name), usage_count=len(DEMO_TAGS) - index))
    session.add(Resource(title="Getting started with GLP-1 therapy", tags=list(DEMO_TAGS[:2])))
    created.append(("provider", DEMO_PROVIDER_USER_ID))
    created.append(("admin", DEMO_ADMIN_USER_ID))
    return created


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the RxPortal database schema and optional demo data.",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("RXPORTAL_DATABASE_URL"),
        help="SQLAlchemy URL (default: configured RxPortal database)",
    )
    parser.add_argument(
        "--seed-demo",
        action="store_true",
        help="Insert a demo provider, patient, pharmacy, prescriptions and tags.",
    )
    parser.add_argument(
        "--pharmacy-api-key",
        default=os.getenv("DIGITALRX_DEMO_API_KEY", "demo-api-key"),
        help="API key stored (encrypted) for the demo pharmacy backend.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    if args.database_url:
        engine = create_engine(args.database_url, future=True)
    else:
        settings = get_database_settings()
        engine = create_engine(settings.url, **settings.engine_options())

    init_schema(engine)
    print(f"Schema ensured at {engine.url.render_as_string(hide_password=True)}")

    if not args.seed_demo:
        return 0

    factory = sessionmaker(bind=engine, future=True, expire_on_commit=False)
    with factory() as session:
        created = seed_demo_data(session, args.pharmacy_api_key)
        session.commit()

    if not created:
        print("Demo data already present; nothing changed.")
        return 0
    print("Demo data created. Development tokens (valid for one hour):")
    for role, user_id in created:
        print(f"  - {role}: {create_access_token(user_id, role)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
