"""DigitalRx pharmacy integration.

Two endpoints are used:

``RxWebRequest``
    submits a paid prescription and answers with a ``QueueID``.
``RxRequestStatus``
    reports the milestones reached for a ``QueueID``.

Credentials live in ``pharmacy_backends`` rows.  A prescription's own pharmacy
backend is preferred; otherwise any active DigitalRx backend is used.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

import requests
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from rxportal.config import get_settings
from rxportal.db.models import Patient, PharmacyBackend, Prescription, Provider
from rxportal.encryption import reveal_api_key
from rxportal.metrics import pharmacy_requests_total

logger = structlog.get_logger(__name__)

SYSTEM_TYPE = "DigitalRx"
DEFAULT_BACKEND_KEY = "__default__"
MISSING_QUEUE_ID_ERROR = "DigitalRx did not return a QueueID"


class DigitalRxError(Exception):
    """Raised when DigitalRx cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


@dataclass(frozen=True)
class ResolvedBackend:
    api_key: str
    base_url: str
    store_id: Optional[str]


def _clean_base_url(url: Optional[str]) -> str:
    if not url:
        return get_settings().digitalrx_base_url
    cleaned = re.sub(r"^https?//:", "https://", url.strip())
    cleaned = re.sub(r"^https?://:", "https://", cleaned)
    cleaned = re.sub(r"^https?///+", "https://", cleaned)
    return cleaned.rstrip("/")


def _resolve_row(row: PharmacyBackend) -> ResolvedBackend:
    return ResolvedBackend(
        api_key=reveal_api_key(row.api_key_encrypted),
        base_url=_clean_base_url(row.api_url),
        store_id=row.store_id,
    )


def _active_backends():
    return select(PharmacyBackend).where(
        PharmacyBackend.is_active.is_(True),
        PharmacyBackend.system_type == SYSTEM_TYPE,
    )


def resolve_backend(session: Session, pharmacy_id: Optional[str]) -> Optional[ResolvedBackend]:
    """Return credentials for ``pharmacy_id``, falling back to any active backend."""

    if pharmacy_id:
        row = session.execute(
            _active_backends().where(PharmacyBackend.pharmacy_id == pharmacy_id).limit(1)
        ).scalar_one_or_none()
        if row is not None:
            return _resolve_row(row)
    row = session.execute(_active_backends().limit(1)).scalars().first()
    return _resolve_row(row) if row is not None else None


def resolve_backends_batch(
    session: Session, pharmacy_ids: Iterable[Optional[str]]
) -> Dict[str, ResolvedBackend]:
    """Return backends keyed by pharmacy id plus :data:`DEFAULT_BACKEND_KEY`.

    One query covers every pharmacy so batch status checks stay O(1) in
    round trips.
    """

    unique_ids = sorted({pid for pid in pharmacy_ids if pid})
    resolved: Dict[str, ResolvedBackend] = {}
    if unique_ids:
        rows = session.execute(
            _active_backends().where(PharmacyBackend.pharmacy_id.in_(unique_ids))
        ).scalars()
        for row in rows:
            resolved.setdefault(row.pharmacy_id, _resolve_row(row))
    default = session.execute(_active_backends().limit(1)).scalars().first()
    if default is not None:
        resolved[DEFAULT_BACKEND_KEY] = _resolve_row(default)
    return resolved


def _post(backend: ResolvedBackend, endpoint: str, payload: Mapping[str, Any]) -> requests.Response:
    url = f"{backend.base_url}/{endpoint}"
    try:
        resp = requests.post(
            url,
            json=dict(payload),
            headers={"Authorization": backend.api_key, "Content-Type": "application/json"},
            timeout=get_settings().digitalrx_timeout,
        )
    except requests.RequestException as exc:
        pharmacy_requests_total.labels(endpoint=endpoint, outcome="network_error").inc()
        raise DigitalRxError(f"DigitalRx request failed: {exc}") from exc
    outcome = "ok" if resp.ok else f"http_{resp.status_code}"
    pharmacy_requests_total.labels(endpoint=endpoint, outcome=outcome).inc()
    return resp


def fetch_status(backend: ResolvedBackend, queue_id: str) -> Dict[str, Any]:
    """Return the raw ``RxRequestStatus`` payload for ``queue_id``."""

    numeric = re.sub(r"^RX-", "", queue_id, flags=re.I)
    resp = _post(backend, "RxRequestStatus", {"StoreID": backend.store_id, "QueueID": numeric})
    if not resp.ok:
        raise DigitalRxError(
            f"API error: {resp.status_code}", status_code=resp.status_code, details=resp.text
        )
    try:
        data = resp.json()
    except ValueError as exc:
        raise DigitalRxError(
            "Invalid response from DigitalRx (not JSON)", details=resp.text[:200]
        ) from exc
    if not isinstance(data, dict):
        raise DigitalRxError("Invalid response from DigitalRx (not an object)", details=data)
    return data


def extract_queue_id(data: Mapping[str, Any]) -> Optional[str]:
    for key in ("QueueID", "queueId", "ID"):
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def submit_prescription(backend: ResolvedBackend, payload: Mapping[str, Any]) -> str:
    """Submit ``payload`` to ``RxWebRequest`` and return the assigned queue id."""

    resp = _post(backend, "RxWebRequest", payload)
    if not resp.ok:
        raise DigitalRxError(
            f"DigitalRx API error: {resp.status_code}",
            status_code=resp.status_code,
            details=resp.text,
        )
    try:
        data = resp.json()
    except ValueError as exc:
        raise DigitalRxError("Invalid response from DigitalRx (not JSON)", details=resp.text[:200]) from exc
    queue_id = extract_queue_id(data) if isinstance(data, Mapping) else None
    if not queue_id:
        logger.error("digitalrx_missing_queue_id", response=data)
        raise DigitalRxError(MISSING_QUEUE_ID_ERROR, status_code=500, details=data)
    return queue_id


def _address(record: Any) -> Mapping[str, Any]:
    value = getattr(record, "physical_address", None)
    return value if isinstance(value, Mapping) else {}


def build_submission_payload(
    prescription: Prescription,
    patient: Optional[Patient],
    provider: Provider,
    *,
    store_id: Optional[str],
    now: datetime,
) -> Dict[str, Any]:
    """Return the ``RxWebRequest`` body for ``prescription``."""

    patient_address = _address(patient)
    provider_address = _address(provider)
    return {
        "StoreID": store_id,
        "VendorName": get_settings().digitalrx_vendor_name,
        "Patient": {
            "FirstName": getattr(patient, "first_name", None),
            "LastName": getattr(patient, "last_name", None),
            "DOB": getattr(patient, "date_of_birth", None),
            "Sex": "M" if getattr(patient, "gender", None) == "male" else "F",
            "PatientStreet": patient_address.get("street"),
            "PatientCity": patient_address.get("city"),
            "PatientState": patient_address.get("state"),
            "PatientZip": patient_address.get("zipCode") or patient_address.get("zip"),
            "PatientPhone": getattr(patient, "phone", None),
        },
        "Doctor": {
            "DoctorFirstName": provider.first_name,
            "DoctorLastName": provider.last_name,
            "DoctorNpi": provider.npi_number,
            "DoctorStreet": provider_address.get("street"),
            "DoctorCity": provider_address.get("city"),
            "DoctorState": provider_address.get("state"),
            "DoctorZip": provider_address.get("zipCode") or provider_address.get("zip"),
            "DoctorPhone": provider.phone,
        },
        "RxClaim": {
            "RxNumber": f"RX{int(now.timestamp() * 1000)}",
            "DrugName": prescription.medication,
            "Qty": str(prescription.quantity),
            "DateWritten": now.date().isoformat(),
            "RequestedBy": f"{provider.first_name or ''} {provider.last_name or ''}".strip(),
        },
        "DocSignature": provider.signature_url,
    }


__all__ = [
    "DEFAULT_BACKEND_KEY",
    "DigitalRxError",
    "MISSING_QUEUE_ID_ERROR",
    "ResolvedBackend",
    "build_submission_payload",
    "extract_queue_id",
    "fetch_status",
    "resolve_backend",
    "resolve_backends_batch",
    "submit_prescription",
]
