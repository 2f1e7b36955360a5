"""
Doctor identifier resolution

Callers may name a doctor by internal id or by license number. Every entry
point resolves the identifier exactly once, here, and passes the canonical
id downstream.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from ...errors import NotFoundError
from .repository import DoctorRepository

logger = logging.getLogger(__name__)

DoctorIdentifier = Union[int, str]


@dataclass(frozen=True)
class DoctorResolution:
    """Either a canonical doctor id or the reason it could not be found"""

    canonical_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.canonical_id is not None


def resolve_doctor_identifier(db: Session, identifier: DoctorIdentifier) -> DoctorResolution:
    """Try the internal id first, then the license number"""
    if identifier is None or (isinstance(identifier, str) and not identifier.strip()):
        return DoctorResolution(error="Doctor identifier is required")

    if isinstance(identifier, int) and not isinstance(identifier, bool):
        doctor = DoctorRepository.get_by_id(db, identifier)
        if doctor:
            return DoctorResolution(canonical_id=doctor.id)
        return DoctorResolution(error=f"Doctor {identifier} not found")

    value = str(identifier).strip()
    if value.isdigit():
        doctor = DoctorRepository.get_by_id(db, int(value))
        if doctor:
            return DoctorResolution(canonical_id=doctor.id)

    doctor = DoctorRepository.get_by_license_number(db, value)
    if doctor:
        return DoctorResolution(canonical_id=doctor.id)

    return DoctorResolution(error=f"Doctor '{value}' not found by id or license number")


def require_doctor_id(db: Session, identifier: DoctorIdentifier) -> int:
    resolution = resolve_doctor_identifier(db, identifier)
    if not resolution.ok:
        logger.warning(f"⚠️ {resolution.error}")
        raise NotFoundError(resolution.error, code="doctor_not_found")
    return resolution.canonical_id
