"""Doctor and patient repository - read-only lookups used by scheduling"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Doctor, Patient


class DoctorRepository:
    """Repository for doctor lookups"""

    @staticmethod
    def get_by_id(db: Session, doctor_id: int) -> Optional[Doctor]:
        return db.query(Doctor).filter(Doctor.id == doctor_id).first()

    @staticmethod
    def get_by_license_number(db: Session, license_number: str) -> Optional[Doctor]:
        return db.query(Doctor).filter(Doctor.license_number == license_number).first()


class PatientRepository:
    """Repository for patient lookups"""

    @staticmethod
    def get_by_id(db: Session, patient_id: int) -> Optional[Patient]:
        return db.query(Patient).filter(Patient.id == patient_id).first()
