"""
Caller identity

Authentication happens upstream: the API gateway verifies the session and
forwards the caller's identity as headers. This module only reads them.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_DOCTOR = "doctor"
ROLE_PATIENT = "patient"
ROLES = (ROLE_ADMIN, ROLE_STAFF, ROLE_DOCTOR, ROLE_PATIENT)


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str
    doctor_id: Optional[int] = None
    patient_id: Optional[int] = None
    clinic_id: Optional[int] = None

    @property
    def is_patient(self) -> bool:
        return self.role == ROLE_PATIENT


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_doctor_id: Optional[int] = Header(None),
    x_patient_id: Optional[int] = Header(None),
    x_clinic_id: Optional[int] = Header(None),
) -> CurrentUser:
    """Identity as asserted by the gateway"""
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Not authenticated")

    role = x_user_role.strip().lower()
    if role not in ROLES:
        logger.warning(f"⚠️ Rejected unknown role '{x_user_role}' for user {x_user_id}")
        raise HTTPException(status_code=403, detail="Unknown role")

    return CurrentUser(
        user_id=x_user_id,
        role=role,
        doctor_id=x_doctor_id,
        patient_id=x_patient_id,
        clinic_id=x_clinic_id,
    )


def require_roles(*roles: str):
    """Dependency factory that admits only the given roles"""

    async def checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user

    return checker
