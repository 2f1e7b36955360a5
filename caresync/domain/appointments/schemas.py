"""Appointment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, field_validator

from ...models import APPOINTMENT_STATUSES, APPOINTMENT_TYPES


def _validate_type(v):
    if v is not None and v not in APPOINTMENT_TYPES:
        raise ValueError(f"type must be one of: {', '.join(APPOINTMENT_TYPES)}")
    return v


def _validate_reason(v):
    if v is not None and not v.strip():
        raise ValueError("reason_for_visit cannot be empty")
    return v.strip() if v else v


class AppointmentDetails(BaseModel):
    """What the patient is booking, separate from who and when"""

    type: str = "initial"
    reason_for_visit: str
    notes: Optional[str] = None
    is_virtual: Optional[bool] = None  # derived from type when omitted

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _validate_type(v)

    @field_validator("reason_for_visit")
    @classmethod
    def validate_reason(cls, v):
        return _validate_reason(v)


class AppointmentCreate(AppointmentDetails):
    doctor: Union[int, str]  # internal id or license number
    patient_id: int
    time_slot_id: int


class AppointmentUpdate(BaseModel):
    """Partial update; only fields that are sent are applied"""

    status: Optional[str] = None
    type: Optional[str] = None
    reason_for_visit: Optional[str] = None
    notes: Optional[str] = None
    is_virtual: Optional[bool] = None
    time_slot_id: Optional[int] = None
    cancel_reason: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v is not None and v not in APPOINTMENT_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(APPOINTMENT_STATUSES)}")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _validate_type(v)

    @field_validator("reason_for_visit")
    @classmethod
    def validate_reason(cls, v):
        return _validate_reason(v)


class AppointmentCancel(BaseModel):
    reason: Optional[str] = None


class AppointmentResponse(BaseModel):
    id: int
    doctor_id: int
    patient_id: int
    time_slot_id: int
    status: str
    type: str
    reason_for_visit: str
    notes: Optional[str] = None
    is_virtual: Optional[bool] = None
    google_meet_link: Optional[str] = None
    google_event_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

