"""Appointment router - FastAPI endpoints for booking and appointment lifecycle"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import ROLE_ADMIN, ROLE_STAFF, CurrentUser, get_current_user, require_roles
from ...config import AUTO_MEETING_LINKS
from ...database import get_db
from ...models import APPOINTMENT_CANCELLED, APPOINTMENT_CHECKED_IN
from ..calendar_sync.meeting_links import (
    MeetingLinkService,
    cancel_meeting_event,
    provision_meeting_link,
    reschedule_meeting_event,
)
from ..calendar_sync.schemas import MeetingLinkResponse
from .schemas import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentDetails,
    AppointmentResponse,
    AppointmentUpdate,
)
from .service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])

# Statuses a patient may set on their own appointment
PATIENT_ALLOWED_STATUSES = {APPOINTMENT_CANCELLED, APPOINTMENT_CHECKED_IN}


def get_appointment_service(db: Session = Depends(get_db)) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db)


def _ensure_patient_owns(current_user: CurrentUser, patient_id: int) -> None:
    if current_user.is_patient and current_user.patient_id != patient_id:
        raise HTTPException(status_code=403, detail="Patients can only access their own appointments")


def _queue_meeting_event_changes(
    background_tasks: BackgroundTasks, appointment, previous_slot_id: int, previous_event_id: Optional[str]
) -> None:
    """Keep an existing meeting event in step with a cancelled, moved or no longer virtual appointment"""
    if not previous_event_id:
        return
    if appointment.status == APPOINTMENT_CANCELLED or not appointment.is_virtual:
        background_tasks.add_task(cancel_meeting_event, appointment.id, previous_event_id)
    elif appointment.time_slot_id != previous_slot_id:
        background_tasks.add_task(reschedule_meeting_event, appointment.id)


# ============================================================================
# BOOKING
# ============================================================================


@router.post("", response_model=AppointmentResponse, status_code=201)
async def create_appointment(
    data: AppointmentCreate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Book a slot. A slot that was taken in the meantime returns 409."""
    _ensure_patient_owns(current_user, data.patient_id)
    details = AppointmentDetails(
        type=data.type, reason_for_visit=data.reason_for_visit, notes=data.notes, is_virtual=data.is_virtual
    )
    appointment = service.create_appointment(data.doctor, data.patient_id, data.time_slot_id, details)

    if AUTO_MEETING_LINKS and appointment.is_virtual:
        background_tasks.add_task(provision_meeting_link, appointment.id)
    return appointment


# ============================================================================
# QUERIES
# ============================================================================


@router.get("", response_model=list[AppointmentResponse])
async def list_appointments(
    doctor: Optional[str] = Query(None),
    patient_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Appointments for one doctor or one patient"""
    if current_user.is_patient:
        patient_id = current_user.patient_id
        doctor = None
    if doctor is not None:
        return service.find_by_doctor(doctor, status, start_date, end_date)
    if patient_id is not None:
        return service.find_by_patient(patient_id, status)
    raise HTTPException(status_code=400, detail="Provide a doctor or patient_id filter")


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = service.get_appointment(appointment_id)
    _ensure_patient_owns(current_user, appointment.patient_id)
    return appointment


# ============================================================================
# LIFECYCLE
# ============================================================================


@router.patch("/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: int,
    data: AppointmentUpdate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Status changes follow the appointment lifecycle; patients may only check in or cancel"""
    appointment = service.get_appointment(appointment_id)
    if current_user.is_patient:
        _ensure_patient_owns(current_user, appointment.patient_id)
        sent = data.model_dump(exclude_unset=True)
        if set(sent) - {"status", "cancel_reason"} or data.status not in PATIENT_ALLOWED_STATUSES:
            raise HTTPException(status_code=403, detail="Patients can only check in or cancel appointments")
    previous_slot_id, previous_event_id = appointment.time_slot_id, appointment.google_event_id

    updated = service.update_appointment(appointment_id, data)
    _queue_meeting_event_changes(background_tasks, updated, previous_slot_id, previous_event_id)
    return updated


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    data: Optional[AppointmentCancel] = None,
    current_user: CurrentUser = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = service.get_appointment(appointment_id)
    _ensure_patient_owns(current_user, appointment.patient_id)
    previous_slot_id, previous_event_id = appointment.time_slot_id, appointment.google_event_id

    cancelled = service.cancel_appointment(appointment_id, data.reason if data else None)
    _queue_meeting_event_changes(background_tasks, cancelled, previous_slot_id, previous_event_id)
    return cancelled


@router.delete("/{appointment_id}")
async def delete_appointment(
    appointment_id: int,
    current_user: CurrentUser = Depends(require_roles(ROLE_ADMIN, ROLE_STAFF)),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Remove the record; the slot stays booked until released explicitly"""
    service.delete_appointment(appointment_id)
    return {"success": True, "message": "Appointment deleted"}


@router.post("/{appointment_id}/meeting-link", response_model=MeetingLinkResponse)
async def ensure_meeting_link(
    appointment_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Return the appointment's video link, creating it on first request"""
    appointment = AppointmentService(db).get_appointment(appointment_id)
    _ensure_patient_owns(current_user, appointment.patient_id)
    link = await MeetingLinkService(db).ensure_meeting_link(appointment_id)
    return MeetingLinkResponse(
        appointment_id=appointment_id, meet_link=link.meet_link, event_id=link.event_id, created=link.created
    )


__all__ = ["router"]
