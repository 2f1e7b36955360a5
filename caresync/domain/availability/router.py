"""Availability router - FastAPI endpoints for doctor time slots"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import ROLE_ADMIN, ROLE_DOCTOR, ROLE_STAFF, CurrentUser, get_current_user, require_roles
from ...database import get_db
from ..appointments.service import AppointmentService
from .schemas import (
    GenerateSlotsRequest,
    GenerateSlotsResponse,
    SlotCreate,
    SlotUpdate,
    TimeSlotResponse,
)
from .service import AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/availability", tags=["Availability"])

manage_slots = require_roles(ROLE_ADMIN, ROLE_STAFF, ROLE_DOCTOR)


def get_availability_service(db: Session = Depends(get_db)) -> AvailabilityService:
    """Dependency injection for AvailabilityService"""
    return AvailabilityService(db)


# ============================================================================
# SLOT QUERIES
# ============================================================================


@router.get("/doctors/{doctor}/slots", response_model=list[TimeSlotResponse])
async def list_slots(
    doctor: str,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    status: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: AvailabilityService = Depends(get_availability_service),
):
    """All slots for a doctor (id or license number); defaults to the next 7 days"""
    return service.list_slots(doctor, start_date, end_date, status)


@router.get("/doctors/{doctor}/slots/available", response_model=list[TimeSlotResponse])
async def list_available_slots(
    doctor: str,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Bookable slots only"""
    return service.list_available_slots(doctor, start_date, end_date)


@router.get("/slots/{slot_id}", response_model=TimeSlotResponse)
async def get_slot(
    slot_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: AvailabilityService = Depends(get_availability_service),
):
    return service.get_slot(slot_id)


# ============================================================================
# SLOT MANAGEMENT
# ============================================================================


@router.post("/doctors/{doctor}/generate", response_model=GenerateSlotsResponse)
async def generate_slots(
    doctor: str,
    data: GenerateSlotsRequest,
    current_user: CurrentUser = Depends(manage_slots),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Expand a weekly template into available slots; existing slots are never touched"""
    slots = service.generate_slots(doctor, data.start_date, data.end_date, data.template, data.excluded_dates)
    return GenerateSlotsResponse(created=len(slots), slots=[TimeSlotResponse.model_validate(slot) for slot in slots])


@router.post("/slots", response_model=TimeSlotResponse, status_code=201)
async def create_slot(
    data: SlotCreate,
    current_user: CurrentUser = Depends(manage_slots),
    service: AvailabilityService = Depends(get_availability_service),
):
    return service.create_slot(data.doctor, data.date, data.start_time, data.end_time, created_by=current_user.user_id)


@router.patch("/slots/{slot_id}", response_model=TimeSlotResponse)
async def update_slot(
    slot_id: int,
    data: SlotUpdate,
    current_user: CurrentUser = Depends(manage_slots),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Block or reopen a slot; booked slots are refused with 409"""
    return service.update_slot(slot_id, data.status, data.start_time, data.end_time)


@router.delete("/slots/{slot_id}")
async def delete_slot(
    slot_id: int,
    current_user: CurrentUser = Depends(manage_slots),
    service: AvailabilityService = Depends(get_availability_service),
):
    service.delete_slot(slot_id)
    return {"success": True, "message": "Time slot deleted"}


@router.post("/slots/{slot_id}/release", response_model=TimeSlotResponse)
async def release_slot(
    slot_id: int,
    current_user: CurrentUser = Depends(require_roles(ROLE_ADMIN, ROLE_STAFF)),
    db: Session = Depends(get_db),
):
    """Free a booked slot whose appointment was deleted"""
    return AppointmentService(db).release_slot(slot_id)


__all__ = ["router"]
