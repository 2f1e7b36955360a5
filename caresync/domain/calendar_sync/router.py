"""
Calendar Sync Routes
Handles OAuth connection and slot import/export against the external calendar
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import ROLE_ADMIN, ROLE_DOCTOR, ROLE_STAFF, CurrentUser, require_roles
from ...database import get_db
from ..doctors.resolver import require_doctor_id
from .credentials import CredentialManager, clinic_owner, doctor_owner
from .schemas import CalendarStatusResponse, ConnectCallbackRequest, SyncRequest, SyncSummary
from .sync_service import CalendarSyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["calendar"])

calendar_users = require_roles(ROLE_ADMIN, ROLE_STAFF, ROLE_DOCTOR)


def get_credential_manager(db: Session = Depends(get_db)) -> CredentialManager:
    return CredentialManager(db)


def get_sync_service(db: Session = Depends(get_db)) -> CalendarSyncService:
    return CalendarSyncService(db)


def resolve_owner(current_user: CurrentUser, owner: Optional[str]) -> str:
    """Doctors manage their own calendar; staff may name a doctor or clinic owner"""
    if current_user.role == ROLE_DOCTOR:
        if current_user.doctor_id is None:
            raise HTTPException(status_code=400, detail="Doctor identity missing")
        return doctor_owner(current_user.doctor_id)
    if owner:
        return owner
    if current_user.clinic_id is not None:
        return clinic_owner(current_user.clinic_id)
    raise HTTPException(status_code=400, detail="Specify which calendar owner to use")


# ============================================================================
# CONNECTION
# ============================================================================


@router.get("/status", response_model=CalendarStatusResponse)
async def get_calendar_status(
    owner: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(calendar_users),
    credentials: CredentialManager = Depends(get_credential_manager),
):
    """Get external calendar connection status"""
    owner_id = resolve_owner(current_user, owner)
    credential = credentials.get_credential(owner_id)
    if not credential:
        return CalendarStatusResponse(connected=False, owner_id=owner_id)
    return CalendarStatusResponse(
        connected=True,
        owner_id=owner_id,
        account_email=credential.account_email,
        calendar_id=credential.calendar_id,
        last_refreshed_at=credential.last_refreshed_at,
    )


@router.get("/connect")
async def initiate_calendar_oauth(
    owner: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(calendar_users),
):
    """Initiate Google Calendar OAuth flow"""
    owner_id = resolve_owner(current_user, owner)
    logger.info(f"Google Calendar OAuth initiated for {owner_id} by user {current_user.user_id}")
    return {"authorization_url": CredentialManager.build_authorization_url(state=owner_id)}


@router.post("/callback")
async def handle_calendar_callback(
    data: ConnectCallbackRequest,
    current_user: CurrentUser = Depends(calendar_users),
    credentials: CredentialManager = Depends(get_credential_manager),
):
    """Exchange the authorization code and store the refresh token"""
    owner_id = resolve_owner(current_user, data.owner)
    credential = await credentials.connect(owner_id, data.code)
    return {
        "success": True,
        "message": "Google Calendar connected successfully",
        "owner_id": owner_id,
        "account_email": credential.account_email,
    }


@router.post("/disconnect")
async def disconnect_calendar(
    owner: Optional[str] = Query(None),
    current_user: CurrentUser = Depends(calendar_users),
    credentials: CredentialManager = Depends(get_credential_manager),
):
    """Disconnect external calendar integration"""
    owner_id = resolve_owner(current_user, owner)
    if not await credentials.disconnect(owner_id):
        raise HTTPException(status_code=404, detail="Google Calendar not connected")
    return {"success": True, "message": "Google Calendar disconnected"}


def scoped_credential_ref(
    current_user: CurrentUser, db: Session, doctor: str, credential_ref: Optional[str]
) -> tuple[int, Optional[str]]:
    """Doctors sync only their own slots, using their own calendar or the clinic fallback"""
    doctor_id = require_doctor_id(db, doctor)
    if current_user.role != ROLE_DOCTOR:
        return doctor_id, credential_ref
    if current_user.doctor_id != doctor_id:
        raise HTTPException(status_code=403, detail="Doctors can only sync their own calendar")
    if credential_ref and credential_ref != doctor_owner(doctor_id):
        raise HTTPException(status_code=403, detail="Doctors can only use their own calendar credential")
    return doctor_id, credential_ref


# ============================================================================
# SYNC
# ============================================================================


@router.post("/doctors/{doctor}/import", response_model=SyncSummary)
async def import_events(
    doctor: str,
    data: SyncRequest,
    current_user: CurrentUser = Depends(calendar_users),
    service: CalendarSyncService = Depends(get_sync_service),
):
    doctor_id, credential_ref = scoped_credential_ref(current_user, service.db, doctor, data.credential_ref)
    return await service.import_from_external(doctor_id, credential_ref, data.start_date, data.end_date)


@router.post("/doctors/{doctor}/export", response_model=SyncSummary)
async def export_slots(
    doctor: str,
    data: SyncRequest,
    current_user: CurrentUser = Depends(calendar_users),
    service: CalendarSyncService = Depends(get_sync_service),
):
    doctor_id, credential_ref = scoped_credential_ref(current_user, service.db, doctor, data.credential_ref)
    return await service.export_to_external(doctor_id, credential_ref, data.start_date, data.end_date)


@router.post("/doctors/{doctor}/sync", response_model=SyncSummary)
async def sync_calendar(
    doctor: str,
    data: SyncRequest,
    current_user: CurrentUser = Depends(calendar_users),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Import external changes, then export unlinked slots"""
    doctor_id, credential_ref = scoped_credential_ref(current_user, service.db, doctor, data.credential_ref)
    return await service.sync(doctor_id, credential_ref, data.start_date, data.end_date)


__all__ = ["router"]
