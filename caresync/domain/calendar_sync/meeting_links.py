"""
Meeting link provisioner

Creates at most one conferencing-enabled calendar event per appointment.
The link and event id are saved together by a single conditional update,
so an appointment never ends up with one and not the other.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import CLINIC_TIMEZONE
from ...database import SessionLocal
from ...errors import ExternalServiceError, NotFoundError, SchedulingError
from ...services.calendar_client import GoogleCalendarClient
from ...services.notification_service import MEETING_LINK_READY, Notifier, notify
from ..appointments.repository import AppointmentRepository
from ..availability.repository import TimeSlotRepository
from ..doctors.repository import DoctorRepository, PatientRepository
from .credentials import CredentialManager
from .sync_service import APPOINTMENT_MARKER

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeetingLink:
    meet_link: str
    event_id: Optional[str]
    created: bool


def conference_request_id(appointment_id: int) -> str:
    """Stable per appointment, so a repeated create request is de-duplicated upstream too"""
    return f"caresync-appointment-{appointment_id}"


def extract_meet_link(event: dict) -> Optional[str]:
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    for entry in (event.get("conferenceData") or {}).get("entryPoints", []):
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    return None


class MeetingLinkService:
    def __init__(
        self,
        db: Session,
        credentials: Optional[CredentialManager] = None,
        notifier: Optional[Notifier] = None,
        timezone_name: str = CLINIC_TIMEZONE,
    ):
        self.db = db
        self.credentials = credentials or CredentialManager(db)
        self.notifier = notifier
        self.zone = ZoneInfo(timezone_name)
        self.repo = AppointmentRepository()

    async def ensure_meeting_link(self, appointment_id: int) -> MeetingLink:
        appointment = self._get(appointment_id)
        if appointment.google_meet_link:
            return MeetingLink(appointment.google_meet_link, appointment.google_event_id, created=False)

        slot, doctor, patient = self._parties(appointment)
        client = GoogleCalendarClient(self.credentials, self.credentials.resolve_owner_for_doctor(doctor))
        body = self._event_body(appointment, slot, doctor, patient)
        event = await client.create_event(body, with_conference=True)

        event_id = event.get("id")
        meet_link = extract_meet_link(event)
        if not meet_link or not event_id:
            logger.error(f"❌ Calendar event for appointment {appointment_id} came back without a video link")
            if event_id:
                await self._discard(client, event_id)
            raise ExternalServiceError("Calendar did not return a video conference link", code="meeting_link_missing")

        if not self.repo.set_meeting_link_if_absent(self.db, appointment_id, meet_link, event_id):
            # Another request stored a link first; keep theirs
            self.db.rollback()
            await self._discard(client, event_id)
            appointment = self.repo.get_appointment(self.db, appointment_id)
            if not appointment or not appointment.google_meet_link:
                raise NotFoundError(f"Appointment {appointment_id} not found", code="appointment_not_found")
            return MeetingLink(appointment.google_meet_link, appointment.google_event_id, created=False)

        self.db.commit()
        logger.info(f"✅ Meeting link created for appointment {appointment_id}")
        notify(
            MEETING_LINK_READY,
            patient.email,
            {"appointment_id": appointment_id, "meet_link": meet_link},
            self.notifier,
        )
        return MeetingLink(meet_link, event_id, created=True)

    async def update_meeting_event(self, appointment_id: int) -> bool:
        """Move the appointment's calendar event to its current slot; False when it has none"""
        appointment = self._get(appointment_id)
        if not appointment.google_event_id:
            return False

        slot, doctor, patient = self._parties(appointment)
        client = GoogleCalendarClient(self.credentials, self.credentials.resolve_owner_for_doctor(doctor))
        body = self._event_body(appointment, slot, doctor, patient)
        await client.update_event(
            appointment.google_event_id, {key: body[key] for key in ("summary", "description", "start", "end")}
        )
        logger.info(f"🔄 Meeting event {appointment.google_event_id} moved with appointment {appointment_id}")
        return True

    async def remove_meeting_event(self, appointment_id: int, event_id: Optional[str] = None) -> bool:
        """Delete the appointment's calendar event and forget its link; False when there was nothing to remove"""
        appointment = self._get(appointment_id)
        event_id = event_id or appointment.google_event_id
        if not event_id:
            return False

        doctor = DoctorRepository.get_by_id(self.db, appointment.doctor_id)
        if not doctor:
            raise NotFoundError(f"Appointment {appointment_id} references missing records", code="appointment_incomplete")
        client = GoogleCalendarClient(self.credentials, self.credentials.resolve_owner_for_doctor(doctor))
        await client.delete_event(event_id)

        if self.repo.clear_meeting_link(self.db, appointment_id, event_id):
            self.db.commit()
        logger.info(f"🗑️ Meeting event {event_id} removed for appointment {appointment_id}")
        return True

    def _get(self, appointment_id: int):
        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            raise NotFoundError(f"Appointment {appointment_id} not found", code="appointment_not_found")
        return appointment

    def _parties(self, appointment) -> tuple:
        slot = TimeSlotRepository.get_slot(self.db, appointment.time_slot_id)
        doctor = DoctorRepository.get_by_id(self.db, appointment.doctor_id)
        patient = PatientRepository.get_by_id(self.db, appointment.patient_id)
        if not slot or not doctor or not patient:
            raise NotFoundError(
                f"Appointment {appointment.id} references missing records", code="appointment_incomplete"
            )
        return slot, doctor, patient

    def _event_body(self, appointment, slot, doctor, patient) -> dict:
        start_dt = datetime.combine(slot.date, time.fromisoformat(slot.start_time), tzinfo=self.zone)
        end_dt = datetime.combine(slot.date, time.fromisoformat(slot.end_time), tzinfo=self.zone)
        attendees = [{"email": email} for email in (doctor.email, patient.email) if email]
        return {
            "summary": f"Appointment: {patient.full_name} with Dr. {doctor.full_name}",
            "description": (
                f"CareSync appointment #{appointment.id} ({appointment.type})\n"
                f"Reason for visit: {appointment.reason_for_visit}"
            ),
            "start": {"dateTime": start_dt.isoformat(), "timeZone": self.zone.key},
            "end": {"dateTime": end_dt.isoformat(), "timeZone": self.zone.key},
            "attendees": attendees,
            "conferenceData": {
                "createRequest": {
                    "requestId": conference_request_id(appointment.id),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
            "extendedProperties": {"private": {APPOINTMENT_MARKER: str(appointment.id)}},
        }

    @staticmethod
    async def _discard(client: GoogleCalendarClient, event_id: str) -> None:
        try:
            await client.delete_event(event_id)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Could not delete unused meeting event {event_id}: {e.message}")


async def _run_in_background(
    appointment_id: int, action: str, work: Callable, session_factory, manager_kwargs: dict
) -> None:
    """Background-task runner: failures are logged, the request already succeeded"""
    db = session_factory()
    try:
        await work(MeetingLinkService(db, CredentialManager(db, **manager_kwargs)))
    except SchedulingError as e:
        logger.warning(f"⚠️ Meeting link for appointment {appointment_id} not {action}: {e.message}")
    except SQLAlchemyError as e:
        logger.error(f"❌ Meeting link for appointment {appointment_id} not saved: {e}")
    finally:
        db.close()


async def provision_meeting_link(appointment_id: int, session_factory=SessionLocal, **manager_kwargs) -> None:
    await _run_in_background(
        appointment_id,
        "provisioned",
        lambda service: service.ensure_meeting_link(appointment_id),
        session_factory,
        manager_kwargs,
    )


async def reschedule_meeting_event(appointment_id: int, session_factory=SessionLocal, **manager_kwargs) -> None:
    await _run_in_background(
        appointment_id,
        "moved",
        lambda service: service.update_meeting_event(appointment_id),
        session_factory,
        manager_kwargs,
    )


async def cancel_meeting_event(
    appointment_id: int, event_id: Optional[str] = None, session_factory=SessionLocal, **manager_kwargs
) -> None:
    await _run_in_background(
        appointment_id,
        "removed",
        lambda service: service.remove_meeting_event(appointment_id, event_id),
        session_factory,
        manager_kwargs,
    )
