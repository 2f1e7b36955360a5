"""
Calendar sync service

Reconciles a doctor's slots with their external calendar. The slot store
stays the source of truth for bookings; the calendar is authoritative only
for the doctor's own availability and busy time.

Import and export for one doctor never interleave (one asyncio lock per
doctor); different doctors sync in parallel. A failure on one event or slot
is recorded in the SyncSummary and the run carries on. CredentialError is
the exception: without a usable credential nothing else can succeed.
"""

import asyncio
import logging
import weakref
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import CALENDAR_IMPORT_STATUS_POLICY, CLINIC_TIMEZONE
from ...database import SessionLocal
from ...errors import ExternalServiceError, SchedulingError, ValidationError
from ...models import (
    ACTIVE_SLOT_STATUSES,
    SLOT_AVAILABLE,
    SLOT_BLOCKED,
    SLOT_BOOKED,
    SLOT_STATUSES,
    Doctor,
    TimeSlot,
)
from ...services.calendar_client import ExternalEvent, GoogleCalendarClient, parse_rfc3339
from ...services.notification_service import SYNC_CONFLICT, SYNC_FAILED, Notifier, notify
from ..appointments.repository import AppointmentRepository
from ..availability.repository import TimeSlotRepository
from ..availability.service import default_range
from ..doctors.repository import DoctorRepository
from ..doctors.resolver import DoctorIdentifier, require_doctor_id
from .credentials import CredentialManager
from .schemas import DoctorSyncResult, SyncSummary

logger = logging.getLogger(__name__)

# Private extended properties stamped on events this service creates
SLOT_MARKER = "caresyncSlotId"
DOCTOR_MARKER = "caresyncDoctorId"
APPOINTMENT_MARKER = "caresyncAppointmentId"

IMPORTED_BY = "calendar_import"

StatusPolicy = Callable[[ExternalEvent, set], str]


def attendee_status_policy(event: ExternalEvent, doctor_emails: set) -> str:
    """
    Booked when anyone besides the doctor is invited; otherwise a free
    (transparent) event is availability and a busy one blocks the time.
    """
    others = [
        a
        for a in event.attendees
        if a.email and not a.is_self and not a.is_resource and a.email not in doctor_emails
    ]
    if others:
        return SLOT_BOOKED
    if event.transparency == "transparent":
        return SLOT_AVAILABLE
    return SLOT_BLOCKED


def always_available_policy(event: ExternalEvent, doctor_emails: set) -> str:
    return SLOT_AVAILABLE


IMPORT_STATUS_POLICIES = {
    "attendees": attendee_status_policy,
    "available": always_available_policy,
}


def get_import_status_policy(name: str = CALENDAR_IMPORT_STATUS_POLICY) -> StatusPolicy:
    try:
        return IMPORT_STATUS_POLICIES[name]
    except KeyError as e:
        raise ValidationError(
            f"Unknown import status policy '{name}' (expected one of: {', '.join(IMPORT_STATUS_POLICIES)})"
        ) from e


# asyncio locks belong to one event loop, so keep a table per loop
_sync_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[int, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def doctor_sync_lock(doctor_id: int) -> asyncio.Lock:
    locks = _sync_locks.setdefault(asyncio.get_running_loop(), {})
    if doctor_id not in locks:
        locks[doctor_id] = asyncio.Lock()
    return locks[doctor_id]


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Database timestamps are naive UTC"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def event_bounds(event: ExternalEvent, zone: ZoneInfo) -> Optional[tuple[date, str, str]]:
    """Clinic-local (date, start, end) for a timed single-day event, else None"""
    if event.start is None or event.end is None:
        return None
    start = event.start.astimezone(zone)
    end = event.end.astimezone(zone)
    if end <= start or start.date() != end.date():
        return None
    return start.date(), start.strftime("%H:%M"), end.strftime("%H:%M")


class CalendarSyncService:
    """Import, export and two-way sync between slots and one external calendar"""

    def __init__(
        self,
        db: Session,
        credentials: Optional[CredentialManager] = None,
        status_policy: Optional[StatusPolicy] = None,
        notifier: Optional[Notifier] = None,
        timezone_name: str = CLINIC_TIMEZONE,
    ):
        self.db = db
        self.credentials = credentials or CredentialManager(db)
        self.status_policy = status_policy or get_import_status_policy()
        self.notifier = notifier
        self.zone = ZoneInfo(timezone_name)
        self.slots = TimeSlotRepository()
        self.appointments = AppointmentRepository()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def import_from_external(
        self,
        doctor_identifier: DoctorIdentifier,
        credential_ref: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SyncSummary:
        doctor, client, start, end = self._prepare(doctor_identifier, credential_ref, start_date, end_date)
        async with doctor_sync_lock(doctor.id):
            return await self._import(doctor, client, start, end)

    async def export_to_external(
        self,
        doctor_identifier: DoctorIdentifier,
        credential_ref: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SyncSummary:
        doctor, client, start, end = self._prepare(doctor_identifier, credential_ref, start_date, end_date)
        async with doctor_sync_lock(doctor.id):
            return await self._export(doctor, client, start, end)

    async def sync(
        self,
        doctor_identifier: DoctorIdentifier,
        credential_ref: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SyncSummary:
        """Import then export; a failed event listing is recorded and export still runs"""
        doctor, client, start, end = self._prepare(doctor_identifier, credential_ref, start_date, end_date)
        doctor_id, doctor_email = doctor.id, doctor.email

        async with doctor_sync_lock(doctor_id):
            try:
                imported = await self._import(doctor, client, start, end)
            except ExternalServiceError as e:
                imported = SyncSummary()
                imported.record_failure("import", e.message)
            exported = await self._export(doctor, client, start, end)

        summary = imported.merge(exported)
        logger.info(
            f"🔄 Sync for doctor {doctor_id}: imported={summary.imported} exported={summary.exported} "
            f"conflicts={summary.conflicts} failed={summary.failed}"
        )
        if summary.failed:
            notify(
                SYNC_FAILED,
                doctor_email,
                {"doctor_id": doctor_id, "failures": [f.model_dump() for f in summary.failures]},
                self.notifier,
            )
        return summary

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def _import(self, doctor: Doctor, client: GoogleCalendarClient, start: date, end: date) -> SyncSummary:
        summary = SyncSummary()
        doctor_id = doctor.id
        time_min, time_max = self._window(start, end)
        events = await client.list_events(time_min, time_max)

        credential = self.credentials.get_credential(client.owner_id)
        doctor_emails = {
            email.lower() for email in (doctor.email, credential.account_email if credential else None) if email
        }
        appointment_event_ids = self.appointments.list_event_ids(self.db, doctor_id)
        duplicates = []

        for event in events:
            try:
                self._import_event(doctor_id, event, doctor_emails, appointment_event_ids, summary, duplicates)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ Failed to import event {event.id} for doctor {doctor_id}: {e}")
                summary.record_failure(event.id, f"storage error: {e.__class__.__name__}")

        for event_id in duplicates:
            await self._discard_event(client, event_id)

        logger.info(
            f"✅ Imported {len(events)} events for doctor {doctor_id}: "
            f"{summary.imported} applied, {summary.conflicts} conflicts, {summary.skipped} skipped"
        )
        return summary

    def _import_event(
        self,
        doctor_id: int,
        event: ExternalEvent,
        doctor_emails: set,
        appointment_event_ids: set,
        summary: SyncSummary,
        duplicates: list,
    ) -> None:
        if event.id in appointment_event_ids or APPOINTMENT_MARKER in event.private_properties:
            summary.skipped += 1
            return

        # A shared clinic calendar also holds the slots exported for other doctors
        owner_marker = event.private_properties.get(DOCTOR_MARKER)
        if owner_marker is not None and owner_marker != str(doctor_id):
            summary.skipped += 1
            return

        slot = self.slots.find_by_external_id(self.db, doctor_id, event.id)
        if slot:
            self._apply_linked_event(slot, event, doctor_emails, summary)
            return

        if event.is_cancelled:
            summary.skipped += 1
            return

        bounds = event_bounds(event, self.zone)
        if bounds is None:
            logger.debug(f"Skipping all-day or multi-day event {event.id}")
            summary.skipped += 1
            return

        if SLOT_MARKER in event.private_properties:
            self._import_exported_event(doctor_id, event, bounds, summary, duplicates)
            return

        day, start_time, end_time = bounds
        now = datetime.utcnow()
        overlapping = self.slots.find_overlapping(self.db, doctor_id, day, start_time, end_time, SLOT_STATUSES)
        if not overlapping:
            self.slots.add_slot(
                self.db,
                doctor_id=doctor_id,
                date=day,
                start_time=start_time,
                end_time=end_time,
                status=self.status_policy(event, doctor_emails),
                external_event_id=event.id,
                external_updated_at=naive_utc(event.updated),
                last_synced_at=now,
                created_by=IMPORTED_BY,
            )
            summary.imported += 1
            return

        # Busy elsewhere: close overlapping open slots instead of deleting them
        for other in overlapping:
            if other.status == SLOT_AVAILABLE:
                if self.slots.compare_and_set_status(
                    self.db, other.id, SLOT_AVAILABLE, SLOT_BLOCKED, last_synced_at=now
                ):
                    summary.imported += 1
                    logger.info(f"⚠️ Slot {other.id} blocked by external event {event.id}")
            elif other.status == SLOT_BOOKED:
                logger.warning(f"⚠️ External event {event.id} overlaps booked slot {other.id}; left booked")
                summary.skipped += 1

    def _import_exported_event(
        self, doctor_id: int, event: ExternalEvent, bounds: tuple, summary: SyncSummary, duplicates: list
    ) -> None:
        """
        Events stamped with a slot marker were created by export and never
        become slots of their own. One whose id was never saved is re-linked;
        any other copy of this doctor's slot is queued for deletion.
        """
        marker = event.private_properties.get(SLOT_MARKER, "")
        slot = self.slots.get_slot(self.db, int(marker)) if marker.isdigit() else None
        if not slot or slot.doctor_id != doctor_id:
            summary.skipped += 1
            return

        if not slot.external_event_id and (slot.date, slot.start_time, slot.end_time) == bounds:
            if self.slots.link_external_event(
                self.db, slot.id, event.id, naive_utc(event.updated), datetime.utcnow()
            ):
                logger.info(f"🔄 Re-linked slot {slot.id} to exported event {event.id}")
                summary.imported += 1
                return

        logger.info(f"🧹 Event {event.id} duplicates the export of slot {slot.id}; removing it")
        duplicates.append(event.id)
        summary.skipped += 1

    def _apply_linked_event(
        self, slot: TimeSlot, event: ExternalEvent, doctor_emails: set, summary: SyncSummary
    ) -> None:
        """Last writer wins, judged by the event's last-modified time"""
        now = datetime.utcnow()
        event_updated = naive_utc(event.updated)
        if event_updated and slot.external_updated_at and event_updated <= slot.external_updated_at:
            summary.skipped += 1
            return

        current_bounds = (slot.date, slot.start_time, slot.end_time)
        stamp = {"external_updated_at": event_updated or slot.external_updated_at, "last_synced_at": now}

        if event.is_cancelled:
            desired_bounds = current_bounds
            desired_status = SLOT_BLOCKED
        else:
            desired_bounds = event_bounds(event, self.zone)
            if desired_bounds is None:
                summary.record_failure(event.id, "event no longer fits in a single day")
                return
            desired_status = self.status_policy(event, doctor_emails)

        if slot.status == SLOT_BOOKED and self.slots.has_active_appointment(self.db, slot.id):
            # A local appointment holds the slot; record the disagreement but keep the booking
            self.slots.update_if_status(self.db, slot.id, SLOT_BOOKED, **stamp)
            if event.is_cancelled or desired_bounds != current_bounds:
                summary.conflicts += 1
                logger.warning(f"⚠️ Booked slot {slot.id} changed externally (event {event.id}); kept local booking")
                notify(
                    SYNC_CONFLICT,
                    next(iter(sorted(doctor_emails)), None),
                    {"slot_id": slot.id, "event_id": event.id, "cancelled": event.is_cancelled},
                    self.notifier,
                )
            else:
                summary.skipped += 1
            return

        if desired_bounds == current_bounds and desired_status == slot.status:
            self.slots.update_if_status(self.db, slot.id, slot.status, **stamp)
            summary.skipped += 1
            return

        values = {"status": desired_status, **stamp}
        if desired_bounds != current_bounds:
            day, start_time, end_time = desired_bounds
            if desired_status in ACTIVE_SLOT_STATUSES and self.slots.find_overlapping(
                self.db, slot.doctor_id, day, start_time, end_time, exclude_slot_id=slot.id
            ):
                summary.record_failure(event.id, "moved event would overlap another slot")
                return
            values.update(date=day, start_time=start_time, end_time=end_time)

        if self.slots.update_if_status(self.db, slot.id, slot.status, **values):
            summary.imported += 1
            summary.conflicts += 1
            logger.info(f"🔄 Slot {slot.id} updated from external event {event.id} ({slot.status} -> {desired_status})")
        else:
            summary.record_failure(event.id, "slot changed locally during import")

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def _export(self, doctor: Doctor, client: GoogleCalendarClient, start: date, end: date) -> SyncSummary:
        summary = SyncSummary()
        doctor_id, doctor_name = doctor.id, doctor.full_name
        pending = [
            (slot.id, slot.date, slot.start_time, slot.end_time, slot.status)
            for slot in self.slots.list_unlinked(self.db, doctor_id, start, end)
        ]

        for slot_id, day, start_time, end_time, status in pending:
            item = f"slot:{slot_id}"
            body = self._event_body(slot_id, doctor_id, doctor_name, day, start_time, end_time, status)
            try:
                event = await client.create_event(body)
            except ExternalServiceError as e:
                summary.record_failure(item, e.message)
                continue

            event_id = event.get("id")
            if not event_id:
                summary.record_failure(item, "calendar returned no event id")
                continue

            try:
                linked = self.slots.link_external_event(
                    self.db, slot_id, event_id, naive_utc(parse_rfc3339(event.get("updated"))), datetime.utcnow()
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ Failed to link slot {slot_id} to event {event_id}: {e}")
                summary.record_failure(item, f"storage error: {e.__class__.__name__}")
                await self._discard_event(client, event_id)
                continue

            if not linked:
                logger.info(f"ℹ️ Slot {slot_id} was linked concurrently; discarding duplicate event {event_id}")
                summary.skipped += 1
                await self._discard_event(client, event_id)
                continue
            summary.exported += 1

        logger.info(f"✅ Exported {summary.exported} slots for doctor {doctor_id} ({summary.failed} failed)")
        return summary

    def _event_body(
        self, slot_id: int, doctor_id: int, doctor_name: str, day: date, start_time: str, end_time: str, status: str
    ) -> dict:
        start_dt = datetime.combine(day, time.fromisoformat(start_time), tzinfo=self.zone)
        end_dt = datetime.combine(day, time.fromisoformat(end_time), tzinfo=self.zone)
        available = status == SLOT_AVAILABLE
        return {
            "summary": f"{'Available' if available else 'Booked'}: Dr. {doctor_name}",
            "description": "Appointment slot managed by CareSync",
            "start": {"dateTime": start_dt.isoformat(), "timeZone": self.zone.key},
            "end": {"dateTime": end_dt.isoformat(), "timeZone": self.zone.key},
            "transparency": "transparent" if available else "opaque",
            "colorId": "2",
            "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 10}]},
            "extendedProperties": {"private": {SLOT_MARKER: str(slot_id), DOCTOR_MARKER: str(doctor_id)}},
        }

    @staticmethod
    async def _discard_event(client: GoogleCalendarClient, event_id: str) -> None:
        try:
            await client.delete_event(event_id)
        except ExternalServiceError as e:
            logger.warning(f"⚠️ Could not delete orphaned event {event_id}: {e.message}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prepare(
        self,
        doctor_identifier: DoctorIdentifier,
        credential_ref: Optional[str],
        start_date: Optional[date],
        end_date: Optional[date],
    ) -> tuple[Doctor, GoogleCalendarClient, date, date]:
        doctor_id = require_doctor_id(self.db, doctor_identifier)
        doctor = DoctorRepository.get_by_id(self.db, doctor_id)
        start, end = default_range(start_date, end_date)
        owner_id = credential_ref or self.credentials.resolve_owner_for_doctor(doctor)
        return doctor, GoogleCalendarClient(self.credentials, owner_id), start, end

    def _window(self, start: date, end: date) -> tuple[datetime, datetime]:
        time_min = datetime.combine(start, time.min, tzinfo=self.zone)
        time_max = datetime.combine(end + timedelta(days=1), time.min, tzinfo=self.zone)
        return time_min, time_max


async def sync_doctors(
    doctor_identifiers: Iterable[DoctorIdentifier],
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    session_factory=SessionLocal,
    **manager_kwargs,
) -> list[DoctorSyncResult]:
    """Sync several doctors in parallel, one session each; per-doctor errors are reported, not raised"""

    async def run_one(identifier: DoctorIdentifier) -> DoctorSyncResult:
        db = session_factory()
        try:
            service = CalendarSyncService(db, CredentialManager(db, **manager_kwargs))
            summary = await service.sync(identifier, None, start_date, end_date)
            return DoctorSyncResult(doctor=identifier, summary=summary)
        except SchedulingError as e:
            logger.error(f"❌ Calendar sync failed for doctor {identifier}: {e.message}")
            return DoctorSyncResult(doctor=identifier, error=e.message)
        finally:
            db.close()

    return list(await asyncio.gather(*(run_one(identifier) for identifier in doctor_identifiers)))
