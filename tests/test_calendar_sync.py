import asyncio
from datetime import datetime

import pytest

from caresync.domain.appointments.service import AppointmentService
from caresync.domain.calendar_sync.sync_service import (
    APPOINTMENT_MARKER,
    DOCTOR_MARKER,
    SLOT_MARKER,
    CalendarSyncService,
    get_import_status_policy,
    sync_doctors,
)
from caresync.errors import CredentialError, ValidationError
from caresync.models import SLOT_AVAILABLE, SLOT_BLOCKED, SLOT_BOOKED, Doctor, TimeSlot
from caresync.services.notification_service import SYNC_CONFLICT, SYNC_FAILED

from .conftest import MONDAY

DAY = MONDAY.isoformat()


def at(hhmm: str) -> str:
    return f"{DAY}T{hhmm}:00Z"


@pytest.fixture
def sync(db, credentials, notifier) -> CalendarSyncService:
    return CalendarSyncService(db, credentials, notifier=notifier, timezone_name="UTC")


def _slots(db, doctor_id: int) -> list:
    return db.query(TimeSlot).filter(TimeSlot.doctor_id == doctor_id).order_by(TimeSlot.date, TimeSlot.start_time).all()


class TestImport:
    async def test_unmatched_busy_event_becomes_linked_slot_and_reimport_is_noop(
        self, db, sync, google, connected_doctor
    ) -> None:
        event = google.add_event(at("14:00"), at("15:00"))

        first = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        (slot,) = _slots(db, connected_doctor.id)
        assert (slot.start_time, slot.end_time) == ("14:00", "15:00")
        assert slot.status in (SLOT_BLOCKED, SLOT_BOOKED)
        assert slot.external_event_id == event["id"]
        assert slot.created_by == "calendar_import"
        assert first.imported == 1

        second = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert (second.imported, second.conflicts, second.failed) == (0, 0, 0)
        assert len(_slots(db, connected_doctor.id)) == 1

    @pytest.mark.parametrize(
        ("attendees", "transparency", "expected"),
        [
            (["sam.patel@example.test"], None, SLOT_BOOKED),
            (["ada@gmail.test", "ada.moreau@clinic.test"], None, SLOT_BLOCKED),
            (None, "transparent", SLOT_AVAILABLE),
            (None, None, SLOT_BLOCKED),
        ],
    )
    async def test_attendee_policy(self, db, sync, google, connected_doctor, attendees, transparency, expected) -> None:
        google.add_event(at("14:00"), at("15:00"), attendees=attendees, transparency=transparency)

        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert _slots(db, connected_doctor.id)[0].status == expected

    async def test_available_policy(self, db, credentials, google, connected_doctor) -> None:
        service = CalendarSyncService(
            db, credentials, status_policy=get_import_status_policy("available"), timezone_name="UTC"
        )
        google.add_event(at("14:00"), at("15:00"), attendees=["sam.patel@example.test"])

        await service.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert _slots(db, connected_doctor.id)[0].status == SLOT_AVAILABLE

    def test_unknown_policy_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            get_import_status_policy("random")

    async def test_event_times_are_converted_to_clinic_time(self, db, credentials, google, connected_doctor) -> None:
        service = CalendarSyncService(db, credentials, timezone_name="America/New_York")
        # 19:00 UTC is 14:00 in New York in January
        google.add_event(at("19:00"), at("20:00"))

        await service.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        (slot,) = _slots(db, connected_doctor.id)
        assert (slot.date, slot.start_time, slot.end_time) == (MONDAY, "14:00", "15:00")

    async def test_overlapping_event_blocks_open_slots_and_spares_booked(
        self, db, sync, google, connected_doctor, make_slot
    ) -> None:
        open_slot = make_slot("14:00", "14:30")
        booked = make_slot("14:30", "15:00", status=SLOT_BOOKED)
        google.add_event(at("14:00"), at("15:00"))

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        db.refresh(open_slot)
        db.refresh(booked)
        assert open_slot.status == SLOT_BLOCKED
        assert booked.status == SLOT_BOOKED
        assert len(_slots(db, connected_doctor.id)) == 2
        assert (summary.imported, summary.skipped) == (1, 1)

    async def test_unusable_events_are_skipped(self, db, sync, google, connected_doctor) -> None:
        google.events["allday"] = {
            "id": "allday",
            "status": "confirmed",
            "start": {"date": DAY},
            "end": {"date": "2030-01-08"},
            "updated": google.tick(),
        }
        google.add_event(at("22:00"), "2030-01-08T02:00:00Z")
        google.add_event(at("09:00"), at("10:00"), status="cancelled")
        google.add_event(at("11:00"), at("12:00"), private={APPOINTMENT_MARKER: "5"})

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert _slots(db, connected_doctor.id) == []
        assert (summary.imported, summary.skipped) == (0, 4)


class TestLinkedEvents:
    async def test_newer_event_moves_slot(self, db, sync, google, connected_doctor) -> None:
        event = google.add_event(at("14:00"), at("15:00"))
        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)
        google.modify_event(event["id"], start={"dateTime": at("16:00")}, end={"dateTime": at("17:00")})

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        (slot,) = _slots(db, connected_doctor.id)
        assert (slot.start_time, slot.end_time) == ("16:00", "17:00")
        assert (summary.imported, summary.conflicts) == (1, 1)

    async def test_stale_event_is_ignored(self, db, sync, google, connected_doctor) -> None:
        event = google.add_event(at("14:00"), at("15:00"))
        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)
        (slot,) = _slots(db, connected_doctor.id)
        slot.external_updated_at = datetime(2031, 1, 1)
        db.commit()
        google.modify_event(event["id"], start={"dateTime": at("16:00")}, end={"dateTime": at("17:00")})

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        db.refresh(slot)
        assert slot.start_time == "14:00"
        assert summary.skipped == 1

    async def test_cancelled_event_blocks_available_slot(self, db, sync, google, connected_doctor) -> None:
        event = google.add_event(at("14:00"), at("15:00"), transparency="transparent")
        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)
        google.modify_event(event["id"], status="cancelled")

        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        (slot,) = _slots(db, connected_doctor.id)
        assert slot.status == SLOT_BLOCKED
        assert slot.external_event_id == event["id"]

    async def test_booked_slot_keeps_local_booking(
        self, db, sync, google, notifier, connected_doctor, patient, make_slot
    ) -> None:
        event = google.add_event(at("14:00"), at("15:00"))
        slot = make_slot("14:00", "15:00", external_event_id=event["id"])
        AppointmentService(db).create_appointment(
            connected_doctor.id, patient.id, slot.id, {"type": "in-person", "reason_for_visit": "Back pain"}
        )
        google.modify_event(event["id"], status="cancelled")

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        db.refresh(slot)
        assert slot.status == SLOT_BOOKED
        assert summary.conflicts == 1
        assert SYNC_CONFLICT in notifier.types()

    async def test_imported_booking_follows_cancelled_event(self, db, sync, google, connected_doctor) -> None:
        event = google.add_event(at("14:00"), at("15:00"), attendees=["sam.patel@example.test"])
        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)
        (slot,) = _slots(db, connected_doctor.id)
        assert slot.status == SLOT_BOOKED
        google.modify_event(event["id"], status="cancelled")

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        db.refresh(slot)
        assert slot.status == SLOT_BLOCKED
        assert summary.imported == 1

    async def test_imported_booking_reopens_when_attendees_leave(self, db, sync, google, connected_doctor) -> None:
        event = google.add_event(at("14:00"), at("15:00"), attendees=["sam.patel@example.test"])
        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)
        google.modify_event(event["id"], attendees=[], transparency="transparent")

        await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        (slot,) = _slots(db, connected_doctor.id)
        assert slot.status == SLOT_AVAILABLE

    async def test_own_exported_event_is_relinked(self, db, sync, google, connected_doctor, make_slot) -> None:
        slot = make_slot("09:00", "09:30")
        event = google.add_event(at("09:00"), at("09:30"), private={SLOT_MARKER: str(slot.id)})

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        db.refresh(slot)
        assert slot.external_event_id == event["id"]
        assert summary.imported == 1
        assert len(_slots(db, connected_doctor.id)) == 1

    async def test_duplicate_export_is_removed_not_blocking(
        self, db, sync, google, connected_doctor, make_slot
    ) -> None:
        slot = make_slot("09:00", "09:30")
        await sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)
        db.refresh(slot)
        linked_id = slot.external_event_id
        # a retried create whose first attempt also reached the calendar
        duplicate = google.add_event(
            at("09:00"), at("09:30"), private={SLOT_MARKER: str(slot.id), DOCTOR_MARKER: str(connected_doctor.id)}
        )

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        db.refresh(slot)
        assert slot.status == SLOT_AVAILABLE
        assert slot.external_event_id == linked_id
        assert summary.imported == 0
        assert google.events[duplicate["id"]]["status"] == "cancelled"
        assert google.events[linked_id]["status"] == "confirmed"
        assert len(_slots(db, connected_doctor.id)) == 1


class TestSharedClinicCalendar:
    @pytest.fixture
    def colleague(self, db) -> Doctor:
        colleague = Doctor(full_name="Lin Okafor", email="lin.okafor@clinic.test", license_number="LIC-2002", clinic_id=1)
        db.add(colleague)
        db.commit()
        return colleague

    async def test_colleague_exports_are_not_imported(
        self, db, sync, credentials, google, doctor, colleague, make_slot
    ) -> None:
        credentials.store_credential("clinic:1", "clinic-refresh-token")
        make_slot("09:00", "09:30")
        await sync.export_to_external(doctor.id, start_date=MONDAY, end_date=MONDAY)

        summary = await sync.import_from_external(colleague.id, start_date=MONDAY, end_date=MONDAY)

        assert _slots(db, colleague.id) == []
        assert (summary.imported, summary.skipped) == (0, 1)
        assert [e["status"] for e in google.events.values()] == ["confirmed"]

    async def test_slot_marker_of_another_doctor_is_skipped(
        self, db, sync, credentials, google, doctor, colleague, make_slot
    ) -> None:
        credentials.store_credential("clinic:1", "clinic-refresh-token")
        slot = make_slot("09:00", "09:30")
        google.add_event(at("09:00"), at("09:30"), private={SLOT_MARKER: str(slot.id)})

        summary = await sync.import_from_external(colleague.id, start_date=MONDAY, end_date=MONDAY)

        assert _slots(db, colleague.id) == []
        assert summary.skipped == 1
        db.refresh(slot)
        assert slot.external_event_id is None


class TestExport:
    async def test_export_twice_creates_one_event_per_slot(self, db, sync, google, connected_doctor, make_slot) -> None:
        make_slot("09:00", "09:30")
        make_slot("09:30", "10:00", status=SLOT_BOOKED)
        make_slot("10:00", "10:30", status=SLOT_BLOCKED)

        first = await sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)
        second = await sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert first.exported == 2
        assert second.exported == 0
        assert len(google.calendar_calls("POST")) == 2
        linked = {s.external_event_id for s in _slots(db, connected_doctor.id) if s.status != SLOT_BLOCKED}
        assert linked == set(google.events)

    async def test_event_body_marks_slot_and_availability(self, sync, google, connected_doctor, make_slot) -> None:
        slot = make_slot("09:00", "09:30")

        await sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        (event,) = google.events.values()
        assert event["summary"] == "Available: Dr. Ada Moreau"
        assert event["transparency"] == "transparent"
        assert event["start"]["dateTime"] == "2030-01-07T09:00:00+00:00"
        assert event["extendedProperties"]["private"][SLOT_MARKER] == str(slot.id)

    async def test_exported_events_are_not_imported_back(self, db, sync, google, connected_doctor, make_slot) -> None:
        make_slot("09:00", "09:30")
        await sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        summary = await sync.import_from_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert summary.imported == 0
        assert len(_slots(db, connected_doctor.id)) == 1

    async def test_one_failed_slot_does_not_stop_the_run(self, db, sync, google, connected_doctor, make_slot) -> None:
        failing = make_slot("09:00", "09:30")
        make_slot("09:30", "10:00")
        google.failures = [403]

        summary = await sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert (summary.exported, summary.failed) == (1, 1)
        assert summary.failures[0].item == f"slot:{failing.id}"
        db.refresh(failing)
        assert failing.external_event_id is None

    async def test_concurrent_exports_for_one_doctor_are_serialized(
        self, sync, google, connected_doctor, make_slot
    ) -> None:
        make_slot("09:00", "09:30")
        make_slot("09:30", "10:00")

        results = await asyncio.gather(
            sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY),
            sync.export_to_external(connected_doctor.id, start_date=MONDAY, end_date=MONDAY),
        )

        assert sum(r.exported for r in results) == 2
        assert len(google.calendar_calls("POST")) == 2


class TestSync:
    async def test_failed_listing_still_exports(self, sync, google, notifier, connected_doctor, make_slot) -> None:
        make_slot("09:00", "09:30")
        google.failures = [500, 500]

        summary = await sync.sync(connected_doctor.id, start_date=MONDAY, end_date=MONDAY)

        assert summary.exported == 1
        assert summary.failed == 1
        assert summary.failures[0].item == "import"
        assert notifier.types() == [SYNC_FAILED]

    async def test_sync_uses_clinic_calendar_when_doctor_has_none(
        self, sync, credentials, google, doctor, make_slot
    ) -> None:
        credentials.store_credential("clinic:1", "clinic-refresh-token")
        make_slot("09:00", "09:30")

        summary = await sync.sync("LIC-1001", start_date=MONDAY, end_date=MONDAY)

        assert summary.exported == 1
        assert google.token_requests[0]["refresh_token"] == "clinic-refresh-token"

    async def test_missing_credential_is_terminal(self, sync, doctor) -> None:
        with pytest.raises(CredentialError):
            await sync.sync(doctor.id, start_date=MONDAY, end_date=MONDAY)

    async def test_sync_doctors_reports_each_doctor(
        self, db, session_factory, credentials, google, connected_doctor, make_slot
    ) -> None:
        other = Doctor(full_name="Lin Okafor", license_number="LIC-2002")
        db.add(other)
        db.commit()
        make_slot("09:00", "09:30")

        results = await sync_doctors(
            [connected_doctor.id, "LIC-2002"],
            MONDAY,
            MONDAY,
            session_factory=session_factory,
            transport=google.transport,
        )

        by_doctor = {r.doctor: r for r in results}
        assert by_doctor[connected_doctor.id].summary.exported == 1
        assert by_doctor["LIC-2002"].summary is None
        assert "reconnect" in by_doctor["LIC-2002"].error
