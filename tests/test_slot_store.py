from datetime import date, datetime, timedelta

import pytest

from caresync.domain.availability.repository import TimeSlotRepository
from caresync.domain.availability.service import AvailabilityService
from caresync.errors import ConflictError, NotFoundError, ValidationError
from caresync.models import SLOT_AVAILABLE, SLOT_BLOCKED, SLOT_BOOKED, Appointment, TimeSlot

from .conftest import MONDAY


class TestCompareAndSet:
    def test_succeeds_only_from_expected_status(self, db, make_slot) -> None:
        slot = make_slot()

        assert TimeSlotRepository.compare_and_set_status(db, slot.id, SLOT_AVAILABLE, SLOT_BOOKED)
        assert not TimeSlotRepository.compare_and_set_status(db, slot.id, SLOT_AVAILABLE, SLOT_BOOKED)
        db.commit()

        assert TimeSlotRepository.get_slot(db, slot.id).status == SLOT_BOOKED

    def test_cached_instance_sees_the_new_status(self, db, make_slot) -> None:
        slot = make_slot()
        assert slot.status == SLOT_AVAILABLE

        TimeSlotRepository.compare_and_set_status(db, slot.id, SLOT_AVAILABLE, SLOT_BLOCKED)

        assert slot.status == SLOT_BLOCKED

    def test_link_external_event_only_once(self, db, make_slot) -> None:
        slot = make_slot()
        stamp = datetime(2030, 1, 1, 12, 0)
        assert TimeSlotRepository.link_external_event(db, slot.id, "evt-a", stamp, stamp)
        assert not TimeSlotRepository.link_external_event(db, slot.id, "evt-b", stamp, stamp)
        db.commit()

        assert slot.external_event_id == "evt-a"

    def test_release_refused_while_live_appointment_exists(self, db, make_slot, doctor, patient) -> None:
        slot = make_slot(status=SLOT_BOOKED)
        appointment = Appointment(
            doctor_id=doctor.id, patient_id=patient.id, time_slot_id=slot.id, reason_for_visit="Checkup"
        )
        db.add(appointment)
        db.commit()

        assert not TimeSlotRepository.release_if_unreferenced(db, slot.id)
        assert TimeSlotRepository.release_if_unreferenced(db, slot.id, exclude_appointment_id=appointment.id)


class TestSlotQueries:
    def test_list_slots_defaults_to_next_week_and_filters_status(self, db, doctor, make_slot) -> None:
        today = date.today()
        make_slot("09:00", "09:30", day=today)
        make_slot("09:30", "10:00", day=today, status=SLOT_BLOCKED)
        make_slot("09:00", "09:30", day=today + timedelta(days=30))
        service = AvailabilityService(db)

        assert len(service.list_slots(doctor.id)) == 2
        assert [s.status for s in service.list_available_slots(doctor.id)] == [SLOT_AVAILABLE]

    def test_unknown_status_filter_is_rejected(self, db, doctor) -> None:
        with pytest.raises(ValidationError):
            AvailabilityService(db).list_slots(doctor.id, MONDAY, MONDAY, status="free")

    def test_get_missing_slot(self, db) -> None:
        with pytest.raises(NotFoundError):
            AvailabilityService(db).get_slot(404)


class TestSlotAdministration:
    def test_create_slot_refuses_overlap(self, db, doctor, make_slot) -> None:
        make_slot("09:00", "10:00")
        service = AvailabilityService(db)

        with pytest.raises(ConflictError) as exc_info:
            service.create_slot(doctor.id, MONDAY, "09:30", "10:30")
        assert exc_info.value.code == "slot_overlap"

        created = service.create_slot(doctor.id, MONDAY, "10:00", "10:30", created_by="staff-7")
        assert created.status == SLOT_AVAILABLE
        assert created.created_by == "staff-7"

    def test_create_slot_rejects_inverted_times(self, db, doctor) -> None:
        with pytest.raises(ValidationError):
            AvailabilityService(db).create_slot(doctor.id, MONDAY, "10:00", "09:00")

    def test_block_and_reopen(self, db, make_slot) -> None:
        slot = make_slot()
        service = AvailabilityService(db)

        assert service.update_slot(slot.id, SLOT_BLOCKED).status == SLOT_BLOCKED
        assert service.update_slot(slot.id, SLOT_AVAILABLE).status == SLOT_AVAILABLE

    def test_booked_slot_cannot_be_edited_or_deleted(self, db, make_slot) -> None:
        slot = make_slot(status=SLOT_BOOKED)
        service = AvailabilityService(db)

        with pytest.raises(ConflictError):
            service.update_slot(slot.id, SLOT_BLOCKED)
        with pytest.raises(ConflictError):
            service.delete_slot(slot.id)

    def test_update_slot_cannot_set_booked(self, db, make_slot) -> None:
        slot = make_slot()

        with pytest.raises(ValidationError):
            AvailabilityService(db).update_slot(slot.id, SLOT_BOOKED)

    def test_moving_a_slot_onto_another_is_refused(self, db, make_slot) -> None:
        make_slot("09:00", "09:30")
        later = make_slot("10:00", "10:30")

        with pytest.raises(ConflictError):
            AvailabilityService(db).update_slot(later.id, SLOT_AVAILABLE, "09:15", "09:45")

    def test_linked_slot_cannot_be_deleted(self, db, make_slot) -> None:
        slot = make_slot(external_event_id="evt-1")

        with pytest.raises(ConflictError) as exc_info:
            AvailabilityService(db).delete_slot(slot.id)
        assert exc_info.value.code == "slot_linked"

    def test_delete_available_slot(self, db, make_slot) -> None:
        slot = make_slot()
        slot_id = slot.id

        AvailabilityService(db).delete_slot(slot_id)

        assert db.query(TimeSlot).filter(TimeSlot.id == slot_id).first() is None
