"""
Tests for the availability service against the in-memory database.
"""

from datetime import date

import pytest

from app.core.errors import NotFoundError, PastDateError
from app.core.intervals import Interval
from app.services.availability import get_available_slots, is_slot_free

from conftest import NOW, utc

MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)
SUNDAY = date(2030, 1, 13)


def local_starts(slots, available=True):
    return [s.start_time for s in slots if s.available is available]


@pytest.mark.integration
class TestGetAvailableSlots:

    @pytest.mark.asyncio
    async def test_empty_day_is_fully_available(self, db, business, service):
        slots = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW)

        assert len(slots) == 17
        assert all(s.available for s in slots)
        assert slots[0].start_time == utc(8, 9)
        assert slots[-1].end_time == utc(8, 18)

    @pytest.mark.asyncio
    async def test_booked_interval_blocks_overlapping_slots(self, db, business, service, add_appointment):
        await add_appointment(utc(8, 10), status="pending")

        slots = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW)

        assert local_starts(slots, available=False) == [utc(8, 9, 30), utc(8, 10), utc(8, 10, 30)]
        # touching neighbours stay free
        assert utc(8, 9) in local_starts(slots)
        assert utc(8, 11) in local_starts(slots)

    @pytest.mark.asyncio
    async def test_cancelled_and_rejected_do_not_block(self, db, business, service, add_appointment):
        await add_appointment(utc(8, 10), status="cancelled")
        await add_appointment(utc(8, 14), status="rejected")

        slots = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW)

        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_completed_still_blocks(self, db, business, service, add_appointment):
        await add_appointment(utc(8, 10), status="completed")

        slots = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW)

        assert utc(8, 10) in local_starts(slots, available=False)

    @pytest.mark.asyncio
    async def test_excluded_appointment_is_ignored(self, db, business, service, add_appointment):
        appt = await add_appointment(utc(8, 10))

        slots = await get_available_slots(
            db, business.id, TUESDAY, service.id, exclude_appointment_id=appt.id, now=NOW
        )

        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_only_available_filters(self, db, business, service, add_appointment):
        await add_appointment(utc(8, 10))

        slots = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW, only_available=True)

        assert len(slots) == 14
        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_slots_already_started_are_dropped(self, db, business, service):
        slots = await get_available_slots(db, business.id, MONDAY, service.id, now=utc(7, 10, 15))

        assert slots[0].start_time == utc(7, 10, 30)
        assert len(slots) == 14

    @pytest.mark.asyncio
    async def test_past_date_rejected(self, db, business, service):
        with pytest.raises(PastDateError):
            await get_available_slots(db, business.id, date(2030, 1, 6), service.id, now=NOW)

    @pytest.mark.asyncio
    async def test_closed_day(self, db, business, service):
        assert await get_available_slots(db, business.id, SUNDAY, service.id, now=NOW) == []

    @pytest.mark.asyncio
    async def test_unknown_business_or_foreign_service(self, db, business, service):
        with pytest.raises(NotFoundError):
            await get_available_slots(db, "missing", TUESDAY, service.id, now=NOW)
        with pytest.raises(NotFoundError):
            await get_available_slots(db, business.id, TUESDAY, "missing", now=NOW)


@pytest.mark.integration
class TestEmployeeScope:

    @pytest.mark.asyncio
    async def test_slot_free_while_one_employee_is(self, db, business, service, employees, add_appointment):
        ana, bruno = employees
        await add_appointment(utc(8, 10), employee_id=ana.id)

        any_staff = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW)
        only_ana = await get_available_slots(db, business.id, TUESDAY, service.id, employee_id=ana.id, now=NOW)
        only_bruno = await get_available_slots(db, business.id, TUESDAY, service.id, employee_id=bruno.id, now=NOW)

        assert all(s.available for s in any_staff)
        assert utc(8, 10) in local_starts(only_ana, available=False)
        assert all(s.available for s in only_bruno)

    @pytest.mark.asyncio
    async def test_slot_taken_once_everybody_is_busy(self, db, business, service, employees, add_appointment):
        ana, bruno = employees
        await add_appointment(utc(8, 10), employee_id=ana.id)
        await add_appointment(utc(8, 10), employee_id=bruno.id)

        slots = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW)

        assert utc(8, 10) in local_starts(slots, available=False)

    @pytest.mark.asyncio
    async def test_booking_without_employee_blocks_no_lane(self, db, business, service, employees, add_appointment):
        ana, _ = employees
        await add_appointment(utc(8, 10))

        any_staff = await get_available_slots(db, business.id, TUESDAY, service.id, now=NOW)
        free, conflicting = await is_slot_free(
            db, business, Interval(utc(8, 10), utc(8, 11)), employee_id=ana.id
        )

        assert utc(8, 10) in local_starts(any_staff)
        assert free is True
        assert conflicting == []


@pytest.mark.integration
class TestIsSlotFree:

    @pytest.mark.asyncio
    async def test_reports_conflicting_ids(self, db, business, service, add_appointment):
        first = await add_appointment(utc(8, 10))
        await add_appointment(utc(8, 15))

        free, conflicting = await is_slot_free(db, business, Interval(utc(8, 10, 30), utc(8, 11, 30)))

        assert free is False
        assert conflicting == [first.id]

    @pytest.mark.asyncio
    async def test_free_interval(self, db, business, service, add_appointment):
        await add_appointment(utc(8, 10))

        free, conflicting = await is_slot_free(db, business, Interval(utc(8, 11), utc(8, 12)))

        assert free is True
        assert conflicting == []
