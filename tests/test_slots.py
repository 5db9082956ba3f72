# test_slots.py
from datetime import date, time

import pytest
from sqlalchemy import update

from conftest import run_concurrently
from errors import (CapacityExceededError, ConflictError, InvalidStateError, NotFoundError,
                    ValidationError)
from models import Booking, BookingStatus, DonationSlot, db
from slots import SlotWindow, parse_day_of_week

DAY = date(2026, 3, 10)  # a Tuesday


def window(**kwargs):
    kwargs.setdefault("start_time", time(9, 0))
    kwargs.setdefault("end_time", time(12, 0))
    if "day_of_week" not in kwargs:
        kwargs.setdefault("slot_date", DAY)
    return SlotWindow(**kwargs)


@pytest.fixture
def slot(slots):
    return slots.create_slot("blood-bank-1", window(), capacity=2)


def fresh_slot(slot_id):
    db.session.expire_all()
    return db.session.get(DonationSlot, slot_id)


def scheduled_in(slot_id):
    return Booking.query.filter_by(slot_id=slot_id, status=BookingStatus.SCHEDULED).count()


# ============================
# CREATE
# ============================
def test_create_slot(slot):
    assert slot.capacity == 2
    assert slot.booked_count == 0
    assert not slot.is_recurring


@pytest.mark.parametrize("capacity", [0, -1, 1.5, "2", True])
def test_create_slot_rejects_bad_capacity(slots, capacity):
    with pytest.raises(ValidationError):
        slots.create_slot("blood-bank-1", window(), capacity=capacity)


def test_create_slot_needs_exactly_one_of_date_or_weekday(slots):
    with pytest.raises(ValidationError):
        slots.create_slot("bb", SlotWindow(time(9), time(10)), 1)
    with pytest.raises(ValidationError):
        slots.create_slot("bb", SlotWindow(time(9), time(10), slot_date=DAY, day_of_week=1), 1)


def test_create_slot_rejects_inverted_window(slots):
    with pytest.raises(ValidationError):
        slots.create_slot("bb", window(start_time=time(12), end_time=time(9)), 1)


@pytest.mark.parametrize("raw,expected", [("monday", 0), ("Tue", 1), ("6", 6), (3, 3), (None, None)])
def test_parse_day_of_week(raw, expected):
    assert parse_day_of_week(raw) == expected


def test_parse_day_of_week_rejects_garbage():
    with pytest.raises(ValidationError):
        parse_day_of_week("someday")


# ============================
# BOOK / CANCEL
# ============================
def test_book_increments_and_fills(slots, slot, make_donor):
    a, b, c = make_donor(), make_donor(), make_donor()
    first = slots.book(slot.id, a.id)
    slots.book(slot.id, b.id)
    assert first.status == BookingStatus.SCHEDULED
    assert first.scheduled_date == DAY
    assert fresh_slot(slot.id).booked_count == 2

    with pytest.raises(CapacityExceededError) as exc:
        slots.book(slot.id, c.id)
    assert exc.value.details["slot_id"] == slot.id
    assert fresh_slot(slot.id).booked_count == 2
    assert scheduled_in(slot.id) == 2


def test_book_unknown_slot_or_donor(slots, slot, make_donor):
    with pytest.raises(NotFoundError):
        slots.book(999, make_donor().id)
    with pytest.raises(NotFoundError):
        slots.book(slot.id, 999)


def test_same_donor_cannot_hold_two_places(slots, slot, make_donor):
    d = make_donor()
    slots.book(slot.id, d.id)
    with pytest.raises(ConflictError):
        slots.book(slot.id, d.id)
    assert fresh_slot(slot.id).booked_count == 1


def test_recurring_slot_needs_matching_date(slots, make_donor):
    weekly = slots.create_slot("bb", window(day_of_week=1), capacity=3)
    assert weekly.is_recurring
    booking = slots.book(weekly.id, make_donor().id, scheduled_date=DAY)
    assert booking.scheduled_date == DAY
    with pytest.raises(ValidationError):
        slots.book(weekly.id, make_donor().id, scheduled_date=date(2026, 3, 11))


def test_cancel_releases_place_and_is_idempotent(slots, slot, make_donor):
    booking = slots.book(slot.id, make_donor().id)
    cancelled = slots.cancel(booking.id)
    assert cancelled.status == BookingStatus.CANCELLED
    assert fresh_slot(slot.id).booked_count == 0

    _, changed = slots.cancel_with_change(booking.id)
    assert changed is False
    assert fresh_slot(slot.id).booked_count == 0


def test_cancel_unscheduled_booking_touches_no_slot(slots, make_donor):
    booking = slots.book_unscheduled(make_donor().id)
    assert booking.slot_id is None
    assert slots.cancel(booking.id).status == BookingStatus.CANCELLED


def test_completed_booking_cannot_be_cancelled(slots, slot, make_donor):
    booking = slots.book(slot.id, make_donor().id)
    slots.complete(booking.id)
    with pytest.raises(InvalidStateError) as exc:
        slots.cancel(booking.id)
    assert exc.value.current_state == "completed"
    assert fresh_slot(slot.id).booked_count == 1


def test_available_slots_skips_full_and_other_days(slots, slot, make_donor):
    other = slots.create_slot("blood-bank-1", window(slot_date=date(2026, 3, 11)), capacity=1)
    weekly = slots.create_slot("blood-bank-1", window(day_of_week=1, start_time=time(8)), capacity=1)
    slots.book(other.id, make_donor().id)

    on_day = [s.id for s in slots.available_slots("blood-bank-1", DAY)]
    assert on_day == [weekly.id, slot.id]
    assert other.id not in [s.id for s in slots.available_slots("blood-bank-1")]
    assert slots.available_slots("elsewhere") == []


# ============================
# RESCHEDULE
# ============================
def test_reschedule_moves_booking(slots, slot, make_donor):
    target = slots.create_slot("blood-bank-1", window(start_time=time(13), end_time=time(15)), 1)
    old = slots.book(slot.id, make_donor().id)
    new = slots.reschedule(old.id, target.id)

    assert new.slot_id == target.id
    assert new.rescheduled_from_id == old.id
    assert slots.get_booking(old.id).status == BookingStatus.RESCHEDULED
    assert fresh_slot(slot.id).booked_count == 0
    assert fresh_slot(target.id).booked_count == 1


def test_reschedule_into_full_slot_leaves_original_cancelled(slots, slot, make_donor):
    full = slots.create_slot("blood-bank-1", window(start_time=time(13), end_time=time(15)), 1)
    slots.book(full.id, make_donor().id)
    old = slots.book(slot.id, make_donor().id)

    with pytest.raises(CapacityExceededError):
        slots.reschedule(old.id, full.id)
    assert slots.get_booking(old.id).status == BookingStatus.CANCELLED
    assert fresh_slot(slot.id).booked_count == 0
    assert fresh_slot(full.id).booked_count == 1

    # a cancelled booking can still be moved somewhere with room
    retried = slots.reschedule(old.id, slot.id)
    assert retried.rescheduled_from_id == old.id
    assert fresh_slot(slot.id).booked_count == 1


# ============================
# OUTCOMES / REPAIR
# ============================
def test_complete_updates_donor_history(slots, slot, make_donor, clock):
    donor = make_donor()
    booking = slots.complete(slots.book(slot.id, donor.id).id)
    assert booking.status == BookingStatus.COMPLETED
    assert booking.donor.last_donation_at == clock.now()
    assert booking.donor.donations_completed == 1
    # completed bookings keep their place
    assert fresh_slot(slot.id).booked_count == 1


def test_recompute_repairs_drift(slots, slot, make_donor):
    slots.book(slot.id, make_donor().id)
    db.session.execute(update(DonationSlot).where(DonationSlot.id == slot.id).values(booked_count=0))
    db.session.commit()

    assert slots.recompute(slot.id) == 1
    assert fresh_slot(slot.id).booked_count == 1
    assert slots.recompute_all() == {}


def test_recompute_all_reports_changes(slots, slot, make_donor):
    booking = slots.book(slot.id, make_donor().id)
    db.session.execute(update(Booking).where(Booking.id == booking.id)
                       .values(status=BookingStatus.CANCELLED))
    db.session.commit()
    assert slots.recompute_all() == {slot.id: (1, 0)}


# ============================
# CONCURRENCY
# ============================
def test_concurrent_bookings_never_overfill(app, slots, slot, make_donor):
    donor_ids = [make_donor().id for _ in range(3)]
    slot_id = slot.id

    outcomes = run_concurrently(app, lambda donor_id: slots.book(slot_id, donor_id).id, donor_ids)

    ok = [value for status, value in outcomes if status == "ok"]
    errors = [value for status, value in outcomes if status == "error"]
    assert len(ok) == 2
    assert len(errors) == 1
    assert isinstance(errors[0], CapacityExceededError)
    assert fresh_slot(slot_id).booked_count == 2
    assert scheduled_in(slot_id) == 2


def test_concurrent_book_and_cancel_keep_count_consistent(app, slots, make_donor):
    slot_id = slots.create_slot("blood-bank-1", window(), capacity=3).id
    existing = [slots.book(slot_id, make_donor().id).id for _ in range(2)]
    newcomers = [make_donor().id for _ in range(4)]

    def act(job):
        action, ident = job
        if action == "cancel":
            return slots.cancel(ident).id
        return slots.book(slot_id, ident).id

    jobs = [("cancel", b) for b in existing] + [("book", d) for d in newcomers]
    outcomes = run_concurrently(app, act, jobs)

    for status, value in outcomes:
        if status == "error":
            assert isinstance(value, CapacityExceededError)
    slot = fresh_slot(slot_id)
    assert 0 <= slot.booked_count <= slot.capacity
    assert slot.booked_count == scheduled_in(slot_id)
    assert all(slots.get_booking(b).status == BookingStatus.CANCELLED for b in existing)


def test_recompute_racing_bookings_keeps_count_consistent(app, slots, make_donor):
    slot_id = slots.create_slot("blood-bank-1", window(), capacity=3).id
    existing = [slots.book(slot_id, make_donor().id).id for _ in range(2)]
    newcomers = [make_donor().id for _ in range(3)]

    def act(job):
        action, ident = job
        if action == "recompute":
            return slots.recompute(ident)
        if action == "cancel":
            return slots.cancel(ident).id
        return slots.book(slot_id, ident).id

    jobs = ([("recompute", slot_id)] * 3 + [("cancel", b) for b in existing]
            + [("book", d) for d in newcomers])
    outcomes = run_concurrently(app, act, jobs)

    for status, value in outcomes:
        if status == "error":
            assert isinstance(value, CapacityExceededError)
    slot = fresh_slot(slot_id)
    assert 0 <= slot.booked_count <= slot.capacity
    assert slot.booked_count == scheduled_in(slot_id)
    assert slots.recompute(slot_id) == slot.booked_count
