# slots.py
"""Donation slot capacity and bookings.

Booking is a check-and-increment: one conditional UPDATE
(``booked_count < capacity``) and the booking insert share a transaction,
and every mutation of a slot runs under that slot's lock. ``booked_count``
therefore stays within ``[0, capacity]`` no matter how many callers race.

Rescheduling is cancel-then-book and is not reversible across slots: if the
new slot is full the original booking stays cancelled and the caller has to
pick another slot (calling ``reschedule`` again on the cancelled booking is
allowed).
"""
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import date, time

from sqlalchemy import update

from clock import SystemClock
from errors import (CapacityExceededError, ConflictError, InvalidStateError,
                    NotFoundError, ValidationError)
from locks import KeyedLock
from models import (CAPACITY_HOLDING, Booking, BookingStatus, DonationSlot, Donor,
                    EmergencyRequest, db)
from store import retry_on_contention, transaction

logger = logging.getLogger(__name__)

DAYS_OF_WEEK = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_day_of_week(value):
    if value is None or isinstance(value, int):
        return value
    s = str(value).strip().lower()
    if s.isdigit():
        return int(s)
    for i, name in enumerate(DAYS_OF_WEEK):
        if name.startswith(s) and len(s) >= 3:
            return i
    raise ValidationError(f"unknown day of week: {value!r}", field="day_of_week")


@dataclass(frozen=True)
class SlotWindow:
    """Either a fixed ``slot_date`` or a weekly ``day_of_week`` (0 = Monday)."""
    start_time: time
    end_time: time
    slot_date: date = None
    day_of_week: int = None

    def validate(self):
        if (self.slot_date is None) == (self.day_of_week is None):
            raise ValidationError("a slot needs exactly one of slot_date or day_of_week")
        if self.day_of_week is not None and not 0 <= self.day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 and 6", field="day_of_week")
        if self.start_time >= self.end_time:
            raise ValidationError("start_time must be before end_time", field="start_time")
        return self


def covers(slot, on_date):
    if slot.slot_date is not None:
        return slot.slot_date == on_date
    return slot.day_of_week == on_date.weekday()


class SlotCapacityManager:
    def __init__(self, clock=None, locks=None, contention_retries=3, contention_backoff=0.05):
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLock()
        self.contention_retries = contention_retries
        self.contention_backoff = contention_backoff

    def slot_lock(self, slot_id):
        if slot_id is None:
            return nullcontext()
        return self.locks.hold(("slot", slot_id))

    # ============================
    # SLOTS
    # ============================
    @retry_on_contention
    def create_slot(self, facility_id, window, capacity):
        if not facility_id:
            raise ValidationError("facility_id is required", field="facility_id")
        window.validate()
        if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 1:
            raise ValidationError("capacity must be a positive integer", field="capacity")
        with transaction() as session:
            slot = DonationSlot(
                facility_id=str(facility_id),
                slot_date=window.slot_date,
                day_of_week=window.day_of_week,
                start_time=window.start_time,
                end_time=window.end_time,
                capacity=capacity,
                booked_count=0,
            )
            session.add(slot)
        logger.info("created slot %s for facility %s (capacity %d)", slot.id, facility_id, capacity)
        return slot

    def get_slot(self, slot_id):
        slot = db.session.get(DonationSlot, slot_id)
        if slot is None:
            raise NotFoundError("slot", slot_id)
        return slot

    def available_slots(self, facility_id=None, on_date=None):
        query = DonationSlot.query.filter(DonationSlot.booked_count < DonationSlot.capacity)
        if facility_id is not None:
            query = query.filter_by(facility_id=str(facility_id))
        if on_date is not None:
            query = query.filter(
                (DonationSlot.slot_date == on_date) | (DonationSlot.day_of_week == on_date.weekday())
            )
        return query.order_by(DonationSlot.start_time, DonationSlot.id).all()

    # ============================
    # BOOKING
    # ============================
    def get_booking(self, booking_id):
        booking = db.session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("booking", booking_id)
        return booking

    @retry_on_contention
    def book(self, slot_id, donor_id, request_id=None, scheduled_date=None):
        return self._book(slot_id, donor_id, request_id, scheduled_date)

    def _book(self, slot_id, donor_id, request_id=None, scheduled_date=None, replaces=None):
        with self.slot_lock(slot_id):
            with transaction() as session:
                slot = session.get(DonationSlot, slot_id)
                if slot is None:
                    raise NotFoundError("slot", slot_id)
                if session.get(Donor, donor_id) is None:
                    raise NotFoundError("donor", donor_id)
                if request_id is not None and session.get(EmergencyRequest, request_id) is None:
                    raise NotFoundError("request", request_id)
                on_date = self._occurrence(slot, scheduled_date)

                existing = Booking.query.filter_by(
                    slot_id=slot_id, donor_id=donor_id, status=BookingStatus.SCHEDULED
                ).first()
                if existing is not None:
                    raise ConflictError(
                        f"donor {donor_id} already has booking {existing.id} in slot {slot_id}",
                        booking_id=existing.id,
                    )

                self._claim(session, slot)

                now = self.clock.now()
                booking = Booking(donor_id=donor_id, slot_id=slot_id, request_id=request_id,
                                  status=BookingStatus.SCHEDULED, scheduled_date=on_date,
                                  created_at=now, updated_at=now)
                if replaces is not None:
                    old = session.get(Booking, replaces)
                    old.status = BookingStatus.RESCHEDULED
                    old.updated_at = now
                    booking.rescheduled_from_id = old.id
                session.add(booking)
        logger.info("booked donor %s into slot %s (booking %s)", donor_id, slot_id, booking.id)
        return booking

    def _claim(self, session, slot):
        result = session.execute(
            update(DonationSlot)
            .where(DonationSlot.id == slot.id,
                   DonationSlot.booked_count < DonationSlot.capacity)
            .values(booked_count=DonationSlot.booked_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CapacityExceededError(
                f"slot {slot.id} is full", slot_id=slot.id, capacity=slot.capacity,
            )

    @retry_on_contention
    def assign_slot(self, booking_id, slot_id, scheduled_date=None):
        """Give an unscheduled booking a place in ``slot_id``; the booking keeps its id."""
        with self.slot_lock(slot_id):
            with transaction() as session:
                booking = session.get(Booking, booking_id, populate_existing=True)
                if booking is None:
                    raise NotFoundError("booking", booking_id)
                self._ensure_scheduled(booking)
                if booking.slot_id is not None:
                    raise ConflictError(
                        f"booking {booking_id} already holds slot {booking.slot_id}",
                        booking_id=booking_id, slot_id=booking.slot_id,
                    )
                slot = session.get(DonationSlot, slot_id)
                if slot is None:
                    raise NotFoundError("slot", slot_id)
                on_date = self._occurrence(slot, scheduled_date)
                self._claim(session, slot)
                booking.slot_id = slot_id
                booking.scheduled_date = on_date
                booking.updated_at = self.clock.now()
        logger.info("assigned booking %s to slot %s", booking_id, slot_id)
        return booking

    @retry_on_contention
    def book_unscheduled(self, donor_id, request_id=None):
        """A booking not yet tied to a slot, e.g. right after an offer is accepted."""
        with transaction() as session:
            if session.get(Donor, donor_id) is None:
                raise NotFoundError("donor", donor_id)
            now = self.clock.now()
            booking = Booking(donor_id=donor_id, request_id=request_id,
                              status=BookingStatus.SCHEDULED, created_at=now, updated_at=now)
            session.add(booking)
        return booking

    def _occurrence(self, slot, scheduled_date):
        if scheduled_date is None:
            return slot.slot_date
        if not covers(slot, scheduled_date):
            raise ValidationError(
                f"slot {slot.id} does not run on {scheduled_date.isoformat()}",
                field="scheduled_date",
            )
        return scheduled_date

    # ============================
    # CANCEL / RESCHEDULE
    # ============================
    @retry_on_contention
    def cancel(self, booking_id):
        """Cancel a booking and release its place. Cancelling twice is a no-op."""
        booking, _ = self.cancel_with_change(booking_id)
        return booking

    def cancel_with_change(self, booking_id):
        slot_id = self.get_booking(booking_id).slot_id
        with self.slot_lock(slot_id):
            with transaction() as session:
                booking = session.get(Booking, booking_id, populate_existing=True)
                if booking.status == BookingStatus.CANCELLED:
                    return booking, False
                if booking.status != BookingStatus.SCHEDULED:
                    raise InvalidStateError(
                        f"booking {booking_id} is {booking.status.value}", booking.status,
                        booking_id=booking_id,
                    )
                self._release(session, booking)
                now = self.clock.now()
                booking.status = BookingStatus.CANCELLED
                booking.cancelled_at = now
                booking.updated_at = now
        logger.info("cancelled booking %s (slot %s)", booking_id, slot_id)
        return booking, True

    def _release(self, session, booking):
        if booking.slot_id is None:
            return
        result = session.execute(
            update(DonationSlot)
            .where(DonationSlot.id == booking.slot_id, DonationSlot.booked_count > 0)
            .values(booked_count=DonationSlot.booked_count - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("slot %s already at zero while releasing booking %s; run recompute",
                           booking.slot_id, booking.id)

    @retry_on_contention
    def reschedule(self, booking_id, new_slot_id, scheduled_date=None):
        old, _ = self.cancel_with_change(booking_id)
        try:
            return self._book(new_slot_id, old.donor_id, old.request_id, scheduled_date,
                              replaces=booking_id)
        except (CapacityExceededError, ConflictError, ValidationError, NotFoundError):
            logger.warning("reschedule of booking %s to slot %s failed; original stays cancelled",
                           booking_id, new_slot_id)
            raise

    # ============================
    # OUTCOMES
    # ============================
    def mark_completed(self, booking, now):
        """scheduled -> completed, updating the donor's history. Caller commits."""
        self._ensure_scheduled(booking)
        booking.status = BookingStatus.COMPLETED
        booking.completed_at = now
        booking.updated_at = now
        donor = booking.donor
        donor.last_donation_at = now
        donor.donations_completed = (donor.donations_completed or 0) + 1

    def mark_no_show(self, booking, now):
        self._ensure_scheduled(booking)
        booking.status = BookingStatus.NO_SHOW
        booking.updated_at = now
        donor = booking.donor
        donor.no_shows = (donor.no_shows or 0) + 1

    def _ensure_scheduled(self, booking):
        if booking.status != BookingStatus.SCHEDULED:
            raise InvalidStateError(f"booking {booking.id} is {booking.status.value}",
                                    booking.status, booking_id=booking.id)

    @retry_on_contention
    def complete(self, booking_id):
        slot_id = self.get_booking(booking_id).slot_id
        with self.slot_lock(slot_id):
            with transaction() as session:
                booking = session.get(Booking, booking_id, populate_existing=True)
                self.mark_completed(booking, self.clock.now())
        return booking

    # ============================
    # REPAIR
    # ============================
    @retry_on_contention
    def recompute(self, slot_id):
        """Reset booked_count from the bookings that actually hold a place."""
        with self.slot_lock(slot_id):
            with transaction() as session:
                slot = session.get(DonationSlot, slot_id, with_for_update=True,
                                   populate_existing=True)
                if slot is None:
                    raise NotFoundError("slot", slot_id)
                actual = Booking.query.filter(
                    Booking.slot_id == slot_id, Booking.status.in_(CAPACITY_HOLDING)
                ).count()
                target = actual
                if actual > slot.capacity:
                    logger.error("slot %s holds %d bookings for capacity %d",
                                 slot_id, actual, slot.capacity)
                    target = slot.capacity
                if slot.booked_count != target:
                    logger.warning("slot %s booked_count drifted: %d -> %d",
                                   slot_id, slot.booked_count, target)
                    slot.booked_count = target
        return target

    def recompute_all(self):
        changed = {}
        for (slot_id, before) in db.session.query(DonationSlot.id, DonationSlot.booked_count).all():
            after = self.recompute(slot_id)
            if after != before:
                changed[slot_id] = (before, after)
        return changed
