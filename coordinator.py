# coordinator.py
"""Single entry point for every operation that changes more than one entity.

Locks are taken per aggregate, request before slot, and each primary
transition commits on its own. Follow-up steps (rejecting the losing offers,
booking a slot for the winner, cancelling a dead request's bookings) run
afterwards; if one fails the primary transition stands and the failure is
returned in ``secondary_failures``. Events go to the notification sink only
after the transition has committed.
"""
import logging
from contextlib import nullcontext
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

import lifecycle
from clock import SystemClock
from compatibility import COMPATIBILITY, can_donate_to, parse_blood_type
from errors import (ConflictError, DependencyError, InvalidStateError, MatchingError,
                    NotFoundError, SecondaryFailure, ValidationError)
from locks import KeyedLock
from matching import DEFAULT_RADIUS_KM, find_best_donors
from models import (Booking, BookingStatus, Donor, EmergencyRequest, Offer, OfferStatus,
                    RequestStatus, Urgency, db)
from notifications import DomainEvent, NullNotificationSink
from slots import SlotCapacityManager
from store import retry_on_contention, transaction

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    request: EmergencyRequest
    candidates: list = field(default_factory=list)


@dataclass
class AcceptResult:
    offer: Offer
    request: EmergencyRequest
    booking: Booking = None
    rejected_offers: list = field(default_factory=list)
    secondary_failures: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.secondary_failures


@dataclass
class CancelResult:
    request: EmergencyRequest
    rejected_offers: list = field(default_factory=list)
    cancelled_bookings: list = field(default_factory=list)
    secondary_failures: list = field(default_factory=list)


def donor_recipient(donor):
    return donor.user_id or f"donor_{donor.id}"


def parse_urgency(value):
    if isinstance(value, Urgency):
        return value
    try:
        return Urgency(str(value or "normal").strip().lower())
    except ValueError:
        raise ValidationError(f"unknown urgency: {value!r}", field="urgency") from None


def parse_coords(latitude, longitude):
    if latitude is None and longitude is None:
        return None
    if latitude is None or longitude is None:
        raise ValidationError("latitude and longitude must be given together")
    try:
        lat, lon = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise ValidationError("coordinates must be numbers") from None
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise ValidationError(f"coordinates out of range: {lat}, {lon}")
    return lat, lon


class MatchingCoordinator:
    def __init__(self, slots=None, geocoder=None, notifier=None, clock=None, locks=None,
                 radius_km=DEFAULT_RADIUS_KM, max_results=None, min_interval_days=90,
                 contention_retries=3, contention_backoff=0.05,
                 completed_bonus=5, no_show_penalty=15, decline_penalty=2):
        self.clock = clock or SystemClock()
        self.locks = locks or KeyedLock()
        self.slots = slots or SlotCapacityManager(
            clock=self.clock, locks=self.locks,
            contention_retries=contention_retries, contention_backoff=contention_backoff,
        )
        self.geocoder = geocoder
        self.notifier = notifier or NullNotificationSink()
        self.radius_km = radius_km
        self.max_results = max_results
        self.min_interval_days = min_interval_days
        self.contention_retries = contention_retries
        self.contention_backoff = contention_backoff
        self.completed_bonus = completed_bonus
        self.no_show_penalty = no_show_penalty
        self.decline_penalty = decline_penalty
        self.listeners = []

    @classmethod
    def from_config(cls, config, **collaborators):
        return cls(
            radius_km=config["SEARCH_RADIUS_KM"],
            max_results=config["MAX_MATCH_RESULTS"],
            min_interval_days=config["MIN_DONATION_INTERVAL_DAYS"],
            contention_retries=config["CONTENTION_RETRIES"],
            contention_backoff=config["CONTENTION_BACKOFF_SECONDS"],
            completed_bonus=config["RELIABILITY_COMPLETED_BONUS"],
            no_show_penalty=config["RELIABILITY_NO_SHOW_PENALTY"],
            decline_penalty=config["RELIABILITY_DECLINE_PENALTY"],
            **collaborators,
        )

    def subscribe(self, listener):
        """``listener(event)`` is called for every committed domain event."""
        self.listeners.append(listener)

    # ============================
    # HELPERS
    # ============================
    def _request_lock(self, request_id):
        if request_id is None:
            return nullcontext()
        return self.locks.hold(("request", request_id))

    def _get(self, model, entity, entity_id, lock=False):
        obj = db.session.get(model, entity_id, with_for_update=lock, populate_existing=lock)
        if obj is None:
            raise NotFoundError(entity, entity_id)
        return obj

    def _publish(self, deliveries):
        for user_id, event in deliveries:
            try:
                self.notifier.notify(user_id, event)
            except Exception:
                logger.exception("notification %s to %s failed", event.name, user_id)
        seen = set()
        for _, event in deliveries:
            if id(event) in seen:
                continue
            seen.add(id(event))
            for listener in self.listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception("event listener failed for %s", event.name)

    def _locate(self, address):
        """Geocode an address. Returns (coords, unknown_flag)."""
        if not address or not address.strip():
            raise ValidationError("an address or coordinates are required", field="address")
        if self.geocoder is None:
            logger.warning("no geocoder configured; %r stored as unknown location", address)
            return None, True
        try:
            coords = self.geocoder.resolve(address)
        except DependencyError as e:
            logger.warning("geocoder unavailable (%s); %r stored as unknown location", e, address)
            return None, True
        if coords is None:
            raise ValidationError(f"address could not be located: {address!r}", field="address")
        return parse_coords(*coords), False

    # ============================
    # DONORS
    # ============================
    @retry_on_contention
    def register_donor(self, name, blood_type=None, latitude=None, longitude=None,
                       user_id=None, phone=None, is_available=True, address=None,
                       reliability_score=50, last_donation_at=None):
        if not name or not str(name).strip():
            raise ValidationError("name is required", field="name")
        bt = parse_blood_type(blood_type) if blood_type else None
        coords = parse_coords(latitude, longitude)
        if coords is None and address:
            try:
                coords, _ = self._locate(address)
            except ValidationError:
                logger.info("donor address %r not resolvable, registering without location", address)
        try:
            reliability_score = int(reliability_score)
        except (TypeError, ValueError):
            raise ValidationError("reliability_score must be an integer",
                                  field="reliability_score") from None
        if not 0 <= reliability_score <= 100:
            raise ValidationError("reliability_score must be within 0..100", field="reliability_score")
        now = self.clock.now()
        with transaction() as session:
            donor = Donor(
                name=str(name).strip(), blood_type=bt, user_id=user_id, phone=phone,
                latitude=coords[0] if coords else None,
                longitude=coords[1] if coords else None,
                is_available=bool(is_available), reliability_score=reliability_score,
                last_donation_at=last_donation_at, created_at=now, updated_at=now,
            )
            session.add(donor)
        logger.info("registered donor %s (%s)", donor.id, bt.value if bt else "unknown type")
        return donor

    @retry_on_contention
    def update_donor_location(self, donor_id, latitude, longitude):
        coords = parse_coords(latitude, longitude)
        with transaction():
            donor = self._get(Donor, "donor", donor_id)
            donor.latitude, donor.longitude = coords if coords else (None, None)
            donor.updated_at = self.clock.now()
        return donor

    @retry_on_contention
    def set_donor_availability(self, donor_id, available):
        with transaction():
            donor = self._get(Donor, "donor", donor_id)
            donor.is_available = bool(available)
            donor.updated_at = self.clock.now()
        return donor

    # ============================
    # REQUESTS & RANKING
    # ============================
    @retry_on_contention
    def submit_request(self, requester_id, blood_type, units_required=1, urgency=Urgency.NORMAL,
                       latitude=None, longitude=None, address=None,
                       patient_name=None, hospital_name=None, notify_candidates=True):
        if not requester_id:
            raise ValidationError("requester_id is required", field="requester_id")
        bt = parse_blood_type(blood_type)
        level = parse_urgency(urgency)
        try:
            units = int(units_required)
        except (TypeError, ValueError):
            raise ValidationError("units_required must be an integer", field="units_required") from None
        if units < 1:
            raise ValidationError("units_required must be at least 1", field="units_required")
        coords = parse_coords(latitude, longitude)
        unknown = False
        if coords is None:
            coords, unknown = self._locate(address)

        now = self.clock.now()
        with transaction() as session:
            request = EmergencyRequest(
                requester_id=str(requester_id), blood_type=bt, units_required=units,
                urgency=level, address=address, patient_name=patient_name,
                hospital_name=hospital_name,
                latitude=coords[0] if coords else None,
                longitude=coords[1] if coords else None,
                location_unknown=unknown, status=RequestStatus.PENDING,
                created_at=now, updated_at=now,
            )
            session.add(request)
        logger.info("request %s created: %s x%d (%s)%s", request.id, bt.value, units,
                    level.value, " location unknown" if unknown else "")

        candidates = self.rank_donors(request)
        created = DomainEvent("request.created", {"status": request.status.value}, request.id)
        deliveries = [(request.requester_id, created)]
        if notify_candidates:
            nearby = DomainEvent("request.nearby", {
                "blood_type": bt.value, "urgency": level.value,
                "hospital_name": hospital_name,
            }, request.id)
            deliveries += [(donor_recipient(c.donor), nearby) for c in candidates]
        self._publish(deliveries)
        return SubmissionResult(request=request, candidates=candidates)

    def get_request(self, request_id):
        return self._get(EmergencyRequest, "request", request_id)

    def rank_donors(self, request, radius_km=None, max_results=None):
        """Advisory candidate list; reads without locking."""
        if not isinstance(request, EmergencyRequest):
            request = self.get_request(request)
        if not request.has_location:
            logger.info("request %s has no known location; no candidates", request.id)
            return []
        pool = Donor.query.filter(
            Donor.is_available.is_(True),
            Donor.latitude.isnot(None),
            Donor.longitude.isnot(None),
            Donor.blood_type.in_(list(COMPATIBILITY[request.blood_type])),
        ).all()
        return find_best_donors(
            request, pool,
            radius_km=radius_km if radius_km is not None else self.radius_km,
            max_results=max_results if max_results is not None else self.max_results,
            min_interval_days=self.min_interval_days,
            now=self.clock.now(),
        )

    # ============================
    # OFFERS
    # ============================
    @retry_on_contention
    def submit_offer(self, request_id, donor_id, message=None):
        with self._request_lock(request_id):
            with transaction() as session:
                request = self._get(EmergencyRequest, "request", request_id, lock=True)
                donor = self._get(Donor, "donor", donor_id)
                if request.status in lifecycle.TERMINAL_REQUEST:
                    raise InvalidStateError(f"request {request_id} is {request.status.value}",
                                            request.status, request_id=request_id)
                if not lifecycle.accepts_offers(request):
                    raise ConflictError(f"request {request_id} already has an accepted donor",
                                        request_id=request_id)
                if donor.blood_type is not None and not can_donate_to(donor.blood_type,
                                                                      request.blood_type):
                    raise ValidationError(
                        f"{donor.blood_type.value} cannot donate to {request.blood_type.value}",
                        field="donor_id",
                    )
                open_offer = Offer.query.filter(
                    Offer.request_id == request_id, Offer.donor_id == donor_id,
                    Offer.status.in_(list(lifecycle.OPEN_OFFER)),
                ).first()
                if open_offer is not None:
                    raise ConflictError(
                        f"donor {donor_id} already has offer {open_offer.id} on request {request_id}",
                        offer_id=open_offer.id,
                    )
                now = self.clock.now()
                offer = Offer(request_id=request_id, donor_id=donor_id, message=message,
                              status=OfferStatus.PENDING, created_at=now)
                donor.offers_made = (donor.offers_made or 0) + 1
                session.add(offer)
        self._publish([(request.requester_id, DomainEvent("offer.submitted", {
            "offer_id": offer.id, "donor_id": donor_id, "donor_name": donor.name,
        }, request_id))])
        return offer

    @retry_on_contention
    def accept_offer(self, offer_id, slot_id=None, scheduled_date=None):
        """Accept one offer; the request moves to in_progress with this donor.

        Afterwards the other pending offers are rejected and a booking is made
        for the donor (in ``slot_id`` when given, otherwise unscheduled).
        """
        request_id = self._get(Offer, "offer", offer_id).request_id
        with self._request_lock(request_id):
            with transaction() as session:
                offer = self._get(Offer, "offer", offer_id, lock=True)
                request = self._get(EmergencyRequest, "request", request_id, lock=True)
                lifecycle.ensure_offer_acceptable(offer)
                superseded = []
                if lifecycle.is_lapsed(request):
                    superseded = Offer.query.filter_by(request_id=request_id,
                                                       status=OfferStatus.ACCEPTED).all()
                now = self.clock.now()
                lifecycle.start_request(request, offer.donor_id)
                for old in superseded:
                    lifecycle.supersede_offer(old, now)
                lifecycle.accept_offer(offer, now)
                request.updated_at = now
            logger.info("offer %s accepted; request %s in progress with donor %s",
                        offer_id, request_id, offer.donor_id)

            result = AcceptResult(offer=offer, request=request)
            try:
                result.rejected_offers = self._reject_pending(request_id)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.exception("could not reject remaining offers for request %s", request_id)
                result.secondary_failures.append(SecondaryFailure.from_exception("reject_offers", e))
            result.booking = self._book_for_accept(request, offer, slot_id, scheduled_date, result)

        donor = offer.donor
        deliveries = [(donor_recipient(donor), DomainEvent("offer.accepted", {
            "offer_id": offer.id, "booking_id": result.booking.id if result.booking else None,
        }, request_id))]
        deliveries += [(donor_recipient(o.donor), DomainEvent("offer.rejected", {"offer_id": o.id},
                                                              request_id))
                       for o in result.rejected_offers + superseded]
        if result.booking is not None and result.booking.slot_id is not None:
            deliveries.append((donor_recipient(donor), DomainEvent("booking.scheduled", {
                "booking_id": result.booking.id, "slot_id": result.booking.slot_id,
            }, request_id)))
        self._publish(deliveries)
        return result

    def _book_for_accept(self, request, offer, slot_id, scheduled_date, result):
        if slot_id is not None:
            try:
                return self.slots.book(slot_id, offer.donor_id, request.id, scheduled_date)
            except (MatchingError, SQLAlchemyError) as e:
                db.session.rollback()
                logger.warning("slot booking after accepting offer %s failed: %s", offer.id, e)
                result.secondary_failures.append(SecondaryFailure.from_exception("book_slot", e))
        try:
            return self.slots.book_unscheduled(offer.donor_id, request.id)
        except (MatchingError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.exception("could not record booking for accepted offer %s", offer.id)
            result.secondary_failures.append(SecondaryFailure.from_exception("book_unscheduled", e))
            return None

    def _reject_pending(self, request_id):
        with transaction():
            now = self.clock.now()
            pending = Offer.query.filter_by(request_id=request_id, status=OfferStatus.PENDING).all()
            for o in pending:
                lifecycle.reject_offer(o, now)
        return pending

    @retry_on_contention
    def reject_stale_offers(self, request_id):
        """Reject pending offers left behind on a request that is no longer pending."""
        with self._request_lock(request_id):
            request = self._get(EmergencyRequest, "request", request_id)
            if lifecycle.accepts_offers(request):
                return []
            rejected = self._reject_pending(request_id)
        if rejected:
            logger.info("rejected %d stale offers on request %s", len(rejected), request_id)
        self._publish(self._rejections(rejected, request_id))
        return rejected

    @retry_on_contention
    def decline_offer(self, offer_id):
        """Donor withdraws a pending offer."""
        request_id = self._get(Offer, "offer", offer_id).request_id
        with self._request_lock(request_id):
            with transaction():
                offer = self._get(Offer, "offer", offer_id, lock=True)
                lifecycle.decline_offer(offer, self.clock.now())
                lifecycle.adjust_reliability(offer.donor, -self.decline_penalty)
                request = offer.request
        self._publish([(request.requester_id, DomainEvent("offer.declined", {
            "offer_id": offer.id, "donor_id": offer.donor_id,
        }, request_id))])
        return offer

    # ============================
    # REQUEST OUTCOMES
    # ============================
    @retry_on_contention
    def cancel_request(self, request_id):
        with self._request_lock(request_id):
            with transaction():
                request = self._get(EmergencyRequest, "request", request_id, lock=True)
                lifecycle.cancel_request(request, self.clock.now())
            logger.info("request %s cancelled", request_id)

            result = CancelResult(request=request)
            try:
                result.rejected_offers = self._reject_pending(request_id)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.exception("could not reject offers of cancelled request %s", request_id)
                result.secondary_failures.append(SecondaryFailure.from_exception("reject_offers", e))

            scheduled = Booking.query.filter_by(request_id=request_id,
                                                status=BookingStatus.SCHEDULED).all()
            for booking in scheduled:
                try:
                    cancelled, changed = self.slots.cancel_with_change(booking.id)
                except (MatchingError, SQLAlchemyError) as e:
                    db.session.rollback()
                    logger.exception("could not cancel booking %s of request %s", booking.id,
                                     request_id)
                    result.secondary_failures.append(
                        SecondaryFailure.from_exception(f"cancel_booking:{booking.id}", e))
                    continue
                if changed:
                    result.cancelled_bookings.append(cancelled)

        event = DomainEvent("request.cancelled", {}, request_id)
        recipients = {donor_recipient(o.donor) for o in result.rejected_offers}
        recipients.update(donor_recipient(b.donor) for b in result.cancelled_bookings)
        if request.accepted_donor_id is not None:
            recipients.add(donor_recipient(db.session.get(Donor, request.accepted_donor_id)))
        self._publish([(r, event) for r in sorted(recipients)])
        return result

    @retry_on_contention
    def confirm_receipt(self, request_id):
        """Requester confirms the blood arrived: in_progress -> fulfilled.

        The accepted donor's scheduled booking is completed in the same
        transaction.
        """
        with self._request_lock(request_id):
            booking = lifecycle.accepted_booking(self._get(EmergencyRequest, "request", request_id))
            if booking is not None and booking.status != BookingStatus.SCHEDULED:
                booking = None
            with self.slots.slot_lock(booking.slot_id if booking is not None else None):
                with transaction() as session:
                    request = self._get(EmergencyRequest, "request", request_id, lock=True)
                    now = self.clock.now()
                    lifecycle.fulfil_request(request, now)
                    if booking is not None:
                        booking = session.get(Booking, booking.id, populate_existing=True)
                        self.slots.mark_completed(booking, now)
                        lifecycle.adjust_reliability(booking.donor, self.completed_bonus)
            rejected = self._reject_leftovers(request_id)
        logger.info("request %s fulfilled by recipient confirmation", request_id)

        donor = db.session.get(Donor, request.accepted_donor_id)
        deliveries = []
        if booking is not None:
            deliveries.append((donor_recipient(donor), DomainEvent("booking.completed", {
                "booking_id": booking.id,
                "needs_blood_type_verification": booking.needs_blood_type_verification,
            }, request_id)))
        deliveries.append((donor_recipient(donor), DomainEvent("request.fulfilled", {}, request_id)))
        deliveries += self._rejections(rejected, request_id)
        self._publish(deliveries)
        return request

    def _reject_leftovers(self, request_id):
        """Reject offers still pending on a fulfilled request; failures are only logged."""
        try:
            return self._reject_pending(request_id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("could not reject leftover offers on request %s", request_id)
            return []

    def _rejections(self, offers, request_id):
        return [(donor_recipient(o.donor), DomainEvent("offer.rejected", {"offer_id": o.id},
                                                       request_id)) for o in offers]

    # ============================
    # SLOTS & BOOKINGS
    # ============================
    def create_slot(self, facility_id, window, capacity):
        return self.slots.create_slot(facility_id, window, capacity)

    @retry_on_contention
    def book(self, slot_id, donor_id, request_id=None, scheduled_date=None):
        """Book ``donor_id`` into ``slot_id``.

        For a request, the accepted donor's unscheduled booking is given the
        slot, so an accepted offer never holds more than one booking.
        """
        unscheduled = None
        with self._request_lock(request_id):
            if request_id is not None:
                request = self._get(EmergencyRequest, "request", request_id, lock=True)
                if request.status != RequestStatus.IN_PROGRESS:
                    raise InvalidStateError(
                        f"request {request_id} is {request.status.value}", request.status,
                        request_id=request_id,
                    )
                if request.accepted_donor_id != donor_id:
                    raise ConflictError(f"donor {donor_id} is not the accepted donor of request "
                                        f"{request_id}", request_id=request_id)
                current = (Booking.query
                           .filter_by(request_id=request_id, donor_id=donor_id,
                                      status=BookingStatus.SCHEDULED)
                           .order_by(Booking.id.desc())
                           .first())
                if current is not None and current.slot_id is not None:
                    raise ConflictError(
                        f"donor {donor_id} already holds booking {current.id} for request "
                        f"{request_id}; reschedule it instead", booking_id=current.id,
                    )
                unscheduled = current
            if unscheduled is not None:
                booking = self.slots.assign_slot(unscheduled.id, slot_id, scheduled_date)
            else:
                booking = self.slots.book(slot_id, donor_id, request_id, scheduled_date)
        self._publish([(donor_recipient(booking.donor), DomainEvent("booking.scheduled", {
            "booking_id": booking.id, "slot_id": slot_id,
        }, request_id))])
        return booking

    @retry_on_contention
    def cancel_booking(self, booking_id):
        request_id = self.slots.get_booking(booking_id).request_id
        with self._request_lock(request_id):
            booking, changed = self.slots.cancel_with_change(booking_id)
        if changed:
            self._publish(self._booking_dropped(booking, "booking.cancelled"))
        return booking

    @retry_on_contention
    def reschedule(self, booking_id, new_slot_id, scheduled_date=None):
        request_id = self.slots.get_booking(booking_id).request_id
        with self._request_lock(request_id):
            try:
                booking = self.slots.reschedule(booking_id, new_slot_id, scheduled_date)
            except MatchingError:
                dropped = self.slots.get_booking(booking_id)
                if dropped.status == BookingStatus.CANCELLED:
                    self._publish(self._booking_dropped(dropped, "booking.cancelled"))
                raise
        self._publish([(donor_recipient(booking.donor), DomainEvent("booking.rescheduled", {
            "booking_id": booking.id, "rescheduled_from_id": booking_id,
            "slot_id": new_slot_id,
        }, request_id))])
        return booking

    def _booking_dropped(self, booking, name):
        deliveries = [(donor_recipient(booking.donor), DomainEvent(name, {
            "booking_id": booking.id, "status": booking.status.value,
        }, booking.request_id))]
        if booking.request_id is not None:
            request = db.session.get(EmergencyRequest, booking.request_id)
            if lifecycle.is_lapsed(request):
                logger.info("request %s lapsed: accepted donor %s dropped out",
                            request.id, request.accepted_donor_id)
                deliveries.append((request.requester_id, DomainEvent("request.lapsed", {
                    "donor_id": request.accepted_donor_id,
                }, request.id)))
        return deliveries

    @retry_on_contention
    def complete_booking(self, booking_id):
        """The donation happened; fulfils the linked request when this is its accepted donor."""
        booking = self.slots.get_booking(booking_id)
        request_id, slot_id = booking.request_id, booking.slot_id
        fulfilled = False
        with self._request_lock(request_id), self.slots.slot_lock(slot_id):
            with transaction() as session:
                booking = session.get(Booking, booking_id, populate_existing=True)
                now = self.clock.now()
                self.slots.mark_completed(booking, now)
                lifecycle.adjust_reliability(booking.donor, self.completed_bonus)
                if request_id is not None:
                    request = self._get(EmergencyRequest, "request", request_id, lock=True)
                    if (request.status == RequestStatus.IN_PROGRESS
                            and request.accepted_donor_id == booking.donor_id):
                        lifecycle.fulfil_request(request, now)
                        fulfilled = True
            rejected = self._reject_leftovers(request_id) if fulfilled else []
        logger.info("booking %s completed%s", booking_id,
                    f"; request {request_id} fulfilled" if fulfilled else "")
        deliveries = [(donor_recipient(booking.donor), DomainEvent("booking.completed", {
            "booking_id": booking_id,
            "needs_blood_type_verification": booking.needs_blood_type_verification,
        }, request_id))]
        if fulfilled:
            deliveries.append((request.requester_id, DomainEvent("request.fulfilled", {
                "donor_id": booking.donor_id,
            }, request_id)))
        deliveries += self._rejections(rejected, request_id)
        self._publish(deliveries)
        return booking

    @retry_on_contention
    def mark_no_show(self, booking_id):
        booking = self.slots.get_booking(booking_id)
        request_id, slot_id = booking.request_id, booking.slot_id
        with self._request_lock(request_id), self.slots.slot_lock(slot_id):
            with transaction() as session:
                booking = session.get(Booking, booking_id, populate_existing=True)
                self.slots.mark_no_show(booking, self.clock.now())
                lifecycle.adjust_reliability(booking.donor, -self.no_show_penalty)
        logger.info("booking %s marked no-show", booking_id)
        self._publish(self._booking_dropped(booking, "booking.no_show"))
        return booking

    def recompute_slot(self, slot_id):
        return self.slots.recompute(slot_id)
