# lifecycle.py
"""Request and offer state machines.

The functions here validate a transition and apply it to the in-session
model instance. They never commit; the coordinator owns the transaction and
the per-request lock around them.
"""
from errors import ConflictError, InvalidStateError
from models import Booking, BookingStatus, OfferStatus, RequestStatus

REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: frozenset({RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED}),
    RequestStatus.IN_PROGRESS: frozenset({RequestStatus.FULFILLED, RequestStatus.CANCELLED}),
    RequestStatus.FULFILLED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

OFFER_TRANSITIONS = {
    OfferStatus.PENDING: frozenset({OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.DECLINED}),
    OfferStatus.ACCEPTED: frozenset(),
    OfferStatus.REJECTED: frozenset(),
    OfferStatus.DECLINED: frozenset(),
}

TERMINAL_REQUEST = frozenset({RequestStatus.FULFILLED, RequestStatus.CANCELLED})
OPEN_OFFER = frozenset({OfferStatus.PENDING, OfferStatus.ACCEPTED})

# outcomes of the accepted donor's booking that let another offer be accepted
LAPSED_BOOKING = frozenset({BookingStatus.CANCELLED, BookingStatus.NO_SHOW})


# ============================
# REQUEST
# ============================
def ensure_request_transition(request, target):
    if target not in REQUEST_TRANSITIONS[request.status]:
        raise InvalidStateError(
            f"request {request.id} cannot move from {request.status.value} to {target.value}",
            request.status, request_id=request.id,
        )


def accepted_booking(request):
    """Latest booking of the accepted donor for this request, if any."""
    if request.accepted_donor_id is None:
        return None
    return (Booking.query
            .filter_by(request_id=request.id, donor_id=request.accepted_donor_id)
            .order_by(Booking.id.desc())
            .first())


def is_lapsed(request):
    """An in-progress request whose accepted donor dropped out."""
    if request.status != RequestStatus.IN_PROGRESS:
        return False
    booking = accepted_booking(request)
    return booking is not None and booking.status in LAPSED_BOOKING


def accepts_offers(request):
    return request.status == RequestStatus.PENDING or is_lapsed(request)


def start_request(request, donor_id):
    """pending -> in_progress, or re-accept on a lapsed in-progress request."""
    if request.status in TERMINAL_REQUEST:
        raise InvalidStateError(
            f"request {request.id} is {request.status.value}", request.status,
            request_id=request.id,
        )
    if request.status == RequestStatus.IN_PROGRESS and not is_lapsed(request):
        raise ConflictError(
            f"request {request.id} already has an accepted donor",
            request_id=request.id, accepted_donor_id=request.accepted_donor_id,
        )
    request.status = RequestStatus.IN_PROGRESS
    request.accepted_donor_id = donor_id


def fulfil_request(request, now):
    ensure_request_transition(request, RequestStatus.FULFILLED)
    request.status = RequestStatus.FULFILLED
    request.fulfilled_at = now


def cancel_request(request, now):
    ensure_request_transition(request, RequestStatus.CANCELLED)
    request.status = RequestStatus.CANCELLED
    request.cancelled_at = now


# ============================
# OFFER
# ============================
def ensure_offer_acceptable(offer):
    if offer.status == OfferStatus.REJECTED:
        raise ConflictError(f"offer {offer.id} is no longer available",
                            offer_id=offer.id, request_id=offer.request_id)
    if OfferStatus.ACCEPTED not in OFFER_TRANSITIONS[offer.status]:
        raise InvalidStateError(f"offer {offer.id} is {offer.status.value}", offer.status,
                                offer_id=offer.id)


def accept_offer(offer, now):
    ensure_offer_acceptable(offer)
    offer.status = OfferStatus.ACCEPTED
    offer.accepted_at = now


def decline_offer(offer, now):
    if OfferStatus.DECLINED not in OFFER_TRANSITIONS[offer.status]:
        raise InvalidStateError(f"offer {offer.id} is {offer.status.value}", offer.status,
                                offer_id=offer.id)
    offer.status = OfferStatus.DECLINED
    offer.rejected_at = now


def reject_offer(offer, now):
    if OfferStatus.REJECTED not in OFFER_TRANSITIONS[offer.status]:
        raise InvalidStateError(f"offer {offer.id} is {offer.status.value}", offer.status,
                                offer_id=offer.id)
    offer.status = OfferStatus.REJECTED
    offer.rejected_at = now


def supersede_offer(offer, now):
    """accepted -> rejected, only when a lapsed request is handed to another donor."""
    if offer.status != OfferStatus.ACCEPTED:
        raise InvalidStateError(f"offer {offer.id} is {offer.status.value}", offer.status,
                                offer_id=offer.id)
    offer.status = OfferStatus.REJECTED
    offer.rejected_at = now


# ============================
# DONOR
# ============================
def adjust_reliability(donor, delta):
    donor.reliability_score = max(0, min(100, (donor.reliability_score or 0) + delta))
    return donor.reliability_score
