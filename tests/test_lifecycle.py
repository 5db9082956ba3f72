# test_lifecycle.py
from datetime import datetime
from types import SimpleNamespace

import pytest

import lifecycle
from errors import ConflictError, InvalidStateError
from models import OfferStatus, RequestStatus

NOW = datetime(2026, 3, 2, 9, 0)


def req(status, accepted_donor_id=None):
    return SimpleNamespace(id=7, status=status, accepted_donor_id=accepted_donor_id,
                           fulfilled_at=None, cancelled_at=None)


def offer(status):
    return SimpleNamespace(id=3, request_id=7, status=status, accepted_at=None, rejected_at=None)


def test_pending_request_starts():
    r = req(RequestStatus.PENDING)
    lifecycle.start_request(r, donor_id=4)
    assert r.status == RequestStatus.IN_PROGRESS
    assert r.accepted_donor_id == 4


@pytest.mark.parametrize("status", [RequestStatus.FULFILLED, RequestStatus.CANCELLED])
def test_terminal_request_cannot_start(status):
    with pytest.raises(InvalidStateError) as exc:
        lifecycle.start_request(req(status), donor_id=4)
    assert exc.value.current_state == status


def test_fulfil_requires_in_progress():
    r = req(RequestStatus.PENDING)
    with pytest.raises(InvalidStateError):
        lifecycle.fulfil_request(r, NOW)
    r.status = RequestStatus.IN_PROGRESS
    lifecycle.fulfil_request(r, NOW)
    assert r.status == RequestStatus.FULFILLED
    assert r.fulfilled_at == NOW


@pytest.mark.parametrize("status", [RequestStatus.PENDING, RequestStatus.IN_PROGRESS])
def test_open_requests_can_be_cancelled(status):
    r = req(status)
    lifecycle.cancel_request(r, NOW)
    assert r.status == RequestStatus.CANCELLED
    assert r.cancelled_at == NOW


@pytest.mark.parametrize("status", [RequestStatus.FULFILLED, RequestStatus.CANCELLED])
def test_terminal_requests_stay_terminal(status):
    r = req(status)
    with pytest.raises(InvalidStateError):
        lifecycle.cancel_request(r, NOW)
    assert r.status == status


def test_accept_pending_offer():
    o = offer(OfferStatus.PENDING)
    lifecycle.accept_offer(o, NOW)
    assert o.status == OfferStatus.ACCEPTED
    assert o.accepted_at == NOW


def test_rejected_offer_conflicts_on_accept():
    with pytest.raises(ConflictError):
        lifecycle.accept_offer(offer(OfferStatus.REJECTED), NOW)


@pytest.mark.parametrize("status", [OfferStatus.ACCEPTED, OfferStatus.DECLINED])
def test_closed_offer_cannot_be_accepted(status):
    with pytest.raises(InvalidStateError):
        lifecycle.accept_offer(offer(status), NOW)


def test_decline_and_reject_only_from_pending():
    o = offer(OfferStatus.PENDING)
    lifecycle.decline_offer(o, NOW)
    assert o.status == OfferStatus.DECLINED
    with pytest.raises(InvalidStateError):
        lifecycle.reject_offer(o, NOW)


def test_supersede_only_accepted_offers():
    o = offer(OfferStatus.ACCEPTED)
    lifecycle.supersede_offer(o, NOW)
    assert o.status == OfferStatus.REJECTED
    with pytest.raises(InvalidStateError):
        lifecycle.supersede_offer(offer(OfferStatus.PENDING), NOW)


@pytest.mark.parametrize("start,delta,expected", [
    (50, 5, 55),
    (98, 5, 100),
    (10, -15, 0),
    (50, -2, 48),
    (None, 5, 5),
])
def test_adjust_reliability_clamps(start, delta, expected):
    d = SimpleNamespace(reliability_score=start)
    assert lifecycle.adjust_reliability(d, delta) == expected
    assert d.reliability_score == expected


def test_transition_tables_have_no_way_out_of_terminal_states():
    for status in lifecycle.TERMINAL_REQUEST:
        assert lifecycle.REQUEST_TRANSITIONS[status] == frozenset()
    for status in (OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.DECLINED):
        assert lifecycle.OFFER_TRANSITIONS[status] == frozenset()
