# app.py
import logging
import os
from datetime import date, time

from flask import Flask, current_app, jsonify, request
from flask_socketio import SocketIO, join_room

from config import Config
from coordinator import MatchingCoordinator
from errors import MatchingError, ValidationError
from geo import NominatimGeocoder
from models import Donor, db
from notifications import (CompositeNotificationSink, DatabaseNotificationSink,
                           SmsNotificationSink, SocketIONotificationSink)
from slots import SlotWindow, parse_day_of_week

logger = logging.getLogger(__name__)

socketio = SocketIO()

STATUS_BY_KIND = {
    "validation_error": 400,
    "not_found": 404,
    "invalid_state": 409,
    "conflict": 409,
    "capacity_exceeded": 409,
    "dependency_error": 503,
}


# ============================
# APP FACTORY
# ============================
def create_app(config_object=Config, geocoder=None, notifier=None, clock=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    logging.basicConfig(level=app.config["LOG_LEVEL"])

    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite:///"):
        os.makedirs(os.path.dirname(uri[len("sqlite:///"):]) or ".", exist_ok=True)

    db.init_app(app)
    socketio.init_app(app, cors_allowed_origins="*", async_mode=app.config["SOCKETIO_ASYNC_MODE"])

    if geocoder is None:
        geocoder = NominatimGeocoder(app.config["GEOCODER_USER_AGENT"],
                                     timeout=app.config["GEOCODER_TIMEOUT"],
                                     cache_size=app.config["GEOCODER_CACHE_SIZE"])
    if notifier is None:
        notifier = build_notifier(app)

    coordinator = MatchingCoordinator.from_config(app.config, geocoder=geocoder,
                                                  notifier=notifier, clock=clock)
    coordinator.subscribe(lambda event: socketio.emit("request_updated", event.to_dict()))
    app.extensions["matching"] = coordinator

    app.register_error_handler(MatchingError, handle_matching_error)
    register_routes(app)

    with app.app_context():
        db.create_all()
    return app


def build_notifier(app):
    sinks = [DatabaseNotificationSink(), SocketIONotificationSink(socketio)]
    if app.config["TWILIO_ACCOUNT_SID"] and app.config["TWILIO_AUTH_TOKEN"]:
        sinks.append(SmsNotificationSink(
            app.config["TWILIO_ACCOUNT_SID"], app.config["TWILIO_AUTH_TOKEN"],
            app.config["TWILIO_FROM_NUMBER"], phone_for_user,
        ))
    return CompositeNotificationSink(*sinks)


def phone_for_user(user_id):
    user_id = str(user_id)
    if user_id.startswith("donor_") and user_id[6:].isdigit():
        donor = db.session.get(Donor, int(user_id[6:]))
    else:
        donor = Donor.query.filter_by(user_id=user_id).first()
    return donor.phone if donor else None


def handle_matching_error(e):
    return jsonify(e.to_dict()), STATUS_BY_KIND.get(e.kind, 400)


def matching():
    return current_app.extensions["matching"]


# ============================
# HELPERS
# ============================
def body():
    return request.get_json(silent=True) or {}


def required(data, key):
    if data.get(key) in (None, ""):
        raise ValidationError(f"{key} is required", field=key)
    return data[key]


def parse_date(value, key):
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an ISO date", field=key) from None


def parse_time(value, key):
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be HH:MM", field=key) from None


def parse_int(value, key):
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", field=key) from None


def failures(items):
    return [f.to_dict() for f in items]


# ============================
# ROUTES
# ============================
def register_routes(app):

    # ----- donors -----
    @app.route("/donors", methods=["POST"])
    def register_donor():
        data = body()
        d = matching().register_donor(
            name=required(data, "name"),
            blood_type=data.get("blood_type"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            user_id=data.get("user_id"),
            phone=data.get("phone"),
            is_available=data.get("is_available", True),
            address=data.get("address"),
        )
        return jsonify(d.to_dict()), 201

    @app.route("/donors/<int:donor_id>/location", methods=["PUT"])
    def update_location(donor_id):
        data = body()
        d = matching().update_donor_location(donor_id, data.get("latitude"), data.get("longitude"))
        return jsonify(d.to_dict())

    @app.route("/donors/<int:donor_id>/availability", methods=["PUT"])
    def update_availability(donor_id):
        d = matching().set_donor_availability(donor_id, bool(body().get("is_available")))
        return jsonify(d.to_dict())

    # ----- requests -----
    @app.route("/requests", methods=["POST"])
    def submit_request():
        data = body()
        result = matching().submit_request(
            requester_id=required(data, "requester_id"),
            blood_type=required(data, "blood_type"),
            units_required=data.get("units_required", 1),
            urgency=data.get("urgency", "normal"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            address=data.get("address"),
            patient_name=data.get("patient_name"),
            hospital_name=data.get("hospital_name"),
        )
        return jsonify({
            "request": result.request.to_dict(),
            "matches": [c.to_dict() for c in result.candidates],
        }), 201

    @app.route("/requests/<int:request_id>")
    def get_request(request_id):
        r = matching().get_request(request_id)
        out = r.to_dict()
        out["offers"] = [o.to_dict() for o in r.offers]
        return jsonify(out)

    @app.route("/requests/<int:request_id>/matches")
    def request_matches(request_id):
        radius = request.args.get("radius_km", type=float)
        limit = request.args.get("limit", type=int)
        ranked = matching().rank_donors(request_id, radius_km=radius, max_results=limit)
        return jsonify([c.to_dict() for c in ranked])

    @app.route("/requests/<int:request_id>/offers", methods=["POST"])
    def submit_offer(request_id):
        data = body()
        offer = matching().submit_offer(request_id, parse_int(required(data, "donor_id"), "donor_id"),
                                        message=data.get("message"))
        return jsonify(offer.to_dict()), 201

    @app.route("/requests/<int:request_id>/cancel", methods=["POST"])
    def cancel_request(request_id):
        result = matching().cancel_request(request_id)
        return jsonify({
            "request": result.request.to_dict(),
            "rejected_offers": [o.id for o in result.rejected_offers],
            "cancelled_bookings": [b.id for b in result.cancelled_bookings],
            "secondary_failures": failures(result.secondary_failures),
        })

    @app.route("/requests/<int:request_id>/confirm", methods=["POST"])
    def confirm_receipt(request_id):
        return jsonify(matching().confirm_receipt(request_id).to_dict())

    @app.route("/requests/<int:request_id>/reject-stale", methods=["POST"])
    def reject_stale(request_id):
        rejected = matching().reject_stale_offers(request_id)
        return jsonify({"rejected_offers": [o.id for o in rejected]})

    # ----- offers -----
    @app.route("/offers/<int:offer_id>/accept", methods=["POST"])
    def accept_offer(offer_id):
        data = body()
        result = matching().accept_offer(
            offer_id,
            slot_id=parse_int(data.get("slot_id"), "slot_id"),
            scheduled_date=parse_date(data.get("scheduled_date"), "scheduled_date"),
        )
        return jsonify({
            "offer": result.offer.to_dict(),
            "request": result.request.to_dict(),
            "booking": result.booking.to_dict() if result.booking else None,
            "rejected_offers": [o.id for o in result.rejected_offers],
            "secondary_failures": failures(result.secondary_failures),
        })

    @app.route("/offers/<int:offer_id>/decline", methods=["POST"])
    def decline_offer(offer_id):
        return jsonify(matching().decline_offer(offer_id).to_dict())

    # ----- slots -----
    @app.route("/slots", methods=["POST"])
    def create_slot():
        data = body()
        window = SlotWindow(
            start_time=parse_time(required(data, "start_time"), "start_time"),
            end_time=parse_time(required(data, "end_time"), "end_time"),
            slot_date=parse_date(data.get("slot_date"), "slot_date"),
            day_of_week=parse_day_of_week(data.get("day_of_week")),
        )
        slot = matching().create_slot(required(data, "facility_id"), window,
                                      parse_int(required(data, "capacity"), "capacity"))
        return jsonify(slot.to_dict()), 201

    @app.route("/slots")
    def list_slots():
        on_date = parse_date(request.args.get("date"), "date")
        slots = matching().slots.available_slots(request.args.get("facility_id"), on_date)
        return jsonify([s.to_dict() for s in slots])

    @app.route("/slots/<int:slot_id>/bookings", methods=["POST"])
    def book_slot(slot_id):
        data = body()
        booking = matching().book(
            slot_id,
            parse_int(required(data, "donor_id"), "donor_id"),
            request_id=parse_int(data.get("request_id"), "request_id"),
            scheduled_date=parse_date(data.get("scheduled_date"), "scheduled_date"),
        )
        return jsonify(booking.to_dict()), 201

    @app.route("/slots/<int:slot_id>/recompute", methods=["POST"])
    def recompute_slot(slot_id):
        return jsonify({"slot_id": slot_id, "booked_count": matching().recompute_slot(slot_id)})

    # ----- bookings -----
    @app.route("/bookings/<int:booking_id>/cancel", methods=["POST"])
    def cancel_booking(booking_id):
        return jsonify(matching().cancel_booking(booking_id).to_dict())

    @app.route("/bookings/<int:booking_id>/reschedule", methods=["POST"])
    def reschedule_booking(booking_id):
        data = body()
        booking = matching().reschedule(
            booking_id, parse_int(required(data, "slot_id"), "slot_id"),
            scheduled_date=parse_date(data.get("scheduled_date"), "scheduled_date"),
        )
        return jsonify(booking.to_dict()), 201

    @app.route("/bookings/<int:booking_id>/complete", methods=["POST"])
    def complete_booking(booking_id):
        return jsonify(matching().complete_booking(booking_id).to_dict())

    @app.route("/bookings/<int:booking_id>/no-show", methods=["POST"])
    def no_show(booking_id):
        return jsonify(matching().mark_no_show(booking_id).to_dict())


# ============================
# SOCKET.IO
# ============================
@socketio.on("join")
def on_join(data):
    room = data.get("user_id")
    if not room and data.get("donor_id"):
        room = f"donor_{data['donor_id']}"
    if room:
        join_room(str(room))
