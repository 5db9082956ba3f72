# models.py
import enum
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BloodType(str, enum.Enum):
    A_POSITIVE = "A+"
    A_NEGATIVE = "A-"
    B_POSITIVE = "B+"
    B_NEGATIVE = "B-"
    AB_POSITIVE = "AB+"
    AB_NEGATIVE = "AB-"
    O_POSITIVE = "O+"
    O_NEGATIVE = "O-"


class Urgency(str, enum.Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DECLINED = "declined"


class BookingStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    NO_SHOW = "no_show"


# statuses that occupy a place in their slot
CAPACITY_HOLDING = (BookingStatus.SCHEDULED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW)


def _enum_column(enum_cls, **kwargs):
    return db.Column(
        db.Enum(enum_cls, values_callable=lambda e: [m.value for m in e],
                native_enum=False, length=16),
        **kwargs,
    )


def _iso(value):
    return value.isoformat() if value is not None else None


class Donor(db.Model):
    __tablename__ = "donor"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    blood_type = _enum_column(BloodType, nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    is_available = db.Column(db.Boolean, default=True, nullable=False)
    last_donation_at = db.Column(db.DateTime, nullable=True)
    reliability_score = db.Column(db.Integer, default=50, nullable=False)
    offers_made = db.Column(db.Integer, default=0, nullable=False)
    donations_completed = db.Column(db.Integer, default=0, nullable=False)
    no_shows = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def has_location(self):
        return self.latitude is not None and self.longitude is not None

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "phone": self.phone,
            "blood_type": self.blood_type.value if self.blood_type else None,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_available": self.is_available,
            "last_donation_at": _iso(self.last_donation_at),
            "reliability_score": self.reliability_score,
        }

    def __repr__(self):
        return f"<Donor {self.id} {self.blood_type}>"


class EmergencyRequest(db.Model):
    __tablename__ = "emergency_request"
    id = db.Column(db.Integer, primary_key=True)
    requester_id = db.Column(db.String(64), nullable=False, index=True)
    patient_name = db.Column(db.String(120), nullable=True)
    hospital_name = db.Column(db.String(160), nullable=True)
    address = db.Column(db.String(255), nullable=True)
    blood_type = _enum_column(BloodType, nullable=False)
    units_required = db.Column(db.Integer, default=1, nullable=False)
    urgency = _enum_column(Urgency, default=Urgency.NORMAL, nullable=False)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    location_unknown = db.Column(db.Boolean, default=False, nullable=False)
    status = _enum_column(RequestStatus, default=RequestStatus.PENDING, nullable=False)
    accepted_donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    fulfilled_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    offers = db.relationship("Offer", backref="request", lazy="select",
                             order_by="Offer.id")

    @property
    def has_location(self):
        return self.latitude is not None and self.longitude is not None

    def to_dict(self):
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "patient_name": self.patient_name,
            "hospital_name": self.hospital_name,
            "blood_type": self.blood_type.value,
            "units_required": self.units_required,
            "urgency": self.urgency.value,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "location_unknown": self.location_unknown,
            "status": self.status.value,
            "accepted_donor_id": self.accepted_donor_id,
            "created_at": _iso(self.created_at),
            "fulfilled_at": _iso(self.fulfilled_at),
            "cancelled_at": _iso(self.cancelled_at),
        }

    def __repr__(self):
        return f"<EmergencyRequest {self.id} {self.status}>"


class Offer(db.Model):
    __tablename__ = "offer"
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("emergency_request.id"),
                           nullable=False, index=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=False, index=True)
    status = _enum_column(OfferStatus, default=OfferStatus.PENDING, nullable=False)
    message = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    accepted_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)

    donor = db.relationship("Donor")

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "donor_id": self.donor_id,
            "status": self.status.value,
            "message": self.message,
            "created_at": _iso(self.created_at),
            "accepted_at": _iso(self.accepted_at),
            "rejected_at": _iso(self.rejected_at),
        }

    def __repr__(self):
        return f"<Offer {self.id} {self.status}>"


class DonationSlot(db.Model):
    __tablename__ = "donation_slot"
    __table_args__ = (
        db.CheckConstraint("booked_count >= 0", name="ck_slot_booked_nonneg"),
        db.CheckConstraint("booked_count <= capacity", name="ck_slot_booked_le_capacity"),
    )
    id = db.Column(db.Integer, primary_key=True)
    facility_id = db.Column(db.String(64), nullable=False, index=True)
    slot_date = db.Column(db.Date, nullable=True)
    day_of_week = db.Column(db.Integer, nullable=True)  # 0 = Monday
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    capacity = db.Column(db.Integer, nullable=False)
    booked_count = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def is_recurring(self):
        return self.slot_date is None

    @property
    def remaining(self):
        return max(self.capacity - self.booked_count, 0)

    def to_dict(self):
        return {
            "id": self.id,
            "facility_id": self.facility_id,
            "slot_date": _iso(self.slot_date),
            "day_of_week": self.day_of_week,
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "capacity": self.capacity,
            "booked_count": self.booked_count,
            "remaining": self.remaining,
        }

    def __repr__(self):
        return f"<DonationSlot {self.id} {self.booked_count}/{self.capacity}>"


class Booking(db.Model):
    __tablename__ = "booking"
    id = db.Column(db.Integer, primary_key=True)
    donor_id = db.Column(db.Integer, db.ForeignKey("donor.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("donation_slot.id"), nullable=True, index=True)
    request_id = db.Column(db.Integer, db.ForeignKey("emergency_request.id"),
                           nullable=True, index=True)
    status = _enum_column(BookingStatus, default=BookingStatus.SCHEDULED, nullable=False)
    scheduled_date = db.Column(db.Date, nullable=True)
    rescheduled_from_id = db.Column(db.Integer, db.ForeignKey("booking.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    donor = db.relationship("Donor")
    slot = db.relationship("DonationSlot")

    @property
    def needs_blood_type_verification(self):
        return self.status == BookingStatus.COMPLETED and (
            self.donor is None or self.donor.blood_type is None
        )

    def to_dict(self):
        return {
            "id": self.id,
            "donor_id": self.donor_id,
            "slot_id": self.slot_id,
            "request_id": self.request_id,
            "status": self.status.value,
            "scheduled_date": _iso(self.scheduled_date),
            "rescheduled_from_id": self.rescheduled_from_id,
            "needs_blood_type_verification": self.needs_blood_type_verification,
            "created_at": _iso(self.created_at),
            "cancelled_at": _iso(self.cancelled_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<Booking {self.id} {self.status}>"


class Notification(db.Model):
    __tablename__ = "notification"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    request_id = db.Column(db.Integer, db.ForeignKey("emergency_request.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    notif_type = db.Column(db.String(64), default="REQUEST")
    payload = db.Column(db.JSON, nullable=True)
    delivered = db.Column(db.Boolean, default=False)
