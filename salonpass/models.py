"""Database models for the SalonPass backend."""
from __future__ import annotations

import uuid

from .extensions import db
from .utils import isoformat, utc_now, utc_to_local


def _opaque_id(prefix: str):
    def factory() -> str:
        return f"{prefix}_{uuid.uuid4().hex[:16]}"

    return factory


APPOINTMENT_STATUSES = (
    "scheduled",
    "confirmed",
    "rescheduling",
    "completed",
    "cancelled",
    "no_show",
)
TERMINAL_STATUSES = ("completed", "cancelled", "no_show")
# Statuses that occupy a slot in the shared calendar
BLOCKING_STATUSES = ("scheduled", "confirmed")


class AdminUser(db.Model):
    """Dashboard operator."""

    __tablename__ = "admin_users"

    admin_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.admin_id,
            "name": self.name,
            "email": self.email,
            "lastLoginAt": isoformat(self.last_login_at),
        }


class Card(db.Model):
    """A customer's loyalty card; the card id doubles as the wallet serial number."""

    __tablename__ = "cards"

    card_id = db.Column(db.String(64), primary_key=True, default=_opaque_id("card"))
    name = db.Column(db.String(150), nullable=False)
    phone = db.Column(db.String(20), nullable=False, index=True)
    email = db.Column(db.String(255))
    birthday = db.Column(db.String(5))  # MM-DD
    stamps = db.Column(db.Integer, nullable=False, default=0)
    max_stamps = db.Column(db.Integer, nullable=False, default=8)
    cycles = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.Enum(
            "active",
            "inactive",
            name="card_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="active",
    )
    # Latest broadcast text shown on the Apple pass back
    wallet_message = db.Column(db.Text)
    last_visit = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    events = db.relationship(
        "Event",
        back_populates="card",
        cascade="all, delete-orphan",
        order_by="Event.event_id",
    )
    devices = db.relationship("WalletDevice", back_populates="card", cascade="all, delete-orphan")
    record = db.relationship("ClientRecord", back_populates="card", cascade="all, delete-orphan", uselist=False)

    @property
    def is_full(self) -> bool:
        return self.stamps >= self.max_stamps

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.card_id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "birthday": self.birthday,
            "stamps": self.stamps,
            "max": self.max_stamps,
            "cycles": self.cycles,
            "status": self.status,
            "lastVisit": isoformat(self.last_visit),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class Event(db.Model):
    """Append-only ledger entry owned by a card."""

    __tablename__ = "events"

    event_id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.String(64), db.ForeignKey("cards.card_id"), nullable=False, index=True)
    event_type = db.Column(
        db.Enum(
            "ISSUE",
            "STAMP",
            "REDEEM",
            name="event_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    meta = db.Column(db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    card = db.relationship("Card", back_populates="events")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.event_id,
            "cardId": self.card_id,
            "type": self.event_type,
            "meta": self.meta or {},
            "createdAt": isoformat(self.created_at),
        }


class Service(db.Model):
    """Service catalog entry."""

    __tablename__ = "services"

    service_id = db.Column(db.String(64), primary_key=True, default=_opaque_id("svc"))
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(100))
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    duration_minutes = db.Column(db.Integer, nullable=False, default=60)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "price": self.price_cents / 100.0,
            "priceCents": self.price_cents,
            "durationMinutes": self.duration_minutes,
            "active": bool(self.active),
        }


class Appointment(db.Model):
    """A booked slot on the shared salon calendar."""

    __tablename__ = "appointments"

    appointment_id = db.Column(db.String(64), primary_key=True, default=_opaque_id("appt"))
    card_id = db.Column(db.String(64), db.ForeignKey("cards.card_id"), nullable=True, index=True)
    client_name = db.Column(db.String(150), nullable=False)
    client_phone = db.Column(db.String(20), nullable=False, index=True)
    service_id = db.Column(db.String(64), db.ForeignKey("services.service_id"), nullable=True)
    service_name = db.Column(db.String(150), nullable=False)
    date = db.Column(db.String(10), nullable=False, index=True)  # YYYY-MM-DD, business local
    time = db.Column(db.String(5), nullable=False)  # HH:MM, business local
    duration_minutes = db.Column(db.Integer, nullable=False)
    starts_at = db.Column(db.DateTime, nullable=False, index=True)
    ends_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(
        db.Enum(
            *APPOINTMENT_STATUSES,
            name="appointment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="scheduled",
    )
    notes = db.Column(db.Text)

    google_calendar_event_id = db.Column(db.String(255))
    google_calendar_event_id_2 = db.Column(db.String(255))

    send_whatsapp_24h = db.Column(db.Boolean, nullable=False, default=True)
    send_whatsapp_2h = db.Column(db.Boolean, nullable=False, default=True)
    sent_24h_at = db.Column(db.DateTime)
    sent_2h_at = db.Column(db.DateTime)

    confirmed_at = db.Column(db.DateTime)
    confirmed_via = db.Column(db.String(50))
    reschedule_requested_at = db.Column(db.DateTime)
    reschedule_proposal = db.Column(db.Text)
    cancelled_at = db.Column(db.DateTime)
    cancelled_via = db.Column(db.String(50))
    completed_at = db.Column(db.DateTime)
    payment_amount_cents = db.Column(db.Integer)
    payment_method = db.Column(db.String(50))

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    card = db.relationship("Card")
    service = db.relationship("Service")

    def to_dict(self) -> dict[str, object]:
        start_local = utc_to_local(self.starts_at)
        end_local = utc_to_local(self.ends_at)
        return {
            "id": self.appointment_id,
            "cardId": self.card_id,
            "clientName": self.client_name,
            "clientPhone": self.client_phone,
            "serviceId": self.service_id,
            "serviceName": self.service_name,
            "date": self.date,
            "time": self.time,
            "durationMinutes": self.duration_minutes,
            "startDateTime": start_local.isoformat() if start_local else None,
            "endDateTime": end_local.isoformat() if end_local else None,
            "status": self.status,
            "notes": self.notes,
            "googleCalendarEventId": self.google_calendar_event_id,
            "googleCalendarEventId2": self.google_calendar_event_id_2,
            "sendWhatsApp24h": bool(self.send_whatsapp_24h),
            "sendWhatsApp2h": bool(self.send_whatsapp_2h),
            "sent24hAt": isoformat(self.sent_24h_at),
            "sent2hAt": isoformat(self.sent_2h_at),
            "confirmedAt": isoformat(self.confirmed_at),
            "confirmedVia": self.confirmed_via,
            "rescheduleRequestedAt": isoformat(self.reschedule_requested_at),
            "rescheduleProposal": self.reschedule_proposal,
            "cancelledAt": isoformat(self.cancelled_at),
            "cancelledVia": self.cancelled_via,
            "completedAt": isoformat(self.completed_at),
            "paymentAmount": self.payment_amount_cents / 100.0 if self.payment_amount_cents is not None else None,
            "paymentMethod": self.payment_method,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class Notification(db.Model):
    """Internal dashboard notification or push-broadcast history entry.

    Broadcast entries (``notification_type == "broadcast"``) carry the
    aggregate delivery counters.
    """

    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    notification_type = db.Column(db.String(50), nullable=False, index=True)
    icon = db.Column(db.String(50))
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    entity_id = db.Column(db.String(64))
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    cards_sent = db.Column(db.Integer, nullable=False, default=0)
    google_sent = db.Column(db.Integer, nullable=False, default=0)
    apple_sent = db.Column(db.Integer, nullable=False, default=0)
    errors = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.notification_id,
            "type": self.notification_type,
            "icon": self.icon,
            "title": self.title,
            "message": self.message,
            "entityId": self.entity_id,
            "read": bool(self.is_read),
            "createdAt": isoformat(self.created_at),
        }
        if self.notification_type == "broadcast":
            payload.update(
                {
                    "cardsSent": self.cards_sent,
                    "googleSent": self.google_sent,
                    "appleSent": self.apple_sent,
                    "errors": self.errors,
                }
            )
        return payload


class WalletDevice(db.Model):
    """A wallet installation that should be told when a card changes."""

    __tablename__ = "wallet_devices"
    __table_args__ = (
        db.UniqueConstraint("device_id", "pass_type_id", "serial_number", name="uq_wallet_device_pass"),
    )

    wallet_device_id = db.Column(db.Integer, primary_key=True)
    platform = db.Column(
        db.Enum("apple", "google", name="wallet_platform", native_enum=False, validate_strings=True),
        nullable=False,
        default="apple",
    )
    device_id = db.Column(db.String(255), nullable=False)
    push_token = db.Column(db.String(255))
    pass_type_id = db.Column(db.String(255), nullable=False)
    serial_number = db.Column(db.String(64), db.ForeignKey("cards.card_id"), nullable=False, index=True)
    registered_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    last_updated = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    card = db.relationship("Card", back_populates="devices")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.wallet_device_id,
            "platform": self.platform,
            "deviceId": self.device_id,
            "passTypeId": self.pass_type_id,
            "serialNumber": self.serial_number,
            "registeredAt": isoformat(self.registered_at),
        }


class InboundMessage(db.Model):
    """WhatsApp message received from a client (admin inbox)."""

    __tablename__ = "inbound_messages"

    inbound_message_id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)
    phone = db.Column(db.String(20), nullable=False, index=True)
    name = db.Column(db.String(150))
    body = db.Column(db.Text, nullable=False)
    provider_message_id = db.Column(db.String(255))
    appointment_id = db.Column(db.String(64), db.ForeignKey("appointments.appointment_id"), nullable=True)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.inbound_message_id,
            "provider": self.provider,
            "phone": self.phone,
            "name": self.name,
            "body": self.body,
            "appointmentId": self.appointment_id,
            "read": bool(self.is_read),
            "createdAt": isoformat(self.created_at),
        }


GIFT_CARD_STATUSES = ("pending", "active", "used", "expired")
# Gift cards that still carry a balance
REDEEMABLE_GIFT_CARD_STATUSES = ("pending", "active")


class GiftCard(db.Model):
    """Prepaid balance, optionally tied to a catalog service."""

    __tablename__ = "gift_cards"

    gift_card_id = db.Column(db.String(64), primary_key=True, default=_opaque_id("gift"))
    code = db.Column(db.String(20), unique=True, nullable=False, index=True)
    service_id = db.Column(db.String(64), db.ForeignKey("services.service_id"), nullable=True)
    service_name = db.Column(db.String(150))
    amount_cents = db.Column(db.Integer, nullable=False)
    remaining_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.Enum(*GIFT_CARD_STATUSES, name="gift_card_status", native_enum=False, validate_strings=True),
        nullable=False,
        default="pending",
    )
    purchaser_name = db.Column(db.String(150))
    purchaser_phone = db.Column(db.String(20))
    recipient_name = db.Column(db.String(150))
    recipient_phone = db.Column(db.String(20))
    message = db.Column(db.Text)
    expires_at = db.Column(db.DateTime, index=True)
    used_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.gift_card_id,
            "code": self.code,
            "serviceId": self.service_id,
            "serviceName": self.service_name,
            "amount": self.amount_cents / 100.0,
            "remainingAmount": self.remaining_cents / 100.0,
            "status": self.status,
            "purchaserName": self.purchaser_name,
            "purchaserPhone": self.purchaser_phone,
            "recipientName": self.recipient_name,
            "recipientPhone": self.recipient_phone,
            "message": self.message,
            "expiresAt": isoformat(self.expires_at),
            "usedAt": isoformat(self.used_at),
            "createdAt": isoformat(self.created_at),
        }


class ClientRecord(db.Model):
    """Treatment file kept for a loyalty client, one per card."""

    __tablename__ = "client_records"

    record_id = db.Column(db.String(64), primary_key=True, default=_opaque_id("rec"))
    card_id = db.Column(db.String(64), db.ForeignKey("cards.card_id"), unique=True, nullable=False)
    age = db.Column(db.Integer)
    skin_type = db.Column(db.String(100))
    allergies = db.Column(db.Text)
    medical_history = db.Column(db.Text)
    objectives = db.Column(db.Text)
    observations = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    card = db.relationship("Card", back_populates="record")
    sessions = db.relationship(
        "TreatmentSession",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by=lambda: [TreatmentSession.session_date.desc(), TreatmentSession.session_id.desc()],
    )

    def to_dict(self, include_sessions: bool = False) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.record_id,
            "cardId": self.card_id,
            "age": self.age,
            "skinType": self.skin_type,
            "allergies": self.allergies,
            "medicalHistory": self.medical_history,
            "objectives": self.objectives,
            "observations": self.observations,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }
        if include_sessions:
            payload["sessions"] = [session.to_dict() for session in self.sessions]
        return payload


class TreatmentSession(db.Model):
    __tablename__ = "treatment_sessions"

    session_id = db.Column(db.Integer, primary_key=True)
    record_id = db.Column(db.String(64), db.ForeignKey("client_records.record_id"), nullable=False, index=True)
    session_date = db.Column(db.Date, nullable=False)
    treatment_type = db.Column(db.String(150))
    service_name = db.Column(db.String(150))
    staff_name = db.Column(db.String(150))
    device_name = db.Column(db.String(150))
    device_settings = db.Column(db.JSON)
    treated_areas = db.Column(db.Text)
    products_used = db.Column(db.Text)
    observations = db.Column(db.Text)
    results = db.Column(db.Text)
    recommendations = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    record = db.relationship("ClientRecord", back_populates="sessions")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.session_id,
            "recordId": self.record_id,
            "date": self.session_date.isoformat(),
            "treatmentType": self.treatment_type,
            "serviceName": self.service_name,
            "staffName": self.staff_name,
            "deviceName": self.device_name,
            "deviceSettings": self.device_settings,
            "treatedAreas": self.treated_areas,
            "productsUsed": self.products_used,
            "observations": self.observations,
            "results": self.results,
            "recommendations": self.recommendations,
        }
