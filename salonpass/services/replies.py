"""Appointment status changes driven by the client's WhatsApp replies.

Both webhook providers (Twilio and Evolution API) end up in
:func:`handle_inbound_message`, so matching and transitions are identical
whichever transport delivered the message.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from ..errors import ValidationError
from ..extensions import db
from ..models import Appointment, InboundMessage, Notification
from ..utils import normalize_phone, utc_now
from .appointments import cancel_appointment
from .whatsapp import PROPOSAL_RECEIVED_TEXT, sanitize, send_appointment_message

logger = logging.getLogger(__name__)

# (target status, words contained in the reply, single-digit shortcut)
REPLY_KEYWORDS = (
    ("confirmed", ("confirmar", "confirmo"), "1"),
    ("rescheduling", ("reagendar", "cambio", "reprogramar"), "2"),
    ("cancelled", ("cancelar",), "3"),
)

REPLY_TRANSITIONS = {
    "scheduled": {"confirmed", "rescheduling", "cancelled"},
    "confirmed": {"cancelled"},
    "rescheduling": {"cancelled"},
}

ACTIVE_STATUSES = ("scheduled", "confirmed", "rescheduling")
MATCH_GRACE = timedelta(hours=2)


def classify_reply(text: str | None) -> str | None:
    reply = (text or "").strip().lower()
    if not reply:
        return None
    for target, words, digit in REPLY_KEYWORDS:
        if reply == digit or any(word in reply for word in words):
            return target
    return None


def find_active_appointment(phone: str) -> Appointment | None:
    """Earliest upcoming active appointment for ``phone``.

    Appointments that started up to two hours ago still count. The exact
    normalized number is tried first, then the last ten digits when the
    sender has at least ten.
    """
    normalized = normalize_phone(phone)
    base = Appointment.query.filter(
        Appointment.status.in_(ACTIVE_STATUSES),
        Appointment.starts_at >= utc_now() - MATCH_GRACE,
    ).order_by(Appointment.starts_at.asc())

    appointment = base.filter(Appointment.client_phone == normalized).first()
    if appointment is None and len(normalized) >= 10:
        appointment = base.filter(Appointment.client_phone.like(f"%{normalized[-10:]}")).first()
    return appointment


def _notify(appointment: Appointment, notification_type: str, icon: str, title: str, message: str) -> None:
    db.session.add(
        Notification(
            notification_type=notification_type,
            icon=icon,
            title=title,
            message=message,
            entity_id=appointment.appointment_id,
            created_at=utc_now(),
        )
    )


def _capture_proposal(integrations, appointment: Appointment, text: str) -> str:
    appointment.reschedule_proposal = text.strip()
    appointment.updated_at = utc_now()
    _notify(
        appointment,
        "alerta",
        "calendar-alt",
        "Propuesta de reagendamiento",
        f'{appointment.client_name} propone reagendar {appointment.service_name} para: "{text.strip()}"',
    )
    db.session.commit()
    integrations.whatsapp.send_text(
        appointment.client_phone,
        PROPOSAL_RECEIVED_TEXT.format(
            name=sanitize(appointment.client_name),
            service=sanitize(appointment.service_name),
            proposal=sanitize(text),
        ),
    )
    return "proposal"


def apply_reply(integrations, appointment: Appointment, text: str, via: str = "whatsapp") -> str:
    """Apply a reply to ``appointment`` and return what happened.

    The outcome is the new status, ``"proposal"`` when free text was stored
    as a reschedule proposal, or ``"ignored"``.
    """
    target = classify_reply(text)
    if target is None:
        if appointment.status == "rescheduling":
            return _capture_proposal(integrations, appointment, text)
        logger.info("Unrecognized reply for appointment %s: %r", appointment.appointment_id, text)
        return "ignored"

    if target not in REPLY_TRANSITIONS.get(appointment.status, ()):
        logger.info(
            "Ignoring %s reply for appointment %s in status %s",
            target,
            appointment.appointment_id,
            appointment.status,
        )
        return "ignored"

    if target == "cancelled":
        cancel_appointment(integrations, appointment.appointment_id, via=via, notify_client=True)
        return "cancelled"

    now = utc_now()
    appointment.status = target
    appointment.updated_at = now
    if target == "confirmed":
        appointment.confirmed_at = now
        appointment.confirmed_via = via
        _notify(
            appointment,
            "cita",
            "calendar-check",
            "Cita confirmada",
            f"{appointment.client_name} confirmó {appointment.service_name}",
        )
        template = "confirmation_received"
    else:
        appointment.reschedule_requested_at = now
        _notify(
            appointment,
            "alerta",
            "calendar-times",
            "Solicitud de reagendamiento",
            f"{appointment.client_name} quiere reagendar {appointment.service_name}",
        )
        template = "reschedule_requested"
    db.session.commit()
    logger.info("Appointment %s -> %s via %s", appointment.appointment_id, target, via)

    integrations.calendar.mirror_update(appointment)
    db.session.commit()
    send_appointment_message(integrations.whatsapp, appointment, template)
    return target


def handle_inbound_message(
    integrations,
    provider: str,
    phone: str | None,
    body: str | None,
    name: str | None = None,
    message_id: str | None = None,
) -> str:
    """Store an inbound message and apply it to the sender's active appointment."""
    body = (body or "").strip()
    if not body:
        logger.info("Empty %s message from %s ignored", provider, phone)
        return "empty"
    try:
        normalized = normalize_phone(phone)
    except ValidationError:
        logger.warning("Inbound %s message without a usable phone: %r", provider, phone)
        return "dropped"

    appointment = find_active_appointment(normalized)
    db.session.add(
        InboundMessage(
            provider=provider,
            phone=normalized,
            name=name,
            body=body,
            provider_message_id=message_id,
            appointment_id=appointment.appointment_id if appointment else None,
            created_at=utc_now(),
        )
    )
    db.session.commit()

    if appointment is None:
        logger.info("No active appointment for %s; message stored only", normalized)
        return "no_appointment"
    return apply_reply(integrations, appointment, body, via=f"whatsapp-{provider}")
