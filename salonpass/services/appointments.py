"""Appointment store with single-resource conflict checking.

The salon books one shared slot pool: any two blocking appointments whose
``[starts_at, ends_at)`` intervals overlap conflict, whatever the service.
Calendar mirrors and WhatsApp messages run after the row is written and
never undo it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app

from ..errors import InvalidStatus, InvalidTransition, NotFound, SalonPassError, SlotConflict, ValidationError
from ..extensions import db
from ..models import APPOINTMENT_STATUSES, BLOCKING_STATUSES, TERMINAL_STATUSES, Appointment, Notification, Service
from ..utils import compute_interval, normalize_phone, parse_date, parse_duration, parse_time, utc_now
from .cards import find_or_create_card, stamp_card
from .whatsapp import send_appointment_message

logger = logging.getLogger(__name__)


def get_appointment(appointment_id: str) -> Appointment:
    appointment = db.session.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound("appointment not found")
    return appointment


def find_conflicts(starts_at: datetime, ends_at: datetime, exclude_id: str | None = None) -> list[Appointment]:
    """Blocking appointments overlapping ``[starts_at, ends_at)``."""
    query = Appointment.query.filter(
        Appointment.status.in_(BLOCKING_STATUSES),
        Appointment.starts_at < ends_at,
        Appointment.ends_at > starts_at,
    )
    if exclude_id:
        query = query.filter(Appointment.appointment_id != exclude_id)
    return query.order_by(Appointment.starts_at.asc()).all()


def _resolve_service(service_id: str | None, service_name: str | None) -> tuple[Service | None, str]:
    if service_id:
        service = db.session.get(Service, service_id)
        if service is None:
            raise NotFound("service not found")
        return service, service.name
    name = (service_name or "").strip()
    if not name:
        raise ValidationError("serviceId or serviceName is required")
    return None, name


def _notify(notification_type: str, icon: str, title: str, message: str, entity_id: str | None) -> None:
    db.session.add(
        Notification(
            notification_type=notification_type,
            icon=icon,
            title=title,
            message=message,
            entity_id=entity_id,
            created_at=utc_now(),
        )
    )


def create_appointment(
    integrations,
    client_name: str | None,
    phone: str | None,
    date: str | None,
    time: str | None,
    duration_minutes: object = None,
    service_id: str | None = None,
    service_name: str | None = None,
    notes: str | None = None,
    send_confirmation: bool = False,
    send_whatsapp_24h: bool = True,
    send_whatsapp_2h: bool = True,
    source: str = "admin",
) -> Appointment:
    client_name = (client_name or "").strip()
    if not client_name:
        raise ValidationError("clientName is required")
    normalized = normalize_phone(phone)
    date = parse_date(date)
    time = parse_time(time)
    service, resolved_name = _resolve_service(service_id, service_name)
    if duration_minutes in (None, "") and service is not None:
        duration_minutes = service.duration_minutes
    duration = parse_duration(duration_minutes)

    starts_at, ends_at = compute_interval(date, time, duration)
    conflicts = find_conflicts(starts_at, ends_at)
    if conflicts:
        raise SlotConflict(f"slot overlaps appointment {conflicts[0].appointment_id}")

    card, _ = find_or_create_card(client_name, normalized)
    now = utc_now()
    appointment = Appointment(
        card_id=card.card_id,
        client_name=client_name,
        client_phone=normalized,
        service_id=service.service_id if service else None,
        service_name=resolved_name,
        date=date,
        time=time,
        duration_minutes=duration,
        starts_at=starts_at,
        ends_at=ends_at,
        status="scheduled",
        notes=(notes or "").strip() or None,
        send_whatsapp_24h=bool(send_whatsapp_24h),
        send_whatsapp_2h=bool(send_whatsapp_2h),
        created_at=now,
        updated_at=now,
    )
    db.session.add(appointment)
    db.session.flush()

    if source == "public":
        _notify(
            "cita",
            "calendar-plus",
            "Nueva cita",
            f"{client_name} agendó {resolved_name} el {date} a las {time}",
            appointment.appointment_id,
        )
    db.session.commit()
    logger.info("Created appointment %s on %s %s", appointment.appointment_id, date, time)

    integrations.calendar.mirror_create(appointment)
    db.session.commit()

    if send_confirmation:
        send_appointment_message(
            integrations.whatsapp,
            appointment,
            "booking_confirmation",
            current_app.config.get("BUSINESS_LOCATION"),
        )
    return appointment


def update_appointment(
    integrations,
    appointment_id: str,
    date: str | None = None,
    time: str | None = None,
    duration_minutes: object = None,
    service_id: str | None = None,
    notes: str | None = None,
) -> Appointment:
    """Move or edit an appointment; omitted fields keep their value."""
    appointment = get_appointment(appointment_id)
    if appointment.status in TERMINAL_STATUSES:
        raise InvalidTransition(f"cannot edit a {appointment.status} appointment")

    if service_id and service_id != appointment.service_id:
        service, name = _resolve_service(service_id, None)
        appointment.service_id = service.service_id
        appointment.service_name = name
        if duration_minutes in (None, ""):
            duration_minutes = service.duration_minutes

    new_date = parse_date(date) if date else appointment.date
    new_time = parse_time(time) if time else appointment.time
    duration = parse_duration(duration_minutes) if duration_minutes not in (None, "") else appointment.duration_minutes

    starts_at, ends_at = compute_interval(new_date, new_time, duration)
    conflicts = find_conflicts(starts_at, ends_at, exclude_id=appointment.appointment_id)
    if conflicts:
        db.session.rollback()
        raise SlotConflict(f"slot overlaps appointment {conflicts[0].appointment_id}")

    moved = starts_at != appointment.starts_at
    appointment.date = new_date
    appointment.time = new_time
    appointment.duration_minutes = duration
    appointment.starts_at = starts_at
    appointment.ends_at = ends_at
    if notes is not None:
        appointment.notes = notes.strip() or None
    if moved:
        # Reminders restart for the new start time
        appointment.sent_24h_at = None
        appointment.sent_2h_at = None
        if appointment.status == "rescheduling":
            appointment.status = "scheduled"
    appointment.updated_at = utc_now()
    db.session.commit()
    logger.info("Updated appointment %s (moved=%s)", appointment.appointment_id, moved)

    integrations.calendar.mirror_update(appointment)
    db.session.commit()
    return appointment


def cancel_appointment(integrations, appointment_id: str, via: str = "admin", notify_client: bool = False) -> Appointment:
    appointment = get_appointment(appointment_id)
    if appointment.status == "cancelled":
        return appointment
    if appointment.status in TERMINAL_STATUSES:
        raise InvalidTransition(f"cannot cancel a {appointment.status} appointment")

    now = utc_now()
    appointment.status = "cancelled"
    appointment.cancelled_at = now
    appointment.cancelled_via = via
    appointment.updated_at = now
    _notify(
        "cita",
        "calendar-times",
        "Cita cancelada",
        f"{appointment.client_name} canceló {appointment.service_name}",
        appointment.appointment_id,
    )
    db.session.commit()
    logger.info("Cancelled appointment %s via %s", appointment.appointment_id, via)

    integrations.calendar.mirror_delete(appointment)
    db.session.commit()

    if notify_client:
        send_appointment_message(integrations.whatsapp, appointment, "cancellation_confirmed")
    return appointment


def update_status(integrations, appointment_id: str, status: str | None) -> Appointment:
    """Admin status change. ``cancelled`` goes through :func:`cancel_appointment`."""
    if status not in APPOINTMENT_STATUSES:
        raise InvalidStatus(f"status must be one of: {', '.join(APPOINTMENT_STATUSES)}")
    appointment = get_appointment(appointment_id)
    if appointment.status == status:
        return appointment
    if appointment.status in TERMINAL_STATUSES:
        raise InvalidTransition(f"appointment is already {appointment.status}")
    if status == "cancelled":
        return cancel_appointment(integrations, appointment_id, via="admin")

    now = utc_now()
    appointment.status = status
    appointment.updated_at = now
    if status == "confirmed":
        appointment.confirmed_at = now
        appointment.confirmed_via = "admin"
    elif status == "rescheduling":
        appointment.reschedule_requested_at = now
    elif status == "completed":
        appointment.completed_at = now
    db.session.commit()
    logger.info("Appointment %s -> %s", appointment.appointment_id, status)

    integrations.calendar.mirror_update(appointment)
    db.session.commit()
    return appointment


def _parse_amount(value: object) -> int:
    try:
        amount = round(float(value) * 100)
    except (TypeError, ValueError) as exc:
        raise ValidationError("amount must be a number") from exc
    if amount < 0:
        raise ValidationError("amount cannot be negative")
    return amount


def register_payment(
    integrations,
    appointment_id: str,
    amount: object,
    method: str | None = None,
    add_stamp: bool = False,
) -> tuple[Appointment, dict[str, object] | None]:
    """Complete a scheduled or confirmed appointment and record its payment.

    With ``add_stamp`` the client's card is stamped too; a refused stamp is
    reported in the returned dict and does not undo the payment.
    """
    appointment = get_appointment(appointment_id)
    if appointment.status not in BLOCKING_STATUSES:
        raise InvalidTransition(f"cannot register payment for a {appointment.status} appointment")
    amount_cents = _parse_amount(amount)

    now = utc_now()
    appointment.status = "completed"
    appointment.completed_at = now
    appointment.payment_amount_cents = amount_cents
    appointment.payment_method = (method or "").strip() or None
    appointment.updated_at = now
    db.session.commit()
    logger.info("Payment registered for appointment %s", appointment.appointment_id)

    integrations.calendar.mirror_update(appointment)
    db.session.commit()

    stamp = None
    if add_stamp:
        if not appointment.card_id:
            stamp = {"stamped": False, "error": "no_card"}
        else:
            try:
                card = stamp_card(appointment.card_id, wallet=integrations.wallet, by="payment")
                stamp = {"stamped": True, "card": card.to_dict()}
            except SalonPassError as exc:
                stamp = {"stamped": False, "error": exc.code}
    return appointment, stamp


def available_slots(date: str | None, duration_minutes: object) -> list[str]:
    """Start times (business local ``HH:MM``) free for ``duration_minutes`` on ``date``."""
    date = parse_date(date)
    duration = parse_duration(duration_minutes)
    config = current_app.config
    day_start, _ = compute_interval(date, parse_time(config["OPENING_TIME"]), duration)
    day_end, _ = compute_interval(date, parse_time(config["CLOSING_TIME"]), duration)
    step = timedelta(minutes=config["SLOT_STEP_MINUTES"])
    length = timedelta(minutes=duration)

    booked = find_conflicts(day_start, day_end)
    now = utc_now()
    slots = []
    opening = datetime.strptime(config["OPENING_TIME"], "%H:%M")
    cursor = day_start
    while cursor + length <= day_end:
        overlaps = any(a.starts_at < cursor + length and a.ends_at > cursor for a in booked)
        if not overlaps and cursor > now:
            slots.append((opening + (cursor - day_start)).strftime("%H:%M"))
        cursor += step
    return slots
