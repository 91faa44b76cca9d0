"""Staged WhatsApp reminders (24h and 2h before the appointment)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import TERMINAL_STATUSES, Appointment
from ..utils import utc_now
from .whatsapp import send_appointment_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderStage:
    name: str
    window_start: timedelta
    window_end: timedelta
    flag_field: str
    sent_field: str
    template: str

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        return now + self.window_start, now + self.window_end


REMINDER_STAGES = (
    ReminderStage(
        "24h",
        timedelta(hours=23, minutes=30),
        timedelta(hours=24, minutes=30),
        "send_whatsapp_24h",
        "sent_24h_at",
        "reminder_24h",
    ),
    ReminderStage(
        "2h",
        timedelta(hours=1, minutes=30),
        timedelta(hours=2, minutes=30),
        "send_whatsapp_2h",
        "sent_2h_at",
        "reminder_2h",
    ),
)


def due_appointments(stage: ReminderStage, now: datetime) -> list[Appointment]:
    start, end = stage.window(now)
    return (
        Appointment.query.filter(
            Appointment.status.notin_(TERMINAL_STATUSES),
            getattr(Appointment, stage.flag_field).is_(True),
            getattr(Appointment, stage.sent_field).is_(None),
            Appointment.starts_at >= start,
            Appointment.starts_at <= end,
        )
        .order_by(Appointment.starts_at.asc())
        .all()
    )


def run_reminder_sweep(whatsapp) -> dict[str, int]:
    """Send every reminder that is due, one at a time.

    An appointment is marked sent only after the transport reports success,
    so a failed send is retried by the next sweep while still in the window.
    """
    now = utc_now()
    location = current_app.config.get("BUSINESS_LOCATION")
    summary = {"failed": 0}
    for stage in REMINDER_STAGES:
        summary[stage.name] = 0
        for appointment in due_appointments(stage, now):
            result = send_appointment_message(whatsapp, appointment, stage.template, location)
            if not result.ok:
                summary["failed"] += 1
                continue
            setattr(appointment, stage.sent_field, utc_now())
            db.session.commit()
            summary[stage.name] += 1
            logger.info("Sent %s reminder for appointment %s", stage.name, appointment.appointment_id)

    if summary["24h"] or summary["2h"] or summary["failed"]:
        logger.info("Reminder sweep finished: %s", summary)
    return summary
