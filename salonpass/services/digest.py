"""Hourly admin digest: upcoming birthdays, recently completed cards and expiring gift cards."""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

from flask import current_app

from ..extensions import db
from ..models import Card, Event, Notification
from ..utils import business_tz, utc_now
from .gift_cards import expire_gift_cards, expiring_gift_cards

logger = logging.getLogger(__name__)

BIRTHDAY_HORIZON_DAYS = 7


def _local_midnight_utc(now: datetime) -> datetime:
    local_today = now.replace(tzinfo=timezone.utc).astimezone(business_tz()).date()
    midnight = datetime.combine(local_today, time.min, tzinfo=business_tz())
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def _already_posted(notification_type: str, now: datetime) -> bool:
    return (
        Notification.query.filter(
            Notification.notification_type == notification_type,
            Notification.created_at >= _local_midnight_utc(now),
        ).first()
        is not None
    )


def days_until_birthday(birthday: str, today: date) -> int | None:
    month, day = (int(part) for part in birthday.split("-"))
    for year in (today.year, today.year + 1):
        try:
            upcoming = date(year, month, day)
        except ValueError:
            # 02-29 outside a leap year
            continue
        if upcoming >= today:
            return (upcoming - today).days
    return None


def upcoming_birthdays(now: datetime) -> list[tuple[Card, int]]:
    today = now.replace(tzinfo=timezone.utc).astimezone(business_tz()).date()
    found = []
    for card in Card.query.filter(Card.status == "active", Card.birthday.isnot(None)).all():
        days = days_until_birthday(card.birthday, today)
        if days is not None and days <= BIRTHDAY_HORIZON_DAYS:
            found.append((card, days))
    return sorted(found, key=lambda item: item[1])


def run_digest() -> list[Notification]:
    now = utc_now()
    created = []

    birthdays = upcoming_birthdays(now)
    if birthdays and not _already_posted("cumpleanos", now):
        created.append(
            Notification(
                notification_type="cumpleanos",
                icon="birthday-cake",
                title=f"{len(birthdays)} cumpleaños próximos",
                message=", ".join(f"{card.name} (en {days} días)" for card, days in birthdays),
                created_at=now,
            )
        )

    redeems = (
        Event.query.filter(Event.event_type == "REDEEM", Event.created_at >= now - timedelta(hours=24))
        .order_by(Event.event_id.asc())
        .all()
    )
    if redeems and not _already_posted("premio", now):
        names = ", ".join(event.card.name for event in redeems)
        plural = len(redeems) > 1
        created.append(
            Notification(
                notification_type="premio",
                icon="gift",
                title=f"{len(redeems)} tarjeta{'s' if plural else ''} completada{'s' if plural else ''}",
                message=f"{names} {'completaron' if plural else 'completó'} su tarjeta",
                created_at=now,
            )
        )

    expire_gift_cards(now)
    expiring = expiring_gift_cards(now, current_app.config["GIFT_CARD_ALERT_DAYS"])
    if expiring and not _already_posted("giftcard", now):
        created.append(
            Notification(
                notification_type="giftcard",
                icon="clock",
                title=f"{len(expiring)} gift card{'s' if len(expiring) > 1 else ''} por vencer",
                message=", ".join(
                    f"{gift_card.code} - {gift_card.service_name or 'Saldo libre'} ({days} días)"
                    for gift_card, days in expiring
                ),
                created_at=now,
            )
        )

    if created:
        db.session.add_all(created)
        db.session.commit()
        logger.info("Digest posted %d notification(s)", len(created))
    return created
