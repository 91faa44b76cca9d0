"""Card ledger: issuance, stamps, redemptions and purge."""
from __future__ import annotations

import logging
import re
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_

from ..errors import AlreadyComplete, Incomplete, NotFound, RateLimited, ValidationError
from ..extensions import db
from ..models import Appointment, Card, Event
from ..utils import normalize_phone, utc_now

logger = logging.getLogger(__name__)

_BIRTHDAY_RE = re.compile(r"^(?:\d{4}-)?(\d{2})-(\d{2})$")


def _parse_max(value: object) -> int:
    if value is None or value == "":
        return current_app.config["DEFAULT_MAX_STAMPS"]
    try:
        max_stamps = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("max must be an integer") from exc
    if max_stamps <= 0:
        raise ValidationError("max must be greater than zero")
    return max_stamps


def _parse_birthday(value: str | None) -> str | None:
    """Accept ``MM-DD`` or ``YYYY-MM-DD`` and keep only month and day."""
    if not value:
        return None
    match = _BIRTHDAY_RE.match(value.strip())
    if not match:
        raise ValidationError("birthday must use MM-DD or YYYY-MM-DD")
    month, day = int(match.group(1)), int(match.group(2))
    if not (1 <= month <= 12 and 1 <= day <= 31):
        raise ValidationError("birthday is not a valid date")
    return f"{month:02d}-{day:02d}"


def get_card(card_id: str, lock: bool = False) -> Card:
    query = Card.query.filter_by(card_id=card_id)
    if lock:
        # Row lock on databases that support it; SQLite ignores FOR UPDATE
        query = query.with_for_update()
    card = query.first()
    if card is None:
        raise NotFound("card not found")
    return card


def find_card_by_phone(phone: str) -> Card | None:
    """Exact normalized match first, then the last ten digits of long numbers."""
    normalized = normalize_phone(phone)
    card = Card.query.filter_by(phone=normalized).order_by(Card.created_at.asc()).first()
    if card is None and len(normalized) >= 10:
        card = (
            Card.query.filter(Card.phone.like(f"%{normalized[-10:]}"))
            .order_by(Card.created_at.asc())
            .first()
        )
    return card


def issue_card(
    name: str | None,
    phone: str | None,
    max_stamps: object = None,
    birthday: str | None = None,
    email: str | None = None,
    by: str = "admin",
) -> Card:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    normalized = normalize_phone(phone)
    max_stamps = _parse_max(max_stamps)

    now = utc_now()
    card = Card(
        name=name,
        phone=normalized,
        email=(email or "").strip().lower() or None,
        birthday=_parse_birthday(birthday),
        stamps=0,
        max_stamps=max_stamps,
        cycles=0,
        status="active",
        created_at=now,
        updated_at=now,
    )
    db.session.add(card)
    db.session.flush()
    db.session.add(
        Event(
            card_id=card.card_id,
            event_type="ISSUE",
            meta={"by": by, "name": name, "max": max_stamps},
            created_at=now,
        )
    )
    db.session.commit()
    logger.info("Issued card %s for %s", card.card_id, normalized)
    return card


def find_or_create_card(name: str | None, phone: str | None, birthday: str | None = None) -> tuple[Card, bool]:
    """Return ``(card, created)`` for the client identified by ``phone``."""
    card = find_card_by_phone(phone)
    if card is not None:
        return card, False
    return issue_card(name, phone, birthday=birthday, by="booking"), True


def last_stamp(card_id: str) -> Event | None:
    return (
        Event.query.filter_by(card_id=card_id, event_type="STAMP")
        .order_by(Event.event_id.desc())
        .first()
    )


def stamp_card(card_id: str, wallet=None, by: str = "admin") -> Card:
    """Add one stamp.

    Rejects a full card and a second stamp within ``STAMP_COOLDOWN_HOURS`` of
    the previous one. The wallet refresh runs after the commit and never fails
    the stamp.
    """
    card = get_card(card_id, lock=True)
    if card.stamps >= card.max_stamps:
        db.session.rollback()
        raise AlreadyComplete("card already has all its stamps")

    now = utc_now()
    previous = last_stamp(card.card_id)
    cooldown = timedelta(hours=current_app.config["STAMP_COOLDOWN_HOURS"])
    if previous is not None and now - previous.created_at < cooldown:
        db.session.rollback()
        raise RateLimited("only one stamp per day")

    card.stamps += 1
    card.last_visit = now
    card.updated_at = now
    db.session.add(Event(card_id=card.card_id, event_type="STAMP", meta={"by": by}, created_at=now))
    db.session.commit()
    logger.info("Stamped card %s (%s/%s)", card.card_id, card.stamps, card.max_stamps)

    if wallet is not None:
        wallet.card_changed(card)
    return card


def redeem_card(card_id: str, wallet=None, by: str = "admin") -> Card:
    card = get_card(card_id, lock=True)
    if card.stamps < card.max_stamps:
        db.session.rollback()
        raise Incomplete(f"card has {card.stamps} of {card.max_stamps} stamps")

    now = utc_now()
    card.stamps = 0
    card.cycles += 1
    card.updated_at = now
    db.session.add(
        Event(card_id=card.card_id, event_type="REDEEM", meta={"by": by, "cycle": card.cycles}, created_at=now)
    )
    db.session.commit()
    logger.info("Redeemed card %s (cycle %s)", card.card_id, card.cycles)

    if wallet is not None:
        wallet.card_changed(card)
    return card


def delete_card(card_id: str) -> bool:
    """Purge a card with its events and devices. Returns False if it was already gone."""
    card = db.session.get(Card, card_id)
    if card is None:
        return False
    # Appointments outlive the card
    Appointment.query.filter_by(card_id=card_id).update({"card_id": None}, synchronize_session=False)
    db.session.delete(card)
    db.session.commit()
    logger.info("Deleted card %s", card_id)
    return True


def search_cards(query: str | None = None, status: str | None = None):
    cards = Card.query
    if status:
        cards = cards.filter(Card.status == status)
    if query:
        like = f"%{query.strip()}%"
        cards = cards.filter(or_(Card.card_id.ilike(like), Card.name.ilike(like), Card.phone.like(like)))
    return cards.order_by(Card.created_at.desc())
