"""Gift cards: issue, look up, spend and expire prepaid balances."""
from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_

from ..errors import GiftCardUnavailable, NotFound, ValidationError
from ..extensions import db
from ..models import REDEEMABLE_GIFT_CARD_STATUSES, GiftCard, Service
from ..utils import local_to_utc, normalize_phone, parse_date, utc_now

logger = logging.getLogger(__name__)


def _parse_amount(value: object, field: str = "amount") -> int:
    try:
        cents = round(float(value) * 100)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number") from exc
    if cents <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return cents


def _optional_phone(value: str | None) -> str | None:
    return normalize_phone(value) if (value or "").strip() else None


def _new_code() -> str:
    while True:
        code = f"GC-{uuid.uuid4().hex[:8].upper()}"
        if GiftCard.query.filter_by(code=code).first() is None:
            return code


def issue_gift_card(
    amount: object = None,
    service_id: str | None = None,
    recipient_name: str | None = None,
    recipient_phone: str | None = None,
    purchaser_name: str | None = None,
    purchaser_phone: str | None = None,
    message: str | None = None,
    expires_on: str | None = None,
) -> GiftCard:
    """Issue a gift card worth ``amount`` or, when omitted, the service price."""
    service = None
    if service_id:
        service = db.session.get(Service, service_id)
        if service is None:
            raise NotFound("service not found")

    if amount is None or amount == "":
        if service is None or service.price_cents <= 0:
            raise ValidationError("amount or a priced serviceId is required")
        amount_cents = service.price_cents
    else:
        amount_cents = _parse_amount(amount)

    now = utc_now()
    if expires_on:
        expires_at = local_to_utc(parse_date(expires_on), "23:59")
        if expires_at <= now:
            raise ValidationError("expiresAt must be in the future")
    else:
        expires_at = now + timedelta(days=current_app.config["GIFT_CARD_VALID_DAYS"])

    gift_card = GiftCard(
        code=_new_code(),
        service_id=service.service_id if service else None,
        service_name=service.name if service else None,
        amount_cents=amount_cents,
        remaining_cents=amount_cents,
        status="pending",
        recipient_name=(recipient_name or "").strip() or None,
        recipient_phone=_optional_phone(recipient_phone),
        purchaser_name=(purchaser_name or "").strip() or None,
        purchaser_phone=_optional_phone(purchaser_phone),
        message=(message or "").strip() or None,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )
    db.session.add(gift_card)
    db.session.commit()
    logger.info("Issued gift card %s for %.2f", gift_card.code, amount_cents / 100)
    return gift_card


def get_gift_card(code: str, lock: bool = False) -> GiftCard:
    """Find a gift card by its printed code (case-insensitive) or its id."""
    query = GiftCard.query.filter(
        or_(GiftCard.code == code.strip().upper(), GiftCard.gift_card_id == code)
    )
    if lock:
        query = query.with_for_update()
    gift_card = query.first()
    if gift_card is None:
        raise NotFound("gift card not found")
    return gift_card


def redeem_gift_card(code: str, amount: object = None) -> GiftCard:
    """Spend ``amount`` from the balance, or all of it when omitted."""
    gift_card = get_gift_card(code, lock=True)
    now = utc_now()

    if gift_card.status in REDEEMABLE_GIFT_CARD_STATUSES and gift_card.expires_at and gift_card.expires_at < now:
        gift_card.status = "expired"
        gift_card.updated_at = now
        db.session.commit()
    if gift_card.status not in REDEEMABLE_GIFT_CARD_STATUSES:
        db.session.rollback()
        raise GiftCardUnavailable(f"gift card is {gift_card.status}")

    spend = gift_card.remaining_cents if amount is None or amount == "" else _parse_amount(amount)
    if spend > gift_card.remaining_cents:
        db.session.rollback()
        raise ValidationError("amount exceeds the remaining balance")

    gift_card.remaining_cents -= spend
    if gift_card.remaining_cents == 0:
        gift_card.status = "used"
        gift_card.used_at = now
    else:
        gift_card.status = "active"
    gift_card.updated_at = now
    db.session.commit()
    logger.info(
        "Gift card %s spent %.2f, %.2f left",
        gift_card.code,
        spend / 100,
        gift_card.remaining_cents / 100,
    )
    return gift_card


def expire_gift_cards(now: datetime) -> int:
    expired = GiftCard.query.filter(
        GiftCard.status.in_(REDEEMABLE_GIFT_CARD_STATUSES),
        GiftCard.expires_at < now,
    ).all()
    for gift_card in expired:
        gift_card.status = "expired"
        gift_card.updated_at = now
    if expired:
        db.session.commit()
        logger.info("Expired %d gift card(s)", len(expired))
    return len(expired)


def expiring_gift_cards(now: datetime, days: int) -> list[tuple[GiftCard, int]]:
    """Redeemable gift cards expiring within ``days``, with whole days left (rounded up)."""
    cards = (
        GiftCard.query.filter(
            GiftCard.status.in_(REDEEMABLE_GIFT_CARD_STATUSES),
            GiftCard.expires_at >= now,
            GiftCard.expires_at <= now + timedelta(days=days),
        )
        .order_by(GiftCard.expires_at.asc())
        .all()
    )
    return [(card, math.ceil((card.expires_at - now) / timedelta(days=1))) for card in cards]


def search_gift_cards(query: str | None = None, status: str | None = None):
    gift_cards = GiftCard.query
    if status:
        gift_cards = gift_cards.filter(GiftCard.status == status)
    if query:
        like = f"%{query.strip()}%"
        gift_cards = gift_cards.filter(
            or_(
                GiftCard.code.ilike(like),
                GiftCard.recipient_name.ilike(like),
                GiftCard.purchaser_name.ilike(like),
            )
        )
    return gift_cards.order_by(GiftCard.created_at.desc())
