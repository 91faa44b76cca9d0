"""Mass push to every active card on both wallet platforms."""
from __future__ import annotations

import logging
import time

from ..errors import UpstreamFailure, ValidationError
from ..extensions import db
from ..models import Card, Notification
from ..utils import utc_now

logger = logging.getLogger(__name__)


def broadcast(wallet, title: str | None, message: str | None, kind: str | None = None, delay: float = 0.0) -> dict[str, int]:
    """Deliver ``message`` to every active card and record the totals.

    A card without a Google object or without Apple devices is skipped, not
    counted as an error. Failed cards are not retried.
    """
    title = (title or "").strip()
    message = (message or "").strip()
    if not title or not message:
        raise ValidationError("title and message are required")

    cards = Card.query.filter_by(status="active").order_by(Card.created_at.asc()).all()
    totals = {"passCount": len(cards), "googleSent": 0, "appleSent": 0, "errors": 0}

    for index, card in enumerate(cards):
        try:
            if wallet.google_message(card, title, message):
                totals["googleSent"] += 1
        except UpstreamFailure as exc:
            totals["errors"] += 1
            logger.warning("Google Wallet message for card %s failed: %s", card.card_id, exc.message)

        if any(d.platform == "apple" for d in card.devices):
            # The pass picks the text up on its next fetch; the push triggers it
            card.wallet_message = f"{title}: {message}"
            card.updated_at = utc_now()
            db.session.commit()
            sent, errors = wallet.push_apple(card)
            totals["appleSent"] += sent
            totals["errors"] += errors

        if delay and index < len(cards) - 1:
            time.sleep(delay)

    db.session.add(
        Notification(
            notification_type="broadcast",
            icon=kind or "bell",
            title=title,
            message=message,
            cards_sent=len(cards),
            google_sent=totals["googleSent"],
            apple_sent=totals["appleSent"],
            errors=totals["errors"],
            created_at=utc_now(),
        )
    )
    db.session.commit()
    logger.info("Broadcast %r finished: %s", title, totals)
    return totals
