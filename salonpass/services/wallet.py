"""Keeps wallet passes in step with the card ledger."""
from __future__ import annotations

import logging

from ..errors import UpstreamFailure
from ..models import Card
from .apple_wallet import ApnsClient
from .google_wallet import GoogleWalletClient

logger = logging.getLogger(__name__)


class WalletNotifier:
    """Google object updates and Apple pushes; either side may be unconfigured."""

    def __init__(self, google: GoogleWalletClient | None = None, apns: ApnsClient | None = None) -> None:
        self.google = google
        self.apns = apns

    def push_apple(self, card: Card) -> tuple[int, int]:
        """Push to every Apple device registered for the card. Returns (sent, errors)."""
        devices = [d for d in card.devices if d.platform == "apple" and d.push_token]
        if not devices or self.apns is None:
            return 0, 0
        sent = errors = 0
        for device in devices:
            try:
                self.apns.push(device.push_token)
                sent += 1
            except UpstreamFailure as exc:
                errors += 1
                logger.warning("APNs push for card %s failed: %s", card.card_id, exc.message)
        return sent, errors

    def google_message(self, card: Card, title: str, message: str) -> bool | None:
        """Append a message to the card's Google object.

        Returns None when Google Wallet is off or the client never saved the
        pass, True on delivery. Raises UpstreamFailure on any other error.
        """
        if self.google is None:
            return None
        if not self.google.upsert_object(card, create_missing=False):
            return None
        try:
            self.google.add_message(card, title, message)
        except UpstreamFailure as exc:
            if exc.is_gone:
                return None
            raise
        return True

    def card_changed(self, card: Card) -> None:
        """Refresh both wallets after a stamp or redeem. Never raises."""
        if self.google is not None:
            try:
                self.google.upsert_object(card)
            except UpstreamFailure as exc:
                logger.warning("Google Wallet update for card %s failed: %s", card.card_id, exc.message)
        self.push_apple(card)
