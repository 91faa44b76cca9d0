"""Google Wallet loyalty objects."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

import httpx

from ..errors import UpstreamFailure
from ..models import Card
from .google_auth import WALLET_SCOPE, ServiceAccount

logger = logging.getLogger(__name__)

WALLET_API = "https://walletobjects.googleapis.com/walletobjects/v1"
SAVE_URL = "https://pay.google.com/gp/v/save/"

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9._+-]")


class GoogleWalletClient:
    def __init__(
        self,
        account: ServiceAccount,
        http: httpx.Client,
        issuer_id: str,
        class_suffix: str,
    ) -> None:
        self._account = account
        self._http = http
        self._issuer_id = issuer_id
        self._class_id = f"{issuer_id}.{class_suffix}"

    def object_id(self, card_id: str) -> str:
        return f"{self._issuer_id}.{_UNSAFE_ID_CHARS.sub('_', card_id)}"

    def loyalty_object(self, card: Card) -> dict:
        return {
            "id": self.object_id(card.card_id),
            "classId": self._class_id,
            "state": "ACTIVE" if card.status == "active" else "INACTIVE",
            "accountId": card.card_id,
            "accountName": card.name,
            "loyaltyPoints": {
                "label": "Sellos",
                "balance": {"string": f"{card.stamps}/{card.max_stamps}"},
            },
            "barcode": {"type": "QR_CODE", "value": card.card_id},
            "textModulesData": [
                {"id": "stamps", "header": "Sellos", "body": f"{card.stamps}/{card.max_stamps}"},
                {"id": "cycles", "header": "Premios canjeados", "body": str(card.cycles)},
            ],
        }

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = self._account.access_token(WALLET_SCOPE)
        try:
            response = self._http.request(
                method,
                f"{WALLET_API}{path}",
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Google Wallet request failed: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamFailure(
                f"Google Wallet error {response.status_code}: {response.text}",
                status=response.status_code,
            )
        return response

    def upsert_object(self, card: Card, create_missing: bool = True) -> bool:
        """Push the card state to its loyalty object.

        Returns False when the object does not exist and ``create_missing`` is off.
        """
        body = self.loyalty_object(card)
        try:
            self._request("PUT", f"/loyaltyObject/{body['id']}", json=body)
        except UpstreamFailure as exc:
            if not exc.is_gone:
                raise
            if not create_missing:
                return False
            self._request("POST", "/loyaltyObject", json=body)
            logger.info("Created Google Wallet object %s", body["id"])
        return True

    def add_message(self, card: Card, title: str, message: str) -> None:
        """Attach a message to the card's object; raises UpstreamFailure(404) if it was never saved."""
        now = datetime.now(timezone.utc)
        payload = {
            "message": {
                "header": title,
                "body": message,
                "displayInterval": {
                    "start": {"date": now.isoformat()},
                    "end": {"date": (now + timedelta(days=7)).isoformat()},
                },
            }
        }
        self._request("POST", f"/loyaltyObject/{self.object_id(card.card_id)}/addMessage", json=payload)

    def save_url(self, card: Card) -> str:
        claims = {
            "iss": self._account.client_email,
            "aud": "google",
            "typ": "savetowallet",
            "origins": [],
            "payload": {"loyaltyObjects": [self.loyalty_object(card)]},
        }
        return SAVE_URL + self._account.sign(claims)
