"""Google service-account authentication shared by Calendar and Wallet."""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path

import httpx
from jose import jwt

from ..errors import UpstreamFailure

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
WALLET_SCOPE = "https://www.googleapis.com/auth/wallet_object.issuer"


class ServiceAccount:
    """Signs JWTs with a service-account key and exchanges them for access tokens."""

    def __init__(self, info: dict, http: httpx.Client) -> None:
        self.client_email = info["client_email"]
        self._private_key = info["private_key"]
        self._key_id = info.get("private_key_id")
        self._token_uri = info.get("token_uri", TOKEN_URL)
        self._http = http
        self._tokens: dict[tuple[str, ...], tuple[str, float]] = {}

    @classmethod
    def from_file(cls, path: str, http: httpx.Client) -> "ServiceAccount":
        info = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(info, http)

    def sign(self, claims: dict) -> str:
        headers = {"kid": self._key_id} if self._key_id else None
        return jwt.encode(claims, self._private_key, algorithm="RS256", headers=headers)

    def access_token(self, *scopes: str) -> str:
        key = tuple(sorted(scopes))
        cached = self._tokens.get(key)
        if cached and cached[1] > time.time() + 60:
            return cached[0]

        now = int(time.time())
        assertion = self.sign(
            {
                "iss": self.client_email,
                "scope": " ".join(key),
                "aud": self._token_uri,
                "iat": now,
                "exp": now + 3600,
            }
        )
        try:
            response = self._http.post(
                self._token_uri,
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": assertion,
                },
            )
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Google token request failed: {exc}") from exc

        if response.status_code != 200:
            raise UpstreamFailure(
                f"Google token request rejected: {response.text}",
                status=response.status_code,
            )

        payload = response.json()
        token = payload["access_token"]
        self._tokens[key] = (token, now + int(payload.get("expires_in", 3600)))
        logger.debug("Obtained Google access token for %s", ", ".join(key))
        return token
