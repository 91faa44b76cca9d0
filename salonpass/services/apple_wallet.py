"""Apple Wallet: pkpass bundles and APNs update pushes."""
from __future__ import annotations

import hashlib
import io
import json
import logging
import time
import zipfile
from pathlib import Path

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7
from jose import jwt

from ..errors import UpstreamFailure
from ..models import Card

logger = logging.getLogger(__name__)

APNS_URL = "https://api.push.apple.com/3/device/"
PASS_ASSETS = ("icon.png", "icon@2x.png", "logo.png", "logo@2x.png", "strip.png", "strip@2x.png")


class ApnsClient:
    """Sends the empty background push that tells Wallet to fetch a fresh pass."""

    def __init__(self, team_id: str, key_id: str, key_path: str, topic: str, http: httpx.Client) -> None:
        self._team_id = team_id
        self._key_id = key_id
        self._key = Path(key_path).read_text(encoding="utf-8")
        self._topic = topic
        self._http = http
        self._token: tuple[str, float] | None = None

    def _provider_token(self) -> str:
        # APNs rejects tokens older than an hour; refresh well before that
        if self._token and self._token[1] > time.time():
            return self._token[0]
        token = jwt.encode(
            {"iss": self._team_id, "iat": int(time.time())},
            self._key,
            algorithm="ES256",
            headers={"kid": self._key_id},
        )
        self._token = (token, time.time() + 45 * 60)
        return token

    def push(self, push_token: str) -> None:
        try:
            response = self._http.post(
                APNS_URL + push_token,
                headers={
                    "authorization": f"bearer {self._provider_token()}",
                    "apns-topic": self._topic,
                    "apns-push-type": "background",
                    "apns-priority": "5",
                },
                json={},
            )
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"APNs request failed: {exc}") from exc
        if response.status_code != 200:
            raise UpstreamFailure(f"APNs error {response.status_code}: {response.text}", status=response.status_code)
        logger.info("APNs push sent to %s...", push_token[:10])


class PassBuilder:
    """Builds signed ``.pkpass`` bundles for loyalty cards."""

    def __init__(
        self,
        pass_type_id: str | None,
        team_id: str | None,
        organization: str,
        web_service_url: str,
        auth_token: str | None,
        cert_path: str | None = None,
        key_path: str | None = None,
        key_password: str | None = None,
        wwdr_path: str | None = None,
        assets_dir: str | None = None,
    ) -> None:
        self.pass_type_id = pass_type_id
        self._team_id = team_id
        self._organization = organization
        self._web_service_url = web_service_url
        self._auth_token = auth_token
        self._cert_path = cert_path
        self._key_path = key_path
        self._key_password = key_password
        self._wwdr_path = wwdr_path
        self._assets_dir = Path(assets_dir) if assets_dir else None

    @property
    def can_sign(self) -> bool:
        return bool(self.pass_type_id and self._team_id and self._cert_path and self._key_path and self._wwdr_path)

    def pass_json(self, card: Card) -> dict:
        back_fields = [{"key": "phone", "label": "Teléfono", "value": card.phone}]
        if card.wallet_message:
            back_fields.insert(
                0,
                {
                    "key": "news",
                    "label": "Novedades",
                    "value": card.wallet_message,
                    "changeMessage": "%@",
                },
            )
        return {
            "formatVersion": 1,
            "passTypeIdentifier": self.pass_type_id,
            "teamIdentifier": self._team_id,
            "serialNumber": card.card_id,
            "organizationName": self._organization,
            "description": f"Tarjeta de lealtad {self._organization}",
            "logoText": self._organization,
            "webServiceURL": self._web_service_url,
            "authenticationToken": self._auth_token,
            "barcodes": [
                {"format": "PKBarcodeFormatQR", "message": card.card_id, "messageEncoding": "iso-8859-1"}
            ],
            "storeCard": {
                "primaryFields": [
                    {
                        "key": "stamps",
                        "label": "Sellos",
                        "value": f"{card.stamps}/{card.max_stamps}",
                        "changeMessage": "Ahora tienes %@ sellos",
                    }
                ],
                "secondaryFields": [{"key": "name", "label": "Cliente", "value": card.name}],
                "auxiliaryFields": [{"key": "cycles", "label": "Premios", "value": card.cycles}],
                "backFields": back_fields,
            },
        }

    def _assets(self) -> dict[str, bytes]:
        if not self._assets_dir:
            return {}
        return {
            name: (self._assets_dir / name).read_bytes()
            for name in PASS_ASSETS
            if (self._assets_dir / name).exists()
        }

    def _sign(self, manifest: bytes) -> bytes:
        cert = x509.load_pem_x509_certificate(Path(self._cert_path).read_bytes())
        key = serialization.load_pem_private_key(
            Path(self._key_path).read_bytes(),
            password=self._key_password.encode() if self._key_password else None,
        )
        wwdr_bytes = Path(self._wwdr_path).read_bytes()
        if b"-----BEGIN" in wwdr_bytes:
            wwdr = x509.load_pem_x509_certificate(wwdr_bytes)
        else:
            wwdr = x509.load_der_x509_certificate(wwdr_bytes)
        return (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(manifest)
            .add_signer(cert, key, hashes.SHA256())
            .add_certificate(wwdr)
            .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.DetachedSignature, pkcs7.PKCS7Options.Binary])
        )

    def bundle(self, card: Card, signer=None) -> bytes:
        """Return the zipped pass. ``signer`` defaults to the configured certificate."""
        files = {"pass.json": json.dumps(self.pass_json(card), ensure_ascii=False).encode("utf-8")}
        files.update(self._assets())
        manifest = json.dumps(
            {name: hashlib.sha1(data).hexdigest() for name, data in files.items()},
            sort_keys=True,
        ).encode("utf-8")

        if signer is None:
            if not self.can_sign:
                raise UpstreamFailure("Apple pass signing is not configured")
            signer = self._sign

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, data in files.items():
                archive.writestr(name, data)
            archive.writestr("manifest.json", manifest)
            archive.writestr("signature", signer(manifest))
        return buffer.getvalue()
