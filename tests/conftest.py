"""pytest fixtures: app over in-memory SQLite, fake external clients and a frozen clock."""
from __future__ import annotations

import itertools
import sys
from contextlib import ExitStack
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from werkzeug.security import generate_password_hash

# Ensure the project root is available on sys.path so tests can import the app package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from salonpass import create_app  # noqa: E402
from salonpass.config import TestConfig  # noqa: E402
from salonpass.errors import UpstreamFailure  # noqa: E402
from salonpass.extensions import db  # noqa: E402
from salonpass.models import AdminUser, Appointment, Card  # noqa: E402
from salonpass.services import Integrations  # noqa: E402
from salonpass.services.apple_wallet import PassBuilder  # noqa: E402
from salonpass.services.calendar_sync import CalendarSync  # noqa: E402
from salonpass.services.google_auth import ServiceAccount  # noqa: E402
from salonpass.services.wallet import WalletNotifier  # noqa: E402
from salonpass.services.whatsapp import SendResult  # noqa: E402
from salonpass.utils import compute_interval  # noqa: E402

# 2025-03-09 10:00 in Mexico City
START_TIME = datetime(2025, 3, 9, 16, 0)

CLOCK_TARGETS = (
    "salonpass.routes.utc_now",
    "salonpass.routes_extended.utc_now",
    "salonpass.services.cards.utc_now",
    "salonpass.services.appointments.utc_now",
    "salonpass.services.reminders.utc_now",
    "salonpass.services.replies.utc_now",
    "salonpass.services.broadcast.utc_now",
    "salonpass.services.digest.utc_now",
    "salonpass.services.gift_cards.utc_now",
    "salonpass.services.client_records.utc_now",
)


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeCalendarClient:
    """Stands in for GoogleCalendarClient and records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.failing_calendars: set[str] = set()
        self.missing_events: set[str] = set()
        self._ids = itertools.count(1)

    def _check(self, calendar_id: str, event_id: str | None = None) -> None:
        if calendar_id in self.failing_calendars:
            raise UpstreamFailure("calendar unavailable", status=500)
        if event_id is not None and event_id in self.missing_events:
            raise UpstreamFailure("event not found", status=404)

    def insert_event(self, calendar_id: str, body: dict) -> str:
        self.calls.append(("insert", calendar_id, body))
        self._check(calendar_id)
        return f"evt-{calendar_id}-{next(self._ids)}"

    def patch_event(self, calendar_id: str, event_id: str, body: dict) -> None:
        self.calls.append(("patch", calendar_id, event_id, body))
        self._check(calendar_id, event_id)

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        self.calls.append(("delete", calendar_id, event_id))
        self._check(calendar_id, event_id)

    def calls_of(self, kind: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == kind]


class FakeWhatsApp:
    provider = "fake"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.texts: list[tuple[str, str]] = []
        self.failures = 0

    def send_template(self, phone: str, key: str, variables: dict) -> SendResult:
        if self.failures:
            self.failures -= 1
            return SendResult(ok=False, error="transport down")
        self.sent.append((phone, key, variables))
        return SendResult(ok=True, message_id=f"msg-{len(self.sent)}")

    def send_text(self, phone: str, body: str) -> SendResult:
        self.texts.append((phone, body))
        return SendResult(ok=True, message_id=f"txt-{len(self.texts)}")

    def keys(self) -> list[str]:
        return [key for _, key, _ in self.sent]


class FakeGoogleWallet:
    def __init__(self) -> None:
        self.objects: set[str] = set()
        self.messages: list[tuple[str, str, str]] = []
        self.failing_cards: set[str] = set()

    def upsert_object(self, card, create_missing: bool = True) -> bool:
        if card.card_id in self.failing_cards:
            raise UpstreamFailure("wallet unavailable", status=500)
        if card.card_id not in self.objects:
            if not create_missing:
                return False
            self.objects.add(card.card_id)
        return True

    def add_message(self, card, title: str, message: str) -> None:
        self.messages.append((card.card_id, title, message))

    def save_url(self, card) -> str:
        return f"https://pay.google.com/gp/v/save/{card.card_id}"


class FakeApns:
    def __init__(self) -> None:
        self.pushed: list[str] = []
        self.failing_tokens: set[str] = set()

    def push(self, push_token: str) -> None:
        if push_token in self.failing_tokens:
            raise UpstreamFailure("apns rejected", status=410)
        self.pushed.append(push_token)


@pytest.fixture
def clock():
    frozen = FrozenClock(START_TIME)
    with ExitStack() as stack:
        for target in CLOCK_TARGETS:
            stack.enter_context(patch(target, frozen))
        yield frozen


@pytest.fixture
def calendar_client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def whatsapp() -> FakeWhatsApp:
    return FakeWhatsApp()


@pytest.fixture
def google_wallet() -> FakeGoogleWallet:
    return FakeGoogleWallet()


@pytest.fixture
def apns() -> FakeApns:
    return FakeApns()


@pytest.fixture
def integrations(calendar_client, whatsapp, google_wallet, apns) -> Integrations:
    return Integrations(
        calendar=CalendarSync(
            calendar_client, ("owner1@example.com", "owner2@example.com"), TestConfig.TIMEZONE, "Salon"
        ),
        whatsapp=whatsapp,
        wallet=WalletNotifier(google_wallet, apns),
        passes=PassBuilder(
            pass_type_id=TestConfig.APPLE_PASS_TYPE_ID,
            team_id="TEAM123",
            organization="Salon",
            web_service_url="http://localhost/apple",
            auth_token=TestConfig.APPLE_AUTH_TOKEN,
        ),
    )


@pytest.fixture
def app(integrations, clock):
    app = create_app(TestConfig, integrations=integrations)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(app, client) -> dict[str, str]:
    db.session.add(
        AdminUser(name="Admin", email="admin@example.com", password_hash=generate_password_hash("secret123"))
    )
    db.session.commit()
    response = client.post("/auth/login", json={"email": "admin@example.com", "password": "secret123"})
    return {"Authorization": f"Bearer {response.get_json()['token']}"}


@pytest.fixture
def make_card(app):
    def factory(name: str = "Ana López", phone: str = "524421234567", **fields) -> Card:
        card = Card(name=name, phone=phone, **fields)
        db.session.add(card)
        db.session.commit()
        return card

    return factory


@pytest.fixture
def make_appointment(app):
    def factory(
        date: str = "2025-03-10",
        time: str = "10:00",
        duration: int = 60,
        client_name: str = "Ana López",
        phone: str = "524421234567",
        **fields,
    ) -> Appointment:
        starts_at, ends_at = compute_interval(date, time, duration)
        appointment = Appointment(
            client_name=client_name,
            client_phone=phone,
            service_name=fields.pop("service_name", "Facial Colágeno"),
            date=date,
            time=time,
            duration_minutes=duration,
            starts_at=starts_at,
            ends_at=ends_at,
            **fields,
        )
        db.session.add(appointment)
        db.session.commit()
        return appointment

    return factory


class GoogleApiStub:
    """MockTransport handler for Google APIs.

    The OAuth token exchange always succeeds; every other request is recorded
    and answered from ``responses`` (status, json) in order, 200 ``{}`` once
    the queue is empty.
    """

    def __init__(self, account_info: dict) -> None:
        self.requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []
        self.responses: list[tuple[int, dict]] = []
        self.http = httpx.Client(transport=httpx.MockTransport(self))
        self.account = ServiceAccount(account_info, self.http)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            self.token_requests.append(request)
            return httpx.Response(200, json={"access_token": "ya29.test-token", "expires_in": 3600})
        self.requests.append(request)
        status, body = self.responses.pop(0) if self.responses else (200, {})
        return httpx.Response(status, json=body)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def service_account_info(rsa_key) -> dict:
    pem = rsa_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return {
        "client_email": "salon@salon-project.iam.gserviceaccount.com",
        "private_key": pem,
        "private_key_id": "key-1",
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture
def rsa_public_pem(rsa_key) -> str:
    return rsa_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


@pytest.fixture
def google_api(service_account_info) -> GoogleApiStub:
    return GoogleApiStub(service_account_info)
