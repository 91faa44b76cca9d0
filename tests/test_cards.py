"""Tests for the card ledger: issue, stamp, redeem and purge."""
from __future__ import annotations

import pytest

from salonpass.errors import AlreadyComplete, Incomplete, NotFound, RateLimited, ValidationError
from salonpass.extensions import db
from salonpass.models import Appointment, Card, Event, WalletDevice
from salonpass.services import cards as card_service
from salonpass.utils import normalize_phone


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("442 123 4567", "524421234567"),
        ("+52 1 442 123 4567", "524421234567"),
        ("524421234567", "524421234567"),
        ("whatsapp:+14155238886", "14155238886"),
    ],
)
def test_normalize_phone(raw, expected) -> None:
    assert normalize_phone(raw) == expected


def test_normalize_phone_requires_digits() -> None:
    with pytest.raises(ValidationError):
        normalize_phone("  -- ")


def test_issue_card_201(client, admin_headers) -> None:
    response = client.post(
        "/cards",
        json={"name": "Ana López", "phone": "442 123 4567", "max": 10, "birthday": "1990-05-21"},
        headers=admin_headers,
    )
    data = response.get_json()

    assert response.status_code == 201
    assert data["card"]["stamps"] == 0
    assert data["card"]["max"] == 10
    assert data["card"]["status"] == "active"
    assert data["card"]["phone"] == "524421234567"
    assert data["card"]["birthday"] == "05-21"
    assert data["addToGoogleUrl"].endswith(data["card"]["id"])

    events = Event.query.filter_by(card_id=data["card"]["id"]).all()
    assert [event.event_type for event in events] == ["ISSUE"]
    assert events[0].meta["max"] == 10


def test_issue_card_defaults_to_eight_stamps(client, admin_headers) -> None:
    response = client.post("/cards", json={"name": "Luis", "phone": "4429876543"}, headers=admin_headers)

    assert response.status_code == 201
    assert response.get_json()["card"]["max"] == 8


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Ana"},
        {"name": "", "phone": "4421234567"},
        {"name": "Ana", "phone": "4421234567", "max": 0},
        {"name": "Ana", "phone": "4421234567", "max": "ocho"},
        {"name": "Ana", "phone": "4421234567", "birthday": "21/05"},
    ],
)
def test_issue_card_invalid_payload_400(client, admin_headers, payload) -> None:
    response = client.post("/cards", json=payload, headers=admin_headers)

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_stamp_card_200(client, admin_headers, make_card, google_wallet, apns) -> None:
    card = make_card()
    db.session.add(WalletDevice(device_id="dev-1", push_token="tok-1", pass_type_id="pass.x", serial_number=card.card_id))
    db.session.commit()

    response = client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json()["card"]["stamps"] == 1
    assert response.get_json()["card"]["lastVisit"] is not None
    assert card.card_id in google_wallet.objects
    assert apns.pushed == ["tok-1"]


def test_stamp_unknown_card_404(client, admin_headers) -> None:
    response = client.post("/cards/card_missing/stamp", headers=admin_headers)

    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_stamp_full_card_409(client, admin_headers, make_card) -> None:
    card = make_card(stamps=8, max_stamps=8)

    response = client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)

    assert response.status_code == 409
    assert response.get_json()["error"] == "already_full"


def test_second_stamp_within_23_hours_is_rate_limited(client, admin_headers, make_card, clock) -> None:
    card = make_card()
    assert client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers).status_code == 200

    clock.advance(hours=22, minutes=59)
    response = client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)

    assert response.status_code == 429
    assert response.get_json()["error"] == "rate_limited"
    assert db.session.get(Card, card.card_id).stamps == 1


def test_stamp_allowed_after_23_hours(client, admin_headers, make_card, clock) -> None:
    card = make_card()
    client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)

    clock.advance(hours=23)
    response = client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json()["card"]["stamps"] == 2


def test_wallet_failure_does_not_fail_stamp(client, admin_headers, make_card, google_wallet) -> None:
    card = make_card()
    google_wallet.failing_cards.add(card.card_id)

    response = client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)

    assert response.status_code == 200
    assert db.session.get(Card, card.card_id).stamps == 1


def test_redeem_incomplete_card_400(client, admin_headers, make_card) -> None:
    card = make_card(stamps=7, max_stamps=8)

    response = client.post(f"/cards/{card.card_id}/redeem", headers=admin_headers)

    assert response.status_code == 400
    assert response.get_json()["error"] == "not_enough_stamps"


def test_redeem_full_card_resets_stamps(client, admin_headers, make_card) -> None:
    card = make_card(stamps=8, max_stamps=8, cycles=2)

    response = client.post(f"/cards/{card.card_id}/redeem", headers=admin_headers)
    data = response.get_json()["card"]

    assert response.status_code == 200
    assert data["stamps"] == 0
    assert data["cycles"] == 3
    assert Event.query.filter_by(card_id=card.card_id, event_type="REDEEM").count() == 1


def test_stamps_stay_within_bounds(app, make_card, clock) -> None:
    card = make_card(max_stamps=3)
    for _ in range(6):
        for operation in (card_service.stamp_card, card_service.redeem_card):
            try:
                operation(card.card_id)
            except (AlreadyComplete, Incomplete, RateLimited):
                pass
            refreshed = db.session.get(Card, card.card_id)
            assert 0 <= refreshed.stamps <= refreshed.max_stamps
        clock.advance(hours=24)


def test_events_listed_newest_first(client, admin_headers, make_card, clock) -> None:
    card = make_card()
    client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)
    clock.advance(hours=24)
    client.post(f"/cards/{card.card_id}/stamp", headers=admin_headers)

    response = client.get(f"/cards/{card.card_id}/events", headers=admin_headers)
    events = response.get_json()["events"]

    assert [event["type"] for event in events] == ["STAMP", "STAMP"]
    assert events[0]["id"] > events[1]["id"]


def test_delete_card_cascades_and_is_idempotent(client, admin_headers, make_card, make_appointment) -> None:
    card = make_card()
    card_service.stamp_card(card.card_id)
    appointment = make_appointment(card_id=card.card_id)
    appointment_id = appointment.appointment_id

    first = client.delete(f"/cards/{card.card_id}", headers=admin_headers)
    second = client.delete(f"/cards/{card.card_id}", headers=admin_headers)

    assert first.status_code == 200
    assert first.get_json()["deleted"] is True
    assert second.status_code == 200
    assert second.get_json()["deleted"] is False
    assert Event.query.filter_by(card_id=card.card_id).count() == 0
    assert db.session.get(Appointment, appointment_id).card_id is None


def test_get_card_404(app) -> None:
    with pytest.raises(NotFound):
        card_service.get_card("card_nope")


def test_list_cards_filters_by_query(client, admin_headers, make_card) -> None:
    make_card(name="Ana López", phone="524421234567")
    make_card(name="Luis Pérez", phone="524429876543")

    response = client.get("/cards?q=luis", headers=admin_headers)
    data = response.get_json()

    assert response.status_code == 200
    assert [card["name"] for card in data["cards"]] == ["Luis Pérez"]
    assert data["pagination"]["total"] == 1


def test_export_cards_csv(client, admin_headers, make_card) -> None:
    make_card(name="Ana López")

    response = client.get("/cards/export.csv", headers=admin_headers)
    lines = response.get_data(as_text=True).strip().splitlines()

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert lines[0].startswith("id,name,phone")
    assert "Ana López" in lines[1]


def test_public_registration_is_idempotent_per_phone(client) -> None:
    first = client.post("/public/cards", json={"name": "Ana", "phone": "442 123 4567"})
    second = client.post("/public/cards", json={"name": "Ana L.", "phone": "+52 1 442 123 4567"})

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.get_json()["created"] is False
    assert second.get_json()["card"]["id"] == first.get_json()["card"]["id"]
    assert Card.query.count() == 1


def test_public_card_hides_contact_details(client, make_card) -> None:
    card = make_card()

    response = client.get(f"/public/cards/{card.card_id}")
    data = response.get_json()["card"]

    assert response.status_code == 200
    assert "phone" not in data
    assert data["stamps"] == 0
