from __future__ import annotations

import json

import pytest
from jose import jwt

from salonpass.errors import UpstreamFailure
from salonpass.services.google_wallet import SAVE_URL, GoogleWalletClient
from salonpass.services.wallet import WalletNotifier


@pytest.fixture
def wallet_client(google_api) -> GoogleWalletClient:
    return GoogleWalletClient(google_api.account, google_api.http, "3388000000012345", "loyalty")


def test_loyalty_object(app, make_card, wallet_client) -> None:
    card = make_card(stamps=5, max_stamps=8, cycles=1)

    body = wallet_client.loyalty_object(card)

    assert body["id"] == f"3388000000012345.{card.card_id}"
    assert body["classId"] == "3388000000012345.loyalty"
    assert body["state"] == "ACTIVE"
    assert body["loyaltyPoints"]["balance"] == {"string": "5/8"}
    assert body["barcode"] == {"type": "QR_CODE", "value": card.card_id}


def test_object_id_replaces_unsafe_characters(wallet_client) -> None:
    assert wallet_client.object_id("card 1/ñ") == "3388000000012345.card_1__"


def test_upsert_updates_existing_object(app, make_card, wallet_client, google_api) -> None:
    card = make_card()

    assert wallet_client.upsert_object(card) is True

    assert [request.method for request in google_api.requests] == ["PUT"]
    assert json.loads(google_api.requests[0].content)["accountName"] == "Ana López"


def test_upsert_creates_missing_object(app, make_card, wallet_client, google_api) -> None:
    google_api.responses.append((404, {"error": {"code": 404}}))

    assert wallet_client.upsert_object(make_card()) is True

    assert [request.method for request in google_api.requests] == ["PUT", "POST"]
    assert google_api.requests[1].url.path == "/walletobjects/v1/loyaltyObject"


def test_upsert_without_create(app, make_card, wallet_client, google_api) -> None:
    google_api.responses.append((404, {}))

    assert wallet_client.upsert_object(make_card(), create_missing=False) is False
    assert len(google_api.requests) == 1


def test_upsert_server_error_raises(app, make_card, wallet_client, google_api) -> None:
    google_api.responses.append((503, {}))

    with pytest.raises(UpstreamFailure) as excinfo:
        wallet_client.upsert_object(make_card())

    assert excinfo.value.status == 503


def test_add_message(app, make_card, wallet_client, google_api) -> None:
    card = make_card()

    wallet_client.add_message(card, "Promo", "2x1 en faciales")

    request = google_api.requests[0]
    assert request.url.path.endswith(f"/loyaltyObject/3388000000012345.{card.card_id}/addMessage")
    message = json.loads(request.content)["message"]
    assert message["header"] == "Promo"
    assert message["body"] == "2x1 en faciales"


def test_save_url_is_signed_jwt(app, make_card, wallet_client, rsa_public_pem) -> None:
    card = make_card()

    url = wallet_client.save_url(card)

    assert url.startswith(SAVE_URL)
    claims = jwt.decode(url[len(SAVE_URL):], rsa_public_pem, algorithms=["RS256"], audience="google")
    assert claims["typ"] == "savetowallet"
    assert claims["payload"]["loyaltyObjects"][0]["accountId"] == card.card_id


def test_notifier_skips_cards_never_saved(app, make_card, wallet_client, google_api) -> None:
    notifier = WalletNotifier(wallet_client, None)
    google_api.responses.append((404, {}))

    assert notifier.google_message(make_card(), "Promo", "Hola") is None
    assert [request.method for request in google_api.requests] == ["PUT"]


def test_notifier_without_google(app, make_card) -> None:
    notifier = WalletNotifier(None, None)
    card = make_card()

    assert notifier.google_message(card, "Promo", "Hola") is None
    assert notifier.push_apple(card) == (0, 0)
    notifier.card_changed(card)


def test_card_changed_swallows_wallet_errors(app, make_card, wallet_client, google_api) -> None:
    google_api.responses.append((500, {}))

    WalletNotifier(wallet_client, None).card_changed(make_card())

    assert len(google_api.requests) == 1
