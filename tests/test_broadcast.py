from __future__ import annotations

from salonpass.extensions import db
from salonpass.models import Card, Notification, WalletDevice


def _register_device(card, token, device_id=None) -> None:
    db.session.add(
        WalletDevice(
            platform="apple",
            device_id=device_id or f"device-{token}",
            push_token=token,
            pass_type_id="pass.com.example.loyalty",
            serial_number=card.card_id,
        )
    )
    db.session.commit()


def test_broadcast_reaches_both_platforms(client, admin_headers, make_card, google_wallet, apns) -> None:
    google_only = make_card(name="Ana", phone="524421111111")
    apple_only = make_card(name="Bety", phone="524422222222")
    both = make_card(name="Carla", phone="524423333333")
    make_card(name="Dora", phone="524424444444", status="inactive")
    google_wallet.objects.update({google_only.card_id, both.card_id})
    _register_device(apple_only, "tok-b")
    _register_device(both, "tok-c1")
    _register_device(both, "tok-c2")

    response = client.post(
        "/admin/push-notification",
        json={"title": "Promo", "message": "2x1 en faciales", "type": "promo"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.get_json() == {"passCount": 3, "googleSent": 2, "appleSent": 3, "errors": 0}
    assert sorted(card_id for card_id, _, _ in google_wallet.messages) == sorted(
        [google_only.card_id, both.card_id]
    )
    assert sorted(apns.pushed) == ["tok-b", "tok-c1", "tok-c2"]
    assert db.session.get(Card, apple_only.card_id).wallet_message == "Promo: 2x1 en faciales"
    assert db.session.get(Card, google_only.card_id).wallet_message is None


def test_broadcast_counts_failures_and_continues(client, admin_headers, make_card, google_wallet, apns) -> None:
    broken = make_card(name="Ana", phone="524421111111")
    healthy = make_card(name="Bety", phone="524422222222")
    google_wallet.objects.update({broken.card_id, healthy.card_id})
    google_wallet.failing_cards.add(broken.card_id)
    _register_device(healthy, "tok-ok")
    _register_device(healthy, "tok-dead")
    apns.failing_tokens.add("tok-dead")

    response = client.post(
        "/admin/push-notification", json={"title": "Aviso", "message": "Cerramos el lunes"}, headers=admin_headers
    )

    assert response.get_json() == {"passCount": 2, "googleSent": 1, "appleSent": 1, "errors": 2}


def test_broadcast_requires_title_and_message(client, admin_headers) -> None:
    response = client.post("/admin/push-notification", json={"title": "Solo título"}, headers=admin_headers)

    assert response.status_code == 400
    assert Notification.query.count() == 0


def test_broadcast_requires_admin(client) -> None:
    response = client.post("/admin/push-notification", json={"title": "x", "message": "y"})

    assert response.status_code == 401


def test_broadcast_history(client, admin_headers, make_card, google_wallet) -> None:
    card = make_card()
    google_wallet.objects.add(card.card_id)
    client.post("/admin/push-notification", json={"title": "Promo", "message": "Hola"}, headers=admin_headers)

    history = client.get("/admin/notifications", headers=admin_headers).get_json()["notifications"]
    feed = client.get("/notifications", headers=admin_headers).get_json()

    assert len(history) == 1
    assert history[0]["type"] == "broadcast"
    assert history[0]["cardsSent"] == 1
    assert history[0]["googleSent"] == 1
    assert feed["notifications"] == []
