"""End-to-end flows through the HTTP API."""
from __future__ import annotations

from salonpass.services.reminders import run_reminder_sweep


def test_double_booking_is_rejected(client, admin_headers) -> None:
    base = {"serviceName": "Facial", "date": "2025-03-10", "time": "10:00", "durationMinutes": 60}

    ana = client.post("/appointments", json={**base, "clientName": "Ana", "phone": "4421111111"}, headers=admin_headers)
    luis = client.post("/appointments", json={**base, "clientName": "Luis", "phone": "4422222222"}, headers=admin_headers)

    assert ana.status_code == 201
    assert luis.status_code == 409
    listing = client.get("/appointments?date=2025-03-10", headers=admin_headers).get_json()["appointments"]
    assert [appointment["clientName"] for appointment in listing] == ["Ana"]


def test_full_loyalty_cycle(client, admin_headers, clock) -> None:
    card_id = client.post(
        "/cards", json={"name": "Ana", "phone": "4421234567"}, headers=admin_headers
    ).get_json()["card"]["id"]

    for expected in range(1, 9):
        response = client.post(f"/cards/{card_id}/stamp", headers=admin_headers)
        assert response.get_json()["card"]["stamps"] == expected
        clock.advance(hours=23)

    assert client.post(f"/cards/{card_id}/stamp", headers=admin_headers).status_code == 409

    redeemed = client.post(f"/cards/{card_id}/redeem", headers=admin_headers).get_json()["card"]
    assert redeemed["stamps"] == 0
    assert redeemed["cycles"] == 1

    # The loop already moved the clock 23h past the eighth stamp
    restarted = client.post(f"/cards/{card_id}/stamp", headers=admin_headers)
    assert restarted.status_code == 200
    assert restarted.get_json()["card"]["stamps"] == 1

    events = client.get(f"/cards/{card_id}/events", headers=admin_headers).get_json()["events"]
    assert [event["type"] for event in events].count("STAMP") == 9
    assert events[-1]["type"] == "ISSUE"


def test_reminder_retried_after_transport_failure(client, admin_headers, whatsapp, clock) -> None:
    appointment_id = client.post(
        "/appointments",
        json={
            "clientName": "Ana",
            "phone": "4421234567",
            "serviceName": "Facial",
            "date": "2025-03-10",
            "time": "10:00",
            "durationMinutes": 60,
        },
        headers=admin_headers,
    ).get_json()["appointment"]["id"]
    whatsapp.failures = 1

    run_reminder_sweep(whatsapp)
    after_failure = client.get(f"/appointments/{appointment_id}", headers=admin_headers).get_json()["appointment"]
    assert after_failure["sent24hAt"] is None

    clock.advance(minutes=10)
    run_reminder_sweep(whatsapp)
    after_retry = client.get(f"/appointments/{appointment_id}", headers=admin_headers).get_json()["appointment"]

    assert after_retry["sent24hAt"] == "2025-03-09T16:10:00Z"
    assert whatsapp.keys() == ["reminder_24h"]
