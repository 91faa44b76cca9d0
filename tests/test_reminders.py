from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from salonpass.extensions import db
from salonpass.models import Appointment
from salonpass.services.reminders import REMINDER_STAGES, due_appointments, run_reminder_sweep
from salonpass.services.whatsapp import EvolutionWhatsApp

# Local 2025-03-09 10:00 is the frozen "now"; these slots sit 24h and 2h ahead
TOMORROW = {"date": "2025-03-10", "time": "10:00"}
TODAY_NOON = {"date": "2025-03-09", "time": "12:00"}


def test_24h_reminder_sent_once(app, make_appointment, whatsapp) -> None:
    appointment = make_appointment(**TOMORROW)

    first = run_reminder_sweep(whatsapp)
    second = run_reminder_sweep(whatsapp)

    assert first == {"failed": 0, "24h": 1, "2h": 0}
    assert second == {"failed": 0, "24h": 0, "2h": 0}
    assert whatsapp.keys() == ["reminder_24h"]
    assert db.session.get(Appointment, appointment.appointment_id).sent_24h_at is not None


def test_2h_reminder(app, make_appointment, whatsapp, clock) -> None:
    appointment = make_appointment(**TODAY_NOON)

    summary = run_reminder_sweep(whatsapp)

    assert summary["2h"] == 1
    phone, key, variables = whatsapp.sent[0]
    assert key == "reminder_2h"
    assert variables["time"] == "12:00"
    assert db.session.get(Appointment, appointment.appointment_id).sent_2h_at == clock.now


def test_failed_send_is_retried(app, make_appointment, whatsapp, clock) -> None:
    appointment = make_appointment(**TOMORROW)
    whatsapp.failures = 1

    first = run_reminder_sweep(whatsapp)
    assert first["failed"] == 1
    assert db.session.get(Appointment, appointment.appointment_id).sent_24h_at is None

    clock.advance(minutes=10)
    second = run_reminder_sweep(whatsapp)

    assert second["24h"] == 1
    assert db.session.get(Appointment, appointment.appointment_id).sent_24h_at is not None


@pytest.mark.parametrize(
    ("offset", "due"),
    [
        (timedelta(hours=23, minutes=29), False),
        (timedelta(hours=23, minutes=30), True),
        (timedelta(hours=24, minutes=30), True),
        (timedelta(hours=24, minutes=31), False),
    ],
)
def test_24h_window_bounds(app, make_appointment, clock, offset, due) -> None:
    appointment = make_appointment(**TOMORROW)
    appointment.starts_at = clock.now + offset
    appointment.ends_at = appointment.starts_at + timedelta(hours=1)
    db.session.commit()

    found = due_appointments(REMINDER_STAGES[0], clock.now)

    assert (appointment in found) is due


def test_disabled_flag_skips_stage(app, make_appointment, whatsapp) -> None:
    make_appointment(send_whatsapp_24h=False, **TOMORROW)

    assert run_reminder_sweep(whatsapp)["24h"] == 0
    assert whatsapp.sent == []


@pytest.mark.parametrize("status", ["cancelled", "completed", "no_show"])
def test_terminal_appointments_get_no_reminders(app, make_appointment, whatsapp, status) -> None:
    make_appointment(status=status, **TOMORROW)

    run_reminder_sweep(whatsapp)

    assert whatsapp.sent == []


def test_confirmed_appointment_still_gets_2h_reminder(app, make_appointment, whatsapp) -> None:
    make_appointment(status="confirmed", **TODAY_NOON)

    assert run_reminder_sweep(whatsapp)["2h"] == 1


def test_reminder_endpoint(client, admin_headers, make_appointment, whatsapp) -> None:
    make_appointment(**TOMORROW)

    response = client.post("/admin/reminders/run", headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json()["24h"] == 1


def test_sweep_accepts_plain_text_acknowledgements(app, make_appointment) -> None:
    http = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(201, text="OK")))
    transport = EvolutionWhatsApp("https://evo.example.com", "evo-key", "salon", http)
    first = make_appointment(**TOMORROW)
    second = make_appointment(date="2025-03-10", time="10:15", phone="524429876543")

    summary = run_reminder_sweep(transport)

    assert summary == {"failed": 0, "24h": 2, "2h": 0}
    for appointment in (first, second):
        assert db.session.get(Appointment, appointment.appointment_id).sent_24h_at is not None
