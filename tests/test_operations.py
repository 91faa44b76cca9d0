from __future__ import annotations

from salonpass import start_scheduler
from salonpass.services import cards as card_service


class RecordingScheduler:
    def __init__(self) -> None:
        self.jobs = {}
        self.started = False

    def add_job(self, func, trigger, **kwargs) -> None:
        self.jobs[kwargs["id"]] = (func, trigger, kwargs)

    def start(self) -> None:
        self.started = True


def test_metrics(client, admin_headers, make_card, make_appointment) -> None:
    full = make_card(name="Ana", stamps=8, max_stamps=8)
    card = make_card(name="Luis", phone="524429876543")
    make_card(name="Dora", phone="524420000000", status="inactive")
    card_service.stamp_card(card.card_id)
    card_service.redeem_card(full.card_id)
    make_appointment(date="2025-03-09", time="12:00")
    make_appointment(date="2025-03-09", time="14:00", status="cancelled")
    make_appointment(date="2025-03-10", time="12:00")

    response = client.get("/admin/metrics", headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json() == {
        "total": 3,
        "active": 2,
        "full": 0,
        "stampsToday": 1,
        "redeemsToday": 1,
        "appointmentsToday": 1,
    }


def test_pagination_limits(client, admin_headers, make_card) -> None:
    for index in range(3):
        make_card(name=f"Cliente {index}", phone=f"52442000000{index}")

    page = client.get("/cards?page=2&limit=2", headers=admin_headers).get_json()
    bad = client.get("/cards?page=uno", headers=admin_headers)

    assert len(page["cards"]) == 1
    assert page["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert bad.status_code == 400


def test_scheduler_jobs(app, monkeypatch, make_appointment, whatsapp) -> None:
    recorder = RecordingScheduler()
    monkeypatch.setattr("salonpass.scheduler", recorder)

    start_scheduler(app)

    assert recorder.started
    assert set(recorder.jobs) == {"reminder_sweep", "admin_digest"}
    func, trigger, options = recorder.jobs["reminder_sweep"]
    assert trigger == "interval"
    assert options["minutes"] == app.config["REMINDER_INTERVAL_MINUTES"]
    assert options["max_instances"] == 1
    assert options["coalesce"] is True

    make_appointment(date="2025-03-10", time="10:00")
    func()
    assert whatsapp.keys() == ["reminder_24h"]


def test_scheduler_job_failure_is_logged(app, monkeypatch) -> None:
    recorder = RecordingScheduler()
    monkeypatch.setattr("salonpass.scheduler", recorder)

    def explode():
        raise RuntimeError("digest broke")

    monkeypatch.setattr("salonpass.services.digest.run_digest", explode)
    start_scheduler(app)

    recorder.jobs["admin_digest"][0]()
