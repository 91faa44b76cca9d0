"""Mirror appointments onto two Google calendars.

Each calendar is handled independently: a failure on one never blocks the
other, and no failure ever reaches the caller that triggered the sync. Event
titles and colors encode the appointment status so the calendar view shows
the lifecycle without opening the dashboard.
"""
from __future__ import annotations

import logging

import httpx

from ..errors import UpstreamFailure
from ..models import Appointment
from ..utils import utc_to_local
from .google_auth import CALENDAR_SCOPE, ServiceAccount

logger = logging.getLogger(__name__)

CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# status -> (Google colorId, title emoji, label)
STATUS_STYLE = {
    "pending": ("5", "🟡", "Pendiente"),
    "scheduled": ("9", "🔵", "Agendada"),
    "confirmed": ("10", "🟢", "Confirmada"),
    "rescheduling": ("6", "🟠", "Reagendando"),
    "completed": ("2", "✅", "Completada"),
    "cancelled": ("8", "❌", "Cancelada"),
    "no_show": ("11", "🔴", "No se presentó"),
}

# Appointment attribute holding the event id for each mirrored calendar
EVENT_ID_FIELDS = ("google_calendar_event_id", "google_calendar_event_id_2")


def style_for_status(status: str) -> tuple[str, str, str]:
    return STATUS_STYLE.get(status, STATUS_STYLE["scheduled"])


def build_event(appointment: Appointment, timezone: str, location: str | None = None) -> dict:
    color_id, emoji, label = style_for_status(appointment.status)
    start = utc_to_local(appointment.starts_at)
    end = utc_to_local(appointment.ends_at)
    event = {
        "summary": f"{emoji} {appointment.client_name} - {appointment.service_name or 'Cita'}",
        "description": "\n".join(
            [
                f"👤 Cliente: {appointment.client_name}",
                f"📱 Teléfono: {appointment.client_phone}",
                f"💆 Servicio: {appointment.service_name or 'N/A'}",
                f"📋 Estado: {label}",
            ]
        ),
        "start": {"dateTime": start.isoformat(), "timeZone": timezone},
        "end": {"dateTime": end.isoformat(), "timeZone": timezone},
        "colorId": color_id,
        "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 60}]},
    }
    if location:
        event["location"] = location
    return event


class GoogleCalendarClient:
    """Thin Calendar v3 REST client; every failure surfaces as UpstreamFailure."""

    def __init__(self, account: ServiceAccount, http: httpx.Client) -> None:
        self._account = account
        self._http = http

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = self._account.access_token(CALENDAR_SCOPE)
        try:
            response = self._http.request(
                method,
                f"{CALENDAR_API}{path}",
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise UpstreamFailure(f"Calendar request failed: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamFailure(
                f"Calendar API error {response.status_code}: {response.text}",
                status=response.status_code,
            )
        return response

    def insert_event(self, calendar_id: str, body: dict) -> str:
        response = self._request(
            "POST",
            f"/calendars/{calendar_id}/events",
            params={"sendUpdates": "none"},
            json=body,
        )
        return response.json()["id"]

    def patch_event(self, calendar_id: str, event_id: str, body: dict) -> None:
        self._request(
            "PATCH",
            f"/calendars/{calendar_id}/events/{event_id}",
            params={"sendUpdates": "none"},
            json=body,
        )

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        self._request(
            "DELETE",
            f"/calendars/{calendar_id}/events/{event_id}",
            params={"sendUpdates": "none"},
        )


class CalendarSync:
    """Best-effort mirroring of appointments to two calendar identities.

    The methods mutate the appointment's event-id fields but never commit;
    the caller owns the transaction.
    """

    def __init__(
        self,
        client: GoogleCalendarClient | None,
        calendar_ids: tuple[str | None, str | None],
        timezone: str,
        location: str | None = None,
    ) -> None:
        self._client = client
        self._targets = [
            (field, calendar_id)
            for field, calendar_id in zip(EVENT_ID_FIELDS, calendar_ids)
            if calendar_id
        ]
        self._timezone = timezone
        self._location = location

    @property
    def enabled(self) -> bool:
        return self._client is not None and bool(self._targets)

    def _create_one(self, appointment: Appointment, field: str, calendar_id: str) -> str | None:
        try:
            event_id = self._client.insert_event(
                calendar_id, build_event(appointment, self._timezone, self._location)
            )
        except UpstreamFailure as exc:
            logger.error(
                "Calendar mirror create failed for %s on %s: %s",
                appointment.appointment_id,
                calendar_id,
                exc.message,
            )
            event_id = None
        setattr(appointment, field, event_id)
        return event_id

    def mirror_create(self, appointment: Appointment) -> dict[str, str | None]:
        result: dict[str, str | None] = {"eventId1": None, "eventId2": None}
        if not self.enabled:
            logger.info("Calendar sync disabled; skipping mirror of %s", appointment.appointment_id)
            return result
        for field, calendar_id in self._targets:
            event_id = self._create_one(appointment, field, calendar_id)
            result["eventId1" if field == EVENT_ID_FIELDS[0] else "eventId2"] = event_id
        return result

    def mirror_update(self, appointment: Appointment) -> None:
        if not self.enabled:
            return
        body = build_event(appointment, self._timezone, self._location)
        for field, calendar_id in self._targets:
            event_id = getattr(appointment, field)
            if not event_id:
                self._create_one(appointment, field, calendar_id)
                continue
            try:
                self._client.patch_event(calendar_id, event_id, body)
            except UpstreamFailure as exc:
                if exc.is_gone:
                    logger.warning(
                        "Calendar event %s vanished from %s, recreating", event_id, calendar_id
                    )
                    setattr(appointment, field, None)
                    self._create_one(appointment, field, calendar_id)
                else:
                    logger.error(
                        "Calendar mirror update failed for %s on %s: %s",
                        appointment.appointment_id,
                        calendar_id,
                        exc.message,
                    )

    def mirror_delete(self, appointment: Appointment) -> None:
        for field, calendar_id in zip(EVENT_ID_FIELDS, self._calendar_ids_by_field()):
            event_id = getattr(appointment, field)
            if not event_id:
                continue
            if self._client is not None and calendar_id:
                try:
                    self._client.delete_event(calendar_id, event_id)
                except UpstreamFailure as exc:
                    if exc.is_gone:
                        logger.info("Calendar event %s already gone from %s", event_id, calendar_id)
                    else:
                        logger.error(
                            "Calendar mirror delete failed for %s on %s: %s",
                            appointment.appointment_id,
                            calendar_id,
                            exc.message,
                        )
            setattr(appointment, field, None)

    def _calendar_ids_by_field(self) -> list[str | None]:
        lookup = dict(self._targets)
        return [lookup.get(field) for field in EVENT_ID_FIELDS]

    def resync_active(self, appointments: list[Appointment]) -> dict[str, int]:
        summary = {"total": len(appointments), "created": 0, "updated": 0, "failed": 0}
        if not self.enabled:
            return summary
        for appointment in appointments:
            had_ids = [bool(getattr(appointment, field)) for field, _ in self._targets]
            self.mirror_update(appointment)
            for (field, _), had_id in zip(self._targets, had_ids):
                if not getattr(appointment, field):
                    summary["failed"] += 1
                elif had_id:
                    summary["updated"] += 1
                else:
                    summary["created"] += 1
        return summary

