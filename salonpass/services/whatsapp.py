"""WhatsApp transports (Twilio content templates or Evolution API text).

Every send returns a SendResult instead of raising, so callers can decide
whether a failed delivery matters (the reminder sweep retries, everything
else just logs).
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

import httpx

from ..models import Appointment
from ..utils import normalize_phone, utc_to_local

logger = logging.getLogger(__name__)

MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)

# Variable order of each approved Twilio template ({{1}}, {{2}}, ...)
TEMPLATE_FIELDS = {
    "booking_confirmation": ("name", "service", "date", "time", "location"),
    "reminder_24h": ("name", "service", "date", "time"),
    "reminder_2h": ("name", "service", "time"),
    "confirmation_received": ("name", "date", "time"),
    "reschedule_requested": ("name",),
    "cancellation_confirmed": ("name",),
}

# Free-text rendering used by Evolution API, which has no templates
MESSAGE_TEXTS = {
    "booking_confirmation": (
        "¡Hola {name}! 🌸 Tu cita de *{service}* quedó agendada para el *{date}* "
        "a las *{time}* en {location}."
    ),
    "reminder_24h": (
        "Hola {name} 👋 Te recordamos tu cita de *{service}* mañana *{date}* a las *{time}*.\n"
        "Responde *confirmar*, *reagendar* o *cancelar*."
    ),
    "reminder_2h": "Hola {name}, tu cita de *{service}* es hoy a las *{time}*. ¡Te esperamos! 💅",
    "confirmation_received": "¡Gracias {name}! Tu cita del *{date}* a las *{time}* está confirmada ✅",
    "reschedule_requested": (
        "Claro {name}, ¿qué día y hora te acomodan mejor? Escríbenos tu propuesta y "
        "te confirmamos disponibilidad."
    ),
    "cancellation_confirmed": "{name}, tu cita fue cancelada. ¡Esperamos verte pronto! 🌷",
}

PROPOSAL_RECEIVED_TEXT = (
    "✅ ¡Perfecto {name}! Recibimos tu propuesta para reagendar tu cita de *{service}*: *{proposal}*.\n"
    "Revisaremos la disponibilidad y te confirmamos a la brevedad. 🌸"
)

_UNSAFE = re.compile(r"[\x00-\x1f<>]")


@dataclass
class SendResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


def sanitize(text: str | None) -> str:
    """Strip characters that WhatsApp templates reject (error 63021)."""
    if not text:
        return ""
    text = text.replace("+", "y").replace("&", "y").replace("\n", " ")
    return _UNSAFE.sub("", text).strip()


def readable_date(date_str: str) -> str:
    _, month, day = (int(part) for part in date_str.split("-"))
    return f"{day} de {MONTHS[month - 1]}"


def appointment_variables(appointment: Appointment, location: str | None = None) -> dict[str, str]:
    local = utc_to_local(appointment.starts_at)
    return {
        "name": sanitize(appointment.client_name),
        "service": sanitize(appointment.service_name),
        "date": readable_date(appointment.date),
        "time": local.strftime("%H:%M") if local else appointment.time,
        "location": sanitize(location),
    }


class DisabledWhatsApp:
    provider = "disabled"

    def send_template(self, phone: str, key: str, variables: dict[str, str]) -> SendResult:
        logger.warning("WhatsApp not configured; skipping %s to %s", key, phone)
        return SendResult(ok=False, error="whatsapp_not_configured")

    def send_text(self, phone: str, body: str) -> SendResult:
        logger.warning("WhatsApp not configured; skipping text to %s", phone)
        return SendResult(ok=False, error="whatsapp_not_configured")


def _json_body(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class TwilioWhatsApp:
    provider = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        templates: dict[str, str | None],
        http: httpx.Client,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from = from_number
        self._templates = templates
        self._http = http

    def _post(self, data: dict[str, str]) -> SendResult:
        try:
            response = self._http.post(
                f"https://api.twilio.com/2010-04-01/Accounts/{self._account_sid}/Messages.json",
                auth=(self._account_sid, self._auth_token),
                data=data,
            )
        except httpx.HTTPError as exc:
            logger.error("Twilio API error: %s", exc)
            return SendResult(ok=False, error=str(exc))

        if response.status_code in (200, 201):
            sid = _json_body(response).get("sid")
            logger.info("WhatsApp sent to %s (SID: %s)", data["To"], sid)
            return SendResult(ok=True, message_id=sid)

        error_data = _json_body(response)
        message = error_data.get("message", f"HTTP {response.status_code}")
        logger.error("Twilio API error [%s]: %s", error_data.get("code"), message)
        return SendResult(ok=False, error=message)

    def send_template(self, phone: str, key: str, variables: dict[str, str]) -> SendResult:
        content_sid = self._templates.get(key)
        if not content_sid:
            # No approved template: fall back to a session message
            return self.send_text(phone, MESSAGE_TEXTS[key].format(**variables))
        ordered = {
            str(position): variables.get(field, "")
            for position, field in enumerate(TEMPLATE_FIELDS[key], start=1)
        }
        return self._post(
            {
                "From": self._from,
                "To": f"whatsapp:+{normalize_phone(phone)}",
                "ContentSid": content_sid,
                "ContentVariables": json.dumps(ordered),
            }
        )

    def send_text(self, phone: str, body: str) -> SendResult:
        return self._post(
            {
                "From": self._from,
                "To": f"whatsapp:+{normalize_phone(phone)}",
                "Body": body,
            }
        )


class EvolutionWhatsApp:
    provider = "evolution"

    def __init__(self, base_url: str, api_key: str, instance: str, http: httpx.Client) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._instance = instance
        self._http = http

    def send_template(self, phone: str, key: str, variables: dict[str, str]) -> SendResult:
        return self.send_text(phone, MESSAGE_TEXTS[key].format(**variables))

    def send_text(self, phone: str, body: str) -> SendResult:
        number = normalize_phone(phone)
        try:
            response = self._http.post(
                f"{self._base_url}/message/sendText/{self._instance}",
                headers={"apikey": self._api_key},
                json={"number": number, "text": body},
            )
        except httpx.HTTPError as exc:
            logger.error("Evolution API error: %s", exc)
            return SendResult(ok=False, error=str(exc))

        if response.status_code >= 400:
            logger.error("Evolution API error %s: %s", response.status_code, response.text)
            return SendResult(ok=False, error=f"HTTP {response.status_code}")

        message_id = (_json_body(response).get("key") or {}).get("id")
        logger.info("WhatsApp (Evolution) sent to %s", number)
        return SendResult(ok=True, message_id=message_id or "evolution-sent")


def send_appointment_message(transport, appointment: Appointment, key: str, location: str | None = None) -> SendResult:
    """Render the message ``key`` for an appointment and send it."""
    result = transport.send_template(
        appointment.client_phone, key, appointment_variables(appointment, location)
    )
    if not result.ok:
        logger.warning(
            "WhatsApp %s for appointment %s not delivered: %s",
            key,
            appointment.appointment_id,
            result.error,
        )
    return result
