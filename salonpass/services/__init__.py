"""Business services and the external clients they are wired to.

The clients are built once by ``create_app`` and handed to the services as
arguments; nothing in this package keeps module-level client state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from flask import current_app

from .apple_wallet import ApnsClient, PassBuilder
from .calendar_sync import CalendarSync, GoogleCalendarClient
from .google_auth import ServiceAccount
from .google_wallet import GoogleWalletClient
from .wallet import WalletNotifier
from .whatsapp import DisabledWhatsApp, EvolutionWhatsApp, TwilioWhatsApp

logger = logging.getLogger(__name__)


@dataclass
class Integrations:
    calendar: CalendarSync
    whatsapp: object
    wallet: WalletNotifier
    passes: PassBuilder


def _build_whatsapp(config, http: httpx.Client):
    provider = (config.get("WHATSAPP_PROVIDER") or "twilio").lower()
    if provider == "evolution" and config.get("EVOLUTION_API_URL") and config.get("EVOLUTION_API_KEY"):
        return EvolutionWhatsApp(
            config["EVOLUTION_API_URL"], config["EVOLUTION_API_KEY"], config["EVOLUTION_INSTANCE"], http
        )
    if provider == "twilio" and config.get("TWILIO_ACCOUNT_SID") and config.get("TWILIO_AUTH_TOKEN"):
        return TwilioWhatsApp(
            config["TWILIO_ACCOUNT_SID"],
            config["TWILIO_AUTH_TOKEN"],
            config["TWILIO_WHATSAPP_NUMBER"],
            config.get("TWILIO_TEMPLATES") or {},
            http,
        )
    logger.warning("WhatsApp provider %r is not configured; messages will be skipped", provider)
    return DisabledWhatsApp()


def build_integrations(config) -> Integrations:
    """Construct every external client from a Flask config mapping."""
    timeout = config.get("HTTP_TIMEOUT_SECONDS", 10)
    http = httpx.Client(timeout=timeout)

    account = None
    if config.get("GOOGLE_SERVICE_ACCOUNT_FILE"):
        try:
            account = ServiceAccount.from_file(config["GOOGLE_SERVICE_ACCOUNT_FILE"], http)
        except (OSError, ValueError, KeyError) as exc:
            logger.error("Could not load Google service account: %s", exc)

    calendar = CalendarSync(
        GoogleCalendarClient(account, http) if account else None,
        (config.get("GOOGLE_CALENDAR_ID_1"), config.get("GOOGLE_CALENDAR_ID_2")),
        config["TIMEZONE"],
        config.get("BUSINESS_LOCATION"),
    )

    google = None
    if account and config.get("GOOGLE_WALLET_ISSUER_ID"):
        google = GoogleWalletClient(
            account, http, config["GOOGLE_WALLET_ISSUER_ID"], config["GOOGLE_WALLET_CLASS_ID"]
        )

    apns = None
    if all(config.get(key) for key in ("APPLE_TEAM_ID", "APPLE_KEY_ID", "APPLE_APNS_KEY_PATH", "APPLE_PASS_TYPE_ID")):
        try:
            apns = ApnsClient(
                config["APPLE_TEAM_ID"],
                config["APPLE_KEY_ID"],
                config["APPLE_APNS_KEY_PATH"],
                config["APPLE_PASS_TYPE_ID"],
                httpx.Client(http2=True, timeout=timeout),
            )
        except OSError as exc:
            logger.error("Could not load APNs key: %s", exc)

    passes = PassBuilder(
        pass_type_id=config.get("APPLE_PASS_TYPE_ID"),
        team_id=config.get("APPLE_TEAM_ID"),
        organization=config["BUSINESS_NAME"],
        web_service_url=config["BASE_URL"].rstrip("/") + "/apple",
        auth_token=config.get("APPLE_AUTH_TOKEN"),
        cert_path=config.get("APPLE_PASS_CERT_PATH"),
        key_path=config.get("APPLE_PASS_KEY_PATH"),
        key_password=config.get("APPLE_PASS_KEY_PASSWORD"),
        wwdr_path=config.get("APPLE_WWDR_CERT_PATH"),
        assets_dir=config.get("APPLE_PASS_ASSETS_DIR"),
    )

    return Integrations(
        calendar=calendar,
        whatsapp=_build_whatsapp(config, http),
        wallet=WalletNotifier(google, apns),
        passes=passes,
    )


def get_integrations() -> Integrations:
    return current_app.extensions["integrations"]
