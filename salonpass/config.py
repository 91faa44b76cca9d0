"""Application configuration loaded from the environment."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///salonpass.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    AUTH_TOKEN_MAX_AGE = int(os.getenv("AUTH_TOKEN_MAX_AGE", 86400))
    HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", 10))

    # Business rules
    TIMEZONE = os.getenv("TIMEZONE", "America/Mexico_City")
    BUSINESS_NAME = os.getenv("BUSINESS_NAME", "Venus Cosmetología")
    BUSINESS_LOCATION = os.getenv("BUSINESS_LOCATION", "Cactus 50, San Juan del Río")
    BASE_URL = os.getenv("BASE_URL", "http://localhost:5000")
    OPENING_TIME = os.getenv("OPENING_TIME", "10:00")
    CLOSING_TIME = os.getenv("CLOSING_TIME", "20:00")
    SLOT_STEP_MINUTES = int(os.getenv("SLOT_STEP_MINUTES", 30))
    DEFAULT_MAX_STAMPS = int(os.getenv("DEFAULT_MAX_STAMPS", 8))
    STAMP_COOLDOWN_HOURS = float(os.getenv("STAMP_COOLDOWN_HOURS", 23))
    GIFT_CARD_VALID_DAYS = int(os.getenv("GIFT_CARD_VALID_DAYS", 30))
    GIFT_CARD_ALERT_DAYS = int(os.getenv("GIFT_CARD_ALERT_DAYS", 7))

    # Background jobs
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
    REMINDER_INTERVAL_MINUTES = int(os.getenv("REMINDER_INTERVAL_MINUTES", 10))
    BROADCAST_DELAY_SECONDS = float(os.getenv("BROADCAST_DELAY_SECONDS", 0.1))

    # Google (Calendar + Wallet share one service account)
    GOOGLE_SERVICE_ACCOUNT_FILE = os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE")
    GOOGLE_CALENDAR_ID_1 = os.getenv("GOOGLE_CALENDAR_ID_1", os.getenv("GOOGLE_ATTENDEE_1"))
    GOOGLE_CALENDAR_ID_2 = os.getenv("GOOGLE_CALENDAR_ID_2", os.getenv("GOOGLE_ATTENDEE_2"))
    GOOGLE_WALLET_ISSUER_ID = os.getenv("GOOGLE_WALLET_ISSUER_ID")
    GOOGLE_WALLET_CLASS_ID = os.getenv("GOOGLE_WALLET_CLASS_ID", "loyalty")

    # WhatsApp
    WHATSAPP_PROVIDER = os.getenv("WHATSAPP_PROVIDER", "twilio")
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_WHATSAPP_NUMBER = os.getenv("TWILIO_WHATSAPP_NUMBER", "whatsapp:+14155238886")
    # Approved Twilio content templates
    TWILIO_TEMPLATES = {
        "booking_confirmation": os.getenv("TWILIO_TEMPLATE_BOOKING"),
        "reminder_24h": os.getenv("TWILIO_TEMPLATE_REMINDER_24H"),
        "reminder_2h": os.getenv("TWILIO_TEMPLATE_REMINDER_2H"),
        "confirmation_received": os.getenv("TWILIO_TEMPLATE_CONFIRMED"),
        "reschedule_requested": os.getenv("TWILIO_TEMPLATE_RESCHEDULE"),
        "cancellation_confirmed": os.getenv("TWILIO_TEMPLATE_CANCELLED"),
    }
    EVOLUTION_API_URL = os.getenv("EVOLUTION_API_URL")
    EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY")
    EVOLUTION_INSTANCE = os.getenv("EVOLUTION_INSTANCE", "salonpass")

    # Apple Wallet
    APPLE_PASS_TYPE_ID = os.getenv("APPLE_PASS_TYPE_ID")
    APPLE_TEAM_ID = os.getenv("APPLE_TEAM_ID")
    APPLE_KEY_ID = os.getenv("APPLE_KEY_ID")
    APPLE_APNS_KEY_PATH = os.getenv("APPLE_APNS_KEY_PATH")
    APPLE_AUTH_TOKEN = os.getenv("APPLE_AUTH_TOKEN")
    APPLE_PASS_CERT_PATH = os.getenv("APPLE_PASS_CERT_PATH")
    APPLE_PASS_KEY_PATH = os.getenv("APPLE_PASS_KEY_PATH")
    APPLE_PASS_KEY_PASSWORD = os.getenv("APPLE_PASS_KEY_PASSWORD")
    APPLE_WWDR_CERT_PATH = os.getenv("APPLE_WWDR_CERT_PATH")
    APPLE_PASS_ASSETS_DIR = os.getenv("APPLE_PASS_ASSETS_DIR")


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SCHEDULER_ENABLED = False
    BROADCAST_DELAY_SECONDS = 0
    APPLE_AUTH_TOKEN = "apple-test-token"
    APPLE_PASS_TYPE_ID = "pass.com.example.loyalty"
