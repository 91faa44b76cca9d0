"""Client treatment records and their sessions."""
from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import func, or_

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import Appointment, ClientRecord, Event, TreatmentSession
from ..utils import parse_date, utc_now, utc_to_local
from .cards import get_card

logger = logging.getLogger(__name__)

RECORD_FIELDS = {
    "skinType": "skin_type",
    "allergies": "allergies",
    "medicalHistory": "medical_history",
    "objectives": "objectives",
    "observations": "observations",
}
SESSION_FIELDS = {
    "treatmentType": "treatment_type",
    "serviceName": "service_name",
    "staffName": "staff_name",
    "deviceName": "device_name",
    "treatedAreas": "treated_areas",
    "productsUsed": "products_used",
    "observations": "observations",
    "results": "results",
    "recommendations": "recommendations",
}


def _text(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def get_or_create_record(card_id: str) -> ClientRecord:
    card = get_card(card_id)
    if card.record is not None:
        return card.record
    now = utc_now()
    record = ClientRecord(card_id=card.card_id, created_at=now, updated_at=now)
    db.session.add(record)
    db.session.commit()
    logger.info("Opened client record %s for card %s", record.record_id, card.card_id)
    return record


def get_record(record_id: str) -> ClientRecord:
    record = db.session.get(ClientRecord, record_id)
    if record is None:
        raise NotFound("client record not found")
    return record


def record_history(record: ClientRecord) -> dict[str, list]:
    """Card events and attended appointments for the record's client."""
    card = record.card
    events = Event.query.filter_by(card_id=card.card_id).order_by(Event.event_id.desc()).all()
    appointments = (
        Appointment.query.filter(
            or_(Appointment.card_id == card.card_id, Appointment.client_phone == card.phone),
            Appointment.status.in_(("completed", "confirmed")),
        )
        .order_by(Appointment.starts_at.desc())
        .all()
    )
    return {"events": events, "appointments": appointments}


def update_record(record_id: str, payload: dict) -> ClientRecord:
    record = get_record(record_id)
    if "age" in payload:
        age = payload["age"]
        if age is None or age == "":
            record.age = None
        else:
            try:
                age = int(age)
            except (TypeError, ValueError) as exc:
                raise ValidationError("age must be an integer") from exc
            if age < 0:
                raise ValidationError("age cannot be negative")
            record.age = age
    for key, attribute in RECORD_FIELDS.items():
        if key in payload:
            setattr(record, attribute, _text(payload[key]))
    record.updated_at = utc_now()
    db.session.commit()
    return record


def _apply_session_fields(session: TreatmentSession, payload: dict) -> None:
    settings = payload.get("deviceSettings")
    if settings is not None and not isinstance(settings, dict):
        raise ValidationError("deviceSettings must be an object")
    if "deviceSettings" in payload:
        session.device_settings = settings or None
    for key, attribute in SESSION_FIELDS.items():
        if key in payload:
            setattr(session, attribute, _text(payload[key]))


def add_session(record_id: str, payload: dict) -> TreatmentSession:
    record = get_record(record_id)
    if payload.get("date"):
        session_date = date.fromisoformat(parse_date(payload["date"]))
    else:
        session_date = utc_to_local(utc_now()).date()
    session = TreatmentSession(record_id=record.record_id, session_date=session_date, created_at=utc_now())
    _apply_session_fields(session, payload)
    db.session.add(session)
    db.session.commit()
    logger.info("Added session %s to record %s", session.session_id, record.record_id)
    return session


def get_session(session_id: int) -> TreatmentSession:
    session = db.session.get(TreatmentSession, session_id)
    if session is None:
        raise NotFound("session not found")
    return session


def update_session(session_id: int, payload: dict) -> TreatmentSession:
    session = get_session(session_id)
    session_date = date.fromisoformat(parse_date(payload["date"])) if payload.get("date") else None
    _apply_session_fields(session, payload)
    if session_date is not None:
        session.session_date = session_date
    db.session.commit()
    return session


def delete_session(session_id: int) -> None:
    session = get_session(session_id)
    db.session.delete(session)
    db.session.commit()


def record_summary(record_id: str) -> dict[str, object]:
    record = get_record(record_id)
    top = (
        db.session.query(TreatmentSession.treatment_type, func.count(TreatmentSession.session_id))
        .filter(
            TreatmentSession.record_id == record.record_id,
            TreatmentSession.treatment_type.isnot(None),
        )
        .group_by(TreatmentSession.treatment_type)
        .order_by(func.count(TreatmentSession.session_id).desc(), TreatmentSession.treatment_type.asc())
        .limit(5)
        .all()
    )
    sessions = record.sessions
    return {
        "totalSessions": len(sessions),
        "lastSession": sessions[0].to_dict() if sessions else None,
        "topTreatments": [{"treatmentType": name, "count": count} for name, count in top],
    }
