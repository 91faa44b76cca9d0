"""HTTP routes for cards, appointments, the service catalog and admin auth."""
from __future__ import annotations

import csv
import io
from functools import wraps

from flask import Blueprint, Response, current_app, g, jsonify, request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash

from .errors import NotFound, Unauthorized, ValidationError
from .extensions import db
from .models import AdminUser, Appointment, Event, Service
from .services import get_integrations
from .services import appointments as appointment_service
from .services import cards as card_service
from .utils import parse_date, utc_now

bp = Blueprint("api", __name__)


def _build_token(payload: dict[str, object]) -> str:
    serializer = URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")
    return serializer.dumps(payload)


def get_admin_identity() -> int | None:
    """Return the admin id carried by the Bearer token, or None."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:]
    serializer = URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")
    try:
        payload = serializer.loads(token, max_age=current_app.config["AUTH_TOKEN_MAX_AGE"])
    except BadSignature:
        # Covers expired tokens too
        return None
    return payload.get("admin_id")


def require_admin(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        admin_id = get_admin_identity()
        if admin_id is None or db.session.get(AdminUser, admin_id) is None:
            raise Unauthorized("admin token required")
        g.admin_id = admin_id
        return view(*args, **kwargs)

    return wrapper


def _database_error(message: str, exc: SQLAlchemyError):
    db.session.rollback()
    current_app.logger.exception(message, exc_info=exc)
    return jsonify({"error": "database_error"}), 500


def _as_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _pagination_args(default_limit: int = 20) -> tuple[int, int]:
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = min(100, max(1, int(request.args.get("limit", default_limit))))
    except (TypeError, ValueError) as exc:
        raise ValidationError("page and limit must be integers") from exc
    return page, limit


def _google_save_url(card) -> str | None:
    google = get_integrations().wallet.google
    return google.save_url(card) if google is not None else None


# --- Health ---


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


# --- Admin auth ---


@bp.post("/auth/login")
def login() -> tuple[dict[str, object], int]:
    """Authenticate an admin by email/password and return an access token.
    ---
    tags:
      - Authentication
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            email:
              type: string
            password:
              type: string
    responses:
      200:
        description: Login successful, returns access token
      400:
        description: Missing email or password
      401:
        description: Invalid credentials
    """
    payload = request.get_json(silent=True) or {}

    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
        return (
            jsonify({"error": "invalid_payload", "message": "email and password are required"}),
            400,
        )

    admin = AdminUser.query.filter_by(email=email).first()
    if admin is None or not check_password_hash(admin.password_hash, password):
        return jsonify({"error": "unauthorized", "message": "invalid email or password"}), 401

    try:
        admin.last_login_at = utc_now()
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to record admin login", exc)

    token = _build_token({"admin_id": admin.admin_id})
    return jsonify({"token": token, "admin": admin.to_dict()}), 200


# --- Cards ---


@bp.post("/cards")
@require_admin
def issue_card() -> tuple[dict[str, object], int]:
    """Issue a new loyalty card.
    ---
    tags:
      - Cards
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            name:
              type: string
            phone:
              type: string
            max:
              type: integer
            birthday:
              type: string
    responses:
      201:
        description: Card issued
      400:
        description: Invalid payload
    """
    payload = request.get_json(silent=True) or {}
    try:
        card = card_service.issue_card(
            payload.get("name"),
            payload.get("phone"),
            payload.get("max"),
            birthday=payload.get("birthday"),
            email=payload.get("email"),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to issue card", exc)

    return jsonify({"card": card.to_dict(), "addToGoogleUrl": _google_save_url(card)}), 201


@bp.get("/cards")
@require_admin
def list_cards() -> tuple[dict[str, object], int]:
    page, limit = _pagination_args()
    status = (request.args.get("status") or "").strip() or None
    query = (request.args.get("q") or "").strip() or None

    cards_query = card_service.search_cards(query, status)
    total = cards_query.count()
    cards = cards_query.limit(limit).offset((page - 1) * limit).all()
    return (
        jsonify(
            {
                "cards": [card.to_dict() for card in cards],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            }
        ),
        200,
    )


@bp.get("/cards/export.csv")
@require_admin
def export_cards() -> Response:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["id", "name", "phone", "email", "birthday", "stamps", "max", "cycles", "status", "createdAt"])
    for card in card_service.search_cards().all():
        data = card.to_dict()
        writer.writerow([data[key] for key in ("id", "name", "phone", "email", "birthday", "stamps", "max", "cycles", "status", "createdAt")])
    return Response(
        buffer.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=cards.csv"},
    )


@bp.get("/cards/<card_id>")
@require_admin
def get_card(card_id: str) -> tuple[dict[str, object], int]:
    card = card_service.get_card(card_id)
    return jsonify({"card": card.to_dict(), "addToGoogleUrl": _google_save_url(card)}), 200


@bp.get("/cards/<card_id>/events")
@require_admin
def list_card_events(card_id: str) -> tuple[dict[str, object], int]:
    card_service.get_card(card_id)
    events = (
        Event.query.filter_by(card_id=card_id)
        .order_by(Event.event_id.desc())
        .limit(200)
        .all()
    )
    return jsonify({"events": [event.to_dict() for event in events]}), 200


@bp.post("/cards/<card_id>/stamp")
@require_admin
def stamp_card(card_id: str) -> tuple[dict[str, object], int]:
    """Add one stamp to a card.
    ---
    tags:
      - Cards
    responses:
      200:
        description: Stamp added
      404:
        description: Card not found
      409:
        description: Card already full
      429:
        description: Card was stamped less than 23 hours ago
    """
    try:
        card = card_service.stamp_card(card_id, wallet=get_integrations().wallet)
    except SQLAlchemyError as exc:
        return _database_error("Failed to stamp card", exc)
    return jsonify({"card": card.to_dict()}), 200


@bp.post("/cards/<card_id>/redeem")
@require_admin
def redeem_card(card_id: str) -> tuple[dict[str, object], int]:
    """Redeem a full card.
    ---
    tags:
      - Cards
    responses:
      200:
        description: Card redeemed, stamps reset
      400:
        description: Not enough stamps
      404:
        description: Card not found
    """
    try:
        card = card_service.redeem_card(card_id, wallet=get_integrations().wallet)
    except SQLAlchemyError as exc:
        return _database_error("Failed to redeem card", exc)
    return jsonify({"card": card.to_dict()}), 200


@bp.delete("/cards/<card_id>")
@require_admin
def delete_card(card_id: str) -> tuple[dict[str, object], int]:
    try:
        deleted = card_service.delete_card(card_id)
    except SQLAlchemyError as exc:
        return _database_error("Failed to delete card", exc)
    return jsonify({"message": "Card deleted", "deleted": deleted}), 200


# --- Public (landing page) ---


@bp.post("/public/cards")
def register_card() -> tuple[dict[str, object], int]:
    """Client self-registration; returns the existing card for a known phone."""
    payload = request.get_json(silent=True) or {}
    try:
        card, created = card_service.find_or_create_card(
            payload.get("name"), payload.get("phone"), birthday=payload.get("birthday")
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to register card", exc)
    return (
        jsonify({"card": card.to_dict(), "created": created, "addToGoogleUrl": _google_save_url(card)}),
        201 if created else 200,
    )


@bp.get("/public/cards/<card_id>")
def get_public_card(card_id: str) -> tuple[dict[str, object], int]:
    card = card_service.get_card(card_id)
    data = card.to_dict()
    return (
        jsonify(
            {
                "card": {key: data[key] for key in ("id", "name", "stamps", "max", "cycles", "status")},
                "addToGoogleUrl": _google_save_url(card),
            }
        ),
        200,
    )


@bp.get("/public/availability")
def get_availability() -> tuple[dict[str, object], int]:
    date = request.args.get("date")
    duration = request.args.get("durationMinutes") or request.args.get("duration") or 60
    slots = appointment_service.available_slots(date, duration)
    return jsonify({"date": date, "slots": slots}), 200


@bp.post("/public/appointments")
def create_public_appointment() -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        appointment = appointment_service.create_appointment(
            get_integrations(),
            payload.get("clientName") or payload.get("name"),
            payload.get("phone") or payload.get("clientPhone"),
            payload.get("date"),
            payload.get("time"),
            payload.get("durationMinutes"),
            service_id=payload.get("serviceId"),
            service_name=payload.get("serviceName"),
            notes=payload.get("notes"),
            send_confirmation=True,
            source="public",
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to create public appointment", exc)
    return jsonify({"message": "Appointment created successfully", "appointment": appointment.to_dict()}), 201


# --- Service catalog ---


def _service_fields(payload: dict, service: Service) -> None:
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required")
        service.name = name
    if "description" in payload:
        service.description = (payload.get("description") or "").strip() or None
    if "category" in payload:
        service.category = (payload.get("category") or "").strip() or None
    if "price" in payload:
        try:
            price_cents = round(float(payload["price"]) * 100)
        except (TypeError, ValueError) as exc:
            raise ValidationError("price must be a number") from exc
        if price_cents < 0:
            raise ValidationError("price cannot be negative")
        service.price_cents = price_cents
    if "durationMinutes" in payload:
        try:
            duration = int(payload["durationMinutes"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("durationMinutes must be an integer") from exc
        if duration <= 0:
            raise ValidationError("durationMinutes must be greater than zero")
        service.duration_minutes = duration
    if "active" in payload:
        service.active = _as_bool(payload["active"])


@bp.get("/services")
def list_services() -> tuple[dict[str, object], int]:
    """List catalog services (active only unless ``?all=true``)."""
    query = Service.query
    if not _as_bool(request.args.get("all")):
        query = query.filter(Service.active.is_(True))
    category = (request.args.get("category") or "").strip()
    if category:
        query = query.filter(Service.category == category)
    services = query.order_by(Service.category.asc(), Service.name.asc()).all()
    return jsonify({"services": [service.to_dict() for service in services]}), 200


@bp.post("/services")
@require_admin
def create_service() -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    if not (payload.get("name") or "").strip():
        raise ValidationError("name is required")

    service = Service()
    _service_fields(payload, service)
    try:
        db.session.add(service)
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to create service", exc)
    return jsonify({"service": service.to_dict()}), 201


@bp.put("/services/<service_id>")
@require_admin
def update_service(service_id: str) -> tuple[dict[str, object], int]:
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFound("service not found")
    _service_fields(request.get_json(silent=True) or {}, service)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to update service", exc)
    return jsonify({"service": service.to_dict()}), 200


@bp.delete("/services/<service_id>")
@require_admin
def delete_service(service_id: str) -> tuple[dict[str, object], int]:
    """Soft delete: the service disappears from the catalog but old appointments keep it."""
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFound("service not found")
    try:
        service.active = False
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to delete service", exc)
    return jsonify({"message": "Service deactivated", "service": service.to_dict()}), 200


# --- Appointments ---


@bp.get("/appointments")
@require_admin
def list_appointments() -> tuple[dict[str, object], int]:
    query = Appointment.query
    if request.args.get("date"):
        query = query.filter(Appointment.date == parse_date(request.args.get("date")))
    if request.args.get("status"):
        query = query.filter(Appointment.status == request.args.get("status"))
    appointments = query.order_by(Appointment.starts_at.asc()).all()
    return jsonify({"appointments": [appointment.to_dict() for appointment in appointments]}), 200


@bp.get("/appointments/<appointment_id>")
@require_admin
def get_appointment(appointment_id: str) -> tuple[dict[str, object], int]:
    appointment = appointment_service.get_appointment(appointment_id)
    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.post("/appointments")
@require_admin
def create_appointment() -> tuple[dict[str, object], int]:
    """Create a new appointment.
    ---
    tags:
      - Appointments
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            clientName:
              type: string
            phone:
              type: string
            serviceId:
              type: string
            date:
              type: string
              example: "2025-03-10"
            time:
              type: string
              example: "10:00"
            durationMinutes:
              type: integer
            sendWhatsAppConfirmation:
              type: boolean
    responses:
      201:
        description: Appointment created successfully
      400:
        description: Invalid payload
      404:
        description: Service not found
      409:
        description: Slot overlaps another appointment
    """
    payload = request.get_json(silent=True) or {}
    try:
        appointment = appointment_service.create_appointment(
            get_integrations(),
            payload.get("clientName"),
            payload.get("phone") or payload.get("clientPhone"),
            payload.get("date"),
            payload.get("time"),
            payload.get("durationMinutes"),
            service_id=payload.get("serviceId"),
            service_name=payload.get("serviceName"),
            notes=payload.get("notes"),
            send_confirmation=_as_bool(payload.get("sendWhatsAppConfirmation")),
            send_whatsapp_24h=_as_bool(payload.get("sendWhatsApp24h"), default=True),
            send_whatsapp_2h=_as_bool(payload.get("sendWhatsApp2h"), default=True),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to create appointment", exc)
    return jsonify({"message": "Appointment created successfully", "appointment": appointment.to_dict()}), 201


@bp.patch("/appointments/<appointment_id>")
@require_admin
def update_appointment(appointment_id: str) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        appointment = appointment_service.update_appointment(
            get_integrations(),
            appointment_id,
            date=payload.get("date"),
            time=payload.get("time"),
            duration_minutes=payload.get("durationMinutes"),
            service_id=payload.get("serviceId"),
            notes=payload.get("notes"),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to update appointment", exc)
    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.patch("/appointments/<appointment_id>/status")
@require_admin
def update_appointment_status(appointment_id: str) -> tuple[dict[str, object], int]:
    """Change an appointment's status.
    ---
    tags:
      - Appointments
    responses:
      200:
        description: Status updated
      400:
        description: Unknown status or transition out of a terminal state
      404:
        description: Appointment not found
    """
    payload = request.get_json(silent=True) or {}
    try:
        appointment = appointment_service.update_status(get_integrations(), appointment_id, payload.get("status"))
    except SQLAlchemyError as exc:
        return _database_error("Failed to update appointment status", exc)
    return jsonify({"appointment": appointment.to_dict()}), 200


@bp.post("/appointments/<appointment_id>/payment")
@require_admin
def register_payment(appointment_id: str) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    if payload.get("amount") in (None, ""):
        raise ValidationError("amount is required")
    try:
        appointment, stamp = appointment_service.register_payment(
            get_integrations(),
            appointment_id,
            payload.get("amount"),
            payload.get("method"),
            add_stamp=_as_bool(payload.get("addStamp")),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to register payment", exc)
    return jsonify({"appointment": appointment.to_dict(), "stamp": stamp}), 200


@bp.delete("/appointments/<appointment_id>")
@require_admin
def cancel_appointment(appointment_id: str) -> tuple[dict[str, object], int]:
    try:
        appointment = appointment_service.cancel_appointment(get_integrations(), appointment_id)
    except SQLAlchemyError as exc:
        return _database_error("Failed to cancel appointment", exc)
    return jsonify({"message": "Appointment cancelled", "appointment": appointment.to_dict()}), 200
