"""Extended routes: WhatsApp webhooks, wallet push, notifications, gift cards, client records and Apple PassKit."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import Blueprint, Response, current_app, jsonify, request
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .errors import NotFound, Unauthorized, UpstreamFailure, ValidationError
from .extensions import db
from .models import GIFT_CARD_STATUSES, Appointment, Card, Event, GiftCard, InboundMessage, Notification, WalletDevice
from .routes import _database_error, _pagination_args, require_admin
from .services import get_integrations
from .services import client_records as record_service
from .services import gift_cards as gift_card_service
from .services.broadcast import broadcast
from .services.cards import get_card
from .services.reminders import run_reminder_sweep
from .services.replies import ACTIVE_STATUSES, handle_inbound_message
from .utils import business_tz, utc_now

bp_ext = Blueprint("api_ext", __name__)
bp_apple = Blueprint("apple", __name__, url_prefix="/apple/v1")

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


# --- WhatsApp webhooks ---


@bp_ext.post("/webhook/whatsapp")
def twilio_webhook() -> Response:
    """Inbound Twilio WhatsApp message.

    Always answers 200 with empty TwiML so Twilio never retries.
    """
    form = request.form
    sender = (form.get("From") or "").replace("whatsapp:", "")
    # Quick-reply buttons carry their payload separately from the body
    body = form.get("ButtonPayload") or form.get("ButtonText") or form.get("Body")
    try:
        outcome = handle_inbound_message(
            get_integrations(),
            "twilio",
            sender,
            body,
            name=form.get("ProfileName"),
            message_id=form.get("MessageSid"),
        )
        current_app.logger.info("Twilio webhook from %s: %s", sender, outcome)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Twilio webhook processing failed")
    return Response(EMPTY_TWIML, status=200, mimetype="text/xml")


def _evolution_message(data: dict) -> tuple[str | None, str | None, str | None, str | None]:
    """Extract (phone, text, name, message id) from a messages.upsert payload."""
    message = (data.get("messages") or [None])[0] or data
    key = message.get("key") or {}
    if key.get("fromMe"):
        return None, None, None, None

    phone = (key.get("remoteJid") or "").split("@")[0]
    name = data.get("pushName") or message.get("pushName")
    content = message.get("message") or {}

    votes = (data.get("pollUpdate") or {}).get("votes") or []
    if votes:
        text = votes[0].get("optionName") or votes[0].get("name")
    else:
        text = (
            content.get("conversation")
            or (content.get("extendedTextMessage") or {}).get("text")
            or data.get("body")
        )
    return phone, text, name, key.get("id")


@bp_ext.post("/webhook/evolution")
def evolution_webhook() -> tuple[dict[str, object], int]:
    """Inbound Evolution API event. Always answers 200."""
    payload = request.get_json(silent=True) or {}
    event = payload.get("event")
    try:
        if event == "messages.upsert":
            phone, text, name, message_id = _evolution_message(payload.get("data") or {})
            if phone:
                outcome = handle_inbound_message(
                    get_integrations(), "evolution", phone, text, name=name, message_id=message_id
                )
                current_app.logger.info("Evolution webhook from %s: %s", phone, outcome)
        elif event == "connection.update":
            data = payload.get("data") or {}
            current_app.logger.info("Evolution connection state: %s", data.get("state") or data.get("status"))
        else:
            current_app.logger.debug("Evolution event %s ignored", event)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Evolution webhook processing failed")
    return jsonify({"received": True}), 200


# --- Wallet push ---


@bp_ext.post("/admin/push-notification")
@require_admin
def push_notification() -> tuple[dict[str, object], int]:
    """Send a message to every active card's wallet pass.
    ---
    tags:
      - Notifications
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            title:
              type: string
            message:
              type: string
            type:
              type: string
    responses:
      200:
        description: Delivery totals per platform
      400:
        description: Missing title or message
    """
    payload = request.get_json(silent=True) or {}
    try:
        totals = broadcast(
            get_integrations().wallet,
            payload.get("title"),
            payload.get("message"),
            kind=payload.get("type"),
            delay=current_app.config["BROADCAST_DELAY_SECONDS"],
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to send push notification", exc)
    return jsonify(totals), 200


@bp_ext.get("/admin/notifications")
@require_admin
def broadcast_history() -> tuple[dict[str, object], int]:
    history = (
        Notification.query.filter(Notification.notification_type == "broadcast")
        .order_by(Notification.created_at.desc(), Notification.notification_id.desc())
        .limit(50)
        .all()
    )
    return jsonify({"notifications": [entry.to_dict() for entry in history]}), 200


@bp_ext.get("/public/cards/<card_id>/pass.pkpass")
def download_pass(card_id: str) -> Response:
    """Apple Wallet pass download for the client's own card."""
    card = get_card(card_id)
    return _pkpass_response(card)


def _pkpass_response(card: Card) -> Response:
    try:
        data = get_integrations().passes.bundle(card)
    except (OSError, ValueError) as exc:
        current_app.logger.error("Could not sign pass for card %s: %s", card.card_id, exc)
        raise UpstreamFailure("Apple pass signing failed") from exc
    response = Response(data, status=200, mimetype="application/vnd.apple.pkpass")
    response.headers["Content-Disposition"] = f"attachment; filename={card.card_id}.pkpass"
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    response.last_modified = card.updated_at.replace(tzinfo=timezone.utc)
    return response


# --- Internal notifications ---


@bp_ext.get("/notifications")
@require_admin
def list_notifications() -> tuple[dict[str, object], int]:
    """Internal dashboard feed (appointments, birthdays, completed cards).
    ---
    tags:
      - Notifications
    parameters:
      - name: page
        in: query
        type: integer
        default: 1
      - name: limit
        in: query
        type: integer
        default: 20
      - name: unreadOnly
        in: query
        type: boolean
        default: false
    responses:
      200:
        description: List of notifications with pagination
    """
    page, limit = _pagination_args()
    unread_only = request.args.get("unreadOnly", "false").lower() == "true"

    query = Notification.query.filter(Notification.notification_type != "broadcast")
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))

    total = query.count()
    unread = (
        Notification.query.filter(
            Notification.notification_type != "broadcast", Notification.is_read.is_(False)
        ).count()
    )
    notifications = (
        query.order_by(Notification.created_at.desc(), Notification.notification_id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
        .all()
    )
    return (
        jsonify(
            {
                "notifications": [entry.to_dict() for entry in notifications],
                "unreadCount": unread,
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


@bp_ext.patch("/notifications/<int:notification_id>/read")
@require_admin
def mark_notification_read(notification_id: int) -> tuple[dict[str, object], int]:
    notification = db.session.get(Notification, notification_id)
    if notification is None:
        raise NotFound("notification not found")
    try:
        notification.is_read = True
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to mark notification as read", exc)
    return jsonify({"notification": notification.to_dict()}), 200


@bp_ext.get("/admin/messages")
@require_admin
def list_inbound_messages() -> tuple[dict[str, object], int]:
    page, limit = _pagination_args(default_limit=50)
    query = InboundMessage.query
    if request.args.get("phone"):
        query = query.filter(InboundMessage.phone.like(f"%{request.args['phone'].strip()[-10:]}"))
    total = query.count()
    messages = (
        query.order_by(InboundMessage.created_at.desc(), InboundMessage.inbound_message_id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
        .all()
    )
    unread = InboundMessage.query.filter(InboundMessage.is_read.is_(False)).count()
    return (
        jsonify(
            {
                "messages": [message.to_dict() for message in messages],
                "unreadCount": unread,
                "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
            }
        ),
        200,
    )


@bp_ext.patch("/admin/messages/<int:message_id>/read")
@require_admin
def mark_message_read(message_id: int) -> tuple[dict[str, object], int]:
    message = db.session.get(InboundMessage, message_id)
    if message is None:
        raise NotFound("message not found")
    try:
        message.is_read = True
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to mark message as read", exc)
    return jsonify({"message": message.to_dict()}), 200


# --- Reports and operations ---


@bp_ext.get("/admin/metrics")
@require_admin
def metrics() -> tuple[dict[str, object], int]:
    now = utc_now()
    local_today = now.replace(tzinfo=timezone.utc).astimezone(business_tz()).date()
    day_start = (
        datetime.combine(local_today, datetime.min.time(), tzinfo=business_tz())
        .astimezone(timezone.utc)
        .replace(tzinfo=None)
    )
    day_end = day_start + timedelta(days=1)

    events_today = dict(
        db.session.query(Event.event_type, func.count(Event.event_id))
        .filter(Event.created_at >= day_start, Event.created_at < day_end)
        .group_by(Event.event_type)
        .all()
    )
    return (
        jsonify(
            {
                "total": Card.query.count(),
                "active": Card.query.filter_by(status="active").count(),
                "full": Card.query.filter(Card.stamps >= Card.max_stamps).count(),
                "stampsToday": events_today.get("STAMP", 0),
                "redeemsToday": events_today.get("REDEEM", 0),
                "appointmentsToday": Appointment.query.filter(
                    Appointment.date == local_today.isoformat(),
                    Appointment.status != "cancelled",
                ).count(),
            }
        ),
        200,
    )


@bp_ext.post("/admin/calendar/resync")
@require_admin
def resync_calendar() -> tuple[dict[str, object], int]:
    """Re-mirror every upcoming active appointment to both calendars."""
    appointments = (
        Appointment.query.filter(
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.starts_at >= utc_now(),
        )
        .order_by(Appointment.starts_at.asc())
        .all()
    )
    summary = get_integrations().calendar.resync_active(appointments)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to save calendar resync", exc)
    return jsonify(summary), 200


@bp_ext.post("/admin/reminders/run")
@require_admin
def run_reminders() -> tuple[dict[str, object], int]:
    try:
        summary = run_reminder_sweep(get_integrations().whatsapp)
    except SQLAlchemyError as exc:
        return _database_error("Reminder sweep failed", exc)
    return jsonify(summary), 200


# --- Gift cards ---


@bp_ext.get("/giftcards")
@require_admin
def list_gift_cards() -> tuple[dict[str, object], int]:
    page, limit = _pagination_args()
    status = (request.args.get("status") or "").strip() or None
    if status is not None and status not in GIFT_CARD_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(GIFT_CARD_STATUSES)}")

    query = gift_card_service.search_gift_cards(request.args.get("q"), status)
    total = query.count()
    gift_cards = query.limit(limit).offset((page - 1) * limit).all()
    counts = dict(
        db.session.query(GiftCard.status, func.count(GiftCard.gift_card_id)).group_by(GiftCard.status).all()
    )
    stats = {name: counts.get(name, 0) for name in GIFT_CARD_STATUSES}
    stats["total"] = sum(counts.values())
    return (
        jsonify(
            {
                "giftCards": [gift_card.to_dict() for gift_card in gift_cards],
                "stats": stats,
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


@bp_ext.post("/giftcards")
@require_admin
def issue_gift_card() -> tuple[dict[str, object], int]:
    """Issue a gift card.
    ---
    tags:
      - Gift cards
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            amount:
              type: number
            serviceId:
              type: string
            recipientName:
              type: string
            recipientPhone:
              type: string
            purchaserName:
              type: string
            purchaserPhone:
              type: string
            message:
              type: string
            expiresAt:
              type: string
              description: YYYY-MM-DD, defaults to GIFT_CARD_VALID_DAYS from today
    responses:
      201:
        description: Gift card issued
      400:
        description: Invalid payload
      404:
        description: Service not found
    """
    payload = request.get_json(silent=True) or {}
    try:
        gift_card = gift_card_service.issue_gift_card(
            payload.get("amount"),
            service_id=payload.get("serviceId"),
            recipient_name=payload.get("recipientName"),
            recipient_phone=payload.get("recipientPhone"),
            purchaser_name=payload.get("purchaserName"),
            purchaser_phone=payload.get("purchaserPhone"),
            message=payload.get("message"),
            expires_on=payload.get("expiresAt"),
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to issue gift card", exc)
    return jsonify({"giftCard": gift_card.to_dict()}), 201


@bp_ext.get("/giftcards/<code>")
@require_admin
def get_gift_card(code: str) -> tuple[dict[str, object], int]:
    return jsonify({"giftCard": gift_card_service.get_gift_card(code).to_dict()}), 200


@bp_ext.post("/giftcards/<code>/redeem")
@require_admin
def redeem_gift_card(code: str) -> tuple[dict[str, object], int]:
    """Spend from a gift card balance.
    ---
    tags:
      - Gift cards
    responses:
      200:
        description: Balance updated
      400:
        description: Amount invalid or above the remaining balance
      404:
        description: Gift card not found
      409:
        description: Gift card already used or expired
    """
    payload = request.get_json(silent=True) or {}
    try:
        gift_card = gift_card_service.redeem_gift_card(code, payload.get("amount"))
    except SQLAlchemyError as exc:
        return _database_error("Failed to redeem gift card", exc)
    return jsonify({"giftCard": gift_card.to_dict()}), 200


# --- Client records ---


@bp_ext.get("/client-records/card/<card_id>")
@require_admin
def get_client_record(card_id: str) -> tuple[dict[str, object], int]:
    """Return the client's record, opening one on first access."""
    try:
        record = record_service.get_or_create_record(card_id)
    except SQLAlchemyError as exc:
        return _database_error("Failed to open client record", exc)
    history = record_service.record_history(record)
    return (
        jsonify(
            {
                "record": record.to_dict(include_sessions=True),
                "client": record.card.to_dict(),
                "events": [event.to_dict() for event in history["events"]],
                "appointments": [appointment.to_dict() for appointment in history["appointments"]],
            }
        ),
        200,
    )


@bp_ext.put("/client-records/<record_id>")
@require_admin
def update_client_record(record_id: str) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        record = record_service.update_record(record_id, payload)
    except SQLAlchemyError as exc:
        return _database_error("Failed to update client record", exc)
    return jsonify({"record": record.to_dict()}), 200


@bp_ext.get("/client-records/<record_id>/sessions")
@require_admin
def list_treatment_sessions(record_id: str) -> tuple[dict[str, object], int]:
    record = record_service.get_record(record_id)
    return jsonify({"sessions": [session.to_dict() for session in record.sessions]}), 200


@bp_ext.post("/client-records/<record_id>/sessions")
@require_admin
def add_treatment_session(record_id: str) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        session = record_service.add_session(record_id, payload)
    except SQLAlchemyError as exc:
        return _database_error("Failed to add treatment session", exc)
    return jsonify({"session": session.to_dict()}), 201


@bp_ext.put("/client-records/sessions/<int:session_id>")
@require_admin
def update_treatment_session(session_id: int) -> tuple[dict[str, object], int]:
    payload = request.get_json(silent=True) or {}
    try:
        session = record_service.update_session(session_id, payload)
    except SQLAlchemyError as exc:
        return _database_error("Failed to update treatment session", exc)
    return jsonify({"session": session.to_dict()}), 200


@bp_ext.delete("/client-records/sessions/<int:session_id>")
@require_admin
def delete_treatment_session(session_id: int) -> tuple[dict[str, object], int]:
    try:
        record_service.delete_session(session_id)
    except SQLAlchemyError as exc:
        return _database_error("Failed to delete treatment session", exc)
    return jsonify({"deleted": True}), 200


@bp_ext.get("/client-records/<record_id>/summary")
@require_admin
def client_record_summary(record_id: str) -> tuple[dict[str, object], int]:
    return jsonify(record_service.record_summary(record_id)), 200


# --- Apple PassKit web service ---


def require_apple_token(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("APPLE_AUTH_TOKEN")
        if not expected or request.headers.get("Authorization") != f"ApplePass {expected}":
            current_app.logger.warning("Rejected Apple web service call to %s", request.path)
            raise Unauthorized("invalid ApplePass token")
        return view(*args, **kwargs)

    return wrapper


def _check_pass_type(pass_type_id: str) -> None:
    if pass_type_id != current_app.config.get("APPLE_PASS_TYPE_ID"):
        raise NotFound("unknown pass type")


@bp_apple.post("/devices/<device_id>/registrations/<pass_type_id>/<serial>")
@require_apple_token
def register_device(device_id: str, pass_type_id: str, serial: str):
    _check_pass_type(pass_type_id)
    payload = request.get_json(silent=True) or {}
    push_token = payload.get("pushToken")
    if not push_token:
        return jsonify({"error": "invalid_payload", "message": "pushToken is required"}), 400
    get_card(serial)

    device = WalletDevice.query.filter_by(
        device_id=device_id, pass_type_id=pass_type_id, serial_number=serial
    ).first()
    try:
        if device is not None:
            device.push_token = push_token
            db.session.commit()
            return "", 200
        db.session.add(
            WalletDevice(
                platform="apple",
                device_id=device_id,
                push_token=push_token,
                pass_type_id=pass_type_id,
                serial_number=serial,
            )
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to register wallet device", exc)
    current_app.logger.info("Registered Apple device %s... for card %s", device_id[:10], serial)
    return "", 201


@bp_apple.delete("/devices/<device_id>/registrations/<pass_type_id>/<serial>")
@require_apple_token
def unregister_device(device_id: str, pass_type_id: str, serial: str):
    try:
        WalletDevice.query.filter_by(
            device_id=device_id, pass_type_id=pass_type_id, serial_number=serial
        ).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error("Failed to unregister wallet device", exc)
    current_app.logger.info("Unregistered Apple device %s... for card %s", device_id[:10], serial)
    return "", 200


@bp_apple.get("/devices/<device_id>/registrations/<pass_type_id>")
def updatable_serials(device_id: str, pass_type_id: str):
    query = (
        db.session.query(Card)
        .join(WalletDevice, WalletDevice.serial_number == Card.card_id)
        .filter(WalletDevice.device_id == device_id, WalletDevice.pass_type_id == pass_type_id)
    )
    since = request.args.get("passesUpdatedSince")
    if since:
        try:
            since_at = datetime.fromtimestamp(int(since), tz=timezone.utc).replace(tzinfo=None)
        except ValueError:
            return jsonify({"error": "invalid_payload", "message": "passesUpdatedSince must be a timestamp"}), 400
        query = query.filter(Card.updated_at > since_at)

    cards = query.all()
    if not cards:
        return "", 204
    latest = max(card.updated_at for card in cards)
    return (
        jsonify(
            {
                "serialNumbers": [card.card_id for card in cards],
                "lastUpdated": str(int(latest.replace(tzinfo=timezone.utc).timestamp())),
            }
        ),
        200,
    )


@bp_apple.get("/passes/<pass_type_id>/<serial>")
@require_apple_token
def latest_pass(pass_type_id: str, serial: str):
    _check_pass_type(pass_type_id)
    card = get_card(serial)
    modified_since = request.if_modified_since
    if modified_since is not None:
        updated = card.updated_at.replace(microsecond=0, tzinfo=timezone.utc)
        if updated <= modified_since:
            return "", 304
    return _pkpass_response(card)


@bp_apple.post("/log")
def apple_log():
    payload = request.get_json(silent=True) or {}
    for entry in payload.get("logs") or []:
        current_app.logger.info("Apple Wallet log: %s", entry)
    return "", 200
