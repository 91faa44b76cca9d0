import logging

from flask import Flask
from flask_cors import CORS

from .config import Config
from .errors import register_error_handlers
from .extensions import db, scheduler
from .routes import bp
from .routes_extended import bp_apple, bp_ext
from .services import build_integrations


def create_app(config_object=None, integrations=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(config_object or Config)
    app.config.from_envvar("APP_SETTINGS", silent=True)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)

    # Allow the dashboard and landing page to talk to the backend
    CORS(app,
         origins=app.config["CORS_ORIGINS"],
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
    )

    app.register_blueprint(bp)
    app.register_blueprint(bp_ext)
    app.register_blueprint(bp_apple)
    register_error_handlers(app)

    app.extensions["integrations"] = integrations or build_integrations(app.config)

    return app


def start_scheduler(app: Flask) -> None:
    """Register the background jobs and start the scheduler thread."""
    from .services.digest import run_digest
    from .services.reminders import run_reminder_sweep

    def reminder_job() -> None:
        with app.app_context():
            try:
                run_reminder_sweep(app.extensions["integrations"].whatsapp)
            except Exception:
                db.session.rollback()
                app.logger.exception("Reminder sweep failed")

    def digest_job() -> None:
        with app.app_context():
            try:
                run_digest()
            except Exception:
                db.session.rollback()
                app.logger.exception("Admin digest failed")

    scheduler.add_job(
        reminder_job,
        "interval",
        minutes=app.config["REMINDER_INTERVAL_MINUTES"],
        id="reminder_sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        digest_job,
        "interval",
        hours=1,
        id="admin_digest",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logging.getLogger(__name__).info(
        "Scheduler started (reminders every %s min)", app.config["REMINDER_INTERVAL_MINUTES"]
    )
