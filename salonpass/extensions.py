"""Shared Flask extensions for the application."""
from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler
from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy database instance shared across the app.
db = SQLAlchemy()

# Background jobs (reminder sweep, admin digest). Started from run.py only.
scheduler = BackgroundScheduler(timezone="UTC")
