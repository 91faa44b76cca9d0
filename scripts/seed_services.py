#!/usr/bin/env python3
"""Seed the service catalog."""
import sys
from pathlib import Path

# Add the parent directory to the path so we can import the app
sys.path.insert(0, str(Path(__file__).parent.parent))

from salonpass import create_app
from salonpass.extensions import db
from salonpass.models import Service

SERVICES = [
    {"name": "Depilación Facial", "price_cents": 35000, "duration_minutes": 40, "category": "Facial"},
    {"name": "HiFU Abdomen", "price_cents": 150000, "duration_minutes": 60, "category": "Facial"},
    {"name": "Depilación Corporal", "price_cents": 35000, "duration_minutes": 30, "category": "Depilación"},
    {"name": "PQT Despigmentante", "price_cents": 40000, "duration_minutes": 30, "category": "Facial"},
    {"name": "Facial Anti-edad", "price_cents": 50000, "duration_minutes": 60, "category": "Facial"},
    {"name": "Masaje Reafirmante", "price_cents": 100000, "duration_minutes": 60, "category": "Masajes"},
    {"name": "Drenaje Linfático", "price_cents": 65000, "duration_minutes": 60, "category": "Masajes"},
    {"name": "Facial Colágeno", "price_cents": 70000, "duration_minutes": 60, "category": "Facial"},
    {"name": "Limpieza Profunda", "price_cents": 70000, "duration_minutes": 60, "category": "Facial"},
    {"name": "Depilación General", "price_cents": 58000, "duration_minutes": 60, "category": "Depilación"},
]

def seed_services():
    """Insert missing services and refresh price/duration of existing ones."""
    app = create_app()

    with app.app_context():
        created = updated = 0
        for data in SERVICES:
            service = Service.query.filter_by(name=data["name"]).first()
            if service is None:
                db.session.add(Service(active=True, **data))
                created += 1
            else:
                service.price_cents = data["price_cents"]
                service.duration_minutes = data["duration_minutes"]
                service.category = data["category"]
                updated += 1

        db.session.commit()
        print(f"✅ Services seeded: {created} created, {updated} updated")

if __name__ == "__main__":
    seed_services()
