"""Create a dashboard admin or reset an existing admin's password."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure the project root is on sys.path so ``salonpass`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from salonpass import create_app
from salonpass.extensions import db
from salonpass.models import AdminUser


def set_admin(email: str, password: str, name: str) -> None:
    app = create_app()
    email = email.strip().lower()

    if len(password) < 8:
        print("Error: password must be at least 8 characters")
        return

    with app.app_context():
        admin = AdminUser.query.filter_by(email=email).first()
        if admin is None:
            admin = AdminUser(name=name, email=email, password_hash="")
            db.session.add(admin)
            print(f"Created new admin: {email}")
        elif name and admin.name != name:
            print(f"Updating admin name from '{admin.name}' to '{name}'")
            admin.name = name

        admin.password_hash = generate_password_hash(password)
        db.session.commit()

        print(f"Password for admin '{email}' has been set successfully.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create or update a dashboard admin.")
    parser.add_argument("email", help="Admin email address")
    parser.add_argument("password", help="Plain-text password to hash and store")
    parser.add_argument("--name", default="Admin", help="Display name (default: Admin)")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    set_admin(args.email, args.password, args.name)


if __name__ == "__main__":
    main()
