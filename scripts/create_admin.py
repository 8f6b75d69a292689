import os
import sys
import argparse
import getpass

# Ensure project root is on sys.path
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from paper_app import create_app, db
from paper_app.models import ROLES, User
from sqlalchemy import select
from werkzeug.security import generate_password_hash


def create_user(username: str, password: str, role: str = "admin", full_name: str = None) -> None:
    role = role.strip().lower()
    if role not in ROLES:
        print(f"Unknown role '{role}'. Choose one of: {', '.join(ROLES)}")
        return
    app = create_app()
    with app.app_context():
        u = db.session.execute(select(User).filter_by(username=username)).scalars().first()
        if u:
            u.password_hash = generate_password_hash(password)
            u.role = role
            db.session.commit()
            print(f"Updated existing user '{username}' (role '{role}', password reset).")
            return
        db.session.add(User(
            username=username,
            full_name=full_name or username,
            password_hash=generate_password_hash(password),
            role=role,
        ))
        db.session.commit()
        print(f"Created user '{username}' with role '{role}'.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create (or reset) an admin or staff account.")
    parser.add_argument("--username", required=True)
    parser.add_argument("--role", default="admin", help=f"One of: {', '.join(ROLES)}")
    parser.add_argument("--full-name", default=None)
    parser.add_argument("--password", default=None, help="Prompted for when omitted")
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    if not password:
        print("Password must not be empty.")
        sys.exit(1)
    create_user(args.username, password, args.role, args.full_name)
