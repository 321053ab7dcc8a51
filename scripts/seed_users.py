"""
authcore - Database Seed Script

Creates an initial admin user, and optionally one demo user per
built-in role, for development.

Usage:
    python -m scripts.seed_users --admin-email admin@example.local
    python -m scripts.seed_users --demo
"""

import argparse
import getpass
import secrets

from sqlmodel import Session, select

from authcore.auth.credentials import normalize_username
from authcore.auth.database import get_engine, init_db
from authcore.auth.models import Role, User
from authcore.auth.password import hash_password
from authcore.config import settings


def create_user(session: Session, email: str, password: str, role: Role, first_name: str = "") -> bool:
    """Add a user unless the email is taken. Returns True if created."""
    email = normalize_username(email)
    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        print(f"User {email} already exists.")
        return False

    session.add(
        User(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            role=role,
            is_active=True,
        )
    )
    print(f"Created user: {email} ({role.value})")
    return True


def seed_admin_user(email: str, password: str) -> None:
    engine = get_engine(settings.DATABASE_URL)
    init_db(engine)

    with Session(engine) as session:
        create_user(session, email, password, Role.ADMIN, first_name="Admin")
        session.commit()


def seed_demo_users(domain: str) -> None:
    """One user per built-in role, each with a random password printed once."""
    engine = get_engine(settings.DATABASE_URL)
    init_db(engine)

    with Session(engine) as session:
        for role in Role:
            if role == Role.ADMIN:
                continue
            password = secrets.token_urlsafe(12)
            email = f"{role.value.lower()}@{domain}"
            if create_user(session, email, password, role, first_name=role.value.title()):
                print(f"  Password: {password}")
        session.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed authcore users")
    parser.add_argument("--admin-email", default="admin@authcore.local")
    parser.add_argument("--demo", action="store_true", help="Create one user per built-in role")
    parser.add_argument("--demo-domain", default="authcore.local")
    args = parser.parse_args()

    print("=" * 50)
    print("authcore - User Seed Script")
    print("=" * 50)

    password = getpass.getpass(f"Password for {args.admin_email}: ")
    if len(password) < 8:
        parser.error("Admin password must be at least 8 characters")
    seed_admin_user(args.admin_email, password)

    if args.demo:
        print()
        seed_demo_users(args.demo_domain)

    print()
    print("Done!")


if __name__ == "__main__":
    main()
