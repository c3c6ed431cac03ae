#!/usr/bin/env python3
"""
Create the default admin user if it does not exist yet. Safe to run repeatedly.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from gateway.core.db import init_db
from gateway.core.errors import GatewayError
from gateway.core.users import create_user, get_user_by_email

DEFAULT_ADMIN_EMAIL = "admin@example.com"
DEFAULT_ADMIN_NAME = "Admin User"
DEFAULT_ADMIN_CREDITS = 1000


def seed_admin(email: str = DEFAULT_ADMIN_EMAIL, name: str = DEFAULT_ADMIN_NAME,
               credits: int = DEFAULT_ADMIN_CREDITS):
    """Return (user, created). An existing user with the email is returned unchanged."""
    existing = get_user_by_email(email)
    if existing:
        return existing, False

    user = create_user(name=name, role="admin", email=email, initial_credits=credits)
    return user, True


def main():
    parser = argparse.ArgumentParser(description="Seed the default admin user")
    parser.add_argument("--email", default=DEFAULT_ADMIN_EMAIL, help="Admin email (default: %(default)s)")
    parser.add_argument("--name", default=DEFAULT_ADMIN_NAME, help="Admin display name")
    parser.add_argument("--credits", type=int, default=DEFAULT_ADMIN_CREDITS,
                        help="Initial credits for a newly created admin (default: %(default)s)")
    args = parser.parse_args()

    try:
        init_db()
        user, created = seed_admin(args.email, args.name, args.credits)
    except GatewayError as e:
        print(f"❌ Seeding failed: {e.message}")
        return 1

    if created:
        print(f"✓ Created admin user {user.id} ({user.email}) with {args.credits} credits")
    else:
        print(f"ℹ️  Admin user already exists: {user.id} ({user.email})")
    print(f"   Use header X-User-Id: {user.id} to call admin endpoints")
    return 0


if __name__ == "__main__":
    sys.exit(main())
