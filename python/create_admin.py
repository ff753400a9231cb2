#!/usr/bin/env python3
"""
Administrator Account Script for the Client Verification Portal

Creates an admin login and, optionally, enables TOTP two-factor
authentication for it. There is no self-registration endpoint; this is
how admins are provisioned.

Usage:
    python create_admin.py --email admin@example.com [--enable-2fa] [--create-tables]
"""

import sys
import argparse
import getpass
import logging
from pathlib import Path
from typing import Optional, Tuple

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent))

from sqlalchemy.orm import Session

from auth import generate_totp_secret, hash_password, provisioning_uri
from database.connection import init_db, close_db
from database.models import AdminAccount
from database.repositories import AdminRepository
from errors import ValidationError
from text_utils import is_valid_email, normalize_email

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def create_admin(
    session: Session,
    email: str,
    password: str,
    enable_2fa: bool = False
) -> Tuple[AdminAccount, Optional[str]]:
    """
    Create an administrator.

    Args:
        session: Database session (flushed, not committed)
        email: Login email
        password: Plain password, hashed before storage
        enable_2fa: Generate a TOTP secret and require it at login

    Returns:
        Tuple of (admin, TOTP secret or None)

    Raises:
        ValidationError: Bad email, short password or duplicate admin
    """
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationError("invalid email", field="email")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            field="password"
        )

    repo = AdminRepository(session)
    admin = repo.create(email, hash_password(password))

    secret = None
    if enable_2fa:
        secret = generate_totp_secret()
        repo.set_two_factor(admin, secret, enabled=True)
    return admin, secret


def main():
    parser = argparse.ArgumentParser(description="Create a Client Verification Portal administrator")
    parser.add_argument("--email", required=True, help="Admin login email")
    parser.add_argument("--password", help="Admin password (prompted when omitted)")
    parser.add_argument("--enable-2fa", action="store_true", help="Enable TOTP two-factor authentication")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    password = args.password or getpass.getpass("Password: ")

    try:
        db = init_db()
        if args.create_tables:
            db.create_tables()

        with db.session_scope() as session:
            admin, secret = create_admin(session, args.email, password, enable_2fa=args.enable_2fa)
            logger.info(f"Admin created: id={admin.id} email={admin.email}")
            if secret:
                print(f"TOTP secret: {secret}")
                print(f"Provisioning URI: {provisioning_uri(secret, admin.email)}")
    except ValidationError as e:
        logger.error(f"Could not create admin: {e}")
        sys.exit(1)
    finally:
        close_db()


if __name__ == "__main__":
    main()
