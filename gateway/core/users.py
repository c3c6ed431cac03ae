"""
User lookup and minimal creation. API-key issuance is handled outside the core.
"""

import sqlite3
from typing import Any, Dict, List, Optional

from . import audit
from .credits import apply_credit_delta, get_balance
from .db import get_db, transaction
from .errors import NotFoundError, ReasonCode, ValidationError
from .schema import User, ROLES, now_ms
from ..util.logging import logger


def load_user(conn: sqlite3.Connection, user_id: int) -> User:
    """Fetch a user inside an open connection or raise NotFoundError."""
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        raise NotFoundError("User", user_id)
    return User.from_row(row)


def get_user(user_id: int) -> Optional[User]:
    """Get a user by id, or None."""
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return User.from_row(row) if row else None


def get_user_by_email(email: str) -> Optional[User]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    return User.from_row(row) if row else None


def create_user(name: str, role: str = "member", email: Optional[str] = None,
                initial_credits: int = 0, created_by: Optional[int] = None) -> User:
    """Create a user, optionally funding their ledger in the same transaction."""
    if not name or not name.strip():
        raise ValidationError(ReasonCode.INVALID_USER, "name cannot be empty")
    if role not in ROLES:
        raise ValidationError(ReasonCode.INVALID_USER, f"role must be one of: {ROLES}")
    if initial_credits < 0:
        raise ValidationError(ReasonCode.INVALID_USER, "initial_credits cannot be negative")

    created_at = now_ms()
    with transaction() as conn:
        if email and conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
            raise ValidationError(ReasonCode.INVALID_USER, f"email already registered: {email}")

        cursor = conn.execute(
            "INSERT INTO users (name, email, role, created_at) VALUES (?, ?, ?, ?)",
            (name.strip(), email, role, created_at)
        )
        user_id = cursor.lastrowid

        audit.write_audit_log(conn, audit.USER_CREATED, user_id, {
            "created_by": created_by,
            "email": email,
            "name": name.strip(),
            "role": role,
            "initial_credits": initial_credits,
        }, created_at=created_at)

        if initial_credits > 0:
            balance = apply_credit_delta(conn, user_id, initial_credits)
            audit.write_audit_log(conn, audit.CREDITS_UPDATED, user_id, {
                "amount": initial_credits,
                "new_balance": balance,
                "reason": "initial_credits",
                "adjusted_by": created_by,
            }, created_at=created_at)

    logger.info(f"Created {role} user {user_id} ({name.strip()})")
    return User(id=user_id, name=name.strip(), role=role, created_at=created_at, email=email)


def list_users() -> List[Dict[str, Any]]:
    """List all users with their current credit balance."""
    with get_db() as conn:
        rows = conn.execute('''
            SELECT u.*, COALESCE(c.balance, 0) AS credits
            FROM users u LEFT JOIN user_credits c ON c.user_id = u.id
            ORDER BY u.created_at, u.id
        ''').fetchall()

    return [
        {
            "id": row["id"],
            "name": row["name"],
            "email": row["email"],
            "role": row["role"],
            "credits": row["credits"],
            "created_at": row["created_at"],
        }
        for row in rows
    ]


def get_me(user_id: int) -> Dict[str, Any]:
    """Current user details and credit balance."""
    with get_db() as conn:
        user = load_user(conn, user_id)
        balance = get_balance(conn, user_id)

    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role, "credits": balance}
