"""
Credit ledger - one integer balance per user.

Balances are only ever read and written through the connection of the
transaction that motivates the change, so a check followed by a debit is
serialized against every other writer by the store's write lock.
"""

import sqlite3
from typing import Optional

from . import audit
from .db import transaction
from .errors import InsufficientCreditsError, NotFoundError, ReasonCode, ValidationError
from .schema import now_ms
from ..util.logging import logger


def get_balance(conn: sqlite3.Connection, user_id: int) -> int:
    """Current balance, 0 when the user has no ledger entry yet."""
    row = conn.execute("SELECT balance FROM user_credits WHERE user_id = ?", (user_id,)).fetchone()
    return row["balance"] if row else 0


def apply_credit_delta(conn: sqlite3.Connection, user_id: int, delta: int,
                       updated_at: Optional[int] = None) -> int:
    """Add delta to the user's balance, creating the entry on first use. Returns the new balance."""
    updated_at = updated_at if updated_at is not None else now_ms()
    conn.execute('''
        INSERT INTO user_credits (user_id, balance, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET balance = balance + excluded.balance, updated_at = excluded.updated_at
    ''', (user_id, delta, updated_at))
    return get_balance(conn, user_id)


def has_sufficient_credits(balance: int, cost: int) -> bool:
    """A command may run only if the balance is positive and covers its cost."""
    return balance > 0 and balance >= cost


def debit(conn: sqlite3.Connection, user_id: int, amount: int, updated_at: Optional[int] = None) -> int:
    """
    Check-and-debit inside an open transaction.

    Raises InsufficientCreditsError without touching the ledger when the
    balance does not cover the amount.
    """
    balance = get_balance(conn, user_id)
    if balance < amount:
        raise InsufficientCreditsError(required=amount, available=balance)
    return apply_credit_delta(conn, user_id, -amount, updated_at)


def adjust_credits(user_id: int, amount: int, reason: Optional[str] = None,
                   adjusted_by: Optional[int] = None) -> int:
    """Administrative adjustment; positive adds, negative deducts (may go below zero)."""
    if amount == 0:
        raise ValidationError(ReasonCode.INVALID_AMOUNT, "amount must be non-zero")

    reason = reason or "manual_adjustment"
    with transaction() as conn:
        if not conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone():
            raise NotFoundError("User", user_id)

        balance = apply_credit_delta(conn, user_id, amount)
        audit.write_audit_log(conn, audit.CREDITS_UPDATED, user_id, {
            "amount": amount,
            "new_balance": balance,
            "reason": reason,
            "adjusted_by": adjusted_by,
        })

    logger.log_ledger_change(user_id, amount, balance, reason)
    return balance
