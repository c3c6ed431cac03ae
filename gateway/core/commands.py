"""
Command admission pipeline.

A submission is matched against the requester's active rules and resolved to
one of three outcomes (executed, rejected, needs_approval) inside a single
transaction: the command row, any debit and the audit entries commit together
or not at all.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional

from . import audit
from .config import MAX_COMMAND_LENGTH
from .credits import debit, get_balance, has_sufficient_credits
from .db import get_db, transaction
from .errors import GatewayError, ReasonCode, SubmissionError, ValidationError
from .rules import get_enabled_rules, match_command
from .schedule import to_epoch_ms
from .schema import (
    Command, SubmissionResult, ACTION_TO_STATUS, COMMAND_STATUSES,
    STATUS_EXECUTED, STATUS_REJECTED, STATUS_NEEDS_APPROVAL,
    INSUFFICIENT_CREDITS, REASON_RULE_AUTO_REJECT, REASON_NO_MATCH_AUTO_REJECT,
    mocked_output,
)
from .users import load_user
from ..util.logging import logger


def validate_command_text(command_text: str) -> str:
    if command_text is None or not command_text.strip():
        raise ValidationError(ReasonCode.INVALID_COMMAND, "command_text cannot be empty")
    if len(command_text) > MAX_COMMAND_LENGTH:
        raise ValidationError(ReasonCode.INVALID_COMMAND,
                              f"command_text exceeds {MAX_COMMAND_LENGTH} characters")
    return command_text


def submit_command(user_id: int, command_text: str, now: Optional[datetime] = None) -> SubmissionResult:
    """
    Admit a command.

    Insufficient credit is a normal outcome: the command is stored as
    rejected with reason INSUFFICIENT_CREDITS and the ledger is not touched.
    Lookup and validation errors propagate unchanged; anything unexpected is
    raised as SubmissionError after the transaction has rolled back.
    """
    validate_command_text(command_text)
    created_at = to_epoch_ms(now)

    try:
        with transaction() as conn:
            result = _admit(conn, user_id, command_text, now, created_at)
    except GatewayError:
        raise
    except (sqlite3.Error, ValueError, TypeError, KeyError) as e:
        logger.error(f"Command submission failed for user {user_id}: {e}")
        raise SubmissionError(str(e)) from e

    logger.log_command_decision(result.command_id, user_id, result.status, result.action,
                                result.cost, result.matched_rule_id)
    return result


def _admit(conn: sqlite3.Connection, user_id: int, command_text: str,
           now: Optional[datetime], created_at: int) -> SubmissionResult:
    user = load_user(conn, user_id)
    balance = get_balance(conn, user_id)

    rules = get_enabled_rules(conn, user.id, user.role, now)
    match = match_command(command_text, rules)
    rule = match.rule

    command = Command(
        id=0,
        user_id=user_id,
        command_text=command_text,
        status=ACTION_TO_STATUS[match.action],
        cost=match.cost,
        created_at=created_at,
        matched_rule_id=match.matched_rule_id,
    )

    if not has_sufficient_credits(balance, match.cost):
        command.status = STATUS_REJECTED
        command.rejection_reason = INSUFFICIENT_CREDITS
    elif command.status == STATUS_EXECUTED:
        debit(conn, user_id, match.cost, updated_at=created_at)
        command.executed_at = created_at
        command.output = mocked_output(command_text)
    elif command.status == STATUS_REJECTED:
        command.rejection_reason = REASON_RULE_AUTO_REJECT if rule else REASON_NO_MATCH_AUTO_REJECT
    elif command.status == STATUS_NEEDS_APPROVAL and rule:
        command.voting_threshold = rule.voting_threshold
        if rule.escalation.enabled and rule.escalation.delay_ms:
            command.escalation_at = created_at + rule.escalation.delay_ms

    cursor = conn.execute('''
        INSERT INTO commands (user_id, command_text, status, matched_rule_id, cost, created_at, executed_at,
                              rejection_reason, output, escalation_at, escalated, voting_threshold)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (command.user_id, command.command_text, command.status, command.matched_rule_id, command.cost,
          command.created_at, command.executed_at, command.rejection_reason, command.output,
          command.escalation_at, False, command.voting_threshold))
    command.id = cursor.lastrowid

    audit.write_audit_log(conn, audit.COMMAND_SUBMITTED, user_id, {
        "command_text": command_text,
        "action": match.action,
        "cost": match.cost,
        "matched_rule_id": command.matched_rule_id,
        "status": command.status,
    }, command_id=command.id, created_at=created_at)

    if command.status == STATUS_EXECUTED:
        audit.write_audit_log(conn, audit.COMMAND_EXECUTED, user_id, {
            "cost": command.cost,
            "output": command.output,
        }, command_id=command.id, created_at=created_at)
    elif command.status == STATUS_REJECTED:
        audit.write_audit_log(conn, audit.COMMAND_REJECTED, user_id, {
            "reason": command.rejection_reason,
            "balance": balance,
            "cost": command.cost,
        }, command_id=command.id, created_at=created_at)

    return SubmissionResult(
        command_id=command.id,
        status=command.status,
        cost=command.cost,
        action=match.action,
        matched_rule_id=command.matched_rule_id,
        output=command.output,
        rejection_reason=command.rejection_reason,
    )


def load_command(conn: sqlite3.Connection, command_id: int) -> Optional[Command]:
    row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
    return Command.from_row(row) if row else None


def get_command(command_id: int) -> Optional[Command]:
    """Get a command by id, or None."""
    with get_db() as conn:
        return load_command(conn, command_id)


def list_commands(user_id: Optional[int] = None, status: Optional[str] = None,
                  limit: Optional[int] = None) -> List[Command]:
    """List commands newest first, optionally for one user and/or one status."""
    if status is not None and status not in COMMAND_STATUSES:
        raise ValidationError(ReasonCode.INVALID_COMMAND, f"status must be one of: {COMMAND_STATUSES}")

    query = "SELECT * FROM commands WHERE 1=1"
    params = []
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id DESC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return [Command.from_row(row) for row in rows]
