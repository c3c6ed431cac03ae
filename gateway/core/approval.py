"""
Approval workflows - human and vote-based resolution of commands in needs_approval.

A command leaves needs_approval exactly once: by an approver's decision, by
reaching its voting threshold, or by the escalation sweep. Every path re-reads
the command inside its own transaction and refuses anything already resolved.
"""

import sqlite3
from typing import Any, Dict, List, Optional

from . import audit
from .credits import debit, get_balance
from .db import get_db, transaction
from .errors import (
    InsufficientCreditsError, NotFoundError, ReasonCode, ValidationError, not_pending_approval,
)
from .schema import (
    Command, Vote, VoteCounts, STATUS_NEEDS_APPROVAL, STATUS_EXECUTED, STATUS_REJECTED,
    VOTE_TYPES, mocked_output, now_ms,
)
from .users import load_user
from ..util.logging import logger


def _load_pending_command(conn: sqlite3.Connection, command_id: int) -> Command:
    row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
    if not row:
        raise NotFoundError("Command", command_id)
    command = Command.from_row(row)
    if command.status != STATUS_NEEDS_APPROVAL:
        raise not_pending_approval(command_id, command.status)
    return command


def count_votes(conn: sqlite3.Connection, command_id: int) -> VoteCounts:
    rows = conn.execute(
        "SELECT vote_type, COUNT(*) AS n FROM votes WHERE command_id = ? GROUP BY vote_type",
        (command_id,)
    ).fetchall()
    counts = VoteCounts()
    for row in rows:
        setattr(counts, row["vote_type"], row["n"])
    counts.total = counts.approve + counts.reject
    return counts


def _approve_in_tx(conn: sqlite3.Connection, command: Command, approver_id: int,
                   reason: Optional[str], decided_at: int):
    """Execute an approved command inside the caller's transaction."""
    balance = get_balance(conn, command.user_id)
    if balance < command.cost:
        raise InsufficientCreditsError(required=command.cost, available=balance)

    debit(conn, command.user_id, command.cost, updated_at=decided_at)
    output = mocked_output(command.command_text)

    conn.execute('''
        UPDATE commands SET status = ?, executed_at = ?, approver_id = ?, approved_at = ?,
                            approval_reason = ?, output = ?
        WHERE id = ? AND status = ?
    ''', (STATUS_EXECUTED, decided_at, approver_id, decided_at, reason, output,
          command.id, STATUS_NEEDS_APPROVAL))

    audit.write_audit_log(conn, audit.COMMAND_APPROVED, approver_id, {
        "reason": reason,
        "cost": command.cost,
    }, command_id=command.id, created_at=decided_at)
    audit.write_audit_log(conn, audit.COMMAND_EXECUTED, command.user_id, {
        "approved_by": approver_id,
        "cost": command.cost,
        "output": output,
    }, command_id=command.id, created_at=decided_at)


def cast_vote(command_id: int, user_id: int, vote_type: str) -> int:
    """
    Record or replace a user's vote on a pending command.

    When the command carries a voting threshold and the approve count reaches
    it, the command is approved in the same transaction with the tipping
    voter as approver. If that approval fails (e.g. insufficient credits)
    the vote is not recorded either.
    """
    if vote_type not in VOTE_TYPES:
        raise ValidationError(ReasonCode.INVALID_VOTE, f"vote_type must be one of: {VOTE_TYPES}")

    voted_at = now_ms()
    auto_approved = False
    with transaction() as conn:
        command = _load_pending_command(conn, command_id)
        load_user(conn, user_id)

        conn.execute('''
            INSERT INTO votes (command_id, user_id, vote_type, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(command_id, user_id) DO UPDATE SET vote_type = excluded.vote_type,
                                                          created_at = excluded.created_at
        ''', (command_id, user_id, vote_type, voted_at))
        vote_id = conn.execute(
            "SELECT id FROM votes WHERE command_id = ? AND user_id = ?", (command_id, user_id)
        ).fetchone()["id"]

        counts = count_votes(conn, command_id)
        threshold = command.voting_threshold
        if threshold and counts.approve >= threshold:
            reason = f"Auto-approved: {counts.approve} approve votes reached threshold of {threshold}"
            _approve_in_tx(conn, command, user_id, reason, voted_at)
            auto_approved = True

        audit.write_audit_log(conn, audit.VOTE_CAST, user_id, {
            "vote_type": vote_type,
            "approve_count": counts.approve,
            "reject_count": counts.reject,
        }, command_id=command_id, created_at=voted_at)

    logger.log_vote(command_id, user_id, vote_type, counts.to_dict())
    if auto_approved:
        logger.log_approval_decision(command_id, "approved", user_id, "voting threshold reached")
    return vote_id


def approve_command(command_id: int, approver_id: int, reason: Optional[str] = None) -> Command:
    """Approve and (mock-)execute a pending command, debiting the submitter."""
    decided_at = now_ms()
    with transaction() as conn:
        command = _load_pending_command(conn, command_id)
        _approve_in_tx(conn, command, approver_id, reason, decided_at)
        row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()

    logger.log_approval_decision(command_id, "approved", approver_id, reason or "")
    return Command.from_row(row)


def reject_command(command_id: int, approver_id: int, reason: str) -> Command:
    """Reject a pending command. A reason is mandatory; the ledger is untouched."""
    if not reason or not reason.strip():
        raise ValidationError(ReasonCode.REASON_REQUIRED, "A reason is required to reject a command")

    decided_at = now_ms()
    with transaction() as conn:
        command = _load_pending_command(conn, command_id)
        conn.execute('''
            UPDATE commands SET status = ?, rejection_reason = ?, approver_id = ?, approved_at = ?,
                                approval_reason = ?
            WHERE id = ? AND status = ?
        ''', (STATUS_REJECTED, reason, approver_id, decided_at, reason, command_id, STATUS_NEEDS_APPROVAL))

        audit.write_audit_log(conn, audit.COMMAND_REJECTED_BY_APPROVER, approver_id, {
            "reason": reason,
        }, command_id=command_id, created_at=decided_at)
        audit.write_audit_log(conn, audit.COMMAND_REJECTED, command.user_id, {
            "reason": reason,
            "rejected_by": approver_id,
        }, command_id=command_id, created_at=decided_at)

        row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()

    logger.log_approval_decision(command_id, "rejected", approver_id, reason)
    return Command.from_row(row)


def get_vote_counts(command_id: int) -> VoteCounts:
    with get_db() as conn:
        return count_votes(conn, command_id)


def get_votes_for_command(command_id: int) -> List[Vote]:
    """All votes on a command, oldest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM votes WHERE command_id = ? ORDER BY created_at, id", (command_id,)
        ).fetchall()
    return [Vote.from_row(row) for row in rows]


def get_pending_approvals() -> List[Dict[str, Any]]:
    """Commands awaiting approval, newest first, each with its vote tally."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM commands WHERE status = ? ORDER BY created_at DESC, id DESC",
            (STATUS_NEEDS_APPROVAL,)
        ).fetchall()
        pending = []
        for row in rows:
            command = Command.from_row(row)
            entry = command.to_dict()
            entry["votes"] = count_votes(conn, command.id).to_dict()
            pending.append(entry)

    return pending
