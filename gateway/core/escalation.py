"""
Escalation sweep - resolves commands that waited in needs_approval past their escalation time.

Each candidate is handled in its own transaction and re-read there, so a
command approved, rejected or escalated by someone else in the meantime is
skipped rather than processed twice.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional

from . import audit
from .config import get_escalation_interval
from .credits import debit, get_balance
from .db import get_db, transaction
from .heartbeat import register_task
from .schedule import to_epoch_ms
from .schema import (
    Command, EscalationReport, AUTO_REJECT, ESCALATION_ACTIONS,
    STATUS_NEEDS_APPROVAL, STATUS_EXECUTED, STATUS_REJECTED,
    INSUFFICIENT_CREDITS, REASON_ESCALATION_TIMEOUT, mocked_output,
)
from ..util.logging import logger, log_escalation

ESCALATION_TASK_NAME = "escalation_sweep"

# Outcomes of a single escalation attempt
PROCESSED = "processed"
SKIPPED = "skipped"


def find_due_commands(now_ms: int) -> List[int]:
    """Ids of commands whose escalation time has passed and that are still unresolved."""
    with get_db() as conn:
        rows = conn.execute('''
            SELECT id FROM commands
            WHERE status = ? AND escalation_at IS NOT NULL AND escalation_at <= ? AND escalated = 0
            ORDER BY escalation_at, id
        ''', (STATUS_NEEDS_APPROVAL, now_ms)).fetchall()
    return [row["id"] for row in rows]


def process_escalations(now: Optional[datetime] = None) -> EscalationReport:
    """Run one sweep. Per-command failures are logged and counted, never raised."""
    processed_at = to_epoch_ms(now)
    report = EscalationReport()

    for command_id in find_due_commands(processed_at):
        try:
            outcome = escalate_command(command_id, processed_at)
        except (sqlite3.Error, ValueError, TypeError, KeyError) as e:
            logger.error(f"Escalation failed for command {command_id}: {e}")
            report.failed += 1
            continue

        if outcome == PROCESSED:
            report.processed += 1
        else:
            report.skipped += 1

    if report.processed or report.failed:
        logger.log_operation("escalation.sweep", "completed", report.to_dict())
    return report


def escalate_command(command_id: int, processed_at: int) -> str:
    """Escalate one command inside its own transaction; returns PROCESSED or SKIPPED."""
    with transaction() as conn:
        row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
        if not row:
            return SKIPPED
        command = Command.from_row(row)
        if not _is_due(command, processed_at):
            return SKIPPED

        action = _escalation_action(conn, command)
        if action is None:
            logger.warning(f"Command {command_id} is due for escalation but has no escalation action")
            return SKIPPED

        new_status, rejection_reason, output, executed_at = _resolve(conn, command, action, processed_at)

        conn.execute('''
            UPDATE commands SET status = ?, escalated = 1, escalation_action = ?, executed_at = ?,
                                rejection_reason = ?, output = ?
            WHERE id = ? AND status = ? AND escalated = 0
        ''', (new_status, action, executed_at, rejection_reason, output, command_id, STATUS_NEEDS_APPROVAL))

        audit.write_audit_log(conn, audit.COMMAND_ESCALATED, command.user_id, {
            "escalation_action": action,
            "original_status": STATUS_NEEDS_APPROVAL,
            "new_status": new_status,
            "escalation_at": command.escalation_at,
            "processed_at": processed_at,
        }, command_id=command_id, created_at=processed_at)

        if new_status == STATUS_EXECUTED:
            audit.write_audit_log(conn, audit.COMMAND_EXECUTED, command.user_id, {
                "command_text": command.command_text,
                "matched_rule_id": command.matched_rule_id,
                "action": action,
                "cost": command.cost,
                "note": "escalated_execution",
            }, command_id=command_id, created_at=processed_at)
        else:
            audit.write_audit_log(conn, audit.COMMAND_REJECTED, command.user_id, {
                "command_text": command.command_text,
                "matched_rule_id": command.matched_rule_id,
                "action": action,
                "rejection_reason": rejection_reason,
            }, command_id=command_id, created_at=processed_at)

    log_escalation(command_id, action, new_status, {"escalation_at": command.escalation_at})
    return PROCESSED


def _is_due(command: Command, processed_at: int) -> bool:
    return (command.status == STATUS_NEEDS_APPROVAL and not command.escalated
            and command.escalation_at is not None and command.escalation_at <= processed_at)


def _escalation_action(conn: sqlite3.Connection, command: Command) -> Optional[str]:
    """Action configured on the matched rule, or None if the rule or its escalation is gone."""
    if command.matched_rule_id is None:
        return None
    row = conn.execute(
        "SELECT escalation_enabled, escalation_action FROM rules WHERE id = ?", (command.matched_rule_id,)
    ).fetchone()
    if not row or not row["escalation_enabled"] or row["escalation_action"] not in ESCALATION_ACTIONS:
        return None
    return row["escalation_action"]


def _resolve(conn: sqlite3.Connection, command: Command, action: str, processed_at: int):
    """Returns (new_status, rejection_reason, output, executed_at)."""
    if action == AUTO_REJECT:
        return STATUS_REJECTED, REASON_ESCALATION_TIMEOUT, None, None

    balance = get_balance(conn, command.user_id)
    if balance < command.cost:
        return STATUS_REJECTED, INSUFFICIENT_CREDITS, None, None

    debit(conn, command.user_id, command.cost, updated_at=processed_at)
    return STATUS_EXECUTED, None, mocked_output(command.command_text, escalated=True), processed_at


def register_escalation_task():
    """Register the sweep with the heartbeat loop at the configured interval."""
    interval = get_escalation_interval()
    register_task(ESCALATION_TASK_NAME, interval, process_escalations)
    return interval
