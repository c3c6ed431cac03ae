"""
Audit log sink - append-only rows, one per meaningful transition.
Writers take the caller's connection so the entry commits or rolls back with the change it describes.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from .config import AUDIT_LOG_DEFAULT_LIMIT
from .db import get_db
from .errors import ReasonCode, ValidationError
from .schema import AuditLogEntry, now_ms

# Event types
COMMAND_SUBMITTED = "COMMAND_SUBMITTED"
COMMAND_EXECUTED = "COMMAND_EXECUTED"
COMMAND_REJECTED = "COMMAND_REJECTED"
COMMAND_APPROVED = "COMMAND_APPROVED"
COMMAND_REJECTED_BY_APPROVER = "COMMAND_REJECTED_BY_APPROVER"
COMMAND_ESCALATED = "COMMAND_ESCALATED"
VOTE_CAST = "VOTE_CAST"
RULE_CREATED = "RULE_CREATED"
RULE_UPDATED = "RULE_UPDATED"
RULE_DELETED = "RULE_DELETED"
USER_CREATED = "USER_CREATED"
CREDITS_UPDATED = "CREDITS_UPDATED"

EVENT_TYPES = [
    COMMAND_SUBMITTED, COMMAND_EXECUTED, COMMAND_REJECTED, COMMAND_APPROVED,
    COMMAND_REJECTED_BY_APPROVER, COMMAND_ESCALATED, VOTE_CAST, RULE_CREATED,
    RULE_UPDATED, RULE_DELETED, USER_CREATED, CREDITS_UPDATED,
]


def write_audit_log(conn: sqlite3.Connection, event_type: str, user_id: Optional[int],
                    details: Dict[str, Any], command_id: Optional[int] = None,
                    created_at: Optional[int] = None) -> int:
    """Append an audit entry inside the caller's transaction."""
    cursor = conn.execute(
        "INSERT INTO audit_logs (user_id, command_id, event_type, details, created_at) VALUES (?, ?, ?, ?, ?)",
        (user_id, command_id, event_type, json.dumps(details, default=str),
         created_at if created_at is not None else now_ms())
    )
    return cursor.lastrowid


def get_audit_logs(user_id: Optional[int] = None, event_type: Optional[str] = None,
                   since: Optional[int] = None, until: Optional[int] = None,
                   limit: Optional[int] = None, command_id: Optional[int] = None) -> List[AuditLogEntry]:
    """List audit entries newest first, filtered by user, event type, command and time range (ms, inclusive)."""
    clauses = []
    params: List[Any] = []

    if user_id is not None:
        clauses.append("user_id = ?")
        params.append(user_id)
    if command_id is not None:
        clauses.append("command_id = ?")
        params.append(command_id)
    if event_type:
        if event_type not in EVENT_TYPES:
            raise ValidationError(ReasonCode.INVALID_FILTER, f"Unknown audit event type: {event_type}",
                                  {"event_type": event_type, "allowed": EVENT_TYPES})
        clauses.append("event_type = ?")
        params.append(event_type)
    if since is not None:
        clauses.append("created_at >= ?")
        params.append(since)
    if until is not None:
        clauses.append("created_at <= ?")
        params.append(until)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit if limit and limit > 0 else AUDIT_LOG_DEFAULT_LIMIT)

    with get_db() as conn:
        rows = conn.execute(
            f"SELECT * FROM audit_logs {where} ORDER BY created_at DESC, id DESC LIMIT ?",
            params
        ).fetchall()

    return [AuditLogEntry.from_row(row) for row in rows]
