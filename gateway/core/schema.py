"""
Record types and enumerations shared by the gateway core.
Rows come out of SQLite as sqlite3.Row; from_row() turns them into these dataclasses.
"""

import json
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

# Rule actions
AUTO_ACCEPT = "AUTO_ACCEPT"
AUTO_REJECT = "AUTO_REJECT"
REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
RULE_ACTIONS = [AUTO_ACCEPT, AUTO_REJECT, REQUIRE_APPROVAL]
ESCALATION_ACTIONS = [AUTO_ACCEPT, AUTO_REJECT]

# Command statuses
STATUS_PENDING = "pending"
STATUS_NEEDS_APPROVAL = "needs_approval"
STATUS_EXECUTED = "executed"
STATUS_REJECTED = "rejected"
COMMAND_STATUSES = [STATUS_PENDING, STATUS_NEEDS_APPROVAL, STATUS_EXECUTED, STATUS_REJECTED]

ACTION_TO_STATUS = {
    AUTO_ACCEPT: STATUS_EXECUTED,
    AUTO_REJECT: STATUS_REJECTED,
    REQUIRE_APPROVAL: STATUS_NEEDS_APPROVAL,
}

# Schedule types
SCHEDULE_ALWAYS = "always"
SCHEDULE_TIME_WINDOWS = "time_windows"
SCHEDULE_CRON = "cron"
SCHEDULE_TYPES = [SCHEDULE_ALWAYS, SCHEDULE_TIME_WINDOWS, SCHEDULE_CRON]

ROLES = ["admin", "member"]
VOTE_TYPES = ["approve", "reject"]

# Rejection reasons stored on commands
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
REASON_RULE_AUTO_REJECT = "Matched rule with AUTO_REJECT action"
REASON_NO_MATCH_AUTO_REJECT = "No matching rule found - default AUTO_REJECT"
REASON_ESCALATION_TIMEOUT = "Escalated: auto-rejected due to timeout"


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def mocked_output(command_text: str, escalated: bool = False) -> str:
    """Placeholder output recorded for executed commands. Nothing is ever run."""
    if escalated:
        return f"Execution mocked (escalated): would run '{command_text}'"
    return f"Execution mocked: would run '{command_text}'"


@dataclass
class User:
    id: int
    name: str
    role: str  # admin, member
    created_at: int
    email: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> 'User':
        return cls(id=row["id"], name=row["name"], role=row["role"],
                   created_at=row["created_at"], email=row["email"])


@dataclass
class TimeWindow:
    day_of_week: int  # 0-6, Sunday=0
    start_hour: int
    start_minute: int
    end_hour: int
    end_minute: int
    timezone: Optional[str] = None


@dataclass
class RuleSchedule:
    type: str = SCHEDULE_ALWAYS
    windows: List[TimeWindow] = field(default_factory=list)
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None


@dataclass
class EscalationConfig:
    enabled: bool = False
    delay_ms: Optional[int] = None
    action: Optional[str] = None  # AUTO_ACCEPT, AUTO_REJECT


@dataclass
class Rule:
    id: int
    pattern: str
    action: str
    priority: int
    enabled: bool
    created_at: int
    cost: Optional[int] = None
    schedule: RuleSchedule = field(default_factory=RuleSchedule)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    restricted_to_user_id: Optional[int] = None
    restricted_to_role: Optional[str] = None
    voting_threshold: Optional[int] = None
    created_by: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> 'Rule':
        windows = []
        if row["time_windows"]:
            windows = [TimeWindow(**w) for w in json.loads(row["time_windows"])]

        return cls(
            id=row["id"],
            pattern=row["pattern"],
            action=row["action"],
            priority=row["priority"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            cost=row["cost"],
            schedule=RuleSchedule(
                type=row["schedule_type"] or SCHEDULE_ALWAYS,
                windows=windows,
                cron_expression=row["cron_expression"],
                timezone=row["schedule_timezone"],
            ),
            escalation=EscalationConfig(
                enabled=bool(row["escalation_enabled"]),
                delay_ms=row["escalation_delay_ms"],
                action=row["escalation_action"],
            ),
            restricted_to_user_id=row["restricted_to_user_id"],
            restricted_to_role=row["restricted_to_role"],
            voting_threshold=row["voting_threshold"],
            created_by=row["created_by"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Command:
    id: int
    user_id: int
    command_text: str
    status: str  # pending, needs_approval, executed, rejected
    cost: int
    created_at: int
    matched_rule_id: Optional[int] = None
    executed_at: Optional[int] = None
    rejection_reason: Optional[str] = None
    output: Optional[str] = None
    escalation_at: Optional[int] = None
    escalated: bool = False
    escalation_action: Optional[str] = None
    approver_id: Optional[int] = None
    approved_at: Optional[int] = None
    approval_reason: Optional[str] = None
    voting_threshold: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> 'Command':
        data = dict(row)
        data["escalated"] = bool(data["escalated"])
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Vote:
    id: int
    command_id: int
    user_id: int
    vote_type: str  # approve, reject
    created_at: int

    @classmethod
    def from_row(cls, row) -> 'Vote':
        return cls(**dict(row))


@dataclass
class VoteCounts:
    approve: int = 0
    reject: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class AuditLogEntry:
    id: int
    event_type: str
    details: Dict[str, Any]
    created_at: int
    user_id: Optional[int] = None
    command_id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> 'AuditLogEntry':
        try:
            details = json.loads(row["details"]) if row["details"] else {}
        except (json.JSONDecodeError, ValueError):
            details = {"raw_data": row["details"]}
        return cls(id=row["id"], event_type=row["event_type"], details=details,
                   created_at=row["created_at"], user_id=row["user_id"],
                   command_id=row["command_id"])


@dataclass
class MatchResult:
    """Outcome of matching a command against the ordered rule list."""
    rule: Optional[Rule]
    action: str
    cost: int

    @property
    def matched_rule_id(self) -> Optional[int]:
        return self.rule.id if self.rule else None


@dataclass
class RuleConflict:
    """Advisory warning about an existing rule that may collide with a new pattern."""
    rule_id: int
    pattern: str
    action: str
    conflict_type: str  # exact_duplicate, conflicting_action, overlapping_pattern
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SubmissionResult:
    command_id: int
    status: str
    cost: int
    action: str
    matched_rule_id: Optional[int] = None
    output: Optional[str] = None
    rejection_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscalationReport:
    processed: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)
