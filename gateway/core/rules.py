"""
Rule store and matcher.

Rules are evaluated as an ordered list: priority descending, then earliest
created first, then lowest id. The first rule whose pattern matches wins and
evaluation stops. A pattern beginning with '^' must match at index 0; any
other pattern may match anywhere in the command text.
"""

import json
import re
import sqlite3
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from . import audit
from .config import get_default_command_cost, get_default_no_match_action
from .db import get_db, transaction
from .errors import NotFoundError, ReasonCode, ValidationError
from .schedule import is_rule_active, parse_cron_field, CRON_FIELDS
from .schema import (
    Rule, RuleSchedule, EscalationConfig, TimeWindow, MatchResult, RuleConflict,
    RULE_ACTIONS, ESCALATION_ACTIONS, SCHEDULE_TYPES, SCHEDULE_ALWAYS, SCHEDULE_TIME_WINDOWS,
    SCHEDULE_CRON, ROLES, now_ms,
)
from ..util.logging import logger

# Conflict types reported by detect_conflicts()
EXACT_DUPLICATE = "exact_duplicate"
CONFLICTING_ACTION = "conflicting_action"
OVERLAPPING_PATTERN = "overlapping_pattern"

REGEX_METACHARACTERS = re.compile(r"[\^$.*+?()\[\]{}|\\]")
PROBE_PREFIX = "prefix "
PROBE_SUFFIX = " suffix"

UPDATABLE_FIELDS = [
    "pattern", "action", "priority", "cost", "enabled", "schedule", "escalation",
    "restricted_to_user_id", "restricted_to_role", "voting_threshold",
]


# ---------------------------------------------------------------------------
# Ordering and matching
# ---------------------------------------------------------------------------

def rule_precedence_key(rule: Rule):
    """Sort key: priority descending, then created_at ascending, then id ascending."""
    return (-(rule.priority or 0), rule.created_at or 0, rule.id)


def sort_rules_by_precedence(rules: Iterable[Rule]) -> List[Rule]:
    return sorted(rules, key=rule_precedence_key)


def validate_pattern(pattern: str) -> re.Pattern:
    """Compile a rule pattern or raise ValidationError(INVALID_PATTERN)."""
    if not pattern or not pattern.strip():
        raise ValidationError(ReasonCode.INVALID_PATTERN, "pattern cannot be empty")
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ValidationError(ReasonCode.INVALID_PATTERN, f"Invalid regex pattern: {e}",
                              {"pattern": pattern})


def pattern_matches(pattern: str, text: str) -> bool:
    """
    Test one pattern against text.

    Raises re.error for uncompilable patterns; callers decide whether that is fatal.
    """
    regex = re.compile(pattern)
    if pattern.startswith("^"):
        return regex.match(text) is not None
    return regex.search(text) is not None


def match_command(command_text: str, ordered_rules: Iterable[Rule],
                  default_action: Optional[str] = None,
                  default_cost: Optional[int] = None) -> MatchResult:
    """Return the first rule in order whose pattern matches, or the no-match default."""
    default_cost = default_cost if default_cost is not None else get_default_command_cost()

    for rule in ordered_rules:
        try:
            if not pattern_matches(rule.pattern, command_text):
                continue
        except re.error as e:
            logger.error(f"Invalid regex pattern in rule {rule.id}: {rule.pattern} ({e})")
            continue

        cost = rule.cost if rule.cost is not None else default_cost
        return MatchResult(rule=rule, action=rule.action, cost=cost)

    return MatchResult(rule=None, action=default_action or get_default_no_match_action(), cost=default_cost)


def rule_applies_to(rule: Rule, user_id: Optional[int], user_role: Optional[str]) -> bool:
    """User restriction wins over role restriction; unrestricted rules apply to everyone."""
    if rule.restricted_to_user_id is not None:
        return user_id is not None and rule.restricted_to_user_id == user_id
    if rule.restricted_to_role:
        return user_role is not None and rule.restricted_to_role == user_role
    return True


def get_enabled_rules(conn: sqlite3.Connection, user_id: Optional[int] = None,
                      user_role: Optional[str] = None, now: Optional[datetime] = None) -> List[Rule]:
    """Enabled, schedule-active rules that apply to the requester, in precedence order."""
    rows = conn.execute(
        "SELECT * FROM rules WHERE enabled = 1 ORDER BY priority DESC, created_at ASC, id ASC"
    ).fetchall()

    rules = []
    for row in rows:
        rule = _rule_from_row(row)
        if rule is None:
            continue
        if not rule_applies_to(rule, user_id, user_role):
            continue
        if not is_rule_active(rule, now):
            continue
        rules.append(rule)

    return sort_rules_by_precedence(rules)


# ---------------------------------------------------------------------------
# Conflict detection (advisory)
# ---------------------------------------------------------------------------

def strip_metacharacters(pattern: str) -> str:
    return REGEX_METACHARACTERS.sub("", pattern)


def _safe_match(pattern: str, text: str) -> bool:
    try:
        return pattern_matches(pattern, text)
    except re.error:
        return False


def patterns_overlap(new_pattern: str, existing_pattern: str) -> bool:
    """
    Best-effort overlap check using probe strings.

    Probes are derived from the new pattern (metacharacters stripped, raw,
    raw with prefix/suffix padding); a probe counts when both patterns match
    it. The reverse check tests the stripped existing pattern against the
    new regex. Misses and false positives are both possible.
    """
    probes = [
        strip_metacharacters(new_pattern),
        new_pattern,
        f"{PROBE_PREFIX}{new_pattern}{PROBE_SUFFIX}",
    ]
    for probe in probes:
        if probe and _safe_match(new_pattern, probe) and _safe_match(existing_pattern, probe):
            return True

    reverse_probe = strip_metacharacters(existing_pattern)
    return bool(reverse_probe) and _safe_match(new_pattern, reverse_probe)


def find_conflicts(pattern: str, action: str, rules: Iterable[Rule],
                   exclude_rule_id: Optional[int] = None) -> List[RuleConflict]:
    """Soft warnings about enabled rules that may collide with a new pattern/action. Never raises."""
    conflicts: List[RuleConflict] = []
    if not pattern:
        return conflicts

    for rule in rules:
        if exclude_rule_id is not None and rule.id == exclude_rule_id:
            continue
        if not rule.enabled:
            continue

        if rule.pattern == pattern:
            conflicts.append(RuleConflict(
                rule_id=rule.id, pattern=rule.pattern, action=rule.action,
                conflict_type=EXACT_DUPLICATE,
                message=f"A rule with this exact pattern already exists (rule {rule.id}, {rule.action})",
            ))
            continue

        if not patterns_overlap(pattern, rule.pattern):
            continue

        if rule.action != action:
            conflicts.append(RuleConflict(
                rule_id=rule.id, pattern=rule.pattern, action=rule.action,
                conflict_type=CONFLICTING_ACTION,
                message=f"Pattern overlaps rule {rule.id} whose action {rule.action} differs from {action}",
            ))
        else:
            conflicts.append(RuleConflict(
                rule_id=rule.id, pattern=rule.pattern, action=rule.action,
                conflict_type=OVERLAPPING_PATTERN,
                message=f"Pattern overlaps rule {rule.id} with the same action {rule.action}",
            ))

    return conflicts


def detect_conflicts(pattern: str, action: str, exclude_rule_id: Optional[int] = None) -> List[RuleConflict]:
    """Check a candidate pattern/action against every enabled rule in the store."""
    with get_db() as conn:
        rows = conn.execute("SELECT * FROM rules WHERE enabled = 1 ORDER BY id").fetchall()

    rules = [rule for rule in (_rule_from_row(row) for row in rows) if rule is not None]
    return find_conflicts(pattern, action, rules, exclude_rule_id)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def create_rule(pattern: str, action: str, priority: int = 0, created_by: Optional[int] = None,
                enabled: bool = True, cost: Optional[int] = None,
                schedule: Union[RuleSchedule, Dict[str, Any], None] = None,
                escalation: Union[EscalationConfig, Dict[str, Any], None] = None,
                restricted_to_user_id: Optional[int] = None, restricted_to_role: Optional[str] = None,
                voting_threshold: Optional[int] = None, created_at: Optional[int] = None) -> Rule:
    """Validate and insert a rule, writing RULE_CREATED in the same transaction."""
    rule = Rule(
        id=0,
        pattern=pattern,
        action=action,
        priority=priority,
        enabled=enabled,
        created_at=created_at if created_at is not None else now_ms(),
        cost=cost,
        schedule=coerce_schedule(schedule),
        escalation=coerce_escalation(escalation),
        restricted_to_user_id=restricted_to_user_id,
        restricted_to_role=restricted_to_role,
        voting_threshold=voting_threshold,
        created_by=created_by,
    )
    validate_rule(rule)

    with transaction() as conn:
        cursor = conn.execute('''
            INSERT INTO rules (pattern, action, priority, cost, enabled, schedule_type, time_windows,
                               cron_expression, schedule_timezone, escalation_enabled, escalation_delay_ms,
                               escalation_action, restricted_to_user_id, restricted_to_role, voting_threshold,
                               created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', _rule_columns(rule) + (rule.created_by, rule.created_at, None))
        rule.id = cursor.lastrowid

        audit.write_audit_log(conn, audit.RULE_CREATED, created_by, {
            "rule_id": rule.id,
            "pattern": rule.pattern,
            "action": rule.action,
            "priority": rule.priority,
            "cost": rule.cost,
        })

    logger.log_rule_change("created", rule.id, created_by, {"pattern": rule.pattern, "action": rule.action})
    return rule


def update_rule(rule_id: int, actor_id: Optional[int] = None, **updates) -> Rule:
    """Patch the given fields; the merged rule is validated before anything is written."""
    unknown = [name for name in updates if name not in UPDATABLE_FIELDS]
    if unknown:
        raise ValidationError(ReasonCode.INVALID_RULE, f"Unknown rule fields: {unknown}")

    with transaction() as conn:
        rule = _load_rule(conn, rule_id)

        for name, value in updates.items():
            if name == "schedule":
                value = coerce_schedule(value)
            elif name == "escalation":
                value = coerce_escalation(value)
            setattr(rule, name, value)

        validate_rule(rule)
        rule.updated_at = now_ms()

        conn.execute('''
            UPDATE rules SET pattern = ?, action = ?, priority = ?, cost = ?, enabled = ?, schedule_type = ?,
                             time_windows = ?, cron_expression = ?, schedule_timezone = ?, escalation_enabled = ?,
                             escalation_delay_ms = ?, escalation_action = ?, restricted_to_user_id = ?,
                             restricted_to_role = ?, voting_threshold = ?, updated_at = ?
            WHERE id = ?
        ''', _rule_columns(rule) + (rule.updated_at, rule_id))

        audit.write_audit_log(conn, audit.RULE_UPDATED, actor_id, {
            "rule_id": rule_id,
            "pattern": rule.pattern,
            "action": rule.action,
            "updates": {name: _audit_value(value) for name, value in updates.items()},
        })

    logger.log_rule_change("updated", rule_id, actor_id, {"fields": sorted(updates)})
    return rule


def delete_rule(rule_id: int, actor_id: Optional[int] = None) -> int:
    """Remove a rule from future matching. Commands that matched it keep their matched_rule_id."""
    with transaction() as conn:
        rule = _load_rule(conn, rule_id)
        conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
        audit.write_audit_log(conn, audit.RULE_DELETED, actor_id, {
            "rule_id": rule_id,
            "pattern": rule.pattern,
            "action": rule.action,
        })

    logger.log_rule_change("deleted", rule_id, actor_id)
    return rule_id


def get_rule(rule_id: int) -> Optional[Rule]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM rules WHERE id = ?", (rule_id,)).fetchone()
    return _rule_from_row(row) if row else None


def list_rules() -> List[Rule]:
    """All rules, enabled or not, in evaluation order."""
    with get_db() as conn:
        rows = conn.execute("SELECT * FROM rules").fetchall()
    return sort_rules_by_precedence(rule for rule in (_rule_from_row(row) for row in rows) if rule)


# ---------------------------------------------------------------------------
# Validation and row mapping
# ---------------------------------------------------------------------------

def validate_rule(rule: Rule):
    """Raise ValidationError for anything that would make the rule unusable."""
    validate_pattern(rule.pattern)

    if rule.action not in RULE_ACTIONS:
        raise ValidationError(ReasonCode.INVALID_RULE, f"action must be one of: {RULE_ACTIONS}")
    if not isinstance(rule.priority, int) or isinstance(rule.priority, bool):
        raise ValidationError(ReasonCode.INVALID_RULE, "priority must be an integer")
    if not isinstance(rule.enabled, bool):
        raise ValidationError(ReasonCode.INVALID_RULE, "enabled must be true or false")
    if rule.cost is not None and rule.cost < 0:
        raise ValidationError(ReasonCode.INVALID_RULE, "cost cannot be negative")
    if rule.voting_threshold is not None and rule.voting_threshold < 1:
        raise ValidationError(ReasonCode.INVALID_RULE, "voting_threshold must be >= 1")
    if rule.restricted_to_role is not None and rule.restricted_to_role not in ROLES:
        raise ValidationError(ReasonCode.INVALID_RULE, f"restricted_to_role must be one of: {ROLES}")

    escalation = rule.escalation
    if escalation.enabled:
        if escalation.action not in ESCALATION_ACTIONS:
            raise ValidationError(ReasonCode.INVALID_RULE,
                                  f"escalation action must be one of: {ESCALATION_ACTIONS}")
        if not escalation.delay_ms or escalation.delay_ms <= 0:
            raise ValidationError(ReasonCode.INVALID_RULE, "escalation delay_ms must be positive")

    schedule = rule.schedule
    if schedule.type not in SCHEDULE_TYPES:
        raise ValidationError(ReasonCode.INVALID_RULE, f"schedule type must be one of: {SCHEDULE_TYPES}")
    if schedule.type == SCHEDULE_TIME_WINDOWS and not schedule.windows:
        raise ValidationError(ReasonCode.INVALID_RULE, "time_windows schedule needs at least one window")
    if schedule.type == SCHEDULE_CRON:
        _validate_cron(schedule.cron_expression)


def _validate_cron(expression: Optional[str]):
    parts = (expression or "").split()
    if len(parts) != 5:
        raise ValidationError(ReasonCode.INVALID_RULE, "cron_expression must have 5 fields")
    try:
        for part, (name, low, high) in zip(parts, CRON_FIELDS):
            parse_cron_field(part, low, high, allow_sunday_7=(name == "day_of_week"))
    except ValueError as e:
        raise ValidationError(ReasonCode.INVALID_RULE, f"Invalid cron expression: {e}")


def coerce_schedule(value: Union[RuleSchedule, Dict[str, Any], None]) -> RuleSchedule:
    if value is None:
        return RuleSchedule()
    if isinstance(value, RuleSchedule):
        return value
    try:
        windows = [w if isinstance(w, TimeWindow) else TimeWindow(**w) for w in value.get("windows") or []]
    except TypeError as e:
        raise ValidationError(ReasonCode.INVALID_RULE, f"Invalid time window: {e}")
    return RuleSchedule(
        type=value.get("type") or SCHEDULE_ALWAYS,
        windows=windows,
        cron_expression=value.get("cron_expression"),
        timezone=value.get("timezone"),
    )


def coerce_escalation(value: Union[EscalationConfig, Dict[str, Any], None]) -> EscalationConfig:
    if value is None:
        return EscalationConfig()
    if isinstance(value, EscalationConfig):
        return value
    return EscalationConfig(
        enabled=bool(value.get("enabled", False)),
        delay_ms=value.get("delay_ms"),
        action=value.get("action"),
    )


def _rule_columns(rule: Rule) -> tuple:
    windows = json.dumps([asdict(w) for w in rule.schedule.windows]) if rule.schedule.windows else None
    return (
        rule.pattern, rule.action, rule.priority, rule.cost, rule.enabled,
        rule.schedule.type, windows, rule.schedule.cron_expression, rule.schedule.timezone,
        rule.escalation.enabled, rule.escalation.delay_ms, rule.escalation.action,
        rule.restricted_to_user_id, rule.restricted_to_role, rule.voting_threshold,
    )


def _rule_from_row(row) -> Optional[Rule]:
    """Map a row; a row with an unreadable schedule is logged and treated as inert."""
    try:
        return Rule.from_row(row)
    except (TypeError, ValueError) as e:
        logger.error(f"Skipping rule {row['id']}: unreadable stored configuration ({e})")
        return None


def _load_rule(conn: sqlite3.Connection, rule_id: int) -> Rule:
    row = conn.execute("SELECT * FROM rules WHERE id = ?", (rule_id,)).fetchone()
    if not row:
        raise NotFoundError("Rule", rule_id)
    rule = _rule_from_row(row)
    if rule is None:
        raise ValidationError(ReasonCode.INVALID_RULE, f"Rule {rule_id} has an unreadable configuration")
    return rule


def _audit_value(value: Any) -> Any:
    if isinstance(value, (RuleSchedule, EscalationConfig)):
        return asdict(value)
    return value
