"""
Structured operation logging for the gateway core.
Audit rows go to the database (see gateway.core.audit); this module is the process log.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for admission, approval, ledger and escalation operations."""

    def __init__(self, name: str = "command_gateway"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.info(message)

    def log_command_decision(self, command_id: int, user_id: int, status: str, action: str,
                             cost: int, matched_rule_id: int = None):
        """Log the admission outcome of a submitted command."""
        details = {
            "command_id": command_id,
            "user_id": user_id,
            "action": action,
            "cost": cost,
            "matched_rule_id": matched_rule_id,
        }
        self.log_operation("command.submit", status, details)

    def log_rule_change(self, operation: str, rule_id: int, actor_id: int, details: Dict[str, Any] = None):
        """Log rule create/update/delete."""
        log_details = {"rule_id": rule_id, "actor_id": actor_id}
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"rule.{operation}", "success", log_details)

    def log_ledger_change(self, user_id: int, delta: int, balance: int, reason: str):
        """Log a credit ledger mutation."""
        log_details = {
            "user_id": user_id,
            "delta": delta,
            "balance": balance,
            "reason": reason[:100] if reason else "",
        }
        self.log_operation("ledger.adjust", "success", log_details)

    def log_vote(self, command_id: int, voter_id: int, vote_type: str, counts: Dict[str, int]):
        """Log a cast vote with the tally after recording it."""
        log_details = {"command_id": command_id, "voter_id": voter_id, "vote_type": vote_type}
        log_details.update(counts)
        self.log_operation("approval.vote", "recorded", log_details)

    def log_approval_decision(self, command_id: int, decision: str, approver_id: int, reason: str = ""):
        """Log approval decision."""
        log_details = {
            "command_id": command_id,
            "decision": decision,
            "approver_id": approver_id,
            "reason": reason[:100] if reason else ""
        }
        status = "approved" if decision == "approved" else "rejected"
        self.log_operation("approval.decision", status, log_details)

    def log_escalation(self, command_id: int, action: str, new_status: str, details: Dict[str, Any] = None):
        """Log an escalated command."""
        log_details = {"command_id": command_id, "escalation_action": action, "new_status": new_status}
        if details:
            log_details.update(details)
        self.log_operation("escalation.applied", new_status, log_details)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success",
                           details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"heartbeat.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def sanitize_payload(payload: Any, max_length: int = 100) -> Any:
    """Truncate long strings inside a payload before it is logged."""
    if isinstance(payload, dict):
        return {k: sanitize_payload(v, max_length) for k, v in payload.items()}
    elif isinstance(payload, str):
        return payload[:max_length] + "..." if len(payload) > max_length else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, max_length) for item in payload]
    else:
        return payload


# Global logger instance
logger = StructuredLogger()


def log_approval_decision(command_id: int, decision: str, approver_id: int, reason: str = ""):
    """Log approval decision."""
    logger.log_approval_decision(command_id, decision, approver_id, reason)


def log_escalation(command_id: int, action: str, new_status: str, details: Dict[str, Any] = None):
    """Log an escalated command."""
    logger.log_escalation(command_id, action, new_status, details)


def log_schedule_error(rule_id: Any, problem: str, errors: List[Any] = None):
    """Log a rule whose schedule could not be evaluated (treated as inactive)."""
    details = {"rule_id": rule_id, "problem": problem}
    if errors:
        details["errors"] = [str(e)[:100] for e in errors]
    logger.logger.error(f"Operation: schedule.evaluate, Status: inactive, Details: {details}")
