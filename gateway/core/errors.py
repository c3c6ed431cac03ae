"""
Structured errors raised by the gateway core.

Every error carries a machine-readable reason code and a human-readable
message; the API layer maps each class to an HTTP status.
"""

from typing import Any, Dict, Optional


class ReasonCode:
    """Known reason codes. Convention: SCREAMING_SNAKE_CASE."""

    # Validation
    INVALID_PATTERN = "INVALID_PATTERN"
    INVALID_RULE = "INVALID_RULE"
    INVALID_COMMAND = "INVALID_COMMAND"
    INVALID_VOTE = "INVALID_VOTE"
    INVALID_USER = "INVALID_USER"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    REASON_REQUIRED = "REASON_REQUIRED"
    INVALID_FILTER = "INVALID_FILTER"

    # Lookup / state
    NOT_FOUND = "NOT_FOUND"
    NOT_PENDING_APPROVAL = "NOT_PENDING_APPROVAL"

    # Domain
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"

    # Access
    FORBIDDEN = "FORBIDDEN"
    UNAUTHENTICATED = "UNAUTHENTICATED"

    # Storage / unexpected
    SUBMISSION_FAILED = "SUBMISSION_FAILED"


class GatewayError(Exception):
    """Base class for all core errors."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(GatewayError):
    """Input refused before any write."""
    status_code = 400


class NotFoundError(GatewayError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(ReasonCode.NOT_FOUND, f"{entity} not found",
                         {"entity": entity, "id": entity_id})


class StateConflictError(GatewayError):
    """The record is not in a state that allows the operation."""
    status_code = 409


class InsufficientCreditsError(GatewayError):
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(ReasonCode.INSUFFICIENT_CREDITS, "Insufficient credits to execute command",
                         {"required": required, "available": available})


class AuthenticationError(GatewayError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized: caller identity required"):
        super().__init__(ReasonCode.UNAUTHENTICATED, message)


class PermissionDeniedError(GatewayError):
    status_code = 403

    def __init__(self, message: str = "Forbidden: Insufficient permissions"):
        super().__init__(ReasonCode.FORBIDDEN, message)


class SubmissionError(GatewayError):
    """Unexpected failure while admitting a command; nothing was written."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(ReasonCode.SUBMISSION_FAILED, f"Command submission failed: {message}")


def not_pending_approval(command_id: int, status: str) -> StateConflictError:
    return StateConflictError(ReasonCode.NOT_PENDING_APPROVAL, "Command is not pending approval",
                              {"command_id": command_id, "status": status})
