"""
Request and response models for the command gateway HTTP API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any

from ..core.schema import RULE_ACTIONS, ESCALATION_ACTIONS, SCHEDULE_TYPES, ROLES, VOTE_TYPES


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool


class MeResponse(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    role: str
    credits: int


# Commands

class CommandSubmitRequest(BaseModel):
    command_text: str

    @field_validator('command_text')
    @classmethod
    def command_text_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('command_text cannot be empty')
        return v


class SubmissionResponse(BaseModel):
    command_id: int
    status: str
    cost: int
    action: str
    matched_rule_id: Optional[int] = None
    output: Optional[str] = None
    rejection_reason: Optional[str] = None


class CommandResponse(BaseModel):
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


class CommandListResponse(BaseModel):
    commands: List[CommandResponse]


# Approvals

class VoteCountsResponse(BaseModel):
    approve: int
    reject: int
    total: int


class PendingApproval(CommandResponse):
    votes: VoteCountsResponse


class PendingApprovalListResponse(BaseModel):
    pending: List[PendingApproval]


class VoteRequest(BaseModel):
    vote_type: str

    @field_validator('vote_type')
    @classmethod
    def vote_type_must_be_valid(cls, v):
        if v not in VOTE_TYPES:
            raise ValueError(f'vote_type must be one of: {VOTE_TYPES}')
        return v


class VoteResponse(BaseModel):
    vote_id: int
    command_id: int
    status: str
    votes: VoteCountsResponse


class ApprovalDecisionRequest(BaseModel):
    reason: Optional[str] = None


class RejectionRequest(BaseModel):
    reason: str

    @field_validator('reason')
    @classmethod
    def reason_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('reason cannot be empty')
        return v


# Rules

class TimeWindowModel(BaseModel):
    day_of_week: int
    start_hour: int
    start_minute: int
    end_hour: int
    end_minute: int
    timezone: Optional[str] = None

    @field_validator('day_of_week')
    @classmethod
    def day_must_be_valid(cls, v):
        if not 0 <= v <= 6:
            raise ValueError('day_of_week must be 0-6 (Sunday=0)')
        return v

    @field_validator('start_hour', 'end_hour')
    @classmethod
    def hour_must_be_valid(cls, v):
        if not 0 <= v <= 23:
            raise ValueError('hour must be 0-23')
        return v

    @field_validator('start_minute', 'end_minute')
    @classmethod
    def minute_must_be_valid(cls, v):
        if not 0 <= v <= 59:
            raise ValueError('minute must be 0-59')
        return v


class ScheduleModel(BaseModel):
    type: str = "always"
    windows: List[TimeWindowModel] = []
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator('type')
    @classmethod
    def type_must_be_valid(cls, v):
        if v not in SCHEDULE_TYPES:
            raise ValueError(f'type must be one of: {SCHEDULE_TYPES}')
        return v


class EscalationModel(BaseModel):
    enabled: bool = False
    delay_ms: Optional[int] = None
    action: Optional[str] = None

    @field_validator('action')
    @classmethod
    def action_must_be_valid(cls, v):
        if v is not None and v not in ESCALATION_ACTIONS:
            raise ValueError(f'action must be one of: {ESCALATION_ACTIONS}')
        return v


class RuleCreateRequest(BaseModel):
    pattern: str
    action: str
    priority: int = 0
    cost: Optional[int] = None
    enabled: bool = True
    schedule: Optional[ScheduleModel] = None
    escalation: Optional[EscalationModel] = None
    restricted_to_user_id: Optional[int] = None
    restricted_to_role: Optional[str] = None
    voting_threshold: Optional[int] = None

    @field_validator('action')
    @classmethod
    def action_must_be_valid(cls, v):
        if v not in RULE_ACTIONS:
            raise ValueError(f'action must be one of: {RULE_ACTIONS}')
        return v

    @field_validator('restricted_to_role')
    @classmethod
    def role_must_be_valid(cls, v):
        if v is not None and v not in ROLES:
            raise ValueError(f'restricted_to_role must be one of: {ROLES}')
        return v


class RuleUpdateRequest(BaseModel):
    """Partial update: only fields present in the request body are applied."""
    pattern: Optional[str] = None
    action: Optional[str] = None
    priority: Optional[int] = None
    cost: Optional[int] = None
    enabled: Optional[bool] = None
    schedule: Optional[ScheduleModel] = None
    escalation: Optional[EscalationModel] = None
    restricted_to_user_id: Optional[int] = None
    restricted_to_role: Optional[str] = None
    voting_threshold: Optional[int] = None


class RuleResponse(BaseModel):
    id: int
    pattern: str
    action: str
    priority: int
    enabled: bool
    created_at: int
    cost: Optional[int] = None
    schedule: Dict[str, Any]
    escalation: Dict[str, Any]
    restricted_to_user_id: Optional[int] = None
    restricted_to_role: Optional[str] = None
    voting_threshold: Optional[int] = None
    created_by: Optional[int] = None
    updated_at: Optional[int] = None


class RuleConflictModel(BaseModel):
    rule_id: int
    pattern: str
    action: str
    conflict_type: str  # exact_duplicate, conflicting_action, overlapping_pattern
    message: str


class RuleCreateResponse(BaseModel):
    rule: RuleResponse
    conflicts: List[RuleConflictModel] = []


class RuleListResponse(BaseModel):
    rules: List[RuleResponse]


class ConflictCheckRequest(BaseModel):
    pattern: str
    action: str
    exclude_rule_id: Optional[int] = None


class ConflictCheckResponse(BaseModel):
    conflicts: List[RuleConflictModel]


# Users and credits

class UserCreateRequest(BaseModel):
    name: str
    email: Optional[str] = None
    role: str = "member"
    initial_credits: int = 0

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('name cannot be empty')
        return v

    @field_validator('role')
    @classmethod
    def role_must_be_valid(cls, v):
        if v not in ROLES:
            raise ValueError(f'role must be one of: {ROLES}')
        return v

    @field_validator('initial_credits')
    @classmethod
    def credits_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('initial_credits cannot be negative')
        return v


class UserResponse(BaseModel):
    id: int
    name: str
    email: Optional[str] = None
    role: str
    credits: int
    created_at: int


class UserListResponse(BaseModel):
    users: List[UserResponse]


class CreditAdjustRequest(BaseModel):
    user_id: int
    amount: int
    reason: Optional[str] = None

    @field_validator('amount')
    @classmethod
    def amount_must_not_be_zero(cls, v):
        if v == 0:
            raise ValueError('amount must be non-zero')
        return v


class CreditAdjustResponse(BaseModel):
    user_id: int
    balance: int


# Audit and escalation

class AuditLogModel(BaseModel):
    id: int
    event_type: str
    details: Dict[str, Any]
    created_at: int
    user_id: Optional[int] = None
    command_id: Optional[int] = None


class AuditLogListResponse(BaseModel):
    logs: List[AuditLogModel]


class EscalationReportResponse(BaseModel):
    processed: int
    skipped: int
    failed: int


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    details: Dict[str, Any] = {}
    timestamp: str
