"""
HTTP boundary for the command gateway.

Caller identity comes from the X-User-Id header; admin-only routes check the
caller's role. Core errors are mapped to JSON bodies carrying their reason code.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from .schemas import (
    HealthResponse,
    MeResponse,
    CommandSubmitRequest,
    SubmissionResponse,
    CommandResponse,
    CommandListResponse,
    PendingApprovalListResponse,
    VoteRequest,
    VoteResponse,
    ApprovalDecisionRequest,
    RejectionRequest,
    RuleCreateRequest,
    RuleUpdateRequest,
    RuleResponse,
    RuleCreateResponse,
    RuleListResponse,
    ConflictCheckRequest,
    ConflictCheckResponse,
    UserCreateRequest,
    UserResponse,
    UserListResponse,
    CreditAdjustRequest,
    CreditAdjustResponse,
    AuditLogListResponse,
    EscalationReportResponse,
    ErrorResponse,
)
from ..core import approval, audit, commands, credits, escalation, rules, users
from ..core.config import VERSION, debug_enabled
from ..core.db import health_check, init_db
from ..core.errors import AuthenticationError, GatewayError, NotFoundError, PermissionDeniedError
from ..core.schema import User
from ..util.logging import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


ERROR_RESPONSES = {
    status: {"model": ErrorResponse} for status in (400, 401, 402, 403, 404, 409, 500)
}

app = FastAPI(
    title="Command Gateway API",
    version=VERSION,
    description="Rule-based admission, credit debiting and approval for submitted commands",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None,
    lifespan=lifespan,
    responses=ERROR_RESPONSES,
)


def get_current_user(x_user_id: Optional[int] = Header(None)) -> User:
    """Resolve the caller from the X-User-Id header."""
    if x_user_id is None:
        raise AuthenticationError()
    user = users.get_user(x_user_id)
    if not user:
        raise AuthenticationError("Unauthorized: unknown user")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise PermissionDeniedError("Forbidden: admin role required")
    return user


def _rule_response(rule) -> RuleResponse:
    return RuleResponse(**rule.to_dict())


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint():
    """Check system health."""
    db_health = health_check()
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
    )


@app.get("/me", response_model=MeResponse)
def me_endpoint(user: User = Depends(get_current_user)):
    return MeResponse(**users.get_me(user.id))


# Commands

@app.post("/commands", response_model=SubmissionResponse)
def submit_command_endpoint(request: CommandSubmitRequest, user: User = Depends(get_current_user)):
    """Submit a command for admission."""
    result = commands.submit_command(user.id, request.command_text)
    return SubmissionResponse(**result.to_dict())


@app.get("/commands", response_model=CommandListResponse)
def list_commands_endpoint(status: Optional[str] = None, limit: Optional[int] = Query(None, ge=1),
                           user: User = Depends(get_current_user)):
    """List commands; members only see their own."""
    owner = None if user.role == "admin" else user.id
    items = commands.list_commands(user_id=owner, status=status, limit=limit)
    return CommandListResponse(commands=[CommandResponse(**c.to_dict()) for c in items])


@app.get("/commands/{command_id}", response_model=CommandResponse)
def get_command_endpoint(command_id: int, user: User = Depends(get_current_user)):
    command = commands.get_command(command_id)
    if not command or (user.role != "admin" and command.user_id != user.id):
        raise NotFoundError("Command", command_id)
    return CommandResponse(**command.to_dict())


# Approvals

@app.get("/approvals/pending", response_model=PendingApprovalListResponse)
def pending_approvals_endpoint(admin: User = Depends(require_admin)):
    return PendingApprovalListResponse(pending=approval.get_pending_approvals())


@app.post("/commands/{command_id}/votes", response_model=VoteResponse)
def cast_vote_endpoint(command_id: int, request: VoteRequest, admin: User = Depends(require_admin)):
    """Cast or replace the caller's vote; may auto-approve the command."""
    vote_id = approval.cast_vote(command_id, admin.id, request.vote_type)
    command = commands.get_command(command_id)
    return VoteResponse(
        vote_id=vote_id,
        command_id=command_id,
        status=command.status,
        votes=approval.get_vote_counts(command_id).to_dict(),
    )


@app.post("/commands/{command_id}/approve", response_model=CommandResponse)
def approve_command_endpoint(command_id: int, decision: Optional[ApprovalDecisionRequest] = None,
                             admin: User = Depends(require_admin)):
    reason = decision.reason if decision else None
    command = approval.approve_command(command_id, admin.id, reason)
    return CommandResponse(**command.to_dict())


@app.post("/commands/{command_id}/reject", response_model=CommandResponse)
def reject_command_endpoint(command_id: int, decision: RejectionRequest, admin: User = Depends(require_admin)):
    command = approval.reject_command(command_id, admin.id, decision.reason)
    return CommandResponse(**command.to_dict())


# Rules

@app.get("/rules", response_model=RuleListResponse)
def list_rules_endpoint(admin: User = Depends(require_admin)):
    return RuleListResponse(rules=[_rule_response(r) for r in rules.list_rules()])


@app.post("/rules", response_model=RuleCreateResponse)
def create_rule_endpoint(request: RuleCreateRequest, admin: User = Depends(require_admin)):
    """Create a rule. Conflicts with existing rules are returned as warnings, not errors."""
    conflicts = rules.detect_conflicts(request.pattern, request.action)
    data = request.model_dump()
    rule = rules.create_rule(created_by=admin.id, **data)
    return RuleCreateResponse(rule=_rule_response(rule), conflicts=[c.to_dict() for c in conflicts])


@app.patch("/rules/{rule_id}", response_model=RuleResponse)
def update_rule_endpoint(rule_id: int, request: RuleUpdateRequest, admin: User = Depends(require_admin)):
    updates = request.model_dump(exclude_unset=True)
    rule = rules.update_rule(rule_id, actor_id=admin.id, **updates)
    return _rule_response(rule)


@app.delete("/rules/{rule_id}")
def delete_rule_endpoint(rule_id: int, admin: User = Depends(require_admin)):
    rules.delete_rule(rule_id, actor_id=admin.id)
    return {"success": True, "rule_id": rule_id}


@app.post("/rules/conflicts", response_model=ConflictCheckResponse)
def check_conflicts_endpoint(request: ConflictCheckRequest, admin: User = Depends(require_admin)):
    conflicts = rules.detect_conflicts(request.pattern, request.action, request.exclude_rule_id)
    return ConflictCheckResponse(conflicts=[c.to_dict() for c in conflicts])


# Users and credits

@app.get("/users", response_model=UserListResponse)
def list_users_endpoint(admin: User = Depends(require_admin)):
    return UserListResponse(users=users.list_users())


@app.post("/users", response_model=UserResponse)
def create_user_endpoint(request: UserCreateRequest, admin: User = Depends(require_admin)):
    user = users.create_user(
        name=request.name,
        role=request.role,
        email=request.email,
        initial_credits=request.initial_credits,
        created_by=admin.id,
    )
    return UserResponse(id=user.id, name=user.name, email=user.email, role=user.role,
                        credits=request.initial_credits, created_at=user.created_at)


@app.post("/credits/adjust", response_model=CreditAdjustResponse)
def adjust_credits_endpoint(request: CreditAdjustRequest, admin: User = Depends(require_admin)):
    balance = credits.adjust_credits(request.user_id, request.amount, request.reason, adjusted_by=admin.id)
    return CreditAdjustResponse(user_id=request.user_id, balance=balance)


# Audit and escalation

@app.get("/audit", response_model=AuditLogListResponse)
def audit_logs_endpoint(user_id: Optional[int] = None, event_type: Optional[str] = None,
                        since: Optional[int] = None, until: Optional[int] = None,
                        limit: Optional[int] = Query(None, ge=1),
                        admin: User = Depends(require_admin)):
    """Query the audit log, newest first."""
    entries = audit.get_audit_logs(user_id=user_id, event_type=event_type, since=since,
                                   until=until, limit=limit)
    return AuditLogListResponse(logs=[vars(e) for e in entries])


@app.post("/escalations/process", response_model=EscalationReportResponse)
def process_escalations_endpoint(admin: User = Depends(require_admin)):
    """Run one escalation sweep on demand."""
    report = escalation.process_escalations()
    return EscalationReportResponse(**report.to_dict())


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    """Map core errors to their status code and reason code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error_type=exc.code,
            message=exc.message,
            details=exc.details,
            timestamp=datetime.now(timezone.utc).isoformat(),
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    content = {"detail": "Internal server error"}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(
        status_code=500,
        content=content,
    )
