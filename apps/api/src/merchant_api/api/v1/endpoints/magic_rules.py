"""Administrative endpoints for magic rule definitions and manual evaluation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import String, and_, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_api.api.dependencies.security import require_internal_secret, require_organization_id
from merchant_api.core.settings import settings
from merchant_api.db.session import get_session
from merchant_api.models.magic_rule import (
    MagicEventTypeEnum,
    MagicRule,
    MagicRuleExecution,
    MagicRuleScopeEnum,
)
from merchant_api.schemas.magic_rules import (
    ACTIONS_ADAPTER,
    CONDITIONS_ADAPTER,
    Action,
    Condition,
    EventPayload,
    MagicEventType,
    MagicRuleDefinition,
    RuleExecutionResult,
)
from merchant_api.services.magic_rules import (
    MagicRuleActionExecutor,
    MagicRuleDecodeError,
    MagicRuleEngine,
    MagicRuleOrchestrator,
    resolve_timezone,
)


router = APIRouter(
    prefix="/magic-rules",
    tags=["Magic Rules"],
    dependencies=[Depends(require_internal_secret)],
)

LIST_LIMIT = 200
EXECUTIONS_LIMIT = 100

RuleScope = Literal["base", "supplier", "both"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _schedule_is_inverted(start_date: datetime | None, end_date: datetime | None) -> bool:
    return start_date is not None and end_date is not None and _as_utc(end_date) < _as_utc(start_date)


class _ScheduledRuleModel(_CamelModel):
    @model_validator(mode="after")
    def _check_schedule(self):
        if _schedule_is_inverted(self.start_date, self.end_date):
            raise ValueError("endDate must not be before startDate")
        return self


class MagicRuleCreateRequest(_ScheduledRuleModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    event: MagicEventType
    scope: RuleScope = "both"
    priority: int = Field(default=100, ge=0)
    is_enabled: bool = Field(default=True, alias="isEnabled")
    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(..., min_length=1)


class MagicRuleUpdateRequest(_ScheduledRuleModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    event: MagicEventType | None = None
    scope: RuleScope | None = None
    priority: int | None = Field(default=None, ge=0)
    is_enabled: bool | None = Field(default=None, alias="isEnabled")
    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    conditions: List[Condition] | None = None
    actions: List[Action] | None = Field(default=None, min_length=1)


class MagicRuleResponse(_CamelModel):
    id: UUID
    name: str
    description: str | None
    event: str
    scope: str
    priority: int
    is_enabled: bool = Field(..., alias="isEnabled")
    start_date: datetime | None = Field(default=None, alias="startDate")
    end_date: datetime | None = Field(default=None, alias="endDate")
    conditions: list[Any]
    actions: list[Any]
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")


class MagicRuleListResponse(_CamelModel):
    rules: list[MagicRuleResponse]


class MagicRuleRunRequest(_CamelModel):
    event: EventPayload
    rules: List[MagicRuleDefinition] = Field(..., min_length=1)


class MagicRuleRunResponse(_CamelModel):
    ok: bool
    results: list[RuleExecutionResult]


class OrderEvaluationRequest(_CamelModel):
    base_affiliate_points_awarded: int | None = Field(default=None, alias="baseAffiliatePointsAwarded")


class OrderEvaluationResponse(_CamelModel):
    results: list[RuleExecutionResult]


class MagicRuleExecutionResponse(_CamelModel):
    id: UUID
    rule_id: UUID = Field(..., alias="ruleId")
    order_id: UUID = Field(..., alias="orderId")
    status: str
    actions_executed: list[str] = Field(default_factory=list, alias="actionsExecuted")
    error: str | None = None
    created_at: datetime | None = Field(default=None, alias="createdAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


def _serialize_rule(rule: MagicRule) -> MagicRuleResponse:
    return MagicRuleResponse(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        event=_enum_value(rule.event),
        scope=_enum_value(rule.scope),
        priority=rule.priority,
        is_enabled=bool(rule.is_enabled),
        start_date=rule.start_date,
        end_date=rule.end_date,
        conditions=list(rule.conditions or []),
        actions=list(rule.actions or []),
        created_at=rule.created_at,
        updated_at=rule.updated_at,
    )


def _serialize_execution(execution: MagicRuleExecution) -> MagicRuleExecutionResponse:
    return MagicRuleExecutionResponse(
        id=execution.id,
        rule_id=execution.rule_id,
        order_id=execution.order_id,
        status=_enum_value(execution.status),
        actions_executed=list(execution.actions_executed or []),
        error=execution.error,
        created_at=execution.created_at,
        completed_at=execution.completed_at,
    )


def _decode_error_detail(exc: MagicRuleDecodeError) -> dict[str, Any]:
    return {
        "message": str(exc),
        "ruleId": exc.rule_id,
        "errors": [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
            for error in exc.errors
        ],
    }


async def _get_rule_or_404(db: AsyncSession, organization_id: str, rule_id: UUID) -> MagicRule:
    stmt = select(MagicRule).where(and_(MagicRule.id == rule_id, MagicRule.organization_id == organization_id))
    result = await db.execute(stmt)
    rule = result.scalar_one_or_none()
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Magic rule not found")
    return rule


@router.get("/", response_model=MagicRuleListResponse)
async def list_magic_rules(
    search: str | None = Query(default=None, max_length=200),
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> MagicRuleListResponse:
    """List rules for the organization, lowest priority value first."""

    stmt = select(MagicRule).where(MagicRule.organization_id == organization_id)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(MagicRule.name).like(pattern),
                func.lower(cast(MagicRule.event, String)).like(pattern),
            )
        )
    stmt = stmt.order_by(MagicRule.priority.asc(), MagicRule.updated_at.desc()).limit(LIST_LIMIT)
    result = await db.execute(stmt)
    return MagicRuleListResponse(rules=[_serialize_rule(rule) for rule in result.scalars().all()])


@router.post("/", response_model=MagicRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_magic_rule(
    payload: MagicRuleCreateRequest,
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> MagicRuleResponse:
    rule = MagicRule(
        organization_id=organization_id,
        name=payload.name,
        description=payload.description,
        event=MagicEventTypeEnum(payload.event.value),
        scope=MagicRuleScopeEnum(payload.scope),
        priority=payload.priority,
        is_enabled=payload.is_enabled,
        start_date=payload.start_date,
        end_date=payload.end_date,
        conditions=CONDITIONS_ADAPTER.dump_python(payload.conditions, mode="json", by_alias=True),
        actions=ACTIONS_ADAPTER.dump_python(payload.actions, mode="json", by_alias=True),
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return _serialize_rule(rule)


@router.post("/run", response_model=MagicRuleRunResponse)
async def run_magic_rules(
    payload: MagicRuleRunRequest,
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> MagicRuleRunResponse:
    """Evaluate caller-supplied rules against a caller-supplied event."""

    if payload.event.organization_id != organization_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Organization mismatch")

    engine = MagicRuleEngine(
        MagicRuleActionExecutor(db),
        tz=resolve_timezone(settings.magic_rules_timezone),
    )
    results = await engine.run(payload.rules, payload.event)
    return MagicRuleRunResponse(ok=True, results=results)


@router.post("/orders/{order_id}/evaluate", response_model=OrderEvaluationResponse)
async def evaluate_order(
    order_id: UUID,
    payload: OrderEvaluationRequest | None = None,
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> OrderEvaluationResponse:
    orchestrator = MagicRuleOrchestrator(db)
    try:
        results = await orchestrator.evaluate_rules_for_order(
            organization_id=organization_id,
            order_id=order_id,
            base_affiliate_points_awarded=payload.base_affiliate_points_awarded if payload else None,
        )
    except MagicRuleDecodeError as exc:
        raise HTTPException(
            status_code=422,
            detail=_decode_error_detail(exc),
        ) from exc
    return OrderEvaluationResponse(results=results)


@router.get("/{rule_id}", response_model=MagicRuleResponse)
async def get_magic_rule(
    rule_id: UUID,
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> MagicRuleResponse:
    rule = await _get_rule_or_404(db, organization_id, rule_id)
    return _serialize_rule(rule)


@router.patch("/{rule_id}", response_model=MagicRuleResponse)
async def update_magic_rule(
    rule_id: UUID,
    payload: MagicRuleUpdateRequest,
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> MagicRuleResponse:
    rule = await _get_rule_or_404(db, organization_id, rule_id)
    updates = payload.model_dump(exclude_unset=True)

    if "name" in updates and payload.name is not None:
        rule.name = payload.name
    if "description" in updates:
        rule.description = payload.description
    if "event" in updates and payload.event is not None:
        rule.event = MagicEventTypeEnum(payload.event.value)
    if "scope" in updates and payload.scope is not None:
        rule.scope = MagicRuleScopeEnum(payload.scope)
    if "priority" in updates and payload.priority is not None:
        rule.priority = payload.priority
    if "is_enabled" in updates and payload.is_enabled is not None:
        rule.is_enabled = payload.is_enabled
    if "start_date" in updates:
        rule.start_date = payload.start_date
    if "end_date" in updates:
        rule.end_date = payload.end_date
    if _schedule_is_inverted(rule.start_date, rule.end_date):
        await db.rollback()
        raise HTTPException(
            status_code=422,
            detail="endDate must not be before startDate",
        )
    if "conditions" in updates and payload.conditions is not None:
        rule.conditions = CONDITIONS_ADAPTER.dump_python(payload.conditions, mode="json", by_alias=True)
    if "actions" in updates and payload.actions is not None:
        rule.actions = ACTIONS_ADAPTER.dump_python(payload.actions, mode="json", by_alias=True)

    await db.commit()
    await db.refresh(rule)
    return _serialize_rule(rule)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_magic_rule(
    rule_id: UUID,
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> Response:
    rule = await _get_rule_or_404(db, organization_id, rule_id)
    await db.delete(rule)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{rule_id}/executions", response_model=List[MagicRuleExecutionResponse])
async def list_rule_executions(
    rule_id: UUID,
    organization_id: str = Depends(require_organization_id),
    db: AsyncSession = Depends(get_session),
) -> List[MagicRuleExecutionResponse]:
    """Execution records for one rule, newest first."""

    await _get_rule_or_404(db, organization_id, rule_id)
    stmt = (
        select(MagicRuleExecution)
        .where(MagicRuleExecution.rule_id == rule_id)
        .order_by(MagicRuleExecution.created_at.desc())
        .limit(EXECUTIONS_LIMIT)
    )
    result = await db.execute(stmt)
    return [_serialize_execution(execution) for execution in result.scalars().all()]
