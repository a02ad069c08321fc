from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import AutopilotAction, AutopilotActionEvent
from app.services.autopilot.errors import (
    ActionNotFound,
    AutopilotError,
    ExpiredWindow,
    FatalAdapterError,
    InputError,
    InvalidTransition,
    ManualActionRequired,
    NotImplementedStrategy,
    RateLimitExceeded,
    RetryableAdapterError,
)
from app.services.autopilot.rules import coerce_rule_type, default_rule_config
from app.services.autopilot.service import AutopilotService
from app.services.autopilot.types import (
    DelistOnSaleEvent,
    OfferReceivedEvent,
    RepriceCheckEvent,
    StaleCheckEvent,
    TriggerEvent,
)
from app.utils.logger import autopilot_logger, logger


router = APIRouter(prefix="/api/autopilot", tags=["autopilot"])


# ---- Pydantic Schemas ----


class RuleResponse(BaseModel):
    user_id: str
    rule_type: str
    enabled: bool
    configured: bool
    config: Dict[str, Any]
    updated_at: Optional[datetime] = None


class RuleUpsertRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None


class RuleEnabledRequest(BaseModel):
    enabled: bool


class OfferEventRequest(BaseModel):
    user_id: str
    item_id: Optional[str] = None
    offer_amount: Any = None
    asking_price: Any = None
    floor_price: Optional[float] = None
    buyer_username: Optional[str] = None
    offer_id: Optional[str] = None
    channel: Optional[str] = "ebay"
    counter_round: int = 0
    idempotency_key: Optional[str] = None


class RepriceCheckRequest(BaseModel):
    user_id: str
    item_id: Optional[str] = None
    engagement: Dict[str, float] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class StaleCheckRequest(BaseModel):
    user_id: str
    item_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class DelistOnSaleRequest(BaseModel):
    user_id: str
    item_id: str
    sold_on_channel: str
    order_id: str
    idempotency_key: Optional[str] = None


class ProposalResponse(BaseModel):
    action_type: str
    item_id: Optional[str]
    channel: Optional[str]
    confidence: float
    confidence_level: str
    requires_approval: bool
    reversible: bool
    payload: Dict[str, Any]


class ActionResponse(BaseModel):
    id: str
    user_id: str
    item_id: Optional[str]
    channel: Optional[str]
    action_type: str
    confidence: float
    confidence_level: str
    status: str
    requires_approval: bool
    reversible: bool
    payload: Optional[Dict[str, Any]]
    before_state: Optional[Dict[str, Any]]
    after_state: Optional[Dict[str, Any]]
    retry_count: int
    error_message: Optional[str]
    executed_at: Optional[datetime]
    undo_deadline: Optional[datetime]
    next_attempt_at: Optional[datetime]
    created_at: Optional[datetime]


class ActionEventResponse(BaseModel):
    from_status: Optional[str]
    to_status: str
    note: Optional[str]
    created_at: datetime


class EventResponse(BaseModel):
    dry_run: bool
    proposals: List[ProposalResponse] = Field(default_factory=list)
    actions: List[ActionResponse] = Field(default_factory=list)
    errors: List[Dict[str, Optional[str]]] = Field(default_factory=list)


class ActionNoteRequest(BaseModel):
    note: Optional[str] = None


EVENT_REQUESTS = {
    "offer": OfferEventRequest,
    "reprice-check": RepriceCheckRequest,
    "stale-check": StaleCheckRequest,
    "delist-on-sale": DelistOnSaleRequest,
}


# ---- Helpers ----


def get_autopilot_service(db: Session = Depends(get_db)) -> AutopilotService:
    return AutopilotService(db)


def _http_error(exc: AutopilotError) -> HTTPException:
    if isinstance(exc, ActionNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InputError, InvalidTransition, ManualActionRequired)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, RateLimitExceeded):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ExpiredWindow):
        code = status.HTTP_410_GONE
    elif isinstance(exc, NotImplementedStrategy):
        code = status.HTTP_501_NOT_IMPLEMENTED
    elif isinstance(exc, (RetryableAdapterError, FatalAdapterError)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


def _action_to_response(action: AutopilotAction) -> ActionResponse:
    return ActionResponse(
        id=action.id,
        user_id=action.user_id,
        item_id=action.item_id,
        channel=action.channel,
        action_type=action.action_type,
        confidence=action.confidence,
        confidence_level=action.confidence_level,
        status=action.status,
        requires_approval=bool(action.requires_approval),
        reversible=bool(action.reversible),
        payload=action.payload,
        before_state=action.before_state,
        after_state=action.after_state,
        retry_count=action.retry_count or 0,
        error_message=action.error_message,
        executed_at=action.executed_at,
        undo_deadline=action.undo_deadline,
        next_attempt_at=action.next_attempt_at,
        created_at=action.created_at,
    )


def _event_from_request(kind: str, body: Dict[str, Any]) -> TriggerEvent:
    request_model = EVENT_REQUESTS.get(kind)
    if request_model is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown event kind '{kind}'. Expected one of: {', '.join(EVENT_REQUESTS)}",
        )
    try:
        req = request_model.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors())
    if isinstance(req, OfferEventRequest):
        return OfferReceivedEvent(**req.model_dump())
    if isinstance(req, RepriceCheckRequest):
        return RepriceCheckEvent(**req.model_dump())
    if isinstance(req, StaleCheckRequest):
        return StaleCheckEvent(**req.model_dump())
    return DelistOnSaleEvent(**req.model_dump())


# ---- Rules ----


@router.get("/rules/{user_id}/{rule_type}", response_model=RuleResponse)
async def get_rule(user_id: str, rule_type: str, service: AutopilotService = Depends(get_autopilot_service)):
    try:
        rt = coerce_rule_type(rule_type)
    except InputError as exc:
        raise _http_error(exc)

    rule = service.rules.get_rule(user_id, rt)
    if rule is None:
        return RuleResponse(
            user_id=user_id,
            rule_type=rt.value,
            enabled=False,
            configured=False,
            config=default_rule_config(rt).to_json(),
        )
    return RuleResponse(
        user_id=user_id,
        rule_type=rule.rule_type,
        enabled=bool(rule.enabled),
        configured=True,
        config=rule.config or {},
        updated_at=rule.updated_at,
    )


@router.put("/rules/{user_id}/{rule_type}", response_model=RuleResponse)
async def upsert_rule(
    user_id: str,
    rule_type: str,
    payload: RuleUpsertRequest,
    service: AutopilotService = Depends(get_autopilot_service),
):
    try:
        rule = service.rules.upsert_rule(user_id, rule_type, payload.config, payload.enabled)
    except InputError as exc:
        raise _http_error(exc)
    return RuleResponse(
        user_id=user_id,
        rule_type=rule.rule_type,
        enabled=bool(rule.enabled),
        configured=True,
        config=rule.config or {},
        updated_at=rule.updated_at,
    )


@router.post("/rules/{user_id}/{rule_type}/enabled", response_model=RuleResponse)
async def set_rule_enabled(
    user_id: str,
    rule_type: str,
    payload: RuleEnabledRequest,
    service: AutopilotService = Depends(get_autopilot_service),
):
    try:
        rule = service.rules.set_enabled(user_id, rule_type, payload.enabled)
    except InputError as exc:
        raise _http_error(exc)
    return RuleResponse(
        user_id=user_id,
        rule_type=rule.rule_type,
        enabled=bool(rule.enabled),
        configured=True,
        config=rule.config or {},
        updated_at=rule.updated_at,
    )


# ---- Events ----


@router.post("/events/{kind}", response_model=EventResponse)
async def post_event(
    kind: str,
    body: Dict[str, Any] = Body(...),
    dry_run: bool = Query(False),
    service: AutopilotService = Depends(get_autopilot_service),
):
    """Feed a trigger event to the engine.

    With ``dry_run`` the proposals are returned without being stored.
    """
    event = _event_from_request(kind, body)
    try:
        result = service.evaluate_detailed(event)
        errors = [{"item_id": item_id, "error": msg} for item_id, msg in result.errors]
        if dry_run:
            return EventResponse(
                dry_run=True,
                proposals=[
                    ProposalResponse(
                        action_type=p.action_type.value,
                        item_id=p.item_id,
                        channel=p.channel,
                        confidence=p.confidence,
                        confidence_level=p.confidence_level.value,
                        requires_approval=p.requires_approval,
                        reversible=p.reversible,
                        payload=p.payload,
                    )
                    for p in result.proposals
                ],
                errors=errors,
            )
        actions = await service.submit(event, result=result)
    except AutopilotError as exc:
        logger.warning("[autopilot] event kind=%s rejected: %s", kind, exc)
        raise _http_error(exc)

    return EventResponse(
        dry_run=False,
        actions=[_action_to_response(a) for a in actions],
        errors=errors,
    )


# ---- Actions ----


@router.get("/actions/{user_id}", response_model=List[ActionResponse])
async def list_actions(
    user_id: str,
    limit: int = Query(20, ge=1, le=200),
    service: AutopilotService = Depends(get_autopilot_service),
):
    return [_action_to_response(a) for a in service.get_recent_actions(user_id, limit)]


@router.get("/actions/{user_id}/pending-count")
async def pending_count(user_id: str, service: AutopilotService = Depends(get_autopilot_service)):
    return {"user_id": user_id, "pending": service.get_pending_count(user_id)}


@router.get("/actions/{action_id}/history", response_model=List[ActionEventResponse])
async def action_history(action_id: str, service: AutopilotService = Depends(get_autopilot_service)):
    try:
        events: List[AutopilotActionEvent] = service.get_action_history(action_id)
    except AutopilotError as exc:
        raise _http_error(exc)
    return [
        ActionEventResponse(
            from_status=e.from_status, to_status=e.to_status, note=e.note, created_at=e.created_at
        )
        for e in events
    ]


@router.post("/actions/{action_id}/approve", response_model=ActionResponse)
async def approve_action(
    action_id: str,
    payload: Optional[ActionNoteRequest] = None,
    service: AutopilotService = Depends(get_autopilot_service),
):
    try:
        action = service.approve(action_id, payload.note if payload else None)
        # Approved actions run right away; a rate-limit deferral or adapter
        # failure is reflected in the returned status.
        action = await service.execute(action.id)
    except AutopilotError as exc:
        raise _http_error(exc)
    return _action_to_response(action)


@router.post("/actions/{action_id}/reject", response_model=ActionResponse)
async def reject_action(
    action_id: str,
    payload: Optional[ActionNoteRequest] = None,
    service: AutopilotService = Depends(get_autopilot_service),
):
    try:
        action = service.reject(action_id, payload.note if payload else None)
    except AutopilotError as exc:
        raise _http_error(exc)
    return _action_to_response(action)


@router.post("/actions/{action_id}/execute", response_model=ActionResponse)
async def execute_action(action_id: str, service: AutopilotService = Depends(get_autopilot_service)):
    try:
        action = await service.execute(action_id)
    except AutopilotError as exc:
        raise _http_error(exc)
    return _action_to_response(action)


@router.post("/actions/{action_id}/undo", response_model=ActionResponse)
async def undo_action(action_id: str, service: AutopilotService = Depends(get_autopilot_service)):
    try:
        action = await service.undo(action_id)
    except AutopilotError as exc:
        raise _http_error(exc)
    return _action_to_response(action)


# ---- Diagnostics ----


@router.get("/logs")
async def recent_logs(limit: int = Query(100, ge=1, le=1000)):
    return {"logs": autopilot_logger.get_logs(limit)}
