"""
Retention API Routes
Widget endpoints (start, decision) and flow management.
"""

from fastapi import APIRouter, Depends, Query, status

from retention_os.infrastructure.observability.logging import get_logger
from retention_os.middleware import GatekeeperContext, gatekeeper_context, rate_limit_widget
from retention_os.models.api.retention_request import (
    DecisionRequest,
    FlowRequest,
    StartRetentionRequest,
)
from retention_os.models.api.retention_response import (
    DecisionResponse,
    FlowListResponse,
    FlowResponse,
    StartRetentionResponse,
)
from retention_os.services.decision_processor import DecisionProcessor
from retention_os.services.flow_service import FlowService

logger = get_logger(__name__)

router = APIRouter(prefix="/retention", tags=["retention"])


def get_decision_processor() -> DecisionProcessor:
    return DecisionProcessor()


def get_flow_service() -> FlowService:
    return FlowService()


@router.post(
    "/start",
    response_model=StartRetentionResponse,
    dependencies=[Depends(rate_limit_widget)],
)
async def start_retention(
    request: StartRetentionRequest,
    processor: DecisionProcessor = Depends(get_decision_processor),
):
    """Select the retention flow for a user who clicked cancel."""
    result = await processor.start_retention_flow(
        request.user_id,
        request.plan,
        request.region,
        email=request.email,
        billing_ref=request.billing_ref,
        value=request.value,
        language=request.language,
    )
    return StartRetentionResponse.from_result(result)


@router.post(
    "/decision",
    response_model=DecisionResponse,
    dependencies=[Depends(rate_limit_widget)],
)
async def record_decision(
    request: DecisionRequest,
    processor: DecisionProcessor = Depends(get_decision_processor),
):
    """Record the user's accept/decline of one offer step."""
    result = await processor.process_user_decision(
        request.flow_id,
        request.offer_type,
        request.accepted,
        user_id=request.user_id,
        revenue_value=request.revenue_value,
        reason_code=request.reason_code,
        reason_text=request.reason_text,
        attempt_id=request.attempt_id,
        message_template=request.message_template,
        decision_id=str(request.decision_id) if request.decision_id else None,
    )
    return DecisionResponse.from_result(result)


@router.get("/flow/{flow_id}", response_model=FlowResponse)
async def get_flow(flow_id: int, flows: FlowService = Depends(get_flow_service)):
    flow = await flows.get_flow_by_id(flow_id)
    return FlowResponse(flow=flow, active=flow.is_active)


@router.post("/flows", response_model=FlowResponse, status_code=status.HTTP_201_CREATED)
async def create_flow(
    request: FlowRequest,
    context: GatekeeperContext = Depends(gatekeeper_context),
    flows: FlowService = Depends(get_flow_service),
):
    flow = await flows.create_flow(request.model_dump(), actor=context.actor)
    return FlowResponse(flow=flow, active=flow.is_active)


@router.put("/flows/{flow_id}", response_model=FlowResponse)
async def update_flow(
    flow_id: int,
    request: FlowRequest,
    context: GatekeeperContext = Depends(gatekeeper_context),
    flows: FlowService = Depends(get_flow_service),
):
    """Replace a flow definition. Setting ranking_score to 0 deactivates it."""
    flow = await flows.update_flow(flow_id, request.model_dump(), actor=context.actor)
    return FlowResponse(flow=flow, active=flow.is_active)


@router.get("/flows", response_model=FlowListResponse)
async def list_flows(
    language: str | None = Query(default=None, min_length=2, max_length=10),
    flows: FlowService = Depends(get_flow_service),
):
    """All flows, inactive ones included, best ranked first."""
    listed = await flows.list_flows(language)
    return FlowListResponse(
        total=len(listed), flows=[FlowResponse(flow=f, active=f.is_active) for f in listed]
    )


@router.post("/flows/{flow_id}/activate", response_model=FlowResponse)
async def activate_flow(
    flow_id: int,
    context: GatekeeperContext = Depends(gatekeeper_context),
    flows: FlowService = Depends(get_flow_service),
):
    flow = await flows.activate_flow(flow_id, actor=context.actor)
    return FlowResponse(flow=flow, active=flow.is_active)


@router.post("/flows/{flow_id}/deactivate", response_model=FlowResponse)
async def deactivate_flow(
    flow_id: int,
    context: GatekeeperContext = Depends(gatekeeper_context),
    flows: FlowService = Depends(get_flow_service),
):
    """Set ranking_score to 0 so the flow is never selected."""
    flow = await flows.deactivate_flow(flow_id, actor=context.actor)
    return FlowResponse(flow=flow, active=flow.is_active)
