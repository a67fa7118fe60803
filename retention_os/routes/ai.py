"""
Scoring API Routes
Churn risk, offer/message recommendations and scoring weights.
"""

from fastapi import APIRouter, Depends, Query

from retention_os.middleware import GatekeeperContext, gatekeeper_context
from retention_os.models.api.ai_request import WeightUpdateRequest
from retention_os.models.api.ai_response import (
    ModelUpdateResponse,
    WeightsResponse,
    WeightUpdateResponse,
)
from retention_os.models.domain.scoring_domain import (
    ChurnRiskResult,
    MessageSuggestion,
    OfferRecommendation,
)
from retention_os.services.scoring_service import ScoringService
from retention_os.services.weight_store import WeightStore

router = APIRouter(prefix="/ai", tags=["ai"])


def get_scoring_service() -> ScoringService:
    return ScoringService()


def get_weight_store() -> WeightStore:
    return WeightStore()


@router.get("/churn-risk/{user_id}", response_model=ChurnRiskResult)
async def churn_risk(user_id: int, scoring: ScoringService = Depends(get_scoring_service)):
    return await scoring.calculate_churn_risk(user_id)


@router.get("/recommendations/{user_id}", response_model=OfferRecommendation)
async def recommend_offer(
    user_id: int,
    flow_id: int | None = Query(default=None, description="Restrict to this flow's offers"),
    scoring: ScoringService = Depends(get_scoring_service),
):
    return await scoring.recommend_best_offer(user_id, flow_id)


@router.get("/message/{user_id}", response_model=MessageSuggestion)
async def suggest_message(
    user_id: int,
    offer_type: str = Query(..., description="Offer the message is for"),
    flow_id: int | None = Query(default=None),
    scoring: ScoringService = Depends(get_scoring_service),
):
    return await scoring.suggest_message(user_id, offer_type, flow_id)


@router.post("/update-event/{event_id}", response_model=ModelUpdateResponse)
async def update_model_with_event(
    event_id: int, scoring: ScoringService = Depends(get_scoring_service)
):
    """Apply a recorded event to the model. A second call is a no-op."""
    applied = await scoring.apply_event_by_id(event_id)
    return ModelUpdateResponse(event_id=event_id, applied=applied)


@router.get("/weights", response_model=WeightsResponse)
async def list_weights(weights: WeightStore = Depends(get_weight_store)):
    return WeightsResponse(
        weights=await weights.list_weights(), effective=await weights.get_weights()
    )


@router.put("/weights/{name}", response_model=WeightUpdateResponse)
async def update_weight(
    name: str,
    request: WeightUpdateRequest,
    context: GatekeeperContext = Depends(gatekeeper_context),
    weights: WeightStore = Depends(get_weight_store),
):
    value = await weights.set_weight(name, request.value, actor=context.actor, reason=request.reason)
    return WeightUpdateResponse(name=name, value=value)
