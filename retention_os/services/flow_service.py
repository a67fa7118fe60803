"""
Operator-facing flow management. Definitions are validated into the typed
step union before anything is stored.
"""

from typing import Any

from pydantic import ValidationError

from retention_os.errors import InvalidInput, NotFound
from retention_os.infrastructure.audit import audit_logger
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.retention_domain import Flow, FlowDefinition
from retention_os.repositories.flow_repository import FlowRepository

logger = get_logger(__name__)

ACTIVATED_RANKING_SCORE = 1.0


def parse_flow_definition(payload: dict[str, Any] | FlowDefinition) -> FlowDefinition:
    if isinstance(payload, FlowDefinition):
        return payload
    try:
        return FlowDefinition.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise InvalidInput(f"Invalid flow definition at {location}: {first['msg']}") from None


class FlowService:
    def __init__(self, flows=FlowRepository):
        self.flows = flows

    async def get_flow_by_id(self, flow_id: int) -> Flow:
        flow = await self.flows.get_by_id(flow_id)
        if flow is None:
            raise NotFound(f"Flow {flow_id} not found", flow_id=flow_id)
        return flow

    async def create_flow(self, payload, *, actor: str) -> Flow:
        definition = parse_flow_definition(payload)
        flow = await self.flows.create(definition)
        logger.info("Flow created", flow_id=flow.id, name=flow.name, ranking_score=flow.ranking_score)
        await audit_logger.log(
            actor=actor,
            action="flow_created",
            resource_type="flow",
            resource_id=str(flow.id),
            metadata={"name": flow.name, "ranking_score": flow.ranking_score},
        )
        return flow

    async def update_flow(self, flow_id: int, payload, *, actor: str) -> Flow:
        definition = parse_flow_definition(payload)
        flow = await self.flows.update(flow_id, definition)
        if flow is None:
            raise NotFound(f"Flow {flow_id} not found", flow_id=flow_id)
        logger.info("Flow updated", flow_id=flow.id, ranking_score=flow.ranking_score)
        await audit_logger.log(
            actor=actor,
            action="flow_updated",
            resource_type="flow",
            resource_id=str(flow.id),
            metadata={"name": flow.name, "ranking_score": flow.ranking_score},
        )
        return flow

    async def list_flows(self, language: str | None = None) -> list[Flow]:
        return await self.flows.list_all(language)

    async def activate_flow(self, flow_id: int, *, actor: str) -> Flow:
        """
        Make a flow selectable again.

        A flow at ranking score 0 comes back at 1; a flow that is already
        active keeps its score.
        """
        flow = await self.get_flow_by_id(flow_id)
        if not flow.is_active:
            flow = await self._set_ranking_score(flow, ACTIVATED_RANKING_SCORE, "flow_activated", actor)
        return flow

    async def deactivate_flow(self, flow_id: int, *, actor: str) -> Flow:
        flow = await self.get_flow_by_id(flow_id)
        if flow.is_active:
            flow = await self._set_ranking_score(flow, 0, "flow_deactivated", actor)
        return flow

    async def _set_ranking_score(self, flow: Flow, score: float, action: str, actor: str) -> Flow:
        updated = await self.flows.set_ranking_score(flow.id, score)
        if updated is None:
            raise NotFound(f"Flow {flow.id} not found", flow_id=flow.id)
        logger.info(
            "Flow ranking changed", flow_id=flow.id, old_score=flow.ranking_score, new_score=score
        )
        await audit_logger.log(
            actor=actor,
            action=action,
            resource_type="flow",
            resource_id=str(flow.id),
            metadata={"old_ranking_score": flow.ranking_score, "ranking_score": score},
        )
        return updated
