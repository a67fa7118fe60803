"""
Repository for retention flows. The engine reads; operator tooling writes
through flow_service, which validates the FlowDefinition first.
"""

import psycopg
from psycopg.types.json import Jsonb

from retention_os.db.helpers import fetch_all, fetch_one
from retention_os.models.domain.retention_domain import Flow, FlowDefinition

FLOW_COLUMNS = (
    "id, name, steps, language, ranking_score, target_plans, target_regions, "
    "target_value_buckets, created_at, updated_at"
)


class FlowRepository:
    @staticmethod
    async def get_by_id(
        flow_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> Flow | None:
        row = await fetch_one(
            f"SELECT {FLOW_COLUMNS} FROM flows WHERE id = %s", (flow_id,), connection=connection
        )
        return Flow.model_validate(row) if row else None

    @staticmethod
    async def list_active(language: str) -> list[Flow]:
        """Flows with a positive ranking score for a language."""
        rows = await fetch_all(
            f"""
            SELECT {FLOW_COLUMNS} FROM flows
            WHERE language = %s AND ranking_score > 0
            ORDER BY ranking_score DESC, updated_at DESC, id DESC
            """,
            (language,),
        )
        return [Flow.model_validate(row) for row in rows]

    @staticmethod
    async def list_all(language: str | None = None) -> list[Flow]:
        """Every flow, active or not, best ranked first."""
        rows = await fetch_all(
            f"""
            SELECT {FLOW_COLUMNS} FROM flows
            WHERE %s::text IS NULL OR language = %s
            ORDER BY ranking_score DESC, created_at DESC, id DESC
            """,
            (language, language),
        )
        return [Flow.model_validate(row) for row in rows]

    @staticmethod
    async def create(definition: FlowDefinition) -> Flow:
        row = await fetch_one(
            f"""
            INSERT INTO flows (
                name, steps, language, ranking_score,
                target_plans, target_regions, target_value_buckets
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {FLOW_COLUMNS}
            """,
            _definition_params(definition),
        )
        return Flow.model_validate(row)

    @staticmethod
    async def update(flow_id: int, definition: FlowDefinition) -> Flow | None:
        row = await fetch_one(
            f"""
            UPDATE flows SET
                name = %s, steps = %s, language = %s, ranking_score = %s,
                target_plans = %s, target_regions = %s, target_value_buckets = %s,
                updated_at = NOW()
            WHERE id = %s
            RETURNING {FLOW_COLUMNS}
            """,
            (*_definition_params(definition), flow_id),
        )
        return Flow.model_validate(row) if row else None

    @staticmethod
    async def set_ranking_score(flow_id: int, ranking_score: float) -> Flow | None:
        row = await fetch_one(
            f"""
            UPDATE flows SET ranking_score = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {FLOW_COLUMNS}
            """,
            (ranking_score, flow_id),
        )
        return Flow.model_validate(row) if row else None


def _definition_params(definition: FlowDefinition) -> tuple:
    steps = [step.model_dump(mode="json") for step in definition.steps]
    return (
        definition.name,
        Jsonb(steps),
        definition.language,
        definition.ranking_score,
        definition.target_plans,
        definition.target_regions,
        list(definition.target_value_buckets),
    )
