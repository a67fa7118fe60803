"""
Weight store: the single read/write path for scoring weights.

Weights are plain numbers in [0, 10], stored in PostgreSQL, inspectable and
manually overridable. Every change leaves a weight_audit row.
"""

from retention_os.errors import InvalidInput, NotFound
from retention_os.infrastructure.audit import audit_logger
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.repositories.weight_repository import (
    WEIGHT_MAX,
    WEIGHT_MIN,
    WeightRepository,
)

logger = get_logger(__name__)

BEHAVIOR_WEIGHT = "behavior_weight"
VALUE_WEIGHT = "value_weight"
HISTORY_WEIGHT = "history_weight"

DEFAULT_WEIGHTS: dict[str, tuple[float, str]] = {
    BEHAVIOR_WEIGHT: (4.0, "Reject ratio over the user's last 10 decisions"),
    VALUE_WEIGHT: (3.0, "Risk implied by the subscription value bucket"),
    HISTORY_WEIGHT: (3.0, "Number of previous cancel attempts"),
}


def clamp_weight(value: float) -> float:
    return max(WEIGHT_MIN, min(WEIGHT_MAX, value))


class WeightStore:
    def __init__(self, repository=WeightRepository):
        self.repository = repository

    async def ensure_defaults(self) -> None:
        for name, (value, description) in DEFAULT_WEIGHTS.items():
            await self.repository.ensure(name, value, description)

    async def get_weights(self) -> dict[str, float]:
        """Current weights; names missing from storage fall back to their defaults."""
        stored = {w.name: w.value for w in await self.repository.list_all()}
        weights = {name: default for name, (default, _) in DEFAULT_WEIGHTS.items()}
        weights.update(stored)
        return {name: clamp_weight(value) for name, value in weights.items()}

    async def list_weights(self):
        return await self.repository.list_all()

    async def set_weight(
        self, name: str, value: float, *, actor: str, reason: str | None = None
    ) -> float:
        """Manual override. Out-of-range values are rejected, not clamped."""
        if not WEIGHT_MIN <= value <= WEIGHT_MAX:
            raise InvalidInput(
                f"Weight must be between {WEIGHT_MIN:g} and {WEIGHT_MAX:g}", name=name, value=value
            )

        result = await self.repository.set_value(name, value, actor=actor, reason=reason)
        if result is None:
            raise NotFound(f"Unknown weight '{name}'", name=name)

        old_value, new_value = result
        await audit_logger.log_weight_change(name, old_value, new_value, actor, reason)
        return new_value

    async def adjust_weight(
        self,
        name: str,
        delta: float,
        *,
        actor: str,
        reason: str | None = None,
    ) -> float | None:
        """Nudge a weight by delta; the result is clamped to [0, 10]."""
        result = await self.repository.adjust(name, delta, actor=actor, reason=reason)
        if result is None:
            logger.warning("Weight adjustment skipped, weight not seeded", name=name)
            return None

        old_value, new_value = result
        logger.info(
            "Weight adjusted",
            name=name,
            old_value=old_value,
            new_value=new_value,
            actor=actor,
            reason=reason,
        )
        return new_value
