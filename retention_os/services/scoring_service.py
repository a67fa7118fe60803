"""
Scoring engine: churn risk, offer ranking, message choice and the
incremental model update applied for every offer event.

Everything here is an explainable weighted sum over named weights; there is
no trained model. Reads go through the repositories, weight reads and
writes go through the injected WeightStore.
"""

from collections.abc import Iterable

import psycopg

from retention_os.config import settings
from retention_os.db.helpers import DatabaseError
from retention_os.db.pool import db_pool
from retention_os.errors import NotFound
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.retention_domain import (
    DEFAULT_OFFER_ORDER,
    OFFER_TYPE_ORDER,
    DiscountStep,
    DowngradeStep,
    OfferEvent,
    OfferType,
    PauseStep,
    parse_offer_type,
)
from retention_os.models.domain.scoring_domain import (
    ChurnRiskResult,
    MessageSuggestion,
    OfferRecommendation,
    PerformanceDelta,
    RiskFactors,
)
from retention_os.repositories.event_repository import EventRepository
from retention_os.repositories.flow_repository import FlowRepository
from retention_os.repositories.performance_repository import PerformanceRepository
from retention_os.repositories.subscription_repository import SubscriptionRepository
from retention_os.repositories.user_repository import UserRepository
from retention_os.services import message_templates
from retention_os.services.rules_engine import segment_user, value_bucket
from retention_os.services.weight_store import (
    BEHAVIOR_WEIGHT,
    HISTORY_WEIGHT,
    VALUE_WEIGHT,
    WeightStore,
)

logger = get_logger(__name__)

NEUTRAL_SCORE = 50
RECENT_DECISION_WINDOW = 10
CANCEL_ATTEMPT_RISK = 25

VALUE_BUCKET_RISK = {"trial": 80.0, "low": 70.0, "mid": 50.0, "high": 30.0}
TRIAL_PLAN_NAMES = frozenset({"trial", "free"})

DEFAULT_PLACEHOLDERS = {
    "name": "there",
    "plan": "starter",
    "percentage": "20",
    "duration": "3 months",
}


def _clamp_score(value: float) -> int:
    return int(max(0, min(100, round(value))))


def _months(count: int) -> str:
    return f"{count} month" if count == 1 else f"{count} months"


# =================================================================
# PERFORMANCE DELTAS
# =================================================================


def performance_delta(event: OfferEvent) -> PerformanceDelta:
    """
    Counter delta contributed by one offer event.

    A decision event counts as shown. Only a confirmed acceptance counts as
    accepted and carries revenue, whether it is the decision itself or a
    later confirmation of a pending decision.
    """
    delta = PerformanceDelta(shown=1 if event.is_decision else 0)
    if event.is_confirmed_acceptance:
        delta.accepted = 1
        delta.revenue = float(event.revenue_saved)
    return delta


def accumulate_delta(totals: dict[tuple, PerformanceDelta], key: tuple, event: OfferEvent) -> None:
    delta = performance_delta(event)
    current = totals.setdefault(key, PerformanceDelta())
    current.shown += delta.shown
    current.accepted += delta.accepted
    current.revenue = round(current.revenue + delta.revenue, 2)


def _fold(events: Iterable[OfferEvent], key) -> dict[tuple, PerformanceDelta]:
    totals: dict[tuple, PerformanceDelta] = {}
    for event in events:
        accumulate_delta(totals, key(event), event)
    return totals


def aggregate_offer_events(
    events: Iterable[OfferEvent],
) -> dict[tuple[OfferType, str], PerformanceDelta]:
    """Full recomputation of offer_performance, keyed by (offer_type, segment)."""
    return _fold(events, lambda e: (e.offer_type, e.segment))


def aggregate_message_events(
    events: Iterable[OfferEvent],
) -> dict[tuple[str, OfferType], PerformanceDelta]:
    """Full recomputation of message_performance, keyed by (template, offer_type)."""
    return _fold(events, lambda e: (e.message_template, e.offer_type))


class ScoringService:
    def __init__(
        self,
        *,
        users=UserRepository,
        subscriptions=SubscriptionRepository,
        events=EventRepository,
        flows=FlowRepository,
        performance=PerformanceRepository,
        weight_store: WeightStore | None = None,
        transaction=None,
        weight_step: float | None = None,
        message_min_samples: int | None = None,
    ):
        self.users = users
        self.subscriptions = subscriptions
        self.events = events
        self.flows = flows
        self.performance = performance
        self.weight_store = weight_store or WeightStore()
        self.transaction = transaction or db_pool.transaction
        self.weight_step = settings.WEIGHT_ADJUST_STEP if weight_step is None else weight_step
        self.message_min_samples = (
            settings.MESSAGE_MIN_SAMPLES if message_min_samples is None else message_min_samples
        )

    # -----------------------------------------------------------------
    # Churn risk
    # -----------------------------------------------------------------

    async def calculate_churn_risk(self, user_id: int) -> ChurnRiskResult:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found", user_id=user_id)

        subscription = await self.subscriptions.get_latest_for_user(user_id)
        recent = await self.events.list_recent_decisions(user_id, limit=RECENT_DECISION_WINDOW)
        weights = await self.weight_store.get_weights()
        segment = segment_user(user, subscription)

        if not recent and subscription is None:
            return ChurnRiskResult(
                user_id=user_id,
                score=NEUTRAL_SCORE,
                segment=segment,
                factors=RiskFactors(behavior=NEUTRAL_SCORE, value=NEUTRAL_SCORE, history=NEUTRAL_SCORE),
                weights=weights,
                neutral=True,
                explanation="No decisions or subscription on record; neutral score.",
            )

        if recent:
            rejects = sum(1 for event in recent if not event.accepted)
            behavior = rejects / len(recent) * 100
        else:
            behavior = float(NEUTRAL_SCORE)

        plan = (user.plan or "").strip().lower()
        if plan in TRIAL_PLAN_NAMES:
            value = VALUE_BUCKET_RISK["trial"]
        elif subscription is not None:
            value = VALUE_BUCKET_RISK[value_bucket(subscription.value)]
        else:
            value = float(NEUTRAL_SCORE)

        if subscription is not None:
            history = float(min(subscription.cancel_attempts * CANCEL_ATTEMPT_RISK, 100))
        else:
            history = float(NEUTRAL_SCORE)

        factors = RiskFactors(behavior=round(behavior, 2), value=value, history=history)
        raw = (
            weights[BEHAVIOR_WEIGHT] * factors.behavior
            + weights[VALUE_WEIGHT] * factors.value
            + weights[HISTORY_WEIGHT] * factors.history
        ) / 10
        score = _clamp_score(raw)

        explanation = (
            f"behavior {factors.behavior:g} x {weights[BEHAVIOR_WEIGHT]:g}, "
            f"value {factors.value:g} x {weights[VALUE_WEIGHT]:g}, "
            f"history {factors.history:g} x {weights[HISTORY_WEIGHT]:g}; "
            f"sum / 10 = {raw:.2f}, clamped to {score}"
        )
        logger.debug("Churn risk calculated", user_id=user_id, score=score, segment=segment)

        return ChurnRiskResult(
            user_id=user_id,
            score=score,
            segment=segment,
            factors=factors,
            weights=weights,
            explanation=explanation,
        )

    # -----------------------------------------------------------------
    # Offer ranking
    # -----------------------------------------------------------------

    async def recommend_best_offer(
        self, user_id: int, flow_id: int | None = None
    ) -> OfferRecommendation:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found", user_id=user_id)

        candidates = list(OFFER_TYPE_ORDER)
        if flow_id is not None:
            flow = await self.flows.get_by_id(flow_id)
            if flow is None:
                raise NotFound(f"Flow {flow_id} not found", flow_id=flow_id)
            candidates = flow.offer_types()

        subscription = await self.subscriptions.get_latest_for_user(user_id)
        segment = segment_user(user, subscription)

        rows = [
            row
            for row in await self.performance.list_offer_performance(segment)
            if row.offer_type in candidates and row.shown_count > 0
        ]

        if rows:
            best = min(
                rows, key=lambda r: (-r.acceptance_rate, OFFER_TYPE_ORDER.index(r.offer_type))
            )
            return OfferRecommendation(
                user_id=user_id,
                flow_id=flow_id,
                segment=segment,
                offer_type=best.offer_type,
                acceptance_rate=round(best.acceptance_rate, 2),
                sample_size=best.shown_count,
                reason=f"Highest acceptance rate in segment {segment}",
            )

        fallback = next(t for t in DEFAULT_OFFER_ORDER if t in candidates)
        return OfferRecommendation(
            user_id=user_id,
            flow_id=flow_id,
            segment=segment,
            offer_type=fallback,
            fallback=True,
            reason="No performance data for this segment; default offer order",
        )

    # -----------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------

    async def suggest_message(
        self, user_id: int, offer_type, flow_id: int | None = None
    ) -> MessageSuggestion:
        offer_type = parse_offer_type(offer_type)

        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found", user_id=user_id)

        step = None
        if flow_id is not None:
            flow = await self.flows.get_by_id(flow_id)
            if flow is None:
                raise NotFound(f"Flow {flow_id} not found", flow_id=flow_id)
            step = flow.step_for(offer_type)

        library = message_templates.templates_for(offer_type)
        order = {t.template_id: i for i, t in enumerate(library)}
        eligible = [
            row
            for row in await self.performance.list_message_performance(offer_type)
            if row.message_template in order and row.shown_count >= self.message_min_samples
        ]

        acceptance_rate = None
        if eligible:
            best = min(
                eligible, key=lambda r: (-r.acceptance_rate, order[r.message_template])
            )
            template = message_templates.TEMPLATES_BY_ID[best.message_template]
            acceptance_rate = round(best.acceptance_rate, 2)
        else:
            template = message_templates.canonical_template(offer_type)

        message = message_templates.render(template, self._placeholders(user, offer_type, step))
        return MessageSuggestion(
            user_id=user_id,
            offer_type=offer_type,
            template_id=template.template_id,
            message=message,
            acceptance_rate=acceptance_rate,
            from_performance=acceptance_rate is not None,
        )

    @staticmethod
    def _placeholders(user, offer_type: OfferType, step) -> dict[str, str]:
        values = dict(DEFAULT_PLACEHOLDERS)
        if user.email:
            values["name"] = user.email.split("@")[0]
        if offer_type == OfferType.PAUSE:
            values["duration"] = _months(step.config.max_months if isinstance(step, PauseStep) else 1)
        if isinstance(step, DiscountStep):
            values["percentage"] = str(step.config.percent)
            values["duration"] = _months(step.config.duration_months)
        if isinstance(step, DowngradeStep):
            values["plan"] = step.config.new_plan
        return values

    # -----------------------------------------------------------------
    # Incremental model update
    # -----------------------------------------------------------------

    async def update_model_with_event(
        self, event: OfferEvent, *, connection: psycopg.AsyncConnection | None = None
    ) -> bool:
        """
        Apply one offer event to the performance tables and weights.

        Idempotent by event id: the model_event_ledger claim and the counter
        increments commit together, so a redelivered event returns False and
        changes nothing.

        With a caller's connection only the counters are written; the caller
        runs nudge_weights() once its transaction has committed.
        """
        if connection is not None:
            return await self._apply_event(event, connection)
        async with self.transaction() as conn:
            applied = await self._apply_event(event, conn)
        if applied:
            await self.nudge_weights(event)
        return applied

    async def _apply_event(self, event: OfferEvent, conn) -> bool:
        if not await self.performance.mark_event_applied(event.id, connection=conn):
            logger.info("Offer event already applied to model", event_id=event.id)
            return False

        delta = performance_delta(event)
        if not delta.is_empty:
            await self.performance.increment_offer_performance(
                event.offer_type,
                event.segment,
                shown=delta.shown,
                accepted=delta.accepted,
                revenue=delta.revenue,
                connection=conn,
            )
            await self.performance.increment_message_performance(
                event.message_template,
                event.offer_type,
                shown=delta.shown,
                accepted=delta.accepted,
                revenue=delta.revenue,
                connection=conn,
            )

        return True

    async def nudge_weights(self, event: OfferEvent) -> float | None:
        """
        Move behavior_weight one step for a committed event.

        A save lowers it, a decline raises it, anything else leaves it alone.
        Runs outside the decision transaction; a failure is logged and the
        step is skipped.
        """
        if event.is_save:
            step = -self.weight_step
        elif not event.accepted:
            step = self.weight_step
        else:
            return None

        try:
            return await self.weight_store.adjust_weight(
                BEHAVIOR_WEIGHT, step, actor="model", reason=f"offer_event:{event.id}"
            )
        except DatabaseError as e:
            logger.warning("Weight nudge skipped", event_id=event.id, error=str(e))
            return None

    async def apply_event_by_id(self, event_id: int) -> bool:
        event = await self.events.get_offer_event(event_id)
        if event is None:
            raise NotFound(f"Offer event {event_id} not found", event_id=event_id)
        return await self.update_model_with_event(event)
