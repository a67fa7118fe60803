from datetime import UTC, datetime

import pytest

from retention_os.errors import InvalidInput, NotFound
from retention_os.models.domain.retention_domain import (
    EventStatus,
    OfferEvent,
    OfferPerformance,
    OfferType,
)
from retention_os.services import message_templates
from retention_os.services.scoring_service import (
    NEUTRAL_SCORE,
    aggregate_offer_events,
    performance_delta,
)
from retention_os.services.weight_store import BEHAVIOR_WEIGHT


def make_event(event_id: int, **fields) -> OfferEvent:
    values = {
        "decision_id": f"d-{event_id}",
        "user_id": 1,
        "flow_id": 1,
        "offer_type": OfferType.DISCOUNT,
        "segment": "pro:mid:us",
        "message_template": "discount_default",
        "accepted": False,
        "status": EventStatus.DECLINED,
    }
    values.update(fields)
    return OfferEvent(id=event_id, created_at=datetime.now(UTC), **values)


async def add_user(engine, plan="pro", region="us", email=None):
    user = await engine.users.upsert_by_external_id("ext-1", plan=plan, region=region, email=email)
    return user


def test_performance_delta_rules():
    declined = make_event(1)
    confirmed = make_event(
        2, accepted=True, status=EventStatus.CONFIRMED, revenue_saved=12.5
    )
    pending = make_event(3, accepted=True, status=EventStatus.PENDING_CONFIRMATION)
    confirmation = make_event(
        4,
        accepted=True,
        status=EventStatus.CONFIRMED,
        revenue_saved=12.5,
        confirms_event_id=3,
    )

    assert (performance_delta(declined).shown, performance_delta(declined).accepted) == (1, 0)
    assert performance_delta(confirmed).model_dump() == {"shown": 1, "accepted": 1, "revenue": 12.5}
    assert performance_delta(pending).model_dump() == {"shown": 1, "accepted": 0, "revenue": 0.0}
    assert performance_delta(confirmation).model_dump() == {"shown": 0, "accepted": 1, "revenue": 12.5}


def test_aggregate_counts_pending_once_when_confirmed():
    events = [
        make_event(1, accepted=True, status=EventStatus.PENDING_CONFIRMATION),
        make_event(
            2, accepted=True, status=EventStatus.CONFIRMED, revenue_saved=9.0, confirms_event_id=1
        ),
        make_event(3),
    ]

    totals = aggregate_offer_events(events)[(OfferType.DISCOUNT, "pro:mid:us")]

    assert (totals.shown, totals.accepted, totals.revenue) == (2, 1, 9.0)


@pytest.mark.asyncio
async def test_churn_risk_neutral_without_history(engine):
    user = await add_user(engine)

    result = await engine.scoring.calculate_churn_risk(user.id)

    assert result.score == NEUTRAL_SCORE
    assert result.neutral is True


@pytest.mark.asyncio
async def test_churn_risk_unknown_user(engine):
    with pytest.raises(NotFound):
        await engine.scoring.calculate_churn_risk(999)


@pytest.mark.asyncio
async def test_churn_risk_deterministic_and_bounded(engine):
    user = await add_user(engine)
    subscription = await engine.subscriptions.create(user.id, value=150)
    for _ in range(3):
        await engine.subscriptions.increment_cancel_attempts(subscription.id)
    for i in range(4):
        await engine.events.insert_offer_event(make_event(0, decision_id=f"r-{i}", user_id=user.id))

    first = await engine.scoring.calculate_churn_risk(user.id)
    second = await engine.scoring.calculate_churn_risk(user.id)

    assert first.score == second.score
    assert 0 <= first.score <= 100
    # behavior 100 x 4 + value(high) 30 x 3 + history 75 x 3 = 715 -> 71.5
    assert first.factors.behavior == 100
    assert first.factors.value == 30
    assert first.factors.history == 75
    assert first.score == 72


@pytest.mark.asyncio
async def test_churn_risk_stays_bounded_at_extreme_weights(engine):
    user = await add_user(engine, plan="trial")
    subscription = await engine.subscriptions.create(user.id, value=0)
    for _ in range(10):
        await engine.subscriptions.increment_cancel_attempts(subscription.id)
    for name in list(engine.db.weights):
        await engine.weight_store.set_weight(name, 10.0, actor="test")

    result = await engine.scoring.calculate_churn_risk(user.id)

    assert result.score == 100


@pytest.mark.asyncio
async def test_recommend_best_offer_uses_acceptance_rate(engine):
    user = await add_user(engine)
    segment = "pro:trial:us"
    engine.db.offer_performance[(OfferType.PAUSE, segment)] = OfferPerformance(
        offer_type=OfferType.PAUSE, segment=segment, shown_count=10, accepted_count=2
    )
    engine.db.offer_performance[(OfferType.DISCOUNT, segment)] = OfferPerformance(
        offer_type=OfferType.DISCOUNT, segment=segment, shown_count=10, accepted_count=5
    )

    result = await engine.scoring.recommend_best_offer(user.id)

    assert result.offer_type == OfferType.DISCOUNT
    assert result.acceptance_rate == 50.0
    assert result.fallback is False


@pytest.mark.asyncio
async def test_recommend_best_offer_tie_breaks_by_offer_order(engine):
    user = await add_user(engine)
    segment = "pro:trial:us"
    for offer_type in (OfferType.SUPPORT, OfferType.DOWNGRADE):
        engine.db.offer_performance[(offer_type, segment)] = OfferPerformance(
            offer_type=offer_type, segment=segment, shown_count=4, accepted_count=1
        )

    result = await engine.scoring.recommend_best_offer(user.id)

    assert result.offer_type == OfferType.DOWNGRADE


@pytest.mark.asyncio
async def test_recommend_best_offer_falls_back_within_flow(engine):
    user = await add_user(engine)
    flow = engine.db.add_flow(
        steps=[
            {"type": "support", "title": "Talk to us", "message": "We can help"},
            {"type": "feedback", "title": "Tell us why", "message": "Why are you leaving?"},
        ]
    )

    result = await engine.scoring.recommend_best_offer(user.id, flow.id)

    assert result.fallback is True
    assert result.offer_type == OfferType.SUPPORT


@pytest.mark.asyncio
async def test_suggest_message_canonical_without_samples(engine):
    user = await add_user(engine, email="dana@example.com")
    flow = engine.db.add_flow(
        steps=[
            {
                "type": "discount",
                "title": "Stay",
                "message": "Discount",
                "config": {"percent": 30, "duration_months": 2},
            }
        ]
    )

    result = await engine.scoring.suggest_message(user.id, "discount", flow.id)

    assert result.template_id == message_templates.canonical_template(OfferType.DISCOUNT).template_id
    assert result.from_performance is False
    assert "{" not in result.message
    assert len(result.message) <= message_templates.MAX_MESSAGE_LENGTH


@pytest.mark.asyncio
async def test_suggest_message_rejects_unknown_offer_type(engine):
    user = await add_user(engine)

    with pytest.raises(InvalidInput):
        await engine.scoring.suggest_message(user.id, "refund")


@pytest.mark.asyncio
async def test_update_model_with_event_is_idempotent(engine):
    event = await engine.events.insert_offer_event(
        make_event(0, decision_id="once", accepted=True, status=EventStatus.CONFIRMED, revenue_saved=5.0)
    )

    assert await engine.scoring.update_model_with_event(event) is True
    assert await engine.scoring.update_model_with_event(event) is False

    row = engine.db.offer_performance[(OfferType.DISCOUNT, "pro:mid:us")]
    assert (row.shown_count, row.accepted_count, row.revenue_total) == (1, 1, 5.0)


@pytest.mark.asyncio
async def test_update_model_nudges_behavior_weight(engine):
    start = engine.db.weights[BEHAVIOR_WEIGHT].value
    declined = await engine.events.insert_offer_event(make_event(0, decision_id="decl"))
    accepted = await engine.events.insert_offer_event(
        make_event(0, decision_id="acc", accepted=True, status=EventStatus.CONFIRMED)
    )

    await engine.scoring.update_model_with_event(declined)
    assert engine.db.weights[BEHAVIOR_WEIGHT].value == pytest.approx(start + 0.05)

    await engine.scoring.update_model_with_event(accepted)
    assert engine.db.weights[BEHAVIOR_WEIGHT].value == pytest.approx(start)


@pytest.mark.asyncio
async def test_apply_event_by_id_missing(engine):
    with pytest.raises(NotFound):
        await engine.scoring.apply_event_by_id(12345)
