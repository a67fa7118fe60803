"""
Decision processor tests over the in-memory repositories.
"""

import asyncio

import pytest

from retention_os.db.helpers import DatabaseError
from retention_os.errors import InvalidInput, NotFound
from retention_os.models.domain.retention_domain import AttemptState, EventStatus, OfferType
from retention_os.services.decision_processor import confirmation_decision_id
from tests.fakes import Engine, FakeBillingProvider

DISCOUNT_AND_FEEDBACK = [
    {
        "type": "discount",
        "title": "Stay with us",
        "message": "20% off for 3 months",
        "config": {"percent": 20, "duration_months": 3},
    },
    {"type": "feedback", "title": "Tell us why", "message": "What could we do better?"},
]


@pytest.mark.asyncio
async def test_start_picks_highest_ranked_flow(engine):
    engine.db.add_flow(name="low", ranking_score=5)
    best = engine.db.add_flow(name="high", ranking_score=10)

    result = await engine.start("u1", "pro", "us")

    assert result.flow_id == best.id
    assert result.steps == best.steps
    assert result.language == "en"
    assert result.proceed_with_cancellation is False
    assert result.segment == "pro:trial:us"
    assert engine.db.attempts[result.attempt_id].state == AttemptState.STARTED


@pytest.mark.asyncio
async def test_start_without_flow_lets_cancellation_proceed(engine):
    engine.db.add_flow(name="disabled", ranking_score=0)

    result = await engine.start("u1", "pro", "us")

    assert result.flow_id is None
    assert result.proceed_with_cancellation is True
    assert result.reason == "no_flow_available"
    assert not engine.db.events


@pytest.mark.asyncio
async def test_start_records_user_and_cancel_attempt(engine):
    engine.db.add_flow(ranking_score=1)

    await engine.start("u1", "pro", "us", billing_ref="sub_123", value=49)
    await engine.start("u1", "pro", "us", billing_ref="sub_123")

    assert len(engine.db.users) == 1
    (subscription,) = engine.db.subscriptions.values()
    assert subscription.billing_ref == "sub_123"
    assert subscription.value == 49
    assert subscription.cancel_attempts == 2
    assert not engine.db.events


@pytest.mark.asyncio
async def test_start_storage_failure_proceeds_with_cancellation(engine, monkeypatch):
    async def broken(*args, **kwargs):
        raise DatabaseError("connection refused", operation="fetch_all")

    monkeypatch.setattr(engine.flows, "list_active", broken)
    engine.db.add_flow(ranking_score=1)

    result = await engine.start("u1", "pro", "us")

    assert result.proceed_with_cancellation is True
    assert result.reason == "storage_unavailable"


@pytest.mark.asyncio
async def test_start_rejects_negative_value(engine):
    with pytest.raises(InvalidInput):
        await engine.start("u1", "pro", "us", value=-1)


@pytest.mark.asyncio
async def test_invalid_offer_type_writes_nothing(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    await engine.start("u1", "pro", "us")
    before = engine.db.transactions

    with pytest.raises(InvalidInput):
        await engine.processor.process_user_decision(flow.id, "refund", True)

    assert not engine.db.events
    assert not engine.db.offer_performance
    assert engine.db.transactions == before
    assert engine.provider.calls == []


@pytest.mark.asyncio
async def test_decision_on_unknown_flow(engine):
    with pytest.raises(NotFound):
        await engine.processor.process_user_decision(404, "pause", True)


@pytest.mark.asyncio
async def test_decision_for_step_not_in_flow(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    await engine.start("u1", "pro", "us")

    with pytest.raises(InvalidInput):
        await engine.processor.process_user_decision(flow.id, "pause", True)


@pytest.mark.asyncio
async def test_accepted_discount_scenario(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)

    result = await engine.processor.process_user_decision(
        flow.id, "discount", True, revenue_value=12.50, attempt_id=started.attempt_id
    )

    assert result.success is True
    assert result.status == EventStatus.CONFIRMED
    assert result.revenue_saved == 12.50
    assert result.subscription_updated is True

    row = engine.db.offer_performance[(OfferType.DISCOUNT, started.segment)]
    assert (row.shown_count, row.accepted_count, row.revenue_total) == (1, 1, 12.5)

    summary = await engine.analytics.get_summary_metrics()
    assert summary.revenue_saved == 12.50
    assert summary.saved_users == 1

    subscription = engine.db.subscriptions[engine.db.attempts[started.attempt_id].subscription_id]
    assert subscription.value == 40.0
    assert result.attempt_state == AttemptState.CLOSED
    assert engine.db.attempts[started.attempt_id].state == AttemptState.CLOSED
    assert engine.provider.calls[0][:4] == ("discount", f"local:{subscription.id}", 20, 3)


@pytest.mark.asyncio
async def test_decline_records_churn_reason_and_no_revenue(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)

    result = await engine.processor.process_user_decision(
        flow.id,
        "discount",
        False,
        reason_code="too_expensive",
        reason_text="Budget cuts",
        attempt_id=started.attempt_id,
    )

    assert result.status == EventStatus.DECLINED
    assert result.revenue_saved == 0
    assert result.subscription_updated is False
    assert [r.reason_code for r in engine.db.churn_reasons] == ["too_expensive"]
    assert engine.db.attempts[started.attempt_id].state == AttemptState.DECLINED
    assert engine.provider.calls == []

    row = engine.db.offer_performance[(OfferType.DISCOUNT, started.segment)]
    assert (row.shown_count, row.accepted_count, row.revenue_total) == (1, 0, 0.0)


@pytest.mark.asyncio
async def test_decline_on_final_step_closes_attempt(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us")

    await engine.processor.process_user_decision(
        flow.id, "discount", False, attempt_id=started.attempt_id
    )
    result = await engine.processor.process_user_decision(
        flow.id, "feedback", False, attempt_id=started.attempt_id
    )

    assert result.attempt_state == AttemptState.CLOSED
    assert engine.db.attempts[started.attempt_id].state == AttemptState.CLOSED

    with pytest.raises(InvalidInput):
        await engine.processor.process_user_decision(
            flow.id, "discount", True, attempt_id=started.attempt_id
        )


@pytest.mark.asyncio
async def test_billing_failure_records_pending_without_revenue():
    engine = Engine(provider=FakeBillingProvider(fail_with="card_declined"))
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)

    result = await engine.processor.process_user_decision(
        flow.id, "discount", True, revenue_value=12.5, attempt_id=started.attempt_id
    )

    assert result.success is True
    assert result.status == EventStatus.PENDING_CONFIRMATION
    assert result.revenue_saved == 0
    assert result.subscription_updated is False
    assert engine.db.attempts[started.attempt_id].state == AttemptState.PENDING_CONFIRMATION

    (mutation,) = engine.db.pending.values()
    assert mutation.last_error == "card_declined"
    assert mutation.params["percent"] == 20

    summary = await engine.analytics.get_summary_metrics()
    assert summary.revenue_saved == 0
    assert summary.offers_shown == 1
    assert summary.offers_accepted == 0


@pytest.mark.asyncio
async def test_billing_timeout_records_pending():
    engine = Engine(provider=FakeBillingProvider(delay_s=0.5), billing_timeout_s=0.01)
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)

    result = await engine.processor.process_user_decision(
        flow.id, "discount", True, attempt_id=started.attempt_id
    )

    assert result.status == EventStatus.PENDING_CONFIRMATION
    assert "timed out" in next(iter(engine.db.pending.values())).last_error


@pytest.mark.asyncio
async def test_confirm_pending_mutation_appends_confirmation():
    engine = Engine(provider=FakeBillingProvider(fail_with="provider_down"))
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)
    pending_result = await engine.processor.process_user_decision(
        flow.id, "discount", True, revenue_value=12.5, attempt_id=started.attempt_id
    )
    (mutation,) = engine.db.pending.values()

    confirmation = await engine.processor.confirm_pending_mutation(mutation, source="test")
    again = await engine.processor.confirm_pending_mutation(mutation, source="test")

    assert again is None
    assert confirmation.confirms_event_id == pending_result.event_id
    assert confirmation.decision_id == confirmation_decision_id(pending_result.event_id)
    assert engine.db.events[pending_result.event_id].status == EventStatus.PENDING_CONFIRMATION
    assert engine.db.attempts[started.attempt_id].state == AttemptState.CLOSED

    row = engine.db.offer_performance[(OfferType.DISCOUNT, started.segment)]
    assert (row.shown_count, row.accepted_count, row.revenue_total) == (1, 1, 12.5)

    summary = await engine.analytics.get_summary_metrics()
    assert summary.revenue_saved == 12.5


@pytest.mark.asyncio
async def test_retry_with_same_decision_id_is_not_double_counted(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)
    decision_id = "5b0c8a52-1f4e-4c39-9d43-0f3c2a7e9b11"

    first = await engine.processor.process_user_decision(
        flow.id, "discount", True, attempt_id=started.attempt_id, decision_id=decision_id
    )
    second = await engine.processor.process_user_decision(
        flow.id, "discount", True, attempt_id=started.attempt_id, decision_id=decision_id
    )

    assert second.duplicate is True
    assert second.event_id == first.event_id
    assert len(engine.db.events) == 1
    assert len(engine.provider.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_decisions_lose_no_updates(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    attempts = [
        await engine.start(f"user-{i}", "pro", "us", value=10) for i in range(20)
    ]

    results = await asyncio.gather(
        *[
            engine.processor.process_user_decision(
                flow.id,
                "discount",
                i % 2 == 0,
                revenue_value=10,
                attempt_id=started.attempt_id,
            )
            for i, started in enumerate(attempts)
        ]
    )

    assert all(r.success for r in results)
    row = engine.db.offer_performance[(OfferType.DISCOUNT, "pro:low:us")]
    assert (row.shown_count, row.accepted_count, row.revenue_total) == (20, 10, 100.0)

    report = await engine.analytics.reconcile_offer_performance()
    assert report.consistent


@pytest.mark.asyncio
async def test_concurrent_decisions_on_one_attempt_record_once(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)

    outcomes = await asyncio.gather(
        engine.processor.process_user_decision(
            flow.id, "discount", True, attempt_id=started.attempt_id
        ),
        engine.processor.process_user_decision(
            flow.id, "discount", False, attempt_id=started.attempt_id
        ),
        return_exceptions=True,
    )

    recorded = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, InvalidInput)]
    assert len(recorded) == 1
    assert len(rejected) == 1
    assert len(engine.db.events) == 1


@pytest.mark.asyncio
async def test_failed_model_update_rolls_back_decision(engine, monkeypatch):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us")

    async def broken(*args, **kwargs):
        raise DatabaseError("constraint violated", operation="execute_query", recoverable=False)

    monkeypatch.setattr(engine.performance, "increment_offer_performance", broken)

    with pytest.raises(DatabaseError):
        await engine.processor.process_user_decision(
            flow.id, "discount", False, attempt_id=started.attempt_id
        )

    assert not engine.db.events
    assert engine.db.attempts[started.attempt_id].state == AttemptState.STARTED


@pytest.mark.asyncio
async def test_accepted_feedback_is_not_a_save(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)
    await engine.processor.process_user_decision(
        flow.id, "discount", False, attempt_id=started.attempt_id
    )
    weight_before = engine.db.weights["behavior_weight"].value

    result = await engine.processor.process_user_decision(
        flow.id, "feedback", True, attempt_id=started.attempt_id
    )

    assert result.status == EventStatus.CONFIRMED
    assert result.revenue_saved == 0
    assert result.subscription_updated is False
    assert result.attempt_state == AttemptState.CLOSED
    assert engine.provider.calls == []
    assert engine.db.weights["behavior_weight"].value == weight_before

    row = engine.db.offer_performance[(OfferType.FEEDBACK, started.segment)]
    assert (row.shown_count, row.accepted_count, row.revenue_total) == (1, 1, 0.0)

    summary = await engine.analytics.get_summary_metrics()
    assert summary.revenue_saved == 0
    assert summary.saved_users == 0
    assert summary.offers_shown == 2


@pytest.mark.asyncio
async def test_malformed_decision_id_is_rejected(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us")

    with pytest.raises(InvalidInput):
        await engine.processor.process_user_decision(
            flow.id, "discount", False, attempt_id=started.attempt_id, decision_id="retry-abc-1"
        )

    assert not engine.db.events
    assert engine.db.attempts[started.attempt_id].state == AttemptState.STARTED


@pytest.mark.asyncio
async def test_weight_nudge_runs_after_decision_commits(engine):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us", value=50)

    result = await engine.processor.process_user_decision(
        flow.id, "discount", False, attempt_id=started.attempt_id
    )

    [nudge] = [a for a in engine.db.weight_audit if a["reason"] == f"offer_event:{result.event_id}"]
    assert nudge["new"] == pytest.approx(nudge["old"] + 0.05)
    assert nudge["in_transaction"] is False


@pytest.mark.asyncio
async def test_failed_weight_nudge_keeps_recorded_decision(engine, monkeypatch):
    flow = engine.db.add_flow(ranking_score=1, steps=DISCOUNT_AND_FEEDBACK)
    started = await engine.start("u1", "pro", "us")

    async def unavailable(*args, **kwargs):
        raise DatabaseError("could not obtain lock", operation="fetch_one")

    monkeypatch.setattr(engine.weight_store.repository, "adjust", unavailable)

    result = await engine.processor.process_user_decision(
        flow.id, "discount", False, attempt_id=started.attempt_id
    )

    assert result.status == EventStatus.DECLINED
    assert result.event_id in engine.db.events
