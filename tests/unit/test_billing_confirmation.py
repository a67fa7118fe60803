from datetime import UTC, datetime, timedelta

import pytest

from retention_os.jobs.billing_confirmation_job import BillingConfirmationJob
from retention_os.models.domain.retention_domain import AttemptState, EventStatus
from tests.fakes import Engine, FakeBillingProvider


def make_job(engine: Engine, max_attempts: int = 2) -> BillingConfirmationJob:
    return BillingConfirmationJob(
        engine.processor,
        pending=engine.pending,
        events=engine.events,
        subscriptions=engine.subscriptions,
        transaction=engine.db.transaction,
        max_attempts=max_attempts,
        backoff_base_s=60,
    )


async def pending_decision(engine: Engine):
    flow = engine.db.add_flow(ranking_score=5)
    started = await engine.start(billing_ref="sub_1", value=50)
    decision = await engine.processor.process_user_decision(
        flow.id, "discount", True, attempt_id=started.attempt_id
    )
    assert decision.status == EventStatus.PENDING_CONFIRMATION
    return started, decision


@pytest.fixture
def failing_engine():
    return Engine(provider=FakeBillingProvider(fail_with="provider unavailable"))


@pytest.mark.asyncio
async def test_retry_confirms_once_provider_recovers(failing_engine):
    started, decision = await pending_decision(failing_engine)
    failing_engine.provider.fail_with = None

    metrics = await make_job(failing_engine).run_once()

    assert metrics == {"processed": 1, "confirmed": 1, "retry_scheduled": 0, "failed": 0}
    # Same idempotency key as the call made on the decision path
    assert [call[-1] for call in failing_engine.provider.calls] == [decision.decision_id] * 2
    assert failing_engine.db.attempts[started.attempt_id].state == AttemptState.CLOSED

    summary = await failing_engine.analytics.get_summary_metrics()
    assert summary.revenue_saved == 50
    assert summary.offers_shown == 1


@pytest.mark.asyncio
async def test_retry_backs_off_then_gives_up(failing_engine):
    started, _ = await pending_decision(failing_engine)
    job = make_job(failing_engine, max_attempts=2)

    first = await job.run_once()
    assert first["retry_scheduled"] == 1
    [mutation] = failing_engine.db.pending.values()
    assert mutation.attempts == 1
    assert mutation.next_attempt_at > datetime.now(UTC) + timedelta(seconds=30)

    # Not due yet
    assert (await job.run_once())["processed"] == 0

    failing_engine.db.pending[mutation.id] = mutation.model_copy(
        update={"next_attempt_at": datetime.now(UTC) - timedelta(seconds=1)}
    )
    second = await job.run_once()

    assert second["failed"] == 1
    [mutation] = failing_engine.db.pending.values()
    assert mutation.status == "failed"
    assert mutation.last_error == "provider unavailable"
    assert not any(e.is_confirmed_acceptance for e in failing_engine.db.events.values())
    assert failing_engine.db.attempts[started.attempt_id].state == AttemptState.CLOSED


@pytest.mark.asyncio
async def test_nothing_due(engine):
    assert (await make_job(engine).run_once())["processed"] == 0


@pytest.mark.asyncio
async def test_missing_subscription_fails_and_closes_attempt(failing_engine):
    started, _ = await pending_decision(failing_engine)
    [mutation] = failing_engine.db.pending.values()
    del failing_engine.db.subscriptions[mutation.subscription_id]

    metrics = await make_job(failing_engine).run_once()

    assert metrics["failed"] == 1
    assert failing_engine.db.pending[mutation.id].status == "failed"
    assert failing_engine.db.attempts[started.attempt_id].state == AttemptState.CLOSED
    assert failing_engine.provider.calls[1:] == []


@pytest.mark.asyncio
async def test_confirmed_retry_nudges_weight_after_commit(failing_engine):
    await pending_decision(failing_engine)
    failing_engine.provider.fail_with = None
    audit_before = len(failing_engine.db.weight_audit)

    await make_job(failing_engine).run_once()

    [nudge] = failing_engine.db.weight_audit[audit_before:]
    assert nudge["new"] < nudge["old"]
    assert nudge["in_transaction"] is False
