"""
Decision processor: starts retention flows and records user decisions.

A decision is recorded in one database transaction: local subscription
change, offer event, churn reason, attempt transition and the model update
commit together or not at all. The billing provider is called before that
transaction under a bounded timeout; when it fails or times out the
decision is stored as pending_confirmation and handed to the billing
confirmation job instead of being retried inline.
"""

import asyncio
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

import psycopg

from retention_os.config import settings
from retention_os.db.helpers import DatabaseError, with_db_retry
from retention_os.db.pool import db_pool
from retention_os.errors import BillingMutationFailed, InvalidInput, NoFlowAvailable, NotFound
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.decision_domain import DecisionResult, StartRetentionResult
from retention_os.models.domain.retention_domain import (
    BILLING_OFFER_TYPES,
    OPEN_ATTEMPT_STATES,
    SAVE_OFFER_TYPES,
    AttemptState,
    DiscountStep,
    DowngradeStep,
    EventStatus,
    NewOfferEvent,
    OfferEvent,
    OfferType,
    PauseStep,
    PendingBillingMutation,
    RetentionAttempt,
    SubscriptionRecord,
    can_transition,
    parse_offer_type,
)
from retention_os.repositories.attempt_repository import AttemptRepository
from retention_os.repositories.event_repository import EventRepository
from retention_os.repositories.flow_repository import FlowRepository
from retention_os.repositories.pending_mutation_repository import PendingMutationRepository
from retention_os.repositories.subscription_repository import SubscriptionRepository
from retention_os.repositories.user_repository import UserRepository
from retention_os.services import message_templates
from retention_os.services.billing_client import provider_for
from retention_os.services.flow_selector import select_flow
from retention_os.services.rules_engine import match_flow_to_segment, segment_user
from retention_os.services.scoring_service import ScoringService

logger = get_logger(__name__)

CONFIRMATION_NAMESPACE = uuid5(NAMESPACE_URL, "retention-os/offer-confirmation")

_OUTCOME_MESSAGES = {
    EventStatus.CONFIRMED: "Offer accepted",
    EventStatus.PENDING_CONFIRMATION: "Offer accepted, waiting for billing confirmation",
    EventStatus.DECLINED: "Offer declined",
}


def confirmation_decision_id(pending_event_id: int) -> str:
    """Deterministic decision id of the confirmation appended for a pending event."""
    return str(uuid5(CONFIRMATION_NAMESPACE, str(pending_event_id)))


def attempt_path(
    current: AttemptState, outcome: AttemptState, *, final_step: bool
) -> list[AttemptState]:
    """
    States an attempt walks through for one decision, starting at current.

    A decision implies its step was shown. A confirmed acceptance ends the
    attempt, and so does declining the last step of the flow.
    """
    path = [current]
    if current != AttemptState.OFFER_SHOWN:
        path.append(AttemptState.OFFER_SHOWN)
    path.append(outcome)
    if outcome == AttemptState.ACCEPTED or (outcome == AttemptState.DECLINED and final_step):
        path.append(AttemptState.CLOSED)
    return path


def _parse_decision_id(value: str) -> str:
    try:
        return str(UUID(str(value)))
    except ValueError:
        raise InvalidInput("decision_id must be a UUID", decision_id=value) from None


def mutation_params(step, revenue_value: float) -> dict:
    """Billing parameters taken from the flow's typed step config."""
    params: dict = {"revenue_value": revenue_value}
    if isinstance(step, PauseStep):
        params["months"] = step.config.max_months
    elif isinstance(step, DowngradeStep):
        params["plan"] = step.config.new_plan
    elif isinstance(step, DiscountStep):
        params["percent"] = step.config.percent
        params["duration_months"] = step.config.duration_months
    return params


class DecisionProcessor:
    def __init__(
        self,
        *,
        users=UserRepository,
        subscriptions=SubscriptionRepository,
        flows=FlowRepository,
        attempts=AttemptRepository,
        events=EventRepository,
        pending=PendingMutationRepository,
        scoring: ScoringService | None = None,
        billing_resolver=provider_for,
        transaction=None,
        billing_timeout_s: float | None = None,
    ):
        self.users = users
        self.subscriptions = subscriptions
        self.flows = flows
        self.attempts = attempts
        self.events = events
        self.pending = pending
        self.scoring = scoring or ScoringService()
        self.billing_resolver = billing_resolver
        self.transaction = transaction or db_pool.transaction
        self.billing_timeout_s = (
            settings.BILLING_TIMEOUT_SECONDS if billing_timeout_s is None else billing_timeout_s
        )

    # =================================================================
    # START
    # =================================================================

    async def start_retention_flow(
        self,
        user_id: str,
        plan: str | None = None,
        region: str | None = None,
        *,
        email: str | None = None,
        billing_ref: str | None = None,
        value: float | None = None,
        language: str = "en",
    ) -> StartRetentionResult:
        """
        Pick a flow for a user who clicked cancel.

        user_id is the product's external user id. Never raises for a missing
        flow or a storage failure: the widget then lets the cancellation go
        through.
        """
        if value is not None and value < 0:
            raise InvalidInput("Subscription value must not be negative", value=value)

        language = (language or "en").strip().lower()
        segment = None
        user = None
        try:
            user = await self.users.upsert_by_external_id(
                user_id, email=email, plan=plan, region=region
            )
            subscription = await self._find_or_create_subscription(user.id, billing_ref, value)
            subscription = await self.subscriptions.increment_cancel_attempts(subscription.id)

            segment = segment_user(user, subscription)
            flows = await self.flows.list_active(language)
            flow = select_flow(match_flow_to_segment(segment, flows))

            attempt = await self.attempts.create(
                user_id=user.id,
                subscription_id=subscription.id,
                flow_id=flow.id,
                segment=segment,
            )

        except NoFlowAvailable:
            logger.info("No retention flow for user", user_id=user_id, segment=segment, language=language)
            return StartRetentionResult.no_flow(
                "no_flow_available",
                language=language,
                segment=segment,
                user_id=user.id if user else None,
            )
        except DatabaseError as e:
            logger.error(
                "Retention flow selection failed, letting cancellation proceed",
                user_id=user_id,
                operation=e.operation,
                error=str(e),
            )
            return StartRetentionResult.no_flow(
                "storage_unavailable",
                language=language,
                segment=segment,
                user_id=user.id if user else None,
            )

        logger.info(
            "Retention flow started",
            user_id=user.id,
            flow_id=flow.id,
            attempt_id=attempt.id,
            segment=segment,
        )
        return StartRetentionResult(
            flow_id=flow.id,
            steps=flow.steps,
            language=flow.language,
            segment=segment,
            attempt_id=attempt.id,
            user_id=user.id,
        )

    async def _find_or_create_subscription(
        self, user_id: int, billing_ref: str | None, value: float | None
    ) -> SubscriptionRecord:
        if billing_ref:
            subscription = await self.subscriptions.get_by_billing_ref(billing_ref)
            if subscription is None:
                return await self.subscriptions.create(
                    user_id, billing_ref=billing_ref, value=value
                )
        else:
            subscription = await self.subscriptions.get_latest_for_user(user_id)
            if subscription is None:
                return await self.subscriptions.create(user_id, value=value)

        if value is not None and value != subscription.value:
            subscription = await self.subscriptions.update_details(subscription.id, value=value)
        return subscription

    # =================================================================
    # DECIDE
    # =================================================================

    async def process_user_decision(
        self,
        flow_id: int,
        offer_type,
        accepted: bool,
        *,
        user_id: int | None = None,
        revenue_value: float | None = None,
        reason_code: str | None = None,
        reason_text: str | None = None,
        attempt_id: int | None = None,
        message_template: str | None = None,
        decision_id: str | None = None,
    ) -> DecisionResult:
        """
        Record the user's answer to one offer step.

        Raises:
            InvalidInput: Unknown offer type, malformed decision_id, step missing
                from the flow, or a decision on an attempt that is no longer open
            NotFound: Flow, attempt, user or subscription does not exist
        """
        offer_type = parse_offer_type(offer_type)
        if revenue_value is not None and revenue_value < 0:
            raise InvalidInput("Revenue value must not be negative", revenue_value=revenue_value)

        if decision_id:
            decision_id = _parse_decision_id(decision_id)
            existing = await self.events.get_by_decision_id(decision_id)
            if existing is not None:
                return self._result_for(existing, duplicate=True)
        else:
            decision_id = str(uuid4())

        flow = await self.flows.get_by_id(flow_id)
        if flow is None:
            raise NotFound(f"Flow {flow_id} not found", flow_id=flow_id)

        step = flow.step_for(offer_type)
        if step is None:
            raise InvalidInput(
                f"Flow {flow_id} has no '{offer_type.value}' step",
                flow_id=flow_id,
                offer_type=offer_type.value,
            )

        attempt = await self._resolve_attempt(flow_id, user_id, attempt_id)
        subscription = await self.subscriptions.get_by_id(attempt.subscription_id)
        if subscription is None:
            raise NotFound(
                f"Subscription {attempt.subscription_id} not found",
                subscription_id=attempt.subscription_id,
            )

        revenue = float(revenue_value if revenue_value is not None else subscription.value or 0)
        params = mutation_params(step, revenue)
        template_id = self._template_for(offer_type, message_template)

        billing_error = None
        if accepted and offer_type in BILLING_OFFER_TYPES:
            billing_error = await self._try_billing(subscription, offer_type, params, decision_id)
            status = EventStatus.PENDING_CONFIRMATION if billing_error else EventStatus.CONFIRMED
        elif accepted:
            status = EventStatus.CONFIRMED
        else:
            status = EventStatus.DECLINED

        outcome = {
            EventStatus.CONFIRMED: AttemptState.ACCEPTED,
            EventStatus.PENDING_CONFIRMATION: AttemptState.PENDING_CONFIRMATION,
            EventStatus.DECLINED: AttemptState.DECLINED,
        }[status]
        path = attempt_path(attempt.state, outcome, final_step=flow.is_final_step(offer_type))
        saved = status == EventStatus.CONFIRMED and offer_type in SAVE_OFFER_TYPES

        new_event = NewOfferEvent(
            decision_id=decision_id,
            user_id=attempt.user_id,
            flow_id=flow_id,
            attempt_id=attempt.id,
            offer_type=offer_type,
            segment=attempt.segment,
            message_template=template_id,
            accepted=accepted,
            status=status,
            revenue_saved=revenue if saved else 0.0,
        )

        try:
            event, duplicate = await self._record_decision(
                new_event,
                attempt=attempt,
                attempt_path=path,
                subscription=subscription,
                params=params,
                reason_code=reason_code,
                reason_text=reason_text,
                billing_error=billing_error,
            )
        except DatabaseError as e:
            logger.error(
                "Failed to record decision",
                decision_id=decision_id,
                flow_id=flow_id,
                offer_type=offer_type.value,
                status=status.value,
                billing_applied=status == EventStatus.CONFIRMED and offer_type in BILLING_OFFER_TYPES,
                error=str(e),
            )
            raise

        if not duplicate:
            await self.scoring.nudge_weights(event)

        logger.info(
            "Decision recorded",
            decision_id=decision_id,
            event_id=event.id,
            flow_id=flow_id,
            attempt_id=attempt.id,
            offer_type=offer_type.value,
            status=event.status.value,
            segment=attempt.segment,
        )
        return self._result_for(event, duplicate=duplicate, attempt_state=path[-1])

    async def _resolve_attempt(
        self, flow_id: int, user_id: int | None, attempt_id: int | None
    ) -> RetentionAttempt:
        if attempt_id is not None:
            attempt = await self.attempts.get(attempt_id)
            if attempt is None:
                raise NotFound(f"Retention attempt {attempt_id} not found", attempt_id=attempt_id)
            if attempt.flow_id != flow_id:
                raise InvalidInput(
                    f"Attempt {attempt_id} belongs to another flow",
                    attempt_id=attempt_id,
                    flow_id=flow_id,
                )
        else:
            attempt = None
            if user_id is not None:
                attempt = await self.attempts.latest_open(flow_id, user_id=user_id)
            if attempt is None:
                attempt = await self.attempts.latest_open(flow_id)
            if attempt is None:
                raise NotFound(f"No open retention attempt for flow {flow_id}", flow_id=flow_id)

        if user_id is not None and attempt.user_id != user_id:
            raise InvalidInput(
                "Attempt belongs to another user", attempt_id=attempt.id, user_id=user_id
            )
        if attempt.state not in OPEN_ATTEMPT_STATES:
            raise InvalidInput(
                f"Retention attempt {attempt.id} is {attempt.state.value}",
                attempt_id=attempt.id,
                state=attempt.state.value,
            )
        return attempt

    @staticmethod
    def _template_for(offer_type: OfferType, requested: str | None) -> str:
        template = message_templates.TEMPLATES_BY_ID.get(requested or "")
        if template is not None and template.offer_type == offer_type:
            return template.template_id
        return message_templates.canonical_template(offer_type).template_id

    async def _try_billing(
        self, subscription: SubscriptionRecord, offer_type: OfferType, params: dict, decision_id: str
    ) -> str | None:
        """Call billing once under the timeout; returns the error text on failure."""
        try:
            await self.apply_billing_mutation(subscription, offer_type, params, decision_id)
            return None
        except TimeoutError:
            logger.warning(
                "Billing call timed out, decision pending confirmation",
                decision_id=decision_id,
                subscription_id=subscription.id,
                offer_type=offer_type.value,
                timeout_s=self.billing_timeout_s,
            )
            return f"timed out after {self.billing_timeout_s}s"
        except BillingMutationFailed as e:
            logger.warning(
                "Billing call failed, decision pending confirmation",
                decision_id=decision_id,
                subscription_id=subscription.id,
                offer_type=offer_type.value,
                error=e.message,
            )
            return e.message

    async def apply_billing_mutation(
        self,
        subscription: SubscriptionRecord,
        offer_type: OfferType,
        params: dict,
        idempotency_key: str,
    ) -> dict:
        """
        Apply an offer through the billing provider, bounded by the billing timeout.

        Raises:
            BillingMutationFailed: Provider rejected or failed the call
            TimeoutError: Provider did not answer in time
        """
        provider = self.billing_resolver(subscription.billing_ref)
        ref = subscription.billing_ref or f"local:{subscription.id}"

        if offer_type == OfferType.PAUSE:
            call = provider.apply_pause(ref, params["months"], idempotency_key=idempotency_key)
        elif offer_type == OfferType.DOWNGRADE:
            call = provider.apply_downgrade(ref, params["plan"], idempotency_key=idempotency_key)
        elif offer_type == OfferType.DISCOUNT:
            call = provider.apply_discount(
                ref, params["percent"], params["duration_months"], idempotency_key=idempotency_key
            )
        else:
            raise InvalidInput(f"Offer type '{offer_type.value}' has no billing mutation")

        return await asyncio.wait_for(call, timeout=self.billing_timeout_s)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def _record_decision(
        self,
        new_event: NewOfferEvent,
        *,
        attempt: RetentionAttempt,
        attempt_path: list[AttemptState],
        subscription: SubscriptionRecord,
        params: dict,
        reason_code: str | None,
        reason_text: str | None,
        billing_error: str | None,
    ) -> tuple[OfferEvent, bool]:
        async with self.transaction() as conn:
            event = await self.events.insert_offer_event(new_event, connection=conn)
            if event is None:
                existing = await self.events.get_by_decision_id(
                    new_event.decision_id, connection=conn
                )
                return existing, True

            if event.status == EventStatus.CONFIRMED and event.offer_type in BILLING_OFFER_TYPES:
                await self._apply_local_change(
                    subscription, attempt.user_id, event.offer_type, params, conn
                )

            if event.status == EventStatus.DECLINED and (reason_code or reason_text):
                await self.events.insert_churn_reason(
                    user_id=attempt.user_id,
                    flow_id=event.flow_id,
                    reason_code=reason_code,
                    reason_text=reason_text,
                    connection=conn,
                )

            await self._transition_attempt(attempt, attempt_path, conn)

            if event.status == EventStatus.PENDING_CONFIRMATION:
                await self.pending.create(
                    offer_event_id=event.id,
                    subscription_id=subscription.id,
                    offer_type=event.offer_type,
                    params=params,
                    last_error=billing_error,
                    connection=conn,
                )

            await self.scoring.update_model_with_event(event, connection=conn)
            return event, False

    async def _transition_attempt(
        self, attempt: RetentionAttempt, path: list[AttemptState], conn
    ) -> None:
        for current, nxt in zip(path, path[1:]):
            if not can_transition(current, nxt):
                raise InvalidInput(
                    f"Attempt {attempt.id} cannot move from {current.value} to {nxt.value}",
                    attempt_id=attempt.id,
                )

        moved = await self.attempts.transition(
            attempt.id, from_states=[path[0]], to_state=path[-1], connection=conn
        )
        if not moved:
            raise InvalidInput(
                f"Retention attempt {attempt.id} was decided concurrently", attempt_id=attempt.id
            )

    async def _apply_local_change(
        self,
        subscription: SubscriptionRecord,
        user_id: int,
        offer_type: OfferType,
        params: dict,
        conn: psycopg.AsyncConnection,
    ) -> SubscriptionRecord:
        if offer_type == OfferType.PAUSE:
            return await self.subscriptions.apply_local_mutation(
                subscription.id, status="paused", connection=conn
            )
        if offer_type == OfferType.DISCOUNT:
            current = await self.subscriptions.get_by_id(subscription.id, connection=conn)
            discounted = None
            if current and current.value is not None:
                discounted = round(current.value * (1 - params["percent"] / 100), 2)
            return await self.subscriptions.apply_local_mutation(
                subscription.id, status="active", value=discounted, connection=conn
            )
        await self.users.update_plan(user_id, params["plan"], connection=conn)
        return await self.subscriptions.apply_local_mutation(
            subscription.id, status="active", connection=conn
        )

    def _result_for(
        self,
        event: OfferEvent,
        *,
        duplicate: bool = False,
        attempt_state: AttemptState | None = None,
    ) -> DecisionResult:
        return DecisionResult(
            success=True,
            message=_OUTCOME_MESSAGES[event.status] + (" (already recorded)" if duplicate else ""),
            offer_type=event.offer_type,
            status=event.status,
            revenue_saved=float(event.revenue_saved) if event.is_save else 0.0,
            subscription_updated=(
                event.is_confirmed_acceptance and event.offer_type in BILLING_OFFER_TYPES
            ),
            event_id=event.id,
            decision_id=event.decision_id,
            attempt_id=event.attempt_id,
            attempt_state=attempt_state,
            duplicate=duplicate,
        )

    # =================================================================
    # CONFIRM
    # =================================================================

    async def confirm_pending_mutation(
        self,
        mutation: PendingBillingMutation,
        *,
        source: str,
        connection: psycopg.AsyncConnection | None = None,
    ) -> OfferEvent | None:
        """
        Settle a pending decision once billing has applied it.

        Appends a confirmation event (the pending event itself is never
        updated), applies the local subscription change and the model update.
        A caller passing its own connection runs scoring.nudge_weights() on
        the returned event after committing.

        Returns:
            The confirmation event, or None if the mutation was already settled
        """
        if connection is not None:
            return await self._confirm(mutation, source, connection)
        async with self.transaction() as conn:
            confirmation = await self._confirm(mutation, source, conn)
        if confirmation is not None:
            await self.scoring.nudge_weights(confirmation)
        return confirmation

    async def _confirm(
        self, mutation: PendingBillingMutation, source: str, conn
    ) -> OfferEvent | None:
        if not await self.pending.resolve(mutation.id, connection=conn):
            logger.info("Pending mutation already settled", mutation_id=mutation.id, source=source)
            return None

        original = await self.events.get_offer_event(mutation.offer_event_id, connection=conn)
        if original is None:
            raise NotFound(
                f"Offer event {mutation.offer_event_id} not found",
                event_id=mutation.offer_event_id,
            )

        subscription = await self.subscriptions.get_by_id(mutation.subscription_id, connection=conn)
        if subscription is None:
            raise NotFound(
                f"Subscription {mutation.subscription_id} not found",
                subscription_id=mutation.subscription_id,
            )

        await self._apply_local_change(
            subscription, original.user_id, mutation.offer_type, mutation.params, conn
        )

        confirmation = await self.events.insert_offer_event(
            NewOfferEvent(
                decision_id=confirmation_decision_id(original.id),
                user_id=original.user_id,
                flow_id=original.flow_id,
                attempt_id=original.attempt_id,
                offer_type=original.offer_type,
                segment=original.segment,
                message_template=original.message_template,
                accepted=True,
                status=EventStatus.CONFIRMED,
                revenue_saved=float(mutation.params.get("revenue_value", 0) or 0),
                confirms_event_id=original.id,
            ),
            connection=conn,
        )
        if confirmation is None:
            return None

        if original.attempt_id is not None:
            # pending_confirmation -> accepted -> closed in one write
            await self.attempts.transition(
                original.attempt_id,
                from_states=[AttemptState.PENDING_CONFIRMATION],
                to_state=AttemptState.CLOSED,
                connection=conn,
            )

        await self.scoring.update_model_with_event(confirmation, connection=conn)
        logger.info(
            "Pending decision confirmed",
            mutation_id=mutation.id,
            pending_event_id=original.id,
            confirmation_event_id=confirmation.id,
            source=source,
        )
        return confirmation

    async def close_abandoned_attempt(
        self, pending_event: OfferEvent | None, *, connection: psycopg.AsyncConnection
    ) -> bool:
        """Close the attempt of a pending decision whose billing change was given up."""
        if pending_event is None or pending_event.attempt_id is None:
            return False
        closed = await self.attempts.transition(
            pending_event.attempt_id,
            from_states=[AttemptState.PENDING_CONFIRMATION],
            to_state=AttemptState.CLOSED,
            connection=connection,
        )
        if closed:
            logger.warning(
                "Attempt closed without billing confirmation",
                attempt_id=pending_event.attempt_id,
                pending_event_id=pending_event.id,
            )
        return bool(closed)
