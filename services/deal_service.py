"""
Deal lifecycle service.

Handles:
- Deal creation for an existing partner
- Admin entry of the actual commission a deal earned
- Validated stage transitions with compare-and-set persistence
- Commission attribution on qualifying stages and voiding on decline
- Role-specific actions, stage history and partner progress lookups
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from domain.commission import AttributionResult, CommissionPolicy, CommissionRecord
from domain.deal import Deal, ProductType, StageTransitionEvent, apply_transition, new_deal
from domain.errors import (
    ConcurrentTransitionError,
    DealNotFoundError,
    InvalidTransitionError,
    PartnerNotFoundError,
)
from domain.stage import (
    DealStage,
    PartnerProgressStep,
    Role,
    StageAction,
    actions_for,
    is_qualifying,
    partner_progress,
)
from domain.time import utc_now
from repositories.base import NetworkStore
from services.attribution_service import attribute_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransitionOutcome:
    """
    Result of a successful stage transition.

    attribution: set only when the target stage is commission-qualifying
    voided: commission records voided because the deal was declined
    """
    deal: Deal
    event: StageTransitionEvent
    attribution: Optional[AttributionResult] = None
    voided: Tuple[CommissionRecord, ...] = ()


def create_deal(
    store: NetworkStore,
    *,
    owner_partner_id: UUID,
    product_type: ProductType,
    business_name: str,
    total_amount: Optional[Decimal] = None,
    estimated_monthly_saving: Optional[Decimal] = None,
    currency: str = "GBP",
    now: Optional[datetime] = None,
) -> Deal:
    """
    Submit a new deal for a partner. The deal starts in `submitted`.

    Raises:
        PartnerNotFoundError: If the owning partner does not exist
        ValueError: If the business name is empty or an amount is negative
    """

    if store.get_partner(owner_partner_id) is None:
        raise PartnerNotFoundError(f"Partner not found: {owner_partner_id}")

    deal = new_deal(
        owner_partner_id=owner_partner_id,
        product_type=product_type,
        business_name=business_name,
        created_at=now or utc_now(),
        total_amount=total_amount,
        estimated_monthly_saving=estimated_monthly_saving,
        currency=currency,
    )
    store.add_deal(deal)

    logger.info(
        f"Deal submitted for {deal.business_name}",
        extra={
            "deal_id": str(deal.deal_id),
            "owner_partner_id": str(owner_partner_id),
            "product_type": deal.product_type.value,
        },
    )
    return deal


def get_deal(store: NetworkStore, deal_id: UUID) -> Deal:
    deal = store.get_deal(deal_id)
    if deal is None:
        raise DealNotFoundError(f"Deal not found: {deal_id}")
    return deal


def transition_deal(
    store: NetworkStore,
    deal_id: UUID,
    target_stage: DealStage,
    acting_role: Role,
    policy: CommissionPolicy,
    now: Optional[datetime] = None,
) -> TransitionOutcome:
    """
    Move a deal to `target_stage` and run the commission side effects.

    The stage change is persisted first (compare-and-set on the deal version).
    Then:
    - `declined` voids the deal's payable and invoiced commission records
    - a commission-qualifying stage attributes commissions for the event

    Args:
        store: Persistence backend
        deal_id: Deal to move
        target_stage: Requested stage
        acting_role: Role performing the change (recorded on the event)
        policy: Commission policy used for attribution
        now: Transition time (defaults to current UTC time)

    Returns:
        TransitionOutcome with the updated deal and its event

    Raises:
        DealNotFoundError: If the deal does not exist
        InvalidTransitionError: If the move is not allowed from the current stage
        ConcurrentTransitionError: If another writer moved the deal first
        CycleDetectedError: If attribution hits a referral cycle. The
            transition itself is already persisted when this is raised.

    Example:
        outcome = transition_deal(store, deal_id, DealStage.LIVE_CONFIRM_LTR, Role.ADMIN, policy)
        print([r.amount for r in outcome.attribution.created])
    """

    now = now or utc_now()
    deal = get_deal(store, deal_id)

    try:
        updated, event = apply_transition(deal, target_stage, acting_role, now)
    except InvalidTransitionError as exc:
        logger.warning(
            f"Rejected transition for deal {deal_id}: {exc}",
            extra={
                "deal_id": str(deal_id),
                "current_stage": exc.current_stage,
                "attempted_stage": exc.attempted_stage,
                "acting_role": Role(acting_role).value,
            },
        )
        raise

    try:
        store.save_transition(updated, event, expected_version=deal.version)
    except ConcurrentTransitionError as exc:
        logger.warning(
            f"Concurrent update on deal {deal_id}; transition not applied",
            extra={
                "deal_id": str(deal_id),
                "expected_version": exc.expected_version,
                "actual_version": exc.actual_version,
                "attempted_stage": event.to_stage.value,
            },
        )
        raise

    logger.info(
        f"Deal {deal_id} moved from '{event.from_stage.value}' to '{event.to_stage.value}'",
        extra={
            "deal_id": str(deal_id),
            "from_stage": event.from_stage.value,
            "to_stage": event.to_stage.value,
            "event_sequence": event.sequence,
            "acting_role": event.acting_role.value,
        },
    )

    voided: Tuple[CommissionRecord, ...] = ()
    if event.to_stage is DealStage.DECLINED:
        voided = tuple(store.void_pending_commissions(deal_id, now))
        if voided:
            logger.info(
                f"Voided {len(voided)} pending commission record(s) for declined deal {deal_id}",
                extra={
                    "deal_id": str(deal_id),
                    "commission_ids": [str(r.commission_id) for r in voided],
                },
            )

    attribution = None
    if is_qualifying(event.to_stage):
        attribution = attribute_event(store, updated, event, policy, now)

    return TransitionOutcome(deal=updated, event=event, attribution=attribution, voided=voided)


def mark_signup_completed(store: NetworkStore, deal_id: UUID, now: Optional[datetime] = None) -> Deal:
    """
    Record that the client finished the signup form.

    Only valid while the deal sits in `quote_approved`. Repeating the call
    keeps the first timestamp. Display only: the stage is not changed.

    Raises:
        DealNotFoundError: If the deal does not exist
        ValueError: If the deal is not awaiting signup
    """

    deal = get_deal(store, deal_id)
    if deal.signup_completed_at is not None:
        return deal
    if deal.stage is not DealStage.QUOTE_APPROVED:
        raise ValueError(
            f"Signup can only be completed while the deal is '{DealStage.QUOTE_APPROVED.value}', "
            f"deal is '{deal.stage.value}'"
        )
    return store.record_signup_completed(deal_id, now or utc_now())


def set_actual_commission(
    store: NetworkStore,
    deal_id: UUID,
    amount: Decimal,
    now: Optional[datetime] = None,
) -> Deal:
    """
    Record the commission the company actually received for a deal.

    Rate-based levels are shares of this amount, so it has to be entered
    before the deal reaches a qualifying stage, or the blocked levels are
    filled later by `completed` or a replay. It can be corrected freely until
    the first commission record exists.

    Raises:
        DealNotFoundError: If the deal does not exist
        ValueError: If the amount is negative, or the deal already has
            non-voided commission records
    """

    amount = Decimal(str(amount))
    if amount < 0:
        raise ValueError("actual_commission must be >= 0")

    get_deal(store, deal_id)
    updated = store.record_actual_commission(deal_id, amount, now or utc_now())

    logger.info(
        f"Actual commission for deal {deal_id} set to {amount}",
        extra={"deal_id": str(deal_id), "actual_commission": str(amount)},
    )
    return updated


def get_actions_for_deal(store: NetworkStore, deal_id: UUID, role: Role) -> List[StageAction]:
    return actions_for(get_deal(store, deal_id).stage, role)


def get_deal_history(store: NetworkStore, deal_id: UUID) -> List[StageTransitionEvent]:
    """Stage transition events for a deal, oldest first."""

    get_deal(store, deal_id)
    return sorted(store.list_events(deal_id), key=lambda e: e.sequence)


def get_deal_progress(store: NetworkStore, deal_id: UUID) -> PartnerProgressStep:
    deal = get_deal(store, deal_id)
    return partner_progress(deal.stage, deal.signup_completed_at)


__all__ = [
    "TransitionOutcome",
    "create_deal",
    "get_deal",
    "transition_deal",
    "mark_signup_completed",
    "set_actual_commission",
    "get_actions_for_deal",
    "get_deal_history",
    "get_deal_progress",
]
