"""
Domain: Deal aggregate and stage transition events.

Contract excerpts implemented here:
- A Deal is created in `submitted` and its stage is mutated only through a
  validated transition (`apply_transition`).
- Each accepted transition produces exactly one append-only
  StageTransitionEvent; that event is the sole trigger for commission
  attribution.
- Invalid transitions are rejected synchronously and never partially applied.

Deals are frozen: a transition returns a new Deal with `version` incremented,
and the previous instance is left untouched. Stores use `version` as the
compare-and-set token that serializes writers on a single deal.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple
from uuid import UUID, uuid4

from .errors import InvalidTransitionError
from .stage import DealStage, Role, is_valid_transition
from .time import require_utc_timestamp


class ProductType(str, Enum):
    CARD_PAYMENTS = "card_payments"
    BUSINESS_FUNDING = "business_funding"
    BOOKINGS = "bookings"
    WEBSITES = "websites"
    AI_MARKETING = "ai_marketing"


PRODUCT_LABELS: Mapping[ProductType, str] = MappingProxyType({
    ProductType.CARD_PAYMENTS: "Card Payments",
    ProductType.BUSINESS_FUNDING: "Business Funding",
    ProductType.BOOKINGS: "Bookings",
    ProductType.WEBSITES: "Websites",
    ProductType.AI_MARKETING: "AI Marketing",
})


@dataclass(frozen=True, slots=True)
class Deal:
    """
    A referral opportunity owned by one partner.

    `actual_commission` is the commission pool an admin enters once the
    provider confirms it; rate-based policy levels are shares of it.
    `total_amount` and `estimated_monthly_saving` are advisory only.
    """

    deal_id: UUID
    owner_partner_id: UUID
    product_type: ProductType
    business_name: str
    created_at: datetime
    updated_at: datetime
    stage: DealStage = DealStage.SUBMITTED
    version: int = 0
    total_amount: Optional[Decimal] = None
    estimated_monthly_saving: Optional[Decimal] = None
    actual_commission: Optional[Decimal] = None
    signup_completed_at: Optional[datetime] = None
    currency: str = "GBP"

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        require_utc_timestamp("updated_at", self.updated_at)
        if self.signup_completed_at is not None:
            require_utc_timestamp("signup_completed_at", self.signup_completed_at)
        if self.version < 0:
            raise ValueError("version must be >= 0")
        if self.total_amount is not None and self.total_amount < 0:
            raise ValueError("total_amount must be >= 0")
        if self.actual_commission is not None and self.actual_commission < 0:
            raise ValueError("actual_commission must be >= 0")

    def signup_completed(self, at: datetime) -> "Deal":
        """Return a copy with the signup sub-milestone recorded (display only)."""

        require_utc_timestamp("signup_completed_at", at)
        return replace(self, signup_completed_at=at, updated_at=at)

    def with_actual_commission(self, amount: Decimal, at: datetime) -> "Deal":
        """Return a copy carrying the admin-entered commission pool."""

        require_utc_timestamp("updated_at", at)
        return replace(self, actual_commission=amount, updated_at=at)


@dataclass(frozen=True, slots=True)
class StageTransitionEvent:
    """
    Append-only audit/trigger record of one accepted stage change.

    `sequence` equals the deal's version after the transition, so the pair
    (deal_id, sequence) is unique and ordered per deal.
    """

    event_id: UUID
    deal_id: UUID
    sequence: int
    from_stage: DealStage
    to_stage: DealStage
    occurred_at: datetime
    acting_role: Role

    def __post_init__(self) -> None:
        require_utc_timestamp("occurred_at", self.occurred_at)


def new_deal(
    *,
    owner_partner_id: UUID,
    product_type: ProductType,
    business_name: str,
    created_at: datetime,
    total_amount: Optional[Decimal] = None,
    estimated_monthly_saving: Optional[Decimal] = None,
    currency: str = "GBP",
    deal_id: Optional[UUID] = None,
) -> Deal:
    """Create a Deal in the `submitted` stage."""

    if not business_name.strip():
        raise ValueError("business_name must not be empty")

    return Deal(
        deal_id=deal_id or uuid4(),
        owner_partner_id=owner_partner_id,
        product_type=ProductType(product_type),
        business_name=business_name.strip(),
        created_at=created_at,
        updated_at=created_at,
        total_amount=total_amount,
        estimated_monthly_saving=estimated_monthly_saving,
        currency=currency,
    )


def apply_transition(
    deal: Deal,
    to_stage: DealStage,
    acting_role: Role,
    occurred_at: datetime,
) -> Tuple[Deal, StageTransitionEvent]:
    """
    Validate and apply a stage change.

    Returns the updated deal together with the event describing the change.
    The input deal is never modified.

    Raises:
        InvalidTransitionError: if `to_stage` is not an allowed successor of
            the deal's current stage.
    """

    require_utc_timestamp("occurred_at", occurred_at)
    to_stage = DealStage(to_stage)

    if not is_valid_transition(deal.stage, to_stage):
        raise InvalidTransitionError(deal.stage.value, to_stage.value, deal.deal_id)

    updated = replace(deal, stage=to_stage, version=deal.version + 1, updated_at=occurred_at)
    event = StageTransitionEvent(
        event_id=uuid4(),
        deal_id=deal.deal_id,
        sequence=updated.version,
        from_stage=deal.stage,
        to_stage=to_stage,
        occurred_at=occurred_at,
        acting_role=Role(acting_role),
    )
    return updated, event


__all__ = [
    "ProductType",
    "PRODUCT_LABELS",
    "Deal",
    "StageTransitionEvent",
    "new_deal",
    "apply_transition",
]
