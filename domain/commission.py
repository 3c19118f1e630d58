"""
Domain: Commission Policy, Commission Records and the Attribution Engine.

Contract excerpts implemented here:
- Commission attribution runs only for a StageTransitionEvent whose target
  stage is commission-qualifying.
- Level 1 is the deal owner, level 2 the owner's sponsor, level 3 the
  sponsor's sponsor. Missing ancestors simply mean fewer levels: there is no
  substitute beneficiary and the unearned share is not redistributed.
- At most one non-voided CommissionRecord may exist per (deal_id, level).
  Re-running attribution for the same event creates nothing new.
- Rates are never hard-coded: every level's rate or fixed amount comes from a
  CommissionPolicy supplied by the caller. Rates are shares of the deal's
  admin-entered actual commission. A missing policy entry, or a missing
  actual commission for a rate-based level, blocks that level only.
- An event attributes only while the deal still sits in a qualifying stage
  and has not been declined since the event.
- A declined deal voids its pending (non-paid) records; they are kept for
  audit, never deleted.

This module is pure: it computes what should be persisted and leaves the
atomic commit to the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import UUID, uuid4

from .deal import Deal, ProductType, StageTransitionEvent
from .errors import CommissionBaseMissingError, InvalidStateError, PartnerNetworkError, PolicyNotFoundError
from .partner import ReferralGraph
from .stage import DealStage, is_qualifying
from .time import require_utc_timestamp

LEVELS: Tuple[int, ...] = (1, 2, 3)
MAX_UPLINE_DEPTH = len(LEVELS) - 1

_CENT = Decimal("0.01")


class CommissionStatus(str, Enum):
    PAYABLE = "payable"
    INVOICED = "invoiced"
    PAID = "paid"
    VOIDED = "voided"


PENDING_STATUSES = frozenset({CommissionStatus.PAYABLE, CommissionStatus.INVOICED})


def _to_decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{name} must be a decimal number, got {value!r}") from exc
    if result < 0:
        raise ValueError(f"{name} must be >= 0")
    return result


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PolicyEntry:
    """
    Payable share for one (product_type, level) pair.

    Exactly one of:
    - rate: fraction of the deal's `actual_commission` (e.g. Decimal("0.20"))
    - amount: fixed amount regardless of deal value
    """

    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if (self.rate is None) == (self.amount is None):
            raise ValueError("PolicyEntry needs exactly one of rate or amount")
        if self.rate is not None and not (Decimal("0") <= self.rate <= Decimal("1")):
            raise ValueError("rate must be between 0 and 1")
        if self.amount is not None and self.amount < 0:
            raise ValueError("amount must be >= 0")

    def amount_for(self, base: Optional[Decimal]) -> Decimal:
        """Money due for a deal whose commission pool is `base`."""

        if self.amount is not None:
            return self.amount.quantize(_CENT, rounding=ROUND_HALF_UP)
        if base is None:
            raise ValueError("a rate-based entry needs a commission base")
        return (base * self.rate).quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class CommissionPolicy:
    """
    Immutable lookup of PolicyEntry by (product_type, level).

    `defaults` apply to any product that has no explicit entry for a level.
    """

    name: str
    entries: Mapping[Tuple[ProductType, int], PolicyEntry]
    defaults: Mapping[int, PolicyEntry] = field(default_factory=dict)
    currency: str = "GBP"

    def entry_for(self, product_type: ProductType, level: int) -> PolicyEntry:
        """
        Raises:
            PolicyNotFoundError: if neither a product entry nor a default exists.
        """

        product_type = ProductType(product_type)
        entry = self.entries.get((product_type, level)) or self.defaults.get(level)
        if entry is None:
            raise PolicyNotFoundError(product_type.value, level)
        return entry

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "CommissionPolicy":
        """
        Build a policy from parsed configuration.

        Expected shape:
            {
              "name": "network-2025",
              "currency": "GBP",
              "default": {"1": {"rate": "0.60"}, "2": {"rate": "0.20"}},
              "products": {
                "business_funding": {"1": {"amount": "500.00"}}
              }
            }
        """

        def parse_levels(raw: Mapping[str, Any], where: str) -> Dict[int, PolicyEntry]:
            parsed: Dict[int, PolicyEntry] = {}
            for level_key, entry in raw.items():
                level = int(level_key)
                if level not in LEVELS:
                    raise ValueError(f"{where}: level must be one of {LEVELS}, got {level}")
                if not isinstance(entry, Mapping):
                    raise ValueError(f"{where}: level {level} must be an object")
                parsed[level] = PolicyEntry(
                    rate=_to_decimal(entry["rate"], f"{where}.{level}.rate") if "rate" in entry else None,
                    amount=_to_decimal(entry["amount"], f"{where}.{level}.amount") if "amount" in entry else None,
                )
            return parsed

        entries: Dict[Tuple[ProductType, int], PolicyEntry] = {}
        for product_key, levels in (data.get("products") or {}).items():
            product = ProductType(product_key)
            for level, entry in parse_levels(levels, f"products.{product_key}").items():
                entries[(product, level)] = entry

        defaults = parse_levels(data.get("default") or {}, "default")

        if not entries and not defaults:
            raise ValueError("Commission policy defines no entries")

        return CommissionPolicy(
            name=str(data.get("name", "unnamed")),
            entries=MappingProxyType(entries),
            defaults=MappingProxyType(defaults),
            currency=str(data.get("currency", "GBP")),
        )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CommissionRecord:
    """
    One beneficiary's share of one deal's value at one qualifying event.

    Status moves payable -> invoiced -> paid; payable/invoiced may also be
    voided when the deal is declined. Every status change returns a new
    instance.
    """

    commission_id: UUID
    deal_id: UUID
    beneficiary_partner_id: UUID
    level: int
    product_type: ProductType
    amount: Decimal
    triggering_stage: DealStage
    created_at: datetime
    rate: Optional[Decimal] = None
    currency: str = "GBP"
    status: CommissionStatus = CommissionStatus.PAYABLE
    invoice_id: Optional[UUID] = None
    payment_reference: Optional[str] = None
    invoiced_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.level not in LEVELS:
            raise ValueError(f"level must be one of {LEVELS}")
        if self.amount < 0:
            raise ValueError("amount must be >= 0")
        require_utc_timestamp("created_at", self.created_at)
        for name in ("invoiced_at", "paid_at", "voided_at"):
            value = getattr(self, name)
            if value is not None:
                require_utc_timestamp(name, value)

    @property
    def is_voided(self) -> bool:
        return self.status is CommissionStatus.VOIDED

    def invoiced(self, invoice_id: UUID, at: datetime) -> "CommissionRecord":
        if self.status is not CommissionStatus.PAYABLE:
            raise InvalidStateError(self.commission_id, self.status.value, CommissionStatus.PAYABLE.value)
        require_utc_timestamp("invoiced_at", at)
        return replace(self, status=CommissionStatus.INVOICED, invoice_id=invoice_id, invoiced_at=at)

    def paid(self, payment_reference: str, at: datetime) -> "CommissionRecord":
        if self.status is not CommissionStatus.INVOICED:
            raise InvalidStateError(self.commission_id, self.status.value, CommissionStatus.INVOICED.value)
        require_utc_timestamp("paid_at", at)
        return replace(self, status=CommissionStatus.PAID, payment_reference=payment_reference, paid_at=at)

    def voided(self, at: datetime) -> "CommissionRecord":
        if self.status not in PENDING_STATUSES:
            raise InvalidStateError(self.commission_id, self.status.value, "payable or invoiced")
        require_utc_timestamp("voided_at", at)
        return replace(self, status=CommissionStatus.VOIDED, voided_at=at)


# ---------------------------------------------------------------------------
# Attribution
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class AttributionResult:
    """
    Outcome of evaluating one StageTransitionEvent.

    created: records that must be committed together (all or none)
    skipped_levels: levels that already had a non-voided record
    blocked: levels that could not be attributed because policy, or the
        deal's actual commission for a rate-based level, is missing
    company_remainder: actual commission left after every non-voided
        record on the deal; None until the actual commission is set
    """

    deal_id: UUID
    event_sequence: int
    qualifying: bool
    created: Tuple[CommissionRecord, ...] = ()
    skipped_levels: Tuple[int, ...] = ()
    blocked: Mapping[int, PartnerNetworkError] = field(default_factory=dict)
    company_remainder: Optional[Decimal] = None

    @property
    def is_noop(self) -> bool:
        return not self.created


def beneficiaries_for(deal: Deal, graph: ReferralGraph) -> List[Tuple[int, UUID]]:
    """
    Resolve (level, partner_id) pairs for a deal, nearest first.

    Raises:
        CycleDetectedError: if the owner's sponsor chain is cyclic.
    """

    owner = deal.owner_partner_id
    upline = graph.ancestors_of(owner, MAX_UPLINE_DEPTH)
    return [(1, owner)] + [(index + 2, partner_id) for index, partner_id in enumerate(upline)]


def is_attributable(deal: Deal, event: StageTransitionEvent, events: Iterable[StageTransitionEvent]) -> bool:
    """
    True while `event` may still create commission for `deal`.

    The event must target a qualifying stage, the deal must currently sit in
    one, and no decline may have been recorded after the event. A deal that
    was declined and reopened keeps its old live event in history; that event
    no longer pays.
    """

    if event.deal_id != deal.deal_id:
        return False
    if not is_qualifying(event.to_stage) or not is_qualifying(deal.stage):
        return False
    return not any(
        e.to_stage is DealStage.DECLINED and e.sequence > event.sequence
        for e in events
        if e.deal_id == deal.deal_id
    )


def company_remainder(deal: Deal, records: Iterable[CommissionRecord]) -> Optional[Decimal]:
    """Actual commission not distributed to partners, or None if it was never set."""

    if deal.actual_commission is None:
        return None
    distributed = sum(
        (r.amount for r in records if r.deal_id == deal.deal_id and not r.is_voided),
        Decimal("0"),
    )
    return (deal.actual_commission - distributed).quantize(_CENT, rounding=ROUND_HALF_UP)


def attribute(
    deal: Deal,
    event: StageTransitionEvent,
    graph: ReferralGraph,
    policy: CommissionPolicy,
    existing_records: Iterable[CommissionRecord],
    now: datetime,
) -> AttributionResult:
    """
    Compute the commission records a stage transition event should create.

    Levels are evaluated 1 -> 2 -> 3. A level is skipped when a non-voided
    record already exists for (deal_id, level), which makes redelivery of the
    same event harmless. Non-qualifying events, and events for a deal that is
    no longer in a qualifying stage, produce nothing. Rate-based levels are
    shares of `deal.actual_commission` and are blocked while it is unset.

    Raises:
        CycleDetectedError: propagated from the referral graph; attribution
            for the deal is aborted.
    """

    if event.deal_id != deal.deal_id:
        raise ValueError("event does not belong to deal")
    require_utc_timestamp("now", now)

    if not is_qualifying(event.to_stage) or not is_qualifying(deal.stage):
        return AttributionResult(deal_id=deal.deal_id, event_sequence=event.sequence, qualifying=False)

    active_levels = {
        record.level
        for record in existing_records
        if record.deal_id == deal.deal_id and not record.is_voided
    }

    created: List[CommissionRecord] = []
    skipped: List[int] = []
    blocked: Dict[int, PartnerNetworkError] = {}

    for level, partner_id in beneficiaries_for(deal, graph):
        if level in active_levels:
            skipped.append(level)
            continue

        try:
            entry = policy.entry_for(deal.product_type, level)
        except PolicyNotFoundError as exc:
            blocked[level] = exc
            continue

        if entry.rate is not None and deal.actual_commission is None:
            blocked[level] = CommissionBaseMissingError(deal.deal_id, deal.product_type.value, level)
            continue

        created.append(CommissionRecord(
            commission_id=uuid4(),
            deal_id=deal.deal_id,
            beneficiary_partner_id=partner_id,
            level=level,
            product_type=deal.product_type,
            amount=entry.amount_for(deal.actual_commission),
            rate=entry.rate,
            currency=policy.currency,
            triggering_stage=event.to_stage,
            created_at=now,
        ))

    return AttributionResult(
        deal_id=deal.deal_id,
        event_sequence=event.sequence,
        qualifying=True,
        created=tuple(created),
        skipped_levels=tuple(skipped),
        blocked=MappingProxyType(blocked),
    )


def void_pending(records: Iterable[CommissionRecord], deal_id: UUID, now: datetime) -> List[CommissionRecord]:
    """Voided copies of the deal's payable/invoiced records. Paid records are left alone."""

    return [
        record.voided(now)
        for record in records
        if record.deal_id == deal_id and record.status in PENDING_STATUSES
    ]


__all__ = [
    "LEVELS",
    "CommissionStatus",
    "PENDING_STATUSES",
    "PolicyEntry",
    "CommissionPolicy",
    "CommissionRecord",
    "AttributionResult",
    "beneficiaries_for",
    "is_attributable",
    "company_remainder",
    "attribute",
    "void_pending",
]
