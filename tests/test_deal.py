"""
Tests for `domain/deal.py`.

Covers contract rules:
- A Deal starts in `submitted` at version 0 and is immutable (frozen).
- apply_transition returns a new deal plus exactly one event; the input deal
  is untouched.
- Invalid transitions raise InvalidTransitionError naming both stages.
- All timestamps must be UTC.
"""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from domain.deal import Deal, ProductType, apply_transition, new_deal
from domain.errors import InvalidTransitionError
from domain.stage import DealStage, Role

OWNER = UUID("00000000-0000-0000-0000-0000000000a1")
T0 = datetime(2025, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


def _deal(**overrides) -> Deal:
    fields = dict(
        owner_partner_id=OWNER,
        product_type=ProductType.CARD_PAYMENTS,
        business_name="Corner Cafe Ltd",
        created_at=T0,
        total_amount=Decimal("1000.00"),
    )
    fields.update(overrides)
    return new_deal(**fields)


def test_new_deal_starts_submitted() -> None:
    """Verify a new deal is submitted, version 0, with matching timestamps."""

    deal = _deal()

    assert deal.stage is DealStage.SUBMITTED
    assert deal.version == 0
    assert deal.created_at == deal.updated_at == T0
    assert deal.currency == "GBP"


def test_new_deal_requires_business_name() -> None:
    """Verify a blank business name is rejected."""

    with pytest.raises(ValueError):
        _deal(business_name="   ")


def test_deal_timestamps_must_be_utc() -> None:
    """Verify created_at must be timezone-aware UTC (offset 0)."""

    with pytest.raises(ValueError):
        _deal(created_at=datetime(2025, 1, 1, 9, 0, 0))

    with pytest.raises(ValueError):
        _deal(created_at=datetime(2025, 1, 1, 9, 0, 0, tzinfo=timezone(timedelta(hours=1))))


def test_deal_rejects_negative_amount() -> None:
    """Verify total_amount cannot be negative."""

    with pytest.raises(ValueError):
        _deal(total_amount=Decimal("-1"))


def test_actual_commission_copy() -> None:
    """Verify the actual commission is set on a copy and cannot be negative."""

    deal = _deal()
    priced = deal.with_actual_commission(Decimal("250.00"), T0 + timedelta(days=1))

    assert deal.actual_commission is None
    assert priced.actual_commission == Decimal("250.00")
    assert priced.updated_at == T0 + timedelta(days=1)
    with pytest.raises(ValueError):
        deal.with_actual_commission(Decimal("-0.01"), T0)


def test_deal_is_immutable() -> None:
    """Verify stage cannot be assigned directly."""

    deal = _deal()

    with pytest.raises(FrozenInstanceError):
        deal.stage = DealStage.COMPLETED  # type: ignore[misc]


def test_apply_transition_returns_new_deal_and_event() -> None:
    """Verify a valid move bumps the version and emits one matching event."""

    deal = _deal()
    at = T0 + timedelta(hours=1)

    updated, event = apply_transition(deal, DealStage.QUOTE_REQUEST_RECEIVED, Role.ADMIN, at)

    assert updated.stage is DealStage.QUOTE_REQUEST_RECEIVED
    assert updated.version == 1
    assert updated.updated_at == at
    assert deal.stage is DealStage.SUBMITTED
    assert deal.version == 0

    assert event.deal_id == deal.deal_id
    assert event.sequence == updated.version
    assert event.from_stage is DealStage.SUBMITTED
    assert event.to_stage is DealStage.QUOTE_REQUEST_RECEIVED
    assert event.acting_role is Role.ADMIN
    assert event.occurred_at == at


def test_invalid_transition_names_both_stages() -> None:
    """Verify an illegal move raises InvalidTransitionError with current and attempted stage."""

    deal = _deal()

    with pytest.raises(InvalidTransitionError) as excinfo:
        apply_transition(deal, DealStage.COMPLETED, Role.ADMIN, T0)

    assert excinfo.value.current_stage == "submitted"
    assert excinfo.value.attempted_stage == "completed"
    assert excinfo.value.deal_id == deal.deal_id


def test_declined_reopens_only_to_submitted() -> None:
    """Verify a declined deal can go back to submitted and nowhere else."""

    deal, _ = apply_transition(_deal(), DealStage.DECLINED, Role.ADMIN, T0)

    with pytest.raises(InvalidTransitionError):
        apply_transition(deal, DealStage.QUOTE_SENT, Role.ADMIN, T0)

    reopened, event = apply_transition(deal, DealStage.SUBMITTED, Role.ADMIN, T0)
    assert reopened.stage is DealStage.SUBMITTED
    assert reopened.version == 2
    assert event.from_stage is DealStage.DECLINED


def test_transition_requires_utc_time() -> None:
    """Verify occurred_at must be UTC."""

    with pytest.raises(ValueError):
        apply_transition(_deal(), DealStage.DECLINED, Role.ADMIN, datetime(2025, 1, 1))


def test_signup_completed_records_timestamp() -> None:
    """Verify signup completion is stored without changing the stage."""

    deal = _deal()
    at = T0 + timedelta(days=1)

    updated = deal.signup_completed(at)

    assert updated.signup_completed_at == at
    assert updated.stage is deal.stage
    assert updated.version == deal.version
