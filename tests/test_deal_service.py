"""
Tests for `services/deal_service.py` and `services/attribution_service.py`.

End-to-end lifecycle scenarios against the in-memory store:
- A refers B refers C; C's deal going live pays C, B and A at levels 1-3.
- A root partner's deal pays level 1 only.
- Replaying a qualifying event never duplicates records.
- Declining voids pending records; declined deals only reopen to submitted.
- A stage event the deal has moved past never pays, whether it is replayed,
  redelivered, or committed while a decline lands.
- Rate levels are shares of the admin-entered actual commission.
- A referral cycle is logged as a data-integrity alert and re-raised, while
  the stage change itself stays applied.
"""

from __future__ import annotations

import logging
import threading
from decimal import Decimal
from uuid import uuid4

import pytest

from domain.commission import CommissionPolicy, CommissionStatus
from domain.deal import ProductType
from domain.errors import (
    CommissionBaseMissingError,
    CycleDetectedError,
    DealNotFoundError,
    InvalidTransitionError,
    PartnerNotFoundError,
)
from domain.partner import Partner
from domain.stage import DealStage, PartnerProgressStep, Role
from domain.time import utc_now
from services import deal_service, ledger_service
from services.attribution_service import attribute_event, load_upline, replay_event


def _submit(store, owner, actual: str = "1000.00"):
    deal = deal_service.create_deal(
        store,
        owner_partner_id=owner.partner_id,
        product_type=ProductType.CARD_PAYMENTS,
        business_name="Corner Cafe Ltd",
        total_amount=Decimal("4800.00"),
    )
    return deal_service.set_actual_commission(store, deal.deal_id, Decimal(actual))


def _go_live(store, deal, policy, advance):
    advance(deal)
    return deal_service.transition_deal(store, deal.deal_id, DealStage.LIVE_CONFIRM_LTR, Role.ADMIN, policy)


def test_three_level_chain_scenario(store, policy, chain, advance) -> None:
    """Verify C's live deal creates payable records for C (1), B (2) and A (3)."""

    a, b, c = chain
    deal = _submit(store, c)

    outcome = _go_live(store, deal, policy, advance)

    by_level = {r.level: r for r in outcome.attribution.created}
    assert set(by_level) == {1, 2, 3}
    assert by_level[1].beneficiary_partner_id == c.partner_id
    assert by_level[2].beneficiary_partner_id == b.partner_id
    assert by_level[3].beneficiary_partner_id == a.partner_id
    assert [by_level[n].amount for n in (1, 2, 3)] == [Decimal("600.00"), Decimal("200.00"), Decimal("100.00")]
    assert all(r.status is CommissionStatus.PAYABLE for r in store.list_commissions_for_deal(deal.deal_id))


def test_root_owner_scenario(store, policy, chain, advance) -> None:
    """Verify a root partner's deal yields exactly one level-1 record."""

    a, _, _ = chain
    deal = _submit(store, a)

    _go_live(store, deal, policy, advance)

    records = store.list_commissions_for_deal(deal.deal_id)
    assert [(r.level, r.beneficiary_partner_id) for r in records] == [(1, a.partner_id)]


def test_round_trip_to_live_has_one_level_one_record(store, policy, chain, advance) -> None:
    """Verify the full path to live_confirm_ltr leaves exactly one payable level-1 record."""

    _, _, c = chain
    deal = _submit(store, c)

    outcomes = advance(deal)
    assert all(o.attribution is None for o in outcomes)
    assert store.list_commissions_for_deal(deal.deal_id) == []

    deal_service.transition_deal(store, deal.deal_id, DealStage.LIVE_CONFIRM_LTR, Role.ADMIN, policy)

    level_one = [r for r in store.list_commissions_for_deal(deal.deal_id) if r.level == 1]
    assert len(level_one) == 1
    assert level_one[0].status is CommissionStatus.PAYABLE


def test_replay_is_idempotent(store, policy, chain, advance) -> None:
    """Verify replaying the qualifying event twice creates no duplicate records."""

    _, _, c = chain
    deal = _submit(store, c)
    outcome = _go_live(store, deal, policy, advance)

    first = replay_event(store, deal.deal_id, outcome.event.sequence, policy)
    second = replay_event(store, deal.deal_id, outcome.event.sequence, policy)

    assert first.is_noop and second.is_noop
    assert second.skipped_levels == (1, 2, 3)
    levels = sorted(r.level for r in store.list_commissions_for_deal(deal.deal_id))
    assert levels == [1, 2, 3]


def test_replay_unknown_event(store, policy, chain) -> None:
    """Verify replaying a sequence the deal never had raises DealNotFoundError."""

    deal = _submit(store, chain[0])

    with pytest.raises(DealNotFoundError):
        replay_event(store, deal.deal_id, 42, policy)


def test_completed_after_live_creates_nothing_new(store, policy, chain, advance) -> None:
    """Verify completing an attributed deal does not pay twice."""

    _, _, c = chain
    deal = _submit(store, c)
    _go_live(store, deal, policy, advance)

    outcome = deal_service.transition_deal(store, deal.deal_id, DealStage.COMPLETED, Role.ADMIN, policy)

    assert outcome.attribution.qualifying
    assert outcome.attribution.is_noop
    assert len(store.list_commissions_for_deal(deal.deal_id)) == 3


def test_invoice_received_is_not_qualifying(store, policy, chain, advance) -> None:
    """Verify moving to invoice_received runs no attribution."""

    deal = _submit(store, chain[2])
    _go_live(store, deal, policy, advance)

    outcome = deal_service.transition_deal(store, deal.deal_id, DealStage.INVOICE_RECEIVED, Role.ADMIN, policy)

    assert outcome.attribution is None


def test_missing_policy_level_caught_up_on_completion(store, chain, advance) -> None:
    """Verify a level blocked at live is attributed once the policy covers it."""

    partial = CommissionPolicy.from_mapping({"default": {"1": {"rate": "0.60"}, "2": {"rate": "0.20"}}})
    full = CommissionPolicy.from_mapping({
        "default": {"1": {"rate": "0.60"}, "2": {"rate": "0.20"}, "3": {"rate": "0.10"}},
    })
    _, _, c = chain
    deal = _submit(store, c)
    advance(deal)

    live = deal_service.transition_deal(store, deal.deal_id, DealStage.LIVE_CONFIRM_LTR, Role.ADMIN, partial)
    done = deal_service.transition_deal(store, deal.deal_id, DealStage.COMPLETED, Role.ADMIN, full)

    assert sorted(r.level for r in live.attribution.created) == [1, 2]
    assert list(live.attribution.blocked) == [3]
    assert [r.level for r in done.attribution.created] == [3]
    assert done.attribution.skipped_levels == (1, 2)


def test_decline_voids_pending_and_keeps_paid(store, policy, chain, advance) -> None:
    """Verify declining voids payable records while a paid record stays paid."""

    _, _, c = chain
    deal = _submit(store, c)
    live = _go_live(store, deal, policy, advance)
    level_one = next(r for r in live.attribution.created if r.level == 1)
    invoice = ledger_service.create_invoice_for_partner(store, c.partner_id, [level_one.commission_id]).invoice
    ledger_service.mark_invoice_paid(store, invoice.invoice_id, "BACS-1")

    outcome = deal_service.transition_deal(store, deal.deal_id, DealStage.DECLINED, Role.ADMIN, policy)

    assert sorted(r.level for r in outcome.voided) == [2, 3]
    statuses = {r.level: r.status for r in store.list_commissions_for_deal(deal.deal_id)}
    assert statuses == {1: CommissionStatus.PAID, 2: CommissionStatus.VOIDED, 3: CommissionStatus.VOIDED}


def test_replay_after_decline_and_reopen_creates_nothing(store, policy, chain, advance) -> None:
    """Verify redelivering the old live event of a declined, reopened deal pays nobody."""

    _, _, c = chain
    deal = _submit(store, c)
    live = _go_live(store, deal, policy, advance)
    deal_service.transition_deal(store, deal.deal_id, DealStage.DECLINED, Role.ADMIN, policy)
    deal_service.transition_deal(store, deal.deal_id, DealStage.SUBMITTED, Role.ADMIN, policy)

    replayed = replay_event(store, deal.deal_id, live.event.sequence, policy)
    redelivered = attribute_event(store, live.deal, live.event, policy)

    assert not replayed.qualifying and replayed.is_noop
    assert not redelivered.qualifying and redelivered.is_noop
    records = store.list_commissions_for_deal(deal.deal_id)
    assert len(records) == 3
    assert all(r.status is CommissionStatus.VOIDED for r in records)


def test_relaunched_deal_pays_once_on_new_live_event(store, policy, chain, advance) -> None:
    """Verify a reopened deal that goes live again pays on the new event only."""

    _, _, c = chain
    deal = _submit(store, c)
    first = _go_live(store, deal, policy, advance)
    deal_service.transition_deal(store, deal.deal_id, DealStage.DECLINED, Role.ADMIN, policy)
    deal_service.transition_deal(store, deal.deal_id, DealStage.SUBMITTED, Role.ADMIN, policy)

    second = _go_live(store, deal, policy, advance)
    stale = replay_event(store, deal.deal_id, first.event.sequence, policy)

    assert [r.level for r in second.attribution.created] == [1, 2, 3]
    assert stale.is_noop and not stale.qualifying
    payable = [r for r in store.list_commissions_for_deal(deal.deal_id) if r.status is CommissionStatus.PAYABLE]
    assert sorted(r.level for r in payable) == [1, 2, 3]


def test_decline_racing_attribution_leaves_nothing_payable(store, policy, chain, advance, monkeypatch) -> None:
    """Verify a decline landing between the live transition and its commit blocks the commit."""

    _, _, c = chain
    deal = _submit(store, c)
    advance(deal)
    commit = store.add_commission_records

    def decline_then_commit(event, records):
        worker = threading.Thread(
            target=deal_service.transition_deal,
            args=(store, event.deal_id, DealStage.DECLINED, Role.ADMIN, policy),
        )
        worker.start()
        worker.join(timeout=5)
        return commit(event, records)

    monkeypatch.setattr(store, "add_commission_records", decline_then_commit)

    outcome = deal_service.transition_deal(store, deal.deal_id, DealStage.LIVE_CONFIRM_LTR, Role.ADMIN, policy)

    assert not outcome.attribution.qualifying
    assert outcome.attribution.created == ()
    assert store.get_deal(deal.deal_id).stage is DealStage.DECLINED
    assert store.list_commissions_for_deal(deal.deal_id) == []


def test_concurrent_decline_and_attribution_never_leave_payable_records(store, policy, chain, advance) -> None:
    """Verify that after a decline and a redelivery race, a declined deal has no payable record."""

    _, _, c = chain
    deal = _submit(store, c)
    live = _go_live(store, deal, policy, advance)
    store.void_pending_commissions(deal.deal_id, utc_now())
    barrier = threading.Barrier(2)

    def decline() -> None:
        barrier.wait()
        deal_service.transition_deal(store, deal.deal_id, DealStage.DECLINED, Role.ADMIN, policy)

    def redeliver() -> None:
        barrier.wait()
        attribute_event(store, live.deal, live.event, policy)

    threads = [threading.Thread(target=decline), threading.Thread(target=redeliver)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert store.get_deal(deal.deal_id).stage is DealStage.DECLINED
    assert not [r for r in store.list_commissions_for_deal(deal.deal_id) if r.status is CommissionStatus.PAYABLE]


def test_missing_actual_commission_blocks_until_set(store, policy, chain, advance) -> None:
    """Verify rate levels wait for the admin-entered commission and catch up on completion."""

    _, _, c = chain
    deal = deal_service.create_deal(
        store,
        owner_partner_id=c.partner_id,
        product_type=ProductType.CARD_PAYMENTS,
        business_name="Corner Cafe Ltd",
        total_amount=Decimal("4800.00"),
    )
    live = _go_live(store, deal, policy, advance)

    deal_service.set_actual_commission(store, deal.deal_id, Decimal("500.00"))
    done = deal_service.transition_deal(store, deal.deal_id, DealStage.COMPLETED, Role.ADMIN, policy)

    assert live.attribution.is_noop
    assert sorted(live.attribution.blocked) == [1, 2, 3]
    assert isinstance(live.attribution.blocked[1], CommissionBaseMissingError)
    assert live.attribution.company_remainder is None
    assert [r.amount for r in done.attribution.created] == [Decimal("300.00"), Decimal("100.00"), Decimal("50.00")]
    assert done.attribution.company_remainder == Decimal("50.00")


def test_company_remainder_reported_on_attribution(store, policy, chain, advance) -> None:
    """Verify the attribution reports what the company keeps after partner shares."""

    _, _, c = chain
    deal = _submit(store, c, actual="1200.00")

    outcome = _go_live(store, deal, policy, advance)

    assert outcome.attribution.company_remainder == Decimal("120.00")


def test_set_actual_commission_rules(store, policy, chain, advance) -> None:
    """Verify the actual commission rejects negatives and is fixed once records exist."""

    _, _, c = chain
    deal = _submit(store, c)

    with pytest.raises(ValueError):
        deal_service.set_actual_commission(store, deal.deal_id, Decimal("-1"))
    with pytest.raises(DealNotFoundError):
        deal_service.set_actual_commission(store, uuid4(), Decimal("10"))

    corrected = deal_service.set_actual_commission(store, deal.deal_id, Decimal("900.00"))
    _go_live(store, deal, policy, advance)

    assert corrected.actual_commission == Decimal("900.00")
    with pytest.raises(ValueError):
        deal_service.set_actual_commission(store, deal.deal_id, Decimal("950.00"))
    assert store.get_deal(deal.deal_id).actual_commission == Decimal("900.00")


def test_declined_deal_only_reopens_to_submitted(store, policy, chain) -> None:
    """Verify a declined deal rejects every target except submitted."""

    deal = _submit(store, chain[0])
    deal_service.transition_deal(store, deal.deal_id, DealStage.DECLINED, Role.ADMIN, policy)

    for target in DealStage:
        if target is DealStage.SUBMITTED:
            continue
        with pytest.raises(InvalidTransitionError):
            deal_service.transition_deal(store, deal.deal_id, target, Role.ADMIN, policy)

    reopened = deal_service.transition_deal(store, deal.deal_id, DealStage.SUBMITTED, Role.ADMIN, policy)
    assert reopened.deal.stage is DealStage.SUBMITTED


def test_rejected_transition_changes_nothing(store, policy, chain) -> None:
    """Verify an invalid move leaves the deal and its history untouched."""

    deal = _submit(store, chain[0])

    with pytest.raises(InvalidTransitionError) as excinfo:
        deal_service.transition_deal(store, deal.deal_id, DealStage.QUOTE_SENT, Role.ADMIN, policy)

    assert excinfo.value.current_stage == "submitted"
    assert excinfo.value.attempted_stage == "quote_sent"
    assert store.get_deal(deal.deal_id).version == 0
    assert store.list_events(deal.deal_id) == []


def test_transition_unknown_deal(store, policy) -> None:
    """Verify transitioning a missing deal raises DealNotFoundError."""

    with pytest.raises(DealNotFoundError):
        deal_service.transition_deal(store, uuid4(), DealStage.DECLINED, Role.ADMIN, policy)


def test_create_deal_requires_known_owner(store) -> None:
    """Verify a deal cannot be submitted for an unknown partner."""

    with pytest.raises(PartnerNotFoundError):
        deal_service.create_deal(
            store,
            owner_partner_id=uuid4(),
            product_type=ProductType.BOOKINGS,
            business_name="Salon",
        )


def test_cycle_is_alerted_and_transition_kept(store, policy, advance, caplog) -> None:
    """Verify a sponsor cycle raises, logs a data-integrity alert, and keeps the stage change."""

    a_id, b_id = uuid4(), uuid4()
    now = utc_now()
    store.add_partner(Partner(partner_id=a_id, referral_code="cy001", first_name="A", last_name="",
                              parent_partner_id=b_id, created_at=now))
    store.add_partner(Partner(partner_id=b_id, referral_code="cy002", first_name="B", last_name="",
                              parent_partner_id=a_id, created_at=now))
    deal = _submit(store, store.get_partner(a_id))
    advance(deal)

    with caplog.at_level(logging.ERROR, logger="services.attribution_service"):
        with pytest.raises(CycleDetectedError):
            deal_service.transition_deal(store, deal.deal_id, DealStage.LIVE_CONFIRM_LTR, Role.ADMIN, policy)

    alerts = [r for r in caplog.records if getattr(r, "alert_type", None) == "data_integrity"]
    assert len(alerts) == 1
    assert store.get_deal(deal.deal_id).stage is DealStage.LIVE_CONFIRM_LTR
    assert store.list_commissions_for_deal(deal.deal_id) == []


def test_load_upline_stops_at_depth(store, chain) -> None:
    """Verify only the owner and two sponsors are loaded for attribution."""

    a, b, c = chain
    top = store.add_partner(Partner(partner_id=uuid4(), referral_code="tp001", first_name="T",
                                    last_name="", created_at=utc_now()))
    d = store.add_partner(Partner(partner_id=uuid4(), referral_code="dd001", first_name="D",
                                  last_name="", parent_partner_id=c.partner_id, created_at=utc_now()))

    graph = load_upline(store, d.partner_id)

    assert d.partner_id in graph and c.partner_id in graph and b.partner_id in graph
    assert a.partner_id not in graph
    assert top.partner_id not in graph


def test_actions_history_and_progress(store, policy, chain) -> None:
    """Verify role actions, ordered history and partner progress for a deal."""

    deal = _submit(store, chain[0])
    for stage in (DealStage.QUOTE_REQUEST_RECEIVED, DealStage.QUOTE_SENT):
        deal_service.transition_deal(store, deal.deal_id, stage, Role.ADMIN, policy)

    partner_actions = deal_service.get_actions_for_deal(store, deal.deal_id, Role.PARTNER)
    history = deal_service.get_deal_history(store, deal.deal_id)

    assert [a.action for a in partner_actions] == ["approve_quote", "request_rates"]
    assert [e.sequence for e in history] == [1, 2]
    assert [e.to_stage for e in history] == [DealStage.QUOTE_REQUEST_RECEIVED, DealStage.QUOTE_SENT]
    assert deal_service.get_deal_progress(store, deal.deal_id) is PartnerProgressStep.QUOTE_RECEIVED


def test_signup_completion_updates_progress(store, policy, chain) -> None:
    """Verify signup completion shows application submitted and is only allowed at quote_approved."""

    deal = _submit(store, chain[0])

    with pytest.raises(ValueError):
        deal_service.mark_signup_completed(store, deal.deal_id)

    for stage in (DealStage.QUOTE_REQUEST_RECEIVED, DealStage.QUOTE_SENT, DealStage.QUOTE_APPROVED):
        deal_service.transition_deal(store, deal.deal_id, stage, Role.PARTNER, policy)

    updated = deal_service.mark_signup_completed(store, deal.deal_id)
    again = deal_service.mark_signup_completed(store, deal.deal_id)

    assert updated.signup_completed_at is not None
    assert again.signup_completed_at == updated.signup_completed_at
    assert deal_service.get_deal_progress(store, deal.deal_id) is PartnerProgressStep.APPLICATION_SUBMITTED
