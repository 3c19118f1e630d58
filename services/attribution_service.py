"""
Attribution service: turns qualifying stage events into persisted commissions.

Flow:
1. Load the deal owner's upline (owner + at most two sponsors) from the store
2. Run the pure attribution engine against the deal's existing records
3. Commit every newly attributable level in one store call, which re-checks
   under the deal lock that the event still qualifies

Safe to call more than once for the same event: levels that already hold a
non-voided record are skipped, both here and again inside the store.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from domain.commission import (
    MAX_UPLINE_DEPTH,
    AttributionResult,
    CommissionPolicy,
    attribute,
    company_remainder,
    is_attributable,
)
from domain.deal import Deal, StageTransitionEvent
from domain.errors import CycleDetectedError, DealNotFoundError, EventNotAttributableError
from domain.partner import Partner, ReferralGraph
from domain.time import utc_now
from repositories.base import NetworkStore

logger = logging.getLogger(__name__)


def load_upline(store: NetworkStore, partner_id: UUID, depth: int = MAX_UPLINE_DEPTH) -> ReferralGraph:
    """
    Build a graph holding `partner_id` and at most `depth` sponsors above it.

    Loading stops at a root, at a missing sponsor, or when a partner repeats,
    so a corrupt chain still loads and the walk itself reports the cycle.
    """

    partners: Dict[UUID, Partner] = {}
    current: Optional[UUID] = partner_id
    for _ in range(depth + 1):
        if current is None or current in partners:
            break
        partner = store.get_partner(current)
        if partner is None:
            break
        partners[current] = partner
        current = partner.parent_partner_id
    return ReferralGraph.from_partners(partners.values())


def attribute_event(
    store: NetworkStore,
    deal: Deal,
    event: StageTransitionEvent,
    policy: CommissionPolicy,
    now: Optional[datetime] = None,
) -> AttributionResult:
    """
    Attribute commissions for one stage transition event and persist them.

    Returns:
        AttributionResult whose `created` holds only the records this call
        actually committed.

    Raises:
        CycleDetectedError: the owner's sponsor chain is cyclic. Logged as a
            data-integrity alert; nothing is written for the deal.
    """

    now = now or utc_now()
    graph = load_upline(store, deal.owner_partner_id)

    try:
        result = attribute(deal, event, graph, policy, store.list_commissions_for_deal(deal.deal_id), now)
    except CycleDetectedError as exc:
        logger.error(
            f"Referral cycle detected while attributing deal {deal.deal_id}",
            extra={
                "alert_type": "data_integrity",
                "deal_id": str(deal.deal_id),
                "event_sequence": event.sequence,
                "partner_id": str(exc.partner_id),
                "cycle_path": [str(p) for p in exc.path],
            },
        )
        raise

    if not result.qualifying:
        return result

    for level, error in result.blocked.items():
        logger.warning(
            f"Level {level} of deal {deal.deal_id} not attributed: {error}",
            extra={
                "deal_id": str(deal.deal_id),
                "product_type": deal.product_type.value,
                "level": level,
                "reason": type(error).__name__,
                "policy_name": policy.name,
            },
        )

    if result.created:
        try:
            committed = store.add_commission_records(event, result.created)
        except EventNotAttributableError as exc:
            # The deal moved on (declined, or reopened) after it was read.
            logger.warning(
                f"Attribution for deal {deal.deal_id} dropped; deal is now '{exc.current_stage}'",
                extra={
                    "deal_id": str(deal.deal_id),
                    "event_sequence": event.sequence,
                    "current_stage": exc.current_stage,
                },
            )
            return replace(result, qualifying=False, created=())
        committed_ids = {r.commission_id for r in committed}
        raced = tuple(r.level for r in result.created if r.commission_id not in committed_ids)
        result = replace(
            result,
            created=tuple(committed),
            skipped_levels=tuple(sorted(result.skipped_levels + raced)),
        )

    result = replace(
        result,
        company_remainder=company_remainder(deal, store.list_commissions_for_deal(deal.deal_id)),
    )

    logger.info(
        f"Attribution for deal {deal.deal_id} at '{event.to_stage.value}'",
        extra={
            "deal_id": str(deal.deal_id),
            "event_sequence": event.sequence,
            "created_levels": [r.level for r in result.created],
            "skipped_levels": list(result.skipped_levels),
            "blocked_levels": sorted(result.blocked),
            "company_remainder": None if result.company_remainder is None else str(result.company_remainder),
        },
    )
    return result


def replay_event(
    store: NetworkStore,
    deal_id: UUID,
    sequence: int,
    policy: CommissionPolicy,
    now: Optional[datetime] = None,
) -> AttributionResult:
    """
    Re-run attribution for a stored event.

    Used to fill levels that were blocked by a missing policy entry or a
    missing actual commission, or to recover after a crash between the
    transition and the commission commit. Replaying an event that was fully
    attributed creates nothing, and so does replaying an event the deal has
    moved past (declined since, or no longer in a qualifying stage).

    Raises:
        DealNotFoundError: the deal or the event does not exist
    """

    deal = store.get_deal(deal_id)
    if deal is None:
        raise DealNotFoundError(f"Deal not found: {deal_id}")

    events = store.list_events(deal_id)
    event = next((e for e in events if e.sequence == sequence), None)
    if event is None:
        raise DealNotFoundError(f"Deal {deal_id} has no stage event with sequence {sequence}")

    if not is_attributable(deal, event, events):
        logger.info(
            f"Stage event {sequence} of deal {deal_id} no longer qualifies; replay skipped",
            extra={"deal_id": str(deal_id), "event_sequence": sequence, "stage": deal.stage.value},
        )
        return AttributionResult(deal_id=deal_id, event_sequence=sequence, qualifying=False)

    return attribute_event(store, deal, event, policy, now)


__all__ = ["load_upline", "attribute_event", "replay_event"]
