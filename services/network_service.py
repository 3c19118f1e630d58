"""
Referral network service.

Partner recruitment, referral-code lookup, referral trees with derived counts
and the data-quality report (dangling sponsors, sponsor cycles).
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID, uuid4

from domain.errors import PartnerNotFoundError
from domain.partner import (
    Partner,
    ReferralGraph,
    ReferralTreeNode,
    SignupSource,
    generate_referral_code,
)
from domain.time import utc_now
from repositories.base import NetworkStore

logger = logging.getLogger(__name__)

# Referral codes are generated from existing codes; a concurrent recruit can
# take the same code between read and insert.
_CODE_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class DataQualityReport:
    """
    Referral-network integrity findings.

    dangling_parents: partner_id -> sponsor id that does not exist
    cycles: each sponsor cycle once, as a list of partner ids
    """
    dangling_parents: Dict[UUID, UUID]
    cycles: List[List[UUID]]

    @property
    def is_clean(self) -> bool:
        return not self.dangling_parents and not self.cycles


def _load_graph(store: NetworkStore) -> ReferralGraph:
    return ReferralGraph.from_partners(store.list_partners())


def get_partner(store: NetworkStore, partner_id: UUID) -> Partner:
    partner = store.get_partner(partner_id)
    if partner is None:
        raise PartnerNotFoundError(f"Partner not found: {partner_id}")
    return partner


def get_partner_by_code(store: NetworkStore, referral_code: str) -> Partner:
    partner = store.get_partner_by_code(referral_code)
    if partner is None:
        raise PartnerNotFoundError(f"No partner with referral code '{referral_code}'")
    return partner


def recruit_partner(
    store: NetworkStore,
    *,
    first_name: str,
    last_name: str,
    email: Optional[str] = None,
    sponsor_referral_code: Optional[str] = None,
    sponsor_partner_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> Partner:
    """
    Add a partner to the network, optionally under a sponsor.

    The sponsor is fixed at this point and can never change afterwards.

    Args:
        store: Persistence backend
        first_name: Partner first name (used for the referral code)
        last_name: Partner last name (used for the referral code)
        email: Optional contact email
        sponsor_referral_code: Sponsor's referral code (e.g. from a signup link)
        sponsor_partner_id: Sponsor id, when already known

    Returns:
        The stored Partner with its generated referral code

    Raises:
        PartnerNotFoundError: If the sponsor does not exist
        ValueError: If both sponsor arguments are given and disagree

    Example:
        sponsor = recruit_partner(store, first_name="Dana", last_name="Smith")
        recruit = recruit_partner(
            store, first_name="Ali", last_name="Khan",
            sponsor_referral_code=sponsor.referral_code,
        )
    """

    sponsor: Optional[Partner] = None
    if sponsor_referral_code:
        sponsor = get_partner_by_code(store, sponsor_referral_code)
    if sponsor_partner_id is not None:
        if sponsor is not None and sponsor.partner_id != sponsor_partner_id:
            raise ValueError("sponsor_referral_code and sponsor_partner_id refer to different partners")
        sponsor = get_partner(store, sponsor_partner_id)

    created_at = now or utc_now()
    partner_id = uuid4()

    attempt = 0
    while True:
        attempt += 1
        code = generate_referral_code(first_name, last_name, (p.referral_code for p in store.list_partners()))
        partner = Partner(
            partner_id=partner_id,
            referral_code=code,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            parent_partner_id=sponsor.partner_id if sponsor else None,
            signup_source=SignupSource.REFERRAL if sponsor else SignupSource.DIRECT,
            created_at=created_at,
        )
        try:
            store.add_partner(partner)
            break
        except ValueError:
            if attempt >= _CODE_ATTEMPTS:
                raise

    logger.info(
        f"Partner recruited with referral code '{code}'",
        extra={
            "partner_id": str(partner.partner_id),
            "referral_code": code,
            "sponsor_partner_id": str(sponsor.partner_id) if sponsor else None,
        },
    )
    return partner


def get_referral_tree(store: NetworkStore, root_partner_id: Optional[UUID] = None) -> List[ReferralTreeNode]:
    """
    Referral tree(s) with direct recruits, downline size and referral counts.

    Without a root, returns one tree per root partner in the network.

    Raises:
        PartnerNotFoundError: If `root_partner_id` does not exist
    """

    graph = _load_graph(store)
    deal_counts = Counter(d.owner_partner_id for d in store.list_deals())
    return graph.referral_tree(root_partner_id, deal_counts)


def get_downline(store: NetworkStore, partner_id: UUID) -> List[Partner]:
    """Every partner recruited directly or indirectly by `partner_id`."""

    graph = _load_graph(store)
    return [graph.get(pid) for pid in graph.descendants_of(partner_id)]


def get_data_quality_report(store: NetworkStore) -> DataQualityReport:
    graph = _load_graph(store)
    report = DataQualityReport(dangling_parents=graph.dangling_parent_ids(), cycles=graph.find_cycles())

    if report.dangling_parents:
        logger.warning(
            f"{len(report.dangling_parents)} partner(s) reference a missing sponsor",
            extra={
                "dangling_parents": {str(k): str(v) for k, v in report.dangling_parents.items()},
            },
        )
    for cycle in report.cycles:
        logger.error(
            "Referral cycle found in partner network",
            extra={"alert_type": "data_integrity", "cycle_path": [str(p) for p in cycle]},
        )
    return report


__all__ = [
    "DataQualityReport",
    "get_partner",
    "get_partner_by_code",
    "recruit_partner",
    "get_referral_tree",
    "get_downline",
    "get_data_quality_report",
]
