"""
Domain: Partners and the Referral Graph (sponsor forest).

Contract excerpts implemented here:
- Each partner has at most one sponsor (`parent_partner_id`), set once at
  recruitment time and immutable afterwards; re-parenting is rejected.
- Sponsor links are held as ids in an arena keyed by partner id (no live
  object pointers).
- Every ancestor walk is bounded and checks for revisits; a cycle is a
  data-integrity fault (`CycleDetectedError`), never silently tolerated.
- A partner whose sponsor does not exist in the network is treated as a root
  for traversal, but is reported for data-quality follow-up.

Derived counts (direct recruits, total downline, total referrals) are
computed on demand and never stored.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple
from uuid import UUID

from .errors import CycleDetectedError, PartnerNotFoundError, ReparentingError
from .time import require_utc_timestamp


class SignupSource(str, Enum):
    DIRECT = "direct"
    REFERRAL = "referral"


@dataclass(frozen=True, slots=True)
class Partner:
    """A network participant who can own deals and sponsor other partners."""

    partner_id: UUID
    referral_code: str
    first_name: str
    last_name: str
    created_at: datetime
    parent_partner_id: Optional[UUID] = None
    email: Optional[str] = None
    signup_source: SignupSource = SignupSource.DIRECT

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if not self.referral_code:
            raise ValueError("referral_code must not be empty")
        if self.parent_partner_id is not None and self.parent_partner_id == self.partner_id:
            raise ValueError("A partner cannot sponsor itself")

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True, slots=True)
class ReferralTreeNode:
    """One partner in a referral tree, with derived network counts."""

    partner: Partner
    depth: int
    direct_recruits: int
    total_downline: int
    total_referrals: int
    children: Tuple["ReferralTreeNode", ...] = field(default_factory=tuple)


class ReferralGraph:
    """
    Arena of partners addressed by id, linked upward through sponsor ids.

    The graph is append-only: partners can be added, never re-parented or
    removed. Reads are safe to share between request handlers.
    """

    def __init__(self) -> None:
        self._partners: Dict[UUID, Partner] = {}
        self._children: Dict[UUID, Set[UUID]] = {}
        self._codes: Dict[str, UUID] = {}

    @classmethod
    def from_partners(cls, partners: Iterable[Partner]) -> "ReferralGraph":
        """
        Load an existing network as stored.

        No integrity checks are applied here: corrupt data (cycles, dangling
        sponsors) must still load so traversal can detect and report it.
        """

        graph = cls()
        for partner in partners:
            graph._index(partner)
        return graph

    def _index(self, partner: Partner) -> None:
        self._partners[partner.partner_id] = partner
        self._codes[partner.referral_code.lower()] = partner.partner_id
        if partner.parent_partner_id is not None:
            self._children.setdefault(partner.parent_partner_id, set()).add(partner.partner_id)

    # -- mutation ---------------------------------------------------------

    def add_partner(self, partner: Partner) -> None:
        """
        Add a newly recruited partner.

        Raises:
            ReparentingError: if the partner already exists with a different sponsor.
            ValueError: if the partner id or referral code is already taken.
        """

        existing = self._partners.get(partner.partner_id)
        if existing is not None:
            if existing.parent_partner_id != partner.parent_partner_id:
                raise ReparentingError(
                    f"Partner {partner.partner_id} already has sponsor "
                    f"{existing.parent_partner_id}; sponsors are immutable"
                )
            raise ValueError(f"Partner {partner.partner_id} already exists")

        if partner.referral_code.lower() in self._codes:
            raise ValueError(f"Referral code '{partner.referral_code}' is already in use")

        self._index(partner)

    # -- lookups ----------------------------------------------------------

    def __contains__(self, partner_id: object) -> bool:
        return partner_id in self._partners

    def __len__(self) -> int:
        return len(self._partners)

    def get(self, partner_id: UUID) -> Partner:
        partner = self._partners.get(partner_id)
        if partner is None:
            raise PartnerNotFoundError(f"Partner not found: {partner_id}")
        return partner

    def find_by_code(self, referral_code: str) -> Optional[Partner]:
        partner_id = self._codes.get(referral_code.strip().lower())
        return self._partners.get(partner_id) if partner_id is not None else None

    def partners(self) -> List[Partner]:
        return list(self._partners.values())

    def referral_codes(self) -> List[str]:
        return [p.referral_code for p in self._partners.values()]

    def _parent_in_network(self, partner_id: UUID) -> Optional[UUID]:
        parent_id = self._partners[partner_id].parent_partner_id
        if parent_id is None or parent_id not in self._partners:
            return None
        return parent_id

    def is_root(self, partner_id: UUID) -> bool:
        """True if the partner has no sponsor, or its sponsor is not in the network."""

        self.get(partner_id)
        return self._parent_in_network(partner_id) is None

    def direct_children_of(self, partner_id: UUID) -> Set[UUID]:
        self.get(partner_id)
        return set(self._children.get(partner_id, ()))

    def ancestors_of(self, partner_id: UUID, max_depth: int) -> List[UUID]:
        """
        Walk the sponsor chain upward.

        Stops after `max_depth` hops or at a root, whichever comes first.
        The result is ordered nearest first (sponsor, sponsor's sponsor, ...)
        and never contains `partner_id` itself.

        Raises:
            CycleDetectedError: if a partner is revisited before the walk ends.
            PartnerNotFoundError: if `partner_id` is not in the network.
        """

        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        self.get(partner_id)

        path: List[UUID] = [partner_id]
        seen: Set[UUID] = {partner_id}
        current = partner_id

        while len(path) - 1 < max_depth:
            parent_id = self._parent_in_network(current)
            if parent_id is None:
                break
            if parent_id in seen:
                raise CycleDetectedError(parent_id, path + [parent_id])
            path.append(parent_id)
            seen.add(parent_id)
            current = parent_id

        return path[1:]

    def descendants_of(self, partner_id: UUID) -> List[UUID]:
        """All transitive recruits of a partner, breadth-first (cycle-safe)."""

        self.get(partner_id)
        result: List[UUID] = []
        seen: Set[UUID] = {partner_id}
        queue = deque(sorted(self._children.get(partner_id, ()), key=str))

        while queue:
            child = queue.popleft()
            if child in seen or child not in self._partners:
                continue
            seen.add(child)
            result.append(child)
            queue.extend(sorted(self._children.get(child, ()), key=str))

        return result

    # -- data quality -----------------------------------------------------

    def dangling_parent_ids(self) -> Dict[UUID, UUID]:
        """Map of partner_id -> missing sponsor id, for data-quality reporting."""

        return {
            p.partner_id: p.parent_partner_id
            for p in self._partners.values()
            if p.parent_partner_id is not None and p.parent_partner_id not in self._partners
        }

    def find_cycles(self) -> List[List[UUID]]:
        """
        Return every sponsor cycle in the network (each reported once).

        Walks each chain to its end with a bound of the network size, so it
        terminates even on corrupt data.
        """

        cycles: List[List[UUID]] = []
        reported: Set[UUID] = set()

        for partner_id in self._partners:
            if partner_id in reported:
                continue
            try:
                self.ancestors_of(partner_id, len(self._partners))
            except CycleDetectedError as exc:
                start = exc.path.index(exc.partner_id)
                loop = exc.path[start:-1]
                if not reported.intersection(loop):
                    cycles.append(loop)
                reported.update(loop)

        return cycles

    # -- reporting --------------------------------------------------------

    def referral_tree(
        self,
        root_partner_id: Optional[UUID] = None,
        deal_counts: Optional[Mapping[UUID, int]] = None,
    ) -> List[ReferralTreeNode]:
        """
        Build referral tree(s) with derived counts.

        With `root_partner_id`, returns a single-element list for that subtree;
        otherwise returns one tree per root of the forest. `deal_counts` maps a
        partner id to the number of deals it owns directly and feeds
        `total_referrals` (self + all descendants).
        """

        counts = deal_counts or {}

        if root_partner_id is not None:
            self.get(root_partner_id)
            roots = [root_partner_id]
        else:
            roots = sorted(
                (pid for pid in self._partners if self._parent_in_network(pid) is None),
                key=lambda pid: (self._partners[pid].created_at, str(pid)),
            )

        return [self._build_node(pid, 0, counts, set()) for pid in roots]

    def _build_node(
        self,
        partner_id: UUID,
        depth: int,
        counts: Mapping[UUID, int],
        seen: Set[UUID],
    ) -> ReferralTreeNode:
        seen.add(partner_id)
        child_ids = sorted(
            (c for c in self._children.get(partner_id, ()) if c in self._partners and c not in seen),
            key=lambda pid: (self._partners[pid].created_at, str(pid)),
        )
        children = tuple(self._build_node(c, depth + 1, counts, seen) for c in child_ids)

        return ReferralTreeNode(
            partner=self._partners[partner_id],
            depth=depth,
            direct_recruits=len(children),
            total_downline=sum(1 + c.total_downline for c in children),
            total_referrals=counts.get(partner_id, 0) + sum(c.total_referrals for c in children),
            children=children,
        )


def generate_referral_code(first_name: str, last_name: str, existing_codes: Iterable[str]) -> str:
    """
    Generate a short referral code from initials plus a sequence number.

    Example: Dana Smith -> "ds001", the next Dana Smith -> "ds002".
    Missing names fall back to "x".
    """

    first_initial = (first_name.strip()[:1] or "x").lower()
    last_initial = (last_name.strip()[:1] or "x").lower()
    prefix = f"{first_initial}{last_initial}"

    taken = {code.lower() for code in existing_codes}
    number = sum(1 for code in taken if code.startswith(prefix)) + 1
    code = f"{prefix}{number:03d}"
    while code in taken:
        number += 1
        code = f"{prefix}{number:03d}"
    return code


__all__ = [
    "SignupSource",
    "Partner",
    "ReferralTreeNode",
    "ReferralGraph",
    "generate_referral_code",
]
