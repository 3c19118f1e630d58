"""
Domain: error taxonomy for the deal lifecycle and commission core.

None of these errors are retried inside the core. Retry, backoff and conflict
surfacing belong to the caller (API layer, offline-sync client).
"""

from __future__ import annotations

from typing import Optional, Sequence
from uuid import UUID


class PartnerNetworkError(Exception):
    """Base class for every error raised by the core."""


class InvalidTransitionError(PartnerNetworkError):
    """Raised when a requested stage change is not in the allowed-successor set."""

    def __init__(self, current_stage: str, attempted_stage: str, deal_id: Optional[UUID] = None):
        self.current_stage = current_stage
        self.attempted_stage = attempted_stage
        self.deal_id = deal_id
        super().__init__(
            f"Cannot move deal from '{current_stage}' to '{attempted_stage}'"
        )


class ConcurrentTransitionError(PartnerNetworkError):
    """Raised when another writer changed the deal between read and write."""

    def __init__(self, deal_id: UUID, expected_version: int, actual_version: Optional[int] = None):
        self.deal_id = deal_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Deal {deal_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class CycleDetectedError(PartnerNetworkError):
    """
    Raised when walking a sponsor chain revisits a partner.

    This is a data-integrity fault: it must be surfaced as an alert and never
    silently tolerated or blindly retried.
    """

    def __init__(self, partner_id: UUID, path: Sequence[UUID]):
        self.partner_id = partner_id
        self.path = list(path)
        super().__init__(
            f"Referral cycle detected at partner {partner_id} "
            f"(path: {' -> '.join(str(p) for p in self.path)})"
        )


class ReparentingError(PartnerNetworkError):
    """Raised when a partner's sponsor would be changed after recruitment."""


class PolicyNotFoundError(PartnerNetworkError):
    """Raised when no commission policy entry exists for a (product_type, level) pair."""

    def __init__(self, product_type: str, level: int):
        self.product_type = product_type
        self.level = level
        super().__init__(f"No commission policy for {product_type} at level {level}")


class CommissionBaseMissingError(PartnerNetworkError):
    """Raised when a rate-based level needs the deal's actual commission and none is set."""

    def __init__(self, deal_id: UUID, product_type: str, level: int):
        self.deal_id = deal_id
        self.product_type = product_type
        self.level = level
        super().__init__(
            f"Deal {deal_id} has no actual commission set; level {level} of {product_type} "
            f"is rate-based and cannot be attributed yet"
        )


class EventNotAttributableError(PartnerNetworkError):
    """
    Raised when commissions are committed for an event the deal has moved past.

    The deal must currently sit in a commission-qualifying stage, and no
    `declined` event may follow the triggering event.
    """

    def __init__(self, deal_id: UUID, event_sequence: int, current_stage: str):
        self.deal_id = deal_id
        self.event_sequence = event_sequence
        self.current_stage = current_stage
        super().__init__(
            f"Stage event {event_sequence} of deal {deal_id} no longer qualifies "
            f"for commission (deal is '{current_stage}')"
        )


class InvalidStateError(PartnerNetworkError):
    """Raised when a ledger transition is attempted from a non-eligible status."""

    def __init__(self, commission_id: UUID, status: str, expected: str):
        self.commission_id = commission_id
        self.status = status
        self.expected = expected
        super().__init__(
            f"Commission {commission_id} is '{status}', expected '{expected}'"
        )


class NotFoundError(PartnerNetworkError, LookupError):
    """Base class for missing aggregates."""


class DealNotFoundError(NotFoundError):
    pass


class PartnerNotFoundError(NotFoundError):
    pass


class InvoiceNotFoundError(NotFoundError):
    pass


class CommissionNotFoundError(NotFoundError):
    pass


__all__ = [
    "PartnerNetworkError",
    "InvalidTransitionError",
    "ConcurrentTransitionError",
    "CycleDetectedError",
    "ReparentingError",
    "PolicyNotFoundError",
    "CommissionBaseMissingError",
    "EventNotAttributableError",
    "InvalidStateError",
    "NotFoundError",
    "DealNotFoundError",
    "PartnerNotFoundError",
    "InvoiceNotFoundError",
    "CommissionNotFoundError",
]
