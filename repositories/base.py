"""
Store contract shared by every persistence backend.

Services depend only on this protocol; the backend is chosen at wiring time
(in-memory for tests and local runs, Supabase in production).

Consistency guarantees every implementation must provide:
- save_transition is a compare-and-set on the deal's version; the deal row and
  its StageTransitionEvent are written together or not at all. A stale
  expected_version raises ConcurrentTransitionError.
- add_commission_records commits all given records or none, and silently
  skips any record whose (deal_id, level) already has a non-voided record.
  It re-checks the deal under the same lock a stage write takes: if the deal
  has left its qualifying stage, or was declined after the triggering event,
  nothing is written and EventNotAttributableError is raised.
- void_pending_commissions takes that deal lock too, so a decline and a
  commission commit for the same deal never interleave.
- record_actual_commission refuses once the deal has non-voided records.
- create_invoice, pay_invoice and void_pending_commissions are single atomic
  operations.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable
from uuid import UUID

from domain.commission import CommissionRecord
from domain.deal import Deal, StageTransitionEvent
from domain.ledger import Invoice
from domain.partner import Partner


@runtime_checkable
class NetworkStore(Protocol):
    # Deals
    def add_deal(self, deal: Deal) -> Deal: ...

    def get_deal(self, deal_id: UUID) -> Optional[Deal]: ...

    def list_deals(self, owner_partner_id: Optional[UUID] = None) -> List[Deal]: ...

    def save_transition(self, deal: Deal, event: StageTransitionEvent, expected_version: int) -> None: ...

    def record_signup_completed(self, deal_id: UUID, at: datetime) -> Deal: ...

    def record_actual_commission(self, deal_id: UUID, amount: Decimal, at: datetime) -> Deal: ...

    def list_events(self, deal_id: UUID) -> List[StageTransitionEvent]: ...

    # Partners
    def add_partner(self, partner: Partner) -> Partner: ...

    def get_partner(self, partner_id: UUID) -> Optional[Partner]: ...

    def get_partner_by_code(self, referral_code: str) -> Optional[Partner]: ...

    def list_partners(self) -> List[Partner]: ...

    # Commissions
    def add_commission_records(
        self, event: StageTransitionEvent, records: Sequence[CommissionRecord]
    ) -> List[CommissionRecord]: ...

    def list_commissions_for_deal(self, deal_id: UUID) -> List[CommissionRecord]: ...

    def list_commissions_for_partner(self, partner_id: UUID) -> List[CommissionRecord]: ...

    def list_commissions_for_invoice(self, invoice_id: UUID) -> List[CommissionRecord]: ...

    def void_pending_commissions(self, deal_id: UUID, at: datetime) -> List[CommissionRecord]: ...

    # Invoices
    def create_invoice(
        self, partner_id: UUID, commission_ids: Sequence[UUID], at: datetime
    ) -> Tuple[Invoice, List[CommissionRecord]]: ...

    def get_invoice(self, invoice_id: UUID) -> Optional[Invoice]: ...

    def pay_invoice(
        self, invoice_id: UUID, payment_reference: str, notes: Optional[str], at: datetime
    ) -> Tuple[Invoice, List[CommissionRecord], bool]: ...


__all__ = ["NetworkStore"]
