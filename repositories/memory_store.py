"""
In-memory NetworkStore.

Used by the test-suite and for local development (PARTNER_STORE_BACKEND=memory).
It enforces the same consistency guarantees as the Postgres schema:

- one lock per deal serializes stage writers, and the version check turns a
  lost race into ConcurrentTransitionError instead of an overwrite;
- one ledger lock makes commission inserts, voids, invoicing and payment
  atomic;
- commission inserts and voids take the deal lock first, then the ledger
  lock, so they never interleave with a stage write on the same deal;
- lock acquisition is bounded, so no call blocks indefinitely.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from domain.commission import CommissionRecord, is_attributable, void_pending
from domain.deal import Deal, StageTransitionEvent
from domain.errors import (
    CommissionNotFoundError,
    ConcurrentTransitionError,
    DealNotFoundError,
    EventNotAttributableError,
    InvoiceNotFoundError,
    ReparentingError,
)
from domain.ledger import Invoice, build_invoice, mark_invoiced, mark_paid, next_invoice_number
from domain.partner import Partner

logger = logging.getLogger(__name__)


class InMemoryNetworkStore:
    """Thread-safe in-memory implementation of NetworkStore."""

    def __init__(self, lock_timeout: float = 5.0):
        self._lock_timeout = lock_timeout

        self._deals: Dict[UUID, Deal] = {}
        self._events: Dict[UUID, List[StageTransitionEvent]] = {}
        self._deal_locks: Dict[UUID, threading.Lock] = {}
        self._registry_lock = threading.Lock()

        self._partners: Dict[UUID, Partner] = {}
        self._partner_codes: Dict[str, UUID] = {}
        self._partner_lock = threading.Lock()

        self._commissions: Dict[UUID, CommissionRecord] = {}
        self._invoices: Dict[UUID, Invoice] = {}
        self._ledger_lock = threading.RLock()

    # -- locking ------------------------------------------------------------

    def _deal_lock(self, deal_id: UUID) -> threading.Lock:
        with self._registry_lock:
            return self._deal_locks.setdefault(deal_id, threading.Lock())

    @contextmanager
    def _hold(self, lock, what: str) -> Iterator[None]:
        if not lock.acquire(timeout=self._lock_timeout):
            raise TimeoutError(f"Timed out after {self._lock_timeout}s waiting for {what}")
        try:
            yield
        finally:
            lock.release()

    # -- deals --------------------------------------------------------------

    def add_deal(self, deal: Deal) -> Deal:
        with self._hold(self._deal_lock(deal.deal_id), f"deal {deal.deal_id}"):
            if deal.deal_id in self._deals:
                raise ValueError(f"Deal {deal.deal_id} already exists")
            self._deals[deal.deal_id] = deal
            self._events[deal.deal_id] = []
        return deal

    def get_deal(self, deal_id: UUID) -> Optional[Deal]:
        return self._deals.get(deal_id)

    def list_deals(self, owner_partner_id: Optional[UUID] = None) -> List[Deal]:
        deals = list(self._deals.values())
        if owner_partner_id is not None:
            deals = [d for d in deals if d.owner_partner_id == owner_partner_id]
        return sorted(deals, key=lambda d: d.created_at)

    def save_transition(self, deal: Deal, event: StageTransitionEvent, expected_version: int) -> None:
        if event.deal_id != deal.deal_id or event.sequence != deal.version:
            raise ValueError("event does not match the transitioned deal")

        lock = self._deal_lock(deal.deal_id)
        if not lock.acquire(timeout=self._lock_timeout):
            raise ConcurrentTransitionError(deal.deal_id, expected_version)
        try:
            current = self._deals.get(deal.deal_id)
            if current is None:
                raise DealNotFoundError(f"Deal not found: {deal.deal_id}")
            if current.version != expected_version:
                raise ConcurrentTransitionError(deal.deal_id, expected_version, current.version)
            self._deals[deal.deal_id] = deal
            self._events[deal.deal_id].append(event)
        finally:
            lock.release()

    def record_signup_completed(self, deal_id: UUID, at: datetime) -> Deal:
        with self._hold(self._deal_lock(deal_id), f"deal {deal_id}"):
            current = self._deals.get(deal_id)
            if current is None:
                raise DealNotFoundError(f"Deal not found: {deal_id}")
            updated = current.signup_completed(at)
            self._deals[deal_id] = updated
            return updated

    def record_actual_commission(self, deal_id: UUID, amount: Decimal, at: datetime) -> Deal:
        with self._hold(self._deal_lock(deal_id), f"deal {deal_id}"):
            current = self._deals.get(deal_id)
            if current is None:
                raise DealNotFoundError(f"Deal not found: {deal_id}")
            with self._hold(self._ledger_lock, "commission ledger"):
                if any(r.deal_id == deal_id and not r.is_voided for r in self._commissions.values()):
                    raise ValueError(
                        f"Deal {deal_id} already has commission records; "
                        f"its actual commission can no longer change"
                    )
                updated = current.with_actual_commission(amount, at)
                self._deals[deal_id] = updated
                return updated

    def list_events(self, deal_id: UUID) -> List[StageTransitionEvent]:
        return list(self._events.get(deal_id, ()))

    # -- partners -----------------------------------------------------------

    def add_partner(self, partner: Partner) -> Partner:
        with self._hold(self._partner_lock, "partner registry"):
            existing = self._partners.get(partner.partner_id)
            if existing is not None:
                if existing.parent_partner_id != partner.parent_partner_id:
                    raise ReparentingError(
                        f"Partner {partner.partner_id} already has sponsor "
                        f"{existing.parent_partner_id}; sponsors are immutable"
                    )
                raise ValueError(f"Partner {partner.partner_id} already exists")
            code = partner.referral_code.lower()
            if code in self._partner_codes:
                raise ValueError(f"Referral code '{partner.referral_code}' is already in use")
            self._partners[partner.partner_id] = partner
            self._partner_codes[code] = partner.partner_id
        return partner

    def get_partner(self, partner_id: UUID) -> Optional[Partner]:
        return self._partners.get(partner_id)

    def get_partner_by_code(self, referral_code: str) -> Optional[Partner]:
        partner_id = self._partner_codes.get(referral_code.strip().lower())
        return self._partners.get(partner_id) if partner_id is not None else None

    def list_partners(self) -> List[Partner]:
        return sorted(self._partners.values(), key=lambda p: p.created_at)

    # -- commissions --------------------------------------------------------

    def add_commission_records(
        self, event: StageTransitionEvent, records: Sequence[CommissionRecord]
    ) -> List[CommissionRecord]:
        deal_id = event.deal_id
        if any(r.deal_id != deal_id for r in records):
            raise ValueError("commission records must belong to the event's deal")

        with self._hold(self._deal_lock(deal_id), f"deal {deal_id}"):
            current = self._deals.get(deal_id)
            if current is None:
                raise DealNotFoundError(f"Deal not found: {deal_id}")
            if not is_attributable(current, event, self._events[deal_id]):
                raise EventNotAttributableError(deal_id, event.sequence, current.stage.value)

            with self._hold(self._ledger_lock, "commission ledger"):
                taken: Set[Tuple[UUID, int]] = {
                    (r.deal_id, r.level) for r in self._commissions.values() if not r.is_voided
                }
                created: List[CommissionRecord] = []
                for record in records:
                    key = (record.deal_id, record.level)
                    if key in taken:
                        logger.info(
                            "Skipping duplicate commission record",
                            extra={"deal_id": str(record.deal_id), "level": record.level},
                        )
                        continue
                    taken.add(key)
                    created.append(record)
                for record in created:
                    self._commissions[record.commission_id] = record
                return created

    def list_commissions_for_deal(self, deal_id: UUID) -> List[CommissionRecord]:
        return sorted(
            (r for r in self._commissions.values() if r.deal_id == deal_id),
            key=lambda r: (r.created_at, r.level),
        )

    def list_commissions_for_partner(self, partner_id: UUID) -> List[CommissionRecord]:
        return sorted(
            (r for r in self._commissions.values() if r.beneficiary_partner_id == partner_id),
            key=lambda r: (r.created_at, r.level),
        )

    def list_commissions_for_invoice(self, invoice_id: UUID) -> List[CommissionRecord]:
        return sorted(
            (r for r in self._commissions.values() if r.invoice_id == invoice_id),
            key=lambda r: (r.created_at, r.level),
        )

    def void_pending_commissions(self, deal_id: UUID, at: datetime) -> List[CommissionRecord]:
        with self._hold(self._deal_lock(deal_id), f"deal {deal_id}"):
            with self._hold(self._ledger_lock, "commission ledger"):
                voided = void_pending(self._commissions.values(), deal_id, at)
                for record in voided:
                    self._commissions[record.commission_id] = record
                return voided

    # -- invoices -----------------------------------------------------------

    def create_invoice(
        self, partner_id: UUID, commission_ids: Sequence[UUID], at: datetime
    ) -> Tuple[Invoice, List[CommissionRecord]]:
        with self._hold(self._ledger_lock, "commission ledger"):
            unique_ids = list(dict.fromkeys(commission_ids))
            missing = [cid for cid in unique_ids if cid not in self._commissions]
            if missing:
                raise CommissionNotFoundError(f"Commission records not found: {missing}")

            records = [self._commissions[cid] for cid in unique_ids]
            number = next_invoice_number(at.year, (i.invoice_number for i in self._invoices.values()))
            invoice = build_invoice(partner_id, records, number, at)
            invoiced = mark_invoiced(records, invoice.invoice_id, at)

            self._invoices[invoice.invoice_id] = invoice
            for record in invoiced:
                self._commissions[record.commission_id] = record
            return invoice, invoiced

    def get_invoice(self, invoice_id: UUID) -> Optional[Invoice]:
        return self._invoices.get(invoice_id)

    def pay_invoice(
        self, invoice_id: UUID, payment_reference: str, notes: Optional[str], at: datetime
    ) -> Tuple[Invoice, List[CommissionRecord], bool]:
        with self._hold(self._ledger_lock, "commission ledger"):
            invoice = self._invoices.get(invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(f"Invoice not found: {invoice_id}")

            records, changed = mark_paid(self.list_commissions_for_invoice(invoice_id), payment_reference, at)
            if invoice.is_paid and not changed:
                return invoice, records, False

            paid_invoice = invoice.paid(payment_reference, notes, at)
            self._invoices[invoice_id] = paid_invoice
            for record in records:
                self._commissions[record.commission_id] = record
            return paid_invoice, records, True


__all__ = ["InMemoryNetworkStore"]
