"""
Domain: Ledger / Reconciliation for commission records.

Contract excerpts implemented here:
- Commission records move payable -> invoiced -> paid.
- Invoicing is all-or-nothing: if any target record is not payable, nothing
  is invoiced (InvalidStateError).
- Paying an invoice moves every invoiced record under it to paid. Paying the
  same invoice again after success is a no-op, not an error, so the admin
  "mark as paid" action is safe to repeat under network retry. A commission
  is paid at most once.

Invoices follow the partner invoice workflow: one invoice per partner,
numbered INV-YYYY-NNNN, carrying the sum of its commission records.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from .commission import CommissionRecord, CommissionStatus
from .errors import InvalidStateError
from .time import require_utc_timestamp

_INVOICE_NUMBER = re.compile(r"^INV-(\d{4})-(\d{4,})$")


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


@dataclass(frozen=True, slots=True)
class Invoice:
    """A partner's invoice covering one or more commission records."""

    invoice_id: UUID
    invoice_number: str
    partner_id: UUID
    amount: Decimal
    created_at: datetime
    commission_ids: Tuple[UUID, ...]
    currency: str = "GBP"
    status: InvoiceStatus = InvoiceStatus.PENDING
    payment_reference: Optional[str] = None
    admin_notes: Optional[str] = None
    paid_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.paid_at is not None:
            require_utc_timestamp("paid_at", self.paid_at)
        if not _INVOICE_NUMBER.match(self.invoice_number):
            raise ValueError(f"Invalid invoice number: {self.invoice_number!r}")

    @property
    def is_paid(self) -> bool:
        return self.status is InvoiceStatus.PAID

    def paid(self, payment_reference: str, notes: Optional[str], at: datetime) -> "Invoice":
        """Mark paid. An already-paid invoice is returned unchanged (first payment wins)."""

        if self.is_paid:
            return self
        if not payment_reference.strip():
            raise ValueError("payment_reference must not be empty")
        require_utc_timestamp("paid_at", at)
        return replace(
            self,
            status=InvoiceStatus.PAID,
            payment_reference=payment_reference.strip(),
            admin_notes=notes,
            paid_at=at,
        )


def next_invoice_number(year: int, existing_numbers: Iterable[str]) -> str:
    """Next sequential invoice number for `year`, e.g. INV-2025-0007."""

    highest = 0
    for number in existing_numbers:
        match = _INVOICE_NUMBER.match(number)
        if match and int(match.group(1)) == year:
            highest = max(highest, int(match.group(2)))
    return f"INV-{year}-{highest + 1:04d}"


def build_invoice(
    partner_id: UUID,
    records: Sequence[CommissionRecord],
    invoice_number: str,
    now: datetime,
    invoice_id: Optional[UUID] = None,
) -> Invoice:
    """
    Assemble an invoice for a partner's commission records.

    Raises:
        ValueError: if no records are given, a record belongs to another
            beneficiary, or records mix currencies.
    """

    if not records:
        raise ValueError("An invoice needs at least one commission record")

    foreign = [r.commission_id for r in records if r.beneficiary_partner_id != partner_id]
    if foreign:
        raise ValueError(f"Commission records do not belong to partner {partner_id}: {foreign}")

    currencies = {r.currency for r in records}
    if len(currencies) != 1:
        raise ValueError(f"Commission records mix currencies: {sorted(currencies)}")

    return Invoice(
        invoice_id=invoice_id or uuid4(),
        invoice_number=invoice_number,
        partner_id=partner_id,
        amount=sum((r.amount for r in records), Decimal("0.00")),
        currency=currencies.pop(),
        created_at=now,
        commission_ids=tuple(r.commission_id for r in records),
    )


def mark_invoiced(records: Sequence[CommissionRecord], invoice_id: UUID, now: datetime) -> List[CommissionRecord]:
    """
    Move payable records to invoiced under `invoice_id`.

    Raises:
        InvalidStateError: if any record is not payable; no record is changed.
    """

    if not records:
        raise ValueError("No commission records to invoice")
    return [record.invoiced(invoice_id, now) for record in records]


def mark_paid(
    records: Sequence[CommissionRecord],
    payment_reference: str,
    now: datetime,
) -> Tuple[List[CommissionRecord], bool]:
    """
    Move all invoiced records of one invoice to paid.

    Voided records (deal declined after invoicing) are left as they are.

    Returns:
        (records, changed). `changed` is False when every live record was
        already paid, i.e. the call was a repeat.

    Raises:
        InvalidStateError: if a live record is neither invoiced nor paid, or
            every record under the invoice has been voided.
    """

    live = [r for r in records if not r.is_voided]
    if records and not live:
        raise InvalidStateError(
            records[0].commission_id, CommissionStatus.VOIDED.value, CommissionStatus.INVOICED.value
        )

    for record in live:
        if record.status not in (CommissionStatus.INVOICED, CommissionStatus.PAID):
            raise InvalidStateError(record.commission_id, record.status.value, CommissionStatus.INVOICED.value)

    if all(r.status is CommissionStatus.PAID for r in live):
        return live, False

    updated = [
        r.paid(payment_reference, now) if r.status is CommissionStatus.INVOICED else r
        for r in live
    ]
    return updated, True


@dataclass(frozen=True, slots=True)
class CommissionSummary:
    """Per-status counts and totals for one partner."""

    partner_id: UUID
    counts: Dict[CommissionStatus, int]
    totals: Dict[CommissionStatus, Decimal]

    @property
    def outstanding(self) -> Decimal:
        return self.totals[CommissionStatus.PAYABLE] + self.totals[CommissionStatus.INVOICED]

    @property
    def earned(self) -> Decimal:
        return self.totals[CommissionStatus.PAID]


def summarize(partner_id: UUID, records: Iterable[CommissionRecord]) -> CommissionSummary:
    counts = {status: 0 for status in CommissionStatus}
    totals = {status: Decimal("0.00") for status in CommissionStatus}
    for record in records:
        if record.beneficiary_partner_id != partner_id:
            continue
        counts[record.status] += 1
        totals[record.status] += record.amount
    return CommissionSummary(partner_id=partner_id, counts=counts, totals=totals)


__all__ = [
    "InvoiceStatus",
    "Invoice",
    "next_invoice_number",
    "build_invoice",
    "mark_invoiced",
    "mark_paid",
    "CommissionSummary",
    "summarize",
]
