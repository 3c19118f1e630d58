"""
Ledger service: invoicing and payment of commission records.

Handles:
- Invoice creation for a partner's payable records (all-or-nothing)
- Idempotent invoice payment (repeat "mark as paid" is absorbed)
- Partner commission listings and per-status summaries
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from domain.commission import CommissionRecord, CommissionStatus
from domain.errors import InvoiceNotFoundError, PartnerNotFoundError
from domain.ledger import CommissionSummary, Invoice, summarize
from domain.time import utc_now
from repositories.base import NetworkStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InvoiceOutcome:
    invoice: Invoice
    commissions: Tuple[CommissionRecord, ...]


@dataclass(frozen=True, slots=True)
class PaymentOutcome:
    """
    Result of marking an invoice paid.

    commissions: paid records under the invoice; voided records are omitted
    changed: False when the invoice had already been paid (repeat call)
    """
    invoice: Invoice
    commissions: Tuple[CommissionRecord, ...]
    changed: bool


def _require_partner(store: NetworkStore, partner_id: UUID) -> None:
    if store.get_partner(partner_id) is None:
        raise PartnerNotFoundError(f"Partner not found: {partner_id}")


def get_commissions_for_partner(
    store: NetworkStore,
    partner_id: UUID,
    status: Optional[CommissionStatus] = None,
) -> List[CommissionRecord]:
    """
    Commission records where the partner is the beneficiary.

    Raises:
        PartnerNotFoundError: If the partner does not exist
    """

    _require_partner(store, partner_id)
    records = store.list_commissions_for_partner(partner_id)
    if status is not None:
        records = [r for r in records if r.status is CommissionStatus(status)]
    return records


def get_commission_summary(store: NetworkStore, partner_id: UUID) -> CommissionSummary:
    _require_partner(store, partner_id)
    return summarize(partner_id, store.list_commissions_for_partner(partner_id))


def create_invoice_for_partner(
    store: NetworkStore,
    partner_id: UUID,
    commission_ids: Optional[Sequence[UUID]] = None,
    now: Optional[datetime] = None,
) -> InvoiceOutcome:
    """
    Invoice a partner's commission records.

    Args:
        store: Persistence backend
        partner_id: Invoicing partner (must be the beneficiary of every record)
        commission_ids: Records to invoice. Defaults to every payable record
            of the partner.

    Returns:
        InvoiceOutcome with the new invoice and its now-invoiced records

    Raises:
        PartnerNotFoundError: If the partner does not exist
        CommissionNotFoundError: If a commission id is unknown
        InvalidStateError: If any record is not payable (nothing is invoiced)
        ValueError: If there is nothing to invoice, or a record belongs to
            another partner
    """

    _require_partner(store, partner_id)

    if commission_ids is None:
        commission_ids = [
            r.commission_id
            for r in store.list_commissions_for_partner(partner_id)
            if r.status is CommissionStatus.PAYABLE
        ]
    if not commission_ids:
        raise ValueError(f"Partner {partner_id} has no payable commission records to invoice")

    invoice, records = store.create_invoice(partner_id, commission_ids, now or utc_now())

    logger.info(
        f"Invoice {invoice.invoice_number} created for {len(records)} commission record(s)",
        extra={
            "invoice_id": str(invoice.invoice_id),
            "invoice_number": invoice.invoice_number,
            "partner_id": str(partner_id),
            "amount": str(invoice.amount),
        },
    )
    return InvoiceOutcome(invoice=invoice, commissions=tuple(records))


def get_invoice(store: NetworkStore, invoice_id: UUID) -> Invoice:
    invoice = store.get_invoice(invoice_id)
    if invoice is None:
        raise InvoiceNotFoundError(f"Invoice not found: {invoice_id}")
    return invoice


def mark_invoice_paid(
    store: NetworkStore,
    invoice_id: UUID,
    payment_reference: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentOutcome:
    """
    Mark an invoice and all of its invoiced commission records as paid.

    Idempotent: paying an already-paid invoice returns the stored result
    (first payment reference kept) with `changed=False`.

    Records voided after invoicing (their deal was declined) stay voided and
    are omitted from the returned `commissions`, so the outcome lists only the
    records that were actually paid.

    Raises:
        ValueError: If the payment reference is empty
        InvoiceNotFoundError: If the invoice does not exist
        InvalidStateError: If a record under the invoice cannot be paid
    """

    if not payment_reference or not payment_reference.strip():
        raise ValueError("payment_reference must not be empty")

    invoice, records, changed = store.pay_invoice(invoice_id, payment_reference.strip(), notes, now or utc_now())

    if changed:
        logger.info(
            f"Invoice {invoice.invoice_number} marked paid",
            extra={
                "invoice_id": str(invoice_id),
                "payment_reference": invoice.payment_reference,
                "commission_ids": [str(r.commission_id) for r in records],
            },
        )
    else:
        logger.info(
            f"Invoice {invoice.invoice_number} was already paid; repeat payment ignored",
            extra={
                "invoice_id": str(invoice_id),
                "payment_reference": invoice.payment_reference,
                "repeat_reference": payment_reference.strip(),
            },
        )
    return PaymentOutcome(invoice=invoice, commissions=tuple(records), changed=changed)


__all__ = [
    "InvoiceOutcome",
    "PaymentOutcome",
    "get_commissions_for_partner",
    "get_commission_summary",
    "create_invoice_for_partner",
    "get_invoice",
    "mark_invoice_paid",
]
