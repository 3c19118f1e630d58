"""
Invoices API Endpoints.

Endpoints for invoicing commission records and marking invoices paid.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from api.dependencies import get_store
from api.errors import to_http_exception
from api.models import (
    CommissionRecordResponse,
    InvoiceCreateRequest,
    InvoiceDetailResponse,
    InvoiceResponse,
    PaymentRequest,
    PaymentResponse,
)
from repositories.base import NetworkStore
from services import ledger_service

router = APIRouter()


@router.post(
    "/invoices",
    response_model=InvoiceDetailResponse,
    status_code=201,
    summary="Create Invoice",
    description="Invoice a partner's payable commission records. All-or-nothing: "
                "if any record is not payable, nothing is invoiced."
)
def create_invoice(request: InvoiceCreateRequest, store: NetworkStore = Depends(get_store)):
    try:
        outcome = ledger_service.create_invoice_for_partner(store, request.partner_id, request.commission_ids)
        return InvoiceDetailResponse(
            invoice=InvoiceResponse.from_domain(outcome.invoice),
            commissions=[CommissionRecordResponse.from_domain(r) for r in outcome.commissions],
        )
    except Exception as e:
        raise to_http_exception(e, "create invoice") from e


@router.get(
    "/invoices/{invoice_id}",
    response_model=InvoiceDetailResponse,
    summary="Get Invoice"
)
def get_invoice(invoice_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        invoice = ledger_service.get_invoice(store, invoice_id)
        return InvoiceDetailResponse(
            invoice=InvoiceResponse.from_domain(invoice),
            commissions=[
                CommissionRecordResponse.from_domain(r)
                for r in store.list_commissions_for_invoice(invoice_id)
            ],
        )
    except Exception as e:
        raise to_http_exception(e, "get invoice") from e


@router.post(
    "/invoices/{invoice_id}/payment",
    response_model=PaymentResponse,
    summary="Mark Invoice Paid",
    description="Mark an invoice and its commission records as paid. Safe to repeat: "
                "a second call returns the stored payment with changed=false."
)
def mark_invoice_paid(invoice_id: UUID, request: PaymentRequest, store: NetworkStore = Depends(get_store)):
    """
    **Example request:**
    ```json
    {"payment_reference": "BACS-2025-0142", "notes": "February payout"}
    ```
    """
    try:
        outcome = ledger_service.mark_invoice_paid(store, invoice_id, request.payment_reference, request.notes)
        return PaymentResponse(
            invoice=InvoiceResponse.from_domain(outcome.invoice),
            commissions=[CommissionRecordResponse.from_domain(r) for r in outcome.commissions],
            changed=outcome.changed,
        )
    except Exception as e:
        raise to_http_exception(e, "mark invoice paid") from e
