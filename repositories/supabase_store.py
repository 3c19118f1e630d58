"""
Supabase (PostgREST) NetworkStore.

Persistence for deals, stage events, partners, commission records and
invoices. Multi-row invariants are enforced in Postgres (see sql/schema.sql):

- apply_deal_transition(): version-guarded deal update + event insert in one
  transaction (single writer per deal).
- insert_commission_records(): locks the deal row, re-checks that the
  triggering event still qualifies, then inserts every level in one
  statement. The partial unique index commission_records_active_level_uq on
  (deal_id, level) WHERE status <> 'voided' absorbs redelivered levels.
- void_deal_commissions() takes the same deal row lock;
  create_partner_invoice() and mark_invoice_paid() are atomic ledger
  operations.
- set_deal_actual_commission(): locked update refused once the deal has
  non-voided records.

Row mapping helpers are module-level functions so they can be tested without
a database.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from postgrest.exceptions import APIError

from domain.commission import CommissionRecord, CommissionStatus
from domain.deal import Deal, ProductType, StageTransitionEvent
from domain.errors import (
    CommissionNotFoundError,
    ConcurrentTransitionError,
    DealNotFoundError,
    EventNotAttributableError,
    InvalidStateError,
    InvoiceNotFoundError,
    ReparentingError,
)
from domain.ledger import Invoice, InvoiceStatus
from domain.partner import Partner, SignupSource
from domain.stage import DealStage, Role
from domain.time import parse_optional_utc, parse_utc_datetime, to_iso_utc
from repositories.client import get_supabase

logger = logging.getLogger(__name__)

# Supabase table names. Keep these aligned with sql/schema.sql.
_DEALS_TABLE: str = "deals"
_EVENTS_TABLE: str = "deal_stage_events"
_PARTNERS_TABLE: str = "partners"
_COMMISSIONS_TABLE: str = "commission_records"
_INVOICES_TABLE: str = "invoices"

_UNIQUE_VIOLATION = "23505"


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def _optional_uuid(value: Any) -> Optional[UUID]:
    return None if value is None else UUID(str(value))


def _optional_iso(dt: Optional[datetime], name: str) -> Optional[str]:
    return None if dt is None else to_iso_utc(dt, name=name)


# ---------------------------------------------------------------------------
# Row <-> domain mapping
# ---------------------------------------------------------------------------

def deal_to_row(deal: Deal) -> Dict[str, Any]:
    return {
        "deal_id": str(deal.deal_id),
        "owner_partner_id": str(deal.owner_partner_id),
        "product_type": deal.product_type.value,
        "business_name": deal.business_name,
        "stage": deal.stage.value,
        "version": deal.version,
        "total_amount": None if deal.total_amount is None else str(deal.total_amount),
        "estimated_monthly_saving": (
            None if deal.estimated_monthly_saving is None else str(deal.estimated_monthly_saving)
        ),
        "actual_commission": None if deal.actual_commission is None else str(deal.actual_commission),
        "signup_completed_at_utc": _optional_iso(deal.signup_completed_at, "signup_completed_at"),
        "currency": deal.currency,
        "created_at_utc": to_iso_utc(deal.created_at, name="created_at"),
        "updated_at_utc": to_iso_utc(deal.updated_at, name="updated_at"),
    }


def row_to_deal(row: Mapping[str, Any]) -> Deal:
    return Deal(
        deal_id=UUID(str(row["deal_id"])),
        owner_partner_id=UUID(str(row["owner_partner_id"])),
        product_type=ProductType(str(row["product_type"])),
        business_name=str(row["business_name"]),
        stage=DealStage(str(row["stage"])),
        version=int(row["version"]),
        total_amount=_optional_decimal(row.get("total_amount")),
        estimated_monthly_saving=_optional_decimal(row.get("estimated_monthly_saving")),
        actual_commission=_optional_decimal(row.get("actual_commission")),
        signup_completed_at=parse_optional_utc(row.get("signup_completed_at_utc")),
        currency=str(row.get("currency") or "GBP"),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        updated_at=parse_utc_datetime(row["updated_at_utc"]),
    )


def row_to_event(row: Mapping[str, Any]) -> StageTransitionEvent:
    return StageTransitionEvent(
        event_id=UUID(str(row["event_id"])),
        deal_id=UUID(str(row["deal_id"])),
        sequence=int(row["sequence"]),
        from_stage=DealStage(str(row["from_stage"])),
        to_stage=DealStage(str(row["to_stage"])),
        occurred_at=parse_utc_datetime(row["occurred_at_utc"]),
        acting_role=Role(str(row["acting_role"])),
    )


def partner_to_row(partner: Partner) -> Dict[str, Any]:
    return {
        "partner_id": str(partner.partner_id),
        "referral_code": partner.referral_code,
        "first_name": partner.first_name,
        "last_name": partner.last_name,
        "email": partner.email,
        "parent_partner_id": None if partner.parent_partner_id is None else str(partner.parent_partner_id),
        "signup_source": partner.signup_source.value,
        "created_at_utc": to_iso_utc(partner.created_at, name="created_at"),
    }


def row_to_partner(row: Mapping[str, Any]) -> Partner:
    return Partner(
        partner_id=UUID(str(row["partner_id"])),
        referral_code=str(row["referral_code"]),
        first_name=str(row.get("first_name") or ""),
        last_name=str(row.get("last_name") or ""),
        email=row.get("email"),
        parent_partner_id=_optional_uuid(row.get("parent_partner_id")),
        signup_source=SignupSource(str(row.get("signup_source") or "direct")),
        created_at=parse_utc_datetime(row["created_at_utc"]),
    )


def commission_to_row(record: CommissionRecord) -> Dict[str, Any]:
    return {
        "commission_id": str(record.commission_id),
        "deal_id": str(record.deal_id),
        "beneficiary_partner_id": str(record.beneficiary_partner_id),
        "level": record.level,
        "product_type": record.product_type.value,
        "rate": None if record.rate is None else str(record.rate),
        "amount": str(record.amount),
        "currency": record.currency,
        "status": record.status.value,
        "triggering_stage": record.triggering_stage.value,
        "invoice_id": None if record.invoice_id is None else str(record.invoice_id),
        "payment_reference": record.payment_reference,
        "created_at_utc": to_iso_utc(record.created_at, name="created_at"),
        "invoiced_at_utc": _optional_iso(record.invoiced_at, "invoiced_at"),
        "paid_at_utc": _optional_iso(record.paid_at, "paid_at"),
        "voided_at_utc": _optional_iso(record.voided_at, "voided_at"),
    }


def row_to_commission(row: Mapping[str, Any]) -> CommissionRecord:
    return CommissionRecord(
        commission_id=UUID(str(row["commission_id"])),
        deal_id=UUID(str(row["deal_id"])),
        beneficiary_partner_id=UUID(str(row["beneficiary_partner_id"])),
        level=int(row["level"]),
        product_type=ProductType(str(row["product_type"])),
        rate=_optional_decimal(row.get("rate")),
        amount=Decimal(str(row["amount"])),
        currency=str(row.get("currency") or "GBP"),
        status=CommissionStatus(str(row["status"])),
        triggering_stage=DealStage(str(row["triggering_stage"])),
        invoice_id=_optional_uuid(row.get("invoice_id")),
        payment_reference=row.get("payment_reference"),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        invoiced_at=parse_optional_utc(row.get("invoiced_at_utc")),
        paid_at=parse_optional_utc(row.get("paid_at_utc")),
        voided_at=parse_optional_utc(row.get("voided_at_utc")),
    )


def row_to_invoice(row: Mapping[str, Any]) -> Invoice:
    return Invoice(
        invoice_id=UUID(str(row["invoice_id"])),
        invoice_number=str(row["invoice_number"]),
        partner_id=UUID(str(row["partner_id"])),
        amount=Decimal(str(row["amount"])),
        currency=str(row.get("currency") or "GBP"),
        status=InvoiceStatus(str(row["status"])),
        commission_ids=tuple(UUID(str(c)) for c in (row.get("commission_ids") or [])),
        payment_reference=row.get("payment_reference"),
        admin_notes=row.get("admin_notes"),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        paid_at=parse_optional_utc(row.get("paid_at_utc")),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SupabaseNetworkStore:
    """NetworkStore backed by Supabase tables and Postgres functions."""

    def __init__(self, client: Any = None):
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def _rows(self, response: Any, action: str) -> List[Mapping[str, Any]]:
        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"Failed to {action}: {error}")
        return getattr(response, "data", None) or []

    def _rpc(self, function: str, params: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Call a Postgres function that returns a JSON result object.

        supabase-py may raise APIError for JSON function results, including
        successful ones, so the payload is recovered from the exception too.
        """

        try:
            response = self.client.rpc(function, dict(params)).execute()
        except APIError as exc:
            payload = exc.json() if callable(getattr(exc, "json", None)) else {}
            if isinstance(payload, dict) and "success" in payload:
                return payload
            raise RuntimeError(f"{function} failed: {exc}") from exc

        error = getattr(response, "error", None)
        if error:
            raise RuntimeError(f"{function} failed: {error}")
        return response.data or {}

    # -- deals --------------------------------------------------------------

    def add_deal(self, deal: Deal) -> Deal:
        response = self.client.table(_DEALS_TABLE).insert(deal_to_row(deal)).execute()
        self._rows(response, "create deal")
        return deal

    def get_deal(self, deal_id: UUID) -> Optional[Deal]:
        response = (
            self.client.table(_DEALS_TABLE)
            .select("*")
            .eq("deal_id", str(deal_id))
            .limit(1)
            .execute()
        )
        rows = self._rows(response, "get deal")
        return row_to_deal(rows[0]) if rows else None

    def list_deals(self, owner_partner_id: Optional[UUID] = None) -> List[Deal]:
        query = self.client.table(_DEALS_TABLE).select("*")
        if owner_partner_id is not None:
            query = query.eq("owner_partner_id", str(owner_partner_id))
        rows = self._rows(query.order("created_at_utc").execute(), "list deals")
        return [row_to_deal(row) for row in rows]

    def save_transition(self, deal: Deal, event: StageTransitionEvent, expected_version: int) -> None:
        result = self._rpc(
            "apply_deal_transition",
            {
                "p_deal_id": str(deal.deal_id),
                "p_expected_version": expected_version,
                "p_from_stage": event.from_stage.value,
                "p_to_stage": event.to_stage.value,
                "p_event_id": str(event.event_id),
                "p_acting_role": event.acting_role.value,
                "p_occurred_at": to_iso_utc(event.occurred_at, name="occurred_at"),
            },
        )
        if result.get("success"):
            return

        code = result.get("error")
        if code == "VERSION_CONFLICT":
            raise ConcurrentTransitionError(deal.deal_id, expected_version, result.get("current_version"))
        if code == "DEAL_NOT_FOUND":
            raise DealNotFoundError(f"Deal not found: {deal.deal_id}")
        raise RuntimeError(f"apply_deal_transition failed: {code} {result.get('message')}")

    def record_signup_completed(self, deal_id: UUID, at: datetime) -> Deal:
        stamp = to_iso_utc(at, name="signup_completed_at")
        response = (
            self.client.table(_DEALS_TABLE)
            .update({"signup_completed_at_utc": stamp, "updated_at_utc": stamp})
            .eq("deal_id", str(deal_id))
            .execute()
        )
        rows = self._rows(response, "record signup completion")
        if not rows:
            raise DealNotFoundError(f"Deal not found: {deal_id}")
        return row_to_deal(rows[0])

    def record_actual_commission(self, deal_id: UUID, amount: Decimal, at: datetime) -> Deal:
        result = self._rpc(
            "set_deal_actual_commission",
            {
                "p_deal_id": str(deal_id),
                "p_amount": str(amount),
                "p_updated_at": to_iso_utc(at, name="updated_at"),
            },
        )
        if result.get("success"):
            return row_to_deal(result["deal"])

        code = result.get("error")
        if code == "DEAL_NOT_FOUND":
            raise DealNotFoundError(f"Deal not found: {deal_id}")
        if code == "COMMISSION_ALREADY_ATTRIBUTED":
            raise ValueError(
                f"Deal {deal_id} already has commission records; "
                f"its actual commission can no longer change"
            )
        raise RuntimeError(f"set_deal_actual_commission failed: {code} {result.get('message')}")

    def list_events(self, deal_id: UUID) -> List[StageTransitionEvent]:
        response = (
            self.client.table(_EVENTS_TABLE)
            .select("*")
            .eq("deal_id", str(deal_id))
            .order("sequence")
            .execute()
        )
        return [row_to_event(row) for row in self._rows(response, "list stage events")]

    # -- partners -----------------------------------------------------------

    def add_partner(self, partner: Partner) -> Partner:
        try:
            response = self.client.table(_PARTNERS_TABLE).insert(partner_to_row(partner)).execute()
        except APIError as exc:
            if getattr(exc, "code", None) != _UNIQUE_VIOLATION:
                raise
            existing = self.get_partner(partner.partner_id)
            if existing is not None and existing.parent_partner_id != partner.parent_partner_id:
                raise ReparentingError(
                    f"Partner {partner.partner_id} already has sponsor "
                    f"{existing.parent_partner_id}; sponsors are immutable"
                ) from exc
            raise ValueError(
                f"Partner {partner.partner_id} or referral code '{partner.referral_code}' already exists"
            ) from exc
        self._rows(response, "create partner")
        return partner

    def get_partner(self, partner_id: UUID) -> Optional[Partner]:
        response = (
            self.client.table(_PARTNERS_TABLE)
            .select("*")
            .eq("partner_id", str(partner_id))
            .limit(1)
            .execute()
        )
        rows = self._rows(response, "get partner")
        return row_to_partner(rows[0]) if rows else None

    def get_partner_by_code(self, referral_code: str) -> Optional[Partner]:
        response = (
            self.client.table(_PARTNERS_TABLE)
            .select("*")
            .eq("referral_code_normalized", referral_code.strip().lower())
            .limit(1)
            .execute()
        )
        rows = self._rows(response, "get partner by referral code")
        return row_to_partner(rows[0]) if rows else None

    def list_partners(self) -> List[Partner]:
        response = self.client.table(_PARTNERS_TABLE).select("*").order("created_at_utc").execute()
        return [row_to_partner(row) for row in self._rows(response, "list partners")]

    # -- commissions --------------------------------------------------------

    def add_commission_records(
        self, event: StageTransitionEvent, records: Sequence[CommissionRecord]
    ) -> List[CommissionRecord]:
        if not records:
            return []
        if any(r.deal_id != event.deal_id for r in records):
            raise ValueError("commission records must belong to the event's deal")

        result = self._rpc(
            "insert_commission_records",
            {
                "p_deal_id": str(event.deal_id),
                "p_event_sequence": event.sequence,
                "p_records": [commission_to_row(r) for r in records],
            },
        )
        if not result.get("success"):
            code = result.get("error")
            if code == "EVENT_NOT_ATTRIBUTABLE":
                raise EventNotAttributableError(
                    event.deal_id, event.sequence, str(result.get("current_stage"))
                )
            if code == "DEAL_NOT_FOUND":
                raise DealNotFoundError(f"Deal not found: {event.deal_id}")
            raise RuntimeError(f"insert_commission_records failed: {code} {result.get('message')}")

        inserted = [row_to_commission(row) for row in result.get("commissions") or []]
        if len(inserted) < len(records):
            # A concurrent delivery of the same event committed those levels first.
            logger.info(
                "Commission records already attributed by a concurrent writer",
                extra={
                    "deal_id": str(event.deal_id),
                    "levels": sorted({r.level for r in records} - {r.level for r in inserted}),
                },
            )
        return inserted

    def _list_commissions(self, column: str, value: UUID) -> List[CommissionRecord]:
        response = (
            self.client.table(_COMMISSIONS_TABLE)
            .select("*")
            .eq(column, str(value))
            .order("created_at_utc")
            .order("level")
            .execute()
        )
        return [row_to_commission(row) for row in self._rows(response, "list commission records")]

    def list_commissions_for_deal(self, deal_id: UUID) -> List[CommissionRecord]:
        return self._list_commissions("deal_id", deal_id)

    def list_commissions_for_partner(self, partner_id: UUID) -> List[CommissionRecord]:
        return self._list_commissions("beneficiary_partner_id", partner_id)

    def list_commissions_for_invoice(self, invoice_id: UUID) -> List[CommissionRecord]:
        return self._list_commissions("invoice_id", invoice_id)

    def void_pending_commissions(self, deal_id: UUID, at: datetime) -> List[CommissionRecord]:
        result = self._rpc(
            "void_deal_commissions",
            {"p_deal_id": str(deal_id), "p_voided_at": to_iso_utc(at, name="voided_at")},
        )
        return [row_to_commission(row) for row in result.get("commissions") or []]

    # -- invoices -----------------------------------------------------------

    def create_invoice(
        self, partner_id: UUID, commission_ids: Sequence[UUID], at: datetime
    ) -> Tuple[Invoice, List[CommissionRecord]]:
        result = self._rpc(
            "create_partner_invoice",
            {
                "p_partner_id": str(partner_id),
                "p_commission_ids": [str(c) for c in dict.fromkeys(commission_ids)],
                "p_created_at": to_iso_utc(at, name="created_at"),
            },
        )
        if not result.get("success"):
            self._raise_ledger_error(result)
        return (
            row_to_invoice(result["invoice"]),
            [row_to_commission(row) for row in result.get("commissions") or []],
        )

    def get_invoice(self, invoice_id: UUID) -> Optional[Invoice]:
        response = (
            self.client.table(_INVOICES_TABLE)
            .select("*")
            .eq("invoice_id", str(invoice_id))
            .limit(1)
            .execute()
        )
        rows = self._rows(response, "get invoice")
        return row_to_invoice(rows[0]) if rows else None

    def pay_invoice(
        self, invoice_id: UUID, payment_reference: str, notes: Optional[str], at: datetime
    ) -> Tuple[Invoice, List[CommissionRecord], bool]:
        result = self._rpc(
            "mark_invoice_paid",
            {
                "p_invoice_id": str(invoice_id),
                "p_payment_reference": payment_reference,
                "p_notes": notes,
                "p_paid_at": to_iso_utc(at, name="paid_at"),
            },
        )
        if not result.get("success"):
            self._raise_ledger_error(result)
        return (
            row_to_invoice(result["invoice"]),
            [row_to_commission(row) for row in result.get("commissions") or []],
            bool(result.get("changed")),
        )

    @staticmethod
    def _raise_ledger_error(result: Mapping[str, Any]) -> None:
        code = result.get("error")
        message = result.get("message") or ""
        if code == "INVOICE_NOT_FOUND":
            raise InvoiceNotFoundError(message)
        if code == "COMMISSION_NOT_FOUND":
            raise CommissionNotFoundError(message)
        if code == "INVALID_STATE":
            raise InvalidStateError(
                UUID(str(result["commission_id"])),
                str(result.get("status")),
                str(result.get("expected")),
            )
        if code == "INVALID_REQUEST":
            raise ValueError(message)
        raise RuntimeError(f"Ledger operation failed: {code} {message}")


__all__ = [
    "SupabaseNetworkStore",
    "deal_to_row",
    "row_to_deal",
    "row_to_event",
    "partner_to_row",
    "row_to_partner",
    "commission_to_row",
    "row_to_commission",
    "row_to_invoice",
]
