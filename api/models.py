"""
API Request and Response Models.

Pydantic models for validating API requests and serializing responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from domain.commission import AttributionResult, CommissionRecord
from domain.deal import Deal, ProductType, StageTransitionEvent
from domain.ledger import CommissionSummary, Invoice
from domain.partner import Partner, ReferralTreeNode
from domain.stage import DealStage, Role


# ============================================================================
# Deal Models
# ============================================================================

class DealCreateRequest(BaseModel):
    """Request to submit a new deal."""
    owner_partner_id: UUID = Field(..., description="Partner who referred the deal")
    product_type: ProductType
    business_name: str = Field(..., min_length=1, max_length=200)
    total_amount: Optional[Decimal] = Field(
        None,
        ge=0,
        description="Advisory deal value; commission rates apply to actual_commission"
    )
    estimated_monthly_saving: Optional[Decimal] = Field(None, ge=0)
    currency: str = Field("GBP", min_length=3, max_length=3)

    class Config:
        json_schema_extra = {
            "example": {
                "owner_partner_id": "123e4567-e89b-12d3-a456-426614174000",
                "product_type": "card_payments",
                "business_name": "Corner Cafe Ltd",
                "total_amount": "1000.00",
                "estimated_monthly_saving": "85.00",
                "currency": "GBP"
            }
        }


class DealResponse(BaseModel):
    """Deal in API response."""
    deal_id: UUID
    owner_partner_id: UUID
    product_type: ProductType
    business_name: str
    stage: DealStage
    version: int
    total_amount: Optional[Decimal] = None
    estimated_monthly_saving: Optional[Decimal] = None
    actual_commission: Optional[Decimal] = None
    signup_completed_at: Optional[datetime] = None
    currency: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, deal: Deal) -> "DealResponse":
        return cls(
            deal_id=deal.deal_id,
            owner_partner_id=deal.owner_partner_id,
            product_type=deal.product_type,
            business_name=deal.business_name,
            stage=deal.stage,
            version=deal.version,
            total_amount=deal.total_amount,
            estimated_monthly_saving=deal.estimated_monthly_saving,
            actual_commission=deal.actual_commission,
            signup_completed_at=deal.signup_completed_at,
            currency=deal.currency,
            created_at=deal.created_at,
            updated_at=deal.updated_at,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "deal_id": "123e4567-e89b-12d3-a456-426614174010",
                "owner_partner_id": "123e4567-e89b-12d3-a456-426614174000",
                "product_type": "card_payments",
                "business_name": "Corner Cafe Ltd",
                "stage": "quote_sent",
                "version": 2,
                "total_amount": "1000.00",
                "estimated_monthly_saving": "85.00",
                "actual_commission": None,
                "signup_completed_at": None,
                "currency": "GBP",
                "created_at": "2025-01-01T12:00:00Z",
                "updated_at": "2025-01-03T09:30:00Z"
            }
        }


class ActualCommissionRequest(BaseModel):
    """Admin entry of the commission the company received for a deal."""
    actual_commission: Decimal = Field(..., ge=0, description="Pool that rate-based levels are shares of")

    class Config:
        json_schema_extra = {
            "example": {
                "actual_commission": "1000.00"
            }
        }


class TransitionRequest(BaseModel):
    """Request to move a deal to another stage."""
    target_stage: DealStage
    acting_role: Role = Field(..., description="Role performing the change")

    class Config:
        json_schema_extra = {
            "example": {
                "target_stage": "live_confirm_ltr",
                "acting_role": "admin"
            }
        }


class StageEventResponse(BaseModel):
    """One accepted stage change."""
    event_id: UUID
    deal_id: UUID
    sequence: int
    from_stage: DealStage
    to_stage: DealStage
    occurred_at: datetime
    acting_role: Role

    @classmethod
    def from_domain(cls, event: StageTransitionEvent) -> "StageEventResponse":
        return cls(
            event_id=event.event_id,
            deal_id=event.deal_id,
            sequence=event.sequence,
            from_stage=event.from_stage,
            to_stage=event.to_stage,
            occurred_at=event.occurred_at,
            acting_role=event.acting_role,
        )


class StageActionResponse(BaseModel):
    label: str
    action: str
    variant: str


class DealActionsResponse(BaseModel):
    """Actions available to a role at the deal's current stage."""
    deal_id: UUID
    stage: DealStage
    role: Role
    actions: List[StageActionResponse]

    class Config:
        json_schema_extra = {
            "example": {
                "deal_id": "123e4567-e89b-12d3-a456-426614174010",
                "stage": "quote_sent",
                "role": "partner",
                "actions": [
                    {"label": "Approve Quote", "action": "approve_quote", "variant": "primary"},
                    {"label": "Request Lower Rates", "action": "request_rates", "variant": "warning"}
                ]
            }
        }


class DealProgressResponse(BaseModel):
    """Simplified progress step shown to partners."""
    deal_id: UUID
    stage: DealStage
    step: str
    label: str


class StageInfoResponse(BaseModel):
    """Stage catalogue entry for a role."""
    stage: DealStage
    label: str
    short_label: str
    description: str
    color: str
    order: int
    next_stages: List[DealStage]


# ============================================================================
# Commission Models
# ============================================================================

class CommissionRecordResponse(BaseModel):
    """Commission record in API response."""
    commission_id: UUID
    deal_id: UUID
    beneficiary_partner_id: UUID
    level: int
    product_type: ProductType
    rate: Optional[Decimal] = None
    amount: Decimal
    currency: str
    status: str
    triggering_stage: DealStage
    invoice_id: Optional[UUID] = None
    payment_reference: Optional[str] = None
    created_at: datetime
    invoiced_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, record: CommissionRecord) -> "CommissionRecordResponse":
        return cls(
            commission_id=record.commission_id,
            deal_id=record.deal_id,
            beneficiary_partner_id=record.beneficiary_partner_id,
            level=record.level,
            product_type=record.product_type,
            rate=record.rate,
            amount=record.amount,
            currency=record.currency,
            status=record.status.value,
            triggering_stage=record.triggering_stage,
            invoice_id=record.invoice_id,
            payment_reference=record.payment_reference,
            created_at=record.created_at,
            invoiced_at=record.invoiced_at,
            paid_at=record.paid_at,
            voided_at=record.voided_at,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "commission_id": "123e4567-e89b-12d3-a456-426614174020",
                "deal_id": "123e4567-e89b-12d3-a456-426614174010",
                "beneficiary_partner_id": "123e4567-e89b-12d3-a456-426614174000",
                "level": 1,
                "product_type": "card_payments",
                "rate": "0.60",
                "amount": "600.00",
                "currency": "GBP",
                "status": "payable",
                "triggering_stage": "live_confirm_ltr",
                "invoice_id": None,
                "payment_reference": None,
                "created_at": "2025-02-01T10:00:00Z",
                "invoiced_at": None,
                "paid_at": None,
                "voided_at": None
            }
        }


class BlockedLevelResponse(BaseModel):
    """A level left unattributed: no policy entry, or no actual commission for a rate-based entry."""
    level: int
    product_type: str
    message: str


class AttributionSummaryResponse(BaseModel):
    qualifying: bool
    created: List[CommissionRecordResponse]
    skipped_levels: List[int]
    blocked: List[BlockedLevelResponse]
    company_remainder: Optional[Decimal] = Field(
        None,
        description="Actual commission not distributed to partners"
    )

    @classmethod
    def from_domain(cls, result: AttributionResult) -> "AttributionSummaryResponse":
        return cls(
            qualifying=result.qualifying,
            created=[CommissionRecordResponse.from_domain(r) for r in result.created],
            skipped_levels=list(result.skipped_levels),
            blocked=[
                BlockedLevelResponse(level=level, product_type=error.product_type, message=str(error))
                for level, error in sorted(result.blocked.items())
            ],
            company_remainder=result.company_remainder,
        )


class TransitionResponse(BaseModel):
    """Response after a stage transition."""
    deal: DealResponse
    event: StageEventResponse
    attribution: Optional[AttributionSummaryResponse] = None
    voided_commission_ids: List[UUID] = []


class CommissionSummaryResponse(BaseModel):
    """Per-status commission counts and totals for a partner."""
    partner_id: UUID
    counts: Dict[str, int]
    totals: Dict[str, Decimal]
    outstanding: Decimal
    earned: Decimal

    @classmethod
    def from_domain(cls, summary: CommissionSummary) -> "CommissionSummaryResponse":
        return cls(
            partner_id=summary.partner_id,
            counts={status.value: count for status, count in summary.counts.items()},
            totals={status.value: total for status, total in summary.totals.items()},
            outstanding=summary.outstanding,
            earned=summary.earned,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "partner_id": "123e4567-e89b-12d3-a456-426614174000",
                "counts": {"payable": 2, "invoiced": 1, "paid": 4, "voided": 0},
                "totals": {"payable": "240.00", "invoiced": "100.00", "paid": "980.00", "voided": "0.00"},
                "outstanding": "340.00",
                "earned": "980.00"
            }
        }


# ============================================================================
# Partner Models
# ============================================================================

class PartnerCreateRequest(BaseModel):
    """Request to recruit a partner."""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    sponsor_referral_code: Optional[str] = Field(
        None,
        description="Referral code of the sponsoring partner"
    )
    sponsor_partner_id: Optional[UUID] = None

    class Config:
        json_schema_extra = {
            "example": {
                "first_name": "Dana",
                "last_name": "Smith",
                "email": "dana@example.com",
                "sponsor_referral_code": "jb001"
            }
        }


class PartnerResponse(BaseModel):
    partner_id: UUID
    referral_code: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    parent_partner_id: Optional[UUID] = None
    signup_source: str
    created_at: datetime

    @classmethod
    def from_domain(cls, partner: Partner) -> "PartnerResponse":
        return cls(
            partner_id=partner.partner_id,
            referral_code=partner.referral_code,
            first_name=partner.first_name,
            last_name=partner.last_name,
            email=partner.email,
            parent_partner_id=partner.parent_partner_id,
            signup_source=partner.signup_source.value,
            created_at=partner.created_at,
        )


class ReferralTreeNodeResponse(BaseModel):
    """Partner with derived network counts and its recruits."""
    partner: PartnerResponse
    depth: int
    direct_recruits: int
    total_downline: int
    total_referrals: int
    children: List["ReferralTreeNodeResponse"] = []

    @classmethod
    def from_domain(cls, node: ReferralTreeNode) -> "ReferralTreeNodeResponse":
        return cls(
            partner=PartnerResponse.from_domain(node.partner),
            depth=node.depth,
            direct_recruits=node.direct_recruits,
            total_downline=node.total_downline,
            total_referrals=node.total_referrals,
            children=[cls.from_domain(child) for child in node.children],
        )


ReferralTreeNodeResponse.model_rebuild()


class DanglingParentResponse(BaseModel):
    partner_id: UUID
    missing_parent_id: UUID


class DataQualityResponse(BaseModel):
    """Referral network integrity findings."""
    is_clean: bool
    dangling_parents: List[DanglingParentResponse]
    cycles: List[List[UUID]]


# ============================================================================
# Invoice Models
# ============================================================================

class InvoiceCreateRequest(BaseModel):
    """Request to invoice a partner's commission records."""
    partner_id: UUID
    commission_ids: Optional[List[UUID]] = Field(
        None,
        min_length=1,
        description="Records to invoice. Omit to invoice every payable record of the partner."
    )

    class Config:
        json_schema_extra = {
            "example": {
                "partner_id": "123e4567-e89b-12d3-a456-426614174000",
                "commission_ids": ["123e4567-e89b-12d3-a456-426614174020"]
            }
        }


class InvoiceResponse(BaseModel):
    invoice_id: UUID
    invoice_number: str
    partner_id: UUID
    amount: Decimal
    currency: str
    status: str
    commission_ids: List[UUID]
    payment_reference: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            partner_id=invoice.partner_id,
            amount=invoice.amount,
            currency=invoice.currency,
            status=invoice.status.value,
            commission_ids=list(invoice.commission_ids),
            payment_reference=invoice.payment_reference,
            admin_notes=invoice.admin_notes,
            created_at=invoice.created_at,
            paid_at=invoice.paid_at,
        )


class InvoiceDetailResponse(BaseModel):
    """Invoice together with its commission records."""
    invoice: InvoiceResponse
    commissions: List[CommissionRecordResponse]


class PaymentRequest(BaseModel):
    """Request to mark an invoice as paid."""
    payment_reference: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "payment_reference": "BACS-2025-0142",
                "notes": "Paid with February payout run"
            }
        }


class PaymentResponse(BaseModel):
    """Response after marking an invoice paid."""
    invoice: InvoiceResponse
    commissions: List[CommissionRecordResponse]
    changed: bool = Field(..., description="False when the invoice had already been paid")
