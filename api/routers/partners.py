"""
Partners API Endpoints.

Endpoints for recruiting partners, browsing the referral network and reading
a partner's commissions.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_store
from api.errors import to_http_exception
from api.models import (
    CommissionRecordResponse,
    CommissionSummaryResponse,
    DanglingParentResponse,
    DataQualityResponse,
    PartnerCreateRequest,
    PartnerResponse,
    ReferralTreeNodeResponse,
)
from domain.commission import CommissionStatus
from repositories.base import NetworkStore
from services import ledger_service, network_service

router = APIRouter()


@router.post(
    "/partners",
    response_model=PartnerResponse,
    status_code=201,
    summary="Recruit Partner",
    description="Add a partner to the network, optionally under a sponsor. "
                "The sponsor cannot be changed afterwards."
)
def recruit_partner(request: PartnerCreateRequest, store: NetworkStore = Depends(get_store)):
    try:
        partner = network_service.recruit_partner(
            store,
            first_name=request.first_name,
            last_name=request.last_name,
            email=request.email,
            sponsor_referral_code=request.sponsor_referral_code,
            sponsor_partner_id=request.sponsor_partner_id,
        )
        return PartnerResponse.from_domain(partner)
    except Exception as e:
        raise to_http_exception(e, "recruit partner") from e


@router.get(
    "/partners/tree",
    response_model=List[ReferralTreeNodeResponse],
    summary="Get Referral Tree",
    description="Referral tree with direct recruits, downline size and referral counts. "
                "Without root_partner_id, returns one tree per root partner."
)
def get_referral_tree(
    root_partner_id: Optional[UUID] = Query(None),
    store: NetworkStore = Depends(get_store),
):
    try:
        nodes = network_service.get_referral_tree(store, root_partner_id)
        return [ReferralTreeNodeResponse.from_domain(node) for node in nodes]
    except Exception as e:
        raise to_http_exception(e, "build referral tree") from e


@router.get(
    "/partners/data-quality",
    response_model=DataQualityResponse,
    summary="Referral Network Data Quality"
)
def get_data_quality(store: NetworkStore = Depends(get_store)):
    try:
        report = network_service.get_data_quality_report(store)
        return DataQualityResponse(
            is_clean=report.is_clean,
            dangling_parents=[
                DanglingParentResponse(partner_id=pid, missing_parent_id=parent)
                for pid, parent in report.dangling_parents.items()
            ],
            cycles=report.cycles,
        )
    except Exception as e:
        raise to_http_exception(e, "build data quality report") from e


@router.get(
    "/partners/by-code/{referral_code}",
    response_model=PartnerResponse,
    summary="Find Partner by Referral Code"
)
def get_partner_by_code(referral_code: str, store: NetworkStore = Depends(get_store)):
    try:
        return PartnerResponse.from_domain(network_service.get_partner_by_code(store, referral_code))
    except Exception as e:
        raise to_http_exception(e, "find partner") from e


@router.get(
    "/partners/{partner_id}",
    response_model=PartnerResponse,
    summary="Get Partner"
)
def get_partner(partner_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        return PartnerResponse.from_domain(network_service.get_partner(store, partner_id))
    except Exception as e:
        raise to_http_exception(e, "get partner") from e


@router.get(
    "/partners/{partner_id}/downline",
    response_model=List[PartnerResponse],
    summary="Get Partner Downline"
)
def get_downline(partner_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        return [PartnerResponse.from_domain(p) for p in network_service.get_downline(store, partner_id)]
    except Exception as e:
        raise to_http_exception(e, "get downline") from e


@router.get(
    "/partners/{partner_id}/commissions",
    response_model=List[CommissionRecordResponse],
    summary="List Partner Commissions"
)
def get_partner_commissions(
    partner_id: UUID,
    status: Optional[CommissionStatus] = Query(None, description="Filter by commission status"),
    store: NetworkStore = Depends(get_store),
):
    try:
        records = ledger_service.get_commissions_for_partner(store, partner_id, status)
        return [CommissionRecordResponse.from_domain(r) for r in records]
    except Exception as e:
        raise to_http_exception(e, "list commissions") from e


@router.get(
    "/partners/{partner_id}/commissions/summary",
    response_model=CommissionSummaryResponse,
    summary="Partner Commission Summary"
)
def get_partner_commission_summary(partner_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        return CommissionSummaryResponse.from_domain(ledger_service.get_commission_summary(store, partner_id))
    except Exception as e:
        raise to_http_exception(e, "summarize commissions") from e
