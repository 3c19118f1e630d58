"""
Deals API Endpoints.

Endpoints for submitting deals, moving them through the lifecycle and reading
their actions, history and partner progress.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_policy, get_store
from api.errors import to_http_exception
from api.models import (
    ActualCommissionRequest,
    AttributionSummaryResponse,
    DealActionsResponse,
    DealCreateRequest,
    DealProgressResponse,
    DealResponse,
    StageActionResponse,
    StageEventResponse,
    TransitionRequest,
    TransitionResponse,
)
from domain.commission import CommissionPolicy
from domain.stage import PARTNER_PROGRESS_LABELS, Role
from repositories.base import NetworkStore
from services import deal_service
from services.attribution_service import replay_event

router = APIRouter()


@router.post(
    "/deals",
    response_model=DealResponse,
    status_code=201,
    summary="Submit Deal",
    description="Submit a new deal for a partner. The deal starts in the 'submitted' stage."
)
def create_deal(request: DealCreateRequest, store: NetworkStore = Depends(get_store)):
    try:
        deal = deal_service.create_deal(
            store,
            owner_partner_id=request.owner_partner_id,
            product_type=request.product_type,
            business_name=request.business_name,
            total_amount=request.total_amount,
            estimated_monthly_saving=request.estimated_monthly_saving,
            currency=request.currency,
        )
        return DealResponse.from_domain(deal)
    except Exception as e:
        raise to_http_exception(e, "create deal") from e


@router.get(
    "/deals/{deal_id}",
    response_model=DealResponse,
    summary="Get Deal"
)
def get_deal(deal_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        return DealResponse.from_domain(deal_service.get_deal(store, deal_id))
    except Exception as e:
        raise to_http_exception(e, "get deal") from e


@router.post(
    "/deals/{deal_id}/transitions",
    response_model=TransitionResponse,
    summary="Transition Deal",
    description="Move a deal to another stage. Qualifying stages attribute commissions; "
                "declining a deal voids its pending commissions."
)
def transition_deal(
    deal_id: UUID,
    request: TransitionRequest,
    store: NetworkStore = Depends(get_store),
    policy: CommissionPolicy = Depends(get_policy),
):
    """
    Apply a stage transition.

    **Errors:**
    - 404 if the deal does not exist
    - 409 if the move is not allowed from the current stage, or another
      writer changed the deal first
    - 500 "data integrity alert" if commission attribution hits a referral
      cycle (the stage change itself is kept)

    **Example request:**
    ```json
    {"target_stage": "live_confirm_ltr", "acting_role": "admin"}
    ```
    """
    try:
        outcome = deal_service.transition_deal(
            store, deal_id, request.target_stage, request.acting_role, policy
        )
        return TransitionResponse(
            deal=DealResponse.from_domain(outcome.deal),
            event=StageEventResponse.from_domain(outcome.event),
            attribution=(
                AttributionSummaryResponse.from_domain(outcome.attribution)
                if outcome.attribution is not None else None
            ),
            voided_commission_ids=[r.commission_id for r in outcome.voided],
        )
    except Exception as e:
        raise to_http_exception(e, "transition deal") from e


@router.put(
    "/deals/{deal_id}/actual-commission",
    response_model=DealResponse,
    summary="Set Actual Commission",
    description="Admin entry of the commission the company received. Rate-based levels "
                "are shares of this amount. Refused once the deal has commission records."
)
def set_actual_commission(
    deal_id: UUID,
    request: ActualCommissionRequest,
    store: NetworkStore = Depends(get_store),
):
    try:
        deal = deal_service.set_actual_commission(store, deal_id, request.actual_commission)
        return DealResponse.from_domain(deal)
    except Exception as e:
        raise to_http_exception(e, "set actual commission") from e


@router.post(
    "/deals/{deal_id}/signup",
    response_model=DealResponse,
    summary="Complete Signup",
    description="Record that the client completed signup while the quote is approved. Display only."
)
def complete_signup(deal_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        return DealResponse.from_domain(deal_service.mark_signup_completed(store, deal_id))
    except Exception as e:
        raise to_http_exception(e, "complete signup") from e


@router.get(
    "/deals/{deal_id}/actions",
    response_model=DealActionsResponse,
    summary="Get Deal Actions"
)
def get_deal_actions(
    deal_id: UUID,
    role: Role = Query(..., description="Role requesting the actions"),
    store: NetworkStore = Depends(get_store),
):
    try:
        deal = deal_service.get_deal(store, deal_id)
        actions = deal_service.get_actions_for_deal(store, deal_id, role)
        return DealActionsResponse(
            deal_id=deal_id,
            stage=deal.stage,
            role=role,
            actions=[
                StageActionResponse(label=a.label, action=a.action, variant=a.variant.value)
                for a in actions
            ],
        )
    except Exception as e:
        raise to_http_exception(e, "get deal actions") from e


@router.get(
    "/deals/{deal_id}/history",
    response_model=List[StageEventResponse],
    summary="Get Deal Stage History"
)
def get_deal_history(deal_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        return [StageEventResponse.from_domain(e) for e in deal_service.get_deal_history(store, deal_id)]
    except Exception as e:
        raise to_http_exception(e, "get deal history") from e


@router.get(
    "/deals/{deal_id}/progress",
    response_model=DealProgressResponse,
    summary="Get Partner Progress"
)
def get_deal_progress(deal_id: UUID, store: NetworkStore = Depends(get_store)):
    try:
        deal = deal_service.get_deal(store, deal_id)
        step = deal_service.get_deal_progress(store, deal_id)
        return DealProgressResponse(
            deal_id=deal_id,
            stage=deal.stage,
            step=step.value,
            label=PARTNER_PROGRESS_LABELS[step],
        )
    except Exception as e:
        raise to_http_exception(e, "get deal progress") from e


@router.post(
    "/deals/{deal_id}/events/{sequence}/replay",
    response_model=AttributionSummaryResponse,
    summary="Replay Commission Attribution",
    description="Re-run commission attribution for a stored stage event. "
                "Creates only levels that have no commission yet."
)
def replay_deal_event(
    deal_id: UUID,
    sequence: int,
    store: NetworkStore = Depends(get_store),
    policy: CommissionPolicy = Depends(get_policy),
):
    try:
        return AttributionSummaryResponse.from_domain(replay_event(store, deal_id, sequence, policy))
    except Exception as e:
        raise to_http_exception(e, "replay stage event") from e
