"""
Stages API Endpoints.

Read-only stage catalogue, labelled for the requesting role.
"""

from typing import List

from fastapi import APIRouter, Query

from api.models import StageInfoResponse
from domain.stage import Role, next_stages, stage_label, stages_for

router = APIRouter()


@router.get(
    "/stages",
    response_model=List[StageInfoResponse],
    summary="List Deal Stages",
    description="Stage catalogue in lifecycle order. Partners do not see internal admin stages."
)
def list_stages(role: Role = Query(Role.PARTNER, description="Role the labels are shown to")):
    return [
        StageInfoResponse(
            stage=info.stage,
            label=stage_label(info.stage, role),
            short_label=info.short_label,
            description=info.description,
            color=info.color,
            order=info.order,
            next_stages=next_stages(info.stage),
        )
        for info in stages_for(role)
    ]
