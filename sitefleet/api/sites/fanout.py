# sitefleet/api/sites/fanout.py
"""
Multi-site routes. Per-site failures are part of a 200 response; only a
malformed request is rejected.
"""

from fastapi import APIRouter, Depends

from ...core.constants import FanoutOperation
from ...services.fanout import FanoutOrchestrator, FanoutRequest
from ..deps import get_orchestrator, require_admin
from .models import (
    FanoutRequestBody,
    FanoutResponse,
    MultiSiteBandwidthUpdate,
    MultiSiteUserCreate,
    SyncAllRequest,
)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/sites/fanout", response_model=FanoutResponse)
async def run_fanout(body: FanoutRequestBody, orchestrator: FanoutOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.execute(FanoutRequest(**body.model_dump(exclude={"policy"}), policy=body.policy))
    return result.to_dict()


@router.post("/sites/users/create-multi", response_model=FanoutResponse)
async def create_user_multi(body: MultiSiteUserCreate, orchestrator: FanoutOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.create_user_across_sites(body.username, body.password, body.site_ids, body.policy)
    return result.to_dict()


@router.post("/sites/users/sync-all", response_model=FanoutResponse)
async def sync_user_all_sites(body: SyncAllRequest, orchestrator: FanoutOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.sync_user_across_all_sites(body.username, body.password, body.policy)
    return result.to_dict()


@router.post("/sites/bandwidth/update-multi", response_model=FanoutResponse)
async def update_bandwidth_multi(
    body: MultiSiteBandwidthUpdate, orchestrator: FanoutOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.execute(
        FanoutRequest(FanoutOperation.SET_BANDWIDTH, body.username, body.site_ids, policy=body.policy)
    )
    return result.to_dict()
