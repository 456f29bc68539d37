# sitefleet/api/sites/main.py
from typing import List

from fastapi import APIRouter, Depends, Query, status

from ...core.constants import EventType, FanoutOperation
from ...core.websockets import ConnectionManager
from ...services.connectivity_monitor import ConnectivityMonitor
from ...services.fanout import FanoutOrchestrator, FanoutRequest, SiteOutcome
from ...services.reconciliation import ReconciliationService
from ...services.site_registry import SiteRegistry
from ...services.token_issuer import ManagementTokenIssuer
from ...utils.device_clients import BandwidthPolicy, ClientProvider, MikrotikRestClient
from ..deps import (
    get_clients,
    get_connection_manager,
    get_monitor,
    get_orchestrator,
    get_reconciliation,
    get_registry,
    get_token_issuer,
    require_admin,
    require_site_read,
    require_site_write,
)
from .models import (
    ApiLogResponse,
    ConnectionTestResponse,
    SiteCreate,
    SiteDetailResponse,
    SiteResponse,
    SiteUpdate,
    SiteUserCreate,
    SiteUserUpdate,
    TokenRequest,
    TokenResponse,
)

router = APIRouter()


async def _client_for(site_id: str, registry: SiteRegistry, clients: ClientProvider) -> MikrotikRestClient:
    site = await registry.get(site_id)
    return await clients.get(registry.credentials_for(site))


def _unwrap(outcome: SiteOutcome) -> dict:
    """Single-site routes surface a failed branch as its error (mapped to HTTP)."""
    if not outcome.ok:
        raise outcome.exception
    return outcome.payload


# --- Site CRUD ---
@router.post(
    "/sites/register",
    response_model=SiteResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def register_site(
    site_data: SiteCreate,
    registry: SiteRegistry = Depends(get_registry),
    monitor: ConnectivityMonitor = Depends(get_monitor),
    connections: ConnectionManager = Depends(get_connection_manager),
):
    site = await registry.register(site_data.model_dump())
    monitor.watch(site)
    await connections.broadcast_event(EventType.SITE_REGISTERED.value, {"site_id": site.id})
    return site


@router.get("/sites", response_model=List[SiteResponse], dependencies=[Depends(require_admin)])
async def list_sites(registry: SiteRegistry = Depends(get_registry)):
    return await registry.list_sites()


@router.get("/sites/{site_id}", response_model=SiteDetailResponse, dependencies=[Depends(require_site_read)])
async def get_site(site_id: str, registry: SiteRegistry = Depends(get_registry)):
    site = await registry.get(site_id)
    counts = await registry.mirror_counts()
    children = [s.id for s in await registry.list_sites() if s.parent_site_id == site_id]
    return SiteDetailResponse(
        **SiteResponse.model_validate(site).model_dump(),
        provisioned_users=counts.get(site_id, 0),
        children=children,
    )


@router.patch("/sites/{site_id}", response_model=SiteResponse, dependencies=[Depends(require_admin)])
async def update_site(
    site_id: str,
    site_data: SiteUpdate,
    registry: SiteRegistry = Depends(get_registry),
    monitor: ConnectivityMonitor = Depends(get_monitor),
):
    site = await registry.update(site_id, site_data.model_dump(exclude_unset=True))
    # Restart the heartbeat so a new interval or endpoint takes effect
    monitor.watch(site)
    return site


@router.delete("/sites/{site_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_admin)])
async def delete_site(
    site_id: str,
    registry: SiteRegistry = Depends(get_registry),
    monitor: ConnectivityMonitor = Depends(get_monitor),
    clients: ClientProvider = Depends(get_clients),
    connections: ConnectionManager = Depends(get_connection_manager),
):
    await registry.delete(site_id)
    await monitor.unwatch(site_id)
    await clients.drop(site_id)
    await connections.broadcast_event(EventType.SITE_DELETED.value, {"site_id": site_id})
    return


@router.post(
    "/sites/{site_id}/test-connection",
    response_model=ConnectionTestResponse,
    dependencies=[Depends(require_site_read)],
)
async def test_connection(site_id: str, monitor: ConnectivityMonitor = Depends(get_monitor)):
    """On-demand probe; updates status exactly like a heartbeat tick."""
    result = await monitor.probe_once(site_id)
    return ConnectionTestResponse(
        site_id=result.site_id,
        status=result.status,
        connected=result.reachable,
        checked_at=result.checked_at,
        detail=result.detail,
    )


# --- Hotspot users on one site ---
@router.get("/sites/{site_id}/users", dependencies=[Depends(require_site_read)])
async def list_site_users(
    site_id: str,
    registry: SiteRegistry = Depends(get_registry),
    clients: ClientProvider = Depends(get_clients),
):
    client = await _client_for(site_id, registry, clients)
    users = await client.list_users()
    # Passwords stay on the controller
    return [{k: v for k, v in u.items() if k != "password"} for u in users]


@router.post("/sites/{site_id}/users", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_site_write)])
async def create_site_user(
    site_id: str,
    user_data: SiteUserCreate,
    orchestrator: FanoutOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.run_single(
        FanoutRequest(
            FanoutOperation.CREATE_USER,
            user_data.username,
            [site_id],
            password=user_data.password,
            policy=user_data.policy,
        )
    )
    return _unwrap(outcome)


@router.put("/sites/{site_id}/users/{username}", dependencies=[Depends(require_site_write)])
async def update_site_user(
    site_id: str,
    username: str,
    user_data: SiteUserUpdate,
    orchestrator: FanoutOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.run_single(
        FanoutRequest(
            FanoutOperation.UPDATE_USER,
            username,
            [site_id],
            password=user_data.password,
            policy=user_data.policy,
            disabled=user_data.disabled,
            comment=user_data.comment,
        )
    )
    return _unwrap(outcome)


@router.delete("/sites/{site_id}/users/{username}", dependencies=[Depends(require_site_write)])
async def delete_site_user(
    site_id: str,
    username: str,
    orchestrator: FanoutOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.run_single(FanoutRequest(FanoutOperation.DELETE_USER, username, [site_id]))
    return _unwrap(outcome)


# --- Bandwidth ---
@router.get("/sites/{site_id}/bandwidth/{username}", dependencies=[Depends(require_site_read)])
async def get_user_bandwidth(
    site_id: str,
    username: str,
    registry: SiteRegistry = Depends(get_registry),
    clients: ClientProvider = Depends(get_clients),
):
    client = await _client_for(site_id, registry, clients)
    return await client.get_bandwidth_policy(username)


@router.put("/sites/{site_id}/bandwidth/{username}", dependencies=[Depends(require_site_write)])
async def set_user_bandwidth(
    site_id: str,
    username: str,
    policy: BandwidthPolicy,
    orchestrator: FanoutOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.run_single(
        FanoutRequest(FanoutOperation.SET_BANDWIDTH, username, [site_id], policy=policy)
    )
    return _unwrap(outcome)


# --- Read-only device views ---
@router.get("/sites/{site_id}/aps", dependencies=[Depends(require_site_read)])
async def list_access_points(
    site_id: str,
    registry: SiteRegistry = Depends(get_registry),
    clients: ClientProvider = Depends(get_clients),
):
    client = await _client_for(site_id, registry, clients)
    return await client.list_interfaces()


@router.get("/sites/{site_id}/aps/{interface}/clients", dependencies=[Depends(require_site_read)])
async def list_access_point_clients(
    site_id: str,
    interface: str,
    registry: SiteRegistry = Depends(get_registry),
    clients: ClientProvider = Depends(get_clients),
):
    client = await _client_for(site_id, registry, clients)
    return await client.list_clients(interface)


@router.get("/sites/{site_id}/router-info", dependencies=[Depends(require_site_read)])
async def get_router_info(
    site_id: str,
    registry: SiteRegistry = Depends(get_registry),
    clients: ClientProvider = Depends(get_clients),
):
    client = await _client_for(site_id, registry, clients)
    return await client.get_router_info()


# --- Mirror maintenance ---
@router.get("/sites/{site_id}/divergence", dependencies=[Depends(require_site_read)])
async def get_divergence(site_id: str, reconciliation: ReconciliationService = Depends(get_reconciliation)):
    return await reconciliation.detect_divergence(site_id)


@router.post("/sites/{site_id}/sync-mirror", dependencies=[Depends(require_admin)])
async def sync_mirror(site_id: str, reconciliation: ReconciliationService = Depends(get_reconciliation)):
    return await reconciliation.sync_mirror(site_id)


@router.get(
    "/sites/{site_id}/api-logs",
    response_model=List[ApiLogResponse],
    dependencies=[Depends(require_site_read)],
)
async def get_api_logs(
    site_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    registry: SiteRegistry = Depends(get_registry),
):
    await registry.get(site_id)
    logs = await registry.recent_api_calls(site_id, limit)
    return [
        ApiLogResponse(
            endpoint=entry.endpoint, method=entry.method, status_code=entry.status_code, created_at=entry.created_at
        )
        for entry in logs
    ]


# --- Management tokens ---
@router.post(
    "/sites/{site_id}/tokens",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def issue_token(
    site_id: str,
    token_request: TokenRequest | None = None,
    issuer: ManagementTokenIssuer = Depends(get_token_issuer),
):
    scope = token_request.scope if token_request else None
    issued = await issuer.issue(site_id, scope)
    return TokenResponse(
        token=issued.token,
        site_id=issued.site_id,
        scope=issued.scope,
        issued_at=issued.issued_at,
        expires_at=issued.expires_at,
    )
