# sitefleet/api/deps.py
"""
Dependencies shared by the route modules.

Services live on ``app.state`` (built in the lifespan) so tests can swap the
whole stack by building a fresh app.
"""

from fastapi import Depends, Header, HTTPException, Request, status

from ..core.config import Settings
from ..core.constants import TokenPermission
from ..core.websockets import ConnectionManager
from ..services.connectivity_monitor import ConnectivityMonitor
from ..services.dashboard_service import DashboardService
from ..services.fanout import FanoutOrchestrator
from ..services.reconciliation import ReconciliationService
from ..services.site_registry import SiteRegistry
from ..services.token_issuer import ManagementTokenIssuer
from ..utils.device_clients import ClientProvider
from ..utils.security import digests_match

UNAUTHORIZED_DETAIL = "Not authenticated"


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> SiteRegistry:
    return request.app.state.registry


def get_clients(request: Request) -> ClientProvider:
    return request.app.state.clients


def get_monitor(request: Request) -> ConnectivityMonitor:
    return request.app.state.monitor


def get_orchestrator(request: Request) -> FanoutOrchestrator:
    return request.app.state.orchestrator


def get_token_issuer(request: Request) -> ManagementTokenIssuer:
    return request.app.state.token_issuer


def get_reconciliation(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation


def get_dashboard(request: Request) -> DashboardService:
    return request.app.state.dashboard


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connections


def _admin_key_ok(settings: Settings, api_key: str | None) -> bool:
    if not settings.admin_api_key:
        return True
    return bool(api_key) and digests_match(api_key, settings.admin_api_key)


async def require_admin(
    settings: Settings = Depends(get_settings_dep),
    x_api_key: str | None = Header(default=None),
):
    if not _admin_key_ok(settings, x_api_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=UNAUTHORIZED_DETAIL)


def _site_access(permission: TokenPermission):
    async def dependency(
        site_id: str,
        settings: Settings = Depends(get_settings_dep),
        issuer: ManagementTokenIssuer = Depends(get_token_issuer),
        x_api_key: str | None = Header(default=None),
        x_management_token: str | None = Header(default=None),
    ):
        if x_management_token is None:
            if _admin_key_ok(settings, x_api_key):
                return
        elif settings.admin_api_key and _admin_key_ok(settings, x_api_key):
            return
        elif await issuer.check(site_id, x_management_token, permission):
            return
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=UNAUTHORIZED_DETAIL)

    return dependency


require_site_read = _site_access(TokenPermission.READ)
require_site_write = _site_access(TokenPermission.WRITE)
