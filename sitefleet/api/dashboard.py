# sitefleet/api/dashboard.py
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from ..services.dashboard_service import DashboardService
from ..utils.security import digests_match
from .deps import get_dashboard, require_admin

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()


@router.get("/sites/dashboard/overview", dependencies=[Depends(require_admin)])
async def get_overview(dashboard: DashboardService = Depends(get_dashboard)):
    """Fleet totals and per-site statistics from registry state."""
    return await dashboard.overview()


@ws_router.websocket("/ws/sites")
async def sites_websocket(websocket: WebSocket):
    """
    Push channel for dashboards. The monitor's status transitions reach it
    through the event bus; the socket itself only keeps the connection open.
    """
    manager = websocket.app.state.connections
    settings = websocket.app.state.settings
    if settings.admin_api_key and not digests_match(websocket.headers.get("x-api-key", ""), settings.admin_api_key):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket)
    try:
        while True:
            # Clients may send pings; the content is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)
        logger.debug("[Dashboard] Websocket disconnected")
