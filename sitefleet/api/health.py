from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health", tags=["System"])
async def get_system_health(request: Request):
    """
    Returns the service health including:
    - Heartbeat monitor state
    - Device client pool size
    - Dashboard websocket connections
    """
    state = request.app.state
    return {
        "status": "ok",
        "monitor": {"running": state.monitor.running},
        "device_clients": len(state.clients),
        "websockets": len(state.connections.active_connections),
    }
