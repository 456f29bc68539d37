# sitefleet/main.py
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env BEFORE the settings object is built
load_dotenv()

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import dashboard as dashboard_api
from .api import health as health_api
from .api.sites import fanout as fanout_api
from .api.sites import main as sites_main_api
from .core.config import Settings, get_settings
from .core.errors import (
    Conflict,
    FleetError,
    InvalidFanoutRequest,
    NotFound,
    NotReachable,
    ProtocolError,
    SiteNotFound,
    SiteOffline,
    TokenInvalid,
    Unauthorized,
)
from .core.events import EventBus
from .core.websockets import ConnectionManager
from .db.engine import build_engine, build_session_maker, create_db_and_tables
from .scheduler import build_scheduler
from .services.connectivity_monitor import ConnectivityMonitor
from .services.dashboard_service import DashboardService
from .services.fanout import FanoutOrchestrator
from .services.reconciliation import ReconciliationService
from .services.site_registry import SiteRegistry
from .services.token_issuer import ManagementTokenIssuer
from .utils.device_clients import ClientProvider
from .utils.security import CredentialCipher

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases
_STATUS_BY_ERROR = (
    (InvalidFanoutRequest, 400),
    (TokenInvalid, 401),
    (SiteNotFound, 404),
    (NotFound, 404),
    (Conflict, 409),
    (SiteOffline, 503),
    (NotReachable, 504),
    (Unauthorized, 502),
    (ProtocolError, 502),
)


def status_for(exc: FleetError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


async def fleet_error_handler(request: Request, exc: FleetError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning(f"[API] {request.method} {request.url.path} -> {exc.kind}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "kind": exc.kind})


def create_app(settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """
    Builds the application. ``transport`` replaces the network for every
    device client (tests pass an ``httpx.MockTransport``).
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings.database_url)
        await create_db_and_tables(engine)
        session_maker = build_session_maker(engine)
        logger.info("[App] Database tables initialized")

        registry = SiteRegistry(session_maker, CredentialCipher(settings.encryption_key, settings.app_env))
        clients = ClientProvider(
            timeout=settings.device_timeout,
            cache_ttl=settings.device_cache_ttl,
            verify_tls=settings.device_verify_tls,
            transport=transport,
            hook_factory=registry.api_call_hook,
        )
        events = EventBus()
        connections = ConnectionManager()
        events.subscribe(connections.on_status_changed)

        monitor = ConnectivityMonitor(registry, clients, events, settings.heartbeat_interval)
        reconciliation = ReconciliationService(registry, clients)

        app.state.settings = settings
        app.state.registry = registry
        app.state.clients = clients
        app.state.events = events
        app.state.connections = connections
        app.state.monitor = monitor
        orchestrator = FanoutOrchestrator(registry, clients, settings.fanout_concurrency, settings.fanout_branch_timeout)
        app.state.orchestrator = orchestrator
        app.state.token_issuer = ManagementTokenIssuer(registry, session_maker, settings.token_ttl_days)
        app.state.reconciliation = reconciliation
        app.state.dashboard = DashboardService(registry)

        if settings.monitor_autostart:
            await monitor.start()
        scheduler = build_scheduler(reconciliation, settings.reconcile_interval)
        scheduler.start()
        logger.info("[App] sitefleet started")

        try:
            yield
        finally:
            scheduler.shutdown(wait=False)
            await monitor.stop()
            await orchestrator.drain()
            await clients.aclose()
            await engine.dispose()
            logger.info("[App] sitefleet stopped")

    app = FastAPI(title="sitefleet", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FleetError, fleet_error_handler)

    # Static multi-site paths before the /sites/{site_id} ones
    app.include_router(fanout_api.router, prefix="/api", tags=["Fan-out"])
    app.include_router(dashboard_api.router, prefix="/api", tags=["Dashboard"])
    app.include_router(sites_main_api.router, prefix="/api", tags=["Sites"])
    app.include_router(dashboard_api.ws_router)
    app.include_router(health_api.router)

    return app
