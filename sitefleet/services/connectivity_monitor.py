# sitefleet/services/connectivity_monitor.py
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.constants import SiteKind, SiteStatus
from ..core.errors import FleetError, SiteNotFound
from ..core.events import EventBus, SiteStatusChanged
from ..models.site import Site
from ..utils.device_clients import ClientProvider
from .site_registry import SiteRegistry

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    site_id: str
    status: SiteStatus
    reachable: bool
    checked_at: datetime
    detail: Any = None

    def to_dict(self) -> dict:
        return {
            "site_id": self.site_id,
            "status": self.status.value,
            "connected": self.reachable,
            "checked_at": self.checked_at.isoformat(),
            "detail": self.detail,
        }


class ConnectivityMonitor:
    """
    Heartbeat loops, one asyncio task per site.

    Features:
    - Independent interval per site; a hung site only delays its own loop
    - No retry inside a tick: the next tick is the retry
    - Probe errors end up as an ``offline`` status, never as exceptions
    - Events only on status transitions, not per tick
    """

    def __init__(
        self,
        registry: SiteRegistry,
        clients: ClientProvider,
        events: EventBus,
        default_interval: float = 60.0,
    ):
        self._registry = registry
        self._clients = clients
        self._events = events
        self.default_interval = default_interval
        self._running = False
        self._tasks: Dict[str, asyncio.Task] = {}
        self._statuses: Dict[str, SiteStatus] = {}
        logger.info(f"[ConnectivityMonitor] Initialized (default interval: {default_interval}s)")

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Starts a heartbeat loop for every registered site."""
        self._running = True
        sites = await self._registry.list_sites()
        for site in sites:
            self.watch(site)
        logger.info(f"[ConnectivityMonitor] Started, watching {len(sites)} site(s)")

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("[ConnectivityMonitor] Stopped")

    def watch(self, site: Site) -> None:
        """Starts (or restarts with the current interval) the loop for ``site``."""
        self._statuses.setdefault(site.id, site.status)
        if not self._running:
            return
        previous = self._tasks.pop(site.id, None)
        if previous is not None:
            previous.cancel()
        interval = site.heartbeat_interval or self.default_interval
        self._tasks[site.id] = asyncio.create_task(self._loop(site.id, interval), name=f"heartbeat:{site.id}")
        logger.info(f"[ConnectivityMonitor] Watching site {site.id} every {interval}s")

    async def unwatch(self, site_id: str) -> None:
        task = self._tasks.pop(site_id, None)
        self._statuses.pop(site_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info(f"[ConnectivityMonitor] Stopped watching site {site_id}")

    def is_watching(self, site_id: str) -> bool:
        return site_id in self._tasks

    def status_of(self, site_id: str) -> Optional[SiteStatus]:
        return self._statuses.get(site_id)

    async def _loop(self, site_id: str, interval: float) -> None:
        while self._running:
            try:
                await self.probe_once(site_id)
            except SiteNotFound:
                logger.info(f"[ConnectivityMonitor] Site {site_id} no longer registered, stopping its loop")
                self._tasks.pop(site_id, None)
                return
            except Exception as e:
                logger.exception(f"[ConnectivityMonitor] Unexpected error in heartbeat for {site_id}: {e}")
            await asyncio.sleep(interval)

    async def probe_once(self, site_id: str) -> ProbeResult:
        """
        One heartbeat tick: probe, persist status and heartbeat, emit an event
        if the status changed. Raises only SiteNotFound.
        """
        site = await self._registry.find(site_id)
        if site is None:
            raise SiteNotFound(f"Site {site_id} not found", site_id)

        reachable, detail = await self._probe(site)
        new_status = SiteStatus.ONLINE if reachable else SiteStatus.OFFLINE
        old_status = self._statuses.get(site_id, site.status)
        checked_at = datetime.utcnow()

        try:
            await self._registry.update_status(site_id, new_status, checked_at)
        except Exception as e:
            logger.error(f"[ConnectivityMonitor] Could not persist status for {site_id}: {e}")
        self._statuses[site_id] = new_status

        if old_status != new_status:
            logger.info(f"[ConnectivityMonitor] Site {site_id}: {old_status.value} -> {new_status.value}")
            await self._events.publish(SiteStatusChanged(site_id, old_status, new_status, checked_at))

        return ProbeResult(site_id, new_status, reachable, checked_at, detail)

    async def _probe(self, site: Site) -> tuple[bool, Any]:
        client = await self._clients.get(self._registry.credentials_for(site))
        try:
            if site.kind == SiteKind.LOCAL:
                await client.ping()
                return True, {"type": "local"}
            identity = await client.get_identity()
            return True, {"type": "remote", "identity": identity.get("name")}
        except FleetError as e:
            logger.warning(f"[ConnectivityMonitor] Probe failed for {site.id} ({site.host}): {e.kind}: {e.message}")
            return False, {"error": e.kind, "message": e.message}
        except Exception as e:
            logger.error(f"[ConnectivityMonitor] Probe crashed for {site.id} ({site.host}): {e}")
            return False, {"error": "InternalError", "message": str(e)}
