# sitefleet/services/reconciliation.py
"""
Compares the local mirror against what a controller actually holds.

Detection never heals: the orchestrator's mirror only changes on confirmed
outcomes, and ``sync_mirror`` is an explicit admin action.
"""

import logging
from typing import Any

from ..core.constants import SiteStatus
from ..core.errors import FleetError
from ..utils.device_clients import BandwidthPolicy, ClientProvider, queue_name_for
from .site_registry import SiteRegistry

logger = logging.getLogger(__name__)


def _parse_uptime_seconds(value: Any) -> int:
    """RouterOS durations like ``1h30m`` or ``3600s``; plain numbers are seconds."""
    text = str(value or "").strip()
    if not text:
        return 0
    if text.isdigit():
        return int(text)
    factors = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1}
    total, number = 0, ""
    for char in text:
        if char.isdigit():
            number += char
        elif char in factors and number:
            total += int(number) * factors[char]
            number = ""
        else:
            return 0
    return total


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class ReconciliationService:
    def __init__(self, registry: SiteRegistry, clients: ClientProvider):
        self._registry = registry
        self._clients = clients

    async def detect_divergence(self, site_id: str) -> dict[str, Any]:
        site = await self._registry.get(site_id)
        client = await self._clients.get(self._registry.credentials_for(site))
        remote_users = await client.list_users(use_cache=False)
        mirror = await self._registry.list_mirror(site_id)

        remote_names = {u.get("name") for u in remote_users if u.get("name")}
        mirrored_names = {m.username for m in mirror}
        report = {
            "site_id": site_id,
            "missing_on_remote": sorted(mirrored_names - remote_names),
            "not_mirrored": sorted(remote_names - mirrored_names),
            "remote_count": len(remote_names),
            "mirror_count": len(mirrored_names),
        }
        report["in_sync"] = not report["missing_on_remote"] and not report["not_mirrored"]
        return report

    async def sync_mirror(self, site_id: str) -> dict[str, Any]:
        """Replaces the site's mirror with the controller's current user list."""
        site = await self._registry.get(site_id)
        client = await self._clients.get(self._registry.credentials_for(site))
        remote_users = await client.list_users(use_cache=False)
        queues = {q.get("name"): q for q in await client.list_queues(use_cache=False)}

        entries = []
        for user in remote_users:
            name = user.get("name")
            if not name:
                continue
            entry = {
                "username": name,
                "byte_limit": _int_or_zero(user.get("limit-bytes-out")),
                "session_timeout": _parse_uptime_seconds(user.get("limit-uptime")),
                "remote_state": user,
            }
            queue = queues.get(queue_name_for(name))
            if queue is not None:
                policy = BandwidthPolicy.from_queue(queue)
                entry["rate_mbps"] = policy.rate_mbps
                entry["target"] = policy.target
            entries.append(entry)

        count = await self._registry.replace_mirror(site_id, entries)
        logger.info(f"[Reconciliation] Mirror of site {site_id} replaced with {count} remote user(s)")
        return {"site_id": site_id, "synced": count}

    async def check_all(self) -> list[dict[str, Any]]:
        """Divergence sweep over online sites; failures are logged, not raised."""
        reports = []
        for site in await self._registry.list_by_status([SiteStatus.ONLINE]):
            try:
                report = await self.detect_divergence(site.id)
            except FleetError as e:
                logger.warning(f"[Reconciliation] Could not check site {site.id}: {e.kind}: {e.message}")
                continue
            if not report["in_sync"]:
                logger.warning(
                    f"[Reconciliation] Site {site.id} diverges: "
                    f"{len(report['missing_on_remote'])} missing on remote, "
                    f"{len(report['not_mirrored'])} not mirrored"
                )
            reports.append(report)
        return reports
