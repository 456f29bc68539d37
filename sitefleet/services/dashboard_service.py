# sitefleet/services/dashboard_service.py
from typing import Any

from ..core.constants import SiteStatus
from .site_registry import SiteRegistry


class DashboardService:
    """Aggregates registry state for the overview page. Never probes devices."""

    def __init__(self, registry: SiteRegistry):
        self._registry = registry

    async def overview(self) -> dict[str, Any]:
        sites = await self._registry.list_sites()
        counts = await self._registry.mirror_counts()

        per_site = []
        for site in sites:
            users = counts.get(site.id, 0)
            per_site.append(
                {
                    "id": site.id,
                    "name": site.name,
                    "location": site.location,
                    "kind": site.kind.value,
                    "status": site.status.value,
                    "last_heartbeat": site.last_heartbeat.isoformat() if site.last_heartbeat else None,
                    "parent_site_id": site.parent_site_id,
                    "users": users,
                    "max_users": site.max_users,
                    "utilization": round(users / site.max_users * 100, 1) if site.max_users else None,
                    "bandwidth_mbps": site.bandwidth_mbps,
                }
            )

        by_status = {status.value: 0 for status in SiteStatus}
        for site in sites:
            by_status[site.status.value] += 1

        return {
            "totals": {
                "sites": len(sites),
                "online_sites": by_status[SiteStatus.ONLINE.value],
                "offline_sites": by_status[SiteStatus.OFFLINE.value],
                "unknown_sites": by_status[SiteStatus.UNKNOWN.value],
                "users": sum(counts.get(s.id, 0) for s in sites),
                "bandwidth_mbps": sum(s.bandwidth_mbps or 0 for s in sites),
            },
            "sites": per_site,
        }
