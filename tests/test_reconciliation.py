from sitefleet.core.constants import SiteStatus
from sitefleet.services.dashboard_service import DashboardService
from sitefleet.services.reconciliation import ReconciliationService, _parse_uptime_seconds
from sitefleet.utils.device_clients import BandwidthPolicy


async def test_divergence_reports_both_directions_without_healing(registry, clients, add_site):
    site, router = await add_site("A", "10.5.0.1")
    router.add_record("users", name="bob", password="x")
    await registry.record_mirror(site.id, "alice", BandwidthPolicy())
    service = ReconciliationService(registry, clients)

    report = await service.detect_divergence(site.id)

    assert report["missing_on_remote"] == ["alice"]
    assert report["not_mirrored"] == ["bob"]
    assert report["in_sync"] is False
    assert [m.username for m in await registry.list_mirror(site.id)] == ["alice"]


async def test_sync_mirror_adopts_the_remote_list(registry, clients, add_site):
    site, router = await add_site("A", "10.5.0.1")
    router.add_record("users", name="bob", password="x", limit_bytes_out="2048", limit_uptime="1h30m")
    router.add_record("queues", name="queue-bob", max_limit="8M/8M")
    await registry.record_mirror(site.id, "alice", BandwidthPolicy())
    service = ReconciliationService(registry, clients)

    assert (await service.sync_mirror(site.id))["synced"] == 1

    entries = await registry.list_mirror(site.id)
    assert [(e.username, e.byte_limit, e.session_timeout, e.rate_mbps) for e in entries] == [("bob", 2048, 5400, 8)]
    assert (await service.detect_divergence(site.id))["in_sync"] is True


async def test_check_all_only_visits_online_sites(registry, clients, add_site):
    online, online_router = await add_site("On", "10.5.0.1", status=SiteStatus.ONLINE)
    _, offline_router = await add_site("Off", "10.5.0.2", status=SiteStatus.OFFLINE)
    online_router.add_record("users", name="bob", password="x")

    reports = await ReconciliationService(registry, clients).check_all()

    assert [r["site_id"] for r in reports] == [online.id]
    assert offline_router.calls == []


async def test_overview_counts_from_registry_state(registry, add_site):
    a, _ = await add_site("A", "10.5.0.1", status=SiteStatus.ONLINE, max_users=4, bandwidth_mbps=100)
    await add_site("B", "10.5.0.2", status=SiteStatus.OFFLINE)
    await registry.record_mirror(a.id, "alice")

    overview = await DashboardService(registry).overview()

    assert overview["totals"]["sites"] == 2
    assert overview["totals"]["online_sites"] == 1
    assert overview["totals"]["users"] == 1
    site_a = next(s for s in overview["sites"] if s["id"] == a.id)
    assert site_a["utilization"] == 25.0


def test_uptime_parsing():
    assert _parse_uptime_seconds("3600s") == 3600
    assert _parse_uptime_seconds("1d2h") == 93600
    assert _parse_uptime_seconds("") == 0
    assert _parse_uptime_seconds("soon") == 0
