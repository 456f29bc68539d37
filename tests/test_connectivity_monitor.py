import asyncio

import pytest

from sitefleet.core.constants import SiteKind, SiteStatus
from sitefleet.core.errors import SiteNotFound
from sitefleet.services.connectivity_monitor import ConnectivityMonitor
from sitefleet.utils.device_clients import ClientProvider


@pytest.fixture()
def monitor(registry, clients, events):
    return ConnectivityMonitor(registry, clients, events, default_interval=0.05)


@pytest.fixture()
def received(events):
    seen = []

    async def collect(event):
        seen.append(event)

    events.subscribe(collect)
    return seen


async def test_status_follows_probes_and_events_only_on_change(monitor, registry, add_site, received):
    site, router = await add_site("North", "10.2.0.1")

    for mode in ("ok", "down", "ok", "ok"):
        router.mode = mode
        await monitor.probe_once(site.id)

    transitions = [(e.old_status, e.new_status) for e in received]
    assert transitions == [
        (SiteStatus.UNKNOWN, SiteStatus.ONLINE),
        (SiteStatus.ONLINE, SiteStatus.OFFLINE),
        (SiteStatus.OFFLINE, SiteStatus.ONLINE),
    ]
    stored = await registry.get(site.id)
    assert stored.status == SiteStatus.ONLINE
    assert stored.last_heartbeat is not None


async def test_probe_failures_become_offline(monitor, add_site):
    site, router = await add_site("South", "10.2.0.2")
    router.mode = "garbage"

    result = await monitor.probe_once(site.id)

    assert result.status == SiteStatus.OFFLINE
    assert result.detail["error"] == "ProtocolError"


async def test_local_sites_only_need_an_http_answer(monitor, add_site):
    local, local_router = await add_site("Hub", "10.2.0.3", kind=SiteKind.LOCAL)
    remote, remote_router = await add_site("Edge", "10.2.0.4")
    local_router.mode = remote_router.mode = "unauthorized"

    assert (await monitor.probe_once(local.id)).status == SiteStatus.ONLINE
    assert (await monitor.probe_once(remote.id)).status == SiteStatus.OFFLINE


async def test_failing_subscriber_does_not_break_the_tick(monitor, events, add_site, received):
    async def broken(event):
        raise RuntimeError("dashboard gone")

    events.subscribe(broken)
    site, _ = await add_site("West", "10.2.0.5")

    result = await monitor.probe_once(site.id)

    assert result.status == SiteStatus.ONLINE
    assert len(received) == 1


async def test_unknown_site_raises(monitor):
    with pytest.raises(SiteNotFound):
        await monitor.probe_once("missing")


async def test_slow_site_does_not_delay_others(monitor, registry, add_site):
    slow, slow_router = await add_site("Slow", "10.2.0.6")
    fast, fast_router = await add_site("Fast", "10.2.0.7")
    slow_router.delay = 5

    await monitor.start()
    try:
        await asyncio.sleep(0.3)
        assert monitor.is_watching(slow.id) and monitor.is_watching(fast.id)
        assert fast_router.count("GET", "/system/identity") >= 2
        assert monitor.status_of(fast.id) == SiteStatus.ONLINE
        assert monitor.status_of(slow.id) == SiteStatus.UNKNOWN
    finally:
        await monitor.stop()

    assert not monitor.is_watching(fast.id)


async def test_hung_site_goes_offline_only_after_its_own_timeout(registry, events, fleet, add_site):
    clients = ClientProvider(timeout=0.3, transport=fleet.transport())
    monitor = ConnectivityMonitor(registry, clients, events, default_interval=0.05)
    hung, hung_router = await add_site("Hung", "10.2.0.9")
    fast, _ = await add_site("Quick", "10.2.0.10")
    hung_router.delay = 5

    await monitor.start()
    try:
        await asyncio.sleep(0.15)
        assert monitor.status_of(hung.id) != SiteStatus.OFFLINE
        assert monitor.status_of(fast.id) == SiteStatus.ONLINE

        await asyncio.sleep(0.45)
        assert monitor.status_of(hung.id) == SiteStatus.OFFLINE
        assert monitor.status_of(fast.id) == SiteStatus.ONLINE
        assert (await registry.get(fast.id)).status == SiteStatus.ONLINE
    finally:
        await monitor.stop()
        await clients.aclose()


async def test_loop_ends_when_site_is_removed(monitor, registry, add_site):
    site, _ = await add_site("Gone", "10.2.0.8")
    await monitor.start()
    await registry.delete(site.id)

    await asyncio.sleep(0.2)

    assert not monitor.is_watching(site.id)
    await monitor.stop()
