import pytest

from sitefleet.core.constants import SiteKind
from sitefleet.core.errors import Conflict, NotFound, NotReachable, ProtocolError, Unauthorized
from sitefleet.utils.device_clients import BandwidthPolicy, MikrotikRestClient, SiteCredentials, user_patch_fields
from sitefleet.utils.device_clients.models import parse_rate_mbps


@pytest.fixture()
def router(fleet):
    return fleet.add("10.0.0.1")


@pytest.fixture()
async def client(fleet, router):
    calls = []

    async def hook(endpoint, method, status_code):
        calls.append((endpoint, method, status_code))

    creds = SiteCredentials("site-1", SiteKind.REMOTE, "10.0.0.1", 80, "api", "secret")
    rest = MikrotikRestClient(creds, timeout=1.0, transport=fleet.transport(), on_call=hook)
    rest.hook_calls = calls
    yield rest
    await rest.aclose()


async def test_create_user_sends_limits_and_returns_record(client, router):
    policy = BandwidthPolicy(byte_limit=1000, session_timeout=3600)

    record = await client.create_user("alice", "pw", policy)

    assert record["name"] == "alice"
    stored = router.find("users", "alice")
    assert stored["password"] == "pw"
    assert stored["limit-bytes-out"] == "1000"
    assert stored["limit-uptime"] == "3600s"


async def test_create_existing_user_is_conflict(client, router):
    router.add_record("users", name="alice", password="x")

    with pytest.raises(Conflict):
        await client.create_user("alice", "pw")


async def test_listing_is_cached_until_a_mutation(client, router):
    await client.list_users()
    await client.list_users()
    assert router.count("GET", "/ip/hotspot/user") == 1

    await client.create_user("bob", "pw")
    users = await client.list_users()

    assert [u["name"] for u in users] == ["bob"]
    assert router.count("GET", "/ip/hotspot/user") == 2


async def test_update_unknown_user_is_not_found(client):
    with pytest.raises(NotFound):
        await client.update_user("ghost", {"comment": "x"})


async def test_update_retries_once_when_the_id_vanishes(client, router):
    router.add_record("users", name="alice", password="x")
    router.vanish_next_put = True

    record = await client.update_user("alice", user_patch_fields(comment="vip"))

    assert record["comment"] == "vip"
    assert router.count("PUT") == 2
    assert router.find("users", "alice")["comment"] == "vip"


async def test_delete_is_idempotent(client, router):
    router.add_record("users", name="alice", password="x")

    first = await client.delete_user("alice")
    second = await client.delete_user("alice")

    assert first == {"name": "alice", "deleted": True, "already_absent": False, "queue_deleted": False}
    assert second["already_absent"] is True
    assert router.count("DELETE") == 1


async def test_delete_user_removes_its_queue(client, router):
    router.add_record("users", name="alice", password="x")
    router.add_record("queues", name="queue-alice", max_limit="10M/10M")
    router.add_record("queues", name="queue-bob", max_limit="5M/5M")

    result = await client.delete_user("alice")

    assert result["queue_deleted"] is True
    assert router.find("queues", "queue-alice") is None
    assert router.find("queues", "queue-bob") is not None
    assert await client.delete_bandwidth_policy("alice") is False


async def test_partial_policy_only_sends_what_was_set(client, router):
    await client.create_user("alice", "pw", BandwidthPolicy(byte_limit=5000))
    assert "limit-uptime" not in router.find("users", "alice")

    await client.update_user("alice", user_patch_fields(policy=BandwidthPolicy(session_timeout=3600)))

    stored = router.find("users", "alice")
    assert stored["limit-bytes-out"] == "5000"
    assert stored["limit-uptime"] == "3600s"


async def test_hung_controller_times_out_on_the_client_deadline(fleet, router):
    router.delay = 2
    creds = SiteCredentials("site-1", SiteKind.REMOTE, "10.0.0.1", 80, "api", "secret")
    rest = MikrotikRestClient(creds, timeout=0.2, transport=fleet.transport())
    try:
        with pytest.raises(NotReachable):
            await rest.get_identity()
    finally:
        await rest.aclose()


async def test_bandwidth_policy_is_an_upsert(client, router):
    await client.set_bandwidth_policy("alice", BandwidthPolicy(rate_mbps=10, target="10.5.50.7/32"))
    queue = router.find("queues", "queue-alice")
    assert queue["max-limit"] == "10M/10M"
    assert queue["limit-at"] == "5M/5M"
    assert queue["target"] == "10.5.50.7/32"

    await client.set_bandwidth_policy("alice", BandwidthPolicy(rate_mbps=20))

    assert len(router.queues) == 1
    assert router.find("queues", "queue-alice")["max-limit"] == "20M/20M"
    assert router.count("POST", "/queue/simple") == 1


async def test_get_bandwidth_policy_reads_the_queue(client, router):
    router.add_record("queues", name="queue-alice", max_limit="15M/15M", target="10.5.50.9/32")

    result = await client.get_bandwidth_policy("alice")

    assert result["policy"]["rate_mbps"] == 15
    with pytest.raises(NotFound):
        await client.get_bandwidth_policy("bob")


async def test_unauthorized_and_unreachable_controllers(client, router):
    router.mode = "unauthorized"
    with pytest.raises(Unauthorized):
        await client.list_users(use_cache=False)

    router.mode = "down"
    with pytest.raises(NotReachable):
        await client.list_users(use_cache=False)


async def test_unparseable_response_is_protocol_error(client, router):
    router.mode = "garbage"

    with pytest.raises(ProtocolError):
        await client.list_users()


async def test_ping_accepts_any_http_answer(client, router):
    router.mode = "unauthorized"
    assert await client.ping() is True

    router.mode = "down"
    with pytest.raises(NotReachable):
        await client.ping()


async def test_clients_filtered_by_interface(client, router):
    router.add_record("registrations", mac_address="AA:BB:CC:00:00:01", interface="wlan1", last_ip="10.5.50.2")
    router.add_record("registrations", mac_address="AA:BB:CC:00:00:02", interface="wlan2")

    clients = await client.list_clients("wlan1")

    assert [c["mac_address"] for c in clients] == ["AA:BB:CC:00:00:01"]
    assert clients[0]["ip_address"] == "10.5.50.2"


async def test_router_info_combines_identity_and_resources(client, router):
    info = await client.get_router_info()

    assert info["identity"] == "router-10.0.0.1"
    assert info["version"] == "7.14"


async def test_every_call_is_reported_to_the_hook(client, router):
    await client.list_users()
    router.mode = "down"
    with pytest.raises(NotReachable):
        await client.get_identity()

    assert client.hook_calls == [("/ip/hotspot/user", "GET", 200), ("/system/identity", "GET", None)]


def test_rate_parsing():
    assert parse_rate_mbps("10M") == 10
    assert parse_rate_mbps("2000000") == 2
    assert parse_rate_mbps("1G") == 1000
    assert parse_rate_mbps("fast") is None


def test_queue_fields_require_a_rate():
    with pytest.raises(ValueError):
        BandwidthPolicy(byte_limit=5).to_queue_fields()
