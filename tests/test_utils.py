import asyncio
from datetime import datetime

import pytest
from cryptography.fernet import Fernet

from sitefleet.core.constants import SiteKind, SiteStatus
from sitefleet.core.events import EventBus, SiteStatusChanged
from sitefleet.utils.cache import CacheStore
from sitefleet.utils.device_clients import ClientProvider, SiteCredentials
from sitefleet.utils.locks import KeyedLock
from sitefleet.utils.security import CredentialCipher


def test_cache_entries_expire():
    store = CacheStore("test", default_ttl=0)
    store.set("users", [1], ttl=-1)

    assert store.get("users") is None
    store.set("queues", [2])
    assert store.get("queues") == [2]
    assert store.delete("queues") is True
    assert store.size == 0


def test_cache_evicts_oldest_when_full():
    store = CacheStore("test", max_size=2)
    store.set("a", 1)
    store.set("b", 2)
    store.set("c", 3)

    assert store.get("a") is None
    assert store.get("c") == 3


async def test_cache_loads_once_and_drops_keys_around_mutations():
    store = CacheStore("test")
    loads = []

    async def loader():
        loads.append(1)
        return ["alice"]

    assert await store.get_or_load("users", loader) == ["alice"]
    assert await store.get_or_load("users", loader) == ["alice"]
    assert await store.get_or_load("users", loader, fresh=True) == ["alice"]
    assert len(loads) == 2
    assert (store.hits, store.misses) == (1, 2)

    with pytest.raises(RuntimeError):
        with store.invalidating("users"):
            raise RuntimeError("call failed")
    assert store.get("users") is None


def test_cipher_round_trip_and_plaintext_fallback():
    cipher = CredentialCipher(Fernet.generate_key().decode())
    secret = cipher.encrypt("pw")

    assert secret != "pw"
    assert cipher.decrypt(secret) == "pw"
    assert cipher.decrypt("legacy-plain") == "legacy-plain"


def test_cipher_requires_key_in_production():
    with pytest.raises(RuntimeError):
        CredentialCipher(None, app_env="production")
    assert CredentialCipher(None).enabled is False


async def test_keyed_lock_serializes_one_key_only():
    locks = KeyedLock()
    order = []

    async def worker(key, name, pause):
        async with locks.hold(key):
            order.append(f"{name}-in")
            await asyncio.sleep(pause)
            order.append(f"{name}-out")

    await asyncio.gather(worker("k1", "a", 0.05), worker("k1", "b", 0), worker("k2", "c", 0))

    assert order.index("a-out") < order.index("b-in")
    assert order.index("c-in") < order.index("a-out")
    assert len(locks) == 0


async def test_event_bus_unsubscribe():
    bus = EventBus()
    seen = []

    async def collect(event):
        seen.append(event.new_status)

    unsubscribe = bus.subscribe(collect)
    event = SiteStatusChanged("s1", SiteStatus.UNKNOWN, SiteStatus.ONLINE, datetime.utcnow())
    await bus.publish(event)
    unsubscribe()
    await bus.publish(event)

    assert seen == [SiteStatus.ONLINE]
    assert bus.subscriber_count == 0


async def test_client_provider_rebuilds_on_credential_change(fleet):
    fleet.add("10.6.0.1")
    provider = ClientProvider(transport=fleet.transport())
    creds = SiteCredentials("s1", SiteKind.REMOTE, "10.6.0.1", 80, "api", "pw")

    first = await provider.get(creds)
    assert await provider.get(creds) is first

    rotated = await provider.get(SiteCredentials("s1", SiteKind.REMOTE, "10.6.0.1", 80, "api", "new"))
    assert rotated is not first
    assert len(provider) == 1
    # Callers still holding the old client can finish their call
    assert provider.retiring == 1
    assert (await first.get_identity())["name"] == "router-10.6.0.1"

    await provider.aclose()
    assert len(provider) == 0
    assert provider.retiring == 0


async def test_concurrent_rebuilds_share_one_client(fleet):
    provider = ClientProvider(transport=fleet.transport())
    await provider.get(SiteCredentials("s1", SiteKind.REMOTE, "10.6.0.1", 80, "api", "pw"))
    rotated = SiteCredentials("s1", SiteKind.REMOTE, "10.6.0.1", 80, "api", "new")

    built = await asyncio.gather(*(provider.get(rotated) for _ in range(5)))

    assert len({id(c) for c in built}) == 1
    assert provider.retiring == 1
    await provider.aclose()
