import asyncio
import itertools
import json
from datetime import datetime

import httpx
import pytest
from cryptography.fernet import Fernet

from sitefleet.core.constants import SiteKind, SiteStatus
from sitefleet.core.events import EventBus
from sitefleet.db.engine import build_engine, build_session_maker, create_db_and_tables
from sitefleet.services.fanout import FanoutOrchestrator
from sitefleet.services.site_registry import SiteRegistry
from sitefleet.utils.device_clients import ClientProvider
from sitefleet.utils.security import CredentialCipher

ENCRYPTION_KEY = Fernet.generate_key().decode()
MEMORY_DB = "sqlite+aiosqlite:///:memory:"

_COLLECTIONS = {
    "/interface/wireless/registration-table": "registrations",
    "/interface/wireless": "interfaces",
    "/ip/hotspot/user": "users",
    "/queue/simple": "queues",
}


class FakeRouter:
    """
    In-memory RouterOS REST controller.

    ``mode`` switches failure behavior: "ok", "down" (connection refused),
    "unauthorized" (401 on everything) or "garbage" (200 with HTML).
    """

    def __init__(self, host: str, identity: str | None = None):
        self.host = host
        self.identity = identity or f"router-{host}"
        self.mode = "ok"
        self.delay = 0.0
        self.calls: list[tuple[str, str]] = []
        self.vanish_next_put = False
        self._ids = itertools.count(1)
        self.users: dict[str, dict] = {}
        self.queues: dict[str, dict] = {}
        self.interfaces: dict[str, dict] = {}
        self.registrations: dict[str, dict] = {}

    def _new_id(self) -> str:
        return f"*{next(self._ids):X}"

    def add_record(self, collection: str, **fields) -> dict:
        record = {".id": self._new_id(), **{k.replace("_", "-"): v for k, v in fields.items()}}
        getattr(self, collection)[record[".id"]] = record
        return record

    def find(self, collection: str, name: str) -> dict | None:
        return next((r for r in getattr(self, collection).values() if r.get("name") == name), None)

    def count(self, method: str | None = None, prefix: str = "") -> int:
        return sum(1 for m, p in self.calls if (method is None or m == method) and p.startswith(prefix))

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/rest")
        self.calls.append((request.method, path))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.mode == "down":
            raise httpx.ConnectError("Connection refused", request=request)
        if self.mode == "unauthorized":
            return httpx.Response(401, json={"error": 401, "message": "Unauthorized"})
        if self.mode == "garbage":
            return httpx.Response(200, text="<html>captive</html>")

        if path == "/system/identity":
            return httpx.Response(200, json={"name": self.identity})
        if path == "/system/resource":
            return httpx.Response(
                200,
                json={"version": "7.14", "board-name": "hAP ax2", "uptime": "1d2h", "cpu-load": "3"},
            )

        for prefix, collection in _COLLECTIONS.items():
            if path == prefix:
                return self._collection(request, collection)
            if path.startswith(prefix + "/*"):
                return self._item(request, collection, path[len(prefix) + 1 :])
        return httpx.Response(404, json={"error": 404, "message": "Not Found"})

    def _collection(self, request: httpx.Request, collection: str) -> httpx.Response:
        records = getattr(self, collection)
        if request.method == "GET":
            return httpx.Response(200, json=list(records.values()))
        if request.method == "POST":
            payload = _json(request)
            if self.find(collection, payload.get("name")):
                return httpx.Response(
                    400,
                    json={"error": 400, "message": "Bad Request", "detail": "failure: already have user with this name"},
                )
            record = {".id": self._new_id(), **payload}
            records[record[".id"]] = record
            return httpx.Response(200, json=record)
        return httpx.Response(405, json={"error": 405, "message": "Method Not Allowed"})

    def _item(self, request: httpx.Request, collection: str, object_id: str) -> httpx.Response:
        records = getattr(self, collection)
        record = records.get(object_id)
        if record is None:
            return httpx.Response(404, json={"error": 404, "message": "Not Found"})
        if request.method == "GET":
            return httpx.Response(200, json=record)
        if request.method == "PUT":
            if self.vanish_next_put:
                # Someone recreated the object: same name, new id
                self.vanish_next_put = False
                del records[object_id]
                moved = {**record, ".id": self._new_id()}
                records[moved[".id"]] = moved
                return httpx.Response(404, json={"error": 404, "message": "Not Found"})
            record.update(_json(request))
            return httpx.Response(200, json=record)
        if request.method == "DELETE":
            del records[object_id]
            return httpx.Response(204)
        return httpx.Response(405, json={"error": 405, "message": "Method Not Allowed"})


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


class FakeFleet:
    """Routes requests to a FakeRouter by host; unknown hosts refuse connections."""

    def __init__(self):
        self.routers: dict[str, FakeRouter] = {}

    def add(self, host: str, **kwargs) -> FakeRouter:
        router = FakeRouter(host, **kwargs)
        self.routers[host] = router
        return router

    async def handle(self, request: httpx.Request) -> httpx.Response:
        router = self.routers.get(request.url.host)
        if router is None:
            raise httpx.ConnectError("No route to host", request=request)
        return await router.handle(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture()
def fleet():
    return FakeFleet()


@pytest.fixture()
async def session_maker():
    engine = build_engine(MEMORY_DB)
    await create_db_and_tables(engine)
    yield build_session_maker(engine)
    await engine.dispose()


@pytest.fixture()
def cipher():
    return CredentialCipher(ENCRYPTION_KEY)


@pytest.fixture()
def registry(session_maker, cipher):
    return SiteRegistry(session_maker, cipher)


@pytest.fixture()
async def clients(fleet, registry):
    provider = ClientProvider(timeout=1.0, cache_ttl=300, transport=fleet.transport(), hook_factory=registry.api_call_hook)
    yield provider
    await provider.aclose()


@pytest.fixture()
def events():
    return EventBus()


@pytest.fixture()
def orchestrator(registry, clients):
    return FanoutOrchestrator(registry, clients, concurrency=8, branch_timeout=1.0)


@pytest.fixture()
def add_site(fleet, registry):
    """Registers a site backed by a fake controller; returns (site, router)."""

    async def _add_site(name: str, host: str, kind: SiteKind = SiteKind.REMOTE, status: SiteStatus | None = None, **extra):
        router = fleet.add(host)
        site = await registry.register(
            {"name": name, "kind": kind, "host": host, "port": 80, "username": "api", "password": "secret", **extra}
        )
        if status is not None:
            await registry.update_status(site.id, status, datetime.utcnow())
            site = await registry.get(site.id)
        return site, router

    return _add_site
