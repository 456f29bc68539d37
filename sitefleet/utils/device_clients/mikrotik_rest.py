# sitefleet/utils/device_clients/mikrotik_rest.py
"""
Async client for the RouterOS REST control plane of one site.

Every vendor object is addressed by its internal ``.id``; operations that take
a username first list the collection and find the object by name. Listings
are cached per client instance with a short TTL and invalidated by the
mutations that touch them.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from ...core.constants import (
    HOTSPOT_USER_PATH,
    REGISTRATION_TABLE_PATH,
    SIMPLE_QUEUE_PATH,
    SYSTEM_IDENTITY_PATH,
    SYSTEM_RESOURCE_PATH,
    WIRELESS_INTERFACE_PATH,
)
from ...core.errors import Conflict, NotFound, NotReachable, ProtocolError, Unauthorized
from ..cache import CacheStore
from .models import BandwidthPolicy, SiteCredentials, queue_name_for

logger = logging.getLogger(__name__)

# Hook receiving (endpoint, method, status_code or None) after every vendor call
CallHook = Callable[[str, str, Optional[int]], Awaitable[None]]

_CONFLICT_MARKERS = ("already have", "already exists")


class MikrotikRestClient:
    """Talks to one site's controller. Owns its HTTP session and its cache."""

    USERS_KEY = "users"
    QUEUES_KEY = "queues"
    INTERFACES_KEY = "interfaces"
    CLIENTS_KEY = "clients"

    def __init__(
        self,
        creds: SiteCredentials,
        timeout: float = 5.0,
        cache_ttl: int = 300,
        verify_tls: bool = False,
        ping_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_call: CallHook | None = None,
    ):
        self.site_id = creds.site_id
        self.host = creds.host
        scheme = "https" if creds.use_ssl else "http"
        self.base_url = f"{scheme}://{creds.host}:{creds.port}/rest"
        self.timeout = timeout
        self.ping_timeout = ping_timeout or min(timeout, 2.0)
        self.cache = CacheStore(name=f"site:{creds.site_id}", default_ttl=cache_ttl)
        self._on_call = on_call
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(creds.username, creds.password),
            timeout=httpx.Timeout(timeout),
            verify=verify_tls,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Transport ---

    async def _send(self, method: str, path: str, json: Any = None, timeout: float | None = None) -> httpx.Response:
        """
        One vendor call. ``timeout`` (or the client default) bounds the whole
        exchange, whatever transport sits underneath.
        """
        limit = timeout or self.timeout
        status_code = None
        try:
            response = await asyncio.wait_for(
                self._client.request(method, path, json=json, timeout=httpx.Timeout(limit)),
                timeout=limit,
            )
            status_code = response.status_code
            return response
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise NotReachable(f"Timeout talking to {self.host}: {type(e).__name__}", self.site_id)
        except httpx.TransportError as e:
            raise NotReachable(f"Cannot reach {self.host}: {e}", self.site_id)
        finally:
            await self._report(path, method, status_code)

    async def _report(self, path: str, method: str, status_code: int | None) -> None:
        if self._on_call is None:
            return
        try:
            await self._on_call(path, method, status_code)
        except Exception as e:
            logger.warning(f"[MikrotikRest] Call hook failed for {self.host}: {e}")

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        response = await self._send(method, path, json=json)
        self._raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise ProtocolError(f"Non-JSON response from {self.host}{path}", self.site_id)

    def _raise_for_status(self, response: httpx.Response) -> None:
        code = response.status_code
        if code < 400:
            return
        detail = self._error_detail(response)
        if code in (401, 403):
            raise Unauthorized(f"{self.host} rejected the credentials ({code})", self.site_id)
        if code == 404:
            raise NotFound(f"{response.request.url.path} not found on {self.host}", self.site_id)
        if code == 400 and any(m in detail.lower() for m in _CONFLICT_MARKERS):
            raise Conflict(detail, self.site_id)
        raise ProtocolError(f"HTTP {code} from {self.host}: {detail}", self.site_id)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("message") or body)
        return str(body)

    def _expect_list(self, data: Any, path: str) -> list[dict[str, Any]]:
        if not isinstance(data, list) or not all(isinstance(i, dict) for i in data):
            raise ProtocolError(f"Expected a list of records from {path}", self.site_id)
        return data

    def _expect_record(self, data: Any, path: str) -> dict[str, Any]:
        if isinstance(data, list) and len(data) == 1 and isinstance(data[0], dict):
            return data[0]
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected a record from {path}", self.site_id)
        return data

    async def _list(self, path: str, cache_key: str, use_cache: bool = True) -> list[dict[str, Any]]:
        async def load() -> list[dict[str, Any]]:
            return self._expect_list(await self._request("GET", path), path)

        return await self.cache.get_or_load(cache_key, load, fresh=not use_cache)

    async def _resolve_id(self, path: str, cache_key: str, name: str) -> str | None:
        """List fresh and find the internal ``.id`` of the object called ``name``."""
        for record in await self._list(path, cache_key, use_cache=False):
            if record.get("name") == name:
                object_id = record.get(".id")
                if not object_id:
                    raise ProtocolError(f"Record '{name}' on {self.host} has no .id", self.site_id)
                return object_id
        return None

    # --- Hotspot users ---

    async def create_user(self, username: str, password: str, policy: BandwidthPolicy | None = None) -> dict[str, Any]:
        payload = {"name": username, "password": password}
        payload.update((policy or BandwidthPolicy()).to_user_fields())
        with self.cache.invalidating(self.USERS_KEY):
            data = await self._request("POST", HOTSPOT_USER_PATH, json=payload)
        record = self._expect_record(data, HOTSPOT_USER_PATH) if data is not None else {}
        logger.info(f"[MikrotikRest] Created hotspot user {username} on {self.host}")
        return {"name": username, **record}

    async def update_user(self, username: str, patch: dict[str, Any]) -> dict[str, Any]:
        if not patch:
            raise ValueError("Empty patch")
        with self.cache.invalidating(self.USERS_KEY):
            data = await self._mutate_by_name(HOTSPOT_USER_PATH, self.USERS_KEY, username, "PUT", patch)
        logger.info(f"[MikrotikRest] Updated hotspot user {username} on {self.host}")
        return self._expect_record(data, HOTSPOT_USER_PATH) if data is not None else {"name": username}

    async def delete_user(self, username: str) -> dict[str, Any]:
        """
        Deletes ``username`` together with its ``queue-<username>``. An absent
        user or queue counts as deleted.
        """
        deleted = await self._delete_by_name(HOTSPOT_USER_PATH, self.USERS_KEY, username)
        if deleted:
            logger.info(f"[MikrotikRest] Deleted hotspot user {username} from {self.host}")
        else:
            logger.info(f"[MikrotikRest] User {username} already absent on {self.host}")
        queue_deleted = await self.delete_bandwidth_policy(username)
        return {"name": username, "deleted": deleted, "already_absent": not deleted, "queue_deleted": queue_deleted}

    async def _delete_by_name(self, path: str, cache_key: str, name: str) -> bool:
        """Resolve-then-delete. Returns False when nothing by that name existed."""
        with self.cache.invalidating(cache_key):
            object_id = await self._resolve_id(path, cache_key, name)
            if object_id is None:
                return False
            try:
                await self._request("DELETE", f"{path}/{object_id}")
            except NotFound:
                # Removed by someone else between resolve and delete; same end state
                return False
            return True

    async def _mutate_by_name(self, path: str, cache_key: str, name: str, method: str, payload: dict) -> Any:
        """
        Resolve-then-mutate with one retry when the resolved id disappears
        before the mutation lands.
        """
        for attempt in range(2):
            object_id = await self._resolve_id(path, cache_key, name)
            if object_id is None:
                raise NotFound(f"'{name}' not found on {self.host}", self.site_id)
            try:
                return await self._request(method, f"{path}/{object_id}", json=payload)
            except NotFound:
                if attempt:
                    raise
                logger.warning(f"[MikrotikRest] Id {object_id} for '{name}' vanished on {self.host}, resolving again")

    async def list_users(self, use_cache: bool = True) -> list[dict[str, Any]]:
        return await self._list(HOTSPOT_USER_PATH, self.USERS_KEY, use_cache)

    # --- Bandwidth queues ---

    async def list_queues(self, use_cache: bool = True) -> list[dict[str, Any]]:
        return await self._list(SIMPLE_QUEUE_PATH, self.QUEUES_KEY, use_cache)

    async def set_bandwidth_policy(self, username: str, policy: BandwidthPolicy) -> dict[str, Any]:
        """Creates or updates the ``queue-<username>`` simple queue."""
        name = queue_name_for(username)
        fields = policy.to_queue_fields()
        with self.cache.invalidating(self.QUEUES_KEY):
            try:
                data = await self._mutate_by_name(SIMPLE_QUEUE_PATH, self.QUEUES_KEY, name, "PUT", fields)
            except NotFound:
                data = await self._request("POST", SIMPLE_QUEUE_PATH, json={"name": name, **fields})
        logger.info(f"[MikrotikRest] Bandwidth for {username} set to {policy.rate_mbps}M on {self.host}")
        record = self._expect_record(data, SIMPLE_QUEUE_PATH) if data is not None else {}
        return {"name": name, **fields, **record}

    async def delete_bandwidth_policy(self, username: str) -> bool:
        """Removes ``queue-<username>``. Returns False when there was none."""
        deleted = await self._delete_by_name(SIMPLE_QUEUE_PATH, self.QUEUES_KEY, queue_name_for(username))
        if deleted:
            logger.info(f"[MikrotikRest] Removed bandwidth queue for {username} on {self.host}")
        return deleted

    async def get_bandwidth_policy(self, username: str) -> dict[str, Any]:
        name = queue_name_for(username)
        for queue in await self.list_queues():
            if queue.get("name") == name:
                return {
                    "username": username,
                    "policy": BandwidthPolicy.from_queue(queue).model_dump(),
                    "queue": queue,
                }
        raise NotFound(f"No bandwidth queue for '{username}' on {self.host}", self.site_id)

    # --- Read-only enumeration ---

    async def list_interfaces(self) -> list[dict[str, Any]]:
        interfaces = await self._list(WIRELESS_INTERFACE_PATH, self.INTERFACES_KEY)
        return [
            {
                "id": i.get(".id"),
                "name": i.get("name"),
                "ssid": i.get("ssid"),
                "frequency": i.get("frequency"),
                "band": i.get("band"),
                "mode": i.get("mode"),
                "running": i.get("running"),
            }
            for i in interfaces
        ]

    async def list_clients(self, interface: str | None = None) -> list[dict[str, Any]]:
        registrations = await self._list(REGISTRATION_TABLE_PATH, self.CLIENTS_KEY)
        return [
            {
                "mac_address": c.get("mac-address"),
                "ip_address": c.get("last-ip") or c.get("ipv4-address"),
                "interface": c.get("interface"),
                "signal": c.get("signal-strength") or c.get("signal"),
                "tx_rate": c.get("tx-rate"),
                "rx_rate": c.get("rx-rate"),
                "uptime": c.get("uptime"),
            }
            for c in registrations
            if interface is None or c.get("interface") == interface
        ]

    async def get_identity(self) -> dict[str, Any]:
        identity = self._expect_record(await self._request("GET", SYSTEM_IDENTITY_PATH), SYSTEM_IDENTITY_PATH)
        if "name" not in identity:
            raise ProtocolError(f"Identity from {self.host} has no name", self.site_id)
        return identity

    async def get_resources(self) -> dict[str, Any]:
        return self._expect_record(await self._request("GET", SYSTEM_RESOURCE_PATH), SYSTEM_RESOURCE_PATH)

    async def get_router_info(self) -> dict[str, Any]:
        identity = await self.get_identity()
        resources = await self.get_resources()
        return {
            "identity": identity.get("name"),
            "version": resources.get("version"),
            "board_name": resources.get("board-name"),
            "uptime": resources.get("uptime"),
            "cpu_load": resources.get("cpu-load"),
            "free_memory": resources.get("free-memory"),
            "total_memory": resources.get("total-memory"),
        }

    async def ping(self) -> bool:
        """
        Liveness only: any HTTP answer from the controller means it is up,
        even an authentication error.
        """
        await self._send("GET", SYSTEM_IDENTITY_PATH, timeout=self.ping_timeout)
        return True
