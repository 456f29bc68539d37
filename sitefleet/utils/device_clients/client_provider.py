# sitefleet/utils/device_clients/client_provider.py
import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

import httpx

from ..locks import KeyedLock
from .mikrotik_rest import CallHook, MikrotikRestClient
from .models import SiteCredentials

logger = logging.getLogger(__name__)

# Builds the audit hook for a given site id (or None for no auditing)
HookFactory = Callable[[str], Optional[CallHook]]

# Resolve-then-mutate plus a queue step is at most this many sequential calls
_CALLS_PER_OPERATION = 4


class ClientProvider:
    """
    Keeps one REST client per site id and rebuilds it when the site's
    endpoint or credentials change.

    A replaced client is closed only after its in-flight calls had time to
    finish (each call is bounded by ``timeout``).
    """

    def __init__(
        self,
        timeout: float = 5.0,
        cache_ttl: int = 300,
        verify_tls: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
        hook_factory: HookFactory | None = None,
    ):
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.verify_tls = verify_tls
        self._transport = transport
        self._hook_factory = hook_factory
        self._clients: Dict[str, Tuple[tuple, MikrotikRestClient]] = {}
        self._locks = KeyedLock()
        self._retiring: Dict[asyncio.Task, MikrotikRestClient] = {}

    @property
    def retire_grace(self) -> float:
        return self.timeout * _CALLS_PER_OPERATION

    async def get(self, creds: SiteCredentials) -> MikrotikRestClient:
        cached = self._clients.get(creds.site_id)
        if cached is not None and cached[0] == creds.fingerprint:
            return cached[1]

        async with self._locks.hold(creds.site_id):
            # Another caller may have rebuilt it while we waited
            cached = self._clients.get(creds.site_id)
            if cached is not None:
                fingerprint, client = cached
                if fingerprint == creds.fingerprint:
                    return client
                logger.info(f"[ClientProvider] Credentials changed for site {creds.site_id}, rebuilding client")
                self._retire(client)

            client = MikrotikRestClient(
                creds,
                timeout=self.timeout,
                cache_ttl=self.cache_ttl,
                verify_tls=self.verify_tls,
                transport=self._transport,
                on_call=self._hook_factory(creds.site_id) if self._hook_factory else None,
            )
            self._clients[creds.site_id] = (creds.fingerprint, client)
            return client

    def _retire(self, client: MikrotikRestClient) -> None:
        async def _close_later() -> None:
            await asyncio.sleep(self.retire_grace)
            await client.aclose()

        task = asyncio.create_task(_close_later(), name=f"retire-client:{client.site_id}")
        self._retiring[task] = client
        task.add_done_callback(lambda t: self._retiring.pop(t, None))

    async def drop(self, site_id: str) -> None:
        async with self._locks.hold(site_id):
            cached = self._clients.pop(site_id, None)
        if cached is not None:
            await cached[1].aclose()

    async def aclose(self) -> None:
        for site_id in list(self._clients):
            await self.drop(site_id)
        retiring = dict(self._retiring)
        for task in retiring:
            task.cancel()
        await asyncio.gather(*retiring, return_exceptions=True)
        for client in retiring.values():
            await client.aclose()

    @property
    def retiring(self) -> int:
        return len(self._retiring)

    def __len__(self) -> int:
        return len(self._clients)
