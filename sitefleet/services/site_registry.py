# sitefleet/services/site_registry.py
"""
Source of truth for which sites exist and how to reach them.

It is NOT the source of truth for what is provisioned on a controller: the
mirror tables only record what the orchestrator saw confirmed remotely.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence

from ..core.constants import SiteStatus
from ..core.errors import DuplicateEndpoint, SiteNotFound
from ..db import api_logs_db, mirror_db, sites_db
from ..db.engine import SessionMaker
from ..models.provisioned_user import ProvisionedUser
from ..models.site import Site
from ..models.site_api_log import SiteApiLog
from ..utils.device_clients.models import BandwidthPolicy, SiteCredentials
from ..utils.locks import KeyedLock
from ..utils.security import CredentialCipher

logger = logging.getLogger(__name__)

# Attributes an admin may edit after registration. Status belongs to the monitor.
EDITABLE_FIELDS = {
    "name",
    "location",
    "host",
    "port",
    "use_ssl",
    "username",
    "password",
    "bandwidth_mbps",
    "max_users",
    "parent_site_id",
    "heartbeat_interval",
}

# Never mirrored from a controller response
_SENSITIVE_KEYS = {"password"}


class SiteRegistry:
    def __init__(self, session_maker: SessionMaker, cipher: CredentialCipher):
        self._session_maker = session_maker
        self._cipher = cipher
        self._mirror_locks = KeyedLock()

    # --- Sites ---

    async def register(self, data: dict[str, Any]) -> Site:
        """
        Stores a new site. Raises DuplicateEndpoint when a site with the same
        endpoint and credentials already exists.
        """
        data = dict(data)
        async with self._session_maker() as session:
            await self._check_duplicate(session, data)
            if data.get("parent_site_id") and not await sites_db.get_site(session, data["parent_site_id"]):
                raise SiteNotFound(f"Parent site {data['parent_site_id']} not found", data["parent_site_id"])
            data["password"] = self._cipher.encrypt(data["password"])
            data["status"] = SiteStatus.UNKNOWN
            site = await sites_db.create_site(session, data)
        logger.info(f"[SiteRegistry] Site registered: {site.name} (ID: {site.id}, kind={site.kind.value})")
        return site

    async def _check_duplicate(self, session, data: dict[str, Any], exclude_id: str | None = None) -> None:
        candidates = await sites_db.find_sites_by_endpoint(
            session, data["host"], data.get("port", 80), data["username"]
        )
        for other in candidates:
            if other.id == exclude_id:
                continue
            if self._cipher.decrypt(other.password) == data["password"]:
                raise DuplicateEndpoint(
                    f"Endpoint {data['host']}:{data.get('port', 80)} is already registered as site {other.id}",
                    other.id,
                )

    async def find(self, site_id: str) -> Optional[Site]:
        async with self._session_maker() as session:
            return await sites_db.get_site(session, site_id)

    async def get(self, site_id: str) -> Site:
        site = await self.find(site_id)
        if site is None:
            raise SiteNotFound(f"Site {site_id} not found", site_id)
        return site

    async def list_sites(self) -> Sequence[Site]:
        async with self._session_maker() as session:
            return await sites_db.get_all_sites(session)

    async def list_by_status(self, statuses: Iterable[SiteStatus]) -> Sequence[Site]:
        async with self._session_maker() as session:
            return await sites_db.get_sites_by_status(session, statuses)

    async def update(self, site_id: str, changes: dict[str, Any]) -> Site:
        """Admin edit of non-status attributes."""
        updates = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
        async with self._session_maker() as session:
            current = await sites_db.get_site(session, site_id)
            if current is None:
                raise SiteNotFound(f"Site {site_id} not found", site_id)
            if updates.keys() & {"host", "port", "username", "password"}:
                merged = {
                    "host": updates.get("host", current.host),
                    "port": updates.get("port", current.port),
                    "username": updates.get("username", current.username),
                    "password": updates.get("password", self._cipher.decrypt(current.password)),
                }
                await self._check_duplicate(session, merged, exclude_id=site_id)
            parent_id = updates.get("parent_site_id")
            if parent_id and (parent_id == site_id or not await sites_db.get_site(session, parent_id)):
                raise SiteNotFound(f"Parent site {parent_id} not found", parent_id)
            if "password" in updates:
                updates["password"] = self._cipher.encrypt(updates["password"])
            site = await sites_db.update_site(session, site_id, updates)
        logger.info(f"[SiteRegistry] Site {site_id} updated ({', '.join(sorted(updates)) or 'no changes'})")
        return site

    async def delete(self, site_id: str) -> None:
        async with self._session_maker() as session:
            if not await sites_db.delete_site(session, site_id):
                raise SiteNotFound(f"Site {site_id} not found", site_id)
        logger.info(f"[SiteRegistry] Site {site_id} removed")

    async def update_status(self, site_id: str, status: SiteStatus, timestamp: datetime) -> bool:
        """Heartbeat write. Only the connectivity monitor calls this."""
        async with self._session_maker() as session:
            return bool(await sites_db.update_site_status(session, site_id, status, timestamp))

    def credentials_for(self, site: Site) -> SiteCredentials:
        return SiteCredentials(
            site_id=site.id,
            kind=site.kind,
            host=site.host,
            port=site.port,
            username=site.username,
            password=self._cipher.decrypt(site.password),
            use_ssl=site.use_ssl,
        )

    # --- Mirror ---

    @asynccontextmanager
    async def mirror_lock(self, site_id: str, username: str):
        """Serializes work on one (site, username); other keys proceed freely."""
        async with self._mirror_locks.hold((site_id, username)):
            yield

    async def record_mirror(
        self,
        site_id: str,
        username: str,
        policy: BandwidthPolicy | None = None,
        remote_state: dict[str, Any] | None = None,
        policy_fields: set[str] | None = None,
    ) -> ProvisionedUser:
        """
        Upserts the mirror row after a confirmed remote outcome. Only the
        policy attributes the caller set (and, with ``policy_fields``, only
        those among them) are overwritten.
        """
        policy_data = policy.explicit_fields(policy_fields) if policy is not None else None
        state = _sanitize(remote_state) if remote_state is not None else None
        async with self._session_maker() as session:
            return await mirror_db.upsert_mirror_entry(session, site_id, username, policy_data, state)

    async def remove_mirror(self, site_id: str, username: str) -> bool:
        async with self._session_maker() as session:
            return bool(await mirror_db.delete_mirror_entry(session, site_id, username))

    async def get_mirror(self, site_id: str, username: str) -> Optional[ProvisionedUser]:
        async with self._session_maker() as session:
            return await mirror_db.get_mirror_entry(session, site_id, username)

    async def list_mirror(self, site_id: str) -> Sequence[ProvisionedUser]:
        async with self._session_maker() as session:
            return await mirror_db.get_site_mirror(session, site_id)

    async def mirror_counts(self) -> dict[str, int]:
        async with self._session_maker() as session:
            return await mirror_db.count_mirror_by_site(session)

    async def replace_mirror(self, site_id: str, entries: List[dict[str, Any]]) -> int:
        """Explicit sync only: the mirror becomes exactly ``entries``."""
        clean = [{**e, "remote_state": _sanitize(e.get("remote_state") or {})} for e in entries]
        async with self._session_maker() as session:
            return await mirror_db.replace_site_mirror(session, site_id, clean)

    # --- Audit trail ---

    async def log_api_call(self, site_id: str, endpoint: str, method: str, status_code: int | None) -> None:
        try:
            async with self._session_maker() as session:
                await api_logs_db.add_api_log(session, site_id, endpoint, method, status_code)
        except Exception as e:
            logger.warning(f"[SiteRegistry] Could not log API call for site {site_id}: {e}")

    def api_call_hook(self, site_id: str):
        async def _hook(endpoint: str, method: str, status_code: int | None) -> None:
            await self.log_api_call(site_id, endpoint, method, status_code)

        return _hook

    async def recent_api_calls(self, site_id: str, limit: int = 50) -> Sequence[SiteApiLog]:
        async with self._session_maker() as session:
            return await api_logs_db.get_api_logs(session, site_id, limit)


def _sanitize(state: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in state.items() if k not in _SENSITIVE_KEYS}


def mirror_state(entry: ProvisionedUser) -> dict[str, Any]:
    """Serializable view of a mirror row."""
    return {
        "site_id": entry.site_id,
        "username": entry.username,
        "rate_mbps": entry.rate_mbps,
        "target": entry.target,
        "byte_limit": entry.byte_limit,
        "session_timeout": entry.session_timeout,
        "remote_state": json.loads(entry.remote_state) if entry.remote_state else None,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
    }
