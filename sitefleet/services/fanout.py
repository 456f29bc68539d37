# sitefleet/services/fanout.py
"""
Fan-out of one logical provisioning operation to many sites.

Every site is an independent branch: its own lookup, its own client call
under its own deadline, its own mirror update. Branches are joined into a
fixed-size result, one outcome per requested site id, so a site that is down
never hides, cancels or delays the outcome of another.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from ..core.constants import FanoutOperation, OutcomeStatus, SiteStatus
from ..core.errors import (
    Conflict,
    FleetError,
    InternalError,
    InvalidFanoutRequest,
    SiteNotFound,
    SiteOffline,
    Timeout,
)
from ..utils.device_clients import BandwidthPolicy, ClientProvider, MikrotikRestClient, user_patch_fields
from .site_registry import SiteRegistry

logger = logging.getLogger(__name__)

_USER_LEVEL_FIELDS = {"byte_limit", "session_timeout"}
_QUEUE_LEVEL_FIELDS = {"rate_mbps", "target"}


@dataclass
class SiteOutcome:
    site_id: str
    status: OutcomeStatus
    payload: Optional[dict[str, Any]] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    exception: Optional[FleetError] = field(default=None, repr=False, compare=False)

    @classmethod
    def success(cls, site_id: str, payload: dict[str, Any]) -> "SiteOutcome":
        return cls(site_id=site_id, status=OutcomeStatus.SUCCESS, payload=payload)

    @classmethod
    def failure(cls, site_id: str, error: FleetError) -> "SiteOutcome":
        return cls(
            site_id=site_id,
            status=OutcomeStatus.FAILURE,
            error_kind=error.kind,
            error=error.message,
            retryable=error.retryable,
            exception=error,
        )

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"site_id": self.site_id, "outcome": self.status.value}
        if self.ok:
            data["payload"] = self.payload
        else:
            data["error_kind"] = self.error_kind
            data["error"] = self.error
            data["retryable"] = self.retryable
        return data


@dataclass
class FanoutResult:
    operation: FanoutOperation
    username: str
    outcomes: List[SiteOutcome]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    def outcome_for(self, site_id: str) -> Optional[SiteOutcome]:
        return next((o for o in self.outcomes if o.site_id == site_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "username": self.username,
            "total": len(self.outcomes),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class FanoutRequest:
    operation: FanoutOperation | str
    username: str
    site_ids: List[str]
    password: Optional[str] = None
    policy: Optional[BandwidthPolicy] = None
    disabled: Optional[bool] = None
    comment: Optional[str] = None
    skip_offline: bool = False
    # create_user only: update the existing user instead of failing with Conflict
    upsert: bool = False

    def validate(self) -> None:
        try:
            self.operation = FanoutOperation(self.operation)
        except ValueError:
            raise InvalidFanoutRequest(f"Unknown operation '{self.operation}'")
        if not self.site_ids:
            raise InvalidFanoutRequest("At least one site id is required")
        if not self.username:
            raise InvalidFanoutRequest("username is required")
        if self.operation == FanoutOperation.CREATE_USER and not self.password:
            raise InvalidFanoutRequest("password is required to create a user")
        if self.operation == FanoutOperation.SET_BANDWIDTH and (self.policy is None or not self.policy.rate_mbps):
            raise InvalidFanoutRequest("policy.rate_mbps is required to set bandwidth")
        if self.operation == FanoutOperation.UPDATE_USER and not (
            self.user_patch() or (self.policy is not None and self.policy.has_queue)
        ):
            raise InvalidFanoutRequest("Nothing to update")

    def unique_site_ids(self) -> List[str]:
        return list(dict.fromkeys(self.site_ids))

    def user_patch(self) -> dict[str, str]:
        return user_patch_fields(self.password, self.policy, self.disabled, self.comment)


class FanoutOrchestrator:
    def __init__(
        self,
        registry: SiteRegistry,
        clients: ClientProvider,
        concurrency: int = 32,
        branch_timeout: float = 20.0,
    ):
        self._registry = registry
        self._clients = clients
        self._semaphore = asyncio.Semaphore(concurrency)
        self.branch_timeout = branch_timeout
        self._inflight: set[asyncio.Task] = set()

    async def execute(self, request: FanoutRequest) -> FanoutResult:
        """
        Runs ``request`` against every requested site concurrently. Never
        raises for per-site failures; raises InvalidFanoutRequest for a
        malformed request.
        """
        request.validate()
        site_ids = request.unique_site_ids()
        logger.info(
            f"[Fanout] {request.operation.value} '{request.username}' across {len(site_ids)} site(s)"
        )

        results = await asyncio.gather(
            *(self._run_branch(request, site_id) for site_id in site_ids), return_exceptions=True
        )

        outcomes = []
        for site_id, result in zip(site_ids, results):
            if isinstance(result, BaseException):
                # _run_branch already converts errors; this only catches what escaped it
                logger.error(f"[Fanout] Branch for {site_id} escaped with {result!r}")
                outcomes.append(SiteOutcome.failure(site_id, InternalError(str(result), site_id)))
            else:
                outcomes.append(result)

        result = FanoutResult(request.operation, request.username, outcomes)
        logger.info(
            f"[Fanout] {request.operation.value} '{request.username}': "
            f"{result.succeeded} succeeded, {result.failed} failed"
        )
        return result

    async def run_single(self, request: FanoutRequest) -> SiteOutcome:
        """Same branch logic for a one-site request (site-scoped admin routes)."""
        result = await self.execute(request)
        return result.outcomes[0]

    async def drain(self) -> None:
        """Waits for device calls still running, including those past their deadline."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # --- Branches ---

    async def _run_branch(self, request: FanoutRequest, site_id: str) -> SiteOutcome:
        async with self._semaphore:
            try:
                return await self._branch(request, site_id)
            except Exception as e:
                logger.exception(f"[Fanout] Unexpected error on site {site_id}: {e}")
                return SiteOutcome.failure(site_id, InternalError(str(e), site_id))

    async def _branch(self, request: FanoutRequest, site_id: str) -> SiteOutcome:
        site = await self._registry.find(site_id)
        if site is None:
            return SiteOutcome.failure(site_id, SiteNotFound(f"Site {site_id} not found", site_id))
        if request.skip_offline and site.status == SiteStatus.OFFLINE:
            return SiteOutcome.failure(site_id, SiteOffline(f"Site {site.name} is offline", site_id))

        client = await self._clients.get(self._registry.credentials_for(site))
        acquired = asyncio.Event()
        work = asyncio.create_task(
            self._apply(client, request, site_id, acquired), name=f"fanout:{site_id}:{request.username}"
        )
        self._inflight.add(work)
        work.add_done_callback(self._inflight.discard)

        # Queueing behind another change to the same user does not count against the deadline
        await acquired.wait()
        try:
            return await asyncio.wait_for(asyncio.shield(work), timeout=self.branch_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"[Fanout] Site {site_id} exceeded {self.branch_timeout}s; the dispatched call keeps running"
            )
            work.add_done_callback(_log_late_outcome(request, site_id))
            return SiteOutcome.failure(
                site_id, Timeout(f"Site did not complete within {self.branch_timeout}s", site_id)
            )

    async def _apply(
        self, client: MikrotikRestClient, request: FanoutRequest, site_id: str, acquired: asyncio.Event
    ) -> SiteOutcome:
        """
        Device call plus mirror update under the (site, username) lock. Runs
        to completion even when the branch deadline fires, so the mirror only
        ever reflects what the controller confirmed.
        """
        async with self._registry.mirror_lock(site_id, request.username):
            acquired.set()
            try:
                payload = await self._dispatch(client, request)
            except FleetError as e:
                logger.warning(
                    f"[Fanout] {request.operation.value} '{request.username}' failed on {site_id}: {e.kind}: {e.message}"
                )
                return SiteOutcome.failure(site_id, e)
            payload["mirror_updated"] = await self._update_mirror(site_id, request, payload)
        return SiteOutcome.success(site_id, payload)

    async def _dispatch(self, client: MikrotikRestClient, request: FanoutRequest) -> dict[str, Any]:
        op = request.operation
        if op == FanoutOperation.CREATE_USER:
            try:
                record = await client.create_user(request.username, request.password, request.policy)
                payload = {"user": record, "created": True}
            except Conflict:
                if not request.upsert:
                    raise
                record = await client.update_user(request.username, request.user_patch())
                payload = {"user": record, "created": False}
            return await self._apply_queue(client, request, payload)
        if op == FanoutOperation.UPDATE_USER:
            patch = request.user_patch()
            payload = {"user": await client.update_user(request.username, patch) if patch else None}
            return await self._apply_queue(client, request, payload)
        if op == FanoutOperation.DELETE_USER:
            return await client.delete_user(request.username)
        if op == FanoutOperation.SET_BANDWIDTH:
            return {"queue": await client.set_bandwidth_policy(request.username, request.policy)}
        raise InvalidFanoutRequest(f"Unknown operation '{op}'")

    async def _apply_queue(
        self, client: MikrotikRestClient, request: FanoutRequest, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """A policy carrying a rate also needs the user's simple queue."""
        if request.policy is not None and request.policy.has_queue:
            payload["queue"] = await client.set_bandwidth_policy(request.username, request.policy)
        return payload

    async def _update_mirror(self, site_id: str, request: FanoutRequest, payload: dict[str, Any]) -> bool:
        """
        Mirrors a confirmed remote outcome. A failing write leaves the remote
        success intact; the divergence is picked up by reconciliation.
        """
        op = request.operation
        try:
            if op == FanoutOperation.DELETE_USER:
                await self._registry.remove_mirror(site_id, request.username)
            elif op == FanoutOperation.SET_BANDWIDTH:
                await self._registry.record_mirror(
                    site_id, request.username, request.policy, policy_fields=_QUEUE_LEVEL_FIELDS
                )
            else:
                fields = _USER_LEVEL_FIELDS | _QUEUE_LEVEL_FIELDS if "queue" in payload else _USER_LEVEL_FIELDS
                await self._registry.record_mirror(
                    site_id,
                    request.username,
                    request.policy,
                    remote_state=payload.get("user"),
                    policy_fields=fields,
                )
            return True
        except Exception as e:
            logger.error(f"[Fanout] Mirror update failed for {request.username}@{site_id}: {e}")
            return False

    # --- Convenience ---

    async def create_user_across_sites(
        self, username: str, password: str, site_ids: Iterable[str], policy: BandwidthPolicy | None = None
    ) -> FanoutResult:
        return await self.execute(
            FanoutRequest(FanoutOperation.CREATE_USER, username, list(site_ids), password=password, policy=policy)
        )

    async def update_user_across_sites(self, username: str, site_ids: Iterable[str], **changes) -> FanoutResult:
        return await self.execute(FanoutRequest(FanoutOperation.UPDATE_USER, username, list(site_ids), **changes))

    async def delete_user_across_sites(self, username: str, site_ids: Iterable[str]) -> FanoutResult:
        return await self.execute(FanoutRequest(FanoutOperation.DELETE_USER, username, list(site_ids)))

    async def set_bandwidth_across_sites(
        self, username: str, policy: BandwidthPolicy, site_ids: Iterable[str]
    ) -> FanoutResult:
        return await self.execute(
            FanoutRequest(FanoutOperation.SET_BANDWIDTH, username, list(site_ids), policy=policy)
        )

    async def sync_user_across_all_sites(
        self, username: str, password: str, policy: BandwidthPolicy | None = None
    ) -> FanoutResult:
        """
        Creates (or refreshes) ``username`` on every registered site. Offline
        sites are answered with SiteOffline without any network call.
        """
        sites = await self._registry.list_sites()
        if not sites:
            return FanoutResult(FanoutOperation.CREATE_USER, username, [])
        return await self.execute(
            FanoutRequest(
                FanoutOperation.CREATE_USER,
                username,
                [s.id for s in sites],
                password=password,
                policy=policy,
                skip_offline=True,
                upsert=True,
            )
        )


def _log_late_outcome(request: FanoutRequest, site_id: str):
    def _done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[Fanout] Late {request.operation.value} '{request.username}' on {site_id} crashed: {error!r}")
            return
        outcome = task.result()
        logger.info(
            f"[Fanout] Late {request.operation.value} '{request.username}' on {site_id} finished: {outcome.status.value}"
        )

    return _done
