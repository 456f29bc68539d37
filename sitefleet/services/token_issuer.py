# sitefleet/services/token_issuer.py
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from ..core.constants import TokenPermission
from ..core.errors import SiteNotFound, TokenExpired, TokenInvalid
from ..db import tokens_db
from ..db.engine import SessionMaker
from ..utils.security import digests_match, generate_site_token, hash_token
from .site_registry import SiteRegistry

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = (TokenPermission.READ, TokenPermission.WRITE)


@dataclass
class IssuedToken:
    """The only place the clear-text secret ever exists."""

    token: str
    site_id: str
    scope: List[TokenPermission]
    issued_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "site_id": self.site_id,
            "scope": [p.value for p in self.scope],
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class ManagementTokenIssuer:
    """
    Issues per-site management tokens and answers yes/no on them.
    Only the SHA-256 digest of a token is persisted.
    """

    def __init__(
        self,
        registry: SiteRegistry,
        session_maker: SessionMaker,
        ttl_days: int = 30,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._registry = registry
        self._session_maker = session_maker
        self.ttl = timedelta(days=ttl_days)
        self._clock = clock

    async def issue(self, site_id: str, scope: Optional[Iterable[TokenPermission | str]] = None) -> IssuedToken:
        if await self._registry.find(site_id) is None:
            raise SiteNotFound(f"Site {site_id} not found", site_id)

        permissions = [TokenPermission(p) for p in (scope or DEFAULT_SCOPE)]
        permissions = list(dict.fromkeys(permissions))
        token = generate_site_token()
        issued_at = self._clock()
        expires_at = issued_at + self.ttl

        async with self._session_maker() as session:
            await tokens_db.create_token(
                session,
                site_id,
                hash_token(token),
                json.dumps([p.value for p in permissions]),
                issued_at,
                expires_at,
            )
        logger.info(f"[TokenIssuer] Token issued for site {site_id} (scope={[p.value for p in permissions]})")
        return IssuedToken(token, site_id, permissions, issued_at, expires_at)

    async def inspect(self, site_id: str, token: str) -> List[TokenPermission]:
        """
        Returns the token's permissions or raises TokenInvalid / TokenExpired.
        For internal logging; callers only ever get a boolean.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalid("Empty token", site_id)
        digest = hash_token(token)
        async with self._session_maker() as session:
            record = await tokens_db.get_token_by_hash(session, digest)
        if record is None or not digests_match(record.token_hash, digest) or record.site_id != site_id:
            raise TokenInvalid("Unknown token for this site", site_id)
        if self._clock() >= record.expires_at:
            raise TokenExpired(f"Token expired at {record.expires_at.isoformat()}", site_id)
        try:
            return [TokenPermission(p) for p in json.loads(record.scope)]
        except (ValueError, TypeError):
            raise TokenInvalid("Corrupt token scope", site_id)

    async def verify(self, site_id: str, token: str) -> bool:
        return await self.check(site_id, token, None)

    async def check(self, site_id: str, token: str, permission: TokenPermission | str | None) -> bool:
        try:
            permissions = await self.inspect(site_id, token)
        except TokenInvalid as e:
            logger.debug(f"[TokenIssuer] Rejected token for site {site_id}: {e.kind}")
            return False
        if permission is None:
            return True
        return TokenPermission(permission) in permissions
