# sitefleet/db/sites_db.py
import logging
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import delete
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..core.constants import SiteStatus
from ..models.management_token import ManagementToken
from ..models.provisioned_user import ProvisionedUser
from ..models.site import Site
from ..models.site_api_log import SiteApiLog

logger = logging.getLogger(__name__)


async def get_site(session: AsyncSession, site_id: str) -> Site | None:
    return await session.get(Site, site_id)


async def get_all_sites(session: AsyncSession) -> Sequence[Site]:
    result = await session.exec(select(Site).order_by(Site.created_at, Site.id))
    return result.all()


async def get_sites_by_status(session: AsyncSession, statuses: Iterable[SiteStatus]) -> Sequence[Site]:
    stmt = select(Site).where(Site.status.in_(list(statuses))).order_by(Site.created_at, Site.id)
    result = await session.exec(stmt)
    return result.all()


async def find_sites_by_endpoint(session: AsyncSession, host: str, port: int, username: str) -> Sequence[Site]:
    """Candidates for duplicate detection. Passwords are compared by the caller (they are encrypted)."""
    stmt = select(Site).where(Site.host == host, Site.port == port, Site.username == username)
    result = await session.exec(stmt)
    return result.all()


async def create_site(session: AsyncSession, site_data: dict[str, Any]) -> Site:
    site = Site(**site_data)
    session.add(site)
    try:
        await session.commit()
        await session.refresh(site)
    except Exception:
        await session.rollback()
        raise
    return site


async def update_site(session: AsyncSession, site_id: str, updates: dict[str, Any]) -> Site | None:
    site = await session.get(Site, site_id)
    if not site:
        return None
    for key, value in updates.items():
        if hasattr(site, key):
            setattr(site, key, value)
    session.add(site)
    try:
        await session.commit()
        await session.refresh(site)
    except Exception:
        await session.rollback()
        raise
    return site


async def update_site_status(session: AsyncSession, site_id: str, status: SiteStatus, timestamp: datetime) -> int:
    """Writes status and heartbeat. Returns the number of affected rows."""
    site = await session.get(Site, site_id)
    if not site:
        return 0
    site.status = status
    site.last_heartbeat = timestamp
    session.add(site)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return 1


async def delete_site(session: AsyncSession, site_id: str) -> int:
    """Deletes a site together with its mirror rows, tokens and API log."""
    site = await session.get(Site, site_id)
    if not site:
        return 0
    try:
        await session.exec(delete(ProvisionedUser).where(ProvisionedUser.site_id == site_id))
        await session.exec(delete(ManagementToken).where(ManagementToken.site_id == site_id))
        await session.exec(delete(SiteApiLog).where(SiteApiLog.site_id == site_id))
        # Children keep existing, detached from the removed parent
        children = await session.exec(select(Site).where(Site.parent_site_id == site_id))
        for child in children.all():
            child.parent_site_id = None
            session.add(child)
        await session.delete(site)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Site {site_id} deleted")
    return 1
