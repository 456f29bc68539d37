# sitefleet/db/api_logs_db.py
from typing import Sequence

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models.site_api_log import SiteApiLog


async def add_api_log(session: AsyncSession, site_id: str, endpoint: str, method: str, status_code: int | None) -> None:
    session.add(SiteApiLog(site_id=site_id, endpoint=endpoint, method=method, status_code=status_code))
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def get_api_logs(session: AsyncSession, site_id: str, limit: int = 50) -> Sequence[SiteApiLog]:
    stmt = (
        select(SiteApiLog)
        .where(SiteApiLog.site_id == site_id)
        .order_by(SiteApiLog.created_at.desc(), SiteApiLog.id.desc())
        .limit(limit)
    )
    result = await session.exec(stmt)
    return result.all()
