# sitefleet/db/tokens_db.py
from datetime import datetime

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models.management_token import ManagementToken


async def create_token(
    session: AsyncSession, site_id: str, token_hash: str, scope: str, issued_at: datetime, expires_at: datetime
) -> ManagementToken:
    token = ManagementToken(
        site_id=site_id, token_hash=token_hash, scope=scope, issued_at=issued_at, expires_at=expires_at
    )
    session.add(token)
    try:
        await session.commit()
        await session.refresh(token)
    except Exception:
        await session.rollback()
        raise
    return token


async def get_token_by_hash(session: AsyncSession, token_hash: str) -> ManagementToken | None:
    result = await session.exec(select(ManagementToken).where(ManagementToken.token_hash == token_hash))
    return result.first()
