# sitefleet/db/mirror_db.py
import json
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import delete
from sqlmodel import func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..models.provisioned_user import ProvisionedUser

_POLICY_FIELDS = ("rate_mbps", "target", "byte_limit", "session_timeout")


async def get_mirror_entry(session: AsyncSession, site_id: str, username: str) -> ProvisionedUser | None:
    stmt = select(ProvisionedUser).where(
        ProvisionedUser.site_id == site_id, ProvisionedUser.username == username
    )
    result = await session.exec(stmt)
    return result.first()


async def get_site_mirror(session: AsyncSession, site_id: str) -> Sequence[ProvisionedUser]:
    stmt = select(ProvisionedUser).where(ProvisionedUser.site_id == site_id).order_by(ProvisionedUser.username)
    result = await session.exec(stmt)
    return result.all()


async def count_mirror_by_site(session: AsyncSession) -> dict[str, int]:
    stmt = select(ProvisionedUser.site_id, func.count()).group_by(ProvisionedUser.site_id)
    result = await session.exec(stmt)
    return {site_id: count for site_id, count in result.all()}


async def upsert_mirror_entry(
    session: AsyncSession,
    site_id: str,
    username: str,
    policy: dict[str, Any] | None = None,
    remote_state: dict[str, Any] | None = None,
) -> ProvisionedUser:
    """
    Inserts or updates the mirror row for (site, username). Only the policy
    fields present in ``policy`` are overwritten.
    """
    entry = await get_mirror_entry(session, site_id, username)
    now = datetime.utcnow()
    if entry is None:
        entry = ProvisionedUser(site_id=site_id, username=username, created_at=now)
    for key in _POLICY_FIELDS:
        if policy and key in policy:
            setattr(entry, key, policy[key])
    if remote_state is not None:
        entry.remote_state = json.dumps(remote_state, default=str)
    entry.updated_at = now
    session.add(entry)
    try:
        await session.commit()
        await session.refresh(entry)
    except Exception:
        await session.rollback()
        raise
    return entry


async def delete_mirror_entry(session: AsyncSession, site_id: str, username: str) -> int:
    entry = await get_mirror_entry(session, site_id, username)
    if entry is None:
        return 0
    await session.delete(entry)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return 1


async def replace_site_mirror(session: AsyncSession, site_id: str, entries: list[dict[str, Any]]) -> int:
    """Swaps the whole mirror of a site for ``entries`` in one transaction."""
    try:
        await session.exec(delete(ProvisionedUser).where(ProvisionedUser.site_id == site_id))
        now = datetime.utcnow()
        for item in entries:
            session.add(
                ProvisionedUser(
                    site_id=site_id,
                    username=item["username"],
                    byte_limit=item.get("byte_limit", 0),
                    session_timeout=item.get("session_timeout", 0),
                    rate_mbps=item.get("rate_mbps"),
                    target=item.get("target"),
                    remote_state=json.dumps(item.get("remote_state") or {}, default=str),
                    created_at=now,
                    updated_at=now,
                )
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return len(entries)
