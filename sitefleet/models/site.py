import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from ..core.constants import SiteKind, SiteStatus


def _new_site_id() -> str:
    return uuid.uuid4().hex


class Site(SQLModel, table=True):
    __tablename__ = "sites"

    id: str = Field(default_factory=_new_site_id, primary_key=True)
    name: str = Field(nullable=False, index=True)
    location: Optional[str] = Field(default=None)
    kind: SiteKind = Field(default=SiteKind.REMOTE)

    # Controller endpoint and credentials (password stored encrypted)
    host: str = Field(nullable=False, index=True)
    port: int = Field(default=80)
    use_ssl: bool = Field(default=False)
    username: str = Field(nullable=False)
    password: str = Field(nullable=False)

    # Declared capacity
    bandwidth_mbps: Optional[int] = Field(default=None)
    max_users: Optional[int] = Field(default=None)

    # Hierarchical topologies: NULL for the main site
    parent_site_id: Optional[str] = Field(default=None, foreign_key="sites.id")

    # Per-site probe interval in seconds (NULL = HEARTBEAT_INTERVAL)
    heartbeat_interval: Optional[float] = Field(default=None)

    # Only the connectivity monitor writes these
    status: SiteStatus = Field(default=SiteStatus.UNKNOWN)
    last_heartbeat: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)
