from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class ProvisionedUser(SQLModel, table=True):
    """
    Local mirror of a hotspot user believed to exist on a site.
    The controller stays the source of truth; this row may be stale.
    """

    __tablename__ = "provisioned_users"
    __table_args__ = (UniqueConstraint("site_id", "username", name="uq_site_username"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(foreign_key="sites.id", nullable=False, index=True)
    username: str = Field(nullable=False, index=True)

    # Bandwidth policy as last applied through the orchestrator
    rate_mbps: Optional[int] = Field(default=None)
    target: Optional[str] = Field(default=None)
    byte_limit: int = Field(default=0)
    session_timeout: int = Field(default=0)

    remote_state: Optional[str] = Field(default=None)  # JSON string
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
