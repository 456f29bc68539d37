from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SiteApiLog(SQLModel, table=True):
    """Audit trail of every REST call made against a site's controller."""

    __tablename__ = "site_api_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(nullable=False, index=True)
    endpoint: str
    method: str
    status_code: Optional[int] = None  # NULL when the controller never answered
    created_at: datetime = Field(default_factory=datetime.utcnow)
