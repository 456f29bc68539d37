from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class ManagementToken(SQLModel, table=True):
    __tablename__ = "management_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(foreign_key="sites.id", nullable=False, index=True)
    token_hash: str = Field(nullable=False, unique=True, index=True)  # sha256 of the bearer secret
    scope: str = Field(default='["read", "write"]')  # JSON list
    issued_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime
