from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...core.constants import FanoutOperation, SiteKind, SiteStatus, TokenPermission
from ...utils.device_clients import BandwidthPolicy


# --- Sites ---
class SiteCreate(BaseModel):
    name: str = Field(min_length=1)
    location: str | None = None
    kind: SiteKind = SiteKind.REMOTE
    host: str = Field(min_length=1)
    port: int = Field(default=80, ge=1, le=65535)
    use_ssl: bool = False
    username: str = Field(min_length=1)
    password: str
    bandwidth_mbps: int | None = Field(default=None, ge=0)
    max_users: int | None = Field(default=None, ge=0)
    parent_site_id: str | None = None
    heartbeat_interval: float | None = Field(default=None, gt=0)


class SiteUpdate(BaseModel):
    name: str | None = None
    location: str | None = None
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    use_ssl: bool | None = None
    username: str | None = None
    password: str | None = None
    bandwidth_mbps: int | None = Field(default=None, ge=0)
    max_users: int | None = Field(default=None, ge=0)
    parent_site_id: str | None = None
    heartbeat_interval: float | None = Field(default=None, gt=0)


class SiteResponse(BaseModel):
    # Password never leaves the registry
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    location: str | None = None
    kind: SiteKind
    host: str
    port: int
    use_ssl: bool
    username: str
    bandwidth_mbps: int | None = None
    max_users: int | None = None
    parent_site_id: str | None = None
    heartbeat_interval: float | None = None
    status: SiteStatus
    last_heartbeat: datetime | None = None
    created_at: datetime


class SiteDetailResponse(SiteResponse):
    provisioned_users: int = 0
    children: List[str] = []


class ConnectionTestResponse(BaseModel):
    site_id: str
    status: SiteStatus
    connected: bool
    checked_at: datetime
    detail: Any = None


# --- Site-scoped users ---
class SiteUserCreate(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    policy: BandwidthPolicy | None = None


class SiteUserUpdate(BaseModel):
    password: str | None = None
    policy: BandwidthPolicy | None = None
    disabled: bool | None = None
    comment: str | None = None


class TokenRequest(BaseModel):
    scope: List[TokenPermission] = [TokenPermission.READ, TokenPermission.WRITE]


class TokenResponse(BaseModel):
    token: str
    site_id: str
    scope: List[TokenPermission]
    issued_at: datetime
    expires_at: datetime


class ApiLogResponse(BaseModel):
    endpoint: str
    method: str
    status_code: int | None = None
    created_at: datetime


# --- Fan-out ---
class FanoutRequestBody(BaseModel):
    operation: FanoutOperation
    username: str = Field(min_length=1)
    site_ids: List[str] = Field(min_length=1)
    password: str | None = None
    policy: BandwidthPolicy | None = None
    disabled: bool | None = None
    comment: str | None = None
    skip_offline: bool = False


class MultiSiteUserCreate(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    site_ids: List[str] = Field(min_length=1)
    policy: BandwidthPolicy | None = None


class SyncAllRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    policy: BandwidthPolicy | None = None


class MultiSiteBandwidthUpdate(BaseModel):
    username: str = Field(min_length=1)
    site_ids: List[str] = Field(min_length=1)
    policy: BandwidthPolicy


class SiteOutcomeResponse(BaseModel):
    site_id: str
    outcome: str
    payload: Optional[dict[str, Any]] = None
    error_kind: str | None = None
    error: str | None = None
    retryable: bool | None = None


class FanoutResponse(BaseModel):
    operation: FanoutOperation
    username: str
    total: int
    succeeded: int
    failed: int
    results: List[SiteOutcomeResponse]
