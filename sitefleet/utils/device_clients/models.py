"""
Vendor-agnostic shapes exchanged with the RouterOS REST client.
"""

import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from ...core.constants import QUEUE_NAME_PREFIX, SiteKind

_RATE_RE = re.compile(r"^(\d+)([kKmMgG]?)$")
_RATE_FACTORS = {"": 1, "k": 1_000, "m": 1_000_000, "g": 1_000_000_000}


@dataclass(frozen=True)
class SiteCredentials:
    """Decrypted connection data for one site's controller."""

    site_id: str
    kind: SiteKind
    host: str
    port: int
    username: str
    password: str
    use_ssl: bool = False

    @property
    def fingerprint(self) -> tuple:
        return (self.kind, self.host, self.port, self.username, self.password, self.use_ssl)


class BandwidthPolicy(BaseModel):
    """
    Per-user limits.

    ``rate_mbps`` drives the simple queue (symmetric max-limit, limit-at at half
    of it). ``byte_limit`` and ``session_timeout`` land on the hotspot user
    record itself. Only the fields a caller actually set are sent or mirrored,
    so a partial policy never resets the limits it does not mention.
    """

    rate_mbps: int | None = Field(default=None, ge=1)
    target: str | None = None
    byte_limit: int = Field(default=0, ge=0)
    session_timeout: int = Field(default=0, ge=0)  # seconds

    @property
    def has_queue(self) -> bool:
        return bool(self.rate_mbps)

    def explicit_fields(self, names: set[str] | None = None) -> dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        if names is not None:
            data = {k: v for k, v in data.items() if k in names}
        return data

    def to_user_fields(self) -> dict[str, str]:
        explicit = self.explicit_fields()
        fields = {}
        if "byte_limit" in explicit:
            fields["limit-bytes-out"] = str(self.byte_limit)
        if "session_timeout" in explicit:
            fields["limit-uptime"] = f"{self.session_timeout}s"
        return fields

    def to_queue_fields(self) -> dict[str, str]:
        if not self.rate_mbps:
            raise ValueError("rate_mbps is required to build a bandwidth queue")
        half = max(self.rate_mbps // 2, 1)
        fields = {
            "max-limit": f"{self.rate_mbps}M/{self.rate_mbps}M",
            "limit-at": f"{half}M/{half}M",
        }
        if self.target:
            fields["target"] = self.target
        return fields

    @classmethod
    def from_queue(cls, queue: dict[str, Any]) -> "BandwidthPolicy":
        """Rebuilds a policy from a ``/queue/simple`` record (``10M/10M`` or bits)."""
        rate = None
        max_limit = str(queue.get("max-limit") or "")
        if "/" in max_limit:
            rate = parse_rate_mbps(max_limit.split("/")[0])
        return cls(rate_mbps=rate or None, target=queue.get("target"))


def parse_rate_mbps(value: str) -> int | None:
    match = _RATE_RE.match(value.strip())
    if not match:
        return None
    bits = int(match.group(1)) * _RATE_FACTORS[match.group(2).lower()]
    return bits // 1_000_000


def queue_name_for(username: str) -> str:
    return f"{QUEUE_NAME_PREFIX}{username}"


def user_patch_fields(
    password: str | None = None,
    policy: BandwidthPolicy | None = None,
    disabled: bool | None = None,
    comment: str | None = None,
) -> dict[str, str]:
    """Builds the vendor field set for a hotspot user update."""
    fields: dict[str, str] = {}
    if password is not None:
        fields["password"] = password
    if policy is not None:
        fields.update(policy.to_user_fields())
    if disabled is not None:
        fields["disabled"] = "true" if disabled else "false"
    if comment is not None:
        fields["comment"] = comment
    return fields
