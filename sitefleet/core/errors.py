"""
Error taxonomy shared by the device client, the registry and the orchestrator.

Every error carries a stable ``kind`` string. The orchestrator copies that kind
into the per-site outcome so callers can tell "this site is down" apart from
"this username already exists there".
"""


class FleetError(Exception):
    """Base class for all fleet errors."""

    kind = "FleetError"
    retryable = False

    def __init__(self, message: str = "", site_id: str | None = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.site_id = site_id


class NotReachable(FleetError):
    """Connection refused, DNS failure or request timeout."""

    kind = "NotReachable"
    retryable = True


class Timeout(NotReachable):
    """A fan-out branch exceeded its own deadline."""

    kind = "Timeout"


class NotFound(FleetError):
    """Username (or vendor object) absent on the target site."""

    kind = "NotFound"


class Conflict(FleetError):
    kind = "Conflict"


class DuplicateEndpoint(Conflict):
    """A site with the same endpoint and credentials is already registered."""

    kind = "DuplicateEndpoint"


class ProtocolError(FleetError):
    """The controller answered with something we do not understand."""

    kind = "ProtocolError"


class Unauthorized(FleetError):
    """The controller rejected the site credentials."""

    kind = "Unauthorized"


class SiteNotFound(FleetError):
    kind = "SiteNotFound"


class SiteOffline(FleetError):
    """Excluded pre-flight because the monitor reports the site offline."""

    kind = "SiteOffline"
    retryable = True


class TokenInvalid(FleetError):
    kind = "TokenInvalid"


class TokenExpired(TokenInvalid):
    kind = "TokenExpired"


class InvalidFanoutRequest(FleetError, ValueError):
    """Malformed fan-out request (unknown operation, empty site set, missing params)."""

    kind = "InvalidRequest"


class InternalError(FleetError):
    """Unexpected failure inside one fan-out branch."""

    kind = "InternalError"
