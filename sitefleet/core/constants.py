"""
Centralized constants for the fleet.
Replaces magic strings with typed values shared by models, services and API.
"""

from enum import Enum, unique


@unique
class SiteKind(str, Enum):
    """How the orchestrator reaches a site's controller."""

    LOCAL = "local"
    REMOTE = "remote"


@unique
class SiteStatus(str, Enum):
    """Connectivity states maintained by the monitor."""

    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


@unique
class FanoutOperation(str, Enum):
    """Operations the orchestrator can fan out to a set of sites."""

    CREATE_USER = "create_user"
    UPDATE_USER = "update_user"
    DELETE_USER = "delete_user"
    SET_BANDWIDTH = "set_bandwidth"


@unique
class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@unique
class TokenPermission(str, Enum):
    """Permissions a management token may carry."""

    READ = "read"
    WRITE = "write"


@unique
class EventType(str, Enum):
    """Event names pushed to dashboard websockets."""

    SITE_STATUS_CHANGED = "site_status_changed"
    SITE_REGISTERED = "site_registered"
    SITE_DELETED = "site_deleted"


# RouterOS REST resource paths
HOTSPOT_USER_PATH = "/ip/hotspot/user"
SIMPLE_QUEUE_PATH = "/queue/simple"
WIRELESS_INTERFACE_PATH = "/interface/wireless"
REGISTRATION_TABLE_PATH = "/interface/wireless/registration-table"
SYSTEM_IDENTITY_PATH = "/system/identity"
SYSTEM_RESOURCE_PATH = "/system/resource"

QUEUE_NAME_PREFIX = "queue-"
