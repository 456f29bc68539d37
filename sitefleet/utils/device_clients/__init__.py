from .client_provider import ClientProvider
from .mikrotik_rest import MikrotikRestClient
from .models import BandwidthPolicy, SiteCredentials, queue_name_for, user_patch_fields

__all__ = [
    "BandwidthPolicy",
    "ClientProvider",
    "MikrotikRestClient",
    "SiteCredentials",
    "queue_name_for",
    "user_patch_fields",
]
