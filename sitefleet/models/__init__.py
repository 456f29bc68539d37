from .management_token import ManagementToken
from .provisioned_user import ProvisionedUser
from .site import Site
from .site_api_log import SiteApiLog
