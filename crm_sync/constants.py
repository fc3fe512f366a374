from __future__ import annotations

import datetime as dt
import enum


class ProviderType(str, enum.Enum):
    """Supported CRM platforms."""

    SALESFORCE = "SALESFORCE"
    HUBSPOT = "HUBSPOT"
    PIPEDRIVE = "PIPEDRIVE"
    ZOHO = "ZOHO"


class IntegrationStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    INACTIVE = "INACTIVE"


# Sync interval options in milliseconds
SYNC_INTERVALS = {
    "REAL_TIME": 60 * 1000,  # 1 minute
    "HOURLY": 60 * 60 * 1000,  # 1 hour
    "DAILY": 24 * 60 * 60 * 1000,  # 24 hours
}
DEFAULT_SYNC_INTERVAL = SYNC_INTERVALS["HOURLY"]

# Integrations not synced for this long are picked up by process_pending_sync
PENDING_SYNC_STALENESS = dt.timedelta(hours=1)

CRM_API_VERSIONS = {
    ProviderType.SALESFORCE: "v53.0",
    ProviderType.HUBSPOT: "v3",
    ProviderType.PIPEDRIVE: "v1",
    ProviderType.ZOHO: "v2",
}

CRM_TOKEN_ENDPOINTS = {
    ProviderType.SALESFORCE: "https://login.salesforce.com/services/oauth2/token",
    ProviderType.HUBSPOT: "https://api.hubapi.com/oauth/v1/token",
    ProviderType.PIPEDRIVE: "https://api.pipedrive.com/oauth/token",
    ProviderType.ZOHO: "https://accounts.zoho.com/oauth/v2/token",
}

# Used when the credentials carry no instance URL. Salesforce has none:
# every org lives on its own instance.
CRM_DEFAULT_BASE_URLS = {
    ProviderType.HUBSPOT: "https://api.hubapi.com",
    ProviderType.PIPEDRIVE: "https://api.pipedrive.com",
    ProviderType.ZOHO: "https://www.zohoapis.com",
}

SYNC_BATCH_SIZE = 100

# Access tokens expiring within this window are refreshed before use
TOKEN_REFRESH_SKEW = dt.timedelta(minutes=5)

# Most recent sync error entries kept on an integration row
MAX_SYNC_ERRORS = 50
