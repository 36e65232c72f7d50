from __future__ import annotations

DOMAIN = "nomadnote"

CONF_API_URL = "api_url"
CONF_SYNC_INTERVAL = "sync_interval"
CONF_REQUEST_TIMEOUT = "request_timeout"

ENV_API_URL = "NOMADNOTE_API_URL"
ENV_SYNC_INTERVAL = "NOMADNOTE_SYNC_INTERVAL"
ENV_REQUEST_TIMEOUT = "NOMADNOTE_REQUEST_TIMEOUT"

DEFAULT_SYNC_INTERVAL = 30
MIN_SYNC_INTERVAL = 5
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_CURRENCY = "USD"

# Local table and remote collection per entity kind
TABLE_NAMES: dict[str, str] = {
    "trip": "trips",
    "itinerary": "itinerary_items",
    "expense": "expenses",
    "note": "notes",
}

REMOTE_COLLECTIONS: dict[str, str] = {
    "trip": "trips",
    "itinerary": "itinerary",
    "expense": "expenses",
    "note": "notes",
}
