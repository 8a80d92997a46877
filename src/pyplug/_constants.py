"""Internal constants shared across the library."""

API_BASE_URL = "https://api.github.com"
ARCHIVE_BASE_URL = "https://github.com"
USER_AGENT = "pyplug/1.0"

# ------------------------------------------------------------------
# Key/value backend key prefixes
# ------------------------------------------------------------------

STATES_KEY = "pyplug:states"
ERROR_CONTEXT_PREFIX = "pyplug:error_context:"
METADATA_KEY = "pyplug:metadata"
LOCK_PREFIX = "pyplug:lock:"
CACHE_PREFIX = "pyplug:proc:"
EVENTS_PREFIX = "pyplug:events:"
BROADCAST_PREFIX = "pyplug:broadcast:"
BROADCAST_LAST_ID_KEY = "pyplug:broadcast_last_id"
ACTIVE_SET_KEY = "pyplug:host_active"
AUDIT_KEY = "pyplug:audit_trail"

# ------------------------------------------------------------------
# Defaults
# ------------------------------------------------------------------

DEFAULT_LOCK_TTL: float = 60.0
DEFAULT_STATE_SNAPSHOT_TTL: float = 5 * 60
DEFAULT_ERROR_CONTEXT_TTL: float = 24 * 3600
DEFAULT_EVENT_LOG_TTL: float = 24 * 3600
DEFAULT_CACHE_TTL: float = 7 * 24 * 3600

GLOBAL_EVENT_CAPACITY = 100
RESOURCE_EVENT_CAPACITY = 30
AUDIT_CAPACITY = 1000

#: Scratch artifacts left behind by interrupted downloads (``<md5>.tmp``).
TEMP_ARTIFACT_PATTERN = r"^[a-f0-9]{32}\.tmp$"

#: How many bytes of a candidate entry point are scanned for the header.
ENTRY_POINT_SCAN_BYTES = 8192
