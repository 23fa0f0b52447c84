"""Shared constants for dripline."""

SECONDS_PER_UNIT = {
    "MINUTES": 60,
    "HOURS": 60 * 60,
    "DAYS": 24 * 60 * 60,
    "WEEKS": 7 * 24 * 60 * 60,
}

DEFAULT_HEARTBEAT_INTERVAL = 60.0
DEFAULT_STALE_AFTER = 15 * 60.0
DEFAULT_MAX_ATTEMPTS = 3

ENROLLMENT_SOURCE = "workflow"
ABANDONED_EXECUTION_ERROR = "Execution abandoned: no heartbeat"
