DEFAULT_WORKSPACE = "default"

DEFAULT_SCAN_LIMIT = 50
MAX_SCAN_LIMIT = 200

DEFAULT_BATCH_SIZE = 10
MAX_BATCH_SIZE = 25

DEFAULT_RUNS_LIMIT = 50
MAX_RUNS_LIMIT = 200

DEFAULT_MAX_WORKSPACES = 200

RUNNER_TOKEN_HEADER = "x-flowmail-runner-token"

# Event types the engine writes back to the event log.
EVENT_EMAIL_QUEUED = "email_queued"
EVENT_FIELD_UPDATED = "automation_update_field"


def clamp(value: int | None, default: int, upper: int, lower: int = 1) -> int:
    """Coerce ``value`` into ``[lower, upper]`` falling back to ``default``."""
    if value is None:
        return default
    return max(lower, min(upper, int(value)))

MAX_WORKSPACES = 300
