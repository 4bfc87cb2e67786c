"""Global constants for jobrelay.

Centralizes the timing and sizing defaults shared between the config models,
the orchestrator components and the worker-side session.
"""

# =============================================================================
# Event bus / live streams
# =============================================================================

JOB_EVENTS_CHANNEL = "job:events"
"""Single Redis pub/sub channel carrying every job's events."""

STREAM_KEEPALIVE_SECONDS = 30.0
"""Inactivity interval after which a live stream emits a keepalive comment."""

SUBSCRIBER_QUEUE_SIZE = 1000
"""Per-subscriber bound on undelivered events before drop-oldest kicks in."""

STREAM_QUEUE_SIZE = 100
"""Per-client bound on frames waiting to be written to the connection."""

# =============================================================================
# Failure detection
# =============================================================================

LOG_GRACE_SECONDS = 30.0
"""Time a running job may go without logs before it is presumed dead."""

LOG_QUIET_SECONDS = 30.0
"""Time without bus events before the inspector looks at a job's logs."""

MAX_LOG_LINES = 500
"""Upper bound on log lines fetched from the log sink per inspection."""

STALE_JOB_TIMEOUT_SECONDS = 600.0
"""Ceiling on time in ``running`` before the reaper fails a job."""

# =============================================================================
# Worker contract
# =============================================================================

WORKER_STATUS_POLL_SECONDS = 5.0
"""How often a paused worker re-reads its job status."""

WORKER_MAX_PAUSE_SECONDS = 600.0
"""How long a worker waits in ``paused`` before giving up."""

LAUNCH_TIMEOUT_SECONDS = 30.0
"""Bound on the remote platform's start call."""

MAX_RESULT_STEPS = 200
"""Steps folded into a job's result payload before older ones are dropped."""
