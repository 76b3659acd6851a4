"""
Runtime configuration read from the environment.

The database URL lives in database.py and LOG_LEVEL in logging_config.py;
this module holds the engine's timing knobs.
"""

import os

# Periodic flush cadence, in clock ticks (one tick per second)
FLUSH_INTERVAL_SECONDS = int(os.getenv("FLUSH_INTERVAL_SECONDS", "15"))

# Gap between clock wake-ups treated as a suspended host
CLOCK_DRIFT_THRESHOLD_SECONDS = float(os.getenv("CLOCK_DRIFT_THRESHOLD_SECONDS", "3"))

# Back-off before the background flusher retries a failed write
SYNC_RETRY_DELAY_SECONDS = float(os.getenv("SYNC_RETRY_DELAY_SECONDS", "2"))

# Timeout for the HTTP persistence client
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

# Hosted sessions deliver flushes on a worker thread so intents and ticks
# never wait on storage; set to "false" to save inline on the caller's thread
BACKGROUND_SYNC = os.getenv("BACKGROUND_SYNC", "true").lower() in ("1", "true", "yes")
