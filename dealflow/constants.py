"""Default values shared across dealflow components."""

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE = 2.0
DEFAULT_RETRY_JITTER = 0.5
DEFAULT_STEP_MAX_ATTEMPTS = 3

DEFAULT_WEBHOOK_TIMEOUT = 10.0

DEFAULT_SCHEDULER_INTERVAL = 300.0
DEFAULT_SCHEDULER_BATCH_SIZE = 100

DEFAULT_EVENTS_TOPIC = "crm.events"
