"""Engine-wide defaults."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Upper bound on step entries per execution run; branches can form cycles.
DEFAULT_MAX_STEP_VISITS = 1000

WEBHOOK_USER_AGENT = "Inkflow-Webhooks/1.0"
WEBHOOK_TIMEOUT = 10.0  # seconds
HEADER_EVENT = "X-Event"
HEADER_DELIVERY = "X-Delivery"
HEADER_SIGNATURE = "X-Signature"

CANCELLED_MESSAGE = "Execution cancelled by user"

# Context metadata keys
SUSPENSION_KEY = "suspension"
PARALLEL_DONE_KEY = "parallel_completed"
