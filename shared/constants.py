"""Centralized constants"""

# Redis TTLs
REDIS_KEY_TTL_SECONDS = 7 * 24 * 60 * 60  # 7 days

# Timeouts
DEFAULT_REQUEST_TIMEOUT_MS = 30000  # 30 seconds
MIN_REQUEST_TIMEOUT_MS = 100
MAX_REQUEST_TIMEOUT_MS = 300000     # 5 minutes
PROXY_REQUEST_TIMEOUT_SECONDS = 30

# Retry Configuration
DEFAULT_RETRY_COUNT = 0
MAX_RETRY_ATTEMPTS = 5
INITIAL_RETRY_DELAY_SECONDS = 1
MAX_RETRY_DELAY_SECONDS = 60

# Retryable HTTP Status Codes
RETRYABLE_HTTP_STATUS_CODES = {500, 502, 503, 504, 408, 429}

# Parallel invocations within one step
MAX_PARALLEL_INVOCATIONS = 8

# Limits
MAX_STEPS_PER_FLOW = 500
MAX_FLOWS_PER_SEQUENCE = 200

# Response error indicators, highest priority first
ERROR_INDICATOR_FIELDS = ("__error", "error")
SUCCESS_INDICATOR_FIELD = "success"
ERROR_MESSAGE_FALLBACK_FIELD = "message"
UNKNOWN_RESPONSE_ERROR = "Unknown error from API response"

# Key prefix for accumulated sequence outputs
FLOW_OUTPUT_KEY_PREFIX = "flow_"

# Hosts the proxy relay refuses to call
BLOCKED_PROXY_HOST_PREFIXES = ("192.168.", "10.", "172.16.")
BLOCKED_PROXY_HOST_SUFFIXES = (".local", ".internal")
BLOCKED_PROXY_HOSTS = {"localhost", "127.0.0.1"}

# Template expressions longer than this are rejected at submission
MAX_TEMPLATE_LENGTH = 1000

# Run log entries kept per run
MAX_RUN_LOG_ENTRIES = 1000
