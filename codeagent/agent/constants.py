"""Constants for the agent loop and its chat transport.

Single source of truth for the magic numbers used across the orchestrator,
the protocol adapter, the tools and the verification runner.
"""

# ---------------------------------------------------------------------------
# Dynamic request timeout (seconds)
# ---------------------------------------------------------------------------
MIN_REQUEST_TIMEOUT_SECONDS = 120.0
MAX_REQUEST_TIMEOUT_SECONDS = 300.0
TIMEOUT_MULTIPLIER_MID = 1.2  # iterations 4-8
TIMEOUT_MULTIPLIER_LATE = 1.5  # iterations 9+
TIMEOUT_RETRY_GROWTH = 0.5  # budget *= 1 + retry_count * growth

# ---------------------------------------------------------------------------
# Timeout policy
# ---------------------------------------------------------------------------
MAX_TIMEOUT_RETRIES = 3  # in-place retries within one iteration
MAX_CONSECUTIVE_TIMEOUTS = 9  # across iterations, then the run fails
TIMEOUT_RETRY_BASE_DELAY_SECONDS = 1.0
TIMEOUT_RETRY_MAX_DELAY_SECONDS = 8.0

# ---------------------------------------------------------------------------
# LLM retry (rate limits, server errors, network errors)
# ---------------------------------------------------------------------------
LLM_MAX_RETRIES = 3
LLM_RETRY_BASE_DELAY_SECONDS = 1.0
LLM_RETRY_MAX_DELAY_SECONDS = 15.0
LLM_RETRY_JITTER_SECONDS = 0.5

# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------
MIN_MAX_TOKENS = 16384
ANTHROPIC_VERSION = "2023-06-01"
FALLBACK_ACK = "Understood. I will use the tools as specified."

# ---------------------------------------------------------------------------
# Completion heuristic
# ---------------------------------------------------------------------------
CONTINUE_MAX_CHARS = 500
CONTINUE_MAX_NUDGES = 2
CONTINUE_MAX_ITERATION = 10  # later short replies are taken as answers
CONTINUE_PHRASES = (
    "let me",
    "i will",
    "i'll",
    "now i",
    "next i",
    "creating",
    "writing",
    "generating",
    "let's",
    "going to",
    "need to create",
    "need to write",
)

# ---------------------------------------------------------------------------
# Output truncation
# ---------------------------------------------------------------------------
TOOL_RESULT_MAX_CHARS = 8000
ACTION_DETAILS_MAX_CHARS = 200
MAX_FILE_READ_BYTES = 100_000
MAX_FILE_WRITE_BYTES = 1_000_000
FETCH_MAX_CHARS = 10_000
COMMAND_OUTPUT_MAX_CHARS = 10_000
VERIFY_OUTPUT_MAX_CHARS = 2000

# ---------------------------------------------------------------------------
# Shell execution
# ---------------------------------------------------------------------------
SHELL_COMMAND_TIMEOUT_SECONDS = 120
VERIFY_TIMEOUT_SECONDS = 300
FETCH_TIMEOUT_SECONDS = 30

# ---------------------------------------------------------------------------
# Context window management
# ---------------------------------------------------------------------------
COMPRESSION_THRESHOLD_CHARS = 80_000
COMPRESSION_KEEP_LAST_N = 6
CHAT_HISTORY_MAX_CHARS = 16_000
DUPLICATE_WRITE_LIMIT = 2
SEARCH_MAX_RESULTS = 50
STRUCTURE_MAX_DEPTH = 3
STRUCTURE_MAX_ENTRIES = 200

IGNORED_DIRS = {
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    "dist",
    "build",
    ".next",
    ".ruff_cache",
    ".pytest_cache",
    "target",
    "vendor",
}
