"""Centralized constants"""

import os

# Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
SESSION_LOCK_TTL_SECONDS = int(os.getenv("SESSION_LOCK_TTL_SECONDS", "300"))

# Execution
EXECUTION_TIMEOUT_SECONDS = float(os.getenv("EXECUTION_TIMEOUT_SECONDS", "120"))
MAX_CONCURRENT_NODES = int(os.getenv("MAX_CONCURRENT_NODES", "1"))

# Orphan handling: "error" | "warn" | "ignore"
ORPHAN_NODE_POLICY = os.getenv("ORPHAN_NODE_POLICY", "warn")
ORPHAN_POLICIES = {"error", "warn", "ignore"}

# Multiple succeeded output nodes: "map" (keyed by node id) | "last"
MULTI_OUTPUT_POLICIES = {"map", "last"}

# Limits
MAX_NODES_PER_GRAPH = 200
MAX_CONFIG_SIZE_BYTES = 10 * 1024   # 10KB
MAX_TEMPLATE_LENGTH = 500
MAX_IF_ELSE_BRANCHES = 2

# Retry Configuration (http handler)
DEFAULT_HTTP_RETRIES = 2
MAX_RETRY_ATTEMPTS = 5
INITIAL_RETRY_DELAY_SECONDS = 0.5
MAX_RETRY_DELAY_SECONDS = 10

# Retryable HTTP Status Codes
RETRYABLE_HTTP_STATUS_CODES = {500, 502, 503, 504, 408, 429}

# OpenAI
OPENAI_API_URL = os.getenv("OPENAI_API_URL", "https://api.openai.com/v1/chat/completions")
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

# Scoring (lower is better)
HINT_PENALTY_MAX = 40
ATTEMPT_PENALTY_UNIT = 5
ATTEMPT_PENALTY_MAX = 40
TIME_PENALTY_RATE = 20
TIME_PENALTY_MAX = 40
DEFAULT_EXPECTED_DURATION_SECONDS = 120

# Certificate tiers as (upper bound, tier), checked in order
CERTIFICATE_TIERS = (
    (20, "ELITE"),
    (40, "ADVANCED"),
    (60, "PROFICIENT"),
    (80, "COMPETENT"),
)
DEFAULT_CERTIFICATE_TIER = "FOUNDATIONAL"

# Adaptation policy
ADAPTATION_WINDOW = 5
LOW_STRUGGLE_THRESHOLD = 30
HIGH_STRUGGLE_THRESHOLD = 70
SEVERE_STRUGGLE_THRESHOLD = 85
OVERTIME_FACTOR = 2.5
LONG_PAUSE_SECONDS = 30
REPEATED_FAILURE_COUNT = 3
