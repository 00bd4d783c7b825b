"""
Configuration constants, environment variables, and feature flags.

This is a leaf module with no internal dependencies.
"""

import json
import os
import sys

# =============================================================================
# Protocol
# =============================================================================

DEFAULT_PORT = int(os.environ.get("MAHILO_PORT", "8300"))
DEFAULT_HOST = os.environ.get("MAHILO_HOST", "127.0.0.1")
SIGNATURE_HEADER = "X-Mahilo-Signature"
TIMESTAMP_HEADER = "X-Mahilo-Timestamp"
SIGNATURE_PREFIX = "sha256="
TIMESTAMP_TOLERANCE_SECONDS = 300  # symmetric: stale and future-dated both rejected

# =============================================================================
# Webhook
# =============================================================================

CALLBACK_PATH = os.environ.get("MAHILO_CALLBACK_PATH", "/mahilo/incoming")
CALLBACK_SECRET = os.environ.get("MAHILO_CALLBACK_SECRET")  # None = reject every delivery
REQUIRED_INBOUND_FIELDS = ("message_id", "sender", "sender_agent", "message", "timestamp")

# =============================================================================
# Duplicate Suppression
# =============================================================================

DEDUP_TTL_SECONDS = 3600       # 1 hour
DEDUP_SWEEP_INTERVAL = 300     # 5 minutes

# =============================================================================
# Registry
# =============================================================================

MAHILO_API_URL = os.environ.get("MAHILO_API_URL", "https://api.mahilo.dev/api/v1")
MAHILO_API_KEY = os.environ.get("MAHILO_API_KEY")
REGISTRY_TIMEOUT = 30.0
REGISTRY_MAX_ATTEMPTS = 3
REGISTRY_RETRY_BACKOFF = 0.1    # seconds, doubled after each failed attempt
POLICY_CACHE_TTL = 300          # 5 minutes

# =============================================================================
# Policies
# =============================================================================

POLICY_SOURCE_MODE = os.environ.get("MAHILO_POLICY_SOURCE", "merged").lower()
SEMANTIC_POLICIES_ENABLED = os.environ.get("MAHILO_LLM_POLICIES", "false").lower() == "true"
SEMANTIC_PROVIDER = os.environ.get("MAHILO_LLM_PROVIDER")
SEMANTIC_MODEL = os.environ.get("MAHILO_LLM_MODEL")
SEMANTIC_TIMEOUT = float(os.environ.get("MAHILO_LLM_TIMEOUT", "15"))
SEMANTIC_TEMPERATURE = 0.0
SEMANTIC_MAX_TOKENS = 256

EVAL_COMMAND = os.environ.get("MAHILO_EVAL_COMMAND", "claude")
EVAL_ARGS: list[str] = [
    a.strip() for a in os.environ.get(
        "MAHILO_EVAL_ARGS", "-p,--output-format,text"
    ).split(",") if a.strip()
]

# =============================================================================
# Inbound Dispatch
# =============================================================================

INBOUND_SESSION_KEY = os.environ.get("MAHILO_INBOUND_SESSION_KEY", "main")
INBOUND_AGENT_ID = os.environ.get("MAHILO_INBOUND_AGENT_ID")
AGENT_COMMAND = os.environ.get("MAHILO_AGENT_COMMAND", "claude")
AGENT_ARGS: list[str] = [
    a.strip() for a in os.environ.get(
        "MAHILO_AGENT_ARGS", "-p,--dangerously-skip-permissions"
    ).split(",") if a.strip()
]
AGENT_ENV_CLEANUP: list[str] = [
    v.strip() for v in os.environ.get(
        "MAHILO_AGENT_ENV_CLEANUP", "CLAUDECODE,CLAUDE_CODE_ENTRYPOINT"
    ).split(",") if v.strip()
]
AGENT_TIMEOUT = int(os.environ.get("MAHILO_AGENT_TIMEOUT", "300"))


# =============================================================================
# Local heuristic rules (JSON in the environment)
# =============================================================================

def _load_json_env(name: str) -> dict:
    raw = os.environ.get(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"[Mahilo] Ignoring {name}: invalid JSON ({e})", file=sys.stderr)
        return {}
    if not isinstance(value, dict):
        print(f"[Mahilo] Ignoring {name}: expected a JSON object", file=sys.stderr)
        return {}
    return value


def load_local_rules() -> tuple[dict, dict]:
    """Return the raw (outbound, inbound) local rule dicts.

    MAHILO_LOCAL_POLICIES holds outbound rules, MAHILO_INBOUND_POLICIES the
    inbound ones. Both use the registry rule keys, e.g.
    {"maxLength": 2000, "blockedKeywords": ["password"]}.
    """
    return _load_json_env("MAHILO_LOCAL_POLICIES"), _load_json_env("MAHILO_INBOUND_POLICIES")
