"""
Heuristic policy engine — deterministic length / keyword / pattern / context checks.

Pure functions only. Rules are checked in a fixed order and the first
violation wins. Reasons never reveal which keyword or pattern matched; the
`rule` field of the result says which check fired, for logs.

Depends on: models
"""

import re
import sys
from functools import lru_cache
from typing import Optional, Union

from mahilo.models import HeuristicRules, PolicyDirection, PolicyResult


@lru_cache(maxsize=512)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        print(f"[Mahilo] Skipping invalid blocked pattern {pattern!r}: {e}", file=sys.stderr)
        return None


def contains_blocked_keyword(message: str, keywords: list[str]) -> bool:
    folded = message.casefold()
    return any(kw and kw.casefold() in folded for kw in keywords)


def matches_blocked_pattern(message: str, patterns: list[str]) -> bool:
    """True if any valid pattern matches anywhere in message. Invalid patterns are skipped."""
    for pattern in patterns:
        regex = _compile(pattern)
        if regex is not None and regex.search(message):
            return True
    return False


def evaluate_heuristics(message: str, context: Optional[str],
                        rules: Optional[HeuristicRules],
                        direction: Union[PolicyDirection, str] = PolicyDirection.OUTBOUND) -> PolicyResult:
    """Check a message against heuristic rules.

    Order: max length, min length (outbound), keywords, patterns,
    required context (outbound). Returns the first violation, or allowed.
    """
    if rules is None:
        return PolicyResult(allowed=True)
    outbound = PolicyDirection(direction) == PolicyDirection.OUTBOUND
    length = len(message)

    if rules.max_message_length is not None and length > rules.max_message_length:
        return PolicyResult(
            allowed=False,
            reason=f"Message too long ({length} chars, max {rules.max_message_length})",
            rule="max_length",
        )

    if outbound and rules.min_message_length is not None and length < rules.min_message_length:
        return PolicyResult(
            allowed=False,
            reason=f"Message too short ({length} chars, min {rules.min_message_length})",
            rule="min_length",
        )

    if rules.blocked_keywords and contains_blocked_keyword(message, rules.blocked_keywords):
        return PolicyResult(allowed=False, reason="Message contains blocked keyword", rule="blocked_keyword")

    if rules.blocked_patterns and matches_blocked_pattern(message, rules.blocked_patterns):
        return PolicyResult(allowed=False, reason="Message matches blocked pattern", rule="blocked_pattern")

    if outbound and rules.require_context and not (context or "").strip():
        return PolicyResult(
            allowed=False,
            reason="Context is required for outgoing messages",
            rule="require_context",
        )

    return PolicyResult(allowed=True)
