#!/usr/bin/env python3
"""
Policy merge tests — stricter-wins merging, source modes, applicability,
and local rule loading from the environment.

Usage:
    python3 -m pytest test_merge.py
"""

from mahilo.config import load_local_rules
from mahilo.models import (
    HeuristicPolicy,
    HeuristicRules,
    PolicyDirection,
    PolicyScope,
    PolicySourceMode,
)
from mahilo.policy.heuristic import evaluate_heuristics
from mahilo.policy.merge import (
    applicable_heuristic_policies,
    merge_rules,
    policy_applies,
    select_inbound_rules,
    select_outbound_rules,
)
from mahilo.registry import parse_rules


def registry_policy(pid: str, rules: HeuristicRules, **kwargs) -> HeuristicPolicy:
    return HeuristicPolicy(id=pid, name=pid, rules=rules, **kwargs)


# ---------------------------------------------------------------------------
# merge_rules
# ---------------------------------------------------------------------------


def test_empty_merge() -> None:
    merged = merge_rules()
    assert merged == HeuristicRules()
    assert merge_rules(None, None) == HeuristicRules()


def test_max_takes_minimum_and_min_takes_maximum() -> None:
    merged = merge_rules(
        HeuristicRules(max_message_length=1000, min_message_length=2),
        HeuristicRules(max_message_length=500),
        HeuristicRules(min_message_length=10),
    )
    assert merged.max_message_length == 500
    assert merged.min_message_length == 10


def test_keywords_deduplicated_case_insensitively_first_casing_kept() -> None:
    merged = merge_rules(
        HeuristicRules(blocked_keywords=["Password", "ssn"]),
        HeuristicRules(blocked_keywords=["password", "SSN", "token"]),
    )
    assert merged.blocked_keywords == ["Password", "ssn", "token"]


def test_patterns_deduplicated_exactly() -> None:
    merged = merge_rules(
        HeuristicRules(blocked_patterns=[r"\d+", "abc"]),
        HeuristicRules(blocked_patterns=[r"\d+", "ABC"]),
    )
    assert merged.blocked_patterns == [r"\d+", "abc", "ABC"]


def test_require_context_if_any_source_requires_it() -> None:
    assert merge_rules(HeuristicRules(), HeuristicRules(require_context=True)).require_context
    assert not merge_rules(HeuristicRules(), HeuristicRules()).require_context


def test_merge_does_not_mutate_sources() -> None:
    a = HeuristicRules(blocked_keywords=["a"])
    merge_rules(a, HeuristicRules(blocked_keywords=["b"]))
    assert a.blocked_keywords == ["a"]


def test_merging_never_unblocks() -> None:
    a = HeuristicRules(max_message_length=20, blocked_keywords=["secret"])
    b = HeuristicRules(max_message_length=100, blocked_patterns=[r"\d{4}"])
    messages = ["a secret", "x" * 50, "pin 1234", "fine"]
    merged = merge_rules(a, b)
    for msg in messages:
        for source in (a, b):
            if not evaluate_heuristics(msg, None, source, PolicyDirection.OUTBOUND).allowed:
                assert not evaluate_heuristics(msg, None, merged, PolicyDirection.OUTBOUND).allowed


# ---------------------------------------------------------------------------
# Source modes
# ---------------------------------------------------------------------------

LOCAL = HeuristicRules(max_message_length=100, blocked_keywords=["local"])
REGISTRY = [
    registry_policy("p1", HeuristicRules(max_message_length=50, blocked_keywords=["Remote"])),
    registry_policy("p2", HeuristicRules(blocked_keywords=["remote", "other"])),
]


def test_local_mode_ignores_registry() -> None:
    rules = select_outbound_rules(LOCAL, REGISTRY, PolicySourceMode.LOCAL)
    assert rules.max_message_length == 100
    assert rules.blocked_keywords == ["local"]


def test_registry_mode_ignores_local() -> None:
    rules = select_outbound_rules(LOCAL, REGISTRY, PolicySourceMode.REGISTRY)
    assert rules.max_message_length == 50
    assert rules.blocked_keywords == ["Remote", "other"]


def test_merged_mode_folds_local_first_then_registry_in_order() -> None:
    rules = select_outbound_rules(LOCAL, REGISTRY, PolicySourceMode.MERGED)
    assert rules.max_message_length == 50
    assert rules.blocked_keywords == ["local", "Remote", "other"]


def test_merged_is_default_and_unknown_mode_falls_back_to_merged() -> None:
    assert select_outbound_rules(LOCAL, REGISTRY) == select_outbound_rules(LOCAL, REGISTRY, "merged")
    assert select_inbound_rules(LOCAL, REGISTRY, "bogus") == select_inbound_rules(LOCAL, REGISTRY, "merged")


def test_no_local_rules() -> None:
    rules = select_inbound_rules(None, REGISTRY)
    assert rules.blocked_keywords == ["Remote", "other"]


# ---------------------------------------------------------------------------
# Applicability
# ---------------------------------------------------------------------------


def test_policy_applies_by_direction_and_scope() -> None:
    rules = HeuristicRules()
    global_out = registry_policy("g", rules, direction=PolicyDirection.OUTBOUND)
    both = registry_policy("b", rules, direction=PolicyDirection.BOTH)
    user = registry_policy("u", rules, scope=PolicyScope.USER, target_user="alice",
                           direction=PolicyDirection.BOTH)
    group = registry_policy("gr", rules, scope=PolicyScope.GROUP, target_group="team",
                            direction=PolicyDirection.INBOUND)
    disabled = registry_policy("d", rules, enabled=False)

    assert policy_applies(global_out, "outbound")
    assert not policy_applies(global_out, "inbound")
    assert policy_applies(both, "inbound")
    assert policy_applies(user, "outbound", target_user="alice")
    assert not policy_applies(user, "outbound", target_user="bob")
    assert not policy_applies(user, "outbound")
    assert policy_applies(group, "inbound", target_group="team")
    assert not policy_applies(group, "inbound", target_user="team")
    assert not policy_applies(disabled, "outbound")

    picked = applicable_heuristic_policies([global_out, both, user, group, disabled], "outbound",
                                           target_user="alice")
    assert [p.id for p in picked] == ["g", "b", "u"]


# ---------------------------------------------------------------------------
# Rule parsing / local config
# ---------------------------------------------------------------------------


def test_parse_rules_accepts_camel_and_snake_case() -> None:
    camel = parse_rules({"maxMessageLength": 10, "blockedKeywords": ["a"], "requireContext": True})
    snake = parse_rules({"max_message_length": 10, "blocked_keywords": ["a"], "require_context": True})
    assert camel == snake
    assert camel.max_message_length == 10


def test_parse_rules_ignores_invalid_lengths() -> None:
    rules = parse_rules({"maxMessageLength": -1, "minMessageLength": "ten"})
    assert rules.max_message_length is None
    assert rules.min_message_length is None


def test_load_local_rules_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("MAHILO_LOCAL_POLICIES", '{"maxMessageLength": 2000, "blockedKeywords": ["password"]}')
    monkeypatch.setenv("MAHILO_INBOUND_POLICIES", "not json")
    outbound, inbound = load_local_rules()
    assert parse_rules(outbound).blocked_keywords == ["password"]
    assert inbound == {}
