"""
Content policy pipeline — heuristic rules, merging, semantic evaluation.

Depends on: config, models
"""

from mahilo.policy.heuristic import evaluate_heuristics
from mahilo.policy.merge import (
    applicable_heuristic_policies,
    merge_rules,
    policy_applies,
    select_inbound_rules,
    select_outbound_rules,
)
from mahilo.policy.semantic import (
    EvaluatorConfig,
    SemanticPolicyEvaluator,
    applicable_policies,
    build_policy_prompt,
    parse_decision,
)

__all__ = [
    "EvaluatorConfig",
    "SemanticPolicyEvaluator",
    "applicable_heuristic_policies",
    "applicable_policies",
    "build_policy_prompt",
    "evaluate_heuristics",
    "merge_rules",
    "parse_decision",
    "policy_applies",
    "select_inbound_rules",
    "select_outbound_rules",
]
