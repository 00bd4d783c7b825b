"""
Policy merging — combine heuristic rules from local config and the registry.

Merging only ever tightens: the smaller max length, the larger min length,
the union of keywords and patterns, and require_context if any source asks
for it. Local rules are folded first; registry policies follow in the order
they were supplied (the registry client already sorts them by priority).

Depends on: models
"""

from typing import Iterable, Optional, Union

from mahilo.models import (
    HeuristicPolicy,
    HeuristicRules,
    PolicyDirection,
    PolicyScope,
    PolicySourceMode,
)


# =============================================================================
# Applicability
# =============================================================================

def policy_applies(policy, direction: Union[PolicyDirection, str],
                   target_user: Optional[str] = None,
                   target_group: Optional[str] = None) -> bool:
    """Check whether a registry policy (heuristic or semantic) applies here.

    Disabled policies never apply. Direction must match or be "both". Global
    scope always applies; user/group scope only when the target matches.
    """
    if not policy.enabled:
        return False
    direction = PolicyDirection(direction)
    if policy.direction != PolicyDirection.BOTH and policy.direction != direction:
        return False
    if policy.scope == PolicyScope.GLOBAL:
        return True
    if policy.scope == PolicyScope.USER:
        return bool(target_user) and policy.target_user == target_user
    if policy.scope == PolicyScope.GROUP:
        return bool(target_group) and policy.target_group == target_group
    return False


def applicable_heuristic_policies(policies: Iterable[HeuristicPolicy],
                                  direction: Union[PolicyDirection, str],
                                  target_user: Optional[str] = None,
                                  target_group: Optional[str] = None) -> list[HeuristicPolicy]:
    """Filter registry heuristic policies, keeping their order."""
    return [p for p in policies if policy_applies(p, direction, target_user, target_group)]


# =============================================================================
# Merging
# =============================================================================

def merge_rules(*sources: Optional[HeuristicRules]) -> HeuristicRules:
    """Merge rule sets, taking the stricter value for every constraint."""
    merged = HeuristicRules()
    seen_keywords: set[str] = set()
    seen_patterns: set[str] = set()

    for source in sources:
        if source is None:
            continue

        if source.max_message_length is not None:
            if merged.max_message_length is None:
                merged.max_message_length = source.max_message_length
            else:
                merged.max_message_length = min(merged.max_message_length, source.max_message_length)

        if source.min_message_length is not None:
            if merged.min_message_length is None:
                merged.min_message_length = source.min_message_length
            else:
                merged.min_message_length = max(merged.min_message_length, source.min_message_length)

        # First-seen casing wins
        for kw in source.blocked_keywords:
            folded = kw.casefold()
            if folded not in seen_keywords:
                seen_keywords.add(folded)
                merged.blocked_keywords.append(kw)

        for pattern in source.blocked_patterns:
            if pattern not in seen_patterns:
                seen_patterns.add(pattern)
                merged.blocked_patterns.append(pattern)

        if source.require_context:
            merged.require_context = True

    return merged


def _select_rules(local: Optional[HeuristicRules],
                  registry_policies: Iterable[HeuristicPolicy],
                  mode: Union[PolicySourceMode, str]) -> HeuristicRules:
    try:
        mode = PolicySourceMode(mode)
    except ValueError:
        mode = PolicySourceMode.MERGED
    if mode == PolicySourceMode.LOCAL:
        return merge_rules(local)
    registry_rules = [p.rules for p in registry_policies]
    if mode == PolicySourceMode.REGISTRY:
        return merge_rules(*registry_rules)
    return merge_rules(local, *registry_rules)


def select_outbound_rules(local: Optional[HeuristicRules],
                          registry_policies: Iterable[HeuristicPolicy] = (),
                          mode: Union[PolicySourceMode, str] = PolicySourceMode.MERGED) -> HeuristicRules:
    """Rules to enforce on an outgoing message for the given source mode."""
    return _select_rules(local, registry_policies, mode)


def select_inbound_rules(local: Optional[HeuristicRules],
                         registry_policies: Iterable[HeuristicPolicy] = (),
                         mode: Union[PolicySourceMode, str] = PolicySourceMode.MERGED) -> HeuristicRules:
    """Rules to enforce on an arriving message for the given source mode.

    Length minimums and require_context are merged like any other rule but
    the engine only enforces them outbound.
    """
    return _select_rules(local, registry_policies, mode)
