"""
Registry policy lookups for the gates, with failures logged and absorbed.

A registry outage must not stop the gates: heuristic checks fall back to
local rules (or to none in registry mode), semantic checks run with no
registry policies (individual policies still honor fail-closed once fetched).

Depends on: errors, models, registry
"""

import sys
from typing import Optional

from mahilo.errors import MahiloError
from mahilo.models import HeuristicPolicy, PolicyDirection, PolicySourceMode, SemanticPolicy
from mahilo.registry import RegistryClient


def _heuristic_fallback(mode: PolicySourceMode) -> str:
    if mode == PolicySourceMode.REGISTRY:
        return "no heuristic rules apply (registry mode ignores local rules)"
    return "using local rules only"


async def fetch_heuristic_policies(registry: Optional[RegistryClient], mode: PolicySourceMode,
                                   direction: PolicyDirection, target_user: Optional[str] = None,
                                   target_group: Optional[str] = None) -> list[HeuristicPolicy]:
    if registry is None or mode == PolicySourceMode.LOCAL:
        return []
    try:
        return await registry.get_applicable_heuristic_policies(direction, target_user, target_group)
    except MahiloError as e:
        print(f"[Mahilo] Registry heuristic policies unavailable, {_heuristic_fallback(mode)}: {e.message}",
              file=sys.stderr)
        return []


def cached_heuristic_policies(registry: Optional[RegistryClient], mode: PolicySourceMode,
                              direction: PolicyDirection, target_user: Optional[str] = None,
                              target_group: Optional[str] = None) -> list[HeuristicPolicy]:
    """Registry heuristic policies already in the client cache. No network."""
    if registry is None or mode == PolicySourceMode.LOCAL:
        return []
    return registry.cached_applicable_heuristic_policies(direction, target_user, target_group)


async def fetch_semantic_policies(registry: Optional[RegistryClient], direction: PolicyDirection,
                                  target_user: Optional[str] = None,
                                  target_group: Optional[str] = None) -> list[SemanticPolicy]:
    if registry is None:
        return []
    try:
        return await registry.get_applicable_policies(direction, target_user, target_group)
    except MahiloError as e:
        print(f"[Mahilo] LLM policy fetch failed, skipping semantic checks: {e.message}", file=sys.stderr)
        return []
