"""
Semantic policy evaluator — natural-language policies judged by a model.

Message content never leaves the node for evaluation: the prompt is run
through a local completion capability (see completion.py). Policies are
evaluated one at a time, in the order given, and the first BLOCK stops the
run. An unparseable answer allows; an evaluation failure follows the
policy's fail_behavior.

Depends on: config, models, policy/merge, policy/completion
"""

import asyncio
import json
import sys
import time
from dataclasses import dataclass, replace
from typing import Iterable, Optional, Union

from mahilo.config import (
    SEMANTIC_MAX_TOKENS,
    SEMANTIC_MODEL,
    SEMANTIC_PROVIDER,
    SEMANTIC_TEMPERATURE,
    SEMANTIC_TIMEOUT,
)
from mahilo.models import (
    FailBehavior,
    PolicyDirection,
    SemanticEvaluation,
    SemanticPolicy,
    SemanticVerdict,
)
from mahilo.policy.completion import CompletionFn, CompletionRequest
from mahilo.policy.merge import policy_applies


EVALUATION_FAILED_REASON = "Policy evaluation failed"
DEFAULT_BLOCK_REASON = "Message blocked by LLM policy"


@dataclass
class EvaluatorConfig:
    provider: Optional[str] = SEMANTIC_PROVIDER
    model: Optional[str] = SEMANTIC_MODEL
    timeout: float = SEMANTIC_TIMEOUT
    temperature: float = SEMANTIC_TEMPERATURE
    max_tokens: int = SEMANTIC_MAX_TOKENS


# =============================================================================
# Prompt / Decision
# =============================================================================

def build_policy_prompt(policy: SemanticPolicy, message: str, context: Optional[str] = None) -> str:
    context_block = f"\n## Context\n{context}" if context else ""
    return f"""\
You are a message policy evaluator. Your job is to determine if a message should be allowed or blocked based on a policy.

## Policy: {policy.name}
{policy.policy_content}

## Message to Evaluate
{message}
{context_block}

## Instructions
Evaluate whether this message should be ALLOWED or BLOCKED based on the policy above.

Respond with ONLY a JSON object in this exact format:
{{
  "decision": "ALLOW" or "BLOCK",
  "reason": "Brief explanation (only if BLOCK)"
}}

Important:
- Be strict about following the policy
- If unsure, lean toward ALLOW (unless the policy says otherwise)
- Keep the reason brief (under 100 chars)
- Return ONLY the JSON, no other text"""


def parse_decision(text: str) -> SemanticVerdict:
    """Find the first JSON object carrying a "decision" and read it.

    Surrounding prose is ignored. Anything other than BLOCK (any case)
    allows, and so does text with no parseable decision.
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict) and "decision" in obj:
            decision = str(obj.get("decision") or "").strip().upper()
            if decision == "BLOCK":
                reason = obj.get("reason")
                return SemanticVerdict(allowed=False, reason=str(reason) if reason else None)
            return SemanticVerdict(allowed=True)
        start = text.find("{", start + 1)
    return SemanticVerdict(allowed=True)


def applicable_policies(policies: Iterable[SemanticPolicy],
                        direction: Union[PolicyDirection, str],
                        target_user: Optional[str] = None,
                        target_group: Optional[str] = None) -> list[SemanticPolicy]:
    """Filter semantic policies by enabled flag, direction and scope, keeping order."""
    return [p for p in policies if policy_applies(p, direction, target_user, target_group)]


# =============================================================================
# Evaluator
# =============================================================================

class SemanticPolicyEvaluator:
    """Evaluate messages against semantic policies through an injected completion."""

    def __init__(self, complete: CompletionFn, config: Optional[EvaluatorConfig] = None):
        self.complete = complete
        self.config = config or EvaluatorConfig()

    async def evaluate_one(self, policy: SemanticPolicy, message: str,
                           context: Optional[str] = None, **overrides) -> SemanticVerdict:
        """Evaluate a single policy. Never raises for evaluation failures."""
        config = replace(self.config, **overrides) if overrides else self.config
        request = CompletionRequest(
            prompt=build_policy_prompt(policy, message, context),
            session_id=f"mahilo-policy-{policy.id}-{int(time.time() * 1000)}",
            provider=config.provider,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            disable_tools=True,
        )

        try:
            text = await asyncio.wait_for(self.complete(request), timeout=config.timeout)
        except asyncio.TimeoutError:
            error = f"timed out after {config.timeout}s"
        except Exception as e:
            error = str(e) or e.__class__.__name__
        else:
            return parse_decision(text or "")

        if policy.fail_behavior == FailBehavior.CLOSED:
            print(
                f"[Mahilo] Policy '{policy.name}' ({policy.id}) evaluation failed, blocking (fail-closed): {error}",
                file=sys.stderr,
            )
            return SemanticVerdict(allowed=False, reason=EVALUATION_FAILED_REASON, error=error)

        print(
            f"[Mahilo] Policy '{policy.name}' ({policy.id}) evaluation failed, allowing (fail-open): {error}",
            file=sys.stderr,
        )
        return SemanticVerdict(allowed=True, error=error)

    async def evaluate_many(self, policies: Iterable[SemanticPolicy], message: str,
                            context: Optional[str] = None, **overrides) -> SemanticEvaluation:
        """Evaluate policies in the order given, stopping at the first block."""
        result = SemanticEvaluation(allowed=True)
        for policy in policies:
            verdict = await self.evaluate_one(policy, message, context, **overrides)
            result.evaluated += 1
            if verdict.error:
                result.errors.append(f"{policy.id}: {verdict.error}")
            if not verdict.allowed:
                result.allowed = False
                result.reason = verdict.reason or DEFAULT_BLOCK_REASON
                result.blocking_policy_id = policy.id
                result.blocking_policy_name = policy.name
                return result
        return result
