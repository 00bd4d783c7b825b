#!/usr/bin/env python3
"""
Semantic policy evaluator tests — decision parsing, fail-open / fail-closed,
timeouts and short-circuiting. The completion capability is a fake; no
model is ever called.

Usage:
    python3 -m pytest test_semantic.py
"""

import asyncio

from mahilo.models import FailBehavior, PolicyDirection, PolicyScope, SemanticPolicy
from mahilo.policy.completion import AgentCliCompletion, CompletionRequest
from mahilo.policy.semantic import (
    EvaluatorConfig,
    SemanticPolicyEvaluator,
    applicable_policies,
    build_policy_prompt,
    parse_decision,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ALLOW = '{"decision": "ALLOW"}'
BLOCK = '{"decision": "BLOCK", "reason": "shares credentials"}'


class FakeCompletion:
    """Answers per policy name found in the prompt; records every request."""

    def __init__(self, answers: dict[str, str] = None, default: str = ALLOW,
                 error: Exception = None, delay: float = 0.0):
        self.answers = answers or {}
        self.default = default
        self.error = error
        self.delay = delay
        self.requests: list[CompletionRequest] = []

    async def __call__(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        for name, answer in self.answers.items():
            if f"## Policy: {name}\n" in request.prompt:
                return answer
        return self.default


def policy(pid: str, name: str = None, **kwargs) -> SemanticPolicy:
    return SemanticPolicy(id=pid, name=name or pid, policy_content=f"Rules for {pid}", **kwargs)


def run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# parse_decision
# ---------------------------------------------------------------------------


def test_parse_plain_allow_and_block() -> None:
    assert parse_decision(ALLOW).allowed
    blocked = parse_decision(BLOCK)
    assert not blocked.allowed
    assert blocked.reason == "shares credentials"


def test_parse_tolerates_surrounding_prose() -> None:
    text = 'Sure! Here is my verdict:\n```json\n{"decision": "BLOCK", "reason": "pii"}\n```\nThanks.'
    result = parse_decision(text)
    assert not result.allowed
    assert result.reason == "pii"


def test_parse_decision_is_case_insensitive() -> None:
    assert not parse_decision('{"decision": "block"}').allowed
    assert parse_decision('{"decision": "allow"}').allowed


def test_unparseable_output_allows() -> None:
    assert parse_decision("I think this should be blocked.").allowed
    assert parse_decision("").allowed
    assert parse_decision('{"decision": BLOCK}').allowed


def test_first_well_formed_decision_object_is_used() -> None:
    text = 'notes {not json} then {"score": 3} and {"decision": "BLOCK"} and {"decision": "ALLOW"}'
    assert not parse_decision(text).allowed


def test_unknown_decision_allows() -> None:
    assert parse_decision('{"decision": "MAYBE"}').allowed


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def test_prompt_embeds_policy_message_and_context() -> None:
    p = policy("p1", name="No credentials")
    prompt = build_policy_prompt(p, "my password is hunter2", "user asked")
    assert "## Policy: No credentials\nRules for p1" in prompt
    assert "## Message to Evaluate\nmy password is hunter2" in prompt
    assert "## Context\nuser asked" in prompt
    assert '"decision": "ALLOW" or "BLOCK"' in prompt


def test_prompt_omits_context_section_without_context() -> None:
    assert "## Context" not in build_policy_prompt(policy("p1"), "hello")


# ---------------------------------------------------------------------------
# evaluate_one
# ---------------------------------------------------------------------------


def test_request_is_bounded_and_tool_free() -> None:
    fake = FakeCompletion()
    evaluator = SemanticPolicyEvaluator(fake)
    verdict = run(evaluator.evaluate_one(policy("p1"), "hello"))
    assert verdict.allowed
    request = fake.requests[0]
    assert request.temperature == 0
    assert request.max_tokens == 256
    assert request.timeout == 15
    assert request.disable_tools is True
    assert request.session_id.startswith("mahilo-policy-p1-")


def test_overrides_apply_per_call() -> None:
    fake = FakeCompletion()
    evaluator = SemanticPolicyEvaluator(fake, EvaluatorConfig(model="small"))
    run(evaluator.evaluate_one(policy("p1"), "hello", temperature=0.5))
    assert fake.requests[0].temperature == 0.5
    assert fake.requests[0].model == "small"
    assert evaluator.config.temperature == 0


def test_block_verdict() -> None:
    evaluator = SemanticPolicyEvaluator(FakeCompletion(default=BLOCK))
    verdict = run(evaluator.evaluate_one(policy("p1"), "my password is hunter2"))
    assert not verdict.allowed
    assert verdict.reason == "shares credentials"
    assert verdict.error is None


def test_failure_fail_closed_blocks_with_generic_reason() -> None:
    evaluator = SemanticPolicyEvaluator(FakeCompletion(error=RuntimeError("provider exploded")))
    verdict = run(evaluator.evaluate_one(policy("p1", fail_behavior=FailBehavior.CLOSED), "hello"))
    assert not verdict.allowed
    assert verdict.reason == "Policy evaluation failed"
    assert verdict.error == "provider exploded"


def test_failure_fail_open_allows_and_surfaces_error() -> None:
    evaluator = SemanticPolicyEvaluator(FakeCompletion(error=RuntimeError("provider exploded")))
    verdict = run(evaluator.evaluate_one(policy("p1"), "hello"))
    assert verdict.allowed
    assert verdict.reason is None
    assert verdict.error == "provider exploded"


def test_timeout_is_enforced_by_the_evaluator() -> None:
    evaluator = SemanticPolicyEvaluator(FakeCompletion(delay=1.0), EvaluatorConfig(timeout=0.05))
    closed = run(evaluator.evaluate_one(policy("p1", fail_behavior=FailBehavior.CLOSED), "hello"))
    assert not closed.allowed
    assert "timed out" in closed.error
    opened = run(evaluator.evaluate_one(policy("p2"), "hello"))
    assert opened.allowed
    assert "timed out" in opened.error


# ---------------------------------------------------------------------------
# evaluate_many
# ---------------------------------------------------------------------------


def test_zero_policies_allow_without_calls() -> None:
    fake = FakeCompletion(default=BLOCK)
    result = run(SemanticPolicyEvaluator(fake).evaluate_many([], "hello"))
    assert result.allowed
    assert result.evaluated == 0
    assert fake.requests == []


def test_first_block_short_circuits() -> None:
    fake = FakeCompletion(answers={"P1": BLOCK, "P2": ALLOW})
    evaluator = SemanticPolicyEvaluator(fake)
    result = run(evaluator.evaluate_many([policy("p1", "P1"), policy("p2", "P2")], "hello"))
    assert not result.allowed
    assert len(fake.requests) == 1
    assert result.blocking_policy_id == "p1"
    assert result.blocking_policy_name == "P1"
    assert result.reason == "shares credentials"


def test_block_after_allow_evaluates_both() -> None:
    fake = FakeCompletion(answers={"P1": BLOCK, "P2": ALLOW})
    evaluator = SemanticPolicyEvaluator(fake)
    result = run(evaluator.evaluate_many([policy("p2", "P2"), policy("p1", "P1")], "hello"))
    assert not result.allowed
    assert len(fake.requests) == 2
    assert result.blocking_policy_id == "p1"


def test_block_without_reason_gets_default_reason() -> None:
    evaluator = SemanticPolicyEvaluator(FakeCompletion(default='{"decision": "BLOCK"}'))
    result = run(evaluator.evaluate_many([policy("p1")], "hello"))
    assert result.reason == "Message blocked by LLM policy"


def test_fail_open_errors_are_collected_and_evaluation_continues() -> None:
    fake = FakeCompletion(error=RuntimeError("down"))
    result = run(SemanticPolicyEvaluator(fake).evaluate_many([policy("p1"), policy("p2")], "hello"))
    assert result.allowed
    assert result.evaluated == 2
    assert result.errors == ["p1: down", "p2: down"]


def test_fail_closed_policy_stops_the_run() -> None:
    fake = FakeCompletion(error=RuntimeError("down"))
    policies = [policy("p1", fail_behavior=FailBehavior.CLOSED), policy("p2")]
    result = run(SemanticPolicyEvaluator(fake).evaluate_many(policies, "hello"))
    assert not result.allowed
    assert result.reason == "Policy evaluation failed"
    assert result.blocking_policy_id == "p1"
    assert len(fake.requests) == 1


# ---------------------------------------------------------------------------
# Applicability / CLI adapter
# ---------------------------------------------------------------------------


def test_applicable_policies_keeps_order() -> None:
    policies = [
        policy("inbound-global", direction=PolicyDirection.INBOUND),
        policy("both-user", direction=PolicyDirection.BOTH, scope=PolicyScope.USER, target_user="alice"),
        policy("outbound-global"),
        policy("off", enabled=False, direction=PolicyDirection.INBOUND),
    ]
    picked = applicable_policies(policies, PolicyDirection.INBOUND, target_user="alice")
    assert [p.id for p in picked] == ["inbound-global", "both-user"]


def test_cli_completion_argv_disables_tools() -> None:
    adapter = AgentCliCompletion(command="agent-cli", args=["-p"])
    argv = adapter.build_argv(CompletionRequest(prompt="judge this", session_id="s", model="m1"))
    assert argv == ["agent-cli", "-p", "--model", "m1", "--tools", "", "judge this"]
