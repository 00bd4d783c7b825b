"""
Inbound gate — authenticate, de-duplicate and policy-check webhook deliveries.

    RECEIVED -> AUTHENTICATED -> DEDUPED -> POLICY_CHECKED -> ACCEPTED
                                                   (any step) -> REJECTED

The registry gets its answer as soon as the local checks pass: local rules
plus registry heuristic policies the client already has cached, with no
registry call. Fresh registry heuristics, semantic evaluation and agent
dispatch run afterwards in a tracked background task whose failures are
only logged.

Depends on: config, models, dedup, signature, policy, registry, dispatch
"""

import asyncio
import json
import sys
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Union

from starlette.requests import Request
from starlette.responses import JSONResponse

from mahilo.config import (
    CALLBACK_SECRET,
    POLICY_SOURCE_MODE,
    REQUIRED_INBOUND_FIELDS,
    SEMANTIC_POLICIES_ENABLED,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
)
from mahilo.dedup import DedupTracker
from mahilo.dispatch import AgentDispatcher
from mahilo.gate.policies import (
    cached_heuristic_policies,
    fetch_heuristic_policies,
    fetch_semantic_policies,
)
from mahilo.models import (
    GateState,
    HeuristicRules,
    IncomingMessage,
    PolicyDirection,
    PolicySourceMode,
)
from mahilo.policy.heuristic import evaluate_heuristics
from mahilo.policy.merge import select_inbound_rules
from mahilo.policy.semantic import SemanticPolicyEvaluator
from mahilo.registry import RegistryClient
from mahilo.signature import verify_signature


INBOUND_BLOCK_REASON = "Message blocked by inbound policy"


@dataclass
class InboundOutcome:
    """What the webhook answers, plus where the message ended up."""
    body: dict
    status_code: int
    state: GateState
    message: Optional[IncomingMessage] = None
    reason: Optional[str] = None  # internal only, never sent


def _optional_str(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def parse_incoming(data: dict) -> tuple[Optional[IncomingMessage], list[str]]:
    """Build an IncomingMessage, or return the names of missing required fields."""
    missing = [f for f in REQUIRED_INBOUND_FIELDS if data.get(f) is None or data.get(f) == ""]
    if missing:
        return None, missing
    return IncomingMessage(
        message_id=str(data["message_id"]),
        sender=str(data["sender"]),
        sender_agent=str(data["sender_agent"]),
        message=str(data["message"]),
        timestamp=str(data["timestamp"]),
        recipient=_optional_str(data.get("recipient")),
        context=_optional_str(data.get("context")),
        group_id=_optional_str(data.get("group_id")),
        group_name=_optional_str(data.get("group_name")),
        correlation_id=_optional_str(data.get("correlation_id")),
        recipient_connection_id=_optional_str(data.get("recipient_connection_id")),
    ), []


class InboundGate:
    def __init__(self, dedup: DedupTracker,
                 secret: Optional[str] = CALLBACK_SECRET,
                 dispatcher: Optional[AgentDispatcher] = None,
                 registry: Optional[RegistryClient] = None,
                 evaluator: Optional[SemanticPolicyEvaluator] = None,
                 local_rules: Optional[HeuristicRules] = None,
                 policy_mode: Union[PolicySourceMode, str] = POLICY_SOURCE_MODE,
                 semantic_enabled: bool = SEMANTIC_POLICIES_ENABLED,
                 clock: Callable[[], float] = time.time):
        self.dedup = dedup
        self.secret = secret
        self.dispatcher = dispatcher
        self.registry = registry
        self.evaluator = evaluator
        self.local_rules = local_rules
        try:
            self.policy_mode = PolicySourceMode(policy_mode)
        except ValueError:
            self.policy_mode = PolicySourceMode.MERGED
        self.semantic_enabled = semantic_enabled
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Synchronous part (answered to the registry)
    # -------------------------------------------------------------------------

    def _reject(self, body: dict, status_code: int, reason: str,
                message: Optional[IncomingMessage] = None) -> InboundOutcome:
        return InboundOutcome(body=body, status_code=status_code, state=GateState.REJECTED,
                              message=message, reason=reason)

    async def process(self, raw_body: bytes, headers: Mapping[str, str]) -> InboundOutcome:
        """Run one delivery through the gate and decide the webhook response."""
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(SIGNATURE_HEADER.lower())
        timestamp = lowered.get(TIMESTAMP_HEADER.lower())

        if not self.secret:
            print("[Mahilo] Rejecting delivery: no callback secret configured", file=sys.stderr)
            return self._reject({"error": "Invalid signature"}, 401, "no secret")
        if not signature or not timestamp:
            print("[Mahilo] Rejecting delivery: missing signature headers", file=sys.stderr)
            return self._reject({"error": "Missing signature headers"}, 401, "missing headers")
        if not verify_signature(raw_body, signature, timestamp, self.secret, now=self._clock()):
            print("[Mahilo] Rejecting delivery: invalid signature or stale timestamp", file=sys.stderr)
            return self._reject({"error": "Invalid signature"}, 401, "bad signature")

        try:
            data = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            return self._reject({"error": "Invalid JSON body"}, 400, "bad json")
        if not isinstance(data, dict):
            return self._reject({"error": "Invalid JSON body"}, 400, "bad json")

        message, missing = parse_incoming(data)
        if message is None:
            return self._reject({"error": f"Missing required fields: {', '.join(missing)}"}, 400,
                                "missing fields")

        if self.dedup.has(message.message_id):
            print(f"[Mahilo] Duplicate delivery {message.message_id} from {message.sender}, ignoring",
                  file=sys.stderr)
            return self._reject({"acknowledged": True, "duplicate": True}, 200, "duplicate", message)

        # Only policies already cached; the registry is never called before the ack
        registry_policies = cached_heuristic_policies(
            self.registry, self.policy_mode, PolicyDirection.INBOUND,
            target_user=message.sender, target_group=message.group_id,
        )
        rules = select_inbound_rules(self.local_rules, registry_policies, self.policy_mode)
        result = evaluate_heuristics(message.message, message.context, rules, PolicyDirection.INBOUND)
        if not result.allowed:
            print(
                f"[Mahilo] Inbound message {message.message_id} from {message.sender} blocked "
                f"({result.rule}): {result.reason}",
                file=sys.stderr,
            )
            return self._reject(
                {"acknowledged": True, "processed": False, "reason": INBOUND_BLOCK_REASON},
                200, result.reason, message,
            )

        self.dedup.mark(message.message_id)
        self._schedule(message)
        return InboundOutcome(body={"acknowledged": True}, status_code=200,
                              state=GateState.ACCEPTED, message=message)

    async def handle_incoming(self, request: Request) -> JSONResponse:
        """POST <callback path>. Signature is checked over the raw body bytes."""
        raw_body = await request.body()
        outcome = await self.process(raw_body, request.headers)
        return JSONResponse(outcome.body, status_code=outcome.status_code)

    # -------------------------------------------------------------------------
    # After acknowledgment
    # -------------------------------------------------------------------------

    def _schedule(self, message: IncomingMessage) -> None:
        task = asyncio.get_running_loop().create_task(
            self.after_ack(message), name=f"mahilo-inbound-{message.message_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            print(f"[Mahilo] Post-acknowledgment task {task.get_name()} failed: {exc!r}",
                  file=sys.stderr)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every post-acknowledgment task, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def after_ack(self, message: IncomingMessage) -> None:
        """Fresh registry heuristics, semantic inbound policies, then dispatch to the agent."""
        if self.registry is not None and self.policy_mode != PolicySourceMode.LOCAL:
            registry_policies = await fetch_heuristic_policies(
                self.registry, self.policy_mode, PolicyDirection.INBOUND,
                target_user=message.sender, target_group=message.group_id,
            )
            rules = select_inbound_rules(self.local_rules, registry_policies, self.policy_mode)
            result = evaluate_heuristics(message.message, message.context, rules, PolicyDirection.INBOUND)
            if not result.allowed:
                print(
                    f"[Mahilo] Inbound message {message.message_id} from {message.sender} blocked after ack "
                    f"({result.rule}): {result.reason}",
                    file=sys.stderr,
                )
                return

        if self.semantic_enabled and self.evaluator is not None:
            policies = await fetch_semantic_policies(
                self.registry, PolicyDirection.INBOUND,
                target_user=message.sender, target_group=message.group_id,
            )
            if policies:
                evaluation = await self.evaluator.evaluate_many(policies, message.message, message.context)
                if not evaluation.allowed:
                    print(
                        f"[Mahilo] Inbound message {message.message_id} from {message.sender} blocked by "
                        f"policy '{evaluation.blocking_policy_name}' ({evaluation.blocking_policy_id}): "
                        f"{evaluation.reason}",
                        file=sys.stderr,
                    )
                    return

        if self.dispatcher is None:
            print(f"[Mahilo] No agent dispatcher configured, message {message.message_id} accepted only",
                  file=sys.stderr)
            return
        result = await self.dispatcher.dispatch(message)
        if not result.ok:
            print(f"[Mahilo] Dispatch of {message.message_id} failed: {result.error}", file=sys.stderr)
