"""
Outbound gate — policy-check, route and send messages written by the local agent.

    REQUESTED -> POLICY_CHECKED -> ROUTED -> SENT
                      (any step) -> REJECTED

Every outcome carries a user-facing explanation for the agent. Content
blocks say which local rule or policy name stopped the message; registry
errors map to distinct explanations.

Depends on: config, errors, models, policy, registry, router
"""

import sys
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from mahilo.config import POLICY_SOURCE_MODE, SEMANTIC_POLICIES_ENABLED
from mahilo.errors import ErrorCode, MahiloError
from mahilo.gate.policies import fetch_heuristic_policies, fetch_semantic_policies
from mahilo.models import (
    DeliveryStatus,
    GateState,
    HeuristicRules,
    PolicyDirection,
    PolicySourceMode,
    RecipientType,
    RoutingHints,
    SendMessageRequest,
)
from mahilo.policy.heuristic import evaluate_heuristics
from mahilo.policy.merge import select_outbound_rules
from mahilo.policy.semantic import SemanticPolicyEvaluator
from mahilo.registry import RegistryClient
from mahilo.router import select_connection


@dataclass
class OutboundOutcome:
    state: GateState
    text: str
    ok: bool = False
    is_error: bool = False
    status: Optional[str] = None
    message_id: Optional[str] = None
    connection_id: Optional[str] = None


def new_idempotency_key() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:10]}"


def _rejected(text: str) -> OutboundOutcome:
    return OutboundOutcome(state=GateState.REJECTED, text=text)


def _error(text: str) -> OutboundOutcome:
    return OutboundOutcome(state=GateState.REJECTED, text=f"Error: {text}", is_error=True)


def _not_friends(recipient: str) -> OutboundOutcome:
    return _rejected(
        f"Cannot send message: {recipient} is not in your friends list. Add them as a friend on Mahilo first."
    )


class OutboundGate:
    def __init__(self, registry: RegistryClient,
                 evaluator: Optional[SemanticPolicyEvaluator] = None,
                 local_rules: Optional[HeuristicRules] = None,
                 policy_mode: Union[PolicySourceMode, str] = POLICY_SOURCE_MODE,
                 semantic_enabled: bool = SEMANTIC_POLICIES_ENABLED):
        self.registry = registry
        self.evaluator = evaluator
        self.local_rules = local_rules
        try:
            self.policy_mode = PolicySourceMode(policy_mode)
        except ValueError:
            self.policy_mode = PolicySourceMode.MERGED
        self.semantic_enabled = semantic_enabled

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    async def check_policies(self, message: str, context: Optional[str],
                             target_user: Optional[str] = None,
                             target_group: Optional[str] = None) -> Optional[OutboundOutcome]:
        """Return a rejection outcome if any outbound policy blocks, else None."""
        registry_policies = await fetch_heuristic_policies(
            self.registry, self.policy_mode, PolicyDirection.OUTBOUND, target_user, target_group,
        )
        rules = select_outbound_rules(self.local_rules, registry_policies, self.policy_mode)
        result = evaluate_heuristics(message, context, rules, PolicyDirection.OUTBOUND)
        if not result.allowed:
            print(f"[Mahilo] Outbound message blocked ({result.rule}): {result.reason}", file=sys.stderr)
            return _rejected(f"Message blocked by local policy: {result.reason}")

        if not (self.semantic_enabled and self.evaluator is not None):
            return None
        policies = await fetch_semantic_policies(
            self.registry, PolicyDirection.OUTBOUND, target_user, target_group,
        )
        if not policies:
            return None
        evaluation = await self.evaluator.evaluate_many(policies, message, context)
        if evaluation.allowed:
            return None
        print(
            f"[Mahilo] Outbound message blocked by policy '{evaluation.blocking_policy_name}' "
            f"({evaluation.blocking_policy_id}): {evaluation.reason}",
            file=sys.stderr,
        )
        name = f" ({evaluation.blocking_policy_name})" if evaluation.blocking_policy_name else ""
        return _rejected(f"Message blocked by content policy{name}. Please review your message and try again.")

    # -------------------------------------------------------------------------
    # Direct
    # -------------------------------------------------------------------------

    async def send_to_agent(self, recipient: str, message: str, context: Optional[str] = None,
                            connection_label: Optional[str] = None,
                            routing_tags: Optional[list[str]] = None) -> OutboundOutcome:
        """Send a message to another user's agent."""
        recipient = (recipient or "").strip()
        message = (message or "").strip()
        context = (context or "").strip() or None
        connection_label = (connection_label or "").strip() or None
        routing_tags = [t.strip() for t in (routing_tags or []) if t and t.strip()]

        if not recipient:
            return _error("Recipient is required")
        if not message:
            return _error("Message is required")
        if not self.registry.api_key:
            return _error("Mahilo API key not configured. Set MAHILO_API_KEY.")

        blocked = await self.check_policies(message, context, target_user=recipient)
        if blocked is not None:
            return blocked

        connection_id = None
        try:
            connections = await self.registry.get_contact_connections(recipient)
        except MahiloError as e:
            if e.code == ErrorCode.NOT_FRIENDS:
                return _not_friends(recipient)
            print(f"[Mahilo] Connection lookup for {recipient} failed, letting the registry route: {e.message}",
                  file=sys.stderr)
        else:
            selected = select_connection(connections, label=connection_label, tags=routing_tags)
            if selected is not None:
                connection_id = selected.id
            else:
                print(f"[Mahilo] No active connection for {recipient}, letting the registry route", file=sys.stderr)

        hints = None
        if connection_label or routing_tags:
            hints = RoutingHints(labels=[connection_label] if connection_label else [], tags=routing_tags)
        request = SendMessageRequest(
            recipient=recipient,
            message=message,
            idempotency_key=new_idempotency_key(),
            recipient_connection_id=connection_id,
            routing_hints=hints,
            context=context,
        )

        try:
            response = await self.registry.send_message(request)
        except MahiloError as e:
            return self._send_error(e, recipient)

        outcome = OutboundOutcome(
            state=GateState.SENT, text="", ok=True, status=response.status,
            message_id=response.message_id, connection_id=connection_id,
        )
        if response.status == DeliveryStatus.DELIVERED:
            outcome.text = (f"Message sent to {recipient}. They will process it and may respond "
                            f"via their own message to you.")
        elif response.status == DeliveryStatus.PENDING:
            outcome.text = (f"Message queued for {recipient}. Delivery pending - they may be offline. "
                            f"Message ID: {response.message_id}")
        elif response.status == DeliveryStatus.REJECTED:
            outcome.state, outcome.ok = GateState.REJECTED, False
            outcome.text = f"Message rejected: {response.rejection_reason or 'Policy violation'}"
        else:
            outcome.text = f"Message sent to {recipient}. Status: {response.status}"
        return outcome

    # -------------------------------------------------------------------------
    # Group
    # -------------------------------------------------------------------------

    async def send_to_group(self, group_id: str, message: str,
                            context: Optional[str] = None) -> OutboundOutcome:
        """Send a message to a group this node's user belongs to."""
        group_id = (group_id or "").strip()
        message = (message or "").strip()
        context = (context or "").strip() or None

        if not group_id:
            return _error("Group id is required")
        if not message:
            return _error("Message is required")
        if not self.registry.api_key:
            return _error("Mahilo API key not configured. Set MAHILO_API_KEY.")

        blocked = await self.check_policies(message, context, target_group=group_id)
        if blocked is not None:
            return blocked

        request = SendMessageRequest(
            recipient=group_id,
            recipient_type=RecipientType.GROUP,
            message=message,
            idempotency_key=new_idempotency_key(),
            context=context,
        )
        try:
            response = await self.registry.send_message(request)
        except MahiloError as e:
            return self._send_error(e, group_id, group=True)

        outcome = OutboundOutcome(state=GateState.SENT, text="", ok=True, status=response.status,
                                  message_id=response.message_id)
        if response.status == DeliveryStatus.DELIVERED:
            outcome.text = f"Message sent to group {group_id}."
        elif response.status == DeliveryStatus.PENDING:
            outcome.text = (f"Message queued for group {group_id}. Delivery pending. "
                            f"Message ID: {response.message_id}")
        elif response.status == DeliveryStatus.REJECTED:
            outcome.state, outcome.ok = GateState.REJECTED, False
            outcome.text = f"Message rejected: {response.rejection_reason or 'Policy violation'}"
        else:
            outcome.text = f"Message sent to group {group_id}. Status: {response.status}"
        return outcome

    # -------------------------------------------------------------------------
    # Errors
    # -------------------------------------------------------------------------

    def _send_error(self, err: MahiloError, target: str, group: bool = False) -> OutboundOutcome:
        print(f"[Mahilo] Send to {target} failed: {err.code} {err.message}", file=sys.stderr)
        if err.code == ErrorCode.INVALID_API_KEY:
            return _error("Mahilo API key is invalid or not configured. Check your configuration.")
        if err.code == ErrorCode.RATE_LIMITED:
            return _rejected("Cannot send message: You're sending too many messages. Please wait before trying again.")
        if group:
            if err.code == ErrorCode.NOT_GROUP_MEMBER:
                return _rejected(f'Cannot send message: you\'re not a member of group "{target}". Join the group first.')
            if err.code == ErrorCode.GROUP_NOT_FOUND:
                return _rejected(f'Cannot send message: group "{target}" not found on Mahilo.')
            if err.code in (ErrorCode.GROUP_NOT_SUPPORTED, ErrorCode.NOT_IMPLEMENTED):
                return _rejected(
                    "Group messaging is not supported by the Mahilo Registry yet. "
                    "Try again after group support is released."
                )
        else:
            if err.code == ErrorCode.NOT_FRIENDS:
                return _not_friends(target)
            if err.code == ErrorCode.USER_NOT_FOUND:
                return _rejected(f'Cannot send message: User "{target}" not found on Mahilo.')
        return _rejected(f"Failed to send message: {err.message}")
