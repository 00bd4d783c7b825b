"""
Data models — pure data classes with no business logic.

This is a leaf module with no internal dependencies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# =============================================================================
# Enums
# =============================================================================

class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PolicyScope(str, Enum):
    GLOBAL = "global"
    USER = "user"
    GROUP = "group"


class PolicyDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BOTH = "both"


class FailBehavior(str, Enum):
    """What a semantic policy does when its own evaluation errors."""
    OPEN = "open"      # allow, log the error
    CLOSED = "closed"  # block with a generic reason


class PolicySourceMode(str, Enum):
    LOCAL = "local"
    REGISTRY = "registry"
    MERGED = "merged"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    PENDING = "pending"
    REJECTED = "rejected"


class RecipientType(str, Enum):
    USER = "user"
    GROUP = "group"


class GateState(str, Enum):
    """Lifecycle states shared by the inbound and outbound gates."""
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    DEDUPED = "deduped"
    POLICY_CHECKED = "policy_checked"
    ACCEPTED = "accepted"
    REQUESTED = "requested"
    ROUTED = "routed"
    SENT = "sent"
    REJECTED = "rejected"


# =============================================================================
# Messages
# =============================================================================

@dataclass(frozen=True)
class IncomingMessage:
    """A message delivered to this node by the registry webhook."""
    message_id: str
    sender: str
    sender_agent: str
    message: str
    timestamp: str
    recipient: Optional[str] = None
    context: Optional[str] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    correlation_id: Optional[str] = None
    recipient_connection_id: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return bool(self.group_id or self.group_name)


@dataclass(frozen=True)
class OutboundMessage:
    """A message an agent on this node asked to send."""
    recipient: str
    message: str
    recipient_type: RecipientType = RecipientType.USER
    context: Optional[str] = None


@dataclass
class RoutingHints:
    labels: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


@dataclass
class SendMessageRequest:
    """Body of POST /messages/send."""
    recipient: str
    message: str
    idempotency_key: str
    recipient_type: RecipientType = RecipientType.USER
    recipient_connection_id: Optional[str] = None
    routing_hints: Optional[RoutingHints] = None
    context: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class SendMessageResponse:
    message_id: str
    status: str  # DeliveryStatus value; unknown values are passed through
    rejection_reason: Optional[str] = None


# =============================================================================
# Contacts
# =============================================================================

@dataclass
class Connection:
    """One registered endpoint through which a contact can be reached."""
    id: str
    label: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    capabilities: list[str] = field(default_factory=list)
    routing_priority: int = 0
    framework: Optional[str] = None
    description: Optional[str] = None
    callback_url: Optional[str] = None
    # End-to-end encryption is carried, never interpreted
    public_key: Optional[str] = None
    public_key_alg: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE


@dataclass
class Friend:
    id: str
    username: str
    display_name: Optional[str] = None
    status: str = "accepted"  # accepted | pending | blocked
    since: Optional[str] = None


@dataclass
class Group:
    id: str
    name: str
    description: Optional[str] = None
    member_count: Optional[int] = None


# =============================================================================
# Policies
# =============================================================================

@dataclass
class HeuristicRules:
    """Deterministic content constraints. None / empty means unconstrained."""
    max_message_length: Optional[int] = None
    min_message_length: Optional[int] = None
    blocked_keywords: list[str] = field(default_factory=list)
    blocked_patterns: list[str] = field(default_factory=list)
    require_context: bool = False


@dataclass
class HeuristicPolicy:
    """A registry-managed heuristic policy."""
    id: str
    name: str
    rules: HeuristicRules
    scope: PolicyScope = PolicyScope.GLOBAL
    direction: PolicyDirection = PolicyDirection.OUTBOUND
    priority: int = 0
    target_user: Optional[str] = None
    target_group: Optional[str] = None
    enabled: bool = True


@dataclass
class SemanticPolicy:
    """A natural-language policy evaluated by a model."""
    id: str
    name: str
    policy_content: str
    scope: PolicyScope = PolicyScope.GLOBAL
    direction: PolicyDirection = PolicyDirection.OUTBOUND
    priority: int = 0
    target_user: Optional[str] = None
    target_group: Optional[str] = None
    enabled: bool = True
    fail_behavior: FailBehavior = FailBehavior.OPEN


# =============================================================================
# Results
# =============================================================================

@dataclass
class PolicyResult:
    """Outcome of a heuristic check. `rule` is for logs, never the wire."""
    allowed: bool
    reason: Optional[str] = None
    rule: Optional[str] = None


@dataclass
class SemanticVerdict:
    """Outcome of one semantic policy evaluation."""
    allowed: bool
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SemanticEvaluation:
    """Outcome of evaluating an ordered list of semantic policies."""
    allowed: bool
    reason: Optional[str] = None
    blocking_policy_id: Optional[str] = None
    blocking_policy_name: Optional[str] = None
    evaluated: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class DispatchResult:
    ok: bool
    run_id: Optional[str] = None
    error: Optional[str] = None
