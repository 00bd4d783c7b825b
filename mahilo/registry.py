"""
Mahilo registry client — contacts, friends and groups, message send, policy fetch with caching.

Every response is normalized here: the registry has returned policies as a
bare list, as {"policies": [...]} and as {"items": [...]}, with camelCase or
snake_case rule keys. Nothing past this module sees raw registry JSON.

Depends on: config, models, errors, policy/merge, policy/semantic
"""

import asyncio
import json
import sys
import time
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx

from mahilo.config import (
    MAHILO_API_KEY,
    MAHILO_API_URL,
    POLICY_CACHE_TTL,
    REGISTRY_MAX_ATTEMPTS,
    REGISTRY_RETRY_BACKOFF,
    REGISTRY_TIMEOUT,
)
from mahilo.errors import ErrorCode, MahiloError, coerce_error_code, status_to_error_code
from mahilo.models import (
    Connection,
    ConnectionStatus,
    FailBehavior,
    Friend,
    Group,
    HeuristicPolicy,
    HeuristicRules,
    PolicyDirection,
    PolicyScope,
    RecipientType,
    SemanticPolicy,
    SendMessageRequest,
    SendMessageResponse,
)
from mahilo.policy.merge import applicable_heuristic_policies
from mahilo.policy.semantic import applicable_policies


# =============================================================================
# Normalization
# =============================================================================

def _first(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _non_negative_int(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        print(f"[Mahilo] Ignoring invalid {field_name}: {value!r}", file=sys.stderr)
        return None
    return int(value)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, str) and v]


def extract_items(body: Any, *keys: str) -> list:
    """Pull the list out of a bare-list or wrapped registry response."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in keys + ("items",):
            value = body.get(key)
            if isinstance(value, list):
                return value
    return []


def parse_rules(data: Optional[dict]) -> HeuristicRules:
    """Build HeuristicRules from camelCase or snake_case keys."""
    if not data:
        return HeuristicRules()
    return HeuristicRules(
        max_message_length=_non_negative_int(
            _first(data, "max_message_length", "maxMessageLength", "max_length", "maxLength"),
            "max_message_length",
        ),
        min_message_length=_non_negative_int(
            _first(data, "min_message_length", "minMessageLength", "min_length", "minLength"),
            "min_message_length",
        ),
        blocked_keywords=_str_list(_first(data, "blocked_keywords", "blockedKeywords")),
        blocked_patterns=_str_list(_first(data, "blocked_patterns", "blockedPatterns")),
        require_context=bool(_first(data, "require_context", "requireContext")),
    )


def _common_policy_fields(data: dict) -> Optional[dict]:
    try:
        scope = PolicyScope(str(data.get("scope") or "global").lower())
        direction = PolicyDirection(str(data.get("direction") or "outbound").lower())
    except ValueError as e:
        print(f"[Mahilo] Dropping policy {data.get('id')!r}: {e}", file=sys.stderr)
        return None
    target_user = _first(data, "target_user", "targetUser")
    target_group = _first(data, "target_group", "targetGroup")
    if scope == PolicyScope.USER and not target_user:
        print(f"[Mahilo] Dropping policy {data.get('id')!r}: user scope without target_user", file=sys.stderr)
        return None
    if scope == PolicyScope.GROUP and not target_group:
        print(f"[Mahilo] Dropping policy {data.get('id')!r}: group scope without target_group", file=sys.stderr)
        return None
    try:
        priority = int(data.get("priority") or 0)
    except (TypeError, ValueError):
        priority = 0
    return {
        "id": str(data.get("id") or ""),
        "name": str(data.get("name") or data.get("id") or "unnamed"),
        "scope": scope,
        "direction": direction,
        "priority": priority,
        "target_user": target_user,
        "target_group": target_group,
        "enabled": bool(data.get("enabled", True)),
    }


def parse_semantic_policy(data: Any) -> Optional[SemanticPolicy]:
    """Build a SemanticPolicy, or None (logged) if the entry is unusable."""
    if not isinstance(data, dict):
        return None
    fields = _common_policy_fields(data)
    if fields is None:
        return None
    content = _first(data, "policy_content", "policyContent", "content")
    if not isinstance(content, str) or not content.strip():
        print(f"[Mahilo] Dropping policy {fields['id']!r}: no policy_content", file=sys.stderr)
        return None
    try:
        fail_behavior = FailBehavior(str(_first(data, "fail_behavior", "failBehavior") or "open").lower())
    except ValueError:
        print(f"[Mahilo] Policy {fields['id']!r}: unknown fail_behavior, using open", file=sys.stderr)
        fail_behavior = FailBehavior.OPEN
    return SemanticPolicy(policy_content=content, fail_behavior=fail_behavior, **fields)


def parse_heuristic_policy(data: Any) -> Optional[HeuristicPolicy]:
    """Build a HeuristicPolicy. Rules come from "rules" or a JSON policy_content."""
    if not isinstance(data, dict):
        return None
    fields = _common_policy_fields(data)
    if fields is None:
        return None
    rules = data.get("rules")
    if rules is None:
        content = _first(data, "policy_content", "policyContent")
        if isinstance(content, dict):
            rules = content
        elif isinstance(content, str):
            try:
                rules = json.loads(content)
            except json.JSONDecodeError:
                print(f"[Mahilo] Dropping policy {fields['id']!r}: rules are not JSON", file=sys.stderr)
                return None
    if not isinstance(rules, dict):
        print(f"[Mahilo] Dropping policy {fields['id']!r}: no rules", file=sys.stderr)
        return None
    return HeuristicPolicy(rules=parse_rules(rules), **fields)


def parse_connection(data: Any) -> Optional[Connection]:
    if not isinstance(data, dict) or not data.get("id"):
        return None
    try:
        status = ConnectionStatus(str(data.get("status") or "active").lower())
    except ValueError:
        status = ConnectionStatus.INACTIVE
    try:
        routing_priority = int(data.get("routing_priority") or 0)
    except (TypeError, ValueError):
        routing_priority = 0
    return Connection(
        id=str(data["id"]),
        label=str(data.get("label") or ""),
        status=status,
        capabilities=_str_list(data.get("capabilities")),
        routing_priority=routing_priority,
        framework=data.get("framework"),
        description=data.get("description"),
        callback_url=data.get("callback_url"),
        public_key=data.get("public_key"),
        public_key_alg=data.get("public_key_alg"),
    )


def parse_friend(data: Any) -> Optional[Friend]:
    if not isinstance(data, dict):
        return None
    username = _first(data, "username", "friend_username")
    if not username:
        return None
    return Friend(
        id=str(_first(data, "id", "friendship_id") or username),
        username=str(username),
        display_name=_first(data, "display_name", "displayName"),
        status=str(data.get("status") or "accepted").lower(),
        since=_first(data, "since", "created_at"),
    )


def parse_group(data: Any) -> Optional[Group]:
    if not isinstance(data, dict) or not data.get("id"):
        return None
    member_count = _first(data, "member_count", "memberCount")
    try:
        member_count = int(member_count) if member_count is not None else None
    except (TypeError, ValueError):
        member_count = None
    return Group(
        id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        description=data.get("description"),
        member_count=member_count,
    )


def send_request_payload(request: SendMessageRequest) -> dict:
    """Serialize a send request, leaving out unset optional fields."""
    payload: dict = {
        "recipient": request.recipient,
        "message": request.message,
        "idempotency_key": request.idempotency_key,
    }
    if request.recipient_type != RecipientType.USER:
        payload["recipient_type"] = request.recipient_type.value
    if request.recipient_connection_id:
        payload["recipient_connection_id"] = request.recipient_connection_id
    if request.routing_hints and (request.routing_hints.labels or request.routing_hints.tags):
        payload["routing_hints"] = {
            "labels": list(request.routing_hints.labels),
            "tags": list(request.routing_hints.tags),
        }
    if request.context:
        payload["context"] = request.context
    if request.correlation_id:
        payload["correlation_id"] = request.correlation_id
    return payload


# =============================================================================
# Client
# =============================================================================

class RegistryClient:
    """Async client for the Mahilo registry API."""

    def __init__(self, api_key: Optional[str] = MAHILO_API_KEY,
                 base_url: str = MAHILO_API_URL,
                 timeout: float = REGISTRY_TIMEOUT,
                 max_attempts: int = REGISTRY_MAX_ATTEMPTS,
                 retry_backoff: float = REGISTRY_RETRY_BACKOFF,
                 policy_cache_ttl: float = POLICY_CACHE_TTL,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff
        self.policy_cache_ttl = policy_cache_ttl
        self._transport = transport
        self._clock = clock
        # policy_type -> (policies, fetched_at)
        self._policy_cache: dict[str, tuple[list, float]] = {}

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _error_from_response(self, resp: httpx.Response) -> MahiloError:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("error") or body.get("message") or resp.reason_phrase
            if code:
                return MahiloError(str(message), coerce_error_code(str(code)), resp.status_code)
            return MahiloError(str(message), status_to_error_code(resp.status_code), resp.status_code)
        return MahiloError(resp.reason_phrase or f"HTTP {resp.status_code}",
                           status_to_error_code(resp.status_code), resp.status_code)

    async def request(self, method: str, path: str, json_body: Optional[dict] = None,
                      params: Optional[dict] = None) -> Any:
        """Call the registry, retrying 5xx and network failures with backoff.

        4xx responses are raised immediately as MahiloError.
        """
        if not self.api_key:
            raise MahiloError(
                "Mahilo API key not configured. Set MAHILO_API_KEY.",
                ErrorCode.INVALID_API_KEY,
            )

        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        last_error: Optional[MahiloError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.request(method, url, json=json_body, params=params, headers=headers)
            except httpx.TimeoutException:
                last_error = MahiloError("Request timed out", ErrorCode.TIMEOUT)
            except httpx.HTTPError as e:
                last_error = MahiloError(str(e) or e.__class__.__name__, ErrorCode.NETWORK_ERROR)
            else:
                if resp.is_success:
                    try:
                        return resp.json()
                    except ValueError:
                        raise MahiloError("Registry returned invalid JSON", ErrorCode.NETWORK_ERROR,
                                          resp.status_code)
                error = self._error_from_response(resp)
                if resp.status_code < 500:
                    raise error
                last_error = error

            if attempt < self.max_attempts:
                delay = self.retry_backoff * (2 ** (attempt - 1))
                print(
                    f"[Mahilo] Registry {method} {path} failed ({last_error.message}), "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.max_attempts})",
                    file=sys.stderr,
                )
                await asyncio.sleep(delay)

        raise last_error

    # -------------------------------------------------------------------------
    # Contacts / Messages
    # -------------------------------------------------------------------------

    async def get_contact_connections(self, username: str) -> list[Connection]:
        body = await self.request("GET", f"/contacts/{quote(username, safe='')}/connections")
        connections = []
        for item in extract_items(body, "connections"):
            conn = parse_connection(item)
            if conn is not None:
                connections.append(conn)
        return connections

    async def get_friends(self, status: Optional[str] = None) -> list[Friend]:
        """GET /friends. status filters to accepted, pending or blocked; None returns all."""
        params = {"status": status} if status else None
        body = await self.request("GET", "/friends", params=params)
        friends = []
        for item in extract_items(body, "friends"):
            friend = parse_friend(item)
            if friend is not None:
                friends.append(friend)
        return friends

    async def get_groups(self) -> list[Group]:
        """Groups the authenticated user belongs to."""
        body = await self.request("GET", "/groups")
        return [g for g in (parse_group(item) for item in extract_items(body, "groups")) if g is not None]

    async def send_message(self, request: SendMessageRequest) -> SendMessageResponse:
        """POST /messages/send. Group sends the registry cannot do raise GROUP_NOT_SUPPORTED."""
        try:
            body = await self.request("POST", "/messages/send", json_body=send_request_payload(request))
        except MahiloError as e:
            if request.recipient_type == RecipientType.GROUP and e.code == ErrorCode.NOT_IMPLEMENTED:
                raise MahiloError(
                    "Group messaging is not supported by the registry",
                    ErrorCode.GROUP_NOT_SUPPORTED,
                    e.status_code,
                ) from e
            raise
        if not isinstance(body, dict):
            body = {}
        return SendMessageResponse(
            message_id=str(body.get("message_id") or ""),
            status=str(body.get("status") or ""),
            rejection_reason=body.get("rejection_reason"),
        )

    # -------------------------------------------------------------------------
    # Policies
    # -------------------------------------------------------------------------

    def clear_policy_cache(self) -> None:
        self._policy_cache.clear()

    async def _get_policies(self, policy_type: str, parse, force_refresh: bool) -> list:
        now = self._clock()
        cached = self._policy_cache.get(policy_type)
        if not force_refresh and cached is not None and now - cached[1] < self.policy_cache_ttl:
            return cached[0]

        try:
            body = await self.request("GET", "/policies", params={"policy_type": policy_type})
        except MahiloError as e:
            if cached is not None:
                print(f"[Mahilo] Policy fetch failed ({e.message}), using cached {policy_type} policies",
                      file=sys.stderr)
                return cached[0]
            raise

        policies = []
        for item in extract_items(body, "policies"):
            policy = parse(item)
            if policy is not None and policy.enabled:
                policies.append(policy)
        policies.sort(key=lambda p: p.priority, reverse=True)
        self._policy_cache[policy_type] = (policies, now)
        return policies

    async def get_semantic_policies(self, force_refresh: bool = False) -> list[SemanticPolicy]:
        """Enabled semantic policies, highest priority first. Cached for the TTL."""
        return await self._get_policies("llm", parse_semantic_policy, force_refresh)

    async def get_heuristic_policies(self, force_refresh: bool = False) -> list[HeuristicPolicy]:
        """Enabled heuristic policies, highest priority first. Cached for the TTL."""
        return await self._get_policies("heuristic", parse_heuristic_policy, force_refresh)

    async def get_applicable_policies(self, direction, target_user: Optional[str] = None,
                                      target_group: Optional[str] = None) -> list[SemanticPolicy]:
        policies = await self.get_semantic_policies()
        return applicable_policies(policies, direction, target_user, target_group)

    async def get_applicable_heuristic_policies(self, direction, target_user: Optional[str] = None,
                                                target_group: Optional[str] = None) -> list[HeuristicPolicy]:
        policies = await self.get_heuristic_policies()
        return applicable_heuristic_policies(policies, direction, target_user, target_group)

    def cached_applicable_heuristic_policies(self, direction, target_user: Optional[str] = None,
                                             target_group: Optional[str] = None) -> list[HeuristicPolicy]:
        """Applicable heuristic policies from the cache only, stale or not. Never calls the registry."""
        cached = self._policy_cache.get("heuristic")
        if cached is None:
            return []
        return applicable_heuristic_policies(cached[0], direction, target_user, target_group)
