#!/usr/bin/env python3
"""
Contact listing tests — the mahilo_list_contacts tool over a fake registry.

Usage:
    python3 -m pytest test_contacts.py
"""

import asyncio
import json

import httpx

from mahilo.gate import OutboundGate
from mahilo.mcp import set_outbound_gate
from mahilo.mcp.schemas import ListContactsInput
from mahilo.mcp.tools import format_contacts, list_contacts
from mahilo.models import Friend, Group
from mahilo.registry import RegistryClient

BASE = "https://registry.test/api/v1"

FRIENDS = [
    {"id": "f1", "username": "bob", "display_name": "Bob B", "status": "accepted"},
    {"id": "f2", "username": "carol", "status": "pending"},
]
GROUPS = [{"id": "g-1", "name": "Team", "member_count": 3, "description": "standups"}]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class ContactsRegistry:
    """Serves /friends and /groups; each route is (status, body)."""

    def __init__(self, friends=(200, FRIENDS), groups=(200, GROUPS)):
        self.friends = friends
        self.groups = groups
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.friends if request.url.path.endswith("/friends") else self.groups
        return httpx.Response(status, json=body)


def list_with(registry: ContactsRegistry, **params) -> dict:
    client = RegistryClient(api_key="mhl_test", base_url=BASE, retry_backoff=0,
                            transport=httpx.MockTransport(registry))
    set_outbound_gate(OutboundGate(client, semantic_enabled=False))
    try:
        return json.loads(asyncio.run(list_contacts(ListContactsInput(**params))))
    finally:
        set_outbound_gate(None)


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------


def test_accepted_friends_and_groups_are_listed() -> None:
    registry = ContactsRegistry(friends=(200, FRIENDS[:1]))
    result = list_with(registry)
    assert result["success"] is True
    assert result["result"] == (
        "Your Mahilo contacts:\n\n"
        "**Friends:**\n"
        "- bob (Bob B)\n\n"
        "**Groups:**\n"
        "- Team (3 members) - standups\n"
        "  ID: g-1"
    )
    assert registry.requests[0].url.params["status"] == "accepted"


def test_all_shows_pending_requests_without_status_filter() -> None:
    registry = ContactsRegistry()
    result = list_with(registry, status=" ALL ", include_groups=False)
    assert "**Pending Requests:**\n- carol" in result["result"]
    assert "**Groups:**" not in result["result"]
    assert "status" not in registry.requests[0].url.params
    assert len(registry.requests) == 1


def test_empty_contacts_messages() -> None:
    empty = ContactsRegistry(friends=(200, []), groups=(200, []))
    assert list_with(empty)["result"].startswith("You have no friends or groups on Mahilo yet")
    assert list_with(empty, status="pending")["result"] == "No pending friend requests found."


def test_group_failure_still_lists_friends() -> None:
    result = list_with(ContactsRegistry(friends=(200, FRIENDS[:1]), groups=(404, {"error": "nope"})))
    assert result["success"] is True
    assert result["result"] == "Your Mahilo contacts:\n\n**Friends:**\n- bob (Bob B)"


def test_invalid_api_key_is_an_error() -> None:
    result = list_with(ContactsRegistry(friends=(401, {"error": "bad key"})))
    assert result["success"] is False
    assert result["error"] is True
    assert "API key is invalid" in result["result"]


def test_other_failures_are_reported() -> None:
    result = list_with(ContactsRegistry(friends=(429, {"error": "slow down"})))
    assert result["success"] is False
    assert result["result"] == "Failed to fetch contacts: slow down"


def test_not_initialized_without_gate() -> None:
    set_outbound_gate(None)
    result = json.loads(asyncio.run(list_contacts(ListContactsInput())))
    assert result["error"] is True


def test_pending_hidden_when_listing_accepted() -> None:
    friends = [Friend(id="1", username="bob"), Friend(id="2", username="carol", status="pending")]
    text = format_contacts(friends, [Group(id="g", name="G")], "accepted")
    assert "carol" not in text
    assert text.endswith("**Groups:**\n- G\n  ID: g")
