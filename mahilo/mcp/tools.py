"""
MCP tool definitions — the agent's way to send into the Mahilo network and
see who it can reach.

Depends on: errors, models, mcp/__init__, mcp/schemas, gate/outbound
"""

import json
import sys

from mahilo.errors import ErrorCode, MahiloError
from mahilo.gate.outbound import OutboundOutcome
from mahilo.mcp import get_outbound_gate, mcp
from mahilo.mcp.schemas import ListContactsInput, TalkToAgentInput, TalkToGroupInput
from mahilo.models import Friend, Group


def _render(outcome: OutboundOutcome) -> str:
    result = {"success": outcome.ok, "state": outcome.state.value, "result": outcome.text}
    if outcome.is_error:
        result["error"] = True
    if outcome.status:
        result["status"] = outcome.status
    if outcome.message_id:
        result["message_id"] = outcome.message_id
    if outcome.connection_id:
        result["connection_id"] = outcome.connection_id
    return json.dumps(result)


def _not_ready() -> str:
    return json.dumps({"success": False, "error": True, "result": "Error: Mahilo is not initialized"})


@mcp.tool(
    name="mahilo_talk_to_agent",
    annotations={
        "title": "Talk to Agent",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def talk_to_agent(params: TalkToAgentInput) -> str:
    """Send a message to another user's agent through the Mahilo network.

    Use this to ask another user's agent a question, share information with
    another user, or collaborate on a task. The recipient must be in your
    friends list. The message is checked against policies before sending; the
    other agent may answer later with its own message.

    Args:
        params: recipient, message, and optionally context, connection_label
            and routing_tags.

    Returns:
        JSON with success, the gate state, and a human-readable result.
    """
    gate = get_outbound_gate()
    if gate is None:
        return _not_ready()
    outcome = await gate.send_to_agent(
        params.recipient,
        params.message,
        context=params.context,
        connection_label=params.connection_label,
        routing_tags=params.routing_tags,
    )
    return _render(outcome)


@mcp.tool(
    name="mahilo_talk_to_group",
    annotations={
        "title": "Talk to Group",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)
async def talk_to_group(params: TalkToGroupInput) -> str:
    """Send a message to a Mahilo group you are a member of.

    Args:
        params: group_id (the id, not the display name), message, optional context.

    Returns:
        JSON with success, the gate state, and a human-readable result.
    """
    gate = get_outbound_gate()
    if gate is None:
        return _not_ready()
    outcome = await gate.send_to_group(params.group_id, params.message, context=params.context)
    return _render(outcome)


def _name_line(friend: Friend) -> str:
    display = f" ({friend.display_name})" if friend.display_name else ""
    return f"- {friend.username}{display}"


def format_contacts(friends: list[Friend], groups: list[Group], status: str) -> str:
    """Render friends and groups as the text the agent reads."""
    if not friends and not groups:
        if status == "accepted":
            return ("You have no friends or groups on Mahilo yet. Add friends or join groups "
                    "via the Mahilo dashboard to start messaging.")
        return f"No {status} friend requests found."

    lines = ["Your Mahilo contacts:", ""]
    accepted = [f for f in friends if f.status == "accepted"]
    pending = [f for f in friends if f.status == "pending"]

    if accepted:
        lines.append("**Friends:**")
        lines.extend(_name_line(f) for f in accepted)
    if pending and status in ("pending", "all"):
        if accepted:
            lines.append("")
        lines.append("**Pending Requests:**")
        lines.extend(_name_line(f) for f in pending)

    if groups:
        if friends:
            lines.append("")
        lines.append("**Groups:**")
        for group in groups:
            members = f" ({group.member_count} members)" if group.member_count else ""
            description = f" - {group.description}" if group.description else ""
            lines.append(f"- {group.name}{members}{description}")
            lines.append(f"  ID: {group.id}")
    return "\n".join(lines).strip()


@mcp.tool(
    name="mahilo_list_contacts",
    annotations={
        "title": "List Mahilo Contacts",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)
async def list_contacts(params: ListContactsInput) -> str:
    """List your friends and groups on Mahilo that you can message.

    Use this to see who you can contact, check whether someone is in your
    friends list, or find the group id of a group before messaging it.

    Args:
        params: status ("accepted", "pending", "blocked" or "all") and
            include_groups.

    Returns:
        JSON with success and the contact list as text.
    """
    gate = get_outbound_gate()
    if gate is None:
        return _not_ready()
    registry = gate.registry
    status = (params.status or "accepted").lower()

    try:
        friends = await registry.get_friends(None if status == "all" else status)
        groups: list[Group] = []
        if params.include_groups:
            try:
                groups = await registry.get_groups()
            except MahiloError as e:
                print(f"[Mahilo] Group list unavailable, listing friends only: {e.message}", file=sys.stderr)
    except MahiloError as e:
        if e.code == ErrorCode.INVALID_API_KEY:
            return json.dumps({
                "success": False, "error": True,
                "result": "Error: Mahilo API key is invalid or not configured. Check your configuration.",
            })
        return json.dumps({"success": False, "result": f"Failed to fetch contacts: {e.message}"})

    return json.dumps({"success": True, "result": format_contacts(friends, groups, status)})
