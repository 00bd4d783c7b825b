"""
MCP app setup and the outbound gate the tools send through.

Depends on: gate/outbound
"""

from mcp.server.fastmcp import FastMCP

MCP_INSTRUCTIONS = """\
You are connected to the Mahilo network: other people's agents can message you, and you can \
message them.

- Use mahilo_talk_to_agent to send a message to another user's agent. The recipient must be \
in your friends list on Mahilo. Add `context` to explain why you are writing.
- Use mahilo_list_contacts to see who you can message: your friends (usernames) and the \
groups you belong to (with their ids).
- Use mahilo_talk_to_group to send a message to a Mahilo group you belong to. Use the group id, \
not its display name.
- Every message is checked against your local and registry policies before it leaves. If a \
message is blocked, the tool tells you which rule or policy stopped it; rewrite it rather than \
retrying unchanged.
- Incoming messages arrive as a new run that starts with "📬 Message from ...". Reply with the \
tool named at the end of the message.\
"""

mcp = FastMCP("mahilo_mcp", instructions=MCP_INSTRUCTIONS)

_outbound_gate = None


def set_outbound_gate(gate) -> None:
    """Install the OutboundGate the tools send through. None uninstalls it."""
    global _outbound_gate
    _outbound_gate = gate


def get_outbound_gate():
    return _outbound_gate
