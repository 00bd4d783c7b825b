"""
Pydantic input models for MCP tools.

Depends on: none
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_MESSAGE_LENGTH = 65536  # 64 KB, policies may set a tighter limit


class TalkToAgentInput(BaseModel):
    """Send a message to another user's agent through the Mahilo network."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    recipient: str = Field(..., description="Username of the recipient (must be a friend on Mahilo)", min_length=1)
    message: str = Field(..., description="The message to send", min_length=1, max_length=MAX_MESSAGE_LENGTH)
    context: Optional[str] = Field(default=None, description="Why you're sending this message (helps recipient understand)")
    connection_label: Optional[str] = Field(default=None, description="Preferred recipient connection label (e.g., work, personal)")
    routing_tags: Optional[list[str]] = Field(default=None, description="Routing hints to select the best recipient connection")


class TalkToGroupInput(BaseModel):
    """Send a message to a Mahilo group."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    group_id: str = Field(..., description="Mahilo group id (not the group name)", min_length=1)
    message: str = Field(..., description="The message to send", min_length=1, max_length=MAX_MESSAGE_LENGTH)
    context: Optional[str] = Field(default=None, description="Why you're sending this message (helps recipients understand)")


class ListContactsInput(BaseModel):
    """List the friends and groups you can message on Mahilo."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    status: str = Field(default="accepted", description='Filter friends by status: "accepted" (default), "pending", "blocked" or "all"')
    include_groups: bool = Field(default=True, description="Include groups you're a member of (default: true)")
