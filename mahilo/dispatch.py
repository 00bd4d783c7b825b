"""
Agent dispatch — hand accepted inbound messages to the local agent.

Formats the message the way the agent sees it, then spawns the agent CLI
as a subprocess. Dispatch runs after the webhook has already been
acknowledged, so failures are reported in the result and logged, never
raised to the registry.

Depends on: config, models
"""

import asyncio
import json
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from mahilo.config import (
    AGENT_ARGS,
    AGENT_COMMAND,
    AGENT_ENV_CLEANUP,
    AGENT_TIMEOUT,
    INBOUND_AGENT_ID,
    INBOUND_SESSION_KEY,
)
from mahilo.models import DispatchResult, IncomingMessage


# =============================================================================
# Formatting
# =============================================================================

def format_incoming_message(incoming: IncomingMessage) -> str:
    """Render an inbound message as the text the agent receives."""
    group_display = incoming.group_name or incoming.group_id

    if incoming.is_group:
        text = f'📬 Message from {incoming.sender} in group "{group_display}" (via Mahilo):\n\n'
    else:
        text = f"📬 Message from {incoming.sender} (via Mahilo):\n\n"

    text += incoming.message
    if incoming.context:
        text += f"\n\n[Context: {incoming.context}]"
    text += "\n\n---\n"

    if incoming.is_group:
        text += f'To reply to the group, use the mahilo_talk_to_group tool with group_id "{incoming.group_id}".\n'
        text += f'To reply directly to {incoming.sender}, use the mahilo_talk_to_agent tool with recipient "{incoming.sender}".'
    else:
        text += f'To reply, use the mahilo_talk_to_agent tool with recipient "{incoming.sender}".'
    return text


def build_extra_system_prompt(incoming: IncomingMessage) -> str:
    lines = [
        "You are receiving a message from another agent via the Mahilo network.",
        f"Sender: {incoming.sender}",
    ]
    if incoming.sender_agent:
        lines.append(f"Sender Agent: {incoming.sender_agent}")
    if incoming.is_group:
        lines.append(f"Group: {incoming.group_name or incoming.group_id}")
        lines.append(f"Group ID: {incoming.group_id}")
        lines.append(f'To reply to the group, use the mahilo_talk_to_group tool with group_id "{incoming.group_id}".')
        lines.append(f'To reply directly to the sender, use the mahilo_talk_to_agent tool with recipient "{incoming.sender}".')
    else:
        lines.append(f'To reply, use the mahilo_talk_to_agent tool with recipient "{incoming.sender}".')
    return "\n".join(lines)


def idempotency_key(incoming: IncomingMessage) -> str:
    return f"mahilo-{incoming.message_id}"


def message_metadata(incoming: IncomingMessage, run_id: str, session_key: str) -> dict:
    metadata = {
        "source": "mahilo",
        "mahilo_message_id": incoming.message_id,
        "mahilo_correlation_id": incoming.correlation_id,
        "mahilo_sender": incoming.sender,
        "mahilo_sender_agent": incoming.sender_agent,
        "run_id": run_id,
        "session_key": session_key,
        "received_at": datetime.now(timezone.utc).isoformat(),
    }
    if incoming.group_id:
        metadata["mahilo_group_id"] = incoming.group_id
        metadata["mahilo_group_name"] = incoming.group_name
    return metadata


# =============================================================================
# Dispatchers
# =============================================================================

class AgentDispatcher(Protocol):
    async def dispatch(self, incoming: IncomingMessage) -> DispatchResult:
        ...


@dataclass
class SpawnedRun:
    process: asyncio.subprocess.Process
    message_id: str
    spawned_at: float


class SpawnDispatcher:
    """Start one agent CLI process per accepted message."""

    def __init__(self, command: str = AGENT_COMMAND, args: Optional[list[str]] = None,
                 session_key: str = INBOUND_SESSION_KEY,
                 agent_id: Optional[str] = INBOUND_AGENT_ID,
                 timeout: int = AGENT_TIMEOUT):
        self.command = command
        self.args = list(AGENT_ARGS if args is None else args)
        self.session_key = session_key
        self.agent_id = agent_id
        self.timeout = timeout
        self.runs: dict[str, SpawnedRun] = {}
        self._watchdogs: set[asyncio.Task] = set()

    def build_argv(self, incoming: IncomingMessage) -> list[str]:
        return [
            self.command, *self.args,
            "--append-system-prompt", build_extra_system_prompt(incoming),
            format_incoming_message(incoming),
        ]

    def build_env(self, incoming: IncomingMessage) -> dict:
        env = os.environ.copy()
        for var in AGENT_ENV_CLEANUP:
            env.pop(var, None)
        env["MAHILO_SESSION_KEY"] = self.session_key
        env["MAHILO_IDEMPOTENCY_KEY"] = idempotency_key(incoming)
        if self.agent_id:
            env["MAHILO_AGENT_ID"] = self.agent_id
        return env

    def _prune(self) -> None:
        for message_id, run in list(self.runs.items()):
            if run.process.returncode is not None:
                del self.runs[message_id]

    async def dispatch(self, incoming: IncomingMessage) -> DispatchResult:
        group_info = f" in group {incoming.group_name or incoming.group_id}" if incoming.group_id else ""
        print(f"[Mahilo] Received message from {incoming.sender}{group_info}: {incoming.message_id}", file=sys.stderr)

        run_id = idempotency_key(incoming)
        self._prune()
        if incoming.message_id in self.runs:
            print(f"[Mahilo] Agent already running for message {incoming.message_id}", file=sys.stderr)
            return DispatchResult(ok=True, run_id=run_id)

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_argv(incoming),
                env=self.build_env(incoming),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=os.getcwd(),
            )
        except FileNotFoundError:
            error = f"command '{self.command}' not found. Set MAHILO_AGENT_COMMAND to the correct path."
            return self._failed(incoming, error)
        except OSError as e:
            return self._failed(incoming, str(e))

        self.runs[incoming.message_id] = SpawnedRun(process, incoming.message_id, time.monotonic())
        watchdog = asyncio.get_running_loop().create_task(
            self._watchdog(process, incoming.message_id), name=f"mahilo-watchdog-{incoming.message_id}"
        )
        self._watchdogs.add(watchdog)
        watchdog.add_done_callback(self._watchdogs.discard)

        print(
            f"[Mahilo] Agent run triggered: runId={run_id}, sessionKey={self.session_key}, PID {process.pid}",
            file=sys.stderr,
        )
        print(f"[Mahilo] Message metadata: {json.dumps(message_metadata(incoming, run_id, self.session_key))}",
              file=sys.stderr)
        return DispatchResult(ok=True, run_id=run_id)

    def _failed(self, incoming: IncomingMessage, error: str) -> DispatchResult:
        print(f"[Mahilo] Failed to trigger agent run: {error}", file=sys.stderr)
        print(f"[Mahilo] Unprocessed message from {incoming.sender}:\n{format_incoming_message(incoming)}",
              file=sys.stderr)
        return DispatchResult(ok=False, error=error)

    async def _watchdog(self, process: asyncio.subprocess.Process, message_id: str) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            print(f"[Mahilo] Agent PID {process.pid} for {message_id} timed out after {self.timeout}s, terminating",
                  file=sys.stderr)
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        finally:
            self.runs.pop(message_id, None)

    async def close(self) -> None:
        """Stop watching running agents. The processes themselves are left alone."""
        for watchdog in list(self._watchdogs):
            watchdog.cancel()
        await asyncio.gather(*list(self._watchdogs), return_exceptions=True)
        self._watchdogs.clear()
