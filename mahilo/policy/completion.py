"""
Completion capability — the text-generation call semantic policies delegate to.

The evaluator only depends on the CompletionFn protocol. The default
implementation runs the agent CLI in print mode with every tool disabled,
the same way inbound messages are handed to the agent.

Depends on: config
"""

import asyncio
import os
import sys
from dataclasses import dataclass
from typing import Optional, Protocol

from mahilo.config import AGENT_ENV_CLEANUP, EVAL_ARGS, EVAL_COMMAND


class CompletionError(Exception):
    """The completion backend failed to produce text."""


@dataclass
class CompletionRequest:
    prompt: str
    session_id: str
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 256
    timeout: float = 15.0
    disable_tools: bool = True


class CompletionFn(Protocol):
    async def __call__(self, request: CompletionRequest) -> str:
        ...


class AgentCliCompletion:
    """Run `<command> <args> [--model M] [--tools ""] <prompt>` and return stdout.

    The CLI has no temperature or token knobs; those fields are honored by
    other backends and ignored here. Cancellation kills the subprocess.
    """

    def __init__(self, command: str = EVAL_COMMAND, args: Optional[list[str]] = None):
        self.command = command
        self.args = list(EVAL_ARGS if args is None else args)

    def build_argv(self, request: CompletionRequest) -> list[str]:
        argv = [self.command, *self.args]
        if request.model:
            argv += ["--model", request.model]
        if request.disable_tools:
            argv += ["--tools", ""]
        argv.append(request.prompt)
        return argv

    async def __call__(self, request: CompletionRequest) -> str:
        env = os.environ.copy()
        for var in AGENT_ENV_CLEANUP:
            env.pop(var, None)

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_argv(request),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CompletionError(
                f"command '{self.command}' not found. Set MAHILO_EVAL_COMMAND to the correct path."
            ) from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                print(f"[Mahilo] Killed policy evaluation PID {process.pid} ({request.session_id})", file=sys.stderr)
            raise

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:200]
            raise CompletionError(f"{self.command} exited with {process.returncode}: {detail}")
        return stdout.decode("utf-8", errors="replace")
