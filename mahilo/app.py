"""
Application composition root — create_app(), lifespan, main entry point.

This is the top-level module that wires everything together.
Depends on: everything (this IS the composition root)
"""

import contextlib
import os
import sys
from dataclasses import dataclass
from typing import Optional

import anyio
import uvicorn
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, Router

from mahilo.config import (
    CALLBACK_PATH,
    CALLBACK_SECRET,
    DEFAULT_HOST,
    DEFAULT_PORT,
    MAHILO_API_URL,
    POLICY_SOURCE_MODE,
    SEMANTIC_POLICIES_ENABLED,
    load_local_rules,
)
from mahilo.dedup import DedupTracker
from mahilo.dispatch import SpawnDispatcher
from mahilo.gate import InboundGate, OutboundGate
from mahilo.mcp import mcp, set_outbound_gate
from mahilo.models import HeuristicRules
from mahilo.policy.completion import AgentCliCompletion
from mahilo.policy.semantic import SemanticPolicyEvaluator
from mahilo.registry import RegistryClient, parse_rules
import mahilo.mcp.tools  # noqa: F401  (registers the MCP tools)


@dataclass
class Services:
    registry: RegistryClient
    dedup: DedupTracker
    inbound: InboundGate
    outbound: OutboundGate


def _local_rules(raw: dict) -> Optional[HeuristicRules]:
    return parse_rules(raw) if raw else None


def build_services() -> Services:
    """Construct the gates and their collaborators from configuration."""
    outbound_raw, inbound_raw = load_local_rules()
    registry = RegistryClient()
    evaluator = SemanticPolicyEvaluator(AgentCliCompletion())
    dedup = DedupTracker()
    inbound = InboundGate(
        dedup,
        secret=CALLBACK_SECRET,
        dispatcher=SpawnDispatcher(),
        registry=registry if registry.api_key else None,
        evaluator=evaluator,
        local_rules=_local_rules(inbound_raw),
    )
    outbound = OutboundGate(
        registry,
        evaluator=evaluator,
        local_rules=_local_rules(outbound_raw),
    )
    return Services(registry=registry, dedup=dedup, inbound=inbound, outbound=outbound)


def webhook_routes(gate: InboundGate, callback_path: str = CALLBACK_PATH) -> list[Route]:
    async def handle_status(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "callback_path": callback_path,
            "pending_dispatches": gate.pending,
            "tracked_message_ids": len(gate.dedup),
        })

    return [
        Route(callback_path, gate.handle_incoming, methods=["POST"]),
        Route("/status", handle_status, methods=["GET"]),
    ]


async def shutdown_gate(gate: InboundGate) -> None:
    await gate.dedup.stop()
    await gate.drain()
    close = getattr(gate.dispatcher, "close", None)
    if close is not None:
        await close()


def create_webhook_app(gate: InboundGate, callback_path: str = CALLBACK_PATH) -> Router:
    """The webhook endpoints alone, with the dedup sweep tied to the app lifespan."""

    @contextlib.asynccontextmanager
    async def lifespan(app):
        gate.dedup.start()
        try:
            yield
        finally:
            await shutdown_gate(gate)

    return Router(routes=webhook_routes(gate, callback_path), lifespan=lifespan)


def create_app(services: Optional[Services] = None) -> Router:
    """Create the combined app: webhook endpoints plus the MCP endpoint.

    Returns:
        The ASGI app (a Starlette Router).
    """
    services = services or build_services()
    set_outbound_gate(services.outbound)

    # Extract the MCP ASGI handler and its session manager for lifecycle
    mcp_starlette = mcp.streamable_http_app()
    mcp_handler = mcp_starlette.routes[0].app
    session_manager = mcp_handler.session_manager

    @contextlib.asynccontextmanager
    async def lifespan(app):
        async with session_manager.run():
            services.dedup.start()
            try:
                yield
            finally:
                await shutdown_gate(services.inbound)

    # redirect_slashes=False so POST /mcp isn't redirected to /mcp/
    return Router(
        routes=webhook_routes(services.inbound) + [Route("/mcp", mcp_handler)],
        redirect_slashes=False,
        lifespan=lifespan,
    )


# =============================================================================
# Startup banner
# =============================================================================

def print_startup_banner(port: int, transport: str) -> None:
    print(f"[Mahilo] Trust gate starting ({transport})", file=sys.stderr)
    print(f"[Mahilo] Webhook: POST http://{DEFAULT_HOST}:{port}{CALLBACK_PATH}", file=sys.stderr)
    print(f"[Mahilo] Registry: {MAHILO_API_URL}", file=sys.stderr)
    print(f"[Mahilo] Policy source: {POLICY_SOURCE_MODE}, "
          f"LLM policies: {'ENABLED' if SEMANTIC_POLICIES_ENABLED else 'disabled'}", file=sys.stderr)
    if not CALLBACK_SECRET:
        print("[Mahilo] WARNING: MAHILO_CALLBACK_SECRET is not set, every delivery will be rejected",
              file=sys.stderr)


# =============================================================================
# Dual transport: stdio plus HTTP
# =============================================================================

async def run_stdio_with_http() -> None:
    """Run MCP over stdio while serving the webhook over HTTP in the background."""
    from mcp.server.stdio import stdio_server

    port = int(os.environ.get("MAHILO_PORT", str(DEFAULT_PORT)))
    app = create_app()
    print_startup_banner(port, f"stdio (with HTTP webhook on port {port})")

    config = uvicorn.Config(app, host=DEFAULT_HOST, port=port, log_level="warning")
    server = uvicorn.Server(config)

    async with stdio_server() as (read_stream, write_stream):
        async with anyio.create_task_group() as tg:
            tg.start_soon(server.serve)
            await mcp._mcp_server.run(
                read_stream,
                write_stream,
                mcp._mcp_server.create_initialization_options(),
            )
            server.should_exit = True


# =============================================================================
# Main entry point
# =============================================================================

def main() -> None:
    """Entry point — detect transport mode and run."""
    port = int(os.environ.get("MAHILO_PORT", str(DEFAULT_PORT)))
    transport = os.environ.get("MAHILO_TRANSPORT", "auto")

    # Not a TTY means an MCP client launched us
    use_stdio = transport == "stdio" or (transport == "auto" and not sys.stdin.isatty())

    if use_stdio:
        anyio.run(run_stdio_with_http)
    else:
        app = create_app()
        print_startup_banner(port, "streamable-http")
        uvicorn.run(app, host=DEFAULT_HOST, port=port)


if __name__ == "__main__":
    main()
