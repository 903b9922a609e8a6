"""CLI: repair-chat serve, agents, prompt, chat, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import httpx

from ..config import load_config, validate_config
from ..integrations.langfuse import LangfuseClient
from ..prompts import PromptManager
from ..stream.wire import decode_line
from ..types import TextDeltaFrame

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load_or_exit(config_path: str | None):
    try:
        return load_config(config_path)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args):
    """Start the streaming HTTP server."""
    import uvicorn

    from ..stream.server import create_app

    # Uvicorn force-cancels open streaming responses after the graceful
    # shutdown timeout, which logs CancelledError tracebacks from Starlette.
    class _SuppressCancelled(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info:
                exc_type = record.exc_info[0]
                if exc_type is asyncio.CancelledError:
                    return False
            return True

    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    config = _load_or_exit(args.config)
    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config=config)
    print(f"{config.server.service_name} on {host}:{port} ({len(app.state.registry)} agents)")
    uvicorn.run(
        app, host=host, port=port, log_level=args.log_level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_agents(args):
    """List configured agents and their aliases."""
    config = _load_or_exit(args.config)
    if not config.agents:
        print("No agents configured.")
        return
    for agent in config.agents:
        line = f"{agent.id:<40} {agent.provider:<10}"
        if agent.provider == "anthropic":
            line += f" {agent.model}"
        print(line)
        if agent.aliases:
            print(f"    aliases: {', '.join(agent.aliases)}")
        if agent.prompt:
            print(f"    prompt:  {agent.prompt}")
    if config.server.workflow_routes:
        print("\nWorkflow routes:")
        for workflow, target in config.server.workflow_routes.items():
            print(f"  {workflow} -> {target}")


async def _fetch_prompt(config, name: str, label: str, local_only: bool):
    client = LangfuseClient(config.langfuse)
    try:
        manager = PromptManager(config.prompts, remote=client)
        return await manager.get_prompt(name, label, local_only=local_only)
    finally:
        await client.aclose()


def cmd_prompt(args):
    """Resolve a prompt the way agents do and print it."""
    config = _load_or_exit(args.config)
    label = args.label or config.prompts.label
    info = asyncio.run(_fetch_prompt(config, args.name, label, args.local))
    print(f"# {info.name}@{label} (source: {info.source}"
          + (f", version {info.version}" if info.version is not None else "")
          + ")")
    if info.content:
        print(info.content)
    if info.source == "none":
        sys.exit(1)


def cmd_chat(args):
    """Send one message to a running server and print the streamed reply."""
    url = f"{args.url.rstrip('/')}/api/agents/{args.agent}/stream"
    body: dict = {"messages": [{"role": "user", "content": args.message}]}
    headers = {"Content-Type": "application/json"}
    if args.session:
        headers["X-Session-ID"] = args.session

    try:
        with httpx.stream(
            "POST", url, json=body, headers=headers, timeout=args.timeout,
        ) as resp:
            if resp.status_code != 200:
                resp.read()
                print(f"HTTP {resp.status_code}: {resp.text}", file=sys.stderr)
                sys.exit(1)
            session_id = resp.headers.get("x-session-id", "")
            for line in resp.iter_lines():
                frame = decode_line(line)
                if isinstance(frame, TextDeltaFrame):
                    sys.stdout.write(frame.text)
                    sys.stdout.flush()
    except httpx.HTTPError as e:
        print(f"Request failed: {e}", file=sys.stderr)
        sys.exit(1)
    print()
    if session_id and args.verbose:
        print(f"[session {session_id}]", file=sys.stderr)


def cmd_config_validate(args):
    """Validate config file."""
    config = _load_or_exit(args.config)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Agents: {len(config.agents)}")
        print(f"  Workflow routes: {len(config.server.workflow_routes)}")
        print(f"  Langfuse: {'enabled' if config.langfuse.enabled else 'disabled'}")
        print(f"  Frame chunk size: {config.stream.chunk_size}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="repair-chat",
        description="Streaming chat endpoints for repair-intake agents",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the streaming server")
    serve_parser.add_argument("--host", help="Bind address (default: server.host)")
    serve_parser.add_argument("--port", "-p", type=int, help="Port (default: server.port)")

    # agents
    subparsers.add_parser("agents", help="List configured agents")

    # prompt
    prompt_parser = subparsers.add_parser("prompt", help="Resolve and print a prompt")
    prompt_parser.add_argument("name", help="Prompt name")
    prompt_parser.add_argument("--label", help="Prompt label (default: prompts.label)")
    prompt_parser.add_argument("--local", action="store_true", help="Skip Langfuse")

    # chat
    chat_parser = subparsers.add_parser("chat", help="Send a message to a running server")
    chat_parser.add_argument("message", help="User message")
    chat_parser.add_argument("--agent", "-a", default="repair-workflow-orchestrator")
    chat_parser.add_argument("--url", default="http://127.0.0.1:80", help="Server base URL")
    chat_parser.add_argument("--session", help="Session id to continue")
    chat_parser.add_argument("--timeout", type=float, default=120.0)
    chat_parser.add_argument("--verbose", "-v", action="store_true")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "agents":
        cmd_agents(args)
    elif args.command == "prompt":
        cmd_prompt(args)
    elif args.command == "chat":
        cmd_chat(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: repair-chat config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
