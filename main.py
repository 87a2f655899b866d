"""
toolhost - MCP capability server host

Main entry point: manage configured servers and call tools from the shell.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger
from rich.console import Console
from rich.table import Table

console = Console()


def setup_logging(debug: bool = False):
    """Configure logging."""
    log_path = Path("logs")
    log_path.mkdir(exist_ok=True)

    # Remove default handler
    logger.remove()

    # Console handler
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level="DEBUG" if debug else "INFO",
        colorize=True,
    )

    # File handler
    logger.add(
        log_path / "toolhost.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
    )


def _state_style(state: str) -> str:
    return {"running": "green", "error": "red", "starting": "yellow", "stopping": "yellow"}.get(state, "dim")


async def cmd_servers(args) -> int:
    from toolhost.core.app import create_app

    async with create_app(args.config, autostart=args.start) as app:
        table = Table(title="MCP servers")
        table.add_column("Name", style="cyan")
        table.add_column("Command")
        table.add_column("Enabled")
        table.add_column("State")
        table.add_column("Tools", justify="right")
        table.add_column("Last error", style="red")
        for config in app.servers.get_all_server_configs():
            status = app.servers.get_server_status(config.name)
            state = status.state.value if status else "-"
            table.add_row(
                config.name,
                " ".join([config.command, *config.args]),
                "yes" if config.enabled else "no",
                f"[{_state_style(state)}]{state}[/]",
                str(len(status.tools) if status else 0),
                (status.last_error or "") if status else "",
            )
        console.print(table)
        stats = app.servers.get_server_statistics()
        console.print(", ".join(f"{k}: {v}" for k, v in stats.items()))
    return 0


def cmd_presets(args) -> int:
    from toolhost.mcp.presets import get_installation_instructions, get_preconfigured_servers

    table = Table(title="Preconfigured servers")
    table.add_column("Name", style="cyan")
    table.add_column("Command")
    table.add_column("Description")
    table.add_column("Install")
    for preset in get_preconfigured_servers():
        table.add_row(
            preset.name,
            " ".join([preset.command, *preset.args]),
            preset.description,
            get_installation_instructions(preset.name) or "",
        )
    console.print(table)
    return 0


async def cmd_add_preset(args) -> int:
    from toolhost.core.app import create_app
    from toolhost.mcp.presets import get_preconfigured_server
    from toolhost.mcp.types import ConfigurationError

    preset = get_preconfigured_server(args.name)
    if preset is None:
        console.print(f"[red]Unknown preset:[/] {args.name}")
        return 1

    async with create_app(args.config, autostart=False) as app:
        try:
            app.servers.add_server(preset.model_copy(update={"enabled": args.enable}))
        except ConfigurationError as e:
            console.print(f"[red]{e}[/]")
            return 1
        await app.servers.wait_for_background()
    console.print(f"[green]Added[/] {args.name}")
    return 0


async def cmd_tools(args) -> int:
    from toolhost.core.app import create_app

    async with create_app(args.config) as app:
        table = Table(title="Tools")
        table.add_column("Id", style="cyan")
        table.add_column("Origin")
        table.add_column("Confirm")
        table.add_column("Description")
        for tool in app.tools.get_all_tools():
            table.add_row(
                tool["id"],
                tool["origin"],
                "yes" if tool["requires_confirmation"] else "",
                (tool["description"] or "")[:80],
            )
        console.print(table)
    return 0


async def cmd_call(args) -> int:
    from toolhost.core.app import create_app
    from toolhost.core.confirmations import console_prompt

    try:
        call_args = json.loads(args.json_args) if args.json_args else {}
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON arguments:[/] {e}")
        return 2
    if not isinstance(call_args, dict):
        console.print("[red]Arguments must be a JSON object[/]")
        return 2

    async with create_app(args.config, auto_approve=args.yes) as app:
        app.confirmations.set_request_handler(console_prompt(app.confirmations, console))
        result = await app.tools.call_tool(args.tool_id, call_args, timeout=args.timeout)
    console.print_json(json.dumps(result.to_dict(), default=str))
    return 0 if result.success else 1


async def cmd_serve(args) -> int:
    from toolhost.core.app import ToolHostApp

    app = ToolHostApp(args.config)
    await app.startup()
    try:
        await app.run()
    except KeyboardInterrupt:
        logger.info("Shutdown requested via keyboard")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="toolhost - supervise MCP servers and call their tools")
    parser.add_argument("--config", type=str, default="config.yaml", help="Path to configuration file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version="toolhost 0.1.0")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("servers", help="List configured servers and their status")
    p.add_argument("--start", action="store_true", help="Start enabled servers before listing")

    sub.add_parser("presets", help="List preconfigured servers")

    p = sub.add_parser("add-preset", help="Add a preconfigured server to the configuration")
    p.add_argument("name")
    p.add_argument("--enable", action="store_true", help="Enable (and start) the server")

    sub.add_parser("tools", help="Start enabled servers and list all tools")

    p = sub.add_parser("call", help="Call a tool by id")
    p.add_argument("tool_id")
    p.add_argument("json_args", nargs="?", default="{}")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--yes", action="store_true", help="Approve confirmation prompts automatically")

    sub.add_parser("serve", help="Start enabled servers and keep them running")
    return parser


def cli():
    """CLI entry point."""
    args = build_parser().parse_args()
    setup_logging(args.debug)

    handlers = {
        "servers": cmd_servers,
        "add-preset": cmd_add_preset,
        "tools": cmd_tools,
        "call": cmd_call,
        "serve": cmd_serve,
    }
    try:
        if args.command == "presets":
            code = cmd_presets(args)
        else:
            code = asyncio.run(handlers[args.command](args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        code = 130
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    cli()
