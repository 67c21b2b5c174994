"""CLI entry point for the Etsy MCP server."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any, NoReturn

import click

from . import __version__
from .config import ConfigurationError, Settings, load_settings
from .oauth.manager import TokenLifecycleManager
from .oauth.store import TokenStore, open_storage
from .output import OutputHandler, format_status
from .server import run_server

# Logger for CLI
logger = logging.getLogger("etsy_mcp")

VERBOSE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_FORMAT = "[%(levelname)s] %(message)s"

CONFIG_HELP = (
    "Set ETSY_API_KEY and ETSY_CLIENT_SECRET in your environment or in a .env file "
    "(./.env or ~/.etsy-mcp/.env), or pass --env-file."
)


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr; stdout carries the MCP protocol."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=VERBOSE_FORMAT if verbose else DEFAULT_FORMAT,
        stream=sys.stderr,
    )


def add_file_logging(log_dir: Path | None) -> Path | None:
    """Also write logs to a timestamped file under log_dir.

    An unwritable directory disables file logging with a warning; the
    process keeps running with stderr logging only.

    Args:
        log_dir: Directory for log files, or None to skip file logging

    Returns:
        Path of the log file, or None if file logging is off
    """
    if log_dir is None:
        return None

    timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    log_path = log_dir / f"etsy-mcp-{timestamp}.log"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as e:
        logger.warning(f"File logging disabled: cannot write to {log_dir} ({e})")
        return None

    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT))
    logging.getLogger().addHandler(handler)
    logger.info(f"Writing logs to {log_path}")
    return log_path


def _log_uncaught(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: TracebackType | None,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logger.critical("Uncaught exception, shutting down", exc_info=(exc_type, exc_value, exc_tb))


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exception = context.get("exception")
    if exception is None:
        loop.default_exception_handler(context)
        return

    logger.critical(
        f"Unhandled exception in event loop: {context.get('message', 'no message')}",
        exc_info=exception,
    )
    logging.shutdown()
    os._exit(1)


def install_safety_nets() -> None:
    """Log otherwise unreported exceptions before the process exits non-zero."""
    sys.excepthook = _log_uncaught


async def _serve(settings: Settings) -> None:
    asyncio.get_running_loop().set_exception_handler(_handle_loop_exception)
    await run_server(settings)


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """Etsy MCP - Manage an Etsy shop from an MCP client."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    configure_logging(verbose)


def get_settings(ctx: click.Context) -> Settings | NoReturn:
    """Get settings from the environment, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["env_path"])
    except ConfigurationError as e:
        output.error(e, help_text=CONFIG_HELP)
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def _lifecycle_manager(settings: Settings) -> TokenLifecycleManager:
    store = TokenStore(open_storage(settings.token_path))
    return TokenLifecycleManager(settings, store)


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the MCP server over stdio."""
    settings = get_settings(ctx)
    add_file_logging(settings.log_dir)
    install_safety_nets()

    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the stored Etsy authentication status."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    auth_status = asyncio.run(_lifecycle_manager(settings).get_auth_status())
    data = auth_status.to_dict()
    output.success(data, format_status(data))


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Remove the stored Etsy tokens."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx)

    removed = asyncio.run(_lifecycle_manager(settings).logout())
    message = "Logged out. Stored Etsy tokens were removed." if removed else "No stored Etsy tokens to remove."
    output.success({"removed": removed}, message)


if __name__ == "__main__":
    main()
