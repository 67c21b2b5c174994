"""Output formatting for the etsy-mcp command line.

Only CLI commands write to stdout this way; the ``serve`` command reserves
stdout for the MCP protocol.
"""

import json
import sys
from typing import Any

import click


def format_json(data: Any) -> str:
    """Wrap data in the success envelope."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(error: Exception, help_text: str | None = None) -> str:
    """Wrap an error in the failure envelope."""
    return json.dumps(
        {
            "success": False,
            "error": {
                "type": type(error).__name__,
                "message": str(error),
                "help": help_text or "",
            },
        },
        indent=2,
    )


def format_status(status: dict[str, Any]) -> str:
    """Render an auth status dict as human-readable lines."""
    if not status.get("authenticated"):
        lines = ["Not authenticated. Run the `authenticate` tool from your MCP client."]
    else:
        state = "expired" if status.get("expired") else f"valid for {status.get('expires_in_human')}"
        lines = [f"Authenticated (access token {state})"]
        if status.get("user_id") is not None:
            lines.append(f"  User ID:       {status['user_id']}")
        lines.append(f"  Refresh token: {'yes' if status.get('has_refresh_token') else 'no'}")
        if status.get("shop_id") is not None:
            lines.append(f"  Default shop:  {status.get('shop_name') or 'N/A'} (ID: {status['shop_id']})")
        else:
            lines.append("  Default shop:  not set (run `set_default_shop`)")

    if not status.get("persistent", True):
        lines.append("Warning: token storage is disabled; tokens are not saved to disk.")
    return "\n".join(lines)


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def error(self, error: Exception, help_text: str | None = None) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)
