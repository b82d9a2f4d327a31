# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time_cli/main.py

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel

from jira_time.api_client import JiraApiClient
from jira_time.authenticator import OAuthAuthenticator
from jira_time.background_refresher import BackgroundRefresher
from jira_time.config import Settings, load_settings
from jira_time.errors import ConfigurationError
from jira_time.lifecycle import TokenLifecycleManager
from jira_time.oauth.token_client import TokenExchangeClient
from jira_time.storage import CredentialStore

console = Console()

EXIT_OK = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jira-time", description="Jira OAuth token management for jira-time."
    )
    parser.add_argument(
        "--env-file", type=str, default=None, help="Load settings from this .env file."
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    auth = subparsers.add_parser("auth", help="Authorize jira-time with your Jira site.")
    auth.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL without opening a browser.",
    )
    auth.add_argument(
        "--timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for the browser redirect.",
    )

    subparsers.add_parser("status", help="Show the stored token state.")
    subparsers.add_parser("refresh", help="Refresh the access token now.")
    subparsers.add_parser("logout", help="Delete stored credentials.")
    subparsers.add_parser("whoami", help="Call the Jira API as the current user.")
    subparsers.add_parser(
        "watch", help="Keep the token fresh in the foreground until interrupted."
    )
    return parser


class Components:
    """The wired-up object graph for one CLI invocation."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.store = CredentialStore(settings.storage.auth_file)
        self.token_client = TokenExchangeClient(
            settings.oauth, timeout=settings.http_timeout
        )
        self.lifecycle = TokenLifecycleManager(settings, self.store, self.token_client)

    def authenticator(self) -> OAuthAuthenticator:
        return OAuthAuthenticator(self.settings, self.lifecycle, self.token_client)

    def api_client(self) -> JiraApiClient:
        return JiraApiClient(self.lifecycle, self.settings)

    def refresher(self) -> BackgroundRefresher:
        return BackgroundRefresher(self.lifecycle, self.settings)


def _format_timestamp(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return "-"
    if seconds < 0:
        return f"expired {abs(seconds) // 60}m ago"
    hours, remainder = divmod(seconds, 3600)
    return f"{hours}h {remainder // 60}m"


def render_status(info: Dict[str, Any]) -> List[str]:
    lines = [
        f"[bold]State:[/bold] {info['state']}",
        f"[bold]Auth file:[/bold] {rich_escape(info['auth_file'])}",
    ]
    if not info.get("has_record"):
        lines.append("[yellow]Not authenticated. Run 'jira-time auth'.[/yellow]")
        return lines

    lines.extend(
        [
            f"[bold]Tenant:[/bold] {info.get('tenant_id') or '-'}",
            f"[bold]Token:[/bold] {info.get('token_prefix') or '-'}...",
            f"[bold]Expires:[/bold] {_format_timestamp(info.get('expires_at'))} "
            f"({_format_duration(info.get('expires_in_seconds'))})",
            f"[bold]Refresh token:[/bold] {'present' if info.get('has_refresh_token') else 'missing'}",
            f"[bold]Last refresh:[/bold] {_format_timestamp(info.get('last_refresh_at'))}",
        ]
    )
    if "refresh_token_age_days" in info:
        lines.append(
            f"[bold]Refresh token age:[/bold] {info['refresh_token_age_days']} days "
            f"(~{info['refresh_token_days_remaining']} days remaining)"
        )
    if info.get("refresh_needed"):
        lines.append(f"[yellow]Refresh due: {info['refresh_needed']}[/yellow]")
    error = info.get("last_refresh_error")
    if error:
        kind = "re-authentication required" if error.get("terminal") else "will retry"
        lines.append(
            f"[red]Last refresh error ({kind}):[/red] {rich_escape(error.get('message') or '')}"
        )
    return lines


async def cmd_auth(components: Components, args: argparse.Namespace) -> int:
    result = await components.authenticator().authenticate(
        open_browser=not args.no_browser, timeout=args.timeout
    )
    return EXIT_OK if result.success else EXIT_FAILURE


async def cmd_status(components: Components, args: argparse.Namespace) -> int:
    info = components.lifecycle.diagnostics()
    console.print(Panel("\n".join(render_status(info)), title="Jira Auth Status"))
    return EXIT_OK


async def cmd_refresh(components: Components, args: argparse.Namespace) -> int:
    outcome = await components.lifecycle.refresh()
    if outcome.success:
        console.print("[bold green]Token refreshed successfully.[/bold green]")
        return EXIT_OK
    console.print(f"[bold red]Refresh failed:[/bold red] {rich_escape(outcome.error.user_message)}")
    return EXIT_FAILURE


async def cmd_logout(components: Components, args: argparse.Namespace) -> int:
    if components.lifecycle.logout():
        console.print("Logged out. Stored Jira credentials removed.")
        return EXIT_OK
    console.print("[bold red]Failed to remove stored credentials.[/bold red]")
    return EXIT_FAILURE


async def cmd_whoami(components: Components, args: argparse.Namespace) -> int:
    await components.lifecycle.validate_on_startup()
    user, error = await components.api_client().get_current_user()
    if error is not None:
        console.print(f"[bold red]Request failed:[/bold red] {rich_escape(error.user_message)}")
        return EXIT_FAILURE
    user = user or {}
    console.print(
        f"Authenticated as [bold]{rich_escape(str(user.get('displayName', '?')))}[/bold] "
        f"({rich_escape(str(user.get('emailAddress') or user.get('accountId', '')))})"
    )
    return EXIT_OK


async def cmd_watch(components: Components, args: argparse.Namespace) -> int:
    refresher = components.refresher()
    if not await refresher.start():
        console.print(
            "[yellow]Proactive refresh is disabled (JIRA_TIME_PROACTIVE_REFRESH).[/yellow]"
        )
        return EXIT_FAILURE
    console.print(
        f"Watching token (check every {int(components.settings.token_refresh.background_interval)}s). "
        "Press Ctrl+C to stop."
    )
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await refresher.stop()
        await components.lifecycle.aclose()


COMMANDS = {
    "auth": cmd_auth,
    "status": cmd_status,
    "refresh": cmd_refresh,
    "logout": cmd_logout,
    "whoami": cmd_whoami,
    "watch": cmd_watch,
}

# Commands that talk to the token endpoint need client credentials
NEEDS_CREDENTIALS = {"auth", "refresh", "whoami", "watch"}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = load_settings()
    if args.command in NEEDS_CREDENTIALS:
        try:
            settings.validate()
        except ConfigurationError as e:
            console.print(f"[bold red]{rich_escape(e.user_message)}[/bold red]")
            return EXIT_FAILURE

    components = Components(settings)
    start = time.time()
    try:
        return asyncio.run(COMMANDS[args.command](components, args))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        return EXIT_OK if args.command == "watch" else EXIT_FAILURE
    finally:
        logging.getLogger("jira_time").debug(
            f"'{args.command}' finished in {time.time() - start:.2f}s"
        )


if __name__ == "__main__":
    sys.exit(main())
