# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/authenticator.py

import asyncio
import logging
import secrets
import string
import webbrowser
from typing import Callable, List, Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.text import Text

from .config import OAuthSettings, Settings
from .errors import (
    AuthorizationFailed,
    ConfigurationError,
    JiraTimeAuthError,
    ListenerBindFailed,
)
from .lifecycle import TokenLifecycleManager
from .oauth.callback_server import OAuthCallbackServer
from .oauth.token_client import TokenExchangeClient
from .types import AuthenticationResult, Tenant
from .utils.headless_detection import is_headless_environment
from .utils.url import encode_params

lib_logger = logging.getLogger("jira_time")

console = Console()

STATE_ALPHABET = string.ascii_letters + string.digits

DEFAULT_AUTH_TIMEOUT = 300.0


def generate_state(length: int = 32) -> str:
    """Unguessable alphanumeric value for the OAuth ``state`` parameter."""
    return "".join(secrets.choice(STATE_ALPHABET) for _ in range(length))


def build_authorization_url(oauth: OAuthSettings, state: str) -> str:
    params = {
        "audience": oauth.audience,
        "client_id": oauth.client_id,
        "scope": " ".join(oauth.scopes),
        "redirect_uri": oauth.redirect_uri,
        "state": state,
        "response_type": "code",
        "prompt": "consent",
    }
    return f"{oauth.authorize_url}?{encode_params(params)}"


class OAuthAuthenticator:
    """
    Runs the interactive authorization-code flow end to end.

    Listener first, then the browser, so the redirect can never arrive before
    anything is listening. Nothing is persisted unless every step succeeds.
    """

    def __init__(
        self,
        settings: Settings,
        lifecycle: TokenLifecycleManager,
        token_client: TokenExchangeClient,
        state_factory: Callable[[], str] = generate_state,
        tenant_selector: Optional[Callable[[List[Tenant]], Tenant]] = None,
    ):
        self.settings = settings
        self.lifecycle = lifecycle
        self.token_client = token_client
        self.state_factory = state_factory
        self.tenant_selector = tenant_selector

    async def authenticate(
        self, open_browser: bool = True, timeout: float = DEFAULT_AUTH_TIMEOUT
    ) -> AuthenticationResult:
        try:
            self.settings.validate()
        except ConfigurationError as e:
            lib_logger.error(e.message)
            return AuthenticationResult(success=False, error=e)

        oauth = self.settings.oauth
        state = self.state_factory()
        server = OAuthCallbackServer(
            port=oauth.callback_port, callback_path=oauth.callback_path
        )

        try:
            await server.start()
        except ListenerBindFailed as e:
            return AuthenticationResult(success=False, error=e)

        try:
            auth_url = build_authorization_url(oauth, state)
            self._show_instructions(auth_url, open_browser)

            with console.status(
                "[bold green]Waiting for you to complete authentication in the browser...[/bold green]",
                spinner="dots",
            ):
                callback = await server.wait_for_callback(timeout=timeout)
        except asyncio.TimeoutError:
            return self._failed(
                AuthorizationFailed(
                    f"OAuth flow timed out after {int(timeout)}s. Please try again."
                )
            )
        except AuthorizationFailed as e:
            return self._failed(e)
        finally:
            await server.stop()

        if not secrets.compare_digest(callback.state.encode(), state.encode()):
            return self._failed(
                AuthorizationFailed("OAuth state mismatch; the redirect was not ours")
            )

        lib_logger.info("Exchanging authorization code for tokens...")
        token, error = await self.token_client.exchange_code(callback.code)
        if error is not None:
            return self._failed(error)

        tenants, error = await self.token_client.discover_tenants(token.access_token)
        if error is not None:
            return self._failed(error)

        tenant = self.tenant_selector(tenants) if self.tenant_selector else tenants[0]

        if not self.lifecycle.store_authorization(token, tenant.id):
            return self._failed(
                JiraTimeAuthError(
                    f"Failed to save credentials to '{self.lifecycle.store.file_path}'"
                ),
                tenants=tenants,
            )

        label = tenant.name or tenant.url or tenant.id
        console.print(
            Panel(
                f"Connected to [bold]{rich_escape(label)}[/bold]\n"
                f"Tenant id: {rich_escape(tenant.id)}",
                title="[bold green]Jira authentication successful[/bold green]",
                border_style="green",
            )
        )
        lib_logger.info(f"Jira OAuth initialized successfully for tenant '{tenant.id}'.")
        return AuthenticationResult(success=True, tenant_id=tenant.id, tenants=tenants)

    def _show_instructions(self, auth_url: str, open_browser: bool) -> None:
        is_headless = is_headless_environment()
        launch = open_browser and not is_headless

        if launch:
            panel_text = Text.from_markup(
                "1. Your browser will now open to log in and authorize the application.\n"
                "2. If it doesn't open automatically, please open the URL below manually."
            )
        else:
            panel_text = Text.from_markup(
                "Please open the URL below in a browser to authorize jira-time.\n"
                "Your browser must be able to reach this machine's loopback address."
            )

        console.print(
            Panel(panel_text, title="Jira OAuth Setup", style="bold blue")
        )
        console.print(
            f"[bold]URL:[/bold] [link={auth_url}]{rich_escape(auth_url)}[/link]\n"
        )

        if launch:
            try:
                webbrowser.open(auth_url)
                lib_logger.info("Browser opened successfully for OAuth flow")
            except webbrowser.Error as e:
                lib_logger.warning(
                    f"Failed to open browser automatically: {e}. Please open the URL manually."
                )

    def _failed(
        self, error: JiraTimeAuthError, tenants: Optional[List[Tenant]] = None
    ) -> AuthenticationResult:
        lib_logger.error(f"Jira authentication failed: {error.message}")
        console.print(f"[bold red]Authentication failed:[/bold red] {rich_escape(error.user_message)}")
        return AuthenticationResult(success=False, tenants=tenants or [], error=error)
