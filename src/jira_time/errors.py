# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/errors.py
"""
Error taxonomy for the OAuth token lifecycle.

Network and provider failures are returned as values across the lifecycle
boundary (``(result, error)`` tuples or outcome objects) so callers can branch
on them. They are still Exception subclasses so the UI layer can raise them
when it wants a hard stop.
"""

from typing import Optional

# Token endpoint error codes that invalidate the current refresh token.
TERMINAL_OAUTH_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})

REAUTH_HINT = "Run 'jira-time auth' to re-authenticate."


class JiraTimeAuthError(Exception):
    """Base class for everything the auth subsystem reports."""

    transient: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def user_message(self) -> str:
        if self.transient:
            return f"{self.message} (temporary failure, will retry)"
        return f"{self.message}. {REAUTH_HINT}"


class ConfigurationError(JiraTimeAuthError):
    """Required OAuth configuration is missing or malformed."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__(
            "jira-time configuration errors:\n  - " + "\n  - ".join(self.problems)
        )

    @property
    def user_message(self) -> str:
        return self.message


class NotAuthenticated(JiraTimeAuthError):
    """No usable access token or tenant id."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class AuthorizationFailed(JiraTimeAuthError):
    """The authorization redirect was rejected (state mismatch, provider error)."""


class ListenerBindFailed(JiraTimeAuthError):
    """The loopback redirect listener could not bind its port."""

    def __init__(self, port: int, reason: str = ""):
        self.port = port
        detail = f": {reason}" if reason else ""
        super().__init__(f"Failed to start OAuth callback server on port {port}{detail}")

    @property
    def user_message(self) -> str:
        return (
            f"{self.message}. Free the port or change JIRA_TIME_REDIRECT_URI, "
            f"then run 'jira-time auth' again."
        )


class NetworkError(JiraTimeAuthError):
    """Transport-level failure. Always transient."""

    transient = True


class TokenExchangeFailed(JiraTimeAuthError):
    """Non-2xx or unparseable response from the token endpoint."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        reason: str = "status",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.reason = reason

    @property
    def terminal(self) -> bool:
        return self.error_code in TERMINAL_OAUTH_ERRORS

    @property
    def transient(self) -> bool:
        return not self.terminal


class TenantDiscoveryFailed(JiraTimeAuthError):
    """The accessible-resources endpoint returned nothing usable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RefreshFailed(JiraTimeAuthError):
    """
    A refresh-token exchange did not produce a new access token.

    ``terminal`` means the refresh token itself is dead and the user must go
    through the full authorization flow again.
    """

    def __init__(
        self,
        message: str,
        terminal: bool = False,
        cause: Optional[JiraTimeAuthError] = None,
    ):
        super().__init__(message)
        self.terminal = terminal
        self.cause = cause

    @property
    def transient(self) -> bool:
        return not self.terminal


class AuthenticationFailed(JiraTimeAuthError):
    """The API kept rejecting the token after the single refresh-and-retry."""


class ApiRequestFailed(JiraTimeAuthError):
    """Non-auth failure from the Jira REST API."""

    transient = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def user_message(self) -> str:
        return self.message
