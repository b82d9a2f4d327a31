# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/oauth/token_client.py

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from ..config import DEFAULT_HTTP_TIMEOUT, OAuthSettings
from ..errors import (
    JiraTimeAuthError,
    NetworkError,
    TenantDiscoveryFailed,
    TokenExchangeFailed,
)
from ..types import DEFAULT_EXPIRES_IN, Tenant, TokenResponse

lib_logger = logging.getLogger("jira_time")

TokenResult = Tuple[Optional[TokenResponse], Optional[JiraTimeAuthError]]


def parse_token_response(data: Any) -> TokenResponse:
    """Build a TokenResponse from the decoded JSON body. Raises ValueError."""
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")

    access_token = data.get("access_token")
    if not access_token or not isinstance(access_token, str):
        raise ValueError("missing access_token in token response")

    expires_in = data.get("expires_in", DEFAULT_EXPIRES_IN)
    try:
        expires_in = int(expires_in)
    except (TypeError, ValueError):
        raise ValueError(f"invalid expires_in: {expires_in!r}")

    return TokenResponse(
        access_token=access_token,
        expires_in=expires_in,
        refresh_token=data.get("refresh_token") or None,
        token_type=data.get("token_type") or "Bearer",
        scope=data.get("scope") or "",
    )


def _error_details(response: httpx.Response) -> Tuple[Optional[str], str]:
    """Pull (error_code, description) out of an OAuth error body."""
    try:
        error_data = response.json()
    except (json.JSONDecodeError, ValueError):
        return None, response.text[:200]
    if not isinstance(error_data, dict):
        return None, response.text[:200]
    error_code = error_data.get("error")
    description = (
        error_data.get("error_description") or error_data.get("message") or ""
    )
    return error_code, description


class TokenExchangeClient:
    """
    Talks to the provider's token and accessible-resources endpoints.

    Every call carries an explicit timeout and resolves to a ``(value, error)``
    pair; HTTP failures are never raised.
    """

    def __init__(
        self,
        settings: OAuthSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.settings = settings
        self.timeout = timeout
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def exchange_code(self, code: str) -> TokenResult:
        """Exchange an authorization code for access and refresh tokens."""
        data = {
            "grant_type": "authorization_code",
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
        }
        return await self._post_token(data, "authorization code exchange")

    async def exchange_refresh_token(self, refresh_token: str) -> TokenResult:
        """Mint a new access token from a refresh token."""
        data = {
            "grant_type": "refresh_token",
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "refresh_token": refresh_token,
        }
        return await self._post_token(data, "token refresh")

    async def _post_token(self, data: Dict[str, Any], operation: str) -> TokenResult:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    self.settings.token_url,
                    data=data,
                    headers=headers,
                    timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            lib_logger.warning(f"Timed out during {operation}: {e!r}")
            return None, NetworkError(f"Token endpoint timed out during {operation}")
        except httpx.HTTPError as e:
            lib_logger.warning(f"Network error during {operation}: {e!r}")
            return None, NetworkError(f"Network error during {operation}: {e}")

        if not response.is_success:
            error_code, description = _error_details(response)
            lib_logger.error(
                f"OAuth {operation} failed: HTTP {response.status_code} "
                f"{error_code or ''} {description}".rstrip()
            )
            message = f"Token endpoint returned HTTP {response.status_code}"
            if error_code:
                message += f" ({error_code})"
            return None, TokenExchangeFailed(
                message, status_code=response.status_code, error_code=error_code
            )

        try:
            token = parse_token_response(response.json())
        except (json.JSONDecodeError, ValueError) as e:
            lib_logger.error(f"Failed to parse token response during {operation}: {e}")
            return None, TokenExchangeFailed(
                f"Failed to parse token response: {e}",
                status_code=response.status_code,
                reason="unparseable",
            )

        return token, None

    async def discover_tenants(
        self, access_token: str
    ) -> Tuple[List[Tenant], Optional[JiraTimeAuthError]]:
        """List every resource the token can reach."""
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            async with self._client() as client:
                response = await client.get(
                    self.settings.resources_url, headers=headers, timeout=self.timeout
                )
        except httpx.HTTPError as e:
            lib_logger.warning(f"Network error during tenant discovery: {e!r}")
            return [], NetworkError(f"Network error during tenant discovery: {e}")

        if not response.is_success:
            lib_logger.error(
                f"Tenant discovery failed: HTTP {response.status_code} {response.text[:200]}"
            )
            return [], TenantDiscoveryFailed(
                f"Accessible-resources endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            resources = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            return [], TenantDiscoveryFailed(f"Failed to parse accessible resources: {e}")

        if not isinstance(resources, list):
            return [], TenantDiscoveryFailed("Accessible resources is not a JSON array")

        tenants = [
            Tenant(
                id=str(resource["id"]),
                name=resource.get("name") or "",
                url=resource.get("url") or "",
                scopes=list(resource.get("scopes") or []),
            )
            for resource in resources
            if isinstance(resource, dict) and resource.get("id")
        ]
        if not tenants:
            return [], TenantDiscoveryFailed("No accessible Jira sites found for this account")
        return tenants, None

    async def discover_tenant(
        self, access_token: str
    ) -> Tuple[Optional[str], Optional[JiraTimeAuthError]]:
        """
        Pick the first accessible resource.

        Multi-site accounts are not disambiguated here; use
        :meth:`discover_tenants` to choose explicitly.
        """
        tenants, error = await self.discover_tenants(access_token)
        if error is not None:
            return None, error
        if len(tenants) > 1:
            lib_logger.info(
                f"{len(tenants)} accessible sites found, using the first: {tenants[0].name or tenants[0].id}"
            )
        return tenants[0].id, None
