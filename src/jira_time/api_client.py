# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/api_client.py

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Tuple

import httpx

from .config import Settings
from .errors import (
    REAUTH_HINT,
    ApiRequestFailed,
    AuthenticationFailed,
    JiraTimeAuthError,
    NetworkError,
    NotAuthenticated,
)
from .lifecycle import TokenLifecycleManager

lib_logger = logging.getLogger("jira_time")

ApiResult = Tuple[Any, Optional[JiraTimeAuthError]]


def _describe_failure(response: httpx.Response) -> str:
    """Fold Jira's ``errorMessages`` / ``message`` into one line."""
    message = f"API request failed: {response.status_code}"
    if not response.text:
        return message
    lib_logger.debug(f"Response body: {response.text}")
    try:
        error_data = response.json()
    except (json.JSONDecodeError, ValueError):
        if len(response.text) < 200:
            message += f" - {response.text}"
        return message

    if isinstance(error_data, dict):
        if error_data.get("errorMessages"):
            message += " - " + ", ".join(str(m) for m in error_data["errorMessages"])
        elif error_data.get("message"):
            message += f" - {error_data['message']}"
    return message


class JiraApiClient:
    """
    Authenticated Jira REST calls.

    A 401 triggers exactly one token refresh and one retry; any further 401
    is reported as :class:`AuthenticationFailed`.
    """

    def __init__(
        self,
        lifecycle: TokenLifecycleManager,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.lifecycle = lifecycle
        self.settings = settings
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.settings.http_timeout) as client:
            yield client

    async def request(
        self, method: str, endpoint: str, json: Optional[Any] = None
    ) -> ApiResult:
        """Send one API call; returns ``(data, error)``."""
        response, error = await self._request_once(method, endpoint, json)
        if error is not None:
            return None, error

        if response.status_code == 401:
            lib_logger.info("Access token rejected, refreshing...")
            outcome = await self.lifecycle.refresh()
            if not outcome.success:
                lib_logger.error(f"Token refresh failed. {REAUTH_HINT}")
                return None, AuthenticationFailed(
                    f"Authentication failed: {outcome.error.message if outcome.error else 'refresh failed'}"
                )

            lib_logger.info("Token refreshed successfully, retrying request...")
            response, error = await self._request_once(method, endpoint, json)
            if error is not None:
                return None, error
            if response.status_code == 401:
                lib_logger.error(f"Request still unauthorized after token refresh. {REAUTH_HINT}")
                return None, AuthenticationFailed("Authentication failed")

        return self._interpret(response)

    async def _request_once(
        self, method: str, endpoint: str, body: Optional[Any] = None
    ) -> Tuple[Optional[httpx.Response], Optional[JiraTimeAuthError]]:
        token = self.lifecycle.get_access_token()
        tenant_id = self.lifecycle.get_tenant_id()
        if not token or not tenant_id:
            lib_logger.error("Not authenticated. Run 'jira-time auth' to authenticate.")
            return None, NotAuthenticated()

        url = f"{self.settings.api_base_url}/{tenant_id}{endpoint}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        lib_logger.debug(f"Making API request: {method.upper()} {url}")

        try:
            async with self._client() as client:
                response = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    json=body,
                    timeout=self.settings.http_timeout,
                )
        except httpx.HTTPError as e:
            lib_logger.error(f"API request failed: {e!r}")
            return None, NetworkError(f"API request failed: {e}")
        return response, None

    def _interpret(self, response: httpx.Response) -> ApiResult:
        if response.is_success:
            if not response.content:
                return None, None
            try:
                return response.json(), None
            except (json.JSONDecodeError, ValueError):
                lib_logger.error("Failed to parse JSON response")
                return None, None

        message = _describe_failure(response)
        lib_logger.error(message)
        return None, ApiRequestFailed(message, status_code=response.status_code)

    async def get_current_user(self) -> ApiResult:
        return await self.request("GET", "/rest/api/3/myself")
