# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/oauth/callback_server.py

import asyncio
import logging
from typing import Callable, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from ..errors import AuthorizationFailed, ListenerBindFailed
from ..types import CallbackResult

lib_logger = logging.getLogger("jira_time")

SUCCESS_PAGE = (
    "<!DOCTYPE html>\r\n"
    "<html>\r\n"
    "<head><title>Authentication Successful</title></head>\r\n"
    '<body style="font-family: sans-serif; text-align: center; padding: 50px;">\r\n'
    "<h1>&#10003; Authentication Successful!</h1>\r\n"
    "<p>You can close this window and return to your editor.</p>\r\n"
    "</body>\r\n"
    "</html>\r\n"
)

FAILURE_PAGE = (
    "<!DOCTYPE html>\r\n"
    "<html>\r\n"
    "<head><title>Authentication Failed</title></head>\r\n"
    '<body style="font-family: sans-serif; text-align: center; padding: 50px;">\r\n'
    "<h1>&#10007; Authentication Failed</h1>\r\n"
    "<p>Invalid callback parameters. Please try again.</p>\r\n"
    "</body>\r\n"
    "</html>\r\n"
)


def parse_callback_request(
    request_line: str, callback_path: str = "/callback"
) -> Tuple[Optional[CallbackResult], Optional[str]]:
    """
    Extract ``code`` and ``state`` from an HTTP request line.

    Parameter order in the query string does not matter. Returns
    ``(result, None)`` on success or ``(None, reason)`` when the request is
    not a usable authorization redirect.
    """
    parts = request_line.strip().split(" ")
    if len(parts) < 2 or parts[0].upper() != "GET":
        return None, "not a GET request"

    target = urlparse(parts[1])
    if target.path != callback_path:
        return None, f"unexpected path {target.path!r}"

    query = parse_qs(target.query)
    if "error" in query:
        error = query["error"][0]
        description = query.get("error_description", [""])[0]
        return None, f"{error}: {description}" if description else error

    code = query.get("code", [""])[0]
    state = query.get("state", [""])[0]
    if not code or not state:
        return None, "missing code or state"
    return CallbackResult(code=code, state=state), None


def _build_response(status: int, page: str) -> bytes:
    reason = "OK" if status == 200 else "Bad Request"
    body = page.encode("utf-8")
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


class OAuthCallbackServer:
    """
    Single-shot HTTP listener for the OAuth authorization redirect.

    Accepts exactly one connection, answers it with a static page and closes
    the listening socket whatever the request contained. Only a parseable
    ``code``/``state`` pair reaches ``on_result``.
    """

    def __init__(
        self,
        port: int,
        host: str = "127.0.0.1",
        callback_path: str = "/callback",
        read_timeout: float = 10.0,
    ):
        self.host = host
        self.callback_path = callback_path
        self.read_timeout = read_timeout
        self._requested_port = port
        self._server: Optional[asyncio.AbstractServer] = None
        self._result_future: Optional[asyncio.Future] = None
        self._on_result: Optional[Callable[[CallbackResult], None]] = None
        self._accepted = False
        self._closed = False

    @property
    def port(self) -> int:
        """The bound port (differs from the requested one when that was 0)."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._requested_port

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(
        self, on_result: Optional[Callable[[CallbackResult], None]] = None
    ) -> None:
        """Bind and start listening. Raises ListenerBindFailed if the port is taken."""
        if self._server is not None or self._closed:
            raise RuntimeError("OAuth callback server can only be started once")

        loop = asyncio.get_running_loop()
        self._result_future = loop.create_future()
        # Mark any exception as retrieved; nobody may be waiting on it
        self._result_future.add_done_callback(
            lambda f: f.cancelled() or f.exception()
        )
        self._on_result = on_result

        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self._requested_port
            )
        except OSError as e:
            lib_logger.error(
                f"Failed to start OAuth callback server on port {self._requested_port}: {e}"
            )
            raise ListenerBindFailed(self._requested_port, str(e)) from e

        lib_logger.debug(f"OAuth callback server started on port {self.port}")

    async def stop(self) -> None:
        """Close early. Never invokes ``on_result``; safe to call twice."""
        self._closed = True
        self._close_listener()
        if self._server is not None:
            await self._server.wait_closed()
        if self._result_future is not None and not self._result_future.done():
            self._result_future.set_exception(
                AuthorizationFailed("OAuth callback server closed before a redirect arrived")
            )
        lib_logger.debug("OAuth callback server stopped")

    async def wait_for_callback(self, timeout: Optional[float] = None) -> CallbackResult:
        """Wait for the captured redirect. Raises TimeoutError or AuthorizationFailed."""
        if self._result_future is None:
            raise RuntimeError("OAuth callback server has not been started")
        try:
            return await asyncio.wait_for(
                asyncio.shield(self._result_future), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise asyncio.TimeoutError("Timeout waiting for OAuth callback")

    def _close_listener(self) -> None:
        if self._server is not None and self._server.is_serving():
            self._server.close()

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._accepted or self._closed:
            writer.close()
            return
        self._accepted = True
        # One connection only: stop accepting before doing anything else
        self._close_listener()

        result, reason = None, "empty request"
        try:
            request_line = await asyncio.wait_for(
                reader.readline(), timeout=self.read_timeout
            )
            while True:
                line = await asyncio.wait_for(
                    reader.readline(), timeout=self.read_timeout
                )
                if line in (b"\r\n", b"\n", b""):
                    break

            result, reason = parse_callback_request(
                request_line.decode("latin-1"), self.callback_path
            )
            if result is not None:
                writer.write(_build_response(200, SUCCESS_PAGE))
            else:
                lib_logger.warning(f"Rejected OAuth callback: {reason}")
                writer.write(_build_response(400, FAILURE_PAGE))
            await writer.drain()
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            lib_logger.warning(f"Error in OAuth callback handler: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        self._resolve(result, reason)

    def _resolve(self, result: Optional[CallbackResult], reason: Optional[str]) -> None:
        if self._closed or self._result_future is None or self._result_future.done():
            return

        if result is None:
            self._result_future.set_exception(
                AuthorizationFailed(f"Invalid OAuth callback ({reason})")
            )
            return

        self._result_future.set_result(result)
        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception as e:
                lib_logger.error(f"OAuth callback result handler failed: {e}")
