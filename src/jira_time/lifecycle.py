# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/lifecycle.py
"""
Token lifecycle manager.

Owns the state machine over the persisted credential record:

    UNAUTHENTICATED -> VALID -> EXPIRED -> REFRESHING -> VALID
                                                      -> REFRESH_FAILED (transient)
                                                      -> UNAUTHENTICATED (terminal)

The store is the single source of truth; nothing here caches tokens between
calls, so foreground requests, the background refresher and other processes
all observe the same record.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from rich.console import Console
from rich.panel import Panel

from .config import Settings
from .errors import (
    REAUTH_HINT,
    JiraTimeAuthError,
    NotAuthenticated,
    RefreshFailed,
    TokenExchangeFailed,
)
from .oauth.token_client import TokenExchangeClient
from .storage import CredentialStore
from .types import (
    CURRENT_SCHEMA_VERSION,
    AuthState,
    CredentialRecord,
    RefreshErrorInfo,
    RefreshOutcome,
    TokenResponse,
    schema_version_of,
)

lib_logger = logging.getLogger("jira_time")

console = Console()

SECONDS_PER_DAY = 86400

# Backoff for automatic refresh triggers after a failure
BACKOFF_BASE_SECONDS = 30
BACKOFF_MAX_SECONDS = 300


def migrate_record(data: Dict[str, Any], now: float) -> Dict[str, Any]:
    """
    Bring a persisted record up to ``CURRENT_SCHEMA_VERSION``.

    Pure and idempotent: an already-current record is returned unchanged (the
    same object). Missing lifecycle timestamps are backfilled with ``now`` so
    age-based checks behave deterministically right after an upgrade. The
    version is never lowered. Raises ValueError for a malformed version.
    """
    version = schema_version_of(data)
    if version >= CURRENT_SCHEMA_VERSION:
        return data

    migrated = dict(data)
    if version < 1:
        if migrated.get("refresh_token_issued_at") is None:
            migrated["refresh_token_issued_at"] = now
        if migrated.get("last_refresh_at") is None:
            migrated["last_refresh_at"] = now
        if "tenant_id" not in migrated and "cloud_id" in migrated:
            migrated["tenant_id"] = migrated.pop("cloud_id")
        migrated["schema_version"] = 1
    return migrated


class TokenLifecycleManager:
    """
    Hands out access tokens and keeps them fresh.

    Construct one per process with injected store, exchange client and clock.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        token_client: TokenExchangeClient,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.token_client = token_client
        self._clock = clock

        # Single in-flight refresh shared by every caller of the same epoch
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_task_epoch = 0
        self._background_tasks: Set[asyncio.Task] = set()

        # Bumped by logout / new authorization; a refresh started under an
        # older epoch must not write its result.
        self._epoch = 0

        # [BACKOFF TRACKING] applies to automatic triggers only
        self._refresh_failures = 0
        self._next_refresh_after = 0.0

    def now(self) -> float:
        return self._clock()

    # =========================================================================
    # RECORD ACCESS
    # =========================================================================

    def migrate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return migrate_record(data, self.now())

    def load_record(self) -> Optional[CredentialRecord]:
        """Read the record, migrating and re-persisting older schemas once."""
        data = self.store.load()
        if data is None:
            return None

        try:
            migrated = self.migrate(data)
            record = CredentialRecord.from_dict(migrated)
        except (TypeError, ValueError) as e:
            # Unusable record reads as logged out
            lib_logger.error(
                f"Ignoring malformed credential record in '{self.store.file_path}': {e}. {REAUTH_HINT}"
            )
            return None

        if migrated is not data:
            lib_logger.info(
                f"Migrating credential record from v{schema_version_of(data)} "
                f"to v{migrated['schema_version']}"
            )
            self.store.save(migrated)
        return record

    def save_record(self, record: CredentialRecord) -> bool:
        return self.store.save(record.to_dict())

    def store_authorization(self, token: TokenResponse, tenant_id: str) -> bool:
        """Persist a freshly authorized token set as a brand-new record."""
        now = self.now()
        record = CredentialRecord(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=now + token.expires_in,
            tenant_id=tenant_id,
            refresh_token_issued_at=now,
            last_refresh_at=now,
        )
        self._epoch += 1
        self._reset_backoff()
        if token.refresh_token is None:
            lib_logger.warning(
                "Token response had no refresh token; add the offline_access scope "
                "to avoid re-authenticating every hour."
            )
        return self.save_record(record)

    # =========================================================================
    # QUERIES
    # =========================================================================

    @property
    def is_refreshing(self) -> bool:
        return (
            self._refresh_task is not None
            and not self._refresh_task.done()
            and self._refresh_task_epoch == self._epoch
        )

    def get_access_token(self) -> Optional[str]:
        """
        Return the access token, or None if missing or expired.

        Never blocks on a refresh. When the token is expired, close to expiry,
        or the last refresh is too old, a background refresh is started so a
        later call is likely to find a fresh token.
        """
        record = self.load_record()
        if record is None or not record.access_token:
            return None

        now = self.now()
        reason = self.needs_refresh(record, now)
        if reason:
            self._schedule_background_refresh(reason)

        if record.is_expired(now):
            return None
        return record.access_token

    def get_tenant_id(self) -> Optional[str]:
        record = self.load_record()
        return record.tenant_id if record else None

    def is_authenticated(self) -> bool:
        """Both a non-expired token and a tenant are required."""
        return self.get_access_token() is not None and self.get_tenant_id() is not None

    def needs_refresh(
        self, record: CredentialRecord, now: Optional[float] = None
    ) -> Optional[str]:
        """Return why a refresh is warranted, or None."""
        if not record.refresh_token:
            return None
        now = self.now() if now is None else now
        config = self.settings.token_refresh

        if record.is_expired(now):
            return "access token expired"

        remaining = record.expires_at - now
        if remaining < config.refresh_before_expiry:
            return f"access token expires in {int(remaining)}s"

        if record.last_refresh_at is not None:
            days_since_refresh = (now - record.last_refresh_at) / SECONDS_PER_DAY
            if days_since_refresh > config.max_refresh_age_days:
                return f"last refresh was {days_since_refresh:.0f} days ago"
        return None

    def state(self) -> AuthState:
        if self.is_refreshing:
            return AuthState.REFRESHING

        record = self.load_record()
        if record is None or not record.access_token or not record.tenant_id:
            return AuthState.UNAUTHENTICATED

        if not record.is_expired(self.now()):
            return AuthState.VALID

        error = record.last_refresh_error
        if not record.refresh_token or (error is not None and error.terminal):
            return AuthState.UNAUTHENTICATED
        if error is not None:
            return AuthState.REFRESH_FAILED
        return AuthState.EXPIRED

    # =========================================================================
    # REFRESH
    # =========================================================================

    async def refresh(self) -> RefreshOutcome:
        """
        Exchange the refresh token for a new access token.

        Concurrent callers share one in-flight exchange. Failures are reported
        in the outcome and recorded on the record; existing tokens are kept.
        """
        task = self._refresh_task
        if task is None or task.done() or self._refresh_task_epoch != self._epoch:
            if task is not None and not task.done():
                # Superseded by a newer login; its result will be discarded
                self._background_tasks.add(task)
                task.add_done_callback(self._background_tasks.discard)
            self._refresh_task_epoch = self._epoch
            task = asyncio.create_task(self._perform_refresh(self._epoch))
            self._refresh_task = task
        return await asyncio.shield(task)

    async def refresh_if_needed(self) -> Optional[RefreshOutcome]:
        """Refresh when :meth:`needs_refresh` says so and no backoff is active."""
        record = self.load_record()
        if record is None:
            return None
        reason = self.needs_refresh(record)
        if not reason:
            return None
        if self._in_backoff():
            lib_logger.debug(f"Skipping refresh ({reason}): backing off after failure")
            return None
        lib_logger.debug(f"Token refresh triggered: {reason}")
        return await self.refresh()

    async def _perform_refresh(self, epoch: int) -> RefreshOutcome:
        record = self.load_record()
        if record is None or not record.refresh_token:
            lib_logger.error("No refresh token available. Please authenticate again.")
            return RefreshOutcome(
                success=False,
                error=RefreshFailed(
                    "No refresh token available",
                    terminal=True,
                    cause=NotAuthenticated(),
                ),
            )

        used_refresh_token = record.refresh_token
        lib_logger.debug("Refreshing OAuth access token...")
        token, error = await self.token_client.exchange_refresh_token(used_refresh_token)
        now = self.now()

        if epoch != self._epoch:
            lib_logger.info("Discarding refresh result: credentials changed meanwhile")
            return RefreshOutcome(
                success=False,
                error=RefreshFailed("Credentials changed during refresh"),
            )

        if error is not None:
            return self._handle_refresh_failure(used_refresh_token, error, now)

        # Every token field comes from this one response; only the tenant is
        # carried over from the stored record.
        latest = self.load_record() or record
        rotated = bool(token.refresh_token) and token.refresh_token != used_refresh_token
        refreshed = CredentialRecord(
            access_token=token.access_token,
            refresh_token=token.refresh_token or used_refresh_token,
            expires_at=now + token.expires_in,
            tenant_id=latest.tenant_id,
            refresh_token_issued_at=(
                now if rotated or record.refresh_token_issued_at is None
                else record.refresh_token_issued_at
            ),
            last_refresh_at=now,
            last_refresh_error=None,
        )

        if not self.save_record(refreshed):
            # The provider may already have invalidated the old refresh token
            self._register_backoff()
            return RefreshOutcome(
                success=False,
                error=RefreshFailed(
                    "Failed to persist refreshed credentials; refresh will be retried"
                ),
            )

        self._reset_backoff()
        lib_logger.info("Successfully refreshed OAuth access token.")
        return RefreshOutcome(success=True, rotated=rotated)

    def _handle_refresh_failure(
        self, used_refresh_token: str, error: JiraTimeAuthError, now: float
    ) -> RefreshOutcome:
        terminal = isinstance(error, TokenExchangeFailed) and error.terminal
        failure = RefreshFailed(
            f"Token refresh failed: {error.message}", terminal=terminal, cause=error
        )

        # Only annotate the record whose refresh token we actually used
        latest = self.load_record()
        if latest is not None and latest.refresh_token == used_refresh_token:
            latest.last_refresh_error = RefreshErrorInfo(
                timestamp=now,
                message=error.message,
                status_code=getattr(error, "status_code", None),
                error_code=getattr(error, "error_code", None),
                terminal=terminal,
            )
            self.save_record(latest)

        self._register_backoff()
        if terminal:
            self._announce_reauth_required(error)
        else:
            lib_logger.warning(f"{failure.message} (temporary failure, will retry)")
        return RefreshOutcome(success=False, error=failure)

    def _announce_reauth_required(self, error: JiraTimeAuthError) -> None:
        console.print(
            Panel(
                f"[bold red]Reason:[/bold red] {error.message}\n\n"
                f"[yellow]The stored refresh token is no longer accepted.[/yellow]\n"
                f"[yellow]{REAUTH_HINT}[/yellow]",
                title="[bold red]⚠ JIRA RE-AUTHENTICATION REQUIRED[/bold red]",
                border_style="red",
            )
        )
        lib_logger.error(
            f"REFRESH TOKEN REJECTED | Reason: {error.message} | Action: {REAUTH_HINT}"
        )

    def _schedule_background_refresh(self, reason: str) -> None:
        if self.is_refreshing or self._in_backoff():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            lib_logger.debug(f"No event loop running; not scheduling refresh ({reason})")
            return

        lib_logger.debug(f"Scheduling background token refresh: {reason}")
        task = loop.create_task(self._background_refresh())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _background_refresh(self) -> None:
        outcome = await self.refresh()
        if outcome.success:
            lib_logger.debug("Background token refresh successful")
        else:
            lib_logger.warning(f"Background token refresh failed: {outcome.error}")

    def _in_backoff(self) -> bool:
        return self.now() < self._next_refresh_after

    def _register_backoff(self) -> None:
        self._refresh_failures += 1
        backoff_seconds = min(
            BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2**self._refresh_failures)
        )
        self._next_refresh_after = self.now() + backoff_seconds
        lib_logger.debug(f"Setting refresh backoff: {backoff_seconds}s")

    def _reset_backoff(self) -> None:
        self._refresh_failures = 0
        self._next_refresh_after = 0.0

    # =========================================================================
    # SESSION
    # =========================================================================

    async def validate_on_startup(self) -> Optional[RefreshOutcome]:
        """Refresh an expired token and warn about an ageing refresh token."""
        record = self.load_record()
        if record is None or not record.access_token:
            return None

        now = self.now()
        outcome = None
        if record.is_expired(now) and record.refresh_token:
            lib_logger.info("Access token expired, refreshing...")
            outcome = await self.refresh()
            if outcome.success:
                lib_logger.info("Token refreshed successfully on startup")
            else:
                lib_logger.warning(
                    f"Failed to refresh token on startup. {REAUTH_HINT}"
                )

        if record.refresh_token_issued_at is not None:
            days_old = (now - record.refresh_token_issued_at) / SECONDS_PER_DAY
            if days_old > self.settings.token_refresh.refresh_token_warn_age_days:
                lib_logger.warning(
                    f"Jira OAuth refresh token is {int(days_old)} days old. "
                    f"Re-authentication may be needed soon."
                )
        return outcome

    def logout(self) -> bool:
        """Delete the credential record. Tokens are not revoked remotely."""
        self._epoch += 1
        self._reset_backoff()
        try:
            removed = self.store.delete()
        except OSError as e:
            lib_logger.error(f"Failed to delete credential file: {e}")
            return False
        if removed:
            lib_logger.info("Authentication data cleared")
        return True

    async def aclose(self) -> None:
        """Cancel background refreshes; used on shutdown."""
        tasks = list(self._background_tasks)
        if self._refresh_task is not None and not self._refresh_task.done():
            tasks.append(self._refresh_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def diagnostics(self) -> Dict[str, Any]:
        """Snapshot of the token state for status displays."""
        now = self.now()
        record = self.load_record()
        config = self.settings.token_refresh
        info: Dict[str, Any] = {
            "state": self.state().value,
            "auth_file": str(self.store.file_path),
            "now": now,
            "has_record": record is not None,
        }
        if record is None:
            return info

        info.update(
            {
                "token_prefix": (record.access_token or "")[:20] or None,
                "has_refresh_token": bool(record.refresh_token),
                "tenant_id": record.tenant_id,
                "expires_at": record.expires_at,
                "expires_in_seconds": (
                    int(record.expires_at - now) if record.expires_at is not None else None
                ),
                "expired": record.is_expired(now),
                "last_refresh_at": record.last_refresh_at,
                "refresh_token_issued_at": record.refresh_token_issued_at,
                "schema_version": record.schema_version,
                "last_refresh_error": (
                    record.last_refresh_error.to_dict()
                    if record.last_refresh_error
                    else None
                ),
                "refresh_needed": self.needs_refresh(record, now),
            }
        )
        if record.refresh_token_issued_at is not None:
            age_days = (now - record.refresh_token_issued_at) / SECONDS_PER_DAY
            info["refresh_token_age_days"] = round(age_days, 1)
            info["refresh_token_days_remaining"] = round(
                config.refresh_token_lifetime_days - age_days, 1
            )
        return info
