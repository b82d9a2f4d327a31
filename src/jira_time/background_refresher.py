# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/jira_time/background_refresher.py

import asyncio
import logging
from typing import Optional

from .config import Settings
from .lifecycle import TokenLifecycleManager
from .types import RefreshOutcome

lib_logger = logging.getLogger("jira_time")


class BackgroundRefresher:
    """
    Periodically refreshes the token before the user needs it.

    Each start() bumps a generation counter; a tick from an older generation
    does nothing, so a stop/start cycle can never leave two loops refreshing.
    """

    def __init__(
        self,
        lifecycle: TokenLifecycleManager,
        settings: Settings,
        run_startup_check: bool = True,
    ):
        self.lifecycle = lifecycle
        self.settings = settings
        self.run_startup_check = run_startup_check
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def generation(self) -> int:
        return self._generation

    async def start(self) -> bool:
        """Start the refresh loop. Returns False when proactive refresh is off."""
        if not self.settings.token_refresh.proactive:
            lib_logger.debug("Proactive token refresh disabled; background refresher not started")
            return False
        if self.is_running:
            return True

        self._generation += 1
        self._task = asyncio.create_task(
            self._run(self._generation), name="jira-token-refresher"
        )
        lib_logger.debug(
            f"Background token refresher started (every {self.settings.token_refresh.background_interval}s)"
        )
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._generation += 1
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        lib_logger.debug("Background token refresher stopped")

    async def _run(self, generation: int) -> None:
        if self.run_startup_check:
            try:
                await self.lifecycle.validate_on_startup()
            except Exception as e:
                lib_logger.error(f"Startup token validation failed: {e}")

        interval = self.settings.token_refresh.background_interval
        while generation == self._generation:
            await asyncio.sleep(interval)
            await self.tick(generation)

    async def tick(self, generation: Optional[int] = None) -> Optional[RefreshOutcome]:
        """One check. Errors are logged here and never escape the loop."""
        if generation is not None and generation != self._generation:
            return None
        try:
            record = self.lifecycle.load_record()
            if record is None or not record.access_token or not record.refresh_token:
                return None
            return await self.lifecycle.refresh_if_needed()
        except Exception as e:
            lib_logger.error(f"Background token refresh check failed: {e}")
            return None
