"""Periodic expiry of abandoned payments."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs ``PaymentOrchestrator.expire_stale`` every ``interval_seconds``."""

    def __init__(self, orchestrator: PaymentOrchestrator, interval_seconds: float = 60.0):
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="planpay-expiry-sweeper")
        logger.info("Expiry sweeper started (interval=%ss)", self._interval)

    async def run_once(self) -> int:
        return await self._orchestrator.expire_stale()

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Expiry sweep failed")
            await asyncio.sleep(self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")
