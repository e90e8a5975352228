"""
Orchestration Loop

Drives the trade state machine on a fixed period. Each iteration is
isolated: an error is logged and the unchanged state is retried on the
next period. Only an exhausted retry budget ends the loop.
"""

import asyncio
import logging
from typing import Optional

from .resilience import RetryExhaustedError, SleepFn
from .state_store import StateStore, TradeRecord
from .trade_engine import TradeEngine

logger = logging.getLogger("perp_arb.orchestrator")


class ArbitrageLoop:
    """
    Main arbitrage loop.

    On start the persisted record is loaded and evaluated immediately, so
    a trade left open by a previous run is monitored right away.
    """

    def __init__(
        self,
        engine: TradeEngine,
        store: StateStore,
        period: float = 60.0,
        sleep: SleepFn = asyncio.sleep,
    ):
        """
        Initialize the loop.

        Args:
            engine: Trade state machine
            store: Persistence for the trade record
            period: Seconds between iterations
            sleep: Awaitable sleep function (injectable for tests)
        """
        self.engine = engine
        self.store = store
        self.period = period
        self._sleep = sleep
        self._running = False
        self.record: Optional[TradeRecord] = None
        self.iterations = 0
        self.failed_iterations = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self, max_iterations: Optional[int] = None) -> None:
        """
        Run until stopped.

        Args:
            max_iterations: Stop after this many iterations (None = forever)

        Raises:
            RetryExhaustedError: Fatal; a venue call failed on every attempt.
        """
        self.record = self.store.load()
        self._running = True

        logger.info("enter loop (period=%.0fs, open trade=%s)", self.period, self.record is not None)

        try:
            while self._running:
                await self.run_once()

                if max_iterations is not None and self.iterations >= max_iterations:
                    break
                if not self._running:
                    break

                await self._sleep(self.period)
        finally:
            self._running = False
            logger.info(
                "Loop stopped after %d iterations (%d failed)",
                self.iterations,
                self.failed_iterations,
            )

    async def run_once(self) -> Optional[TradeRecord]:
        """
        Run a single iteration.

        The new record is saved before it is adopted, so a failed save
        leaves the in-memory state as it was. A close keeps stepping within
        the iteration until Idle is saved; the fee goes out only after that.

        Returns:
            The record after the iteration.
        """
        self.iterations += 1
        try:
            while True:
                previous = self.record
                self._commit(await self.engine.step(previous))
                if self.record is None:
                    if previous is not None and previous.fee_due is not None:
                        await self.engine.settle_fee(previous)
                    break
                if not self.record.closing or self.record == previous:
                    break
        except RetryExhaustedError:
            logger.critical("too many errors, exiting")
            raise
        except Exception:
            self.failed_iterations += 1
            logger.exception("uncaught error in iteration %d", self.iterations)

        return self.record

    def _commit(self, new_record: Optional[TradeRecord]) -> None:
        if new_record != self.record:
            self.store.save(new_record)
            self.record = new_record

    def stop(self) -> None:
        """Request the loop to exit after the current iteration."""
        if self._running:
            logger.info("Stop requested")
        self._running = False
