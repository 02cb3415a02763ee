"""Async tick worker - feeds one engine from a bounded queue."""
import asyncio
from typing import Callable, List, Optional, Union

import structlog

from tickloop.core.engine import TickResult, TradingEngine
from tickloop.core.models import PriceTick
from tickloop.market.orderbook import MarketSnapshot

logger = structlog.get_logger(__name__)


class TickWorker:
    """
    Single consumer task per symbol.

    Ticks are processed strictly in arrival order. When the queue is full the
    oldest queued tick is dropped so the engine always catches up to the
    latest market state instead of falling behind.
    """

    def __init__(
        self,
        engine: TradingEngine,
        queue_size: Optional[int] = None,
        on_result: Optional[Callable[[TickResult], None]] = None,
    ):
        self.engine = engine
        self.queue_size = queue_size or engine.config.market.tick_queue_size
        self.on_result = on_result
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)

        self.processed = 0
        self.dropped = 0
        self.errors = 0

        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start consuming the queue."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("worker.started", symbol=self.engine.symbol, queue_size=self.queue_size)

    async def stop(self, drain: bool = True):
        """Stop the worker, optionally after processing everything queued."""
        if not self._running:
            return
        if drain:
            await self.queue.join()

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info(
            "worker.stopped",
            symbol=self.engine.symbol,
            processed=self.processed,
            dropped=self.dropped,
        )

    def submit(self, item: Union[MarketSnapshot, PriceTick]) -> None:
        """Queue a tick without blocking; drops the oldest when full."""
        snapshot = item if isinstance(item, MarketSnapshot) else MarketSnapshot(tick=item)

        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.queue.task_done()
                self.dropped += 1
                logger.debug("worker.tick_dropped", symbol=self.engine.symbol, dropped=self.dropped)
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(snapshot)

    def submit_many(self, items: List[Union[MarketSnapshot, PriceTick]]) -> None:
        for item in items:
            self.submit(item)

    async def join(self):
        """Wait until every queued tick has been processed."""
        await self.queue.join()

    async def _run(self):
        while self._running:
            snapshot: MarketSnapshot = await self.queue.get()
            try:
                result = self.engine.process_tick(
                    snapshot.tick,
                    imbalance=snapshot.imbalance,
                    liquidity_score=snapshot.liquidity_score,
                    spread_quality=snapshot.spread_quality,
                )
                self.processed += 1
                if self.on_result is not None:
                    self.on_result(result)
            except Exception as e:
                self.errors += 1
                logger.error(
                    "worker.tick_error",
                    symbol=self.engine.symbol,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self.queue.task_done()
