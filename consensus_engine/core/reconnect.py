"""Bounded broker reconnection."""

import asyncio
import logging
from typing import Awaitable, Callable

from consensus_engine.core.events import BrokerDisconnected, BrokerReconnected, EventBus
from consensus_engine.execution.broker import BrokerAdapter

logger = logging.getLogger(__name__)


class ReconnectSupervisor:
    """Retries ``broker.initialize()`` at a fixed interval.

    Stops on the first success or after ``max_retries`` attempts; it never
    retries indefinitely. Concurrent callers share one reconnect run.
    """

    def __init__(
        self,
        broker: BrokerAdapter,
        interval_seconds: float = 30.0,
        max_retries: int = 5,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.broker = broker
        self.interval_seconds = interval_seconds
        self.max_retries = max_retries
        self.event_bus = event_bus
        self._sleep = sleep
        self._task: asyncio.Task[bool] | None = None
        self.last_attempts = 0

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    async def reconnect(self) -> bool:
        """
        Reconnect the broker.

        Returns:
            True once initialize() succeeds, False when retries are exhausted
        """
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> bool:
        last_error = "initialize() returned False"
        for attempt in range(1, self.max_retries + 1):
            self.last_attempts = attempt
            try:
                ok = await self.broker.initialize()
            except Exception as e:
                ok = False
                last_error = f"{type(e).__name__}: {e}"

            if ok:
                logger.info(f"🔌 Broker reconnected after {attempt} attempt(s)")
                if self.event_bus is not None:
                    self.event_bus.publish(BrokerReconnected(attempts=attempt))
                return True

            logger.warning(f"Reconnect attempt {attempt}/{self.max_retries} failed: {last_error}")
            if attempt < self.max_retries:
                await self._sleep(self.interval_seconds)

        logger.error(f"🔌 Broker disconnected: {self.max_retries} reconnect attempts exhausted")
        if self.event_bus is not None:
            self.event_bus.publish(BrokerDisconnected(attempts=self.max_retries, reason=last_error))
        return False
