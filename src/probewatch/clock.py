"""Time source and fixed-period scheduling."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


def as_naive_utc(value: datetime) -> datetime:
    """Convert to naive UTC, the form datetimes take in SQLite.

    Naive inputs are assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class Clock(ABC):
    """Source of the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)


class PeriodicTask:
    """Runs an async callback every ``interval`` seconds on the event loop.

    The first run happens immediately on start. Stopping prevents further
    runs but lets a run that is already in progress finish.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval: float,
        name: str = "periodic",
    ) -> None:
        self.callback = callback
        self.interval = interval
        self.name = name
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("Started %s (interval=%ss)", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Stopped %s", self.name)

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.callback()
            except Exception:
                logger.exception("%s run failed", self.name)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                pass
