"""Timeout sweeper: marks probes Down once their promised heartbeat is overdue."""

import asyncio
import logging
from dataclasses import dataclass, field

from probewatch.clock import Clock, PeriodicTask, SystemClock
from probewatch.liveness.machine import ProbeStateMachine
from probewatch.liveness.models import ProbeStatus
from probewatch.liveness.store import LivenessStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one sweep tick."""

    overdue: list[int] = field(default_factory=list)
    marked_down: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)  # changed state or deadline meanwhile
    failed: dict[int, Exception] = field(default_factory=dict)


class TimeoutSweeper:
    """Periodically transitions overdue Up probes to Down."""

    def __init__(
        self,
        store: LivenessStore,
        machine: ProbeStateMachine,
        clock: Clock | None = None,
        interval: int = 60,
    ) -> None:
        self.store = store
        self.machine = machine
        self.clock = clock or SystemClock()
        self.interval = interval
        self._ticker = PeriodicTask(self._tick, interval, name="timeout-sweeper")

    def sweep_once(self) -> SweepResult:
        """Run one scan. Per-probe failures are collected, not raised.

        Raises:
            StorageError: the overdue query itself failed.
        """
        now = self.clock.now()
        result = SweepResult(overdue=self.store.find_overdue(now))

        for probe_id in result.overdue:
            try:
                event = self.machine.transition(probe_id, ProbeStatus.down, overdue_at=now)
            except Exception as e:
                result.failed[probe_id] = e
                continue
            if event is None:
                result.skipped.append(probe_id)
            else:
                result.marked_down.append(probe_id)

        return result

    async def start(self) -> None:
        await self._ticker.start()

    async def stop(self) -> None:
        """Stop scheduling ticks; a tick already running is allowed to finish."""
        await self._ticker.stop()

    async def _tick(self) -> None:
        try:
            result = await asyncio.to_thread(self.sweep_once)
        except Exception:
            logger.exception("Timeout sweep failed")
            return

        for probe_id, error in result.failed.items():
            logger.error("Could not mark probe %s down: %s", probe_id, error)
        if result.overdue:
            logger.info(
                "Sweep: %d overdue, %d marked down, %d skipped, %d failed",
                len(result.overdue),
                len(result.marked_down),
                len(result.skipped),
                len(result.failed),
            )
