"""Heartbeat and speed-test report ingestion."""

import logging
from dataclasses import dataclass
from datetime import timedelta

from probewatch.alerts.notifier import EventNotifier
from probewatch.clock import Clock, SystemClock
from probewatch.liveness.errors import StorageError
from probewatch.liveness.machine import ProbeStateMachine
from probewatch.liveness.models import Heartbeat, Probe, SpeedTest
from probewatch.liveness.store import LivenessStore
from probewatch.registry.devices import enroll_probe

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatReport:
    mac_address: str
    wan_ip: str | None
    lan_ip: str | None
    server: str | None
    success: bool
    error: str | None
    latency: float | None
    next_heartbeat_minutes: float


@dataclass
class SpeedTestReport:
    mac_address: str
    wan_ip: str | None
    lan_ip: str | None
    server: str | None
    success: bool
    error: str | None
    latency: float | None
    down: float | None
    up: float | None


class ReportIngestor:
    """Records probe reports and feeds heartbeats into the state machine."""

    def __init__(
        self,
        store: LivenessStore,
        machine: ProbeStateMachine,
        notifier: EventNotifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.machine = machine
        self.notifier = notifier
        self.clock = clock or SystemClock()

    def _enroll(self, mac_address: str, wan_ip: str | None, lan_ip: str | None) -> int:
        probe = enroll_probe(
            self.store,
            mac_address,
            wan_ip=wan_ip,
            lan_ip=lan_ip,
            notifier=self.notifier,
            clock=self.clock,
        )
        if probe.id is None:
            raise StorageError(f"Probe for {mac_address} was not persisted")
        return probe.id

    def heartbeat(self, report: HeartbeatReport) -> Probe:
        """Store the heartbeat, push the probe's deadline out and mark it Up.

        Raises:
            ValueError: the announced interval does not yield a valid deadline.
        """
        now = self.clock.now()
        try:
            next_deadline = now + timedelta(minutes=report.next_heartbeat_minutes)
        except OverflowError:
            raise ValueError(
                f"Next heartbeat of {report.next_heartbeat_minutes} minutes is out of range"
            ) from None
        probe_id = self._enroll(report.mac_address, report.wan_ip, report.lan_ip)

        self.store.add_heartbeat(
            Heartbeat(
                probe_id=probe_id,
                timestamp=now,
                wan_ip=report.wan_ip,
                lan_ip=report.lan_ip,
                server=report.server,
                success=report.success,
                error=report.error,
                latency=report.latency,
            )
        )
        self.machine.record_heartbeat(
            probe_id,
            next_deadline=next_deadline,
            observed_at=now,
            wan_ip=report.wan_ip,
            lan_ip=report.lan_ip,
        )
        return self.store.get_probe(probe_id)

    def speedtest(self, report: SpeedTestReport) -> Probe:
        """Store the speed test. Probe state is not affected."""
        probe_id = self._enroll(report.mac_address, report.wan_ip, report.lan_ip)

        self.store.add_speedtest(
            SpeedTest(
                probe_id=probe_id,
                timestamp=self.clock.now(),
                wan_ip=report.wan_ip,
                lan_ip=report.lan_ip,
                server=report.server,
                success=report.success,
                error=report.error,
                latency=report.latency,
                down=report.down,
                up=report.up,
            )
        )
        logger.debug("Speed test stored for probe %s", probe_id)
        return self.store.get_probe(probe_id)
