"""Liveness store: probe lookups, conditional transitions, append-only logs.

All SQLAlchemy errors are surfaced as ``StorageError``. Each public method
runs in its own session and transaction; a failed method leaves no partial
writes behind.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from probewatch.clock import as_naive_utc
from probewatch.liveness.errors import ConflictError, NotFoundError, StorageError
from probewatch.liveness.models import (
    Device,
    EmittedEvent,
    Event,
    EventType,
    Heartbeat,
    Probe,
    ProbeStatus,
    SpeedTest,
    StateRecord,
)

logger = logging.getLogger(__name__)

_Record = TypeVar("_Record", Heartbeat, SpeedTest)


class LivenessStore:
    """Durable storage for probes, their state history and event log."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"Liveness store operation failed: {exc}") from exc

    # --- Probes ---

    def get_probe(self, probe_id: int) -> Probe:
        with self._session() as session:
            probe = session.get(Probe, probe_id)
        if probe is None:
            raise NotFoundError(f"Probe {probe_id} not found")
        return probe

    def get_device(self, device_id: int) -> Device:
        with self._session() as session:
            device = session.get(Device, device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")
        return device

    def update_heartbeat(
        self,
        probe_id: int,
        observed_at: datetime,
        next_deadline: datetime,
        wan_ip: str | None = None,
        lan_ip: str | None = None,
    ) -> Probe:
        """Record heartbeat bookkeeping. Never touches state or current_state_id."""
        with self._session() as session:
            probe = session.get(Probe, probe_id)
            if probe is None:
                raise NotFoundError(f"Probe {probe_id} not found")
            probe.latest_heartbeat_at = as_naive_utc(observed_at)
            probe.next_heartbeat_at = as_naive_utc(next_deadline)
            if wan_ip is not None:
                probe.wan_ip = wan_ip
            if lan_ip is not None:
                probe.lan_ip = lan_ip
            session.add(probe)
            session.commit()
            session.refresh(probe)
            return probe

    def find_overdue(self, now: datetime) -> list[int]:
        """Ids of Up probes whose next heartbeat deadline is before ``now``."""
        cutoff = as_naive_utc(now)
        stmt = (
            select(Probe.id)
            .where(Probe.state == ProbeStatus.up)
            .where(Probe.next_heartbeat_at.is_not(None))  # type: ignore[union-attr]
            .where(Probe.next_heartbeat_at < cutoff)  # type: ignore[operator]
            .order_by(Probe.next_heartbeat_at)
        )
        with self._session() as session:
            return [probe_id for probe_id in session.exec(stmt).all() if probe_id is not None]

    # --- Transitions ---

    def commit_transition(
        self,
        probe_id: int,
        expected_state_id: int | None,
        target: ProbeStatus,
        now: datetime,
        overdue_at: datetime | None = None,
    ) -> EmittedEvent:
        """Atomically move a probe to ``target``.

        In one transaction: append the Event, close the open State row,
        open a new one, then swap the probe's pointer, conditional on
        ``current_state_id`` still being ``expected_state_id`` (and, with
        ``overdue_at``, on the deadline still having passed). Raises
        ``ConflictError`` and writes nothing if the condition fails.
        """
        ts = as_naive_utc(now)
        with self._session() as session:
            event = Event(probe_id=probe_id, type=EventType.for_status(target), timestamp=ts)
            session.add(event)
            session.flush()

            if expected_state_id is not None:
                closed = session.exec(
                    update(StateRecord)  # type: ignore[call-overload]
                    .where(StateRecord.id == expected_state_id)
                    .where(StateRecord.ended_at.is_(None))  # type: ignore[union-attr]
                    .values(ended_at=ts)
                )
                if closed.rowcount != 1:
                    raise ConflictError(f"State {expected_state_id} of probe {probe_id} already closed")

            record = StateRecord(probe_id=probe_id, state=target, started_at=ts)
            session.add(record)
            session.flush()

            swap = (
                update(Probe)
                .where(Probe.id == probe_id)
                .values(state=target, current_state_id=record.id)
            )
            if expected_state_id is None:
                swap = swap.where(Probe.current_state_id.is_(None))  # type: ignore[union-attr]
            else:
                swap = swap.where(Probe.current_state_id == expected_state_id)
            if overdue_at is not None:
                swap = swap.where(
                    Probe.next_heartbeat_at.is_not(None),  # type: ignore[union-attr]
                    Probe.next_heartbeat_at < as_naive_utc(overdue_at),  # type: ignore[operator]
                )
            swapped = session.exec(swap)  # type: ignore[call-overload]
            if swapped.rowcount != 1:
                raise ConflictError(f"Probe {probe_id} changed since it was read")

            probe = session.get(Probe, probe_id)
            if probe is None:
                raise NotFoundError(f"Probe {probe_id} not found")
            snapshot = self._snapshot(session, probe)
            session.commit()
            return EmittedEvent(event=event, probe=snapshot)

    # --- Enrollment ---

    def enroll(
        self,
        mac_address: str,
        now: datetime,
        vendor: str | None = None,
        wan_ip: str | None = None,
        lan_ip: str | None = None,
    ) -> tuple[Probe, list[EmittedEvent]]:
        """Return the active probe for a MAC, creating device and probe if needed.

        A new probe starts in New with an open New State row and the
        ``probe.created`` and ``probe.linked`` events. The returned list holds
        those events; it is empty when the probe already existed.
        """
        ts = as_naive_utc(now)
        with self._session() as session:
            device = self._device_by_mac(session, mac_address)
            if device is not None:
                probe = self._active_probe(session, device)
                if probe is not None:
                    return probe, []

            try:
                if device is None:
                    device = Device(mac_address=mac_address, vendor=vendor, created_at=ts)
                    session.add(device)
                    session.flush()

                probe = Probe(
                    device_id=device.id,
                    state=ProbeStatus.new,
                    wan_ip=wan_ip,
                    lan_ip=lan_ip,
                    created_at=ts,
                )
                session.add(probe)
                session.flush()

                events = [
                    Event(probe_id=probe.id, type=EventType.created, timestamp=ts),
                    Event(probe_id=probe.id, type=EventType.linked, timestamp=ts),
                ]
                record = StateRecord(probe_id=probe.id, state=ProbeStatus.new, started_at=ts)
                session.add_all([*events, record])
                session.flush()

                probe.current_state_id = record.id
                session.add(probe)
                session.flush()
                snapshot = self._snapshot(session, probe)
                session.commit()
            except IntegrityError:
                # Another writer enrolled the same MAC first
                session.rollback()
                device = self._device_by_mac(session, mac_address)
                existing = self._active_probe(session, device) if device else None
                if existing is None:
                    raise
                return existing, []

            logger.info("Enrolled probe %s for device %s", probe.id, mac_address)
            return probe, [EmittedEvent(event=e, probe=snapshot) for e in events]

    def find_device(self, mac_address: str) -> Device | None:
        with self._session() as session:
            return self._device_by_mac(session, mac_address)

    # --- Reports ---

    def add_heartbeat(self, heartbeat: Heartbeat) -> Heartbeat:
        return self._append(heartbeat)

    def add_speedtest(self, speedtest: SpeedTest) -> SpeedTest:
        return self._append(speedtest)

    def _append(self, record: _Record) -> _Record:
        record.timestamp = as_naive_utc(record.timestamp)
        with self._session() as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    # --- Listings ---

    def list_devices(self, limit: int = 100) -> list[Device]:
        stmt = select(Device).order_by(Device.id).limit(limit)  # type: ignore[arg-type]
        with self._session() as session:
            return list(session.exec(stmt).all())

    def list_probes(self, limit: int = 100) -> list[Probe]:
        stmt = select(Probe).order_by(Probe.id).limit(limit)  # type: ignore[arg-type]
        with self._session() as session:
            return list(session.exec(stmt).all())

    def list_states(self, probe_id: int | None = None, limit: int = 100) -> list[StateRecord]:
        """State history, oldest interval first."""
        stmt = select(StateRecord)
        if probe_id is not None:
            stmt = stmt.where(StateRecord.probe_id == probe_id)
        stmt = stmt.order_by(StateRecord.started_at, StateRecord.id).limit(limit)  # type: ignore[arg-type]
        with self._session() as session:
            return list(session.exec(stmt).all())

    def list_events(self, probe_id: int | None = None, limit: int = 100) -> list[Event]:
        """Event log, newest first."""
        stmt = select(Event)
        if probe_id is not None:
            stmt = stmt.where(Event.probe_id == probe_id)
        stmt = stmt.order_by(Event.timestamp.desc(), Event.id.desc()).limit(limit)  # type: ignore[attr-defined,union-attr]
        with self._session() as session:
            return list(session.exec(stmt).all())

    def list_heartbeats(self, probe_id: int | None = None, limit: int = 100) -> list[Heartbeat]:
        stmt = select(Heartbeat)
        if probe_id is not None:
            stmt = stmt.where(Heartbeat.probe_id == probe_id)
        stmt = stmt.order_by(Heartbeat.timestamp.desc(), Heartbeat.id.desc()).limit(limit)  # type: ignore[attr-defined,union-attr]
        with self._session() as session:
            return list(session.exec(stmt).all())

    def list_speedtests(self, probe_id: int | None = None, limit: int = 100) -> list[SpeedTest]:
        stmt = select(SpeedTest)
        if probe_id is not None:
            stmt = stmt.where(SpeedTest.probe_id == probe_id)
        stmt = stmt.order_by(SpeedTest.timestamp.desc(), SpeedTest.id.desc()).limit(limit)  # type: ignore[attr-defined,union-attr]
        with self._session() as session:
            return list(session.exec(stmt).all())

    # --- Helpers ---

    @staticmethod
    def _device_by_mac(session: Session, mac_address: str) -> Device | None:
        return session.exec(select(Device).where(Device.mac_address == mac_address)).first()

    @staticmethod
    def _active_probe(session: Session, device: Device) -> Probe | None:
        stmt = (
            select(Probe)
            .where(Probe.device_id == device.id)
            .order_by(Probe.id.desc())  # type: ignore[union-attr]
        )
        return session.exec(stmt).first()

    @staticmethod
    def _snapshot(session: Session, probe: Probe) -> dict[str, Any]:
        device = session.get(Device, probe.device_id)
        return {
            "id": probe.id,
            "mac_address": device.mac_address if device else None,
            "state": ProbeStatus(probe.state).value,
            "current_state_id": probe.current_state_id,
            "wan_ip": probe.wan_ip,
            "lan_ip": probe.lan_ip,
            "latest_heartbeat_at": probe.latest_heartbeat_at,
            "next_heartbeat_at": probe.next_heartbeat_at,
        }
