"""Probe liveness models: devices, probes, state history, events, reports."""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


# Timestamps are stored as naive UTC. Columns are declared with a plain
# DateTime so the mapped type does not demand tz-aware values.


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class ProbeStatus(enum.StrEnum):
    new = "New"
    up = "Up"
    down = "Down"


class EventType(enum.StrEnum):
    created = "probe.created"
    linked = "probe.linked"
    up = "probe.up"
    down = "probe.down"

    @classmethod
    def for_status(cls, status: ProbeStatus) -> "EventType":
        return cls("probe." + status.value.lower())


class Device(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    mac_address: str = Field(unique=True, index=True)
    vendor: str | None = None
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime)


class Probe(SQLModel, table=True):
    """A monitored agent running on a device.

    ``state`` is a denormalized copy of the open State row named by
    ``current_state_id``; both are only changed together.
    """

    id: int | None = Field(default=None, primary_key=True)
    device_id: int = Field(index=True, foreign_key="device.id")
    state: ProbeStatus = ProbeStatus.new
    current_state_id: int | None = None
    latest_heartbeat_at: datetime | None = Field(default=None, sa_type=DateTime)
    next_heartbeat_at: datetime | None = Field(default=None, index=True, sa_type=DateTime)
    wan_ip: str | None = None
    lan_ip: str | None = None
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime)


class StateRecord(SQLModel, table=True):
    """Interval during which a probe held one state. Open while ended_at is None."""

    __tablename__ = "state"

    id: int | None = Field(default=None, primary_key=True)
    probe_id: int = Field(index=True, foreign_key="probe.id")
    state: ProbeStatus
    started_at: datetime = Field(sa_type=DateTime)
    ended_at: datetime | None = Field(default=None, sa_type=DateTime)


class Event(SQLModel, table=True):
    """Append-only audit entry for probe lifecycle and state changes."""

    id: int | None = Field(default=None, primary_key=True)
    probe_id: int = Field(index=True, foreign_key="probe.id")
    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow, sa_type=DateTime)


class Heartbeat(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    probe_id: int = Field(index=True, foreign_key="probe.id")
    timestamp: datetime = Field(sa_type=DateTime)
    wan_ip: str | None = None
    lan_ip: str | None = None
    server: str | None = None
    success: bool = False
    error: str | None = None
    latency: float | None = None


class SpeedTest(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    probe_id: int = Field(index=True, foreign_key="probe.id")
    timestamp: datetime = Field(sa_type=DateTime)
    wan_ip: str | None = None
    lan_ip: str | None = None
    server: str | None = None
    success: bool = False
    error: str | None = None
    latency: float | None = None
    down: float | None = None
    up: float | None = None


@dataclass
class EmittedEvent:
    """A committed Event together with the probe as it was at commit time."""

    event: Event
    probe: dict[str, Any] = field(default_factory=dict)
