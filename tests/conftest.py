"""Shared test fixtures."""

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import probewatch.liveness.models  # noqa: F401
import probewatch.registry.devices as devices_module
from probewatch.clock import Clock
from probewatch.config import Settings
from probewatch.liveness.machine import ProbeStateMachine
from probewatch.liveness.models import Probe, ProbeStatus
from probewatch.liveness.store import LivenessStore
from probewatch.main import create_app


class FakeClock(Clock):
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 15, 10, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def no_vendor_lookup(monkeypatch):
    """The OUI database is downloaded on first use; keep tests offline."""
    monkeypatch.setattr(devices_module, "lookup_vendor", lambda mac: None)


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(engine) -> LivenessStore:
    return LivenessStore(engine)


@pytest.fixture
def machine(store, clock) -> ProbeStateMachine:
    return ProbeStateMachine(store, clock=clock, backoff=0)


@pytest.fixture
def make_probe(store, machine, clock) -> Callable[..., Probe]:
    """Enroll a probe and drive it to the requested state.

    Up/Down probes get a heartbeat at the current clock time with the given
    deadline (default: one minute later).
    """
    counter = iter(range(1, 1000))

    def _make(
        state: ProbeStatus = ProbeStatus.up,
        deadline: datetime | None = None,
        mac: str | None = None,
    ) -> Probe:
        mac = mac or f"08:00:27:00:00:{next(counter):02X}"
        probe, _ = store.enroll(mac, now=clock.now())
        assert probe.id is not None
        if state != ProbeStatus.new:
            machine.record_heartbeat(
                probe.id,
                next_deadline=deadline or clock.now() + timedelta(minutes=1),
                observed_at=clock.now(),
            )
        if state == ProbeStatus.down:
            machine.transition(probe.id, ProbeStatus.down)
        return store.get_probe(probe.id)

    return _make


@pytest.fixture
def test_settings() -> Settings:
    return Settings(sweeper_enabled=False, webhook_url=None, api_key=None, auth_password=None)


@pytest.fixture
def client(engine, test_settings, clock) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to the in-memory engine and the fake clock."""
    app = create_app(cfg=test_settings, engine=engine, clock=clock)
    with TestClient(app) as c:
        yield c
