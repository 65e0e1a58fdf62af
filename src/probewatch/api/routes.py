"""Read-only REST API over devices, probes and their logs."""

from fastapi import APIRouter, Depends, Query

from probewatch.api.deps import get_store
from probewatch.liveness.models import Device, Event, Heartbeat, Probe, SpeedTest, StateRecord
from probewatch.liveness.store import LivenessStore

router = APIRouter(prefix="/api")

Limit = Query(default=100, ge=1, le=1000)


@router.get("/devices")
def list_devices(
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[Device]:
    return store.list_devices(limit=limit)


@router.get("/probes")
def list_probes(
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[Probe]:
    return store.list_probes(limit=limit)


@router.get("/probes/{probe_id}")
def probe_detail(
    probe_id: int,
    store: LivenessStore = Depends(get_store),
) -> dict[str, Probe | Device]:
    probe = store.get_probe(probe_id)
    return {"probe": probe, "device": store.get_device(probe.device_id)}


@router.get("/probes/{probe_id}/states")
def probe_states(
    probe_id: int,
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[StateRecord]:
    store.get_probe(probe_id)
    return store.list_states(probe_id=probe_id, limit=limit)


@router.get("/probes/{probe_id}/events")
def probe_events(
    probe_id: int,
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[Event]:
    store.get_probe(probe_id)
    return store.list_events(probe_id=probe_id, limit=limit)


# --- Logs ---


@router.get("/states")
def list_states(
    probe_id: int | None = None,
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[StateRecord]:
    return store.list_states(probe_id=probe_id, limit=limit)


@router.get("/events")
def list_events(
    probe_id: int | None = None,
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[Event]:
    return store.list_events(probe_id=probe_id, limit=limit)


@router.get("/heartbeats")
def list_heartbeats(
    probe_id: int | None = None,
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[Heartbeat]:
    return store.list_heartbeats(probe_id=probe_id, limit=limit)


@router.get("/speedtests")
def list_speedtests(
    probe_id: int | None = None,
    limit: int = Limit,
    store: LivenessStore = Depends(get_store),
) -> list[SpeedTest]:
    return store.list_speedtests(probe_id=probe_id, limit=limit)
