"""Probe report endpoints: heartbeats and speed tests.

Field names follow what deployed probes send ("MAC Address", "Next
heartbeat", ...); snake_case names are accepted as well. Bodies may be
form-encoded (what deployed probes post) or JSON.
"""

import secrets
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from probewatch.api.deps import get_ingestor, get_settings
from probewatch.config import Settings
from probewatch.liveness.ingest import HeartbeatReport, ReportIngestor, SpeedTestReport
from probewatch.liveness.models import Probe, ProbeStatus
from probewatch.registry.devices import is_valid_mac, normalize_mac

router = APIRouter()

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

# Longest heartbeat interval a probe may announce: 30 days
MAX_HEARTBEAT_MINUTES = 30 * 24 * 60


class _ReportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mac_address: str = Field(alias="MAC Address")
    api_key: str | None = Field(default=None, alias="API key")
    wan_ip: str | None = Field(default=None, alias="WAN IP")
    lan_ip: str | None = Field(default=None, alias="LAN IP")
    success: bool = Field(alias="Success")
    error: str | None = Field(default=None, alias="Error")
    latency: float | None = Field(default=None, alias="Latency", allow_inf_nan=False)

    @field_validator("mac_address")
    @classmethod
    def valid_mac(cls, v: str) -> str:
        if not is_valid_mac(v):
            raise ValueError(f"invalid MAC address {v!r}")
        return normalize_mac(v)

    @field_validator("latency", "error", "wan_ip", "lan_ip", mode="before")
    @classmethod
    def blank_is_none(cls, v: object) -> object:
        # Probes send empty strings for fields they could not measure
        if isinstance(v, str) and not v.strip():
            return None
        return v


class HeartbeatRequest(_ReportRequest):
    server: str | None = Field(default=None, alias="Ping server")
    next_heartbeat: float = Field(
        alias="Next heartbeat",
        gt=0,
        le=MAX_HEARTBEAT_MINUTES,
        allow_inf_nan=False,
    )  # minutes


class SpeedTestRequest(_ReportRequest):
    server: str | None = Field(default=None, alias="Speedtest server")
    down: float | None = Field(default=None, alias="Down", allow_inf_nan=False)
    up: float | None = Field(default=None, alias="Up", allow_inf_nan=False)

    @field_validator("down", "up", mode="before")
    @classmethod
    def blank_rate_is_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v


_Request = TypeVar("_Request", bound=_ReportRequest)


def report_body(model: type[_Request]) -> Callable[[Request], Awaitable[_Request]]:
    """Dependency parsing a report from a form-encoded or JSON body.

    Malformed bodies are reported like any other validation failure (422).
    """

    async def parse(request: Request) -> _Request:
        content_type = request.headers.get("content-type", "")
        data: Any
        if content_type.startswith(_FORM_TYPES):
            form = await request.form()
            data = dict(form.items())
        else:
            try:
                data = await request.json()
            except ValueError:
                raise RequestValidationError(
                    [{"type": "json_invalid", "loc": ("body",), "msg": "Invalid JSON body"}]
                ) from None
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise RequestValidationError(exc.errors(include_url=False)) from None

    return parse


def _check_api_key(provided: str | None, cfg: Settings) -> None:
    if cfg.api_key is None:
        return
    if provided is None or not secrets.compare_digest(provided, cfg.api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")


def _report_response(probe: Probe) -> dict[str, int | str | None]:
    return {"status": "ok", "probe_id": probe.id, "state": ProbeStatus(probe.state).value}


@router.post("/heartbeat")
def post_heartbeat(
    report: HeartbeatRequest = Depends(report_body(HeartbeatRequest)),
    cfg: Settings = Depends(get_settings),
    ingestor: ReportIngestor = Depends(get_ingestor),
) -> dict[str, int | str | None]:
    _check_api_key(report.api_key, cfg)
    probe = ingestor.heartbeat(
        HeartbeatReport(
            mac_address=report.mac_address,
            wan_ip=report.wan_ip,
            lan_ip=report.lan_ip,
            server=report.server,
            success=report.success,
            error=report.error,
            latency=report.latency,
            next_heartbeat_minutes=report.next_heartbeat,
        )
    )
    return _report_response(probe)


@router.post("/speedtest")
def post_speedtest(
    report: SpeedTestRequest = Depends(report_body(SpeedTestRequest)),
    cfg: Settings = Depends(get_settings),
    ingestor: ReportIngestor = Depends(get_ingestor),
) -> dict[str, int | str | None]:
    _check_api_key(report.api_key, cfg)
    probe = ingestor.speedtest(
        SpeedTestReport(
            mac_address=report.mac_address,
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
    return _report_response(probe)
