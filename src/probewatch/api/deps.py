"""FastAPI dependencies resolving the components built in the app lifespan."""

from fastapi import Request

from probewatch.config import Settings
from probewatch.liveness.ingest import ReportIngestor
from probewatch.liveness.store import LivenessStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> LivenessStore:
    return request.app.state.store


def get_ingestor(request: Request) -> ReportIngestor:
    return request.app.state.ingestor
