"""probewatch application entrypoint."""

import base64
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from probewatch.alerts.notifier import EventNotifier
from probewatch.api.reports import router as reports_router
from probewatch.api.routes import router as api_router
from probewatch.clock import Clock, SystemClock
from probewatch.config import Settings, settings
from probewatch.database import create_db_engine, init_db
from probewatch.liveness.errors import LivenessError
from probewatch.liveness.ingest import ReportIngestor
from probewatch.liveness.machine import ProbeStateMachine
from probewatch.liveness.store import LivenessStore
from probewatch.liveness.sweeper import TimeoutSweeper

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

# Paths that probes and load balancers reach without Basic auth
_AUTH_EXEMPT = ("/health", "/heartbeat", "/speedtest")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'"
        return response


def _basic_credentials(header: str) -> tuple[str, str] | None:
    """Decode an ``Authorization: Basic`` header into (username, password)."""
    scheme, _, encoded = header.partition(" ")
    if scheme != "Basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """HTTP Basic Authentication for the read API.

    Health checks and probe reports are exempt; reports carry their own
    API key.
    """

    def __init__(self, app, username: str, password: str):
        super().__init__(app)
        self.username = username
        self.password = password

    async def dispatch(self, request, call_next):
        if request.url.path in _AUTH_EXEMPT or self._authorized(request):
            return await call_next(request)
        return Response(
            content="Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": 'Basic realm="probewatch"'},
        )

    def _authorized(self, request: Request) -> bool:
        credentials = _basic_credentials(request.headers.get("Authorization", ""))
        if credentials is None:
            return False
        username, password = credentials
        # Constant-time, both always compared
        username_ok = secrets.compare_digest(username.encode(), self.username.encode())
        password_ok = secrets.compare_digest(password.encode(), self.password.encode())
        return username_ok and password_ok


async def _liveness_error_handler(request: Request, exc: LivenessError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"type": type(exc).__name__, "message": str(exc)},
    )


def create_app(
    cfg: Settings | None = None,
    engine: Engine | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the application.

    The store, state machine, notifier and sweeper are constructed in the
    lifespan from ``cfg`` (or the given ``engine``) and torn down on exit.
    """
    cfg = cfg or settings
    clock = clock or SystemClock()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db_engine = engine or create_db_engine(cfg)
        init_db(db_engine)
        logger.info("Database initialized")

        store = LivenessStore(db_engine)
        notifier = EventNotifier(
            webhook_url=cfg.webhook_url,
            timeout=cfg.webhook_timeout,
            max_queue=cfg.notify_queue_size,
        )
        machine = ProbeStateMachine(
            store,
            clock=clock,
            notifier=notifier,
            max_attempts=cfg.transition_max_attempts,
            backoff=cfg.transition_backoff,
        )
        sweeper = TimeoutSweeper(store, machine, clock=clock, interval=cfg.sweep_interval)

        app.state.settings = cfg
        app.state.store = store
        app.state.notifier = notifier
        app.state.machine = machine
        app.state.sweeper = sweeper
        app.state.ingestor = ReportIngestor(store, machine, notifier=notifier, clock=clock)

        await notifier.start()
        if cfg.sweeper_enabled:
            await sweeper.start()
        else:
            logger.info("Timeout sweeper disabled")

        yield

        await sweeper.stop()
        await notifier.stop()
        if engine is None:
            db_engine.dispose()

    app = FastAPI(
        title="probewatch",
        description="Liveness tracking for remote network probes",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(LivenessError, _liveness_error_handler)
    app.add_middleware(SecurityHeadersMiddleware)

    # Conditionally add BasicAuth if password is configured
    if cfg.auth_password:
        app.add_middleware(BasicAuthMiddleware, username=cfg.auth_username, password=cfg.auth_password)
        logger.info("HTTP Basic Auth enabled")

    app.include_router(reports_router)
    app.include_router(api_router)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


def main() -> None:
    import uvicorn

    logger.info("Starting probewatch on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
