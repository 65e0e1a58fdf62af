"""Database engine construction and schema setup."""

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from probewatch.config import Settings


def create_db_engine(cfg: Settings) -> Engine:
    """Build the SQLite engine for the configured database file.

    ``timeout`` bounds how long a writer waits on a locked database before
    the driver raises, so no store call blocks indefinitely.
    """
    cfg.db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{cfg.db_path}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": cfg.storage_timeout},
    )


def init_db(engine: Engine) -> None:
    """Create all tables."""
    # Import models to register them with SQLModel before create_all()
    import probewatch.liveness.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
