from collections.abc import Iterator
from contextlib import contextmanager
import logging

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool

from cloudbox.config import DB_CONNECT_ARGS, DB_URL
from cloudbox.models import FileRecord, SubscriptionRecord  # noqa: F401 - register tables

logger = logging.getLogger("cloudbox.db")

engine = create_engine(
    DB_URL,
    connect_args=DB_CONNECT_ARGS,
    poolclass=QueuePool,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=3600,
    echo=False,
)


def init_db(bind=None) -> None:
    SQLModel.metadata.create_all(bind or engine)
    logger.info("event=db_ready url=%s", (bind or engine).url.render_as_string(hide_password=True))


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


session_scope = contextmanager(get_session)


def ensure_connection(bind=None) -> bool:
    """
    Verify that the database connection is alive.
    Used by the health endpoint and before the orphan sweep.
    """
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False
