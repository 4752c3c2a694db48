"""
Process-wide SQLAlchemy engine and session factory.

One engine per process, created by ``init_engine_from_url``.  PostgreSQL
runs at READ COMMITTED and the write paths take explicit row locks
(``SELECT ... FOR UPDATE``) where they need more.  SQLite is supported for
embedded use and tests: its writers queue on the database file lock, and
the driver's busy timeout makes a blocked writer wait rather than fail.

Sessions come from a factory with ``expire_on_commit=False`` so that the
info objects a service returns stay readable after the commit.  Each
thread takes its own session.
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from apparel_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    busy_timeout: float = 30.0,
) -> Engine:
    """
    Create (or replace) the process engine.

    ``busy_timeout`` applies to SQLite only; the pool settings to
    PostgreSQL only.
    """
    global _engine, _factory

    backend = make_url(database_url).get_backend_name()
    if backend == "sqlite":
        engine = create_engine(database_url, echo=echo, connect_args={"timeout": busy_timeout})
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    if _engine is not None:
        _engine.dispose()
    _engine = engine
    _factory = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": backend, "echo": echo})
    return engine


def _require_factory() -> sessionmaker[Session]:
    if _factory is None:
        raise RuntimeError("Database not initialised; call init_engine_from_url() first")
    return _factory


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Database not initialised; call init_engine_from_url() first")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    return _require_factory()


def get_session() -> Session:
    return _require_factory()()


def is_postgres() -> bool:
    return _engine is not None and _engine.dialect.name == "postgresql"


@contextmanager
def session_scope() -> Iterator[Session]:
    """Commit on success; roll back, log and re-raise on error."""
    with get_session() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise


def _metadata():
    # Deferred: the registry imports the models, which import this package.
    from apparel_kernel.db.base import Base
    from apparel_modules._orm_registry import import_all_orm_models

    import_all_orm_models()
    return Base.metadata


def create_tables() -> None:
    _metadata().create_all(get_engine())


def drop_tables() -> None:
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    global _engine, _factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _factory = None


atexit.register(reset_engine)
