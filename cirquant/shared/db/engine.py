from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Connection, Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool

from cirquant.shared.config import Config

# Seconds a SQLite writer waits for another year's transaction to finish
SQLITE_LOCK_TIMEOUT = 60


def create_db_engine(url: str | None = None, echo: bool = False) -> Engine:
    """Create an engine for the raw or processed database.

    SQLite files get their parent directory created and are opened for use
    from worker threads; server databases use a bounded connection pool.
    """
    url = url or Config.PROCESSED_DATABASE_URL
    parsed = make_url(url)

    if parsed.get_backend_name() == "sqlite":
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_LOCK_TIMEOUT},
            echo=echo,
        )
        _enable_sqlite_transactional_ddl(engine)
        return engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=Config.MAX_WORKERS + 1,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        echo=echo,
    )


@contextmanager
def get_connection(engine: Engine) -> Iterator[Connection]:
    """Connection with a transaction committed on success, rolled back on error."""
    conn = engine.connect()
    trans = conn.begin()
    try:
        yield conn
        trans.commit()
    except Exception:
        trans.rollback()
        raise
    finally:
        conn.close()


def _enable_sqlite_transactional_ddl(engine: Engine) -> None:
    # pysqlite commits implicitly before DDL; take over BEGIN so a table
    # replace (DROP + CREATE + INSERT) rolls back as one unit.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")
