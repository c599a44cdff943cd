"""Parameterised SQL against the raw / processed databases, with timeouts.

Each query runs on its own connection in a helper thread; if it does not
finish within the timeout the driver is asked to interrupt it and
QueryTimeoutError is raised. The caller's year then fails; it is not retried.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

import pandas as pd
from sqlalchemy import Connection, Engine, TextClause, bindparam, text

from cirquant.harmonization.codes import denormalize_for_display, normalize_product_code
from cirquant.ingestion.preprocessors.extractor import RawTableSchema
from cirquant.shared.config import Config
from cirquant.shared.db.storage import table_exists, validate_table_name
from cirquant.shared.errors import QueryTimeoutError

logger = logging.getLogger(__name__)


class QueryEngine:
    """Run SQL text and return DataFrames.

    Args:
        engine: Database to query.
        timeout: Seconds before a query is abandoned (default: QUERY_TIMEOUT).
    """

    def __init__(self, engine: Engine, timeout: float | None = None) -> None:
        self.engine = engine
        self.timeout = timeout if timeout is not None else Config.QUERY_TIMEOUT

    def query(
        self,
        sql: str | TextClause,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> pd.DataFrame:
        """Execute ``sql`` with bound ``params``.

        Raises:
            QueryTimeoutError: The query ran longer than ``timeout`` seconds.
        """
        statement = text(sql) if isinstance(sql, str) else sql
        limit = timeout if timeout is not None else self.timeout

        conn = self.engine.connect()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="query")
        future = pool.submit(pd.read_sql, statement, conn, params=params)
        try:
            return future.result(timeout=limit)
        except FutureTimeoutError as e:
            _interrupt(conn)
            raise QueryTimeoutError(
                f"Query exceeded {limit:g}s: {_summary(statement)}"
            ) from e
        finally:
            # The connection goes back once the worker is done with it
            future.add_done_callback(lambda _: conn.close())
            pool.shutdown(wait=False)

    def table_exists(self, table_name: str) -> bool:
        return table_exists(self.engine, table_name)

    def read_raw(
        self,
        schema: RawTableSchema,
        year: int,
        product_codes: list[str] | None = None,
    ) -> pd.DataFrame | None:
        """Rows of one raw table, restricted to ``product_codes`` when given.

        Codes match in both dense and dotted form. Returns None when the
        table does not exist.
        """
        table_name = validate_table_name(schema.table_name(year))
        if not self.table_exists(table_name):
            return None

        product_col = validate_table_name(schema.product_col)
        if product_codes is None:
            return self.query(f'SELECT * FROM "{table_name}"')

        codes = sorted(
            {normalize_product_code(c) for c in product_codes}
            | {denormalize_for_display(c) for c in product_codes}
        )
        if not codes:
            return self.query(f'SELECT * FROM "{table_name}" WHERE 1 = 0')

        statement = text(
            f'SELECT * FROM "{table_name}" WHERE "{product_col}" IN :codes'
        ).bindparams(bindparam("codes", expanding=True))
        df = self.query(statement, {"codes": codes})
        logger.debug("Read %d rows from %s", len(df), table_name)
        return df


def _interrupt(conn: Connection) -> None:
    # sqlite3 exposes interrupt(), psycopg2 exposes cancel()
    try:
        dbapi_conn = conn.connection.dbapi_connection
    except AttributeError:
        return
    for method in ("interrupt", "cancel"):
        handler = getattr(dbapi_conn, method, None)
        if handler is not None:
            handler()
            return


def _summary(statement: TextClause, width: int = 120) -> str:
    sql = " ".join(str(statement).split())
    return sql if len(sql) <= width else sql[: width - 3] + "..."
