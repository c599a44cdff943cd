"""Table-level storage helpers for the raw and processed databases.

Raw tables are appended to by the collectors; derived tables are always
replaced as a whole. A replace runs inside one transaction (drop, create,
load), so readers keep seeing the previous table until the commit. If the
write fails the frames are dumped to CSV under ``Config.DATA_DIR/backup`` and
a PersistenceError is raised.

Example:

    from cirquant.shared.db import create_db_engine, replace_table

    engine = create_db_engine("sqlite:///data/processed/cirquant.db")
    replace_table(engine, "circularity_indicators_2020", df)
"""

import logging
import re
from datetime import datetime
from pathlib import Path

import pandas as pd
from sqlalchemy import Engine, Table, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from cirquant.shared.config import Config
from cirquant.shared.db.engine import get_connection
from cirquant.shared.errors import PersistenceError

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_table_name(table_name: str) -> str:
    """Return the name unchanged if it is a plain SQL identifier.

    Raises:
        ValueError: For anything that would need quoting.
    """
    if not _TABLE_NAME.match(table_name or ""):
        raise ValueError(f"Invalid table name: {table_name!r}")
    return table_name


def table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(validate_table_name(table_name))


def list_tables(engine: Engine, prefix: str = "") -> list[str]:
    return sorted(name for name in inspect(engine).get_table_names() if name.startswith(prefix))


def read_table(engine: Engine, table_name: str, columns: list[str] | None = None) -> pd.DataFrame:
    """Read a whole table into a DataFrame."""
    validate_table_name(table_name)
    selected = ", ".join(f'"{validate_table_name(c)}"' for c in columns) if columns else "*"
    with engine.connect() as conn:
        return pd.read_sql(text(f'SELECT {selected} FROM "{table_name}"'), conn)


def append_table(engine: Engine, table_name: str, df: pd.DataFrame) -> int:
    """Append rows to a table, creating it if needed.

    Returns:
        Number of rows written.
    """
    validate_table_name(table_name)
    if df.empty:
        return 0
    with get_connection(engine) as conn:
        df.to_sql(table_name, conn, if_exists="append", index=False)
    logger.info("Appended %d rows to %s", len(df), table_name)
    return len(df)


def replace_table(
    engine: Engine,
    table_name: str,
    df: pd.DataFrame,
    schema: Table | None = None,
    backup_dir: Path | None = None,
) -> int:
    """Replace one table atomically. See ``replace_tables``."""
    return replace_tables(engine, {table_name: (df, schema)}, backup_dir=backup_dir)[table_name]


def replace_tables(
    engine: Engine,
    tables: dict[str, tuple[pd.DataFrame, Table | None]],
    backup_dir: Path | None = None,
) -> dict[str, int]:
    """Replace several tables in a single transaction.

    Args:
        engine: Destination engine.
        tables: Mapping of table name to (frame, optional typed schema). With
            a schema the table is created from it; otherwise pandas infers
            the column types.
        backup_dir: Where to dump CSVs on failure (default: DATA_DIR/backup).

    Returns:
        Rows written per table.

    Raises:
        PersistenceError: If the write failed; nothing was changed and the
            frames were dumped to CSV.
    """
    for name in tables:
        validate_table_name(name)

    written: dict[str, int] = {}
    try:
        with get_connection(engine) as conn:
            for name, (df, schema) in tables.items():
                conn.execute(text(f'DROP TABLE IF EXISTS "{name}"'))
                if schema is not None:
                    if schema.name != name:
                        raise ValueError(f"Schema for {schema.name!r} used for table {name!r}")
                    schema.create(conn)
                    columns = [c.name for c in schema.columns if c.name in df.columns]
                    df[columns].to_sql(name, conn, if_exists="append", index=False)
                else:
                    df.to_sql(name, conn, if_exists="replace", index=False)
                written[name] = len(df)
    except (SQLAlchemyError, OSError, ValueError) as e:
        failed = next((name for name in tables if name not in written), next(iter(tables)))
        logger.error("Failed to persist %s: %s", failed, e)
        backups = _write_backups(tables, backup_dir or Config.DATA_DIR / "backup")
        raise PersistenceError(failed, e, backups.get(failed)) from e

    for name, count in written.items():
        logger.info("Replaced table %s (%d rows)", name, count)
    return written


def _write_backups(
    tables: dict[str, tuple[pd.DataFrame, Table | None]], backup_dir: Path
) -> dict[str, Path]:
    """Dump every frame to ``<backup_dir>/<table>_<timestamp>.csv``.

    Returns the paths written; empty if the dump itself failed.
    """
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    paths: dict[str, Path] = {}
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
        for name, (df, _) in tables.items():
            path = backup_dir / f"{name}_{stamp}.csv"
            df.to_csv(path, index=False, encoding="utf-8")
            paths[name] = path
            logger.warning("Saved backup of %s to %s", name, path)
    except OSError as e:
        logger.error("Failed to write backup CSVs to %s: %s", backup_dir, e)
    return paths


def export_to_csv(engine: Engine, table_name: str, output_path: Path) -> Path:
    """Export a database table to a CSV file.

    Example:
        export_to_csv(engine, "circularity_indicators_2020", Path("indicators_2020.csv"))
    """
    df = read_table(engine, table_name)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=False, encoding="utf-8")
    logger.info("Exported %d rows from %s to %s", len(df), table_name, output_path)
    return output_path
