"""Typed extraction of observations from raw long tables.

Raw tables store one fact per row with a string ``value`` column that may hold
a number, a unit label or a confidentiality marker. ``parse_value`` turns that
string into one of three tagged results:

- ``Numeric``: a finite number (zero included);
- ``Sentinel``: a recognised missing/confidential marker (":C", "-", "NaN"...);
- ``Unparseable``: anything else.

Sentinels become missing observations (``value=NaN, missing=True``).
Unparseable strings are logged and dropped. Neither is ever coerced to zero.
"""

import logging
import math
from dataclasses import dataclass, field

import pandas as pd

from cirquant.harmonization.codes import normalize_country_code, normalize_product_code
from cirquant.shared.errors import AuditEventKind, AuditLog

logger = logging.getLogger(__name__)

SENTINELS: dict[str, str] = {
    "": "empty",
    ":": "not available",
    ":c": "confidential",
    ":C": "confidential",
    "-": "not applicable",
    "null": "null",
    "NULL": "null",
    "None": "null",
    "NaN": "not a number",
    "nan": "not a number",
    "Inf": "infinite",
    "-Inf": "infinite",
    "inf": "infinite",
    "-inf": "infinite",
}

EXTRACT_COLUMNS = ["product_code", "country_code", "year", "value", "missing"]


@dataclass(frozen=True)
class Numeric:
    value: float


@dataclass(frozen=True)
class Sentinel:
    reason: str


@dataclass(frozen=True)
class Unparseable:
    raw: str


ParsedValue = Numeric | Sentinel | Unparseable


def parse_value(raw: object) -> ParsedValue:
    """Classify one raw ``value`` cell.

    >>> parse_value("1 234.5")
    Numeric(value=1234.5)
    >>> parse_value(":C")
    Sentinel(reason='confidential')
    """
    if raw is None:
        return Sentinel("null")
    if isinstance(raw, bool):
        return Unparseable(str(raw))
    if isinstance(raw, (int, float)):
        number = float(raw)
        if math.isnan(number):
            return Sentinel("not a number")
        if math.isinf(number):
            return Sentinel("infinite")
        return Numeric(number)

    text = str(raw).strip()
    if text in SENTINELS:
        return Sentinel(SENTINELS[text])

    # Eurostat flags trail the number ("1234 e", "56p"); so do thousands spaces.
    candidate = text.replace(" ", "").replace(",", "")
    candidate = candidate.rstrip("bcdefnpsuz")
    try:
        number = float(candidate)
    except ValueError:
        return Unparseable(text)
    if not math.isfinite(number):
        return Sentinel("infinite")
    return Numeric(number)


@dataclass(frozen=True)
class RawTableSchema:
    """Column layout of one raw dataset table."""

    source: str
    dataset_id: str
    product_col: str
    reporter_col: str
    indicator_col: str = "indicators"
    value_col: str = "value"
    time_col: str = "time"
    dimension_cols: tuple[str, ...] = field(default_factory=tuple)

    def table_name(self, year: int) -> str:
        """Raw table name, e.g. ``prodcom_ds_056121_2020``."""
        dataset = self.dataset_id.lower().replace("-", "_")
        return f"{self.source}_{dataset}_{year}"


PRODCOM_SCHEMA = RawTableSchema(
    source="prodcom",
    dataset_id="ds-056121",
    product_col="prccode",
    reporter_col="decl",
)

COMEXT_SCHEMA = RawTableSchema(
    source="comext",
    dataset_id="ds-059341",
    product_col="product",
    reporter_col="reporter",
    dimension_cols=("flow", "partner"),
)


def _check_columns(raw_table: pd.DataFrame, schema: RawTableSchema) -> None:
    required = [
        schema.product_col,
        schema.reporter_col,
        schema.indicator_col,
        schema.value_col,
        *schema.dimension_cols,
    ]
    missing = [c for c in required if c not in raw_table.columns]
    if missing:
        raise ValueError(f"Raw table for {schema.dataset_id} is missing columns: {missing}")


def _key_frame(rows: pd.DataFrame, schema: RawTableSchema, year: int | None) -> pd.DataFrame:
    out = pd.DataFrame(index=rows.index)
    out["product_code"] = rows[schema.product_col].map(normalize_product_code)
    out["country_code"] = rows[schema.reporter_col].map(normalize_country_code)
    if year is not None:
        out["year"] = year
    elif schema.time_col in rows.columns:
        out["year"] = pd.to_numeric(rows[schema.time_col], errors="coerce").astype("Int64")
    else:
        raise ValueError(f"Raw table for {schema.dataset_id} has no '{schema.time_col}' column")
    for col in schema.dimension_cols:
        out[col] = rows[col].astype(str).str.strip()
    return out


def extract_indicator(
    raw_table: pd.DataFrame,
    indicator_code: str,
    schema: RawTableSchema,
    year: int | None = None,
    audit: AuditLog | None = None,
) -> pd.DataFrame:
    """Pull one numeric indicator out of a raw long table.

    Args:
        raw_table: Raw rows as stored by the collectors.
        indicator_code: e.g. ``PRODQNT`` or ``QUANTITY_KG``.
        schema: Column layout of the raw table.
        year: Year to stamp on the rows (default: the table's time column).
        audit: Optional audit log for missing and unparseable values.

    Returns:
        DataFrame with ``product_code, country_code, year, value, missing``
        plus the schema's dimension columns. Sentinel rows are kept with
        ``value=NaN, missing=True``; unparseable rows are dropped.
    """
    _check_columns(raw_table, schema)
    rows = raw_table[raw_table[schema.indicator_col].astype(str).str.strip() == indicator_code]
    columns = EXTRACT_COLUMNS + list(schema.dimension_cols)
    if rows.empty:
        return pd.DataFrame(columns=columns)

    out = _key_frame(rows, schema, year)
    parsed = rows[schema.value_col].map(parse_value)

    out["value"] = parsed.map(lambda p: p.value if isinstance(p, Numeric) else math.nan).astype("float64")
    out["missing"] = parsed.map(lambda p: isinstance(p, Sentinel))

    bad = parsed.map(lambda p: isinstance(p, Unparseable))
    if bad.any():
        samples = rows.loc[bad, schema.value_col].astype(str).unique()[:5]
        logger.warning(
            "Dropped %d unparseable %s values from %s (e.g. %s)",
            int(bad.sum()),
            indicator_code,
            schema.dataset_id,
            ", ".join(repr(s) for s in samples),
        )
        if audit is not None:
            audit.record(
                AuditEventKind.UNPARSEABLE_VALUE,
                f"{indicator_code}: {', '.join(repr(s) for s in samples)}",
                count=int(bad.sum()),
            )

    n_missing = int(out["missing"].sum())
    if n_missing and audit is not None:
        audit.record(AuditEventKind.MISSING_VALUE, f"{indicator_code}: {n_missing} sentinel values", n_missing)

    return out.loc[~bad, columns].reset_index(drop=True)


def extract_quantity(
    raw_table: pd.DataFrame,
    quantity_indicator: str,
    unit_indicator: str | None,
    schema: RawTableSchema,
    year: int | None = None,
    audit: AuditLog | None = None,
    fixed_unit: str | None = None,
) -> pd.DataFrame:
    """Extract a quantity indicator paired with its unit label.

    The unit is read from the co-located ``unit_indicator`` row with the same
    key (PRODCOM's ``QNTUNIT``). Sources that report a single fixed unit
    (COMEXT ``QUANTITY_KG``) pass ``fixed_unit`` instead.

    Returns:
        The ``extract_indicator`` frame with an added ``unit`` column; rows
        without a unit keep ``unit=None``.
    """
    quantities = extract_indicator(raw_table, quantity_indicator, schema, year=year, audit=audit)
    if fixed_unit is not None or unit_indicator is None:
        quantities["unit"] = fixed_unit
        return quantities

    key_cols = ["product_code", "country_code", "year", *schema.dimension_cols]
    unit_rows = raw_table[raw_table[schema.indicator_col].astype(str).str.strip() == unit_indicator]
    if unit_rows.empty:
        quantities["unit"] = None
        return quantities

    units = _key_frame(unit_rows, schema, year)
    units["unit"] = unit_rows[schema.value_col].map(
        lambda v: None if v is None or str(v).strip() in SENTINELS else str(v).strip()
    )
    units = units.dropna(subset=["unit"]).drop_duplicates(subset=key_cols, keep="first")

    return quantities.merge(units[key_cols + ["unit"]], on=key_cols, how="left")
