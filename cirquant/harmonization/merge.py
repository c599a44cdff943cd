"""Harmonization and fallback merge of production and trade data.

For every (product_code, country_iso, year, level) key:

1. Seed the four trade metrics from COMEXT, aggregated over all HS codes the
   catalogue maps to the product. A metric COMEXT does not report (absent row,
   or a confidential marker on any partner or HS code part of the total)
   starts as a 0.0 placeholder; a reported figure, zero included, is flagged
   ``comext``.
2. Outer-join the PRODCOM row. Production metrics only ever come from PRODCOM.
3. Fallback: a placeholder is replaced by PRODCOM's own trade indicator for
   the same metric when that indicator is strictly positive, and flagged
   ``prodcom-fallback``. Reported COMEXT values are never touched; a violation
   raises MergeInvariantError.
4. Placeholders left unfilled become NaN: a missing metric is never 0.0.
5. Rows with all six metrics missing are dropped.

Country and EU rows are built independently: the EU row of each source is its
own EU27_2020 figure where reported, otherwise the sum over its member-state
rows, and the fallback pass runs on each level separately.
"""

from pathlib import Path

import numpy as np
import pandas as pd

from cirquant.harmonization.country_mapper import EU27_2020_MEMBERS, EU_AGGREGATE
from cirquant.harmonization.product_mapping import ProductMappingTable
from cirquant.shared.config import Config
from cirquant.shared.errors import AuditEventKind, AuditLog, MergeInvariantError
from cirquant.shared.utils import setup_logger

LEVEL_COUNTRY = "country"
LEVEL_EU = "EU"

SOURCE_COMEXT = "comext"
SOURCE_FALLBACK = "prodcom-fallback"

KEY_COLUMNS = ["product_code", "country_iso", "year", "level"]

PRODUCTION_METRICS = ["production_volume_t", "production_value_eur"]
TRADE_METRICS = ["import_volume_t", "import_value_eur", "export_volume_t", "export_value_eur"]

# Trade metric -> PRODCOM's own indicator for the same flow and measure
FALLBACK_COLUMNS: dict[str, str] = {metric: f"prodcom_{metric}" for metric in TRADE_METRICS}


def source_column(metric: str) -> str:
    """``import_volume_t`` -> ``import_volume_source``."""
    return metric.rsplit("_", 1)[0] + "_source"


SOURCE_COLUMNS = [source_column(m) for m in TRADE_METRICS]


def sum_reported(frame: pd.DataFrame, keys: list[str], metrics: list[str]) -> pd.DataFrame:
    """Group sums of ``metrics`` that stay NaN when any contributing figure is NaN.

    A total with a withheld part is not a reported figure, even when the
    reported parts add up to zero.
    """
    summed = frame.groupby(keys)[metrics].sum(min_count=1)
    flags = pd.concat([frame[keys], frame[metrics].isna()], axis=1)
    withheld = flags.groupby(keys)[metrics].any()
    return summed.mask(withheld).reset_index()


HARMONIZED_COLUMNS = (
    ["product_code", "product_name", "country_iso", "year", "level"]
    + PRODUCTION_METRICS
    + TRADE_METRICS
    + SOURCE_COLUMNS
)


def _empty_frame(metrics: list[str]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "product_code": pd.Series(dtype="object"),
            "country_iso": pd.Series(dtype="object"),
            "year": pd.Series(dtype="int64"),
            "level": pd.Series(dtype="object"),
            **{m: pd.Series(dtype="float64") for m in metrics},
        }
    )


class HarmonizationEngine:
    """Merge normalised production and trade frames for one year.

    Args:
        mapping: Product mapping table for the run.
        audit: Audit log receiving fallback counts and mapping gaps.
        log_file: Optional path for file-based logging.
        log_level: Logging level (default: LOG_LEVEL).
    """

    def __init__(
        self,
        mapping: ProductMappingTable,
        audit: AuditLog | None = None,
        log_file: Path | None = None,
        log_level: str | None = None,
    ) -> None:
        self.mapping = mapping
        self.audit = audit if audit is not None else AuditLog()
        self.logger = setup_logger(
            self.__class__.__name__, log_file, level=log_level or Config.LOG_LEVEL
        )

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def harmonize(self, production: pd.DataFrame, trade: pd.DataFrame, year: int) -> pd.DataFrame:
        """Merge production and trade into HarmonizedRow frame for ``year``.

        Args:
            production: ProductionNormalizer output.
            trade: TradeNormalizer output (one row per HS code).
            year: Data year.

        Returns:
            DataFrame with HARMONIZED_COLUMNS, one row per key.

        Raises:
            MergeInvariantError: If the fallback pass altered a reported value.
        """
        covered = set(self.mapping.production_codes(year))

        trade_by_product = self.aggregate_trade(trade, year)
        trade_by_product = self.with_eu_level(trade_by_product, TRADE_METRICS)

        production_metrics = PRODUCTION_METRICS + list(FALLBACK_COLUMNS.values())
        prod = production[production["product_code"].isin(covered)] if not production.empty else production
        prod = self._ensure_columns(prod, production_metrics)
        prod = self.with_eu_level(prod[KEY_COLUMNS + production_metrics], production_metrics)

        merged = trade_by_product.merge(prod, on=KEY_COLUMNS, how="outer")
        self.logger.info(
            "Merging %d trade keys and %d production keys into %d rows for %d",
            len(trade_by_product),
            len(prod),
            len(merged),
            year,
        )

        for metric in TRADE_METRICS:
            merged = self.apply_fallback(merged, metric)

        metrics = PRODUCTION_METRICS + TRADE_METRICS
        empty = merged[metrics].isna().all(axis=1)
        if empty.any():
            self.logger.info("Dropped %d rows with no reported metric", int(empty.sum()))
        merged = merged[~empty].copy()

        merged["product_name"] = merged["product_code"].map(
            lambda code: self._product_name(code, year)
        )
        merged["year"] = merged["year"].astype("int64")
        merged = merged.sort_values(
            ["product_code", "level", "country_iso"], key=self._level_sort_key
        ).reset_index(drop=True)
        return merged[HARMONIZED_COLUMNS]

    def aggregate_trade(self, trade: pd.DataFrame, year: int) -> pd.DataFrame:
        """Sum trade metrics over every HS code mapped to each production code.

        An HS code may feed several products (many-to-many). A metric missing
        for any of the product's HS codes leaves the product total missing.
        """
        if trade.empty:
            return _empty_frame(TRADE_METRICS)

        frames = []
        for code in self.mapping.production_codes(year):
            hs_codes = self.mapping.production_to_trade_codes(code, year)
            subset = trade[trade["hs_code"].isin(hs_codes)]
            if subset.empty:
                continue
            summed = sum_reported(subset, ["country_iso", "year", "level"], TRADE_METRICS)
            summed.insert(0, "product_code", code)
            frames.append(summed)

        if not frames:
            return _empty_frame(TRADE_METRICS)
        return pd.concat(frames, ignore_index=True)[KEY_COLUMNS + TRADE_METRICS]

    @staticmethod
    def with_eu_level(frame: pd.DataFrame, metrics: list[str]) -> pd.DataFrame:
        """Country rows plus one EU row per product.

        The EU figure of a metric is the source's own EU27_2020 value where
        reported, otherwise the sum over the product's member-state rows.
        Rows of non-member reporters (NO, UK, RS...) stay country rows only.
        """
        if frame.empty:
            return _empty_frame(metrics)

        country = frame[frame["level"] == LEVEL_COUNTRY]
        reported = frame[frame["level"] == LEVEL_EU]
        group = ["product_code", "year"]

        members = country[country["country_iso"].isin(EU27_2020_MEMBERS)]
        summed = members.groupby(group)[metrics].sum(min_count=1)
        if reported.empty:
            eu = summed
        else:
            eu = reported.groupby(group)[metrics].sum(min_count=1).combine_first(summed)
        eu = eu.reset_index()
        eu["country_iso"] = EU_AGGREGATE
        eu["level"] = LEVEL_EU

        return pd.concat([country[KEY_COLUMNS + metrics], eu[KEY_COLUMNS + metrics]], ignore_index=True)

    def apply_fallback(self, df: pd.DataFrame, metric: str) -> pd.DataFrame:
        """Seed, fill and finalise one trade metric.

        Adds ``<metric>_source``. Only placeholders (metric not reported by
        COMEXT) with a strictly positive PRODCOM figure are filled.
        """
        df = df.copy()
        reported = df[metric].notna()
        original = df[metric].copy()

        value = df[metric].fillna(0.0)
        source = pd.Series(None, index=df.index, dtype="object")
        source[reported] = SOURCE_COMEXT

        own = df[FALLBACK_COLUMNS[metric]]
        eligible = self.fallback_eligible(reported, value, own)
        value[eligible] = own[eligible]
        source[eligible] = SOURCE_FALLBACK

        overwritten = reported & (value != original)
        if overwritten.any():
            raise MergeInvariantError(
                f"Fallback altered {int(overwritten.sum())} reported {metric} values"
            )

        value[~reported & ~eligible] = np.nan

        filled = int(eligible.sum())
        if filled:
            self.logger.info("Filled %d %s values from PRODCOM", filled, metric)
            self.audit.record(AuditEventKind.FALLBACK_FILL, f"{metric}: {filled} rows", filled)

        df[metric] = value.astype("float64")
        df[source_column(metric)] = source
        return df

    @staticmethod
    def fallback_eligible(reported: pd.Series, value: pd.Series, own: pd.Series) -> pd.Series:
        """Rows whose placeholder may take PRODCOM's own figure."""
        return ~reported & (value == 0.0) & (own > 0)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_columns(df: pd.DataFrame, metrics: list[str]) -> pd.DataFrame:
        if df.empty:
            return _empty_frame(metrics)
        df = df.copy()
        for col in metrics:
            if col not in df.columns:
                df[col] = np.nan
        return df

    def _product_name(self, code: str, year: int) -> str:
        entry = self.mapping.entry_for(code, year)
        return entry.product_name if entry is not None else ""

    @staticmethod
    def _level_sort_key(column: pd.Series) -> pd.Series:
        # country rows before the EU row of each product
        if column.name == "level":
            return column.map({LEVEL_COUNTRY: 0, LEVEL_EU: 1})
        return column
