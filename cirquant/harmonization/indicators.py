"""Circularity indicators computed from harmonised rows.

    apparent_consumption = production + import - export      (t and EUR)
    trade_balance        = export - import
    material_savings     = AC x (potential - current) / 100
    refurbishment        = refurbishment_rate x AC            (100% retention)
    recycling            = recycling_rate x material_recovery_rate x AC

Arithmetic runs on pandas float columns so a missing operand yields a missing
result for that metric only. Negative apparent consumption is kept as is.
"""

import logging

import numpy as np
import pandas as pd

from cirquant.harmonization.merge import (
    HARMONIZED_COLUMNS,
    KEY_COLUMNS,
    LEVEL_COUNTRY,
    LEVEL_EU,
    SOURCE_COLUMNS,
    SOURCE_COMEXT,
    SOURCE_FALLBACK,
)
from cirquant.shared.catalogue import AnalysisParameters

logger = logging.getLogger(__name__)

INDICATOR_COLUMNS = HARMONIZED_COLUMNS + [
    "apparent_consumption_t",
    "apparent_consumption_eur",
    "trade_balance_t",
    "trade_balance_eur",
    "current_circularity_rate_pct",
    "potential_circularity_rate_pct",
    "estimated_material_savings_t",
    "estimated_monetary_savings_eur",
    "material_recovery_rate",
    "refurbishment_savings_t",
    "refurbishment_savings_eur",
    "recycling_savings_t",
    "recycling_savings_eur",
]

AGGREGATE_SUM_COLUMNS = [
    "production_volume_t",
    "production_value_eur",
    "import_volume_t",
    "import_value_eur",
    "export_volume_t",
    "export_value_eur",
    "apparent_consumption_t",
    "apparent_consumption_eur",
    "estimated_material_savings_t",
    "estimated_monetary_savings_eur",
    "refurbishment_savings_t",
    "refurbishment_savings_eur",
    "recycling_savings_t",
    "recycling_savings_eur",
]

COUNTRY_AGGREGATE_COLUMNS = ["country_iso", "year", "level", "product_count"] + AGGREGATE_SUM_COLUMNS


class IndicatorCalculator:
    """Add indicator columns to a harmonised frame using run parameters."""

    def __init__(self, params: AnalysisParameters) -> None:
        self.params = params

    def calculate(self, harmonized: pd.DataFrame, year: int) -> pd.DataFrame:
        """Compute IndicatorRow columns.

        Args:
            harmonized: HarmonizationEngine output.
            year: Data year (selects the catalogue epoch for compositions).

        Returns:
            DataFrame with INDICATOR_COLUMNS, same row order as the input.
        """
        df = harmonized.copy()
        if df.empty:
            return pd.DataFrame(columns=INDICATOR_COLUMNS)

        df["apparent_consumption_t"] = apparent_consumption(
            df["production_volume_t"], df["import_volume_t"], df["export_volume_t"]
        )
        df["apparent_consumption_eur"] = apparent_consumption(
            df["production_value_eur"], df["import_value_eur"], df["export_value_eur"]
        )
        df["trade_balance_t"] = df["export_volume_t"] - df["import_volume_t"]
        df["trade_balance_eur"] = df["export_value_eur"] - df["import_value_eur"]

        rates = {code: self.params.rates_for(code) for code in df["product_code"].unique()}
        missing_rates = sorted(code for code, rate in rates.items() if rate is None)
        if missing_rates:
            logger.warning("No circularity rates for products: %s", ", ".join(missing_rates))

        def rate_column(attr: str) -> pd.Series:
            lookup = {
                code: (getattr(rate, attr) if rate is not None else None)
                for code, rate in rates.items()
            }
            return df["product_code"].map(lookup).astype("float64")

        df["current_circularity_rate_pct"] = rate_column("current_rate_pct")
        df["potential_circularity_rate_pct"] = rate_column("potential_rate_pct")
        gap = (df["potential_circularity_rate_pct"] - df["current_circularity_rate_pct"]) / 100.0
        df["estimated_material_savings_t"] = df["apparent_consumption_t"] * gap
        df["estimated_monetary_savings_eur"] = df["apparent_consumption_eur"] * gap

        recovery = {
            code: self.params.material_recovery_rate(code, year) for code in rates
        }
        df["material_recovery_rate"] = df["product_code"].map(recovery).astype("float64")

        refurbishment = rate_column("refurbishment_rate_pct") / 100.0
        df["refurbishment_savings_t"] = refurbishment * df["apparent_consumption_t"]
        df["refurbishment_savings_eur"] = refurbishment * df["apparent_consumption_eur"]

        recycling = rate_column("recycling_rate_pct") / 100.0 * df["material_recovery_rate"]
        df["recycling_savings_t"] = recycling * df["apparent_consumption_t"]
        df["recycling_savings_eur"] = recycling * df["apparent_consumption_eur"]

        negative = (df["apparent_consumption_t"] < 0).sum()
        if negative:
            logger.warning("%d rows with negative apparent consumption in %d", int(negative), year)

        return df[INDICATOR_COLUMNS]


def apparent_consumption(production: pd.Series, imports: pd.Series, exports: pd.Series) -> pd.Series:
    """production + imports - exports, no clamping; NaN in any operand gives NaN."""
    return production.astype("float64") + imports.astype("float64") - exports.astype("float64")


def validate_indicators(df: pd.DataFrame) -> bool:
    """Structural check of an indicator frame before it is written.

    Raises:
        ValueError: Listing every problem found.
    """
    problems = []
    missing = [c for c in INDICATOR_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Indicator frame is missing columns: {missing}")

    duplicated = int(df.duplicated(subset=KEY_COLUMNS).sum())
    if duplicated:
        problems.append(f"{duplicated} duplicate keys")

    bad_levels = sorted(set(df["level"].dropna()) - {LEVEL_COUNTRY, LEVEL_EU})
    if bad_levels or df["level"].isna().any():
        problems.append(f"unexpected levels {bad_levels}")

    for col in SOURCE_COLUMNS:
        unknown = sorted(set(df[col].dropna()) - {SOURCE_COMEXT, SOURCE_FALLBACK})
        if unknown:
            problems.append(f"{col} has unknown sources {unknown}")

    inverted = df["potential_circularity_rate_pct"] < df["current_circularity_rate_pct"]
    if inverted.any():
        problems.append(f"{int(inverted.sum())} rows with potential rate below current rate")

    if problems:
        raise ValueError("Invalid indicator frame: " + "; ".join(problems))
    return True


def country_aggregates(indicators: pd.DataFrame) -> pd.DataFrame:
    """Per-country totals across products.

    A total is NaN when every product's figure is missing.
    """
    if indicators.empty:
        return pd.DataFrame(columns=COUNTRY_AGGREGATE_COLUMNS)

    grouped = indicators.groupby(["country_iso", "year", "level"])
    totals = grouped[AGGREGATE_SUM_COLUMNS].sum(min_count=1)
    totals.insert(0, "product_count", grouped["product_code"].nunique())
    out = totals.reset_index()

    out["_order"] = np.where(out["level"] == LEVEL_COUNTRY, 0, 1)
    out = out.sort_values(["_order", "country_iso"]).drop(columns="_order").reset_index(drop=True)
    return out[COUNTRY_AGGREGATE_COLUMNS]
