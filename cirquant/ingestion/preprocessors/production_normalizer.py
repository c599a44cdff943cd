"""PRODCOM normalizer - raw DS-056121 table to production frame.

Reads one year's raw PRODCOM long table (``prodcom_ds_056121_<year>``) and
produces one row per (product, country, level) with:
    production_volume_t / production_value_eur: PRODQNT (converted) / PRODVAL
    prodcom_import_* / prodcom_export_*: PRODCOM's own trade indicators
        (IMPQNT, IMPVAL, EXPQNT, EXPVAL), used only as merge fallback

Quantities share the product's QNTUNIT and are converted to tonnes with the
UnitConverter; observations in units without a mass equivalent are excluded
and recorded in the audit log. Codes without a catalogue entry for the year
are excluded as mapping gaps.
"""

from pathlib import Path

import pandas as pd

from cirquant.harmonization.codes import normalize_product_code
from cirquant.harmonization.country_mapper import (
    EU_AGGREGATE,
    NON_COUNTRY_AGGREGATES,
    PRODCOM,
    CountryCodeMapper,
)
from cirquant.harmonization.product_mapping import ProductMappingTable
from cirquant.harmonization.units import UnitConverter, Unconvertible, compute_average_weights
from cirquant.ingestion.preprocessors.base_preprocessor import BasePreprocessor
from cirquant.ingestion.preprocessors.extractor import (
    PRODCOM_SCHEMA,
    RawTableSchema,
    extract_indicator,
    extract_quantity,
)
from cirquant.shared.errors import AuditEventKind, AuditLog

LEVEL_COUNTRY = "country"
LEVEL_EU = "EU"

# (quantity indicator, value indicator) -> output column prefix
PRODCOM_INDICATORS: dict[str, tuple[str, str]] = {
    "production": ("PRODQNT", "PRODVAL"),
    "prodcom_import": ("IMPQNT", "IMPVAL"),
    "prodcom_export": ("EXPQNT", "EXPVAL"),
}
UNIT_INDICATOR = "QNTUNIT"


def assign_level(iso_codes: pd.Series, mapper: CountryCodeMapper) -> pd.Series:
    """'country', 'EU' or None (other aggregates) per ISO code."""
    return iso_codes.map(
        lambda iso: LEVEL_EU
        if mapper.is_eu_aggregate(iso)
        else (LEVEL_COUNTRY if mapper.is_country(iso) else None)
    )


class ProductionNormalizer(BasePreprocessor):
    """Preprocessor for PRODCOM production statistics.

    Output columns follow OUTPUT_COLUMNS; missing observations are NaN.
    """

    CATEGORY = "production"

    OUTPUT_COLUMNS = [
        "product_code",
        "country_iso",
        "year",
        "level",
        "production_volume_t",
        "production_value_eur",
        "prodcom_import_volume_t",
        "prodcom_import_value_eur",
        "prodcom_export_volume_t",
        "prodcom_export_value_eur",
    ]

    KEY_COLUMNS = ["product_code", "country_iso", "year", "level"]

    def __init__(
        self,
        mapping: ProductMappingTable,
        converter: UnitConverter,
        country_mapper: CountryCodeMapper | None = None,
        audit: AuditLog | None = None,
        schema: RawTableSchema = PRODCOM_SCHEMA,
        output_dir: Path | None = None,
        log_file: Path | None = None,
        log_level: str | None = None,
    ) -> None:
        super().__init__(mapping, converter, country_mapper, audit, output_dir, log_file, log_level)
        self.schema = schema

    def preprocess(self, raw: pd.DataFrame, year: int) -> pd.DataFrame:
        """Transform one year's raw PRODCOM table.

        Args:
            raw: Raw long table (``prccode, decl, indicators, value``...).
            year: Data year.

        Returns:
            Production frame, one row per (product_code, country_iso, year, level).
        """
        self.logger.info("Normalizing PRODCOM data for %d (%d raw rows)", year, len(raw))
        if raw.empty:
            return pd.DataFrame(columns=self.OUTPUT_COLUMNS)

        raw = self._restrict_to_catalogue(raw, year)
        if raw.empty:
            self.logger.warning("No PRODCOM rows match the catalogue for %d", year)
            return pd.DataFrame(columns=self.OUTPUT_COLUMNS)

        quantities = extract_quantity(
            raw, "PRODQNT", UNIT_INDICATOR, self.schema, year=year, audit=self.audit
        )
        quantities["country_iso"] = self.map_countries(quantities["country_code"], PRODCOM)
        derived = compute_average_weights(
            quantities.drop(columns=["country_code"]),
            exclude_countries=NON_COUNTRY_AGGREGATES | {EU_AGGREGATE},
        )
        if derived:
            self.logger.info("Using %d data-derived average weights for %d", len(derived), year)
            self.converter = self.converter.with_derived_weights(derived)

        frames = []
        for prefix, (qty_indicator, value_indicator) in PRODCOM_INDICATORS.items():
            if qty_indicator == "PRODQNT":
                qty = quantities
            else:
                qty = extract_quantity(
                    raw, qty_indicator, UNIT_INDICATOR, self.schema, year=year, audit=self.audit
                )
                qty["country_iso"] = self.map_countries(qty["country_code"], PRODCOM)
            volume = self._convert(qty, f"{prefix}_volume_t")

            values = extract_indicator(raw, value_indicator, self.schema, year=year, audit=self.audit)
            values["country_iso"] = self.map_countries(values["country_code"], PRODCOM)
            values = values.rename(columns={"value": f"{prefix}_value_eur"})

            frames.append(volume[self.KEY_COLUMNS[:3] + [f"{prefix}_volume_t"]])
            frames.append(values[self.KEY_COLUMNS[:3] + [f"{prefix}_value_eur"]])

        df = self._combine(frames)
        df["year"] = df["year"].astype("int64")
        df["level"] = assign_level(df["country_iso"], self.country_mapper)
        dropped = df["level"].isna()
        if dropped.any():
            self.logger.debug("Dropped %d rows for non-EU27 aggregates", int(dropped.sum()))
        df = df[~dropped]

        df = df.sort_values(self.KEY_COLUMNS).reset_index(drop=True)[self.OUTPUT_COLUMNS]
        self.validate(df)
        self.logger.info("Normalized %d production rows for %d", len(df), year)
        return df

    def _restrict_to_catalogue(self, raw: pd.DataFrame, year: int) -> pd.DataFrame:
        codes = raw[self.schema.product_col].map(normalize_product_code)
        covered = set(self.mapping.production_codes(year))
        for code in sorted(set(codes.unique()) - covered):
            # records the gap for codes without a catalogue entry this year
            self.mapping.production_to_trade_codes(code, year)
        return raw[codes.isin(covered)]

    def _convert(self, qty: pd.DataFrame, column: str) -> pd.DataFrame:
        """Convert a quantity frame to tonnes, excluding unconvertible observations."""
        results = []
        for row in qty.itertuples(index=False):
            if pd.isna(row.value):
                results.append(float("nan"))
                continue
            unit = row.unit if isinstance(row.unit, str) else ""
            outcome = self.converter.convert_to_tonnes(
                row.value, unit, row.product_code, row.country_iso
            )
            if isinstance(outcome, Unconvertible):
                self.logger.warning(
                    "Excluded %s for %s/%s: %s (unit %r)",
                    column,
                    row.product_code,
                    row.country_iso,
                    outcome.reason,
                    outcome.unit_label,
                )
                self.audit.record(
                    AuditEventKind.UNCONVERTIBLE_UNIT,
                    f"{row.product_code}/{row.country_iso}: {outcome.unit_label!r} ({outcome.reason})",
                )
                results.append(float("nan"))
            else:
                results.append(outcome)

        out = qty.copy()
        out[column] = pd.Series(results, index=qty.index, dtype="float64")
        return out

    def _combine(self, frames: list[pd.DataFrame]) -> pd.DataFrame:
        keys = self.KEY_COLUMNS[:3]
        combined = None
        for frame in frames:
            before = len(frame)
            frame = frame.drop_duplicates(subset=keys, keep="first")
            if len(frame) < before:
                self.logger.warning("Removed %d duplicate PRODCOM observations", before - len(frame))
            combined = frame if combined is None else combined.merge(frame, on=keys, how="outer")
        return combined
