"""COMEXT normalizer - raw DS-059341 table to trade frame.

Reads one year's raw COMEXT long table (``comext_ds_059341_<year>``) and
produces one row per (HS code, reporter, level) with import/export volumes in
tonnes and values in EUR, summed over the intra-EU and extra-EU partner
aggregates. A metric with no reported figure (absent row, or a confidential
marker on either partner) stays NaN: the merge engine treats it as a
fillable placeholder.

Flow codes: 1 = import, 2 = export.
"""

from pathlib import Path

import pandas as pd

from cirquant.harmonization.country_mapper import COMEXT, CountryCodeMapper
from cirquant.harmonization.merge import sum_reported
from cirquant.harmonization.product_mapping import ProductMappingTable
from cirquant.harmonization.units import UnitConverter
from cirquant.ingestion.preprocessors.base_preprocessor import BasePreprocessor
from cirquant.ingestion.preprocessors.extractor import (
    COMEXT_SCHEMA,
    RawTableSchema,
    extract_indicator,
    extract_quantity,
)
from cirquant.ingestion.preprocessors.production_normalizer import assign_level
from cirquant.shared.errors import AuditEventKind, AuditLog

FLOWS: dict[str, str] = {"1": "import", "2": "export"}
PARTNERS = ("INT_EU27_2020", "EXT_EU27_2020")

QUANTITY_INDICATOR = "QUANTITY_KG"
VALUE_INDICATOR = "VALUE_EUR"


class TradeNormalizer(BasePreprocessor):
    """Preprocessor for COMEXT trade statistics."""

    CATEGORY = "trade"

    OUTPUT_COLUMNS = [
        "hs_code",
        "product_code",
        "country_iso",
        "year",
        "level",
        "import_volume_t",
        "import_value_eur",
        "export_volume_t",
        "export_value_eur",
    ]

    KEY_COLUMNS = ["hs_code", "country_iso", "year", "level"]

    METRIC_COLUMNS = ["import_volume_t", "import_value_eur", "export_volume_t", "export_value_eur"]

    def __init__(
        self,
        mapping: ProductMappingTable,
        converter: UnitConverter,
        country_mapper: CountryCodeMapper | None = None,
        audit: AuditLog | None = None,
        schema: RawTableSchema = COMEXT_SCHEMA,
        output_dir: Path | None = None,
        log_file: Path | None = None,
        log_level: str | None = None,
    ) -> None:
        super().__init__(mapping, converter, country_mapper, audit, output_dir, log_file, log_level)
        self.schema = schema

    def preprocess(self, raw: pd.DataFrame, year: int) -> pd.DataFrame:
        """Transform one year's raw COMEXT table.

        ``product_code`` is the primary PRODCOM code for the HS code (see
        ``ProductMappingTable.trade_to_production_code``); HS codes that no
        catalogue entry claims are excluded as mapping gaps.
        """
        self.logger.info("Normalizing COMEXT data for %d (%d raw rows)", year, len(raw))
        if raw.empty:
            return pd.DataFrame(columns=self.OUTPUT_COLUMNS)

        quantities = extract_quantity(
            raw, QUANTITY_INDICATOR, None, self.schema, year=year, audit=self.audit, fixed_unit="kg"
        )
        quantities["country_iso"] = self.map_countries(quantities["country_code"], COMEXT)
        converted, rejected = self.converter.convert_frame(quantities, output_col="volume_t")
        for row in rejected.itertuples(index=False):
            self.audit.record(
                AuditEventKind.UNCONVERTIBLE_UNIT,
                f"{row.product_code}/{row.country_iso}: {row.value!r} ({row.reason})",
            )

        values = extract_indicator(raw, VALUE_INDICATOR, self.schema, year=year, audit=self.audit)
        values["country_iso"] = self.map_countries(values["country_code"], COMEXT)
        values = values.rename(columns={"value": "value_eur"})

        volume = self._by_flow(converted, "volume_t")
        value = self._by_flow(values, "value_eur")
        keys = ["product_code", "country_iso", "year"]
        df = volume.merge(value, on=keys, how="outer")
        df["year"] = df["year"].astype("int64")
        for col in self.METRIC_COLUMNS:
            if col not in df.columns:
                df[col] = float("nan")

        df = df.rename(columns={"product_code": "hs_code"})
        df["product_code"] = df["hs_code"].map(
            lambda hs: self.mapping.trade_to_production_code(hs, year)
        )
        unmapped = df["product_code"].isna()
        for hs in sorted(df.loc[unmapped, "hs_code"].unique()):
            self.logger.warning("No catalogue entry claims HS code %s in %d", hs, year)
            self.audit.record(AuditEventKind.MAPPING_GAP, f"HS {hs}@{year}")
        df = df[~unmapped].copy()

        df["level"] = assign_level(df["country_iso"], self.country_mapper)
        df = df[df["level"].notna()]

        df = df.sort_values(self.KEY_COLUMNS).reset_index(drop=True)[self.OUTPUT_COLUMNS]
        self.validate(df)
        self.logger.info("Normalized %d trade rows for %d", len(df), year)
        return df

    def _by_flow(self, df: pd.DataFrame, measure: str) -> pd.DataFrame:
        """Sum partner aggregates and pivot flows into import/export columns.

        A flow total with a withheld partner figure is missing, even when the
        other partner reports zero.
        """
        keys = ["product_code", "country_iso", "year"]
        df = df[df["partner"].isin(PARTNERS)].copy()
        df["flow"] = df["flow"].map(lambda f: FLOWS.get(str(f).strip().split(".")[0]))
        df = df[df["flow"].notna()]
        if df.empty:
            return pd.DataFrame(
                {
                    "product_code": pd.Series(dtype="object"),
                    "country_iso": pd.Series(dtype="object"),
                    "year": pd.Series(dtype="int64"),
                }
            )

        before = len(df)
        df = df.drop_duplicates(subset=keys + ["flow", "partner"], keep="first")
        if len(df) < before:
            self.logger.warning("Removed %d duplicate COMEXT observations", before - len(df))

        summed = sum_reported(df, keys + ["flow"], [measure])
        wide = summed.pivot(index=keys, columns="flow", values=measure).reset_index()
        wide.columns.name = None
        return wide.rename(columns={flow: f"{flow}_{measure}" for flow in FLOWS.values()})
