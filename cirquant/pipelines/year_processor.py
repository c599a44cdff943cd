"""Per-year pipeline: raw PRODCOM/COMEXT tables -> circularity indicators.

Stages:
    1. Validate configuration
    2. Ensure the static mapping/parameter tables
    3. Extract + convert production (PRODCOM)
    4. Extract + convert trade (COMEXT)
    5. Harmonise, with the PRODCOM fallback for missing trade figures
    6. Compute indicators and country aggregates
    7. Persist every table of the year in one transaction

A year either completes every stage or is reported as failed; nothing of a
failed year is written. Recoverable data problems go to the year's AuditLog.
"""

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd
from sqlalchemy import Engine

from cirquant.harmonization.country_mapper import CountryCodeMapper
from cirquant.harmonization.indicators import (
    IndicatorCalculator,
    country_aggregates,
    validate_indicators,
)
from cirquant.harmonization.merge import HarmonizationEngine
from cirquant.harmonization.product_mapping import ProductMappingTable
from cirquant.harmonization.units import UnitConverter
from cirquant.ingestion.preprocessors import ProductionNormalizer, TradeNormalizer
from cirquant.ingestion.preprocessors.extractor import COMEXT_SCHEMA, PRODCOM_SCHEMA
from cirquant.pipelines.query_engine import QueryEngine
from cirquant.shared.catalogue import MAX_YEAR, MIN_YEAR, AnalysisParameters
from cirquant.shared.config import Config
from cirquant.shared.db import (
    STATIC_TABLES,
    build_harmonized_table,
    build_indicator_table,
    replace_tables,
    table_exists,
)
from cirquant.shared.errors import AuditLog, CirQuantError, ConfigValidationError
from cirquant.shared.utils import setup_logger, utc_now_iso

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

# Static tables already written in this process, per (database, catalogue hash)
_static_written: set[tuple[str, str]] = set()
_static_lock = threading.Lock()


class MissingRawDataError(CirQuantError):
    """Neither raw table exists for the year."""


def year_table_names(year: int) -> dict[str, str]:
    return {
        "production": f"production_{year}",
        "trade": f"trade_{year}",
        "harmonized": f"harmonized_{year}",
        "indicators": f"circularity_indicators_{year}",
        "aggregates": f"country_aggregates_{year}",
        "snapshot": f"parameters_snapshot_{year}",
    }


@dataclass
class YearResult:
    """Outcome of one year's run."""

    year: int
    status: str
    rows: dict[str, int] = field(default_factory=dict)
    audit: AuditLog = field(default_factory=AuditLog)
    error: str | None = None
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED

    def to_dict(self) -> dict:
        return {
            "year": self.year,
            "status": self.status,
            "rows": dict(self.rows),
            "audit": self.audit.to_dict(),
            "error": self.error,
            "duration_s": round(self.duration_s, 3),
        }


class YearProcessor:
    """Runs the full pipeline for single years.

    One instance is shared by every worker thread of a batch: the parameters,
    mapping and converter are read-only, and each ``process`` call gets its
    own AuditLog and database connections.

    Args:
        params: Validated analysis parameters.
        raw_engine: Database holding the fetched raw tables.
        processed_engine: Destination database.
        replace: Rebuild years whose output already exists (otherwise skip them).
        export_format: Also export production/trade frames ("csv" or "parquet").
        query_timeout: Per-query timeout in seconds (default: QUERY_TIMEOUT).
        country_mapper: Reporter code mapper (default: built-in tables).
        backup_dir: Directory for backup CSVs of failed writes.
        log_file: Optional path for file-based logging.
        log_level: Logging level for the pipeline components (default: LOG_LEVEL).
    """

    def __init__(
        self,
        params: AnalysisParameters,
        raw_engine: Engine,
        processed_engine: Engine,
        replace: bool = True,
        export_format: str | None = None,
        query_timeout: float | None = None,
        country_mapper: CountryCodeMapper | None = None,
        backup_dir: Path | None = None,
        log_file: Path | None = None,
        log_level: str | None = None,
    ) -> None:
        self.params = params
        self.raw_engine = raw_engine
        self.processed_engine = processed_engine
        self.replace = replace
        self.export_format = export_format
        self.queries = QueryEngine(raw_engine, timeout=query_timeout)
        self.country_mapper = country_mapper or CountryCodeMapper()
        self.mapping = ProductMappingTable(params.products)
        self.converter = UnitConverter(params.unit_rules, weights_tonnes=params.weights_tonnes())
        self.backup_dir = backup_dir
        self.log_file = log_file
        self.log_level = log_level or Config.LOG_LEVEL
        self.logger = setup_logger(self.__class__.__name__, log_file, level=self.log_level)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def process(self, year: int) -> YearResult:
        """Run every stage for ``year``.

        Never raises for data or database problems: they are reported in the
        returned YearResult so the batch can continue.
        """
        started = time.perf_counter()
        result = YearResult(year=year, status=STATUS_SUCCEEDED)
        names = year_table_names(year)

        if not self.replace and table_exists(self.processed_engine, names["indicators"]):
            self.logger.info("Skipping %d: %s already exists", year, names["indicators"])
            result.status = STATUS_SKIPPED
            return result

        self.logger.info("Processing year %d", year)
        try:
            self.validate(year)
            self.ensure_mapping_tables()
            tables = self.build_tables(year, result.audit)
            result.rows = replace_tables(self.processed_engine, tables, backup_dir=self.backup_dir)
            self._export(tables, year)
        except Exception as e:
            self.logger.exception("Year %d failed: %s", year, e)
            result.status = STATUS_FAILED
            result.error = f"{type(e).__name__}: {e}"
        finally:
            result.duration_s = time.perf_counter() - started

        if result.ok:
            self.logger.info(
                "Year %d done in %.1fs: %d indicator rows, audit %s",
                year,
                result.duration_s,
                result.rows.get(names["indicators"], 0),
                dict(result.audit.counts),
            )
        return result

    def validate(self, year: int) -> None:
        """Check run configuration before any work for ``year``.

        Raises:
            ConfigValidationError: Listing every problem found.
        """
        problems = []
        try:
            Config.validate()
        except ValueError as e:
            problems.append(str(e))
        if not MIN_YEAR <= year <= MAX_YEAR:
            problems.append(f"year {year} outside {MIN_YEAR}-{MAX_YEAR}")
        if not self.mapping.production_codes(year):
            problems.append(f"no catalogue product covers {year}")
        if problems:
            raise ConfigValidationError(problems)

    def ensure_mapping_tables(self, force: bool = False) -> None:
        """Write the static mapping and parameter tables once per catalogue version."""
        key = (str(self.processed_engine.url), self.params.config_hash)
        with _static_lock:
            if key in _static_written and not force:
                return
            tables = {
                "product_mapping_codes": self.mapping.as_dataframe(),
                "country_code_mapping": self.country_mapper.as_dataframe(),
                "parameters_circularity_rate": self.params.rates_frame(),
                "parameters_material_recovery": self.params.material_recovery_frame(),
            }
            replace_tables(
                self.processed_engine,
                {name: (df, STATIC_TABLES[name]) for name, df in tables.items()},
                backup_dir=self.backup_dir,
            )
            _static_written.add(key)
        self.logger.info("Static mapping tables written (catalogue %s)", self.params.config_hash[:12])

    def build_tables(self, year: int, audit: AuditLog) -> dict[str, tuple[pd.DataFrame, object]]:
        """Compute every output table of ``year`` without writing anything.

        Raises:
            MissingRawDataError: Neither raw table exists.
            QueryTimeoutError: A raw read exceeded its timeout.
            MergeInvariantError: The fallback overwrote a reported value.
            ValueError: The indicator frame failed its structural check.
        """
        names = year_table_names(year)
        mapping = self.mapping.with_audit(audit)

        production_codes = mapping.production_codes(year)
        trade_codes = sorted(
            {code for entry in self.params.products if entry.covers(year) for code in entry.trade_codes}
        )
        prodcom_raw = self.queries.read_raw(PRODCOM_SCHEMA, year, production_codes)
        comext_raw = self.queries.read_raw(COMEXT_SCHEMA, year, trade_codes)
        if prodcom_raw is None and comext_raw is None:
            raise MissingRawDataError(
                f"No raw tables for {year} "
                f"({PRODCOM_SCHEMA.table_name(year)}, {COMEXT_SCHEMA.table_name(year)})"
            )
        if prodcom_raw is None:
            self.logger.warning("Raw table %s missing", PRODCOM_SCHEMA.table_name(year))
            prodcom_raw = pd.DataFrame()
        if comext_raw is None:
            self.logger.warning("Raw table %s missing", COMEXT_SCHEMA.table_name(year))
            comext_raw = pd.DataFrame()

        production = self._production_normalizer(mapping, audit).preprocess(prodcom_raw, year)
        trade = self._trade_normalizer(mapping, audit).preprocess(comext_raw, year)

        harmonized = HarmonizationEngine(
            mapping, audit, log_file=self.log_file, log_level=self.log_level
        ).harmonize(
            production, trade, year
        )
        indicators = IndicatorCalculator(self.params).calculate(harmonized, year)
        validate_indicators(indicators)
        aggregates = country_aggregates(indicators)

        return {
            names["production"]: (production, None),
            names["trade"]: (trade, None),
            names["harmonized"]: (harmonized, build_harmonized_table(year)),
            names["indicators"]: (indicators, build_indicator_table(year)),
            names["aggregates"]: (aggregates, None),
            names["snapshot"]: (self.parameters_snapshot(year), None),
        }

    def parameters_snapshot(self, year: int) -> pd.DataFrame:
        """Rates in effect for the run, stamped with the catalogue hash and run time."""
        snapshot = self.params.rates_frame()
        snapshot.insert(0, "year", year)
        snapshot["config_hash"] = self.params.config_hash
        snapshot["config_path"] = self.params.source_path
        snapshot["run_timestamp"] = utc_now_iso()
        return snapshot

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _production_normalizer(self, mapping: ProductMappingTable, audit: AuditLog):
        return ProductionNormalizer(
            mapping,
            self.converter,
            self.country_mapper,
            audit,
            log_file=self.log_file,
            log_level=self.log_level,
        )

    def _trade_normalizer(self, mapping: ProductMappingTable, audit: AuditLog):
        return TradeNormalizer(
            mapping,
            self.converter,
            self.country_mapper,
            audit,
            log_file=self.log_file,
            log_level=self.log_level,
        )

    def _export(self, tables: dict[str, tuple[pd.DataFrame, object]], year: int) -> None:
        if not self.export_format:
            return
        names = year_table_names(year)
        audit = AuditLog()
        exporters = {
            names["production"]: (self._production_normalizer(self.mapping, audit), "prodcom"),
            names["trade"]: (self._trade_normalizer(self.mapping, audit), "comext"),
        }
        for table_name, (normalizer, identifier) in exporters.items():
            df = tables[table_name][0]
            if df.empty:
                self.logger.warning("Nothing to export for %s", table_name)
                continue
            normalizer.export(df, identifier, year, format=self.export_format)
