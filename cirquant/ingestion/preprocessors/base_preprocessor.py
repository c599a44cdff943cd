"""Abstract base class for the raw-table preprocessors.

A preprocessor turns one year's raw long table (as persisted by a collector)
into a typed, harmonised frame:
- product codes in dense form, reporter codes mapped to ISO alpha-2
- quantities converted to tonnes, values in EUR
- missing observations kept as NaN, never as zero
- one row per key, duplicates dropped with a warning

Exports go to data/processed/{category}/ with the naming
{category}_{identifier}_{year}.{format}.
"""

from abc import ABC, abstractmethod
from pathlib import Path

import pandas as pd

from cirquant.harmonization.country_mapper import CountryCodeMapper
from cirquant.harmonization.product_mapping import ProductMappingTable
from cirquant.harmonization.units import UnitConverter
from cirquant.shared.config import Config
from cirquant.shared.errors import AuditEventKind, AuditLog
from cirquant.shared.utils import setup_logger


class BasePreprocessor(ABC):
    """Base class for raw-table preprocessors.

    Subclasses must define:
        CATEGORY (str): output category (e.g. "production", "trade").
        OUTPUT_COLUMNS (list[str]): column contract of the preprocessed frame.
        KEY_COLUMNS (list[str]): columns identifying one output row.

    Subclasses must implement:
        preprocess(): transform one year's raw table.
    """

    CATEGORY: str
    OUTPUT_COLUMNS: list[str]
    KEY_COLUMNS: list[str]

    def __init__(
        self,
        mapping: ProductMappingTable,
        converter: UnitConverter,
        country_mapper: CountryCodeMapper | None = None,
        audit: AuditLog | None = None,
        output_dir: Path | None = None,
        log_file: Path | None = None,
        log_level: str | None = None,
    ) -> None:
        """Initialize the preprocessor.

        Args:
            mapping: Product mapping table for the run.
            converter: Unit converter (with the year's derived weights, if any).
            country_mapper: Reporter code mapper (default: built-in tables).
            audit: Audit log receiving recoverable events.
            output_dir: Directory for exports (default: data/processed/{CATEGORY}).
            log_file: Optional path for file-based logging.
            log_level: Logging level (default: LOG_LEVEL).
        """
        self.mapping = mapping
        self.converter = converter
        self.country_mapper = country_mapper or CountryCodeMapper()
        self.audit = audit if audit is not None else AuditLog()
        self.output_dir = output_dir or Config.DATA_DIR / "processed" / self.CATEGORY
        self.logger = setup_logger(
            self.__class__.__name__, log_file, level=log_level or Config.LOG_LEVEL
        )

    @abstractmethod
    def preprocess(self, raw: pd.DataFrame, year: int) -> pd.DataFrame:
        """Transform one year's raw table into the OUTPUT_COLUMNS contract."""
        ...

    def validate(self, df: pd.DataFrame) -> bool:
        """Check the column contract and key uniqueness.

        Raises:
            ValueError: If columns are missing or keys are duplicated.
        """
        missing = [c for c in self.OUTPUT_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"{self.CATEGORY} frame is missing columns: {missing}")

        duplicated = df.duplicated(subset=self.KEY_COLUMNS)
        if duplicated.any():
            raise ValueError(f"{self.CATEGORY} frame has {int(duplicated.sum())} duplicate keys")

        return True

    def map_countries(self, codes: pd.Series, source_system: str) -> pd.Series:
        """Map reporter codes to ISO, recording each unmapped code once."""
        iso = self.country_mapper.map_series(source_system, codes)
        unmapped = sorted(
            code
            for code in codes.dropna().unique()
            if not self.country_mapper.has_mapping(source_system, code)
        )
        for code in unmapped:
            self.audit.record(AuditEventKind.UNMAPPED_COUNTRY, f"{source_system}:{code}")
        return iso

    def export(
        self,
        df: pd.DataFrame,
        identifier: str,
        year: int,
        format: str = "csv",
    ) -> Path:
        """Export a frame following the {category}_{identifier}_{year} naming convention.

        Args:
            df: DataFrame to export.
            identifier: Dataset identifier (e.g. "ds_056121").
            year: Data year.
            format: Output format ("csv" or "parquet").

        Returns:
            Path to the written file.

        Raises:
            ValueError: If the DataFrame is empty or format is invalid.
        """
        if df.empty:
            raise ValueError(f"Cannot export empty DataFrame for '{identifier}'")

        if format not in ("csv", "parquet"):
            raise ValueError(f"Invalid format '{format}'. Must be 'csv' or 'parquet'.")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        parts = [self.CATEGORY] + ([identifier] if identifier else []) + [str(year)]
        path = self.output_dir / f"{'_'.join(parts)}.{format}"

        if format == "csv":
            df.to_csv(path, index=False, encoding="utf-8")
        else:  # parquet
            df.to_parquet(path, index=False, engine="pyarrow")

        self.logger.info("Exported %d records to %s", len(df), path)
        return path
