"""CirQuant pipeline runner (RAW tables -> circularity indicators per year).

Usage:
    # Configured year range, default workers
    python -m cirquant.pipelines.run_pipeline

    # Selected years, keep years that were already processed
    python -m cirquant.pipelines.run_pipeline --years 2015-2020 --no-replace

    # Alternative catalogue, parquet exports of the normalised frames
    python -m cirquant.pipelines.run_pipeline --products config/products.toml --export parquet

Exit codes: 0 every year succeeded or was skipped, 1 any year failed or the
configuration is invalid, 130 interrupted.
"""

import argparse
import json
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from cirquant.pipelines.year_processor import (
    STATUS_FAILED,
    STATUS_SKIPPED,
    STATUS_SUCCEEDED,
    YearProcessor,
    YearResult,
)
from cirquant.shared.catalogue import load_analysis_parameters
from cirquant.shared.config import Config
from cirquant.shared.db import create_db_engine
from cirquant.shared.errors import ConfigValidationError
from cirquant.shared.utils import parse_year_range, setup_logger, utc_now_iso

MANIFEST_DIR = Config.DATA_DIR / "manifests"


@dataclass
class BatchSummary:
    """Per-year outcomes of one pipeline run."""

    results: list[YearResult] = field(default_factory=list)

    def add(self, result: YearResult) -> None:
        self.results.append(result)
        self.results.sort(key=lambda r: r.year)

    def _years(self, status: str) -> list[int]:
        return [r.year for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[int]:
        return self._years(STATUS_SUCCEEDED)

    @property
    def failed(self) -> list[int]:
        return self._years(STATUS_FAILED)

    @property
    def skipped(self) -> list[int]:
        return self._years(STATUS_SKIPPED)

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "years": [r.to_dict() for r in self.results],
        }


def run_batch(processor: YearProcessor, years: list[int], workers: int) -> BatchSummary:
    """Process ``years`` on a bounded thread pool; one failed year never stops the rest.

    The static mapping tables are written by the first year to run; when that
    write fails, every year is reported failed.
    """
    summary = BatchSummary()
    if not years:
        return summary

    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(years)))) as pool:
        futures = {pool.submit(processor.process, year): year for year in years}
        for future in as_completed(futures):
            summary.add(future.result())
    return summary


def write_manifest(summary: BatchSummary, args: argparse.Namespace, config_hash: str) -> Path:
    run_time_utc = utc_now_iso()
    manifest = {
        "run_time_utc": run_time_utc,
        "pipeline": "circularity",
        "years": args.years,
        "workers": args.workers,
        "replace": not args.no_replace,
        "products_config": str(args.products),
        "config_hash": config_hash,
        **summary.to_dict(),
    }
    MANIFEST_DIR.mkdir(parents=True, exist_ok=True)
    manifest_path = MANIFEST_DIR / f"pipeline_run_{run_time_utc.replace(':', '-')}.json"
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)
    return manifest_path


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Compute circularity indicators from raw PRODCOM and COMEXT tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--years",
        type=str,
        default=f"{Config.START_YEAR}-{Config.END_YEAR}",
        help="Year or range, e.g. 2020 or 2002-2023 (default: configured range)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=Config.MAX_WORKERS,
        help="Years processed in parallel (default: MAX_WORKERS)",
    )
    parser.add_argument(
        "--no-replace",
        action="store_true",
        help="Skip years whose indicator table already exists",
    )
    parser.add_argument(
        "--products",
        type=Path,
        default=Config.PRODUCTS_CONFIG,
        help="Product catalogue TOML (default: config/products.toml)",
    )
    parser.add_argument(
        "--export",
        choices=["csv", "parquet"],
        help="Also export normalised production/trade frames under data/processed/",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=Config.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOG_LEVEL)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main pipeline entry point."""
    args = parse_args(argv)
    logger = setup_logger("run_pipeline", level=args.log_level)

    try:
        years = parse_year_range(args.years)
        Config.validate()
        params = load_analysis_parameters(args.products)
        logger.info(
            "Loaded %d catalogue entries from %s (hash %s)",
            len(params.products),
            args.products,
            params.config_hash[:12],
        )

        processor = YearProcessor(
            params,
            raw_engine=create_db_engine(Config.RAW_DATABASE_URL),
            processed_engine=create_db_engine(Config.PROCESSED_DATABASE_URL),
            replace=not args.no_replace,
            export_format=args.export,
            log_file=Config.LOGS_DIR / "pipeline.log",
            log_level=args.log_level,
        )

        logger.info("=" * 60)
        logger.info("Processing %d years with %d workers", len(years), args.workers)
        logger.info("=" * 60)
        summary = run_batch(processor, years, args.workers)

        manifest_path = write_manifest(summary, args, params.config_hash)
        logger.info(
            "Done: %d succeeded, %d failed, %d skipped (manifest %s)",
            len(summary.succeeded),
            len(summary.failed),
            len(summary.skipped),
            manifest_path,
        )
        if summary.failed:
            logger.error("Failed years: %s", ", ".join(map(str, summary.failed)))
            return 1
        return 0

    except ConfigValidationError as e:
        for problem in e.problems:
            logger.error("Configuration problem: %s", problem)
        return 1

    except KeyboardInterrupt:
        logger.warning("Pipeline interrupted by user")
        return 130

    except Exception as e:
        logger.exception("Unexpected error during pipeline run: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
