"""Fetch raw PRODCOM / COMEXT tables into the raw database.

Usage:
    # All catalogue products, configured year range, both datasets
    python -m cirquant.ingestion.run_fetch

    # Single dataset, custom years
    python -m cirquant.ingestion.run_fetch --years 2018-2020 --datasets comext

    # Health check only
    python -m cirquant.ingestion.run_fetch --health-check

Example:
    $ python -m cirquant.ingestion.run_fetch --years 2020 --datasets prodcom comext
    [INFO] Fetching 2 datasets x 1 years with 2 workers
    [INFO] Saved 1520 rows to table prodcom_ds_056121_2020
    [INFO] Saved 840 rows to table comext_ds_059341_2020
    [INFO] Fetch complete: 2 tables written, 0 failed, 0 gaps
"""

import argparse
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from cirquant.ingestion.collectors import COLLECTORS, RateLimiter, RetryPolicy
from cirquant.shared.catalogue import load_analysis_parameters
from cirquant.shared.config import Config
from cirquant.shared.db import create_db_engine
from cirquant.shared.errors import CirQuantError
from cirquant.shared.utils import parse_year_range, setup_logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Fetch raw Eurostat PRODCOM and COMEXT data",
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
        "--datasets",
        nargs="+",
        choices=sorted(COLLECTORS),
        default=sorted(COLLECTORS, reverse=True),
        help="Datasets to fetch (default: prodcom comext)",
    )
    parser.add_argument(
        "--products",
        type=Path,
        default=Config.PRODUCTS_CONFIG,
        help="Product catalogue TOML (default: config/products.toml)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=Config.MAX_WORKERS,
        help="Parallel fetch tasks (default: MAX_WORKERS)",
    )
    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Run health check only and exit",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Fetch every (dataset, year) pair; a failed pair does not stop the others."""
    args = parse_args(argv)
    logger = setup_logger("run_fetch", level="DEBUG" if args.verbose else Config.LOG_LEVEL)

    try:
        years = parse_year_range(args.years)
        params = load_analysis_parameters(args.products)
        codes = {
            "prodcom": {entry.production_code for entry in params.products},
            "comext": {code for entry in params.products for code in entry.trade_codes},
        }

        # One limiter for every thread keeps the whole run under REQUEST_DELAY
        limiter = RateLimiter.from_delay(Config.REQUEST_DELAY)
        retry = RetryPolicy(max_attempts=Config.MAX_RETRIES)
        engine = create_db_engine(Config.RAW_DATABASE_URL)

        def make_collector(source: str):
            return COLLECTORS[source](
                product_codes=codes[source],
                engine=engine,
                rate_limiter=limiter,
                retry_policy=retry,
            )

        if args.health_check:
            failed = [s for s in args.datasets if not make_collector(s).health_check()]
            if failed:
                logger.error("Health check failed for: %s", ", ".join(failed))
                return 1
            logger.info("Health check: PASSED")
            return 0

        tasks = [(source, year) for source in args.datasets for year in years]
        logger.info(
            "Fetching %d datasets x %d years with %d workers",
            len(args.datasets),
            len(years),
            args.workers,
        )

        written, failed, gaps = 0, [], []

        def fetch(source: str, year: int):
            collector = make_collector(source)
            rows = collector.collect_and_persist(year)
            return rows, collector.gaps

        with ThreadPoolExecutor(max_workers=max(1, args.workers)) as pool:
            futures = {pool.submit(fetch, source, year): (source, year) for source, year in tasks}
            for future in as_completed(futures):
                source, year = futures[future]
                try:
                    rows, task_gaps = future.result()
                except (CirQuantError, ValueError) as e:
                    logger.error("Fetch failed for %s %d: %s", source, year, e)
                    failed.append((source, year))
                    continue
                written += 1 if rows else 0
                gaps.extend(task_gaps)

        for gap in gaps:
            logger.warning(
                "Data gap: %s %d, %d codes (%s)",
                gap.dataset_id,
                gap.year,
                len(gap.product_codes),
                gap.error,
            )
        logger.info(
            "Fetch complete: %d tables written, %d failed, %d gaps",
            written,
            len(failed),
            len(gaps),
        )
        return 1 if failed else 0

    except KeyboardInterrupt:
        logger.warning("Fetch interrupted by user")
        return 130

    except Exception as e:
        logger.exception("Unexpected error during fetch: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
