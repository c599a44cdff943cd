"""Abstract base class for the Eurostat raw-data collectors.

Raw data contract:
- one table per (dataset, year) named {source}_{dataset_id}_{year}
  (e.g. prodcom_ds_056121_2020)
- all source fields preserved, ``value`` stored as text
- metadata columns: dataset, fetch_timestamp, original_product_code

Collectors are responsible ONLY for raw data collection. Harmonisation is
handled by the preprocessors.
"""

import random
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import pandas as pd
import requests
from sqlalchemy import Engine

from cirquant.shared.config import Config
from cirquant.shared.db.storage import replace_table
from cirquant.shared.utils import setup_logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff and jitter.

    The delay before retry ``n`` (1-based) is
    ``min(max_delay, base_delay * multiplier ** (n - 1)) + uniform(0, jitter)``.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 1.0
    retry_on: tuple[type[Exception], ...] = (requests.exceptions.RequestException,)

    def delay(self, attempt: int) -> float:
        backoff = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        return backoff + random.uniform(0, self.jitter)

    def run(
        self,
        func: Callable[[], T],
        on_retry: Callable[[int, Exception, float], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Call ``func`` until it succeeds or attempts run out.

        Raises:
            The last exception once ``max_attempts`` calls have failed.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except self.retry_on as exc:
                if attempt == self.max_attempts:
                    raise
                wait = self.delay(attempt)
                if on_retry is not None:
                    on_retry(attempt, exc, wait)
                sleep(wait)
        raise RuntimeError("RetryPolicy.max_attempts must be at least 1")


class RateLimiter:
    """Thread-safe token bucket shared by every collector of a run.

    Args:
        rate: Tokens added per second.
        capacity: Maximum burst size.
    """

    def __init__(
        self,
        rate: float,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0 or capacity < 1:
            raise ValueError("RateLimiter needs a positive rate and a capacity of at least 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    @classmethod
    def from_delay(cls, delay: float) -> "RateLimiter":
        """One request every ``delay`` seconds."""
        return cls(rate=1.0 / delay if delay > 0 else 1000.0)

    def acquire(self) -> float:
        """Take one token, blocking until available. Returns the time waited."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
                self._updated = now
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return waited
                wait = (1.0 - self._tokens) / self.rate
            self._sleep(wait)
            waited += wait


class BaseCollector(ABC):
    """Base class for all data collectors.

    Subclasses must define:
        SOURCE_NAME (str): identifier used in table naming ("prodcom", "comext").

    Subclasses must implement:
        collect(): fetch one year of raw rows.
        health_check(): verify the source is reachable.
    """

    SOURCE_NAME: str

    def __init__(
        self,
        engine: Engine | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        backup_dir: Path | None = None,
        log_file: Path | None = None,
    ) -> None:
        """Initialize the collector.

        Args:
            engine: Raw database engine for ``persist`` (None disables it).
            rate_limiter: Shared limiter (default: one request per REQUEST_DELAY).
            retry_policy: Retry policy for HTTP calls (default: MAX_RETRIES attempts).
            backup_dir: Directory for CSV dumps when the database write fails.
            log_file: Optional path for file-based logging.
        """
        self.engine = engine
        self.rate_limiter = rate_limiter or RateLimiter.from_delay(Config.REQUEST_DELAY)
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=Config.MAX_RETRIES)
        self.backup_dir = backup_dir or Config.DATA_DIR / "backup"
        self.logger = setup_logger(self.__class__.__name__, log_file)

    @abstractmethod
    def collect(self, year: int) -> pd.DataFrame:
        """Collect one year of raw rows.

        Returns:
            Raw long DataFrame; empty when nothing could be fetched.
        """
        ...

    @abstractmethod
    def health_check(self) -> bool:
        """Verify the data source is reachable and responding.

        Returns:
            True if the source is available, False otherwise.
        """
        ...

    def persist(self, df: pd.DataFrame, table_name: str) -> int:
        """Write a fetched year to the raw database, replacing a previous fetch.

        Returns:
            Rows written (0 for an empty frame).

        Raises:
            ValueError: If no engine was configured.
            PersistenceError: If the write failed; the rows were dumped to CSV.
        """
        if self.engine is None:
            raise ValueError(f"{self.__class__.__name__} has no database engine configured")
        if df.empty:
            self.logger.warning("No data to save for %s", table_name)
            return 0
        written = replace_table(self.engine, table_name, df, backup_dir=self.backup_dir)
        self.logger.info("Saved %d rows to table %s", written, table_name)
        return written

    def export_csv(self, df: pd.DataFrame, table_name: str, output_dir: Path) -> Path:
        """Export raw rows to {output_dir}/{table_name}_{YYYYMMDD}.csv.

        Raises:
            ValueError: If the DataFrame is empty.
        """
        if df.empty:
            raise ValueError(f"Cannot export empty DataFrame for '{table_name}'")

        output_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y%m%d")
        path = output_dir / f"{table_name}_{date_str}.csv"
        df.to_csv(path, index=False, encoding="utf-8")
        self.logger.info("Exported %d records to %s", len(df), path)
        return path


__all__ = ["BaseCollector", "RateLimiter", "RetryPolicy"]
