"""Eurostat PRODCOM / COMEXT collectors (Comext dissemination API, JSON-stat 2.0).

Raw layer: one table per dataset and year, e.g. ``prodcom_ds_056121_2020`` or
``comext_ds_059341_2020``. Each JSON-stat cell becomes one long row with every
dimension preserved as text plus:

    value                  observation as text (":" or ":<flag>" when withheld)
    flag                   Eurostat status flag, "" if none
    dataset                dataset id
    fetch_timestamp        UTC ISO timestamp of the request
    original_product_code  product code exactly as returned by the API

Failed requests are retried with backoff; a chunk that still fails is logged
and listed in ``gaps`` so the rest of the year is kept.

API: https://wikis.ec.europa.eu/display/EUROSTATHELP/API+Statistics+-+data+query
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from sqlalchemy import Engine
from urllib3.util.retry import Retry

from cirquant.harmonization.codes import normalize_product_code
from cirquant.ingestion.collectors.base_collector import BaseCollector, RateLimiter, RetryPolicy
from cirquant.ingestion.preprocessors.extractor import COMEXT_SCHEMA, PRODCOM_SCHEMA, RawTableSchema
from cirquant.shared.config import Config
from cirquant.shared.utils import utc_now_iso


@dataclass(frozen=True)
class EurostatDataset:
    """Immutable descriptor for a Comext-hosted Eurostat dataset."""

    name: str
    schema: RawTableSchema
    description: str
    fixed_params: tuple[tuple[str, str], ...] = ()

    @property
    def dataset_id(self) -> str:
        return self.schema.dataset_id

    def table_name(self, year: int) -> str:
        return self.schema.table_name(year)


@dataclass(frozen=True)
class FetchGap:
    """A request that failed after every retry."""

    dataset_id: str
    year: int
    product_codes: tuple[str, ...]
    error: str


def jsonstat_to_frame(doc: dict) -> pd.DataFrame:
    """Flatten a JSON-stat 2.0 dataset into one row per reported cell.

    Cells with neither a value nor a status are absent from the output.
    """
    dims = list(doc.get("id") or [])
    sizes = list(doc.get("size") or [])
    if not dims or len(dims) != len(sizes) or 0 in sizes:
        return pd.DataFrame(columns=dims + ["value", "flag"])

    labels = []
    for dim in dims:
        index = doc["dimension"][dim]["category"]["index"]
        if isinstance(index, dict):
            index = [code for code, _ in sorted(index.items(), key=lambda item: item[1])]
        labels.append(np.asarray(index, dtype=object))

    values = _sparse(doc.get("value"))
    status = _sparse(doc.get("status"))
    positions = sorted(set(values) | set(status))
    if not positions:
        return pd.DataFrame(columns=dims + ["value", "flag"])

    coords = np.unravel_index(positions, sizes)
    frame = pd.DataFrame({dim: labels[i][coords[i]] for i, dim in enumerate(dims)})
    frame["flag"] = [str(status.get(p) or "") for p in positions]
    frame["value"] = [_value_text(values.get(p), status.get(p)) for p in positions]
    return frame


def _sparse(cells) -> dict[int, object]:
    # JSON-stat allows both the dense (list) and sparse (dict) encodings
    if not cells:
        return {}
    if isinstance(cells, list):
        return {i: v for i, v in enumerate(cells) if v is not None}
    return {int(k): v for k, v in cells.items() if v is not None}


def _value_text(value, flag) -> str:
    if value is None:
        return f":{flag}" if flag else ":"
    return str(value)


def chunked(codes: Sequence[str], size: int) -> Iterable[tuple[str, ...]]:
    for start in range(0, len(codes), size):
        yield tuple(codes[start : start + size])


class EurostatCollector(BaseCollector):
    """Collector for one Eurostat dataset served by the Comext dissemination API.

    Subclasses set DATASET. ``product_codes`` restricts the query to the
    catalogue's codes; requests are split into chunks of CHUNK_SIZE codes.
    """

    BASE_URL = "https://ec.europa.eu/eurostat/api/comext/dissemination/statistics/1.0/data"
    CHUNK_SIZE = 20
    CONNECT_RETRIES = 2

    DATASET: EurostatDataset

    def __init__(
        self,
        product_codes: Iterable[str] | None = None,
        engine: Engine | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        log_file: Path | None = None,
    ) -> None:
        super().__init__(
            engine=engine,
            rate_limiter=rate_limiter,
            retry_policy=retry_policy,
            log_file=log_file or Config.LOGS_DIR / "collectors" / f"{self.SOURCE_NAME}_collector.log",
        )
        self.product_codes = sorted(
            {normalize_product_code(c) for c in product_codes or ()} - {""}
        )
        self.timeout = timeout or Config.REQUEST_TIMEOUT
        self.gaps: list[FetchGap] = []
        self._session = self._create_session()
        self.logger.info(
            "%s initialized for %s (%d product codes)",
            self.__class__.__name__,
            self.DATASET.dataset_id,
            len(self.product_codes),
        )

    # ------------------------------------------------------------------
    # BaseCollector interface
    # ------------------------------------------------------------------

    def collect(self, year: int) -> pd.DataFrame:
        """Fetch one year of raw rows for the configured product codes.

        Returns:
            Long DataFrame (all columns text) with the metadata columns
            appended; empty when every request failed or nothing was reported.
        """
        dataset = self.DATASET
        self.logger.info("Collecting %s for %d", dataset.dataset_id, year)

        batches = list(chunked(self.product_codes, self.CHUNK_SIZE)) or [()]
        frames = []
        for codes in batches:
            try:
                frame = self._fetch(year, codes)
            except requests.exceptions.RequestException as exc:
                self.logger.error(
                    "Giving up on %s %d (%d codes): %s", dataset.dataset_id, year, len(codes), exc
                )
                self.gaps.append(FetchGap(dataset.dataset_id, year, codes, str(exc)))
                continue
            if not frame.empty:
                frames.append(frame)

        if not frames:
            self.logger.warning("No data returned for %s %d", dataset.dataset_id, year)
            return pd.DataFrame()

        raw = pd.concat(frames, ignore_index=True)
        raw["dataset"] = dataset.dataset_id
        raw["fetch_timestamp"] = utc_now_iso()
        raw["original_product_code"] = raw[dataset.schema.product_col]
        self.logger.info("Collected %d rows for %s %d", len(raw), dataset.dataset_id, year)
        return raw

    def collect_and_persist(self, year: int) -> int:
        """Fetch a year and replace its raw table. Returns rows written."""
        return self.persist(self.collect(year), self.DATASET.table_name(year))

    def health_check(self) -> bool:
        """Check API availability with a single-code request for the latest year."""
        params = self._params(Config.END_YEAR, tuple(self.product_codes[:1]))
        try:
            return self._session.get(self._build_url(), params=params, timeout=10).ok
        except requests.exceptions.RequestException:
            return False

    # ------------------------------------------------------------------
    # Private: HTTP layer
    # ------------------------------------------------------------------

    def _create_session(self) -> requests.Session:
        # Status-based retries go through retry_policy; the adapter only
        # retries failed connections.
        session = requests.Session()
        retry = Retry(
            total=None,
            connect=self.CONNECT_RETRIES,
            read=0,
            status=0,
            backoff_factor=self.retry_policy.base_delay,
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _build_url(self) -> str:
        return f"{self.BASE_URL}/{self.DATASET.dataset_id}"

    def _params(self, year: int, codes: tuple[str, ...]) -> list[tuple[str, str]]:
        params = [("format", "JSON"), ("lang", "EN"), ("time", str(year))]
        params.extend(self.DATASET.fixed_params)
        params.extend((self.DATASET.schema.product_col, code) for code in codes)
        return params

    def _fetch(self, year: int, codes: tuple[str, ...]) -> pd.DataFrame:
        """Fetch one chunk, retrying transient failures.

        Raises:
            ValueError: Unknown dataset or malformed query (HTTP 404 / API error body).
            requests.exceptions.RequestException: Still failing after all retries.
        """
        url = self._build_url()
        params = self._params(year, codes)

        def attempt() -> requests.Response:
            self.rate_limiter.acquire()
            self.logger.debug("GET %s %s", url, params)
            response = self._session.get(url, params=params, timeout=self.timeout)
            if response.status_code == 404:
                raise ValueError(f"Invalid Eurostat dataset or query: {self.DATASET.dataset_id}")
            response.raise_for_status()
            return response

        def on_retry(n: int, exc: Exception, wait: float) -> None:
            self.logger.warning(
                "Attempt %d/%d for %s %d failed (%s), retrying in %.1fs",
                n,
                self.retry_policy.max_attempts,
                self.DATASET.dataset_id,
                year,
                exc,
                wait,
            )

        response = self.retry_policy.run(attempt, on_retry=on_retry)
        if not response.content:
            self.logger.warning("Empty response body for %s %d", self.DATASET.dataset_id, year)
            return pd.DataFrame()

        doc = response.json()
        if "error" in doc:
            raise ValueError(f"Eurostat API error for {self.DATASET.dataset_id}: {doc['error']}")
        frame = jsonstat_to_frame(doc)
        self.logger.debug("Received %d cells for %s %d", len(frame), self.DATASET.dataset_id, year)
        return frame


class ProdcomCollector(EurostatCollector):
    """PRODCOM sold production, exports and imports by PRODCOM list (NACE Rev. 2)."""

    SOURCE_NAME = "prodcom"

    DATASET = EurostatDataset(
        name="prodcom_annual_sold",
        schema=PRODCOM_SCHEMA,
        description="Sold production, exports and imports by PRODCOM list - annual data",
        fixed_params=(("freq", "A"),),
    )


class ComextCollector(EurostatCollector):
    """COMEXT EU trade since 2002 by HS2-4-6, intra and extra EU partners."""

    SOURCE_NAME = "comext"
    CHUNK_SIZE = 10

    DATASET = EurostatDataset(
        name="comext_trade_hs6",
        schema=COMEXT_SCHEMA,
        description="EU trade since 2002 by HS2-4-6 and CN8",
        fixed_params=(
            ("freq", "A"),
            ("partner", "INT_EU27_2020"),
            ("partner", "EXT_EU27_2020"),
            ("flow", "1"),
            ("flow", "2"),
            ("indicators", "VALUE_EUR"),
            ("indicators", "QUANTITY_KG"),
        ),
    )


COLLECTORS: dict[str, type[EurostatCollector]] = {
    ProdcomCollector.SOURCE_NAME: ProdcomCollector,
    ComextCollector.SOURCE_NAME: ComextCollector,
}
