"""Unit tests for the Eurostat collectors, retry policy and rate limiter."""

from unittest.mock import Mock

import pandas as pd
import pytest
import requests

from cirquant.ingestion.collectors import (
    ComextCollector,
    ProdcomCollector,
    RateLimiter,
    RetryPolicy,
)
from cirquant.ingestion.collectors.eurostat_collector import chunked, jsonstat_to_frame
from cirquant.shared.db import read_table

# ---------------------------------------------------------------------------
# Sample Data
# ---------------------------------------------------------------------------

SAMPLE_PRODCOM_DOC = {
    "version": "2.0",
    "class": "dataset",
    "id": ["freq", "prccode", "decl", "indicators", "time"],
    "size": [1, 1, 2, 2, 1],
    "dimension": {
        "freq": {"category": {"index": {"A": 0}}},
        "prccode": {"category": {"index": {"28211330": 0}}},
        "decl": {"category": {"index": {"004": 0, "001": 1}}},
        "indicators": {"category": {"index": {"PRODQNT": 0, "PRODVAL": 1}}},
        "time": {"category": {"index": {"2020": 0}}},
    },
    "value": {"0": 1000, "1": 5000000, "3": 7},
    "status": {"2": "c"},
}


def make_response(doc: dict | None = None, status_code: int = 200) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.content = b"{}" if doc is not None else b""
    response.json.return_value = doc
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code}")
    return response


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0)


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(rate=1000.0, capacity=100)


@pytest.fixture
def prodcom(tmp_path, engine, limiter, fast_policy) -> ProdcomCollector:
    collector = ProdcomCollector(
        product_codes=["28.21.13.30"],
        engine=engine,
        rate_limiter=limiter,
        retry_policy=fast_policy,
        log_file=tmp_path / "prodcom.log",
    )
    collector._session = Mock()
    return collector


# ---------------------------------------------------------------------------
# Retry policy and rate limiter
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_backoff_delays(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=3.0, jitter=0.0)
        assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]

    def test_retries_until_success(self):
        calls, sleeps = [], []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise requests.exceptions.ConnectionError("down")
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0.0)
        assert policy.run(flaky, sleep=sleeps.append) == "ok"
        assert sleeps == [1.0, 2.0]

    def test_raises_last_error(self):
        policy = RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0)
        func = Mock(side_effect=requests.exceptions.Timeout("slow"))
        on_retry = Mock()

        with pytest.raises(requests.exceptions.Timeout):
            policy.run(func, on_retry=on_retry, sleep=lambda _: None)
        assert func.call_count == 2
        assert on_retry.call_count == 1

    def test_other_errors_not_retried(self):
        func = Mock(side_effect=ValueError("bad query"))
        with pytest.raises(ValueError):
            RetryPolicy().run(func, sleep=lambda _: None)
        assert func.call_count == 1


class TestRateLimiter:
    def test_waits_for_next_token(self):
        now = [0.0]

        def sleep(seconds):
            now[0] += seconds

        limiter = RateLimiter(rate=2.0, clock=lambda: now[0], sleep=sleep)
        assert limiter.acquire() == 0.0
        assert limiter.acquire() == pytest.approx(0.5)
        assert now[0] == pytest.approx(0.5)

    def test_burst_capacity(self):
        limiter = RateLimiter(rate=1.0, capacity=3, clock=lambda: 0.0, sleep=Mock())
        assert [limiter.acquire() for _ in range(3)] == [0.0, 0.0, 0.0]

    def test_from_delay(self):
        assert RateLimiter.from_delay(5.0).rate == pytest.approx(0.2)

    @pytest.mark.parametrize("rate, capacity", [(0.0, 1), (1.0, 0)])
    def test_invalid(self, rate, capacity):
        with pytest.raises(ValueError):
            RateLimiter(rate=rate, capacity=capacity)


# ---------------------------------------------------------------------------
# JSON-stat parsing
# ---------------------------------------------------------------------------


class TestJsonStatToFrame:
    def test_sparse_document(self):
        df = jsonstat_to_frame(SAMPLE_PRODCOM_DOC)

        assert list(df.columns) == ["freq", "prccode", "decl", "indicators", "time", "flag", "value"]
        assert len(df) == 4
        rows = {(r.decl, r.indicators): (r.value, r.flag) for r in df.itertuples()}
        assert rows[("004", "PRODQNT")] == ("1000", "")
        assert rows[("004", "PRODVAL")] == ("5000000", "")
        assert rows[("001", "PRODQNT")] == (":c", "c")
        assert rows[("001", "PRODVAL")] == ("7", "")

    def test_dense_values_and_list_index(self):
        doc = {
            "id": ["product", "flow"],
            "size": [1, 2],
            "dimension": {
                "product": {"category": {"index": ["841869"]}},
                "flow": {"category": {"index": ["1", "2"]}},
            },
            "value": [12.5, None],
        }
        df = jsonstat_to_frame(doc)

        assert df["flow"].tolist() == ["1"]
        assert df["value"].tolist() == ["12.5"]

    def test_empty_document(self):
        df = jsonstat_to_frame({"id": ["a"], "size": [0], "dimension": {}})
        assert df.empty
        assert "value" in df.columns

    def test_chunked(self):
        assert list(chunked(["a", "b", "c"], 2)) == [("a", "b"), ("c",)]


# ---------------------------------------------------------------------------
# Collectors
# ---------------------------------------------------------------------------


class TestProdcomCollector:
    def test_init_normalizes_codes(self, prodcom):
        assert prodcom.product_codes == ["28211330"]
        assert prodcom.DATASET.table_name(2020) == "prodcom_ds_056121_2020"

    def test_request_params(self, prodcom):
        prodcom._session.get.return_value = make_response(SAMPLE_PRODCOM_DOC)
        prodcom.collect(2020)

        url = prodcom._session.get.call_args.args[0]
        params = prodcom._session.get.call_args.kwargs["params"]
        assert url.endswith("/ds-056121")
        assert ("time", "2020") in params
        assert ("prccode", "28211330") in params
        assert ("freq", "A") in params

    def test_collect_adds_metadata(self, prodcom):
        prodcom._session.get.return_value = make_response(SAMPLE_PRODCOM_DOC)
        df = prodcom.collect(2020)

        assert len(df) == 4
        assert set(df["dataset"]) == {"ds-056121"}
        assert df["original_product_code"].tolist() == df["prccode"].tolist()
        assert df["fetch_timestamp"].str.endswith("Z").all()

    def test_failed_chunk_becomes_gap(self, prodcom):
        prodcom._session.get.side_effect = requests.exceptions.ConnectionError("down")
        df = prodcom.collect(2020)

        assert df.empty
        assert prodcom._session.get.call_count == 2
        assert len(prodcom.gaps) == 1
        gap = prodcom.gaps[0]
        assert (gap.dataset_id, gap.year, gap.product_codes) == ("ds-056121", 2020, ("28211330",))

    def test_server_error_retried(self, prodcom):
        prodcom._session.get.side_effect = [
            make_response(status_code=503),
            make_response(SAMPLE_PRODCOM_DOC),
        ]
        assert len(prodcom.collect(2020)) == 4

    def test_not_found_raises(self, prodcom):
        prodcom._session.get.return_value = make_response(status_code=404)
        with pytest.raises(ValueError, match="Invalid Eurostat dataset"):
            prodcom.collect(2020)

    def test_api_error_body_raises(self, prodcom):
        prodcom._session.get.return_value = make_response({"error": {"label": "bad time"}})
        with pytest.raises(ValueError, match="bad time"):
            prodcom.collect(2020)

    def test_collect_and_persist(self, prodcom, engine):
        prodcom._session.get.return_value = make_response(SAMPLE_PRODCOM_DOC)
        assert prodcom.collect_and_persist(2020) == 4

        stored = read_table(engine, "prodcom_ds_056121_2020")
        assert len(stored) == 4
        assert stored["value"].tolist() == ["1000", "5000000", ":c", "7"]

    def test_persist_without_engine(self, tmp_path, limiter):
        collector = ProdcomCollector(rate_limiter=limiter, log_file=tmp_path / "p.log")
        with pytest.raises(ValueError, match="no database engine"):
            collector.persist(pd.DataFrame({"a": [1]}), "t")

    def test_persist_empty_frame(self, prodcom):
        assert prodcom.persist(pd.DataFrame(), "prodcom_ds_056121_2020") == 0

    def test_export_csv(self, prodcom, tmp_path):
        prodcom._session.get.return_value = make_response(SAMPLE_PRODCOM_DOC)
        path = prodcom.export_csv(prodcom.collect(2020), "prodcom_ds_056121_2020", tmp_path / "raw")

        assert path.name.startswith("prodcom_ds_056121_2020_")
        assert len(pd.read_csv(path)) == 4

    def test_health_check(self, prodcom):
        prodcom._session.get.return_value = Mock(ok=True)
        assert prodcom.health_check() is True

        prodcom._session.get.side_effect = requests.exceptions.ConnectionError("down")
        assert prodcom.health_check() is False


class TestComextCollector:
    def test_codes_chunked(self, tmp_path, limiter, fast_policy):
        codes = [f"8418{i:02d}" for i in range(25)]
        collector = ComextCollector(
            product_codes=codes,
            rate_limiter=limiter,
            retry_policy=fast_policy,
            log_file=tmp_path / "comext.log",
        )
        collector._session = Mock()
        collector._session.get.return_value = make_response({"id": [], "size": []})

        assert collector.collect(2020).empty
        assert collector._session.get.call_count == 3

    def test_fixed_params(self, tmp_path, limiter):
        collector = ComextCollector(
            product_codes=["8541.43"], rate_limiter=limiter, log_file=tmp_path / "comext.log"
        )
        params = collector._params(2020, ("854143",))

        assert ("product", "854143") in params
        assert ("partner", "INT_EU27_2020") in params
        assert ("partner", "EXT_EU27_2020") in params
        assert ("indicators", "QUANTITY_KG") in params
