"""Tests for the exception hierarchy and the audit log."""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from cirquant.shared.errors import (
    AuditEventKind,
    AuditLog,
    CirQuantError,
    ConfigValidationError,
    PersistenceError,
    QueryTimeoutError,
)


class TestExceptions:
    def test_config_error_is_value_error(self):
        err = ConfigValidationError(["a", "b"])
        assert isinstance(err, CirQuantError)
        assert isinstance(err, ValueError)
        assert err.problems == ["a", "b"]
        assert "2 problem(s)" in str(err)

    def test_persistence_error_carries_backup(self):
        err = PersistenceError("harmonized_2020", OSError("disk full"), Path("/tmp/b.csv"))
        assert err.table_name == "harmonized_2020"
        assert err.backup_path == Path("/tmp/b.csv")
        assert "backup written to" in str(err)

    def test_query_timeout_is_timeout_error(self):
        assert issubclass(QueryTimeoutError, TimeoutError)


class TestAuditLog:
    def test_counts_and_samples(self):
        audit = AuditLog(max_samples=2)
        for i in range(3):
            audit.record(AuditEventKind.MAPPING_GAP, f"code{i}")
        audit.record(AuditEventKind.MISSING_VALUE, "PRODQNT", count=5)

        assert audit.count(AuditEventKind.MAPPING_GAP) == 3
        assert audit.count(AuditEventKind.MISSING_VALUE) == 5
        assert audit.count(AuditEventKind.FALLBACK_FILL) == 0
        assert audit.samples["mapping_gap"] == ["code0", "code1"]

    def test_to_dict(self):
        audit = AuditLog()
        audit.record(AuditEventKind.UNMAPPED_COUNTRY, "prodcom:999")
        assert audit.to_dict() == {
            "counts": {"unmapped_country": 1},
            "samples": {"unmapped_country": ["prodcom:999"]},
        }

    def test_thread_safe_counting(self):
        audit = AuditLog()
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: audit.record(AuditEventKind.FALLBACK_FILL, "x"), range(400)))
        assert audit.count(AuditEventKind.FALLBACK_FILL) == 400
