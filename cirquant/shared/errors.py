"""Exception hierarchy and the per-year audit trail.

Fatal problems raise one of the exceptions below. Recoverable problems
(mapping gaps, unconvertible units, unparseable values, unmapped countries)
are logged and recorded in an AuditLog instead, so a year's result always
says what was left out and why.
"""

import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class CirQuantError(Exception):
    """Base class for all CirQuant errors."""


class ConfigValidationError(CirQuantError, ValueError):
    """The product catalogue or rate parameters are invalid.

    Raised before any fetch or processing step runs; nothing is written.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        summary = "; ".join(self.problems)
        super().__init__(f"Invalid configuration ({len(self.problems)} problem(s)): {summary}")


class MergeInvariantError(CirQuantError):
    """The fallback merge overwrote a value it was not allowed to touch."""


class PersistenceError(CirQuantError):
    """Writing a table to the destination database failed.

    The computed data was dumped to ``backup_path`` (if the dump succeeded).
    """

    def __init__(self, table_name: str, cause: Exception, backup_path: Path | None = None) -> None:
        self.table_name = table_name
        self.backup_path = backup_path
        message = f"Failed to persist table '{table_name}': {cause}"
        if backup_path is not None:
            message += f" (backup written to {backup_path})"
        super().__init__(message)


class QueryTimeoutError(CirQuantError, TimeoutError):
    """A transformation query exceeded its timeout."""


class AuditEventKind(str, Enum):
    MAPPING_GAP = "mapping_gap"
    UNCONVERTIBLE_UNIT = "unconvertible_unit"
    UNPARSEABLE_VALUE = "unparseable_value"
    MISSING_VALUE = "missing_value"
    UNMAPPED_COUNTRY = "unmapped_country"
    AMBIGUOUS_MAPPING = "ambiguous_mapping"
    FALLBACK_FILL = "fallback_fill"


@dataclass
class AuditLog:
    """Counts and a bounded sample of recoverable events for one year."""

    max_samples: int = 20
    counts: Counter = field(default_factory=Counter)
    samples: dict[str, list[str]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, kind: AuditEventKind, detail: str, count: int = 1) -> None:
        with self._lock:
            self.counts[kind.value] += count
            bucket = self.samples.setdefault(kind.value, [])
            if len(bucket) < self.max_samples:
                bucket.append(detail)

    def count(self, kind: AuditEventKind) -> int:
        return self.counts.get(kind.value, 0)

    def to_dict(self) -> dict:
        return {"counts": dict(self.counts), "samples": {k: list(v) for k, v in self.samples.items()}}
