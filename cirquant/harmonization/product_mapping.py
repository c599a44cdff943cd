"""PRODCOM <-> HS product code mapping built from the product catalogue.

The relation is many-to-many (``26.20`` "Full ICT" spans nine HS codes, and an
HS code such as ``8471.49`` appears under more than one PRODCOM heading) and
epoch-aware: each catalogue entry is valid for a range of years.
"""

import logging
import threading

import pandas as pd

from cirquant.harmonization.codes import denormalize_for_display, normalize_product_code
from cirquant.shared.catalogue import ProductCatalogEntry
from cirquant.shared.errors import AuditEventKind, AuditLog

logger = logging.getLogger(__name__)

MAPPING_COLUMNS = [
    "product_id",
    "product",
    "prodcom_code",
    "hs_codes",
    "prodcom_code_clean",
    "hs_codes_clean",
    "valid_from_year",
    "valid_to_year",
]


class ProductMappingTable:
    """Epoch-aware lookup between production and trade codes.

    Args:
        entries: Validated catalogue entries.
        audit: Optional audit log receiving mapping gaps and ambiguities.
    """

    def __init__(
        self,
        entries: tuple[ProductCatalogEntry, ...] | list[ProductCatalogEntry],
        audit: AuditLog | None = None,
    ) -> None:
        self.entries = tuple(entries)
        self.audit = audit
        self._by_production: dict[str, list[ProductCatalogEntry]] = {}
        self._by_trade: dict[str, list[ProductCatalogEntry]] = {}
        for entry in self.entries:
            self._by_production.setdefault(entry.production_code, []).append(entry)
            for code in entry.trade_codes:
                self._by_trade.setdefault(code, []).append(entry)

        self._reported: set[tuple[str, str, int]] = set()
        self._lock = threading.Lock()

    def with_audit(self, audit: AuditLog) -> "ProductMappingTable":
        """A table sharing these entries that records into ``audit``."""
        return ProductMappingTable(self.entries, audit)

    def entry_for(self, production_code: str, year: int) -> ProductCatalogEntry | None:
        code = normalize_product_code(production_code)
        for entry in self._by_production.get(code, []):
            if entry.covers(year):
                return entry
        return None

    def production_to_trade_codes(self, production_code: str, year: int) -> frozenset[str]:
        """Trade codes mapped to a production code in ``year``.

        Returns an empty set (and records a mapping gap) when no catalogue
        entry covers the code for that year.
        """
        entry = self.entry_for(production_code, year)
        if entry is None:
            code = normalize_product_code(production_code)
            self._report(
                AuditEventKind.MAPPING_GAP,
                code,
                year,
                "No catalogue entry covers PRODCOM code %s in %d",
            )
            return frozenset()
        return entry.trade_codes

    def trade_to_production_code(self, trade_code: str, year: int) -> str | None:
        """Production code for a trade code in ``year``.

        When several catalogue entries claim the trade code, the narrowest
        validity window wins and remaining ties go to the lowest product id.
        """
        code = normalize_product_code(trade_code)
        candidates = [e for e in self._by_trade.get(code, []) if e.covers(year)]
        if not candidates:
            return None
        if len(candidates) > 1:
            self._report(
                AuditEventKind.AMBIGUOUS_MAPPING,
                code,
                year,
                "HS code %s maps to several PRODCOM codes in %d",
            )
        best = min(candidates, key=lambda e: (e.epoch_width, e.product_id))
        return best.production_code

    def production_codes(self, year: int) -> list[str]:
        """Production codes with a catalogue entry covering ``year``, sorted."""
        return sorted({e.production_code for e in self.entries if e.covers(year)})

    def as_dataframe(self, year: int | None = None) -> pd.DataFrame:
        """Rows for the ``product_mapping_codes`` table.

        HS codes are comma-joined in sorted order; with ``year`` only the
        entries covering that year are included.
        """
        rows = []
        for entry in self.entries:
            if year is not None and not entry.covers(year):
                continue
            trade_codes = sorted(entry.trade_codes)
            rows.append(
                {
                    "product_id": entry.product_id,
                    "product": entry.product_name,
                    "prodcom_code": denormalize_for_display(entry.production_code),
                    "hs_codes": ", ".join(denormalize_for_display(c) for c in trade_codes),
                    "prodcom_code_clean": entry.production_code,
                    "hs_codes_clean": ",".join(trade_codes),
                    "valid_from_year": entry.valid_from_year,
                    "valid_to_year": entry.valid_to_year,
                }
            )
        return pd.DataFrame(rows, columns=MAPPING_COLUMNS)

    def _report(self, kind: AuditEventKind, code: str, year: int, message: str) -> None:
        with self._lock:
            first = (kind.value, code, year) not in self._reported
            self._reported.add((kind.value, code, year))
        if not first:
            return
        logger.warning(message, code, year)
        if self.audit is not None:
            self.audit.record(kind, f"{code}@{year}")
