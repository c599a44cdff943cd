"""Country code mapping between PRODCOM/COMEXT reporters and ISO alpha-2.

PRODCOM declarants use numeric statistical-office codes (``004`` = Germany);
COMEXT reporters are already ISO-like but carry their own aggregate codes.
Both are mapped onto ISO alpha-2 with ``EU27_2020`` as the reserved EU
aggregate sentinel.
"""

import logging
import threading
from dataclasses import dataclass

import pandas as pd

from cirquant.harmonization.codes import normalize_country_code
from cirquant.shared.errors import ConfigValidationError

logger = logging.getLogger(__name__)

EU_AGGREGATE = "EU27_2020"

# Other aggregates that may appear as reporters; never treated as countries.
NON_COUNTRY_AGGREGATES = frozenset({"EU15", "EU25", "EU27_2007", "EU28"})

# Member states making up EU27_2020, in canonical codes (Greece as GR).
EU27_2020_MEMBERS = frozenset(
    {
        "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "ES",
        "FI", "FR", "GR", "HR", "HU", "IE", "IT", "LT", "LU",
        "LV", "MT", "NL", "PL", "PT", "RO", "SE", "SI", "SK",
    }
)

PRODCOM = "prodcom"
COMEXT = "comext"

PRODCOM_TO_ISO: dict[str, str] = {
    "001": "FR",
    "003": "NL",
    "004": "DE",
    "005": "IT",
    "006": "UK",
    "007": "IE",
    "008": "DK",
    "009": "GR",
    "010": "PT",
    "011": "ES",
    "017": "BE",
    "018": "LU",
    "024": "IS",
    "028": "NO",
    "030": "SE",
    "032": "FI",
    "038": "AT",
    "046": "MT",
    "053": "EE",
    "054": "LV",
    "055": "LT",
    "060": "PL",
    "061": "CZ",
    "063": "SK",
    "064": "HU",
    "066": "RO",
    "068": "BG",
    "091": "SI",
    "092": "HR",
    "093": "BA",
    "096": "MK",
    "097": "ME",
    "098": "RS",
    "600": "CY",
    "1110": "EU15",
    "2027": EU_AGGREGATE,
    "EU27TOTALS": EU_AGGREGATE,
    "EU15TOTALS": "EU15",
}

COMEXT_SPECIAL: dict[str, str] = {
    "EU27": EU_AGGREGATE,
    "EU27_2020": EU_AGGREGATE,
    "EU": EU_AGGREGATE,
    "EU27TOTALS": EU_AGGREGATE,
    "GB": "UK",
    "EL": "GR",
}

COUNTRY_NAMES: dict[str, str] = {
    "FR": "France",
    "NL": "Netherlands",
    "DE": "Germany",
    "IT": "Italy",
    "UK": "United Kingdom",
    "IE": "Ireland",
    "DK": "Denmark",
    "GR": "Greece",
    "PT": "Portugal",
    "ES": "Spain",
    "BE": "Belgium",
    "LU": "Luxembourg",
    "IS": "Iceland",
    "NO": "Norway",
    "SE": "Sweden",
    "FI": "Finland",
    "AT": "Austria",
    "MT": "Malta",
    "EE": "Estonia",
    "LV": "Latvia",
    "LT": "Lithuania",
    "PL": "Poland",
    "CZ": "Czechia",
    "SK": "Slovakia",
    "HU": "Hungary",
    "RO": "Romania",
    "BG": "Bulgaria",
    "SI": "Slovenia",
    "HR": "Croatia",
    "BA": "Bosnia and Herzegovina",
    "MK": "North Macedonia",
    "ME": "Montenegro",
    "RS": "Serbia",
    "CY": "Cyprus",
    "EU15": "EU15 Total",
    EU_AGGREGATE: "EU27 Total (2020)",
}

# Native codes that legitimately denote the same country under different codings.
HISTORICAL_ALIASES: frozenset[frozenset[str]] = frozenset(
    {
        frozenset({"GB", "UK"}),
        frozenset({"EL", "GR"}),
        frozenset({"2027", "EU27TOTALS"}),
        frozenset({"EU27", "EU27_2020", "EU", "EU27TOTALS"}),
        frozenset({"1110", "EU15TOTALS"}),
    }
)


@dataclass(frozen=True)
class CountryMapping:
    """One native code of one source system and its canonical ISO code."""

    source_system: str
    native_code: str
    iso_code: str
    display_name: str


def _is_alias_group(codes: set[str]) -> bool:
    return any(codes <= group for group in HISTORICAL_ALIASES)


class CountryCodeMapper:
    """Static bidirectional lookup between native reporter codes and ISO codes.

    Unmapped codes pass through unchanged (with one warning per code): a row is
    never dropped for lack of a country mapping.
    """

    def __init__(self, mappings: list[CountryMapping] | None = None) -> None:
        self.mappings = list(mappings) if mappings is not None else default_country_mappings()
        self.validate(self.mappings)

        self._to_iso: dict[tuple[str, str], str] = {
            (m.source_system, m.native_code): m.iso_code for m in self.mappings
        }
        self._to_native: dict[tuple[str, str], str] = {}
        for m in self.mappings:
            self._to_native.setdefault((m.source_system, m.iso_code), m.native_code)

        self._warned: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    @staticmethod
    def validate(mappings: list[CountryMapping]) -> None:
        """Reject duplicate native codes and ISO collisions within a source system.

        Raises:
            ConfigValidationError: Listing every problem found.
        """
        problems: list[str] = []
        seen_native: set[tuple[str, str]] = set()
        by_iso: dict[tuple[str, str], set[str]] = {}

        for m in mappings:
            key = (m.source_system, m.native_code)
            if key in seen_native:
                problems.append(f"duplicate native code {m.native_code!r} in {m.source_system}")
            seen_native.add(key)
            by_iso.setdefault((m.source_system, m.iso_code), set()).add(m.native_code)

        for (system, iso), natives in sorted(by_iso.items()):
            if len(natives) > 1 and not _is_alias_group(natives):
                problems.append(
                    f"{system}: native codes {sorted(natives)} all map to {iso!r}"
                )

        if problems:
            raise ConfigValidationError(problems)

    @staticmethod
    def _canonical(source_system: str, native_code: str) -> str:
        code = normalize_country_code(native_code)
        if source_system == PRODCOM and code.isdigit() and len(code) < 3:
            # declarant codes lose their leading zeros when stored as integers
            code = code.zfill(3)
        return code

    def to_iso(self, source_system: str, native_code: str) -> str:
        """Map a native reporter code to ISO alpha-2 (or the EU sentinel).

        COMEXT codes that are not special aggregates are already ISO and are
        returned normalised. Anything else unmapped is returned unchanged.
        """
        code = self._canonical(source_system, native_code)
        iso = self._to_iso.get((source_system, code))
        if iso is not None:
            return iso

        if source_system == COMEXT and code.isalpha() and len(code) == 2:
            return code

        with self._lock:
            if (source_system, code) not in self._warned:
                self._warned.add((source_system, code))
                logger.warning("No mapping found for country code: %s (source: %s)", code, source_system)
        return native_code

    def has_mapping(self, source_system: str, native_code: str) -> bool:
        """True when ``to_iso`` resolves the code without falling through."""
        code = self._canonical(source_system, native_code)
        if (source_system, code) in self._to_iso:
            return True
        return source_system == COMEXT and code.isalpha() and len(code) == 2

    def to_native(self, source_system: str, iso_code: str) -> str | None:
        return self._to_native.get((source_system, normalize_country_code(iso_code)))

    def map_series(self, source_system: str, codes: pd.Series) -> pd.Series:
        """Vectorised ``to_iso`` over a Series (one lookup per distinct code)."""
        lookup = {code: self.to_iso(source_system, code) for code in codes.dropna().unique()}
        return codes.map(lookup)

    @staticmethod
    def is_eu_aggregate(iso_code: str) -> bool:
        return iso_code == EU_AGGREGATE

    @staticmethod
    def is_country(iso_code: str) -> bool:
        return iso_code != EU_AGGREGATE and iso_code not in NON_COUNTRY_AGGREGATES

    @staticmethod
    def is_eu_member(iso_code: str) -> bool:
        return iso_code in EU27_2020_MEMBERS

    def as_dataframe(self) -> pd.DataFrame:
        """Mapping table for the ``country_code_mapping`` database table."""
        rows = [
            {
                "source_system": m.source_system,
                "native_code": m.native_code,
                "iso_code": m.iso_code,
                "country_name": m.display_name,
            }
            for m in self.mappings
        ]
        return (
            pd.DataFrame(rows, columns=["source_system", "native_code", "iso_code", "country_name"])
            .sort_values(["source_system", "native_code"])
            .reset_index(drop=True)
        )


def default_country_mappings() -> list[CountryMapping]:
    """Built-in PRODCOM and COMEXT mappings."""
    mappings = [
        CountryMapping(PRODCOM, native, iso, COUNTRY_NAMES.get(iso, ""))
        for native, iso in PRODCOM_TO_ISO.items()
    ]
    mappings.extend(
        CountryMapping(COMEXT, native, iso, COUNTRY_NAMES.get(iso, ""))
        for native, iso in COMEXT_SPECIAL.items()
    )
    return mappings
