"""Product catalogue and analysis parameters.

The catalogue file (``config/products.toml``) lists every product under
analysis: its PRODCOM code, the HS codes it maps to in COMEXT, an optional
average weight per piece, its circularity rates and, where known, its material
composition. It is parsed once per run into an immutable ``AnalysisParameters``
object that is passed explicitly through the pipeline.

Example product entry::

    [products.heat_pumps]
    id = 1
    name = "Heat pumps"
    prodcom_codes = ["28.21.13.30"]
    hs_codes = ["8418.69"]

    [products.heat_pumps.parameters]
    weight_kg = 100.0
    unit = "piece"
    current_circularity_rate = 4.0
    potential_circularity_rate = 30.0

A product whose codes changed over time lists its code sets under
``[[products.<key>.epochs]]`` with ``valid_from``/``valid_to`` years instead.
"""

import hashlib
import logging
import math
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import pandas as pd

from cirquant.harmonization.codes import normalize_product_code
from cirquant.harmonization.units import ConversionMethod, UnitConversionRule
from cirquant.shared.errors import ConfigValidationError

logger = logging.getLogger(__name__)

MIN_YEAR = 1995
MAX_YEAR = 9999

# Tolerance for composition shares that are meant to sum to one.
_SHARE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class ProductCatalogEntry:
    """One validity epoch of one product.

    Codes are stored in dense form; use ``denormalize_for_display`` for output.
    """

    product_id: int
    product_name: str
    production_code: str
    trade_codes: frozenset[str]
    valid_from_year: int = MIN_YEAR
    valid_to_year: int = MAX_YEAR
    product_key: str = ""
    weight_kg: float | None = None
    unit: str | None = None
    material_composition: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))

    def covers(self, year: int) -> bool:
        return self.valid_from_year <= year <= self.valid_to_year

    @property
    def epoch_width(self) -> int:
        return self.valid_to_year - self.valid_from_year

    @property
    def weight_tonnes(self) -> float | None:
        return self.weight_kg / 1000.0 if self.weight_kg is not None else None


@dataclass(frozen=True)
class RateParameters:
    """Circularity rates (percent) in effect for one product."""

    product_code: str
    current_rate_pct: float
    potential_rate_pct: float
    refurbishment_rate_pct: float | None = None
    recycling_rate_pct: float | None = None


@dataclass(frozen=True)
class MaterialRecoveryRate:
    material: str
    recovery_rate: float


@dataclass(frozen=True)
class AnalysisParameters:
    """Everything a run needs from configuration, validated and frozen."""

    products: tuple[ProductCatalogEntry, ...]
    rates: Mapping[str, RateParameters]
    material_recovery_rates: Mapping[str, MaterialRecoveryRate]
    unit_rules: tuple[UnitConversionRule, ...] = ()
    source_path: str = ""
    config_hash: str = ""

    def rates_for(self, production_code: str) -> RateParameters | None:
        return self.rates.get(normalize_product_code(production_code))

    def weights_tonnes(self) -> dict[str, float]:
        """Catalogue weight per piece in tonnes, keyed by production code."""
        return {
            entry.production_code: entry.weight_tonnes
            for entry in self.products
            if entry.weight_tonnes is not None
        }

    def material_recovery_rate(self, production_code: str, year: int) -> float | None:
        """Composition-weighted recovery rate for a product.

        None when the product has no composition or any of its materials has
        no recovery rate.
        """
        code = normalize_product_code(production_code)
        entry = next(
            (e for e in self.products if e.production_code == code and e.covers(year)), None
        )
        if entry is None or not entry.material_composition:
            return None

        total = 0.0
        for material, share in entry.material_composition.items():
            rate = self.material_recovery_rates.get(material)
            if rate is None:
                return None
            total += share * rate.recovery_rate
        return total

    def rates_frame(self) -> pd.DataFrame:
        """Rates in the layout of the ``parameters_circularity_rate`` table."""
        names = {e.production_code: e.product_name for e in self.products}
        rows = [
            {
                "product_code": code,
                "product_name": names.get(code, ""),
                "current_circularity_rate_pct": r.current_rate_pct,
                "potential_circularity_rate_pct": r.potential_rate_pct,
                "refurbishment_rate_pct": r.refurbishment_rate_pct,
                "recycling_rate_pct": r.recycling_rate_pct,
            }
            for code, r in sorted(self.rates.items())
        ]
        return pd.DataFrame(
            rows,
            columns=[
                "product_code",
                "product_name",
                "current_circularity_rate_pct",
                "potential_circularity_rate_pct",
                "refurbishment_rate_pct",
                "recycling_rate_pct",
            ],
        )

    def material_recovery_frame(self) -> pd.DataFrame:
        rows = [
            {"material": m.material, "recovery_rate": m.recovery_rate}
            for _, m in sorted(self.material_recovery_rates.items())
        ]
        return pd.DataFrame(rows, columns=["material", "recovery_rate"])


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------


def load_analysis_parameters(path: Path | str) -> AnalysisParameters:
    """Parse and validate the product catalogue file.

    Args:
        path: Path to ``products.toml``.

    Returns:
        Frozen AnalysisParameters with a SHA-256 hash of the file contents.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: Listing every problem found in the file.
    """
    path = Path(path)
    raw_bytes = path.read_bytes()
    try:
        document = tomllib.loads(raw_bytes.decode("utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigValidationError([f"{path}: {e}"]) from e

    params = parse_analysis_parameters(
        document,
        source_path=str(path),
        config_hash=hashlib.sha256(raw_bytes).hexdigest(),
    )
    logger.info(
        "Loaded %d product epochs and %d rate sets from %s",
        len(params.products),
        len(params.rates),
        path,
    )
    return params


def parse_analysis_parameters(
    document: dict[str, Any], source_path: str = "", config_hash: str = ""
) -> AnalysisParameters:
    """Build AnalysisParameters from an already-parsed TOML document."""
    problems: list[str] = []
    products: list[ProductCatalogEntry] = []
    rates: dict[str, RateParameters] = {}

    product_tables = document.get("products")
    if not isinstance(product_tables, dict) or not product_tables:
        raise ConfigValidationError(["no [products] defined"])

    for key, table in product_tables.items():
        entries, product_rates = _parse_product(key, table, problems)
        products.extend(entries)
        for rate in product_rates:
            rates[rate.product_code] = rate

    recovery = _parse_materials(document.get("materials", {}), problems)
    unit_rules = _parse_unit_rules(document.get("unit_rules", []), problems)

    problems.extend(validate_catalogue(products))
    for rate in rates.values():
        problems.extend(validate_rates(rate))

    if problems:
        raise ConfigValidationError(problems)

    for entry in products:
        missing = [m for m in entry.material_composition if m not in recovery]
        if missing:
            logger.warning(
                "Product %s has materials without a recovery rate: %s",
                entry.product_key,
                ", ".join(sorted(missing)),
            )

    return AnalysisParameters(
        products=tuple(sorted(products, key=lambda e: (e.product_id, e.valid_from_year))),
        rates=MappingProxyType(rates),
        material_recovery_rates=MappingProxyType(recovery),
        unit_rules=tuple(unit_rules),
        source_path=source_path,
        config_hash=config_hash,
    )


def _parse_product(
    key: str, table: Any, problems: list[str]
) -> tuple[list[ProductCatalogEntry], list[RateParameters]]:
    if not isinstance(table, dict):
        problems.append(f"products.{key}: expected a table")
        return [], []

    product_id = table.get("id")
    name = table.get("name")
    if not isinstance(product_id, int) or isinstance(product_id, bool):
        problems.append(f"products.{key}: 'id' must be an integer")
        return [], []
    if not isinstance(name, str) or not name.strip():
        problems.append(f"products.{key}: 'name' is required")
        return [], []

    parameters = table.get("parameters", {})
    weight_kg = parameters.get("weight_kg")
    if weight_kg is not None and (
        not isinstance(weight_kg, (int, float)) or not math.isfinite(weight_kg) or weight_kg <= 0
    ):
        problems.append(f"products.{key}: weight_kg must be a positive number, got {weight_kg!r}")
        weight_kg = None

    composition = table.get("composition", {})
    for material, share in composition.items():
        if not isinstance(share, (int, float)) or not 0.0 <= share <= 1.0:
            problems.append(f"products.{key}: composition share for {material!r} must be in [0, 1]")
    if sum(s for s in composition.values() if isinstance(s, (int, float))) > 1.0 + _SHARE_TOLERANCE:
        problems.append(f"products.{key}: composition shares sum to more than 1")

    epochs = table.get("epochs") or [
        {
            "prodcom_codes": table.get("prodcom_codes", []),
            "hs_codes": table.get("hs_codes", []),
            "valid_from": table.get("valid_from", MIN_YEAR),
            "valid_to": table.get("valid_to", MAX_YEAR),
        }
    ]

    entries: list[ProductCatalogEntry] = []
    for i, epoch in enumerate(epochs):
        where = f"products.{key}" if len(epochs) == 1 else f"products.{key}.epochs[{i}]"
        prodcom_codes = [normalize_product_code(c) for c in epoch.get("prodcom_codes", [])]
        hs_codes = frozenset(normalize_product_code(c) for c in epoch.get("hs_codes", []))
        hs_codes = frozenset(c for c in hs_codes if c)

        if len(prodcom_codes) != 1 or not prodcom_codes[0]:
            problems.append(f"{where}: exactly one PRODCOM code is required, got {len(prodcom_codes)}")
            continue
        if not hs_codes:
            problems.append(f"{where}: hs_codes must not be empty")
            continue

        entries.append(
            ProductCatalogEntry(
                product_id=product_id,
                product_name=name.strip(),
                production_code=prodcom_codes[0],
                trade_codes=hs_codes,
                valid_from_year=int(epoch.get("valid_from", MIN_YEAR)),
                valid_to_year=int(epoch.get("valid_to", MAX_YEAR)),
                product_key=key,
                weight_kg=float(weight_kg) if weight_kg is not None else None,
                unit=parameters.get("unit"),
                material_composition=MappingProxyType(
                    {str(m): float(s) for m, s in composition.items()}
                ),
            )
        )

    rates: list[RateParameters] = []
    current = parameters.get("current_circularity_rate")
    potential = parameters.get("potential_circularity_rate")
    if current is None or potential is None:
        if current is not None or potential is not None:
            problems.append(f"products.{key}: current and potential circularity rates go together")
        return entries, rates

    for entry in entries:
        rates.append(
            RateParameters(
                product_code=entry.production_code,
                current_rate_pct=float(current),
                potential_rate_pct=float(potential),
                refurbishment_rate_pct=_optional_float(parameters.get("refurbishment_rate")),
                recycling_rate_pct=_optional_float(parameters.get("recycling_rate")),
            )
        )
    return entries, rates


def _optional_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def _parse_materials(table: Any, problems: list[str]) -> dict[str, MaterialRecoveryRate]:
    rates = table.get("recovery_rates", {}) if isinstance(table, dict) else {}
    result: dict[str, MaterialRecoveryRate] = {}
    for material, rate in rates.items():
        if not isinstance(rate, (int, float)) or not 0.0 <= rate <= 1.0:
            problems.append(f"materials.recovery_rates.{material}: must be in [0, 1], got {rate!r}")
            continue
        result[str(material)] = MaterialRecoveryRate(str(material), float(rate))
    return result


def _parse_unit_rules(items: Any, problems: list[str]) -> list[UnitConversionRule]:
    rules: list[UnitConversionRule] = []
    for i, item in enumerate(items):
        try:
            method = ConversionMethod(item.get("method", ConversionMethod.DIRECT.value))
        except ValueError:
            problems.append(f"unit_rules[{i}]: unknown method {item.get('method')!r}")
            continue

        factor = item.get("factor_to_tonnes", 0.0)
        if method is ConversionMethod.DIRECT and (not isinstance(factor, (int, float)) or factor <= 0):
            problems.append(f"unit_rules[{i}]: direct rules need a positive factor_to_tonnes")
            continue
        if not item.get("unit"):
            problems.append(f"unit_rules[{i}]: 'unit' is required")
            continue

        product_code = item.get("product_code")
        rules.append(
            UnitConversionRule(
                unit_label=str(item["unit"]),
                factor_to_tonnes=float(factor),
                method=method,
                product_code=normalize_product_code(product_code) if product_code else None,
            )
        )
    return rules


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------


def validate_catalogue(entries: list[ProductCatalogEntry]) -> list[str]:
    """Check cross-entry invariants; returns the list of problems found."""
    problems: list[str] = []
    by_id: dict[int, list[ProductCatalogEntry]] = {}
    by_code: dict[str, list[ProductCatalogEntry]] = {}

    for entry in entries:
        if entry.valid_from_year > entry.valid_to_year:
            problems.append(
                f"product {entry.product_id}: valid_from {entry.valid_from_year} "
                f"is after valid_to {entry.valid_to_year}"
            )
        by_id.setdefault(entry.product_id, []).append(entry)
        by_code.setdefault(entry.production_code, []).append(entry)

    for product_id, group in by_id.items():
        keys = {e.product_key for e in group}
        if len(keys) > 1:
            problems.append(f"duplicate product id {product_id} used by {sorted(keys)}")
        for a, b in _overlapping_pairs(group):
            problems.append(
                f"product {product_id}: epochs {a.valid_from_year}-{a.valid_to_year} "
                f"and {b.valid_from_year}-{b.valid_to_year} overlap"
            )

    for code, group in by_code.items():
        for a, b in _overlapping_pairs(group):
            if a.product_id != b.product_id:
                problems.append(
                    f"PRODCOM code {code} is claimed by products {a.product_id} and {b.product_id} "
                    "in overlapping years"
                )

    return problems


def _overlapping_pairs(group: list[ProductCatalogEntry]):
    ordered = sorted(group, key=lambda e: (e.valid_from_year, e.valid_to_year))
    for i, a in enumerate(ordered):
        for b in ordered[i + 1 :]:
            if b.valid_from_year <= a.valid_to_year:
                yield a, b


def validate_rates(rate: RateParameters) -> list[str]:
    """Check ``0 <= current <= potential <= 100`` and the strategy rate ranges."""
    problems: list[str] = []
    current, potential = rate.current_rate_pct, rate.potential_rate_pct
    if not (0.0 <= current <= potential <= 100.0):
        problems.append(
            f"rates for {rate.product_code}: expected 0 <= current ({current}) "
            f"<= potential ({potential}) <= 100"
        )
    for label, value in (
        ("refurbishment_rate", rate.refurbishment_rate_pct),
        ("recycling_rate", rate.recycling_rate_pct),
    ):
        if value is not None and not 0.0 <= value <= 100.0:
            problems.append(f"rates for {rate.product_code}: {label} {value} outside [0, 100]")
    return problems
