"""Unit conversion of reported quantities to metric tonnes.

Every unit label falls into exactly one of three classes:

- mass units, converted with a fixed factor (kg -> 0.001 t);
- count units (pieces, items), converted with a per-product average weight;
- everything else (litres, m2, kWh, ...), which is ``Unconvertible``.

An unrecognised unit is never treated as 1.0: the converter returns an
``Unconvertible`` carrying the offending unit so callers can drop and log the
observation.
"""

import logging
import math
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from enum import Enum

import pandas as pd

from cirquant.harmonization.codes import normalize_product_code

logger = logging.getLogger(__name__)

MASS_UNIT_FACTORS: dict[str, float] = {
    "t": 1.0,
    "tonne": 1.0,
    "tonnes": 1.0,
    "tne": 1.0,
    "1000 kg": 1.0,
    "kg": 1e-3,
    "kilogram": 1e-3,
    "kilograms": 1e-3,
    "kgr": 1e-3,
    "g": 1e-6,
    "gram": 1e-6,
    "grams": 1e-6,
}

COUNT_UNITS = frozenset(
    {
        "p/st",
        "p/st.",
        "pst",
        "pieces",
        "piece",
        "units",
        "unit",
        "items",
        "item",
        "no",
        "number",
        "u",
        "ce/el",
    }
)

# PRODCOM publishes QNTUNIT either as a label or as its numeric unit code.
PRODCOM_UNIT_CODES: dict[str, str] = {
    "1000": "gt",
    "1050": "cgt",
    "1100": "c/k",
    "1200": "ce/el",
    "1300": "ct/l",
    "1400": "g",
    "1500": "kg",
    "1700": "km",
    "1800": "kw",
    "1900": "1 000 kwh",
    "2000": "l",
    "2100": "l alc 100%",
    "2200": "m",
    "2300": "m2",
    "2400": "m3",
    "2500": "pa",
    "2600": "p/st",
    "2900": "tj",
}

# "kg Al2O3", "kg act. subst." and friends: kilograms of a named substance.
_CHEMICAL_KG_CODES = frozenset(str(code) for code in range(1510, 1535))


class ConversionMethod(str, Enum):
    DIRECT = "direct"
    COUNT_BASED = "count_based"


@dataclass(frozen=True)
class UnitConversionRule:
    """An explicit conversion rule, optionally restricted to one product.

    ``product_code=None`` applies to every product. For count-based rules
    ``factor_to_tonnes`` is the average weight of one unit in tonnes.
    """

    unit_label: str
    factor_to_tonnes: float
    method: ConversionMethod = ConversionMethod.DIRECT
    product_code: str | None = None


@dataclass(frozen=True)
class Unconvertible:
    """A quantity that could not be expressed in tonnes."""

    unit_label: str
    product_code: str
    reason: str

    def __bool__(self) -> bool:
        return False


def normalize_unit(unit_label: str | None) -> str:
    """Lower-case, trim and resolve PRODCOM numeric unit codes."""
    if unit_label is None:
        return ""
    label = " ".join(str(unit_label).strip().split()).lower()
    if label in _CHEMICAL_KG_CODES:
        return "kg"
    if label.startswith("kg ") and not label.startswith("kg/"):
        return "kg"
    return PRODCOM_UNIT_CODES.get(label, label)


def is_mass_unit(unit_label: str | None) -> bool:
    return normalize_unit(unit_label) in MASS_UNIT_FACTORS


def is_count_unit(unit_label: str | None) -> bool:
    return normalize_unit(unit_label) in COUNT_UNITS


class UnitConverter:
    """Convert (value, unit, product) triples to tonnes.

    Resolution order: explicit product rule, explicit generic rule, built-in
    mass table, count units (data-derived weight for the product/country, then
    the catalogue weight), otherwise ``Unconvertible``. A weight derived for
    one country never applies to another.

    Args:
        rules: Explicit conversion rules (densities, overrides).
        weights_tonnes: Catalogue average weight per unit, keyed by dense
            production code.
        derived_weights: Data-derived average weights, keyed by
            ``(production_code, country_iso)``.
    """

    def __init__(
        self,
        rules: list[UnitConversionRule] | tuple[UnitConversionRule, ...] = (),
        weights_tonnes: Mapping[str, float] | None = None,
        derived_weights: Mapping[tuple[str, str], float] | None = None,
    ) -> None:
        self._product_rules: dict[tuple[str, str], UnitConversionRule] = {}
        self._generic_rules: dict[str, UnitConversionRule] = {}
        for rule in rules:
            unit = normalize_unit(rule.unit_label)
            if rule.product_code:
                self._product_rules[(unit, normalize_product_code(rule.product_code))] = rule
            else:
                self._generic_rules[unit] = rule

        self.weights_tonnes = {
            normalize_product_code(code): weight for code, weight in (weights_tonnes or {}).items()
        }
        self.derived_weights = dict(derived_weights or {})

    def with_derived_weights(
        self, derived_weights: Mapping[tuple[str, str], float]
    ) -> "UnitConverter":
        """Return a converter sharing this one's rules with year-specific derived weights."""
        clone = UnitConverter.__new__(UnitConverter)
        clone._product_rules = self._product_rules
        clone._generic_rules = self._generic_rules
        clone.weights_tonnes = self.weights_tonnes
        clone.derived_weights = dict(derived_weights)
        return clone

    def average_weight(self, product_code: str, country: str | None = None) -> float | None:
        """Average tonnes per unit for a product, most specific source first."""
        code = normalize_product_code(product_code)
        if country is not None:
            weight = self.derived_weights.get((code, country))
            if weight is not None and weight > 0:
                return weight
        weight = self.weights_tonnes.get(code)
        if weight is not None and weight > 0:
            return weight
        return None

    def factor_for(
        self, unit_label: str, product_code: str, country: str | None = None
    ) -> float | Unconvertible:
        """Multiplicative factor from ``unit_label`` to tonnes for a product."""
        unit = normalize_unit(unit_label)
        code = normalize_product_code(product_code)

        rule = self._product_rules.get((unit, code)) or self._generic_rules.get(unit)
        if rule is not None:
            return self._resolve_rule(rule, unit, code, country)

        if unit in MASS_UNIT_FACTORS:
            return MASS_UNIT_FACTORS[unit]

        if unit in COUNT_UNITS:
            weight = self.average_weight(code, country)
            if weight is None:
                return Unconvertible(unit_label, code, "no average weight for count unit")
            return weight

        if not unit:
            return Unconvertible(unit_label, code, "missing unit")
        return Unconvertible(unit_label, code, "unit cannot be converted to mass")

    def _resolve_rule(
        self, rule: UnitConversionRule, unit: str, code: str, country: str | None
    ) -> float | Unconvertible:
        if rule.method is ConversionMethod.COUNT_BASED:
            weight = self.average_weight(code, country) if rule.factor_to_tonnes <= 0 else rule.factor_to_tonnes
            if weight is None or weight <= 0:
                return Unconvertible(unit, code, "count-based rule without positive average weight")
            return weight
        if rule.factor_to_tonnes <= 0 or not math.isfinite(rule.factor_to_tonnes):
            return Unconvertible(unit, code, "rule factor is not positive")
        return rule.factor_to_tonnes

    def convert_to_tonnes(
        self,
        raw_value: float,
        unit_label: str,
        product_code: str,
        country: str | None = None,
    ) -> float | Unconvertible:
        """Convert one reported quantity to tonnes.

        Negative and non-finite values are ``Unconvertible`` whatever the unit;
        zero is a valid reported quantity and converts to 0.0.
        """
        code = normalize_product_code(product_code)
        try:
            value = float(raw_value)
        except (TypeError, ValueError):
            return Unconvertible(unit_label, code, f"non-numeric value {raw_value!r}")

        if not math.isfinite(value):
            return Unconvertible(unit_label, code, "non-finite value")
        if value < 0:
            return Unconvertible(unit_label, code, "negative value")

        factor = self.factor_for(unit_label, code, country)
        if isinstance(factor, Unconvertible):
            return factor
        return value * factor

    def convert_frame(
        self,
        df: pd.DataFrame,
        value_col: str = "value",
        unit_col: str = "unit",
        product_col: str = "product_code",
        country_col: str | None = "country_iso",
        output_col: str = "value_tonnes",
    ) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Convert a frame row by row.

        Missing values stay missing. Returns ``(converted, rejected)`` where
        ``rejected`` lists every unconvertible row with its reason.
        """
        converted = df.copy()
        results: list[float] = []
        rejected_idx: list = []
        reasons: list[str] = []

        for idx, row in df.iterrows():
            value = row[value_col]
            if pd.isna(value):
                results.append(math.nan)
                continue
            country = row[country_col] if country_col and country_col in df.columns else None
            unit = row[unit_col] if pd.notna(row[unit_col]) else ""
            outcome = self.convert_to_tonnes(value, unit, row[product_col], country)
            if isinstance(outcome, Unconvertible):
                results.append(math.nan)
                rejected_idx.append(idx)
                reasons.append(outcome.reason)
            else:
                results.append(outcome)

        converted[output_col] = pd.Series(results, index=df.index, dtype="float64")
        rejected = df.loc[rejected_idx].copy()
        rejected["reason"] = reasons
        converted = converted.drop(index=rejected_idx)
        return converted, rejected


def compute_average_weights(
    quantities: pd.DataFrame, exclude_countries: Collection[str] = ()
) -> dict[tuple[str, str], float]:
    """Derive average tonnes per unit where one country reports both mass and count.

    Expects columns ``product_code, country_iso, value, unit`` (one row per
    reported quantity). For every product/country with positive mass totals and
    positive counts the weight is ``tonnes / units``. Rows whose country is in
    ``exclude_countries`` (aggregate reporters) take no part.
    """
    if quantities.empty:
        return {}

    df = quantities.dropna(subset=["value"]).copy()
    df = df[(df["value"] > 0) & ~df["country_iso"].isin(list(exclude_countries))]
    df["unit_norm"] = df["unit"].map(normalize_unit)

    mass = df[df["unit_norm"].isin(MASS_UNIT_FACTORS.keys())].copy()
    mass["tonnes"] = mass["value"] * mass["unit_norm"].map(MASS_UNIT_FACTORS)
    counts = df[df["unit_norm"].isin(COUNT_UNITS)]

    mass_geo = mass.groupby(["product_code", "country_iso"])["tonnes"].sum()
    count_geo = counts.groupby(["product_code", "country_iso"])["value"].sum()

    weights: dict[tuple[str, str], float] = {}
    for key, tonnes in mass_geo.items():
        units = count_geo.get(key, 0.0)
        if units > 0 and tonnes > 0:
            weights[key] = tonnes / units

    logger.debug("Derived %d average weights", len(weights))
    return weights
