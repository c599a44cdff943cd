"""Tests for unit normalisation and conversion to tonnes."""

import math

import pandas as pd
import pytest

from cirquant.harmonization.units import (
    MASS_UNIT_FACTORS,
    ConversionMethod,
    Unconvertible,
    UnitConversionRule,
    UnitConverter,
    compute_average_weights,
    is_count_unit,
    is_mass_unit,
    normalize_unit,
)

HEAT_PUMP = "28211330"
PV_PANEL = "27114000"


class TestNormalizeUnit:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (" KG ", "kg"),
            ("2600", "p/st"),
            ("1500", "kg"),
            ("1512", "kg"),
            ("kg act. subst.", "kg"),
            ("kg/m3", "kg/m3"),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_unit(raw) == expected

    def test_classification(self):
        assert is_mass_unit("t")
        assert is_count_unit("p/st")
        assert not is_mass_unit("m2")
        assert not is_count_unit("l")


class TestUnitConverter:
    def test_mass_units(self, converter):
        assert converter.convert_to_tonnes(1000, "kg", HEAT_PUMP) == pytest.approx(1.0)
        assert converter.convert_to_tonnes(3, "t", HEAT_PUMP) == pytest.approx(3.0)

    @pytest.mark.parametrize("unit", sorted(MASS_UNIT_FACTORS))
    def test_mass_round_trip(self, converter, unit):
        factor = MASS_UNIT_FACTORS[unit]
        tonnes = converter.convert_to_tonnes(1.0, unit, HEAT_PUMP)
        assert converter.convert_to_tonnes(tonnes / factor, "t", HEAT_PUMP) == pytest.approx(1.0)

    def test_count_units_use_catalogue_weight(self, converter):
        # 100 kg per heat pump
        assert converter.convert_to_tonnes(1000, "p/st", HEAT_PUMP) == pytest.approx(100.0)
        assert converter.convert_to_tonnes(1000, "2600", PV_PANEL) == pytest.approx(20.0)

    def test_zero_is_a_valid_quantity(self, converter):
        assert converter.convert_to_tonnes(0, "kg", HEAT_PUMP) == 0.0

    @pytest.mark.parametrize(
        "value, unit, reason",
        [
            (5, "m2", "cannot be converted"),
            (5, "", "missing unit"),
            (-1, "kg", "negative"),
            (float("inf"), "kg", "non-finite"),
            ("abc", "kg", "non-numeric"),
        ],
    )
    def test_unconvertible(self, converter, value, unit, reason):
        outcome = converter.convert_to_tonnes(value, unit, HEAT_PUMP)
        assert isinstance(outcome, Unconvertible)
        assert not outcome
        assert reason in outcome.reason

    def test_count_unit_without_weight(self):
        outcome = UnitConverter().convert_to_tonnes(10, "p/st", HEAT_PUMP)
        assert isinstance(outcome, Unconvertible)
        assert "average weight" in outcome.reason

    def test_product_rule_beats_generic_rule(self):
        converter = UnitConverter(
            [
                UnitConversionRule("l", 0.001),
                UnitConversionRule("l", 0.0009, product_code="28.21.13.30"),
            ]
        )
        assert converter.convert_to_tonnes(1000, "l", HEAT_PUMP) == pytest.approx(0.9)
        assert converter.convert_to_tonnes(1000, "l", PV_PANEL) == pytest.approx(1.0)

    def test_count_based_rule_falls_back_to_weight(self, params):
        converter = UnitConverter(
            [UnitConversionRule("sets", 0.0, ConversionMethod.COUNT_BASED)],
            weights_tonnes=params.weights_tonnes(),
        )
        assert converter.convert_to_tonnes(10, "sets", HEAT_PUMP) == pytest.approx(1.0)

    def test_derived_weight_takes_precedence(self, converter):
        derived = converter.with_derived_weights({(HEAT_PUMP, "DE"): 0.2})
        assert derived.convert_to_tonnes(10, "p/st", HEAT_PUMP, "DE") == pytest.approx(2.0)
        # other countries keep the catalogue weight
        assert derived.convert_to_tonnes(10, "p/st", HEAT_PUMP, "FR") == pytest.approx(1.0)
        assert derived.convert_to_tonnes(10, "p/st", HEAT_PUMP) == pytest.approx(1.0)
        # the original converter is unchanged
        assert converter.convert_to_tonnes(10, "p/st", HEAT_PUMP, "DE") == pytest.approx(1.0)


class TestConvertFrame:
    def test_splits_converted_and_rejected(self, converter):
        df = pd.DataFrame(
            {
                "product_code": [HEAT_PUMP, HEAT_PUMP, HEAT_PUMP],
                "country_iso": ["DE", "FR", "IT"],
                "value": [2000.0, 5.0, float("nan")],
                "unit": ["kg", "m2", "kg"],
            }
        )
        converted, rejected = converter.convert_frame(df)

        assert converted["country_iso"].tolist() == ["DE", "IT"]
        assert converted["value_tonnes"].iloc[0] == pytest.approx(2.0)
        assert math.isnan(converted["value_tonnes"].iloc[1])
        assert rejected["country_iso"].tolist() == ["FR"]
        assert "cannot be converted" in rejected["reason"].iloc[0]


class TestComputeAverageWeights:
    def test_per_country_weights(self):
        quantities = pd.DataFrame(
            {
                "product_code": [HEAT_PUMP] * 4,
                "country_iso": ["DE", "DE", "FR", "FR"],
                "value": [20000.0, 100.0, 30000.0, 200.0],
                "unit": ["kg", "p/st", "kg", "p/st"],
            }
        )
        weights = compute_average_weights(quantities)

        assert weights[(HEAT_PUMP, "DE")] == pytest.approx(0.2)
        assert weights[(HEAT_PUMP, "FR")] == pytest.approx(0.15)
        assert set(weights) == {(HEAT_PUMP, "DE"), (HEAT_PUMP, "FR")}

    def test_mass_and_count_from_different_countries_derive_nothing(self):
        quantities = pd.DataFrame(
            {
                "product_code": [HEAT_PUMP, HEAT_PUMP],
                "country_iso": ["DE", "FR"],
                "value": [1000.0, 50000.0],
                "unit": ["p/st", "kg"],
            }
        )
        assert compute_average_weights(quantities) == {}

    def test_excluded_countries_take_no_part(self):
        quantities = pd.DataFrame(
            {
                "product_code": [HEAT_PUMP] * 4,
                "country_iso": ["DE", "DE", "EU27_2020", "EU27_2020"],
                "value": [20000.0, 100.0, 90000.0, 100.0],
                "unit": ["kg", "p/st", "kg", "p/st"],
            }
        )
        weights = compute_average_weights(quantities, exclude_countries={"EU27_2020"})
        assert weights == {(HEAT_PUMP, "DE"): pytest.approx(0.2)}

    def test_mass_without_counts_derives_nothing(self):
        quantities = pd.DataFrame(
            {"product_code": [HEAT_PUMP], "country_iso": ["DE"], "value": [10.0], "unit": ["t"]}
        )
        assert compute_average_weights(quantities) == {}

    def test_empty(self):
        assert compute_average_weights(pd.DataFrame()) == {}
