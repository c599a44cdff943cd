"""Tests for apparent consumption, savings and country aggregates."""

import math

import pandas as pd
import pytest

from cirquant.harmonization.country_mapper import EU_AGGREGATE
from cirquant.harmonization.indicators import (
    COUNTRY_AGGREGATE_COLUMNS,
    INDICATOR_COLUMNS,
    IndicatorCalculator,
    apparent_consumption,
    country_aggregates,
    validate_indicators,
)
from cirquant.harmonization.merge import HARMONIZED_COLUMNS

HEAT_PUMP = "28211330"
PV_PANEL = "27114000"
NAN = float("nan")


def harmonized(*rows: dict) -> pd.DataFrame:
    defaults = {c: NAN for c in HARMONIZED_COLUMNS}
    defaults.update(product_code=HEAT_PUMP, product_name="Heat pumps", year=2020, level="country")
    return pd.DataFrame([{**defaults, **row} for row in rows], columns=HARMONIZED_COLUMNS)


@pytest.fixture
def calculator(params) -> IndicatorCalculator:
    return IndicatorCalculator(params)


@pytest.fixture
def germany() -> pd.DataFrame:
    return harmonized(
        {
            "country_iso": "DE",
            "production_volume_t": 100.0,
            "production_value_eur": 1000.0,
            "import_volume_t": 50.0,
            "import_value_eur": 400.0,
            "export_volume_t": 0.0,
            "export_value_eur": 100.0,
        }
    )


class TestApparentConsumption:
    def test_formula(self):
        result = apparent_consumption(pd.Series([100.0]), pd.Series([50.0]), pd.Series([0.0]))
        assert result.iloc[0] == 150.0

    def test_negative_is_kept(self):
        result = apparent_consumption(pd.Series([10.0]), pd.Series([0.0]), pd.Series([30.0]))
        assert result.iloc[0] == -20.0

    def test_missing_operand_propagates(self):
        result = apparent_consumption(pd.Series([10.0]), pd.Series([NAN]), pd.Series([0.0]))
        assert math.isnan(result.iloc[0])


class TestIndicatorCalculator:
    def test_columns(self, calculator, germany):
        assert list(calculator.calculate(germany, 2020).columns) == INDICATOR_COLUMNS

    def test_consumption_and_balance(self, calculator, germany):
        row = calculator.calculate(germany, 2020).iloc[0]

        assert row["apparent_consumption_t"] == 150.0
        assert row["apparent_consumption_eur"] == 1300.0
        assert row["trade_balance_t"] == -50.0
        assert row["trade_balance_eur"] == -300.0

    def test_savings(self, calculator, germany):
        row = calculator.calculate(germany, 2020).iloc[0]

        # potential 45% - current 5%
        assert row["current_circularity_rate_pct"] == 5.0
        assert row["potential_circularity_rate_pct"] == 45.0
        assert row["estimated_material_savings_t"] == pytest.approx(60.0)
        assert row["estimated_monetary_savings_eur"] == pytest.approx(520.0)

    def test_strategy_savings(self, calculator, germany):
        row = calculator.calculate(germany, 2020).iloc[0]

        # half steel (0.9) and half copper (0.7)
        assert row["material_recovery_rate"] == pytest.approx(0.8)
        assert row["refurbishment_savings_t"] == pytest.approx(3.0)
        assert row["recycling_savings_t"] == pytest.approx(0.4 * 0.8 * 150.0)

    def test_product_without_composition(self, calculator):
        df = harmonized(
            {
                "product_code": PV_PANEL,
                "product_name": "PV panels",
                "country_iso": "DE",
                "production_volume_t": 10.0,
                "import_volume_t": 0.0,
                "export_volume_t": 0.0,
            }
        )
        row = calculator.calculate(df, 2020).iloc[0]

        assert row["estimated_material_savings_t"] == pytest.approx(10.0 * 0.62)
        assert math.isnan(row["material_recovery_rate"])
        assert math.isnan(row["refurbishment_savings_t"])
        assert math.isnan(row["recycling_savings_t"])

    def test_missing_trade_yields_missing_consumption_only(self, calculator):
        df = harmonized({"country_iso": "DE", "production_volume_t": 100.0, "import_volume_t": 5.0})
        row = calculator.calculate(df, 2020).iloc[0]

        assert math.isnan(row["apparent_consumption_t"])
        assert math.isnan(row["estimated_material_savings_t"])
        assert row["current_circularity_rate_pct"] == 5.0

    def test_unknown_product_has_no_rates(self, calculator, caplog):
        df = harmonized({"product_code": "99999999", "country_iso": "DE", "production_volume_t": 1.0})
        with caplog.at_level("WARNING"):
            row = calculator.calculate(df, 2020).iloc[0]

        assert math.isnan(row["current_circularity_rate_pct"])
        assert "99999999" in caplog.text

    def test_empty(self, calculator):
        result = calculator.calculate(harmonized().iloc[0:0], 2020)
        assert result.empty
        assert list(result.columns) == INDICATOR_COLUMNS


class TestCountryAggregates:
    def test_totals_per_country(self, calculator):
        df = harmonized(
            {"country_iso": "DE", "production_volume_t": 100.0, "import_volume_t": 10.0},
            {
                "product_code": PV_PANEL,
                "product_name": "PV panels",
                "country_iso": "DE",
                "production_volume_t": 20.0,
            },
            {"country_iso": EU_AGGREGATE, "level": "EU", "production_volume_t": 100.0},
        )
        aggregates = country_aggregates(calculator.calculate(df, 2020))

        assert list(aggregates.columns) == COUNTRY_AGGREGATE_COLUMNS
        assert aggregates["country_iso"].tolist() == ["DE", EU_AGGREGATE]

        de = aggregates.iloc[0]
        assert de["product_count"] == 2
        assert de["production_volume_t"] == 120.0
        # only the heat pump reports imports
        assert de["import_volume_t"] == 10.0
        assert math.isnan(aggregates.iloc[1]["import_volume_t"])

    def test_empty(self):
        assert country_aggregates(pd.DataFrame(columns=INDICATOR_COLUMNS)).empty


class TestValidateIndicators:
    def test_calculated_frame_passes(self, calculator, germany):
        assert validate_indicators(calculator.calculate(germany, 2020))

    def test_empty_frame_passes(self):
        assert validate_indicators(pd.DataFrame(columns=INDICATOR_COLUMNS))

    def test_missing_columns(self, calculator, germany):
        df = calculator.calculate(germany, 2020).drop(columns=["recycling_savings_t"])
        with pytest.raises(ValueError, match="recycling_savings_t"):
            validate_indicators(df)

    def test_duplicate_keys(self, calculator, germany):
        df = calculator.calculate(pd.concat([germany, germany], ignore_index=True), 2020)
        with pytest.raises(ValueError, match="1 duplicate keys"):
            validate_indicators(df)

    def test_unknown_source_and_inverted_rates(self, calculator, germany):
        df = calculator.calculate(germany, 2020)
        df["import_volume_source"] = "guess"
        df["current_circularity_rate_pct"] = 90.0

        with pytest.raises(ValueError) as excinfo:
            validate_indicators(df)
        assert "unknown sources ['guess']" in str(excinfo.value)
        assert "potential rate below current rate" in str(excinfo.value)
