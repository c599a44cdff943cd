"""
Root pytest configuration.

Shared fixtures: a small two-product catalogue, builders for raw PRODCOM and
COMEXT long tables, and throwaway SQLite databases under ``tmp_path``.
"""

import pandas as pd
import pytest

from cirquant.harmonization.product_mapping import ProductMappingTable
from cirquant.harmonization.units import UnitConverter
from cirquant.shared.catalogue import parse_analysis_parameters
from cirquant.shared.db import create_db_engine
from cirquant.shared.errors import AuditLog

HEAT_PUMP = "28211330"
HEAT_PUMP_HS = "841869"
PV_PANEL = "27114000"
PV_PANEL_HS = "854143"


def catalogue_document() -> dict:
    """Parsed-TOML equivalent of a two-product products.toml."""
    return {
        "products": {
            "heat_pumps": {
                "id": 1,
                "name": "Heat pumps",
                "prodcom_codes": ["28.21.13.30"],
                "hs_codes": ["8418.69"],
                "parameters": {
                    "weight_kg": 100.0,
                    "unit": "piece",
                    "current_circularity_rate": 5.0,
                    "potential_circularity_rate": 45.0,
                    "refurbishment_rate": 2.0,
                    "recycling_rate": 40.0,
                },
                "composition": {"steel": 0.5, "copper": 0.5},
            },
            "pv_panels": {
                "id": 2,
                "name": "PV panels",
                "prodcom_codes": ["27.11.40.00"],
                "hs_codes": ["8541.43"],
                "parameters": {
                    "weight_kg": 20.0,
                    "unit": "piece",
                    "current_circularity_rate": 3.0,
                    "potential_circularity_rate": 65.0,
                },
            },
        },
        "materials": {"recovery_rates": {"steel": 0.9, "copper": 0.7}},
    }


@pytest.fixture
def params():
    return parse_analysis_parameters(
        catalogue_document(), source_path="products.toml", config_hash="abc123"
    )


@pytest.fixture
def audit() -> AuditLog:
    return AuditLog()


@pytest.fixture
def mapping(params, audit) -> ProductMappingTable:
    return ProductMappingTable(params.products, audit)


@pytest.fixture
def converter(params) -> UnitConverter:
    return UnitConverter(params.unit_rules, weights_tonnes=params.weights_tonnes())


@pytest.fixture
def engine(tmp_path):
    """Empty SQLite database in a temp directory."""
    return create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")


def prodcom_raw(rows: list[tuple], year: int = 2020) -> pd.DataFrame:
    """Raw PRODCOM rows from (prccode, decl, indicator, value) tuples."""
    return pd.DataFrame(
        [
            {"prccode": code, "decl": decl, "indicators": ind, "value": value, "time": str(year)}
            for code, decl, ind, value in rows
        ],
        columns=["prccode", "decl", "indicators", "value", "time"],
    )


def comext_raw(rows: list[tuple], year: int = 2020) -> pd.DataFrame:
    """Raw COMEXT rows from (product, reporter, partner, flow, indicator, value) tuples."""
    return pd.DataFrame(
        [
            {
                "product": product,
                "reporter": reporter,
                "partner": partner,
                "flow": flow,
                "indicators": ind,
                "value": value,
                "time": str(year),
            }
            for product, reporter, partner, flow, ind, value in rows
        ],
        columns=["product", "reporter", "partner", "flow", "indicators", "value", "time"],
    )


@pytest.fixture
def make_prodcom_raw():
    return prodcom_raw


@pytest.fixture
def make_comext_raw():
    return comext_raw


@pytest.fixture
def direct_prodcom(make_prodcom_raw) -> pd.DataFrame:
    """Germany heat pumps 2020: 1000 pieces produced, worth 5 MEUR."""
    return make_prodcom_raw(
        [
            (HEAT_PUMP, "004", "PRODQNT", "1000"),
            (HEAT_PUMP, "004", "QNTUNIT", "p/st"),
            (HEAT_PUMP, "004", "PRODVAL", "5000000"),
        ]
    )


@pytest.fixture
def direct_comext(make_comext_raw) -> pd.DataFrame:
    """Germany heat pumps 2020: 50 t imported, exports reported as zero."""
    return make_comext_raw(
        [
            (HEAT_PUMP_HS, "DE", "INT_EU27_2020", "1", "QUANTITY_KG", "50000"),
            (HEAT_PUMP_HS, "DE", "INT_EU27_2020", "1", "VALUE_EUR", "250000"),
            (HEAT_PUMP_HS, "DE", "INT_EU27_2020", "2", "QUANTITY_KG", "0"),
            (HEAT_PUMP_HS, "DE", "INT_EU27_2020", "2", "VALUE_EUR", "0"),
        ]
    )


@pytest.fixture
def catalogue_doc() -> dict:
    """A fresh, mutable copy of the two-product catalogue document."""
    return catalogue_document()
