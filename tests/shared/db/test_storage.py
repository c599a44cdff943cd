"""Tests for the table storage helpers on a throwaway SQLite database."""

import pandas as pd
import pytest

from cirquant.shared.db import (
    STATIC_TABLES,
    append_table,
    build_harmonized_table,
    build_indicator_table,
    export_to_csv,
    list_tables,
    read_table,
    replace_table,
    replace_tables,
    table_exists,
    validate_table_name,
)
from cirquant.shared.errors import PersistenceError


@pytest.fixture
def frame() -> pd.DataFrame:
    return pd.DataFrame({"product_code": ["28211330", "27114000"], "value": [1.0, 2.0]})


class TestValidateTableName:
    @pytest.mark.parametrize("name", ["harmonized_2020", "_tmp", "prodcom_ds_056121_2002"])
    def test_accepts_identifiers(self, name):
        assert validate_table_name(name) == name

    @pytest.mark.parametrize("name", ["", "2020_data", "bad-name", 'x"; DROP TABLE y', "a b"])
    def test_rejects_everything_else(self, name):
        with pytest.raises(ValueError, match="Invalid table name"):
            validate_table_name(name)


class TestAppendAndRead:
    def test_append_creates_then_extends(self, engine, frame):
        assert append_table(engine, "raw_rows", frame) == 2
        assert append_table(engine, "raw_rows", frame) == 2

        result = read_table(engine, "raw_rows")
        assert len(result) == 4
        assert table_exists(engine, "raw_rows")

    def test_append_empty_frame_is_noop(self, engine):
        assert append_table(engine, "raw_rows", pd.DataFrame()) == 0
        assert not table_exists(engine, "raw_rows")

    def test_read_selected_columns(self, engine, frame):
        append_table(engine, "raw_rows", frame)
        result = read_table(engine, "raw_rows", columns=["value"])
        assert list(result.columns) == ["value"]

    def test_list_tables_by_prefix(self, engine, frame):
        append_table(engine, "harmonized_2019", frame)
        append_table(engine, "harmonized_2020", frame)
        append_table(engine, "trade_2020", frame)
        assert list_tables(engine, prefix="harmonized_") == ["harmonized_2019", "harmonized_2020"]


class TestReplaceTable:
    def test_replace_overwrites_previous_content(self, engine, frame):
        replace_table(engine, "results", frame)
        replace_table(engine, "results", frame.head(1))

        assert len(read_table(engine, "results")) == 1

    def test_typed_schema(self, engine):
        df = pd.DataFrame(
            {
                "product_code": ["28211330"],
                "country_iso": ["DE"],
                "year": [2020],
                "level": ["country"],
                "production_volume_t": [100.0],
                "not_in_schema": ["dropped"],
            }
        )
        assert replace_table(engine, "harmonized_2020", df, schema=build_harmonized_table(2020)) == 1

        result = read_table(engine, "harmonized_2020")
        assert "not_in_schema" not in result.columns
        assert "export_value_source" in result.columns
        assert result.loc[0, "production_volume_t"] == 100.0

    def test_static_tables_create(self, engine):
        rows = replace_tables(
            engine,
            {
                "parameters_material_recovery": (
                    pd.DataFrame({"material": ["steel"], "recovery_rate": [0.9]}),
                    STATIC_TABLES["parameters_material_recovery"],
                )
            },
        )
        assert rows == {"parameters_material_recovery": 1}


class TestReplaceTablesAtomicity:
    def test_failure_keeps_previous_tables(self, engine, frame, tmp_path):
        replace_table(engine, "harmonized_2020", frame)

        with pytest.raises(PersistenceError) as exc_info:
            replace_tables(
                engine,
                {
                    "harmonized_2020": (frame.head(1), None),
                    # schema built for another year: rejected mid-transaction
                    "circularity_indicators_2020": (frame, build_indicator_table(2021)),
                },
                backup_dir=tmp_path / "backup",
            )

        assert exc_info.value.table_name == "circularity_indicators_2020"
        assert len(read_table(engine, "harmonized_2020")) == 2
        assert not table_exists(engine, "circularity_indicators_2020")

    def test_failure_writes_backups(self, engine, frame, tmp_path):
        backup_dir = tmp_path / "backup"
        with pytest.raises(PersistenceError) as exc_info:
            replace_tables(
                engine,
                {"circularity_indicators_2020": (frame, build_indicator_table(2019))},
                backup_dir=backup_dir,
            )

        backups = list(backup_dir.glob("circularity_indicators_2020_*.csv"))
        assert len(backups) == 1
        assert exc_info.value.backup_path == backups[0]
        assert len(pd.read_csv(backups[0])) == 2

    def test_invalid_name_rejected_before_writing(self, engine, frame):
        with pytest.raises(ValueError):
            replace_tables(engine, {"ok_table": (frame, None), "bad name": (frame, None)})
        assert not table_exists(engine, "ok_table")


class TestExportToCsv:
    def test_export(self, engine, frame, tmp_path):
        replace_table(engine, "results", frame)
        path = export_to_csv(engine, "results", tmp_path / "out" / "results.csv")

        assert path.exists()
        assert len(pd.read_csv(path)) == 2
