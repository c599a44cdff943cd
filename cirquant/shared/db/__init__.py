"""Database engine, ORM models, and table storage utilities."""

from .engine import create_db_engine, get_connection
from .models import (
    STATIC_TABLES,
    Base,
    CircularityRateParameter,
    CountryCodeMapping,
    MaterialRecoveryParameter,
    ProductMappingCode,
    build_harmonized_table,
    build_indicator_table,
)
from .storage import (
    append_table,
    export_to_csv,
    list_tables,
    read_table,
    replace_table,
    replace_tables,
    table_exists,
    validate_table_name,
)

__all__ = [
    # ORM infrastructure
    "Base",
    "STATIC_TABLES",
    "ProductMappingCode",
    "CountryCodeMapping",
    "CircularityRateParameter",
    "MaterialRecoveryParameter",
    "build_harmonized_table",
    "build_indicator_table",
    "create_db_engine",
    "get_connection",
    # Storage functions
    "append_table",
    "export_to_csv",
    "list_tables",
    "read_table",
    "replace_table",
    "replace_tables",
    "table_exists",
    "validate_table_name",
]
