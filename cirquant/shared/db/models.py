from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ProductMappingCode(Base):
    __tablename__ = "product_mapping_codes"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, nullable=False)
    product = Column(String(200), nullable=False)
    prodcom_code = Column(String(20), nullable=False)
    hs_codes = Column(String(500))
    prodcom_code_clean = Column(String(20), nullable=False)
    hs_codes_clean = Column(String(500))
    valid_from_year = Column(Integer, nullable=False)
    valid_to_year = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("product_id", "valid_from_year"),
        Index("idx_product_mapping_prodcom", "prodcom_code_clean"),
    )


class CountryCodeMapping(Base):
    __tablename__ = "country_code_mapping"

    id = Column(Integer, primary_key=True)
    source_system = Column(String(20), nullable=False)
    native_code = Column(String(20), nullable=False)
    iso_code = Column(String(20), nullable=False)
    country_name = Column(String(100))

    __table_args__ = (UniqueConstraint("source_system", "native_code"),)


class CircularityRateParameter(Base):
    __tablename__ = "parameters_circularity_rate"

    id = Column(Integer, primary_key=True)
    product_code = Column(String(20), nullable=False, unique=True)
    product_name = Column(String(200))
    current_circularity_rate_pct = Column(Float, nullable=False)
    potential_circularity_rate_pct = Column(Float, nullable=False)
    refurbishment_rate_pct = Column(Float)
    recycling_rate_pct = Column(Float)


class MaterialRecoveryParameter(Base):
    __tablename__ = "parameters_material_recovery"

    id = Column(Integer, primary_key=True)
    material = Column(String(100), nullable=False, unique=True)
    recovery_rate = Column(Float, nullable=False)


STATIC_TABLES = {
    model.__tablename__: model.__table__
    for model in (
        ProductMappingCode,
        CountryCodeMapping,
        CircularityRateParameter,
        MaterialRecoveryParameter,
    )
}

_HARMONIZED_COLUMNS = [
    ("product_name", String(200)),
    ("production_volume_t", Float),
    ("production_value_eur", Float),
    ("import_volume_t", Float),
    ("import_value_eur", Float),
    ("export_volume_t", Float),
    ("export_value_eur", Float),
    ("import_volume_source", String(20)),
    ("import_value_source", String(20)),
    ("export_volume_source", String(20)),
    ("export_value_source", String(20)),
]

_INDICATOR_COLUMNS = [
    ("apparent_consumption_t", Float),
    ("apparent_consumption_eur", Float),
    ("trade_balance_t", Float),
    ("trade_balance_eur", Float),
    ("current_circularity_rate_pct", Float),
    ("potential_circularity_rate_pct", Float),
    ("estimated_material_savings_t", Float),
    ("estimated_monetary_savings_eur", Float),
    ("material_recovery_rate", Float),
    ("refurbishment_savings_t", Float),
    ("refurbishment_savings_eur", Float),
    ("recycling_savings_t", Float),
    ("recycling_savings_eur", Float),
]


def _year_table(name: str, columns: list[tuple], metadata: MetaData | None) -> Table:
    return Table(
        name,
        metadata if metadata is not None else MetaData(),
        Column("product_code", String(20), nullable=False),
        Column("country_iso", String(20), nullable=False),
        Column("year", Integer, nullable=False),
        Column("level", String(10), nullable=False),
        *[Column(col_name, col_type) for col_name, col_type in columns],
        UniqueConstraint("product_code", "country_iso", "year", "level"),
    )


def build_harmonized_table(year: int, metadata: MetaData | None = None) -> Table:
    """Schema of ``harmonized_<year>``."""
    return _year_table(f"harmonized_{year}", _HARMONIZED_COLUMNS, metadata)


def build_indicator_table(year: int, metadata: MetaData | None = None) -> Table:
    """Schema of ``circularity_indicators_<year>``."""
    return _year_table(
        f"circularity_indicators_{year}", _HARMONIZED_COLUMNS + _INDICATOR_COLUMNS, metadata
    )
