"""Raw-table preprocessors (raw long tables -> typed production/trade frames)."""

from cirquant.ingestion.preprocessors.base_preprocessor import BasePreprocessor
from cirquant.ingestion.preprocessors.production_normalizer import ProductionNormalizer
from cirquant.ingestion.preprocessors.trade_normalizer import TradeNormalizer

__all__ = ["BasePreprocessor", "ProductionNormalizer", "TradeNormalizer"]
