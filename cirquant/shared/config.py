"""Configuration management for CirQuant."""
import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Application configuration."""

    # Project paths
    ROOT_DIR = Path(__file__).parent.parent.parent
    DATA_DIR = Path(os.getenv("CIRQUANT_DATA_DIR", str(ROOT_DIR / "data")))
    LOGS_DIR = Path(os.getenv("CIRQUANT_LOGS_DIR", str(ROOT_DIR / "logs")))
    PRODUCTS_CONFIG = Path(
        os.getenv("CIRQUANT_PRODUCTS_CONFIG", str(ROOT_DIR / "config" / "products.toml"))
    )

    # Databases (raw fetch output and processed analysis tables)
    RAW_DATABASE_URL: str = os.getenv(
        "RAW_DATABASE_URL", f"sqlite:///{DATA_DIR / 'raw' / 'cirquant_raw.db'}"
    )
    PROCESSED_DATABASE_URL: str = os.getenv(
        "PROCESSED_DATABASE_URL", f"sqlite:///{DATA_DIR / 'processed' / 'cirquant_processed.db'}"
    )

    # Processing
    START_YEAR: int = int(os.getenv("START_YEAR", "2002"))
    END_YEAR: int = int(os.getenv("END_YEAR", "2023"))
    MAX_WORKERS: int = int(os.getenv("MAX_WORKERS", "4"))
    QUERY_TIMEOUT: float = float(os.getenv("QUERY_TIMEOUT", "300"))

    # Data collection settings
    REQUEST_DELAY: float = float(os.getenv("REQUEST_DELAY", "5.0"))
    REQUEST_TIMEOUT: int = int(os.getenv("REQUEST_TIMEOUT", "60"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls) -> None:
        """Validate configuration ranges."""
        if cls.START_YEAR > cls.END_YEAR:
            raise ValueError(f"START_YEAR ({cls.START_YEAR}) is after END_YEAR ({cls.END_YEAR})")
        if cls.MAX_WORKERS < 1:
            raise ValueError("MAX_WORKERS must be at least 1")
        if cls.QUERY_TIMEOUT <= 0:
            raise ValueError("QUERY_TIMEOUT must be positive")
        if cls.MAX_RETRIES < 1:
            raise ValueError("MAX_RETRIES must be at least 1")

    @property
    def year_range(self) -> range:
        """Configured processing years, inclusive."""
        return range(self.START_YEAR, self.END_YEAR + 1)


config = Config()
