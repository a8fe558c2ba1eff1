"""
Configuration management using Pydantic Settings.
Loads from environment variables or .env file.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional

from anomaly_engine.features.feature_definitions import (
    DEFAULT_HIGH_RISK_COUNTRIES,
    DEFAULT_HIGH_RISK_MERCHANTS,
)


class Settings(BaseSettings):
    """
    Engine and API configuration loaded from environment variables.

    Usage:
        # .env file
        N_TREES=200
        FINAL_THRESHOLD=0.7
        HIGH_RISK_MERCHANTS='["gambling", "cryptocurrency"]'

        # In code
        from anomaly_engine.api.config import settings
        print(settings.N_TREES)
    """
    # Isolation Forest
    N_TREES: int = 100
    MAX_SAMPLES: int = 256
    MAX_DEPTH: int = 8
    CONTAMINATION: float = 0.1

    # Hierarchical clustering
    N_CLUSTERS: int = 5
    AHC_ANOMALY_THRESHOLD: float = 2.0
    MIN_CANDIDATES: int = 5

    # Fusion
    IF_THRESHOLD: float = 0.5
    FINAL_THRESHOLD: float = 0.65

    # Feature adapter lookups
    HIGH_RISK_COUNTRIES: List[str] = list(DEFAULT_HIGH_RISK_COUNTRIES)
    HIGH_RISK_MERCHANTS: List[str] = list(DEFAULT_HIGH_RISK_MERCHANTS)

    # Retraining policy
    MIN_HISTORY_FOR_RETRAIN: int = 10  # Retrain once recorded history exceeds this
    HISTORY_DB_PATH: Optional[str] = None  # DuckDB file with stored feature rows
    HISTORY_TABLE: str = "transaction_features"
    WARM_START: bool = True  # Train on synthetic data when no history exists
    WARM_START_NORMAL: int = 100
    WARM_START_ANOMALOUS: int = 10
    RANDOM_STATE: Optional[int] = None

    # Performance
    MAX_LATENCY_MS: float = 500.0

    # API settings
    API_TITLE: str = "Transaction Anomaly Scoring API"
    API_VERSION: str = "2.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


# Global settings instance
settings = Settings()
