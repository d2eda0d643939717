"""Application configuration loaded from environment variables."""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with defaults and env var overrides."""

    # Database
    database_url: str = "sqlite:///./reconciliation.db"

    # App
    app_env: str = "development"
    app_port: int = 8000
    log_level: str = "INFO"

    # Exact pass
    exact_amount_tolerance: Decimal = Decimal("0.01")
    exact_date_tolerance_days: int = 1

    # Fuzzy pass / suggestions
    auto_match_threshold: float = 0.75
    suggestion_threshold: float = 0.6
    suggestion_limit: int = 5
    fuzzy_date_window_days: int = 7
    fuzzy_workers: int = 1

    # Rule-based pass
    rule_match_confidence: int = 90

    # Pattern learning
    learning_threshold: int = 3
    learned_rule_priority: int = 50
    learning_prefix_length: int = 10
    learning_max_patterns: int = 1000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
