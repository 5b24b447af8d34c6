"""Configuration for the JUnit Insights service.

Loads from YAML config file with environment variable overrides.
Pattern: CONFIG__{SECTION}__{KEY} overrides nested YAML keys.
Example: CONFIG__FLAKY__HISTORY_LIMIT=20

DATABASE_URL and LOG_LEVEL are honoured directly as well.
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_CONFIG_PATH = "config/junit-insights.yml"
DEFAULT_DB_URL = "sqlite:///data/junit_insights.db"


class DatabaseConfig(BaseModel):
    url: str = DEFAULT_DB_URL
    echo: bool = False


class IngestionConfig(BaseModel):
    # Runner names that say nothing about what was tested
    generic_suite_names: list[str] = ["pytest", "pytest tests", "Unnamed Suite", ""]
    max_message_length: int = Field(default=500, ge=1)
    max_upload_bytes: int = Field(default=50 * 1024 * 1024, ge=1)


class AnalysisConfig(BaseModel):
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    max_affected_tests: int = Field(default=5, ge=0)
    window_days: int = Field(default=7, ge=1)


class FlakyConfig(BaseModel):
    history_limit: int = Field(default=10, ge=1)
    min_history: int = Field(default=3, ge=1)


class Settings(BaseModel):
    database: DatabaseConfig = DatabaseConfig()
    ingestion: IngestionConfig = IngestionConfig()
    analysis: AnalysisConfig = AnalysisConfig()
    flaky: FlakyConfig = FlakyConfig()
    log_level: str = "INFO"


def _coerce(value: str):
    """Env values arrive as strings; turn obvious booleans and numbers back."""
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def _apply_env_overrides(config_dict: dict, prefix: str = "CONFIG") -> dict:
    """Merge CONFIG__<SECTION>__<KEY> variables into the loaded YAML dict.

    CONFIG__FLAKY__HISTORY_LIMIT=20 ends up as config_dict["flaky"]["history_limit"].
    Sections missing from the YAML are created on the way.
    """
    marker = f"{prefix}__"
    overrides = {
        name[len(marker):].lower(): value
        for name, value in os.environ.items()
        if name.startswith(marker)
    }
    for dotted, value in sorted(overrides.items()):
        *sections, key = dotted.split("__")
        node = config_dict
        for section in sections:
            node = node.setdefault(section, {})
        node[key] = _coerce(value)
    return config_dict


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML file with env overrides.

    Priority: env vars > YAML file > defaults
    """
    config_dict = {}

    if config_path is None:
        config_path = os.getenv("JUNIT_INSIGHTS_CONFIG", DEFAULT_CONFIG_PATH)
    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            config_dict = yaml.safe_load(f) or {}

    config_dict = _apply_env_overrides(config_dict)

    if os.getenv("DATABASE_URL"):
        config_dict.setdefault("database", {})["url"] = os.environ["DATABASE_URL"]
    if os.getenv("LOG_LEVEL"):
        config_dict["log_level"] = os.environ["LOG_LEVEL"]

    return Settings(**config_dict)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings(config_path: Optional[str] = None) -> Settings:
    global _settings
    _settings = load_settings(config_path)
    return _settings
