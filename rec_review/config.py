"""
Configuration loading for the review engine.

Configuration is a YAML file with two sections:

    database:
      path: rec_review.duckdb
    lifecycle:
      confirmation_timeout_seconds: 10
      inactivity_expiry_days: 180
      archive_after_days: 365
      chairperson_default_label: REC Chairperson
    logging:
      level: INFO

``database`` is required; everything else has a default.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


logger = logging.getLogger(__name__)

DEFAULT_CHAIRPERSON_LABEL = "REC Chairperson"
REQUIRED_KEYS = ["database"]


@dataclass(frozen=True)
class ReviewConfig:
    """Resolved engine configuration."""
    database_path: str = "rec_review.duckdb"
    confirmation_timeout_seconds: float = 10.0
    inactivity_expiry_days: Optional[int] = 180
    archive_after_days: int = 365
    chairperson_default_label: str = DEFAULT_CHAIRPERSON_LABEL
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ReviewConfig":
        """
        Build a config from the parsed YAML mapping.

        Raises:
            ValueError: If a required key is missing or a value is invalid
        """
        if not isinstance(raw, dict):
            raise ValueError("Config must be a mapping")
        for key in REQUIRED_KEYS:
            if key not in raw:
                raise ValueError(f"Missing required config key: {key}")
        if "path" not in (raw["database"] or {}):
            raise ValueError("Missing required config key: database.path")

        lifecycle = raw.get("lifecycle") or {}
        logging_section = raw.get("logging") or {}

        config = cls(
            database_path=str(raw["database"]["path"]),
            confirmation_timeout_seconds=float(lifecycle.get("confirmation_timeout_seconds", 10.0)),
            inactivity_expiry_days=lifecycle.get("inactivity_expiry_days", 180),
            archive_after_days=int(lifecycle.get("archive_after_days", 365)),
            chairperson_default_label=lifecycle.get("chairperson_default_label", DEFAULT_CHAIRPERSON_LABEL),
            log_level=str(logging_section.get("level", "INFO")).upper(),
        )

        if config.confirmation_timeout_seconds <= 0:
            raise ValueError("lifecycle.confirmation_timeout_seconds must be positive")
        if config.inactivity_expiry_days is not None and int(config.inactivity_expiry_days) <= 0:
            raise ValueError("lifecycle.inactivity_expiry_days must be positive or null")
        if config.archive_after_days < 0:
            raise ValueError("lifecycle.archive_after_days must not be negative")
        if config.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown logging.level: {config.log_level}")
        return config


def load_config(config_path: str = "config.yaml") -> ReviewConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to YAML configuration file

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a required key is missing
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    config = ReviewConfig.from_dict(raw or {})
    logger.info(f"Loaded config from {config_path}")
    return config
