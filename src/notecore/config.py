"""Configuration module for notecore."""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notecore import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default database
_USER_ENV = Path.home() / ".notecore" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


class NoteCoreConfig(BaseModel):
    """Configuration for the search and tagging core."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTECORE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTECORE_DATABASE_PATH", "data/db/notecore.db")
        )
    )
    # Seconds a writer waits for the SQLite write lock before failing
    busy_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("NOTECORE_BUSY_TIMEOUT", "30")
    )
    # Ranking weights: title matches count roughly twice as much as body matches
    title_weight: float = Field(
        default_factory=lambda: _env_float("NOTECORE_TITLE_WEIGHT", "2.0")
    )
    body_weight: float = Field(
        default_factory=lambda: _env_float("NOTECORE_BODY_WEIGHT", "1.0")
    )
    # Texts shorter than this are never language-detected
    min_detection_length: int = Field(
        default_factory=lambda: _env_int("NOTECORE_MIN_DETECTION_LENGTH", "20")
    )
    # Tag catalog
    default_tag_color: str = Field(
        default_factory=lambda: os.getenv("NOTECORE_DEFAULT_TAG_COLOR", "#21409A")
    )
    max_tag_name_length: int = Field(
        default_factory=lambda: _env_int("NOTECORE_MAX_TAG_NAME_LENGTH", "50")
    )
    # Search paging
    default_page_size: int = Field(
        default_factory=lambda: _env_int("NOTECORE_DEFAULT_PAGE_SIZE", "20")
    )
    max_page_size: int = Field(
        default_factory=lambda: _env_int("NOTECORE_MAX_PAGE_SIZE", "100")
    )
    # Default search deadline; None means searches only stop on explicit cancel
    search_timeout_seconds: Optional[float] = Field(
        default_factory=lambda: (
            float(os.getenv("NOTECORE_SEARCH_TIMEOUT"))
            if os.getenv("NOTECORE_SEARCH_TIMEOUT")
            else None
        )
    )
    # Logging
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTECORE_LOG_DIR"))
            if os.getenv("NOTECORE_LOG_DIR")
            else None
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTECORE_LOG_LEVEL", "INFO").upper()
    )
    version: str = Field(default=__version__)

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _validate_settings(self) -> "NoteCoreConfig":
        """Reject settings that would break ranking, paging or tagging."""
        if self.title_weight <= 0 or self.body_weight <= 0:
            raise ValueError("title_weight and body_weight must be positive")
        if self.title_weight < self.body_weight:
            logger.warning(
                "title_weight (%.2f) is lower than body_weight (%.2f); "
                "title matches will rank below body matches",
                self.title_weight,
                self.body_weight,
            )
        if self.min_detection_length < 1:
            raise ValueError("min_detection_length must be >= 1")
        if self.max_tag_name_length < 1:
            raise ValueError("max_tag_name_length must be >= 1")
        if self.max_page_size < 1:
            raise ValueError("max_page_size must be >= 1")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError("default_page_size must be between 1 and max_page_size")
        if self.busy_timeout_seconds < 0:
            raise ValueError("busy_timeout_seconds must be >= 0")
        if not _HEX_COLOR.match(self.default_tag_color):
            raise ValueError("default_tag_color must look like #RRGGBB")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {self.log_level}")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"


# Create a global config instance
config = NoteCoreConfig()
