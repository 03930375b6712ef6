"""
Configuration management for the US Household Income cleaning pipeline.

Uses pydantic-settings for type-safe configuration with environment variable support.
"""

from pathlib import Path
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    url: str = "sqlite:///./data/us_project.db"
    echo: bool = False


class PipelineSettings(BaseSettings):
    """Data pipeline settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Directories
    data_raw_dir: Path = Field(default=Path("./data/raw"))

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # Processing settings
    batch_size: int = 1000

    @field_validator("data_raw_dir", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert string to Path."""
        return Path(v)


class CleaningSettings(BaseSettings):
    """Snapshot build settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLEANING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Keep the rows of earlier builds next to the latest one
    keep_history: bool = False

    # What to do when a build is requested while another one is running
    on_conflict: Literal["reject", "wait"] = "reject"

    # Optional JSON file overriding the default lookup tables
    rules_path: Optional[Path] = None


class APISettings(BaseSettings):
    """API server settings."""

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


class Settings(BaseSettings):
    """Main settings class that combines all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    cleaning: CleaningSettings = Field(default_factory=CleaningSettings)
    api: APISettings = Field(default_factory=APISettings)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience function for quick access
settings = get_settings()


# =============================================================================
# Table Names
# =============================================================================

RAW_TABLE = "US_Household_Income"
CLEANED_TABLE = "US_Household_Income_Cleaned"
STATISTICS_TABLE = "US_Household_Income_Statistics"
BUILDS_TABLE = "snapshot_builds"

# Columns shared by the raw table and the snapshot, in source order
RECORD_COLUMNS = [
    "row_id",
    "id",
    "State_Code",
    "State_Name",
    "State_ab",
    "County",
    "City",
    "Place",
    "Type",
    "Primary",
    "Zip_Code",
    "Area_Code",
    "ALand",
    "AWater",
    "Lat",
    "Lon",
]

STATISTICS_COLUMNS = ["id", "State_Name", "Mean", "Median", "Stdev"]

# File names of the dataset exports inside data_raw_dir
RAW_CSV = "USHouseholdIncome.csv"
STATISTICS_CSV = "USHouseholdIncome_Statistics.csv"


# =============================================================================
# Cleaning Lookup Tables
# =============================================================================

# (County, City) -> Place, used to fill missing Place values
PLACE_LOOKUP = {
    ("Autauga County", "Vinemont"): "Autaugaville",
}

# Known misspellings of Type
TYPE_VARIANTS = {
    "Boroughs": "Borough",
    "CPD": "CDP",
}

# Known misspellings of State_Name
STATE_NAME_VARIANTS = {
    "georia": "Georgia",
}

# Text fields folded to upper case for joins and grouping
UPPERCASE_FIELDS = ["County", "City", "Place", "State_Name", "Type"]
