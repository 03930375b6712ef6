"""Utility modules for the cleaning pipeline."""

from income_pipeline.utils.logging import setup_logging
from income_pipeline.utils.text import clean_text, coerce_float, coerce_int

__all__ = [
    # Logging
    "setup_logging",
    # Text utilities
    "clean_text",
    "coerce_int",
    "coerce_float",
]
