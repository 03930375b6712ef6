"""Value coercion helpers for raw CSV input."""

import re


def clean_text(value: str | None) -> str | None:
    """Strip surrounding whitespace; empty strings and NULL markers become None.

    Args:
        value: Raw cell value

    Returns:
        Cleaned string or None
    """
    if value is None:
        return None

    text = re.sub(r"\s+", " ", str(value)).strip()
    if not text or text.upper() == "NULL":
        return None
    return text


def coerce_int(value) -> int | None:
    """Parse an integer cell, tolerating thousands separators and "12.0".

    Raises:
        ValueError: If the value is present but not numeric
    """
    text = clean_text(value) if not isinstance(value, (int, float)) else value
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return int(text)

    text = text.replace(",", "")
    try:
        return int(text)
    except ValueError:
        return int(float(text))


def coerce_float(value) -> float | None:
    """Parse a float cell.

    Raises:
        ValueError: If the value is present but not numeric
    """
    if isinstance(value, (int, float)):
        return float(value)

    text = clean_text(value)
    if text is None:
        return None
    return float(text.replace(",", ""))
