"""
Lookup tables used by the normalization rules.

Defaults come from ``income_pipeline.config``. A JSON file can override any of
the three tables::

    {
        "place_lookup": [{"county": "Autauga County", "city": "Vinemont", "place": "Autaugaville"}],
        "type_variants": {"Boroughs": "Borough", "CPD": "CDP"},
        "state_name_variants": {"georia": "Georgia"}
    }

Entries are not validated here; a malformed entry only fails the rule for the
records it matches.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from income_pipeline.config import PLACE_LOOKUP, STATE_NAME_VARIANTS, TYPE_VARIANTS
from income_pipeline.errors import LoaderError


@dataclass
class LookupTables:
    """The three substitution tables applied by the default rule set."""
    place_lookup: dict[tuple[Any, Any], Any] = field(default_factory=dict)
    type_variants: dict[Any, Any] = field(default_factory=dict)
    state_name_variants: dict[Any, Any] = field(default_factory=dict)


def default_lookups() -> LookupTables:
    return LookupTables(
        place_lookup=dict(PLACE_LOOKUP),
        type_variants=dict(TYPE_VARIANTS),
        state_name_variants=dict(STATE_NAME_VARIANTS),
    )


def _parse_place_lookup(entries: list) -> dict[tuple[Any, Any], Any]:
    lookup = {}
    for entry in entries:
        if not isinstance(entry, dict):
            logger.warning(f"Ignoring place lookup entry that is not an object: {entry!r}")
            continue
        lookup[(entry.get("county"), entry.get("city"))] = entry.get("place")
    return lookup


def _as_mapping(path: Path, name: str, value: Any) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise LoaderError(f"{name} in {path} must be a JSON object")
    return dict(value)


def load_lookups(path: Path | None = None) -> LookupTables:
    """Load lookup tables, starting from the defaults.

    Args:
        path: Optional JSON override file

    Returns:
        LookupTables with any overridden tables replaced

    Raises:
        LoaderError: If the file is missing or not a JSON object
    """
    tables = default_lookups()
    if path is None:
        return tables

    path = Path(path)
    if not path.exists():
        raise LoaderError(f"Rules file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise LoaderError(f"Rules file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise LoaderError(f"Rules file {path} must contain a JSON object")

    if "place_lookup" in data:
        entries = data["place_lookup"] or []
        if not isinstance(entries, list):
            raise LoaderError(f"place_lookup in {path} must be a JSON array")
        tables.place_lookup = _parse_place_lookup(entries)
    if "type_variants" in data:
        tables.type_variants = _as_mapping(path, "type_variants", data["type_variants"])
    if "state_name_variants" in data:
        tables.state_name_variants = _as_mapping(path, "state_name_variants", data["state_name_variants"])

    logger.info(
        f"Loaded cleaning rules from {path}: "
        f"{len(tables.place_lookup)} place fills, "
        f"{len(tables.type_variants)} type variants, "
        f"{len(tables.state_name_variants)} state name variants"
    )
    return tables
