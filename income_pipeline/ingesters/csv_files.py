"""
Bulk loaders for the household income CSV exports.

Raw rows go through ``RecordStore.append`` as one append event, so a bulk load
fires a single snapshot refresh. Statistics rows are upserted directly; the
cleaning core never touches them.
"""

import csv
from collections.abc import Iterator
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from income_pipeline.config import RECORD_COLUMNS, STATISTICS_COLUMNS
from income_pipeline.database import HouseholdIncomeStatistics, SessionLocal, get_session
from income_pipeline.errors import LoaderError
from income_pipeline.ingesters.models import StatisticsFields
from income_pipeline.ingesters.record_store import AppendResult, RecordStore
from income_pipeline.utils.text import clean_text, coerce_float, coerce_int

INT_COLUMNS = {"row_id", "id", "State_Code", "Zip_Code", "Area_Code", "ALand", "AWater", "Mean", "Median", "Stdev"}
FLOAT_COLUMNS = {"Lat", "Lon"}


def _header_map(fieldnames: list[str] | None, columns: list[str], path: Path) -> dict[str, str]:
    """Map CSV headers to column names, ignoring case and surrounding spaces."""
    if not fieldnames:
        raise LoaderError(f"{path} has no header row")

    by_lower = {column.lower(): column for column in columns}
    mapping = {}
    for header in fieldnames:
        column = by_lower.get((header or "").strip().lower())
        if column:
            mapping[header] = column
        else:
            logger.debug(f"Ignoring unknown column {header!r} in {path.name}")
    return mapping


def _convert(column: str, value):
    if column in INT_COLUMNS:
        return coerce_int(value)
    if column in FLOAT_COLUMNS:
        return coerce_float(value)
    return clean_text(value)


def read_rows(path: Path, columns: list[str], encoding: str = "utf-8-sig") -> Iterator[dict]:
    """
    Yield typed rows from a CSV file.

    Args:
        path: CSV file
        columns: Known column names
        encoding: File encoding (the Kaggle exports are often latin-1)

    Raises:
        LoaderError: If the file is missing or a numeric cell cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        raise LoaderError(f"File not found: {path}")

    try:
        with open(path, newline="", encoding=encoding) as f:
            reader = csv.DictReader(f)
            mapping = _header_map(reader.fieldnames, columns, path)
            for line_number, raw in enumerate(reader, start=2):
                row = {}
                for header, column in mapping.items():
                    try:
                        row[column] = _convert(column, raw.get(header))
                    except ValueError as e:
                        raise LoaderError(f"{path.name}:{line_number}: bad {column} value {raw.get(header)!r}") from e
                yield row
    except UnicodeDecodeError as e:
        raise LoaderError(f"{path} is not {encoding} encoded: {e}") from e


def load_raw_csv(path: Path, store: RecordStore, encoding: str = "utf-8-sig") -> AppendResult:
    """Append every row of a raw household income CSV as one append event."""
    rows = list(read_rows(path, RECORD_COLUMNS, encoding=encoding))
    logger.info(f"Read {len(rows)} raw records from {path}")
    try:
        return store.append(rows)
    except ValidationError as e:
        raise LoaderError(f"{path} contains invalid records: {e}") from e


def load_statistics_csv(path: Path, session_factory=None, encoding: str = "utf-8-sig") -> int:
    """
    Upsert the income statistics CSV.

    Returns:
        Number of rows written
    """
    count = 0
    with get_session(session_factory or SessionLocal) as session:
        for row in read_rows(path, STATISTICS_COLUMNS, encoding=encoding):
            try:
                fields = StatisticsFields.model_validate(row)
            except ValidationError as e:
                raise LoaderError(f"{path} contains an invalid statistics row {row!r}: {e}") from e
            session.merge(HouseholdIncomeStatistics(**fields.model_dump()))
            count += 1

    logger.info(f"Loaded {count} statistics records from {path}")
    return count
