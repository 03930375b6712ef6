"""
Ingestion interface for the raw household income table.

All writes to the raw table go through ``RecordStore.append``; the CSV
loaders are thin wrappers around it.
"""

from .csv_files import load_raw_csv, load_statistics_csv, read_rows
from .models import RawRecordFields, StatisticsFields
from .record_store import AppendResult, RecordStore, refresh_on_append

__all__ = [
    'RecordStore',
    'AppendResult',
    'refresh_on_append',
    'RawRecordFields',
    'StatisticsFields',
    'load_raw_csv',
    'load_statistics_csv',
    'read_rows',
]
