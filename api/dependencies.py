"""
Shared pipeline objects for the API.

One builder per process owns the snapshot; the record store is wired to it so
every append refreshes the snapshot before the request returns.
"""

from functools import lru_cache

from income_pipeline.ingesters import RecordStore, refresh_on_append
from income_pipeline.snapshot import SnapshotBuilder


@lru_cache()
def get_builder() -> SnapshotBuilder:
    return SnapshotBuilder()


@lru_cache()
def get_store() -> RecordStore:
    store = RecordStore()
    refresh_on_append(store, get_builder())
    return store
