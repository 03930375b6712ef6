"""
Deduplication pipeline components.

These modules rank rows that share a natural key and drop all but the
earliest inserted one.
"""

from .ranking import deduplicate, find_duplicates, group_key, rank_records

__all__ = [
    'rank_records',
    'find_duplicates',
    'deduplicate',
    'group_key',
]
