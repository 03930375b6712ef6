"""
Natural-key ranking and duplicate removal.

Records are grouped by their natural key (``id``), optionally together with
extra grouping fields such as the build ``TimeStamp``. Within a group the
record with the lowest ``row_id`` gets rank 1 and survives; input order breaks
any remaining tie. A record without an ``id`` is always its own group.
"""

from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any

KEY_FIELD = "id"
ORDER_FIELD = "row_id"


def _get(record: Any, field: str) -> Any:
    """Read ``field`` from an ORM row, an object or a mapping."""
    if isinstance(record, dict):
        return record.get(field)
    return getattr(record, field, None)


def _order_value(record: Any, position: int) -> tuple:
    row_id = _get(record, ORDER_FIELD)
    # Rows without a row_id sort after every numbered row
    return (row_id is None, row_id if row_id is not None else 0, position)


def group_key(record: Any, position: int, group_by: Sequence[str] = ()) -> tuple:
    """Build the grouping key for a record.

    Records with a NULL or missing natural key get a key unique to their
    position, so they are never grouped with one another.
    """
    natural_key = _get(record, KEY_FIELD)
    if natural_key is None:
        return ("__singleton__", position)
    return (natural_key, *(_get(record, field) for field in group_by))


def rank_records(records: Iterable[Any], group_by: Sequence[str] = ()) -> list[tuple[Any, int]]:
    """Assign each record its rank within its natural-key group.

    Args:
        records: Ordered records (ORM rows or mappings)
        group_by: Extra fields that partition the natural key, e.g. ``("TimeStamp",)``

    Returns:
        ``(record, rank)`` pairs in input order, rank 1 being the survivor
    """
    records = list(records)
    groups: dict[tuple, list[int]] = defaultdict(list)
    for position, record in enumerate(records):
        groups[group_key(record, position, group_by)].append(position)

    ranks = [0] * len(records)
    for positions in groups.values():
        ordered = sorted(positions, key=lambda p: _order_value(records[p], p))
        for rank, position in enumerate(ordered, start=1):
            ranks[position] = rank

    return list(zip(records, ranks))


def find_duplicates(records: Iterable[Any], group_by: Sequence[str] = ()) -> list[Any]:
    """Return the records that would be discarded (rank greater than 1)."""
    return [record for record, rank in rank_records(records, group_by) if rank > 1]


def deduplicate(records: Iterable[Any], group_by: Sequence[str] = ()) -> list[Any]:
    """Keep one record per natural-key group, preserving input order."""
    return [record for record, rank in rank_records(records, group_by) if rank == 1]
