"""
Append-only record store with synchronous refresh subscribers.

Every call to ``RecordStore.append`` is one append event: the rows are
inserted, each subscriber runs once inside the same transaction, and only then
does the transaction commit. If a subscriber fails the inserted rows are rolled
back together with whatever the subscriber wrote.
"""

from collections.abc import Callable, Iterable, Mapping
from contextlib import AbstractContextManager, ExitStack
from dataclasses import dataclass, field
from typing import Any, Union

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from income_pipeline.database import HouseholdIncome, SessionLocal, get_session
from income_pipeline.errors import ConcurrencyConflict, TransactionFailure
from income_pipeline.ingesters.models import RawRecordFields

RecordInput = Union[RawRecordFields, Mapping[str, Any]]
Subscriber = Callable[[Session, list[HouseholdIncome]], Any]
Guard = Callable[[], AbstractContextManager]


@dataclass
class AppendResult:
    """Result of one append event."""
    row_ids: list[int] = field(default_factory=list)
    refresh_results: list[Any] = field(default_factory=list)

    @property
    def records_appended(self) -> int:
        return len(self.row_ids)


class RecordStore:
    """
    The raw household income table.

    Rows are only ever inserted. Subscribers registered with ``subscribe``
    fire after each successful insert and before the caller gets control back.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal
        self._subscribers: list[Subscriber] = []
        self._guards: list[Guard] = []

    def subscribe(self, callback: Subscriber, guard: Guard | None = None) -> None:
        """
        Register a callback fired once per append event.

        Args:
            callback: Called as ``callback(session, inserted_rows)`` inside the
                append transaction
            guard: Optional context manager factory held around the whole
                append transaction, e.g. a single-writer lock
        """
        self._subscribers.append(callback)
        if guard is not None:
            self._guards.append(guard)

    def append(self, records: Union[RecordInput, Iterable[RecordInput]]) -> AppendResult:
        """
        Insert one or many raw rows as a single append event.

        Raises:
            pydantic.ValidationError: If a record has unknown fields or bad types
            ConcurrencyConflict: If a guard rejects the append
            TransactionFailure: If the insert or any subscriber failed; nothing
                was written
        """
        validated = [_validate(record) for record in _as_list(records)]
        result = AppendResult()
        if not validated:
            return result

        with ExitStack() as stack:
            for guard in self._guards:
                stack.enter_context(guard())

            try:
                with get_session(self.session_factory) as session:
                    rows = self._insert(session, validated)
                    result.row_ids = [row.row_id for row in rows]
                    for callback in self._subscribers:
                        result.refresh_results.append(callback(session, rows))
            except (ConcurrencyConflict, TransactionFailure):
                logger.error(f"Append of {len(validated)} records rolled back")
                raise
            except Exception as e:
                logger.error(f"Append of {len(validated)} records rolled back: {e}")
                raise TransactionFailure(f"Append failed: {e}") from e

        logger.info(f"Appended {result.records_appended} records (row_ids {result.row_ids[0]}..{result.row_ids[-1]})")
        return result

    def count(self) -> int:
        with get_session(self.session_factory) as session:
            return session.scalar(select(func.count()).select_from(HouseholdIncome)) or 0

    def _insert(self, session: Session, records: list[RawRecordFields]) -> list[HouseholdIncome]:
        next_row_id = (session.scalar(select(func.max(HouseholdIncome.row_id))) or 0) + 1
        taken = {record.row_id for record in records if record.row_id is not None}

        rows = []
        for record in records:
            values = record.model_dump()
            if values["row_id"] is None:
                while next_row_id in taken:
                    next_row_id += 1
                values["row_id"] = next_row_id
                taken.add(next_row_id)
            rows.append(HouseholdIncome(**values))

        session.add_all(rows)
        session.flush()
        return rows


def _as_list(records) -> list:
    if isinstance(records, (RawRecordFields, Mapping)):
        return [records]
    return list(records)


def _validate(record: RecordInput) -> RawRecordFields:
    if isinstance(record, RawRecordFields):
        return record
    return RawRecordFields.model_validate(dict(record))


def refresh_on_append(store: RecordStore, builder) -> Subscriber:
    """
    Rebuild the cleaned snapshot after every append to ``store``.

    The builder's single-writer lock is held for the whole append
    transaction, so appends and builds never interleave.
    """

    def _refresh(session: Session, rows: list[HouseholdIncome]):
        logger.debug(f"Append of {len(rows)} records triggered a snapshot build")
        return builder.build(session, trigger="append")

    store.subscribe(_refresh, guard=builder.exclusive)
    return _refresh
