"""
Cleaned snapshot builder.

Copies the raw household income table into the cleaned snapshot, removes
duplicate rows and normalizes text fields, all inside a single transaction.
A build either commits completely or leaves the snapshot exactly as it was.

Usage:
    builder = SnapshotBuilder()
    result = builder.rebuild()
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import DateTime, delete, func, inspect, insert, literal, select, text
from sqlalchemy.orm import Session

from income_pipeline.config import CLEANED_TABLE, RAW_TABLE, RECORD_COLUMNS, settings
from income_pipeline.database import (
    HouseholdIncome,
    HouseholdIncomeCleaned,
    SessionLocal,
    SnapshotBuild,
    get_session,
)
from income_pipeline.deduplication import find_duplicates
from income_pipeline.errors import ConcurrencyConflict, StructuralError, TransactionFailure
from income_pipeline.normalizers import Normalizer, default_rules, load_lookups


@dataclass
class BuildResult:
    """Result of one snapshot build."""
    trigger: str
    built_at: datetime | None = None
    build_id: int | None = None
    raw_count: int = 0
    copied_count: int = 0
    duplicates_removed: int = 0
    rule_skips: int = 0
    records_written: int = 0
    pruned_count: int = 0
    table_created: bool = False
    rules_changed: dict[str, int] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Calculate duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


def _chunks(values: list, size: int):
    for start in range(0, len(values), size):
        yield values[start:start + size]


class SnapshotBuilder:
    """
    Owner of the cleaned snapshot.

    Only one build runs at a time per builder. With ``on_conflict="reject"``
    a second concurrent request raises ``ConcurrencyConflict``; with
    ``"wait"`` it blocks until the running build finishes.
    """

    def __init__(
        self,
        session_factory=None,
        normalizer: Normalizer | None = None,
        keep_history: bool | None = None,
        on_conflict: str | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.normalizer = normalizer or Normalizer(default_rules(load_lookups(settings.cleaning.rules_path)))
        self.keep_history = settings.cleaning.keep_history if keep_history is None else keep_history
        self.on_conflict = on_conflict or settings.cleaning.on_conflict
        self.batch_size = batch_size or settings.pipeline.batch_size
        self._lock = threading.RLock()

        if self.on_conflict not in ("reject", "wait"):
            raise ValueError(f"on_conflict must be 'reject' or 'wait', got {self.on_conflict!r}")

    @contextmanager
    def exclusive(self):
        """
        Hold the single-writer lock.

        Reentrant for the owning thread, so callers can hold it across a
        build and the commit that follows it.
        """
        acquired = self._lock.acquire(blocking=self.on_conflict == "wait")
        if not acquired:
            raise ConcurrencyConflict("A snapshot build is already in progress")
        try:
            yield
        finally:
            self._lock.release()

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def rebuild(self, trigger: str = "manual") -> BuildResult:
        """Run a build in its own session and commit it."""
        with self.exclusive(), get_session(self.session_factory) as session:
            result = self.build(session, trigger=trigger)
        logger.info(
            f"Snapshot build {result.build_id} committed: "
            f"{result.records_written} records @ {result.built_at:%Y-%m-%d %H:%M:%S}"
        )
        return result

    def build(self, session: Session, trigger: str = "manual") -> BuildResult:
        """
        Build the snapshot inside the caller's transaction.

        The build runs in a savepoint: on failure the savepoint is rolled
        back, so the snapshot is unchanged, and the error is raised. The
        caller decides when the surrounding transaction commits.

        Raises:
            StructuralError: Snapshot or raw table has an incompatible schema
            ConcurrencyConflict: Another build is running (reject policy)
            TransactionFailure: Any other step failed
        """
        with self.exclusive():
            try:
                with session.begin_nested():
                    return self._run(session, trigger)
            except StructuralError:
                logger.error("Snapshot build aborted: incompatible schema")
                raise
            except Exception as e:
                logger.error(f"Snapshot build failed and was rolled back: {e}")
                raise TransactionFailure(f"Snapshot build failed: {e}") from e

    # -------------------------------------------------------------------------
    # Build steps
    # -------------------------------------------------------------------------

    def _run(self, session: Session, trigger: str) -> BuildResult:
        result = BuildResult(trigger=trigger, started_at=datetime.now())

        # Step 1. Make sure the snapshot table exists and is compatible
        result.table_created = self.ensure_snapshot_table(session)
        self._lock_snapshot_table(session)

        # Step 2. Copy the raw table with a fresh build timestamp
        built_at = self._next_build_time(session)
        result.built_at = built_at
        result.raw_count = session.scalar(select(func.count()).select_from(HouseholdIncome)) or 0
        result.copied_count = self.copy_raw_records(session, built_at)

        # Step 3. Remove duplicates introduced by this copy
        batch = session.scalars(
            select(HouseholdIncomeCleaned)
            .where(HouseholdIncomeCleaned.TimeStamp == built_at)
            .order_by(HouseholdIncomeCleaned.snapshot_row_id)
        ).all()
        duplicates = find_duplicates(batch, group_by=("TimeStamp",))
        self._delete_rows(session, duplicates)
        duplicate_ids = {row.snapshot_row_id for row in duplicates}
        survivors = [row for row in batch if row.snapshot_row_id not in duplicate_ids]
        result.duplicates_removed = len(duplicates)

        # Step 4. Normalize the survivors
        stats = self.normalizer.normalize(survivors)
        result.rule_skips = stats.total_skipped
        result.rules_changed = dict(stats.changed)
        result.records_written = len(survivors)
        session.flush()

        if not self.keep_history:
            result.pruned_count = session.execute(
                delete(HouseholdIncomeCleaned)
                .where(HouseholdIncomeCleaned.TimeStamp < built_at)
                .execution_options(synchronize_session=False)
            ).rowcount or 0

        build = SnapshotBuild(
            built_at=built_at,
            trigger=trigger,
            raw_count=result.raw_count,
            copied_count=result.copied_count,
            duplicates_removed=result.duplicates_removed,
            rule_skips=result.rule_skips,
            records_written=result.records_written,
        )
        session.add(build)
        session.flush()

        result.build_id = build.id
        result.completed_at = datetime.now()
        logger.info(
            f"Built snapshot ({trigger}): copied={result.copied_count} "
            f"duplicates_removed={result.duplicates_removed} "
            f"rule_skips={result.rule_skips} pruned={result.pruned_count}"
        )
        return result

    def ensure_snapshot_table(self, session: Session) -> bool:
        """
        Create the snapshot and build log tables if absent.

        Returns:
            True if the snapshot table was created by this call

        Raises:
            StructuralError: If the raw table is missing, or the existing
                snapshot table lacks required columns
        """
        conn = session.connection()
        inspector = inspect(conn)

        if not inspector.has_table(RAW_TABLE):
            raise StructuralError(f"Record store table {RAW_TABLE} does not exist")

        SnapshotBuild.__table__.create(conn, checkfirst=True)

        if not inspector.has_table(CLEANED_TABLE):
            HouseholdIncomeCleaned.__table__.create(conn)
            logger.info(f"Created snapshot table {CLEANED_TABLE}")
            return True

        existing = {column["name"] for column in inspector.get_columns(CLEANED_TABLE)}
        missing = [column.name for column in HouseholdIncomeCleaned.__table__.columns if column.name not in existing]
        if missing:
            raise StructuralError(f"Snapshot table {CLEANED_TABLE} is missing columns: {', '.join(missing)}")
        return False

    def copy_raw_records(self, session: Session, built_at: datetime) -> int:
        """Copy every raw row into the snapshot stamped with ``built_at``."""
        source = select(
            *(getattr(HouseholdIncome, name) for name in RECORD_COLUMNS),
            literal(built_at, type_=DateTime).label("TimeStamp"),
        ).order_by(HouseholdIncome.row_id)

        session.execute(
            insert(HouseholdIncomeCleaned.__table__).from_select([*RECORD_COLUMNS, "TimeStamp"], source)
        )
        return session.scalar(
            select(func.count())
            .select_from(HouseholdIncomeCleaned)
            .where(HouseholdIncomeCleaned.TimeStamp == built_at)
        ) or 0

    def _next_build_time(self, session: Session) -> datetime:
        """Current time, bumped past the newest existing build if needed."""
        now = datetime.now()
        latest = session.scalar(select(func.max(HouseholdIncomeCleaned.TimeStamp)))
        latest_build = session.scalar(select(func.max(SnapshotBuild.built_at)))
        for previous in (latest, latest_build):
            if previous is not None and now <= previous:
                now = previous + timedelta(microseconds=1)
        return now

    def _delete_rows(self, session: Session, rows: list[HouseholdIncomeCleaned]) -> None:
        ids = [row.snapshot_row_id for row in rows]
        for chunk in _chunks(ids, self.batch_size):
            session.execute(
                delete(HouseholdIncomeCleaned)
                .where(HouseholdIncomeCleaned.snapshot_row_id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
        for row in rows:
            session.expunge(row)

    def _lock_snapshot_table(self, session: Session) -> None:
        if session.get_bind().dialect.name == "postgresql":
            session.execute(text(f'LOCK TABLE "{CLEANED_TABLE}" IN EXCLUSIVE MODE'))


# =============================================================================
# Snapshot read interface
# =============================================================================

def snapshot_version(session: Session) -> SnapshotBuild | None:
    """Latest committed build, or None if the snapshot was never built."""
    if not inspect(session.connection()).has_table(SnapshotBuild.__tablename__):
        return None
    return session.scalars(select(SnapshotBuild).order_by(SnapshotBuild.id.desc()).limit(1)).first()


def read_snapshot(
    session: Session,
    limit: int | None = None,
    offset: int = 0,
    include_history: bool = False,
) -> list[HouseholdIncomeCleaned]:
    """
    Rows of the cleaned snapshot.

    Args:
        session: Database session
        limit: Maximum number of rows
        offset: Rows to skip
        include_history: Also return rows of earlier retained builds

    Returns:
        Cleaned rows ordered by build time and row_id
    """
    if not inspect(session.connection()).has_table(CLEANED_TABLE):
        return []

    query = select(HouseholdIncomeCleaned)
    if not include_history:
        latest = select(func.max(HouseholdIncomeCleaned.TimeStamp)).scalar_subquery()
        query = query.where(HouseholdIncomeCleaned.TimeStamp == latest)

    query = query.order_by(HouseholdIncomeCleaned.TimeStamp, HouseholdIncomeCleaned.row_id).offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return list(session.scalars(query).all())


def snapshot_count(session: Session) -> int:
    """Number of rows in the latest snapshot build."""
    if not inspect(session.connection()).has_table(CLEANED_TABLE):
        return 0

    latest = select(func.max(HouseholdIncomeCleaned.TimeStamp)).scalar_subquery()
    return session.scalar(
        select(func.count())
        .select_from(HouseholdIncomeCleaned)
        .where(HouseholdIncomeCleaned.TimeStamp == latest)
    ) or 0
