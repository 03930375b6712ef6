"""
Database models for the US Household Income project.

Uses SQLAlchemy 2.0. Column names follow the original dataset exports so that
reporting queries and CSV headers line up one to one.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    create_engine,
    event,
    BigInteger,
    DateTime,
    Engine,
    Float,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    sessionmaker,
)
from sqlalchemy.sql import func

from income_pipeline.config import (
    BUILDS_TABLE,
    CLEANED_TABLE,
    RAW_TABLE,
    STATISTICS_TABLE,
    settings,
)


# =============================================================================
# Database Engine and Session
# =============================================================================

def _enable_sqlite_transactions(engine: Engine) -> None:
    """Make pysqlite emit BEGIN itself so DDL and DML roll back together."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for ``url``."""
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _enable_sqlite_transactions(engine)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
    )


engine = build_engine(settings.database.url, echo=settings.database.echo)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_session(session_factory=None):
    """Context manager for database sessions.

    Commits on success, rolls back on any exception and re-raises it.
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================================
# Base Model
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class RecordColumns:
    """Columns shared by the raw table and the cleaned snapshot."""

    id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    State_Code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    State_Name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    State_ab: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    County: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    City: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    Place: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    Type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    Primary: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    Zip_Code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    Area_Code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ALand: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    AWater: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    Lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    Lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


# =============================================================================
# Record Store
# =============================================================================

class HouseholdIncome(RecordColumns, Base):
    """
    Raw household income record.

    Append-only: rows are inserted by the ingestion interface and never
    updated. Several rows may describe the same logical entity (same ``id``).
    """
    __tablename__ = RAW_TABLE

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    __table_args__ = (
        Index("idx_household_income_id", "id"),
    )

    def __repr__(self) -> str:
        return f"<HouseholdIncome row_id={self.row_id} id={self.id} {self.City}, {self.State_ab}>"


# =============================================================================
# Cleaned Snapshot
# =============================================================================

class HouseholdIncomeCleaned(RecordColumns, Base):
    """
    Cleaned copy of the raw table, rebuilt by the snapshot builder.

    Every row carries the build timestamp of the build that produced it.
    ``row_id`` is not unique here because earlier builds may be retained.
    """
    __tablename__ = CLEANED_TABLE

    snapshot_row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    row_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    TimeStamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_cleaned_id_timestamp", "id", "TimeStamp"),
        Index("idx_cleaned_timestamp", "TimeStamp"),
    )

    def __repr__(self) -> str:
        return f"<HouseholdIncomeCleaned row_id={self.row_id} id={self.id} @ {self.TimeStamp}>"


# =============================================================================
# Statistics (read-only for the cleaning core)
# =============================================================================

class HouseholdIncomeStatistics(Base):
    """Per-region income statistics, joined to the snapshot on ``id``."""
    __tablename__ = STATISTICS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    State_Name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    Mean: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    Median: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    Stdev: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<HouseholdIncomeStatistics id={self.id} mean={self.Mean}>"


# =============================================================================
# Build Log
# =============================================================================

class SnapshotBuild(Base):
    """
    One committed snapshot build.

    Written in the same transaction as the build itself, so a rolled back
    build leaves no trace. The newest row names the current snapshot version.
    """
    __tablename__ = BUILDS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    built_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)  # append, manual

    raw_count: Mapped[int] = mapped_column(Integer, default=0)
    copied_count: Mapped[int] = mapped_column(Integer, default=0)
    duplicates_removed: Mapped[int] = mapped_column(Integer, default=0)
    rule_skips: Mapped[int] = mapped_column(Integer, default=0)
    records_written: Mapped[int] = mapped_column(Integer, default=0)

    def __repr__(self) -> str:
        return f"<SnapshotBuild {self.id} {self.trigger} @ {self.built_at}>"


# =============================================================================
# Helper Functions
# =============================================================================

def create_all_tables(bind=None):
    """Create all database tables."""
    Base.metadata.create_all(bind=bind or engine)


def drop_all_tables(bind=None):
    """Drop all database tables. USE WITH CAUTION!"""
    Base.metadata.drop_all(bind=bind or engine)
