# SPDX-License-Identifier: MIT
"""Pytest configuration and fixtures for the household income pipeline tests."""

import os
import pytest
from typing import Generator

# Set test environment variables before importing the pipeline
os.environ.setdefault("DISABLE_LOGGING", "1")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from income_pipeline.config import RECORD_COLUMNS
from income_pipeline.database import (
    HouseholdIncome,
    HouseholdIncomeStatistics,
    build_engine,
)
from income_pipeline.ingesters import RecordStore, refresh_on_append
from income_pipeline.normalizers import Normalizer
from income_pipeline.snapshot import SnapshotBuilder, read_snapshot


@pytest.fixture
def db_engine(tmp_path):
    """SQLite database with the raw and statistics tables, but no snapshot yet."""
    engine = build_engine(f"sqlite:///{tmp_path / 'us_project.db'}")
    HouseholdIncome.__table__.create(engine)
    HouseholdIncomeStatistics.__table__.create(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def builder(session_factory) -> SnapshotBuilder:
    return SnapshotBuilder(
        session_factory=session_factory,
        normalizer=Normalizer(),
        keep_history=False,
        on_conflict="reject",
    )


@pytest.fixture
def store(session_factory, builder) -> RecordStore:
    """Record store whose appends refresh the snapshot."""
    record_store = RecordStore(session_factory=session_factory)
    refresh_on_append(record_store, builder)
    return record_store


@pytest.fixture
def read_cleaned(session_factory):
    """Return the latest snapshot build as plain dicts ordered by row_id."""

    def _read(include_history: bool = False, with_timestamp: bool = False) -> list[dict]:
        with session_factory() as session:
            rows = read_snapshot(session, include_history=include_history)
            result = []
            for row in rows:
                data = {name: getattr(row, name) for name in RECORD_COLUMNS}
                if with_timestamp:
                    data["TimeStamp"] = row.TimeStamp
                    data["snapshot_row_id"] = row.snapshot_row_id
                result.append(data)
            return sorted(result, key=lambda r: (str(r.get("TimeStamp", "")), r["row_id"]))

    return _read


@pytest.fixture
def raw_count(session_factory):
    def _count() -> int:
        with session_factory() as session:
            return len(session.scalars(select(HouseholdIncome.row_id)).all())

    return _count


@pytest.fixture
def sample_record() -> dict:
    """Sample raw record for testing."""
    return {
        "row_id": 1,
        "id": 1011000,
        "State_Code": 1,
        "State_Name": "Alabama",
        "State_ab": "AL",
        "County": "Mobile County",
        "City": "Chickasaw",
        "Place": "Chickasaw city",
        "Type": "City",
        "Primary": "place",
        "Zip_Code": 36611,
        "Area_Code": 251,
        "ALand": 10894952,
        "AWater": 909156,
        "Lat": 30.7718,
        "Lon": -88.0794,
    }


@pytest.fixture
def sample_records(sample_record: dict) -> list:
    """Raw records covering duplicates and every cleaning rule."""
    return [
        sample_record,
        {
            **sample_record,
            "row_id": 2,
            "id": 1011010,
            "County": "Autauga County",
            "City": "Vinemont",
            "Place": None,
            "Type": "Boroughs",
            "AWater": 1000,
        },
        {
            **sample_record,
            "row_id": 3,
            "id": 1011020,
            "State_Code": 13,
            "State_Name": "georia",
            "State_ab": "GA",
            "County": "Fulton County",
            "City": "Atlanta",
            "Place": "Atlanta city",
            "Type": "CPD",
            "AWater": 5000,
        },
        # Duplicate of row 1 inserted later
        {**sample_record, "row_id": 4, "City": "Chickasaw (dup)"},
        {
            **sample_record,
            "row_id": 5,
            "id": 1011030,
            "State_Name": "North Carolina",
            "State_ab": "NC",
            "County": "Alamance County",
            "City": "Charlotte",
            "Place": "Alamance",
            "Type": "Track",
            "Primary": "Track",
        },
    ]


@pytest.fixture
def sample_statistics() -> list:
    return [
        {"id": 1011000, "State_Name": "Alabama", "Mean": 38773, "Median": 30506, "Stdev": 33101},
        {"id": 1011010, "State_Name": "Alabama", "Mean": 37725, "Median": 19528, "Stdev": 43789},
        {"id": 1011020, "State_Name": "Georgia", "Mean": 54606, "Median": 31930, "Stdev": 57348},
        {"id": 1011030, "State_Name": "North Carolina", "Mean": 0, "Median": 0, "Stdev": 0},
    ]


@pytest.fixture
def test_client(session_factory, builder, store) -> Generator:
    """FastAPI test client bound to the test database."""
    from fastapi.testclient import TestClient

    from api.dependencies import get_builder, get_store
    from api.main import app
    from income_pipeline.database import get_db

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_builder] = lambda: builder
    app.dependency_overrides[get_store] = lambda: store

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
