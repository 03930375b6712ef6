# SPDX-License-Identifier: MIT
"""Tests for the cleaned snapshot builder."""

import threading
import time
from datetime import datetime

import pytest
from sqlalchemy import inspect, select, text

from income_pipeline.config import CLEANED_TABLE
from income_pipeline.database import HouseholdIncome, get_session
from income_pipeline.errors import ConcurrencyConflict, StructuralError, TransactionFailure
from income_pipeline.normalizers import LookupTables, Normalizer, default_rules
from income_pipeline.snapshot import SnapshotBuilder, snapshot_count, snapshot_version


@pytest.fixture
def seed_raw(session_factory):
    """Insert rows straight into the raw table without firing any refresh."""

    def _seed(records: list[dict]) -> None:
        with get_session(session_factory) as session:
            session.add_all(HouseholdIncome(**record) for record in records)

    return _seed


class TestBuild:
    """Test a single snapshot build."""

    def test_creates_table_on_first_build(self, builder, seed_raw, sample_records, db_engine):
        seed_raw(sample_records)
        assert not inspect(db_engine).has_table(CLEANED_TABLE)

        first = builder.rebuild()
        second = builder.rebuild()

        assert first.table_created is True
        assert second.table_created is False
        assert inspect(db_engine).has_table(CLEANED_TABLE)

    def test_removes_later_duplicates(self, builder, seed_raw, sample_records, read_cleaned):
        seed_raw(sample_records)
        result = builder.rebuild()

        rows = read_cleaned()
        assert [row["row_id"] for row in rows] == [1, 2, 3, 5]
        assert result.raw_count == 5
        assert result.copied_count == 5
        assert result.duplicates_removed == 1
        assert result.records_written == 4

    def test_one_row_per_id(self, builder, seed_raw, sample_records, read_cleaned):
        seed_raw(sample_records)
        builder.rebuild()

        ids = [row["id"] for row in read_cleaned()]
        assert len(ids) == len(set(ids))

    def test_survivor_keeps_its_own_values(self, builder, seed_raw, sample_records, read_cleaned):
        seed_raw(sample_records)
        builder.rebuild()

        survivor = next(row for row in read_cleaned() if row["id"] == 1011000)
        assert survivor["row_id"] == 1
        assert survivor["City"] == "CHICKASAW"
        assert survivor["ALand"] == 10894952
        assert survivor["Lat"] == pytest.approx(30.7718)

    def test_normalizes_text_fields(self, builder, seed_raw, sample_records, read_cleaned):
        seed_raw(sample_records)
        builder.rebuild()

        rows = {row["row_id"]: row for row in read_cleaned()}
        assert rows[2]["Place"] == "AUTAUGAVILLE"
        assert rows[2]["Type"] == "BOROUGH"
        assert rows[3]["State_Name"] == "GEORGIA"
        assert rows[3]["Type"] == "CDP"
        assert rows[5]["Type"] == "TRACK"
        for row in rows.values():
            for name in ("County", "City", "Place", "State_Name", "Type"):
                if row[name] is not None:
                    assert row[name] == row[name].upper()

    def test_non_normalized_fields_untouched(self, builder, seed_raw, sample_records, read_cleaned):
        seed_raw(sample_records)
        builder.rebuild()

        row = next(row for row in read_cleaned() if row["row_id"] == 5)
        assert row["State_ab"] == "NC"
        assert row["Primary"] == "Track"

    def test_place_fill_is_precise(self, builder, seed_raw, sample_record, read_cleaned):
        seed_raw([
            {**sample_record, "row_id": 1, "id": 1, "County": "Autauga County", "City": "Vinemont", "Place": None},
            {**sample_record, "row_id": 2, "id": 2, "County": "Autauga County", "City": "Prattville", "Place": None},
            {**sample_record, "row_id": 3, "id": 3, "County": "Baldwin County", "City": "Vinemont", "Place": None},
        ])
        builder.rebuild()

        assert [row["Place"] for row in read_cleaned()] == ["AUTAUGAVILLE", None, None]

    def test_raw_table_is_not_modified(self, builder, seed_raw, sample_records, session_factory):
        seed_raw(sample_records)
        builder.rebuild()

        with session_factory() as session:
            rows = session.scalars(select(HouseholdIncome).order_by(HouseholdIncome.row_id)).all()
            assert len(rows) == 5
            assert rows[0].County == "Mobile County"
            assert rows[1].Place is None
            assert rows[2].State_Name == "georia"

    def test_empty_raw_table(self, builder, read_cleaned):
        result = builder.rebuild()

        assert result.records_written == 0
        assert read_cleaned() == []

    def test_null_ids_are_kept(self, builder, seed_raw, sample_record, read_cleaned):
        seed_raw([
            {**sample_record, "row_id": 1, "id": None},
            {**sample_record, "row_id": 2, "id": None},
        ])
        builder.rebuild()

        assert [row["row_id"] for row in read_cleaned()] == [1, 2]

    def test_rule_skips_are_counted(self, session_factory, seed_raw, sample_records, read_cleaned):
        tables = LookupTables(
            place_lookup={("Autauga County", "Vinemont"): 7},
            type_variants={"Boroughs": "Borough"},
            state_name_variants={},
        )
        builder = SnapshotBuilder(session_factory=session_factory, normalizer=Normalizer(default_rules(tables)))
        seed_raw(sample_records)

        result = builder.rebuild()

        assert result.rule_skips == 1
        row = next(row for row in read_cleaned() if row["row_id"] == 2)
        assert row["Place"] is None
        assert row["County"] == "AUTAUGA COUNTY"


class TestRepeatedBuilds:
    """Test rebuilding an existing snapshot."""

    def test_rebuild_is_idempotent(self, builder, seed_raw, sample_records, read_cleaned):
        seed_raw(sample_records)
        builder.rebuild()
        first = read_cleaned()
        builder.rebuild()

        assert read_cleaned() == first

    def test_previous_build_is_replaced(self, builder, seed_raw, sample_records, read_cleaned):
        seed_raw(sample_records)
        first = builder.rebuild()
        second = builder.rebuild()

        assert second.built_at > first.built_at
        assert second.pruned_count == 4
        assert len(read_cleaned(include_history=True)) == 4
        assert {row["TimeStamp"] for row in read_cleaned(with_timestamp=True)} == {second.built_at}

    def test_keep_history(self, session_factory, seed_raw, sample_records, read_cleaned):
        builder = SnapshotBuilder(session_factory=session_factory, normalizer=Normalizer(), keep_history=True)
        seed_raw(sample_records)
        builder.rebuild()
        second = builder.rebuild()

        assert len(read_cleaned(include_history=True)) == 8
        latest = read_cleaned(with_timestamp=True)
        assert len(latest) == 4
        assert {row["TimeStamp"] for row in latest} == {second.built_at}

    def test_build_time_is_strictly_increasing(self, builder, seed_raw, sample_records, mocker):
        frozen = datetime(2024, 1, 1, 12, 0, 0)
        mock_datetime = mocker.patch("income_pipeline.snapshot.datetime")
        mock_datetime.now.return_value = frozen
        seed_raw(sample_records)

        first = builder.rebuild()
        second = builder.rebuild()

        assert first.built_at == frozen
        assert second.built_at > first.built_at

    def test_snapshot_version(self, builder, seed_raw, sample_records, session_factory):
        with session_factory() as session:
            assert snapshot_version(session) is None

        seed_raw(sample_records)
        builder.rebuild(trigger="manual")
        result = builder.rebuild(trigger="manual")

        with session_factory() as session:
            version = snapshot_version(session)
            assert version.id == result.build_id
            assert version.built_at == result.built_at
            assert version.trigger == "manual"
            assert version.duplicates_removed == 1
            assert version.records_written == 4

    def test_snapshot_count(self, session_factory, seed_raw, sample_records):
        builder = SnapshotBuilder(session_factory=session_factory, normalizer=Normalizer(), keep_history=True)
        with session_factory() as session:
            assert snapshot_count(session) == 0

        seed_raw(sample_records)
        builder.rebuild()
        builder.rebuild()

        with session_factory() as session:
            assert snapshot_count(session) == 4


class TestAtomicity:
    """Test that failed builds leave the snapshot untouched."""

    def test_failed_build_restores_previous_snapshot(
        self, builder, seed_raw, sample_records, read_cleaned, session_factory, mocker
    ):
        seed_raw(sample_records)
        good = builder.rebuild()
        before = read_cleaned(with_timestamp=True)

        mocker.patch("income_pipeline.snapshot.find_duplicates", side_effect=RuntimeError("boom"))
        with pytest.raises(TransactionFailure):
            builder.rebuild()

        assert read_cleaned(with_timestamp=True) == before
        with session_factory() as session:
            assert snapshot_version(session).id == good.build_id

    def test_failure_during_normalization(self, builder, seed_raw, sample_records, read_cleaned, mocker):
        seed_raw(sample_records)
        builder.rebuild()
        before = read_cleaned(with_timestamp=True)

        mocker.patch.object(builder.normalizer, "normalize", side_effect=RuntimeError("boom"))
        with pytest.raises(TransactionFailure) as exc_info:
            builder.rebuild()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert read_cleaned(with_timestamp=True) == before

    def test_failed_first_build_leaves_no_table(self, builder, seed_raw, sample_records, db_engine, mocker):
        seed_raw(sample_records)
        mocker.patch("income_pipeline.snapshot.find_duplicates", side_effect=RuntimeError("boom"))

        with pytest.raises(TransactionFailure):
            builder.rebuild()

        assert not inspect(db_engine).has_table(CLEANED_TABLE)


class TestStructuralErrors:
    """Test schema checks before a build."""

    def test_incompatible_snapshot_table(self, builder, seed_raw, sample_records, db_engine):
        seed_raw(sample_records)
        with db_engine.begin() as conn:
            conn.execute(text(f'CREATE TABLE "{CLEANED_TABLE}" (id INTEGER, City TEXT)'))

        with pytest.raises(StructuralError) as exc_info:
            builder.rebuild()

        assert "row_id" in str(exc_info.value)
        with db_engine.connect() as conn:
            assert conn.execute(text(f'SELECT COUNT(*) FROM "{CLEANED_TABLE}"')).scalar() == 0

    def test_missing_raw_table(self, builder, db_engine):
        HouseholdIncome.__table__.drop(db_engine)

        with pytest.raises(StructuralError):
            builder.rebuild()


class TestConcurrency:
    """Test the single-writer policy."""

    def test_reject_while_build_in_progress(self, builder, seed_raw, sample_records):
        seed_raw(sample_records)
        held = threading.Event()
        release = threading.Event()

        def hold():
            with builder.exclusive():
                held.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        held.wait(5)
        try:
            with pytest.raises(ConcurrencyConflict):
                builder.rebuild()
        finally:
            release.set()
            worker.join()

        assert builder.rebuild().records_written == 4

    def test_wait_policy_runs_after_current_build(self, session_factory, seed_raw, sample_records):
        builder = SnapshotBuilder(session_factory=session_factory, normalizer=Normalizer(), on_conflict="wait")
        seed_raw(sample_records)
        held = threading.Event()
        released = threading.Event()

        def hold():
            with builder.exclusive():
                held.set()
                time.sleep(0.2)
                released.set()

        worker = threading.Thread(target=hold)
        worker.start()
        held.wait(5)
        result = builder.rebuild()
        worker.join()

        assert released.is_set()
        assert result.records_written == 4

    def test_same_thread_may_nest(self, builder, seed_raw, sample_records):
        seed_raw(sample_records)
        with builder.exclusive():
            assert builder.rebuild().records_written == 4

    def test_invalid_policy(self, session_factory):
        with pytest.raises(ValueError):
            SnapshotBuilder(session_factory=session_factory, normalizer=Normalizer(), on_conflict="queue")
