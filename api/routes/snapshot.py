"""
Snapshot API Routes.

Read-only access to the cleaned snapshot, plus the manual rebuild command.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from api.dependencies import get_builder
from income_pipeline.config import RECORD_COLUMNS
from income_pipeline.database import get_db
from income_pipeline.errors import ConcurrencyConflict, StructuralError, TransactionFailure
from income_pipeline.snapshot import SnapshotBuilder, read_snapshot, snapshot_version

logger = logging.getLogger(__name__)
router = APIRouter()


def record_to_dict(row) -> dict:
    data = {name: getattr(row, name) for name in RECORD_COLUMNS}
    data["TimeStamp"] = row.TimeStamp.isoformat() if row.TimeStamp else None
    return data


def build_to_dict(build) -> dict:
    """Serialize a SnapshotBuild row or a BuildResult."""
    return {
        "build_id": getattr(build, "build_id", None) or getattr(build, "id", None),
        "built_at": build.built_at.isoformat() if build.built_at else None,
        "trigger": build.trigger,
        "raw_count": build.raw_count,
        "duplicates_removed": build.duplicates_removed,
        "rule_skips": build.rule_skips,
        "records_written": build.records_written,
    }


@router.get("/")
def get_snapshot(limit: int = 100, offset: int = 0, db: Session = Depends(get_db)):
    """
    Get rows of the latest snapshot build.

    Paginated with limit/offset; limit is capped at 1000.
    """
    if limit < 1 or limit > 1000:
        limit = 100
    if offset < 0:
        offset = 0

    version = snapshot_version(db)
    rows = read_snapshot(db, limit=limit, offset=offset)
    return {
        "version": build_to_dict(version) if version else None,
        "count": len(rows),
        "offset": offset,
        "records": [record_to_dict(row) for row in rows],
    }


@router.get("/version")
def get_snapshot_version(db: Session = Depends(get_db)):
    """Get the latest committed build."""
    version = snapshot_version(db)
    if version is None:
        raise HTTPException(status_code=404, detail="Snapshot has not been built yet")
    return build_to_dict(version)


@router.post("/rebuild")
def rebuild_snapshot(builder: SnapshotBuilder = Depends(get_builder)):
    """Rebuild the snapshot from the current raw table."""
    try:
        result = builder.rebuild(trigger="manual")
    except ConcurrencyConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (StructuralError, TransactionFailure) as e:
        logger.error(f"Manual rebuild failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return build_to_dict(result)
