"""
Records API Routes.

Ingestion endpoint for raw household income rows. Each request is one append
event: the snapshot is rebuilt before the response is sent, and a failed
rebuild rolls the append back.
"""

import logging
from typing import Union

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_store
from api.routes.snapshot import build_to_dict
from income_pipeline.errors import ConcurrencyConflict, TransactionFailure
from income_pipeline.ingesters import RawRecordFields, RecordStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", status_code=201)
def append_records(
    payload: Union[RawRecordFields, list[RawRecordFields]],
    store: RecordStore = Depends(get_store),
):
    """Append one record or a list of records."""
    records = payload if isinstance(payload, list) else [payload]
    if not records:
        raise HTTPException(status_code=422, detail="No records given")

    try:
        result = store.append(records)
    except ConcurrencyConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransactionFailure as e:
        logger.error(f"Append rejected: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "row_ids": result.row_ids,
        "builds": [build_to_dict(build) for build in result.refresh_results],
    }
