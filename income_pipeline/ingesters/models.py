"""Validated input shapes for the ingestion interface."""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class RawRecordFields(BaseModel):
    """
    One raw household income row as accepted by ``RecordStore.append``.

    ``row_id`` may be omitted; the store then assigns the next free one.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    row_id: Optional[int] = None
    id: Optional[int] = None
    State_Code: Optional[int] = None
    State_Name: Optional[str] = None
    State_ab: Optional[str] = None
    County: Optional[str] = None
    City: Optional[str] = None
    Place: Optional[str] = None
    Type: Optional[str] = None
    Primary: Optional[str] = None
    Zip_Code: Optional[int] = None
    Area_Code: Optional[int] = None
    ALand: Optional[int] = None
    AWater: Optional[int] = None
    Lat: Optional[float] = None
    Lon: Optional[float] = None


class StatisticsFields(BaseModel):
    """One row of the income statistics dataset."""

    model_config = ConfigDict(extra="ignore")

    id: int
    State_Name: Optional[str] = None
    Mean: Optional[int] = None
    Median: Optional[int] = None
    Stdev: Optional[int] = None
