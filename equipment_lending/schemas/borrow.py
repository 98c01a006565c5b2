from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateBorrowRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = Field(ge=1)
    fromDate: date
    toDate: date
    reason: Optional[str] = None


class ApproveRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    approvedBy: Optional[int] = None
    remarks: Optional[str] = None


class RejectRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remarks: Optional[str] = None


class ReturnRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnDate: Optional[date] = None
    conditionAfterUse: Optional[str] = Field(default=None, max_length=100)
