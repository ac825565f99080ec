from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerID: int
    resourceIDs: List[str] = []
    expectedReturnDate: date
    gradeName: Optional[str] = None
    sectionName: Optional[str] = None
    notes: Optional[str] = None


class DamageReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    resourceID: str
    damages: List[str] = []
    notes: Optional[str] = None


class SuggestionReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    resourceID: str
    suggestions: List[str] = []
    notes: Optional[str] = None


class ReturnRequest(BaseModel):
    """Structured damageReports/suggestions or raw notes text; a request may carry only one of them."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    damageReports: List[DamageReportDto] = []
    suggestions: List[SuggestionReportDto] = []
    notes: Optional[str] = None
    returnedAt: Optional[datetime] = None
