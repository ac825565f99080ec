from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class IncidentStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["Pending", "InProgress", "Completed", "Cancelled"]
    notes: Optional[str] = None
    changedAt: Optional[datetime] = None


class ResourceMaintenanceTransition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal[
        "Available",
        "Damaged",
        "InMaintenance",
        "InRepair",
        "PartiallyRepaired",
        "AwaitingParts",
        "RepairedPendingTest",
    ]
    notes: Optional[str] = None
