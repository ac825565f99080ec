from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.loan_models import Resource
from services.errors import InvalidTransitionError, NotFoundError
from services.notes_codec import DamageReport, encode_resource_note


LOGGER = logging.getLogger("equipment_loans.resources")

RESOURCE_AVAILABLE = "Available"
RESOURCE_LOANED = "Loaned"
RESOURCE_DAMAGED = "Damaged"
RESOURCE_IN_MAINTENANCE = "InMaintenance"
RESOURCE_IN_REPAIR = "InRepair"
RESOURCE_PARTIALLY_REPAIRED = "PartiallyRepaired"
RESOURCE_AWAITING_PARTS = "AwaitingParts"
RESOURCE_REPAIRED_PENDING_TEST = "RepairedPendingTest"

MAINTENANCE_WORKFLOW_STATES = {
    RESOURCE_IN_MAINTENANCE,
    RESOURCE_IN_REPAIR,
    RESOURCE_PARTIALLY_REPAIRED,
    RESOURCE_AWAITING_PARTS,
    RESOURCE_REPAIRED_PENDING_TEST,
}
MAINTENANCE_STATES = {RESOURCE_DAMAGED} | MAINTENANCE_WORKFLOW_STATES
RESOURCE_STATES = {RESOURCE_AVAILABLE, RESOURCE_LOANED} | MAINTENANCE_STATES

RESOURCE_TRANSITIONS = {
    RESOURCE_AVAILABLE: {RESOURCE_LOANED, RESOURCE_DAMAGED, RESOURCE_IN_MAINTENANCE},
    RESOURCE_LOANED: {RESOURCE_AVAILABLE, RESOURCE_DAMAGED},
    RESOURCE_DAMAGED: {
        RESOURCE_IN_MAINTENANCE,
        RESOURCE_IN_REPAIR,
        RESOURCE_AWAITING_PARTS,
        RESOURCE_AVAILABLE,
    },
    RESOURCE_IN_MAINTENANCE: {
        RESOURCE_IN_REPAIR,
        RESOURCE_AWAITING_PARTS,
        RESOURCE_PARTIALLY_REPAIRED,
        RESOURCE_REPAIRED_PENDING_TEST,
        RESOURCE_AVAILABLE,
    },
    RESOURCE_IN_REPAIR: {
        RESOURCE_PARTIALLY_REPAIRED,
        RESOURCE_AWAITING_PARTS,
        RESOURCE_REPAIRED_PENDING_TEST,
        RESOURCE_AVAILABLE,
    },
    RESOURCE_PARTIALLY_REPAIRED: {
        RESOURCE_IN_REPAIR,
        RESOURCE_AWAITING_PARTS,
        RESOURCE_REPAIRED_PENDING_TEST,
        RESOURCE_AVAILABLE,
    },
    RESOURCE_AWAITING_PARTS: {RESOURCE_IN_REPAIR, RESOURCE_IN_MAINTENANCE, RESOURCE_AVAILABLE},
    RESOURCE_REPAIRED_PENDING_TEST: {RESOURCE_AVAILABLE, RESOURCE_IN_REPAIR},
}


def lock_resource(db: Session, resource_id: str) -> Resource:
    resource = db.execute(
        select(Resource).where(Resource.ResourceID == resource_id).with_for_update()
    ).scalars().first()
    if not resource:
        raise NotFoundError("Resource", resource_id)
    return resource


def transition_resource_status(resource: Resource, target: str, now: datetime) -> str:
    current = resource.Status or RESOURCE_AVAILABLE
    if target not in RESOURCE_STATES:
        raise InvalidTransitionError(f"Unknown resource status: {target}")
    if target == current:
        return current
    if target not in RESOURCE_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid resource transition: {current} -> {target}")
    resource.Status = target
    resource.UpdatedDate = now
    LOGGER.info("Resource %s moved %s -> %s", resource.ResourceID, current, target)
    return current


def mark_resources_loaned(resources: Iterable[Resource], now: datetime) -> None:
    for resource in resources:
        transition_resource_status(resource, RESOURCE_LOANED, now)


def returned_status_for(report: DamageReport | None) -> str:
    if report is not None and report.is_damaged:
        return RESOURCE_DAMAGED
    return RESOURCE_AVAILABLE


def sync_returned_resources(
    resources: Iterable[Resource],
    reports: dict[str, DamageReport],
    now: datetime,
    timestamp: str | None = None,
) -> dict[str, tuple[str, str]]:
    """Resolve every resource of a returned loan, one status write per resource.

    Returns ``{resource_id: (previous_status, new_status)}``.
    """
    changes: dict[str, tuple[str, str]] = {}
    for resource in resources:
        report = reports.get(resource.ResourceID)
        previous = resource.Status or RESOURCE_AVAILABLE
        target = returned_status_for(report)
        if previous != RESOURCE_LOANED:
            LOGGER.warning(
                "Resource %s was %s instead of %s at return; resolving to %s",
                resource.ResourceID,
                previous,
                RESOURCE_LOANED,
                target,
            )
        resource.Status = target
        resource.UpdatedDate = now
        if report is not None:
            resource.Notes = encode_resource_note(report, timestamp)
        changes[resource.ResourceID] = (previous, target)
    return changes


def resolve_completed_resource(resource: Resource, completion_percentage: float, now: datetime) -> bool:
    """Damaged/maintenance -> Available once every incident on the resource is completed."""
    if completion_percentage < 100:
        return False
    if resource.Status not in MAINTENANCE_STATES:
        return False
    transition_resource_status(resource, RESOURCE_AVAILABLE, now)
    return True
