from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.loan_models import MaintenanceIncident, MaintenanceResourceSummary, Resource
from services.errors import InvalidTransitionError, NotFoundError
from services.notes_codec import DamageReport
from services.resource_status_service import (
    MAINTENANCE_WORKFLOW_STATES,
    RESOURCE_AVAILABLE,
    RESOURCE_DAMAGED,
    RESOURCE_LOANED,
    lock_resource,
    resolve_completed_resource,
    transition_resource_status,
)


LOGGER = logging.getLogger("equipment_loans.maintenance")

INCIDENT_PENDING = "Pending"
INCIDENT_IN_PROGRESS = "InProgress"
INCIDENT_COMPLETED = "Completed"
INCIDENT_CANCELLED = "Cancelled"

INCIDENT_TRANSITIONS = {
    INCIDENT_PENDING: {INCIDENT_IN_PROGRESS, INCIDENT_COMPLETED, INCIDENT_CANCELLED},
    INCIDENT_IN_PROGRESS: {INCIDENT_COMPLETED, INCIDENT_CANCELLED},
    INCIDENT_COMPLETED: set(),
    INCIDENT_CANCELLED: set(),
}

DEFAULT_PRIORITY = "Medium"
SUMMARY_COMPLETED = "Completed"
PLACEHOLDER_DESCRIPTION = "No damage details were provided at return."


@dataclass(frozen=True)
class ReporterContext:
    name: str
    grade: str | None = None
    section: str | None = None


def count_incidents(db: Session, resource_id: str) -> int:
    total = db.execute(
        select(func.count(MaintenanceIncident.IncidentID)).where(MaintenanceIncident.ResourceID == resource_id)
    ).scalar()
    return int(total or 0)


def initial_incident_status(resource_status: str | None) -> str:
    if resource_status == RESOURCE_DAMAGED:
        return INCIDENT_PENDING
    if resource_status in MAINTENANCE_WORKFLOW_STATES:
        return INCIDENT_IN_PROGRESS
    return INCIDENT_PENDING


def record_damage_incidents(
    db: Session,
    resource: Resource,
    report: DamageReport,
    reporter: ReporterContext,
    now: datetime,
    loan_id: int | None = None,
) -> list[MaintenanceIncident]:
    """One incident per damage tag, numbered after the resource's existing incidents.

    The caller is expected to hold the resource row lock.
    """
    if not report.damages:
        return []

    existing = count_incidents(db, resource.ResourceID)
    status = initial_incident_status(resource.Status)
    description = report.damage_note.strip() or PLACEHOLDER_DESCRIPTION

    created = []
    for offset, damage_type in enumerate(report.damages, start=1):
        incident = MaintenanceIncident(
            ResourceID=resource.ResourceID,
            LoanID=loan_id,
            IncidentNumber=existing + offset,
            DamageType=damage_type,
            Description=description,
            ReporterName=reporter.name,
            ReporterGrade=reporter.grade,
            ReporterSection=reporter.section,
            Status=status,
            Priority=DEFAULT_PRIORITY,
            CreatedAt=now,
            UpdatedAt=now,
        )
        db.add(incident)
        created.append(incident)
    db.flush()

    LOGGER.info(
        "Recorded %d incident(s) for resource %s (numbers %d-%d)",
        len(created),
        resource.ResourceID,
        existing + 1,
        existing + len(created),
    )
    return created


def completion_percentage(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return 100 * completed / total


def recompute_summary(db: Session, resource: Resource, now: datetime) -> MaintenanceResourceSummary:
    rows = db.execute(
        select(MaintenanceIncident)
        .where(MaintenanceIncident.ResourceID == resource.ResourceID)
        .order_by(MaintenanceIncident.CreatedAt.desc(), MaintenanceIncident.IncidentNumber.desc())
    ).scalars().all()

    total = len(rows)
    completed = sum(1 for row in rows if row.Status == INCIDENT_COMPLETED)
    percentage = completion_percentage(completed, total)

    summary = db.execute(
        select(MaintenanceResourceSummary).where(MaintenanceResourceSummary.ResourceID == resource.ResourceID)
    ).scalars().first()
    if summary is None:
        summary = MaintenanceResourceSummary(ResourceID=resource.ResourceID)
        db.add(summary)

    summary.TotalIncidents = total
    summary.CompletedIncidents = completed
    summary.CompletionPercentage = percentage
    summary.OverallStatus = SUMMARY_COMPLETED if total and percentage == 100 else resource.Status
    summary.PrimaryReporter = rows[0].ReporterName if rows else None
    summary.UpdatedAt = now
    db.flush()
    return summary


def aggregate_return_reports(
    db: Session,
    resources: dict[str, Resource],
    reports: dict[str, DamageReport],
    reporter: ReporterContext,
    now: datetime,
    loan_id: int | None = None,
) -> list[MaintenanceIncident]:
    created: list[MaintenanceIncident] = []
    for resource_id, report in reports.items():
        if not report.is_damaged:
            continue
        resource = resources.get(resource_id)
        if resource is None:
            raise NotFoundError("Resource", resource_id)
        created.extend(record_damage_incidents(db, resource, report, reporter, now, loan_id=loan_id))
        recompute_summary(db, resource, now)
    return created


def get_resource(db: Session, resource_id: str) -> Resource:
    resource = db.get(Resource, resource_id)
    if not resource:
        raise NotFoundError("Resource", resource_id)
    return resource


def get_resource_maintenance_state(db: Session, resource_id: str) -> dict:
    resource = get_resource(db, resource_id)
    summary = db.execute(
        select(MaintenanceResourceSummary).where(MaintenanceResourceSummary.ResourceID == resource_id)
    ).scalars().first()
    if summary is None:
        return {
            "resourceID": resource.ResourceID,
            "resourceStatus": resource.Status,
            "totalIncidents": 0,
            "completedIncidents": 0,
            "completionPercentage": 0.0,
            "overallStatus": resource.Status,
            "primaryReporter": None,
            "updatedAt": None,
        }
    return serialize_summary(summary, resource)


def list_resource_incidents(db: Session, resource_id: str) -> list[MaintenanceIncident]:
    get_resource(db, resource_id)
    return db.execute(
        select(MaintenanceIncident)
        .where(MaintenanceIncident.ResourceID == resource_id)
        .order_by(MaintenanceIncident.IncidentNumber)
    ).scalars().all()


def update_incident_status(
    db: Session,
    incident_id: int,
    new_status: str,
    now: datetime,
    notes: str | None = None,
) -> MaintenanceIncident:
    incident = db.execute(
        select(MaintenanceIncident).where(MaintenanceIncident.IncidentID == incident_id).with_for_update()
    ).scalars().first()
    if not incident:
        raise NotFoundError("Incident", incident_id)

    current = incident.Status
    if new_status not in INCIDENT_TRANSITIONS:
        raise InvalidTransitionError(f"Unknown incident status: {new_status}")
    if new_status != current and new_status not in INCIDENT_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Invalid incident transition: {current} -> {new_status}")

    incident.Status = new_status
    incident.UpdatedAt = now
    if notes:
        incident.ResolutionNotes = notes
    if new_status == INCIDENT_COMPLETED and not incident.CompletedAt:
        incident.CompletedAt = now
    db.flush()

    resource = lock_resource(db, incident.ResourceID)
    summary = recompute_summary(db, resource, now)
    if resolve_completed_resource(resource, summary.CompletionPercentage, now):
        LOGGER.info("All incidents on resource %s completed; resource is Available", resource.ResourceID)
        recompute_summary(db, resource, now)
    return incident


def count_open_incidents(db: Session, resource_id: str) -> int:
    total = db.execute(
        select(func.count(MaintenanceIncident.IncidentID)).where(
            MaintenanceIncident.ResourceID == resource_id,
            MaintenanceIncident.Status.in_([INCIDENT_PENDING, INCIDENT_IN_PROGRESS]),
        )
    ).scalar()
    return int(total or 0)


def transition_resource_maintenance(db: Session, resource_id: str, target: str, now: datetime) -> tuple[str, Resource]:
    resource = lock_resource(db, resource_id)
    if resource.Status == RESOURCE_LOANED:
        raise InvalidTransitionError(f"Resource {resource_id} is on loan; it is resolved by its return.")
    if target == RESOURCE_AVAILABLE and count_open_incidents(db, resource_id):
        raise InvalidTransitionError(f"Resource {resource_id} still has open maintenance incidents.")

    previous = transition_resource_status(resource, target, now)
    if count_incidents(db, resource_id):
        recompute_summary(db, resource, now)
    db.flush()
    return previous, resource


def recompute_all_summaries(db: Session, now: datetime) -> list[tuple[str, bool]]:
    """Rebuild every resource summary from its incidents; reports which ones drifted."""
    resource_ids = db.execute(select(MaintenanceIncident.ResourceID).distinct()).scalars().all()
    results = []
    for resource_id in sorted(resource_ids):
        resource = db.get(Resource, resource_id)
        if resource is None:
            LOGGER.warning("Incidents reference missing resource %s", resource_id)
            continue
        before = db.execute(
            select(MaintenanceResourceSummary).where(MaintenanceResourceSummary.ResourceID == resource_id)
        ).scalars().first()
        snapshot = None
        if before is not None:
            snapshot = (before.TotalIncidents, before.CompletedIncidents, before.CompletionPercentage)
        summary = recompute_summary(db, resource, now)
        drifted = snapshot != (summary.TotalIncidents, summary.CompletedIncidents, summary.CompletionPercentage)
        results.append((resource_id, drifted))
    return results


def serialize_incident(incident: MaintenanceIncident) -> dict:
    return {
        "incidentID": incident.IncidentID,
        "resourceID": incident.ResourceID,
        "loanID": incident.LoanID,
        "incidentNumber": incident.IncidentNumber,
        "damageType": incident.DamageType,
        "description": incident.Description,
        "reporter": {
            "name": incident.ReporterName,
            "grade": incident.ReporterGrade,
            "section": incident.ReporterSection,
        },
        "status": incident.Status,
        "priority": incident.Priority,
        "resolutionNotes": incident.ResolutionNotes,
        "completedAt": incident.CompletedAt,
        "createdAt": incident.CreatedAt,
        "updatedAt": incident.UpdatedAt,
    }


def serialize_summary(summary: MaintenanceResourceSummary, resource: Resource | None = None) -> dict:
    return {
        "resourceID": summary.ResourceID,
        "resourceStatus": resource.Status if resource else None,
        "totalIncidents": summary.TotalIncidents,
        "completedIncidents": summary.CompletedIncidents,
        "completionPercentage": summary.CompletionPercentage,
        "overallStatus": summary.OverallStatus,
        "primaryReporter": summary.PrimaryReporter,
        "updatedAt": summary.UpdatedAt,
    }
