from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from models.loan_models import Borrower, Loan, LoanResource, MaintenanceIncident, Resource
from services.errors import AlreadyReturnedError, InvalidTransitionError, NotFoundError
from services.maintenance_service import ReporterContext, aggregate_return_reports
from services.notes_codec import DEFAULT_RESOURCE_KEY, DamageReport, ParsedNotes, decode_notes, encode_notes
from services.resource_status_service import (
    RESOURCE_AVAILABLE,
    lock_resource,
    mark_resources_loaned,
    sync_returned_resources,
)


LOGGER = logging.getLogger("equipment_loans.returns")

LOAN_PENDING = "Pending"
LOAN_ACTIVE = "Active"
LOAN_OVERDUE = "Overdue"
LOAN_RETURNED = "Returned"

LOAN_STATES = {LOAN_PENDING, LOAN_ACTIVE, LOAN_OVERDUE, LOAN_RETURNED}
RETURNABLE_STATES = {LOAN_ACTIVE, LOAN_OVERDUE}
RETURN_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
UNKNOWN_REPORTER = "Unknown borrower"


@dataclass
class ReturnOutcome:
    loan: Loan
    status: str
    overdue_days: int | None
    notes: ParsedNotes
    resource_statuses: dict[str, tuple[str, str]] = field(default_factory=dict)
    incidents: list[MaintenanceIncident] = field(default_factory=list)


def _as_date(value: date | datetime | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def compute_status(
    expected_return: date | datetime | None,
    actual_return: date | datetime | None,
    now: datetime,
) -> str:
    if actual_return is not None:
        return LOAN_RETURNED
    expected_day = _as_date(expected_return)
    if expected_day is not None and expected_day < _as_date(now):
        return LOAN_OVERDUE
    return LOAN_ACTIVE


def compute_overdue_days(
    expected_return: date | datetime | None,
    actual_return: date | datetime | None,
) -> int | None:
    expected_day = _as_date(expected_return)
    actual_day = _as_date(actual_return)
    if expected_day is None or actual_day is None:
        return None
    days = (actual_day - expected_day).days
    return max(0, days)


def format_return_timestamp(now: datetime) -> str:
    return now.strftime(RETURN_TIMESTAMP_FORMAT)


def _loan_query(loan_id: int):
    return (
        select(Loan)
        .options(selectinload(Loan.LoanResources).selectinload(LoanResource.Resource))
        .options(selectinload(Loan.Borrower))
        .where(Loan.LoanID == loan_id)
    )


def get_loan(db: Session, loan_id: int) -> Loan:
    loan = db.execute(_loan_query(loan_id)).scalars().first()
    if not loan:
        raise NotFoundError("Loan", loan_id)
    return loan


def refresh_loan_state(loan: Loan, now: datetime) -> str:
    """Active <-> Overdue for authorized loans that are still out."""
    if loan.Status not in RETURNABLE_STATES or loan.ActualReturnDate is not None:
        return loan.Status
    status = compute_status(loan.ExpectedReturnDate, None, now)
    if status != loan.Status:
        loan.Status = status
        loan.UpdatedDate = now
    return loan.Status


def request_loan(
    db: Session,
    borrower_id: int,
    resource_ids: Iterable[str],
    expected_return: date,
    now: datetime,
    notes: str | None = None,
    grade_name: str | None = None,
    section_name: str | None = None,
) -> Loan:
    borrower = db.get(Borrower, borrower_id)
    if not borrower:
        raise NotFoundError("Borrower", borrower_id)

    unique_ids = list(dict.fromkeys(resource_id for resource_id in resource_ids if resource_id))
    if not unique_ids:
        raise InvalidTransitionError("A loan needs at least one resource.")
    if _as_date(expected_return) < _as_date(now):
        raise InvalidTransitionError("Expected return date must not be in the past.")

    loan = Loan(
        BorrowerID=borrower.BorrowerID,
        GradeName=grade_name,
        SectionName=section_name,
        LoanDate=now,
        ExpectedReturnDate=expected_return,
        Status=LOAN_PENDING,
        Notes=notes,
        CreatedDate=now,
        UpdatedDate=now,
    )
    for resource_id in unique_ids:
        resource = db.get(Resource, resource_id)
        if not resource:
            raise NotFoundError("Resource", resource_id)
        if resource.Status != RESOURCE_AVAILABLE:
            raise InvalidTransitionError(f"Resource {resource_id} is not available ({resource.Status}).")
        loan.LoanResources.append(LoanResource(ResourceID=resource_id))

    db.add(loan)
    db.flush()
    return loan


def authorize_loan(db: Session, loan_id: int, now: datetime) -> Loan:
    loan = get_loan(db, loan_id)
    if loan.Status != LOAN_PENDING:
        raise InvalidTransitionError(f"Only Pending loans can be authorized (loan is {loan.Status}).")

    result = db.execute(
        update(Loan)
        .where(Loan.LoanID == loan_id, Loan.Status == LOAN_PENDING)
        .values(Status=LOAN_ACTIVE, AuthorizedDate=now, UpdatedDate=now)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError("Loan was authorized concurrently.")

    resource_ids = sorted(link.ResourceID for link in loan.LoanResources)
    resources = [lock_resource(db, resource_id) for resource_id in resource_ids]
    for resource in resources:
        if resource.Status != RESOURCE_AVAILABLE:
            raise InvalidTransitionError(f"Resource {resource.ResourceID} is not available ({resource.Status}).")
    mark_resources_loaned(resources, now)
    refresh_loan_state(loan, now)
    db.flush()
    return loan


def _attribute_reports(
    db: Session,
    parsed: ParsedNotes,
    loan_resource_ids: list[str],
) -> dict[str, DamageReport]:
    reports: dict[str, DamageReport] = {}
    for report in parsed.reports:
        resource_id = report.resource_id
        if resource_id == DEFAULT_RESOURCE_KEY:
            if len(loan_resource_ids) != 1:
                LOGGER.warning("Ignoring report without resource marker on a multi-resource loan")
                continue
            resource_id = loan_resource_ids[0]
        if resource_id not in loan_resource_ids:
            if db.get(Resource, resource_id) is None:
                raise NotFoundError("Resource", resource_id)
            LOGGER.warning("Ignoring report for resource %s which is not part of this loan", resource_id)
            continue
        # An unmarked report and a marked one can land on the same resource.
        if resource_id in reports:
            reports[resource_id].merge(report)
        else:
            reports[resource_id] = report.copy_for(resource_id)
    return reports


def return_loan(
    db: Session,
    loan_id: int,
    now: datetime,
    reports: Iterable[DamageReport] | None = None,
    notes_text: str | None = None,
) -> ReturnOutcome:
    """Finalize a loan and run the damage pipeline as one unit of work.

    Structured ``reports`` are encoded into the loan notes first; otherwise
    ``notes_text`` is stored verbatim. Either way the stored text is decoded
    and the decoded reports drive resource status and incident creation.
    Nothing is committed here; the caller commits or rolls back.
    """
    loan = get_loan(db, loan_id)
    if loan.ActualReturnDate is not None or loan.Status == LOAN_RETURNED:
        raise AlreadyReturnedError(loan_id)
    refresh_loan_state(loan, now)
    if loan.Status not in RETURNABLE_STATES:
        raise InvalidTransitionError(f"Loan {loan_id} is {loan.Status} and cannot be returned.")

    timestamp = format_return_timestamp(now)
    if reports is not None:
        report_text = encode_notes(reports, timestamp)
    else:
        report_text = (notes_text or "").strip()
    parsed = decode_notes(report_text)

    loan_resource_ids = sorted(link.ResourceID for link in loan.LoanResources)
    attributed = _attribute_reports(db, parsed, loan_resource_ids)

    status = compute_status(loan.ExpectedReturnDate, now, now)
    overdue_days = compute_overdue_days(loan.ExpectedReturnDate, now)
    values = {"ActualReturnDate": now, "Status": status, "OverdueDays": overdue_days, "UpdatedDate": now}
    if report_text:
        values["Notes"] = report_text

    result = db.execute(
        update(Loan).where(Loan.LoanID == loan_id, Loan.ActualReturnDate.is_(None)).values(**values)
    )
    if result.rowcount != 1:
        raise AlreadyReturnedError(loan_id)

    resources = {resource_id: lock_resource(db, resource_id) for resource_id in loan_resource_ids}
    resource_statuses = sync_returned_resources(resources.values(), attributed, now, parsed.timestamp)

    borrower = loan.Borrower
    reporter = ReporterContext(
        name=borrower.FullName if borrower else UNKNOWN_REPORTER,
        grade=loan.GradeName,
        section=loan.SectionName,
    )
    incidents = aggregate_return_reports(db, resources, attributed, reporter, now, loan_id=loan_id)
    db.flush()

    LOGGER.info(
        "Loan %s returned: status=%s overdueDays=%s resources=%d incidents=%d",
        loan_id,
        status,
        overdue_days,
        len(resources),
        len(incidents),
    )
    return ReturnOutcome(
        loan=loan,
        status=status,
        overdue_days=overdue_days,
        notes=parsed,
        resource_statuses=resource_statuses,
        incidents=incidents,
    )


def serialize_loan(loan: Loan) -> dict:
    return {
        "loanID": loan.LoanID,
        "borrowerID": loan.BorrowerID,
        "borrowerName": loan.Borrower.FullName if loan.Borrower else None,
        "gradeName": loan.GradeName,
        "sectionName": loan.SectionName,
        "loanDate": loan.LoanDate,
        "expectedReturnDate": loan.ExpectedReturnDate,
        "actualReturnDate": loan.ActualReturnDate,
        "status": loan.Status,
        "overdueDays": loan.OverdueDays,
        "notes": loan.Notes,
        "authorizedDate": loan.AuthorizedDate,
        "createdDate": loan.CreatedDate,
        "updatedDate": loan.UpdatedDate,
        "resources": [
            {
                "resourceID": link.ResourceID,
                "resourceNumber": link.Resource.ResourceNumber if link.Resource else None,
                "brand": link.Resource.Brand if link.Resource else None,
                "model": link.Resource.Model if link.Resource else None,
                "status": link.Resource.Status if link.Resource else None,
            }
            for link in loan.LoanResources
        ],
    }


def serialize_parsed_notes(parsed: ParsedNotes) -> dict:
    return {
        "timestamp": parsed.timestamp,
        "reports": [
            {
                "resourceID": report.resource_id,
                "damages": list(report.damages),
                "damageNotes": report.damage_note,
                "suggestions": list(report.suggestions),
                "suggestionNotes": report.suggestion_note,
            }
            for report in parsed.reports
        ],
    }
