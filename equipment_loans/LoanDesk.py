import logging
import os
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.deps import get_loan_db
from models.loan_models import AuditLog
from schemas.loans import CreateLoanDto, ReturnRequest
from schemas.maintenance import IncidentStatusUpdate, ResourceMaintenanceTransition
from services.errors import LoanDeskError
from services.loan_service import (
    authorize_loan,
    get_loan,
    refresh_loan_state,
    request_loan,
    return_loan,
    serialize_loan,
    serialize_parsed_notes,
)
from services.maintenance_service import (
    get_resource_maintenance_state,
    list_resource_incidents,
    serialize_incident,
    transition_resource_maintenance,
    update_incident_status,
)
from services.notes_codec import DamageReport, decode_notes

app = FastAPI(title="Loan Desk")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

logging.getLogger("equipment_loans").setLevel(
    (os.environ.get("LOAN_DESK_LOG_LEVEL") or "INFO").strip().upper()
)
RETURNS_LOGGER = logging.getLogger("equipment_loans.returns")


def log_audit(db: Session, entity_type: str, entity_id, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=str(entity_id),
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _to_http_error(db: Session, exc: LoanDeskError) -> HTTPException:
    db.rollback()
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _collect_return_reports(payload: ReturnRequest) -> list[DamageReport] | None:
    if not payload.damageReports and not payload.suggestions:
        return None

    reports: dict[str, DamageReport] = {}
    for entry in payload.damageReports:
        report = reports.setdefault(entry.resourceID, DamageReport(resource_id=entry.resourceID))
        report.damages.extend(entry.damages)
        if entry.notes:
            report.damage_note = f"{report.damage_note} {entry.notes}".strip()
    for entry in payload.suggestions:
        report = reports.setdefault(entry.resourceID, DamageReport(resource_id=entry.resourceID))
        report.suggestions.extend(entry.suggestions)
        if entry.notes:
            report.suggestion_note = f"{report.suggestion_note} {entry.notes}".strip()
    return list(reports.values())


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_loan_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/loans")
def create_loan(payload: CreateLoanDto, db: Session = Depends(get_loan_db)):
    now = datetime.now()
    try:
        loan = request_loan(
            db,
            payload.borrowerID,
            payload.resourceIDs,
            payload.expectedReturnDate,
            now,
            notes=payload.notes,
            grade_name=payload.gradeName,
            section_name=payload.sectionName,
        )
        log_audit(db, "Loan", loan.LoanID, "Request", f"{len(loan.LoanResources)} resource(s) requested")
        db.commit()
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc
    return serialize_loan(get_loan(db, loan.LoanID))


@app.get("/api/loans/{loan_id}")
def get_loan_detail(loan_id: int, db: Session = Depends(get_loan_db)):
    try:
        loan = get_loan(db, loan_id)
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc
    refresh_loan_state(loan, datetime.now())
    db.commit()
    return serialize_loan(loan)


@app.get("/api/loans/{loan_id}/reports")
def get_loan_reports(loan_id: int, db: Session = Depends(get_loan_db)):
    try:
        loan = get_loan(db, loan_id)
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc
    return serialize_parsed_notes(decode_notes(loan.Notes))


@app.post("/api/loans/{loan_id}/authorize")
def authorize_loan_request(loan_id: int, db: Session = Depends(get_loan_db)):
    try:
        loan = authorize_loan(db, loan_id, datetime.now())
        log_audit(db, "Loan", loan_id, "Authorize", "Loan authorized")
        db.commit()
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc
    return serialize_loan(loan)


@app.post("/api/loans/{loan_id}/return")
def return_loan_request(loan_id: int, payload: ReturnRequest, db: Session = Depends(get_loan_db)):
    if payload.notes and (payload.damageReports or payload.suggestions):
        raise HTTPException(status_code=400, detail="Send either structured reports or notes text, not both.")
    now = payload.returnedAt or datetime.now()
    try:
        outcome = return_loan(
            db,
            loan_id,
            now,
            reports=_collect_return_reports(payload),
            notes_text=payload.notes,
        )
        log_audit(
            db,
            "Loan",
            loan_id,
            "Return",
            f"status={outcome.status} overdueDays={outcome.overdue_days} incidents={len(outcome.incidents)}",
        )
        db.commit()
    except LoanDeskError as exc:
        RETURNS_LOGGER.warning("Return of loan %s rejected: %s", loan_id, exc)
        raise _to_http_error(db, exc) from exc
    except Exception:
        db.rollback()
        raise

    return {
        "message": "Return processed successfully",
        "loanID": loan_id,
        "status": outcome.status,
        "overdueDays": outcome.overdue_days,
        "resources": {
            resource_id: new_status for resource_id, (_, new_status) in outcome.resource_statuses.items()
        },
        "incidents": [serialize_incident(incident) for incident in outcome.incidents],
    }


@app.get("/api/resources/{resource_id}/maintenance")
def get_resource_maintenance(resource_id: str, db: Session = Depends(get_loan_db)):
    try:
        return get_resource_maintenance_state(db, resource_id)
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc


@app.get("/api/resources/{resource_id}/incidents")
def get_resource_incidents(resource_id: str, db: Session = Depends(get_loan_db)):
    try:
        incidents = list_resource_incidents(db, resource_id)
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc
    return [serialize_incident(incident) for incident in incidents]


@app.post("/api/resources/{resource_id}/maintenance-status")
def update_resource_maintenance_status(
    resource_id: str,
    payload: ResourceMaintenanceTransition,
    db: Session = Depends(get_loan_db),
):
    try:
        previous, resource = transition_resource_maintenance(db, resource_id, payload.status, datetime.now())
        log_audit(db, "Resource", resource_id, "MaintenanceStatus", payload.notes or f"{previous} -> {resource.Status}")
        db.commit()
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc
    return get_resource_maintenance_state(db, resource_id)


@app.post("/api/maintenance/incidents/{incident_id}/status")
def update_maintenance_incident_status(
    incident_id: int,
    payload: IncidentStatusUpdate,
    db: Session = Depends(get_loan_db),
):
    try:
        incident = update_incident_status(
            db,
            incident_id,
            payload.status,
            payload.changedAt or datetime.now(),
            notes=payload.notes,
        )
        log_audit(db, "MaintenanceIncident", incident_id, "Status", f"-> {incident.Status}")
        db.commit()
    except LoanDeskError as exc:
        raise _to_http_error(db, exc) from exc
    return {
        "incident": serialize_incident(incident),
        "summary": get_resource_maintenance_state(db, incident.ResourceID),
    }
