import uuid

from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


def _new_resource_id() -> str:
    return str(uuid.uuid4())


class Borrower(Base):
    __tablename__ = "Borrowers"

    BorrowerID = Column(Integer, primary_key=True)
    FullName = Column(String(255), nullable=False)
    Email = Column(String(255))
    DocumentNumber = Column(String(20))
    CreatedDate = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="Borrower")


class Resource(Base):
    __tablename__ = "Resources"

    ResourceID = Column(String(64), primary_key=True, default=_new_resource_id)
    ResourceNumber = Column(String(50))
    CategoryID = Column(Integer)
    Brand = Column(String(100))
    Model = Column(String(100))
    Status = Column(String(40), nullable=False, default="Available")
    Notes = Column(String(2000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    LoanResources = relationship("LoanResource", back_populates="Resource")
    Incidents = relationship("MaintenanceIncident", back_populates="Resource")
    Summary = relationship("MaintenanceResourceSummary", back_populates="Resource", uselist=False)


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(Integer, primary_key=True)
    BorrowerID = Column(Integer, ForeignKey("Borrowers.BorrowerID"), nullable=False)
    GradeName = Column(String(100))
    SectionName = Column(String(100))
    LoanDate = Column(DateTime, nullable=False)
    ExpectedReturnDate = Column(Date, nullable=False)
    ActualReturnDate = Column(DateTime)
    Status = Column(String(20), nullable=False, default="Pending")
    OverdueDays = Column(Integer)
    Notes = Column(String(4000))
    AuthorizedDate = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Borrower = relationship("Borrower", back_populates="Loans")
    LoanResources = relationship("LoanResource", back_populates="Loan", cascade="all, delete-orphan")


class LoanResource(Base):
    __tablename__ = "LoanResources"
    __table_args__ = (UniqueConstraint("LoanID", "ResourceID", name="UQ_LoanResources_Loan_Resource"),)

    LoanResourceID = Column(Integer, primary_key=True)
    LoanID = Column(Integer, ForeignKey("Loans.LoanID"), nullable=False)
    ResourceID = Column(String(64), ForeignKey("Resources.ResourceID"), nullable=False)

    Loan = relationship("Loan", back_populates="LoanResources")
    Resource = relationship("Resource", back_populates="LoanResources")


class MaintenanceIncident(Base):
    __tablename__ = "MaintenanceIncidents"
    __table_args__ = (
        UniqueConstraint("ResourceID", "IncidentNumber", name="UQ_MaintenanceIncidents_Resource_Number"),
    )

    IncidentID = Column(Integer, primary_key=True)
    ResourceID = Column(String(64), ForeignKey("Resources.ResourceID"), nullable=False)
    LoanID = Column(Integer, ForeignKey("Loans.LoanID"))
    IncidentNumber = Column(Integer, nullable=False)
    DamageType = Column(String(200), nullable=False)
    Description = Column(String(2000), nullable=False)
    ReporterName = Column(String(255))
    ReporterGrade = Column(String(100))
    ReporterSection = Column(String(100))
    Status = Column(String(20), nullable=False, default="Pending")
    Priority = Column(String(20), nullable=False, default="Medium")
    ResolutionNotes = Column(String(2000))
    CompletedAt = Column(DateTime)
    CreatedAt = Column(DateTime, nullable=False)
    UpdatedAt = Column(DateTime)

    Resource = relationship("Resource", back_populates="Incidents")


class MaintenanceResourceSummary(Base):
    __tablename__ = "MaintenanceResourceSummaries"

    SummaryID = Column(Integer, primary_key=True)
    ResourceID = Column(String(64), ForeignKey("Resources.ResourceID"), nullable=False, unique=True)
    TotalIncidents = Column(Integer, nullable=False, default=0)
    CompletedIncidents = Column(Integer, nullable=False, default=0)
    CompletionPercentage = Column(Float, nullable=False, default=0)
    OverallStatus = Column(String(40))
    PrimaryReporter = Column(String(255))
    UpdatedAt = Column(DateTime)

    Resource = relationship("Resource", back_populates="Summary")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(64), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
