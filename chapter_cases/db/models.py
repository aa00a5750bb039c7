"""
SQLAlchemy Models for Database
==============================

Schema for chapter case paperwork:
- Cases, police stations and the persons attached to a case
- Typed, lifecycle-managed forms (notices, bonds, statements, Roznama)
- Issued case files (immutable snapshots)
- Case events (append-only audit trail)

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, Integer, DateTime, Enum, ForeignKey,
    UniqueConstraint, Index, JSON, event, text
)
from sqlalchemy.orm import relationship, declarative_base

from ..errors import InvalidStateError

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
JSONB = JSON

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class CaseStatus(str, enum.Enum):
    """Case lifecycle status, in stage order"""
    DRAFT = "DRAFT"
    NOTICE_ISSUED = "NOTICE_ISSUED"
    HEARING = "HEARING"
    ORDER_PASSED = "ORDER_PASSED"
    CLOSED = "CLOSED"


class CaseLanguage(str, enum.Enum):
    """Display language of case paperwork"""
    MR = "MR"
    EN = "EN"
    BOTH = "BOTH"


class PersonRole(str, enum.Enum):
    """Role of a person in a chapter case"""
    APPLICANT = "APPLICANT"
    DEFENDANT = "DEFENDANT"
    WITNESS = "WITNESS"


class FormType(str, enum.Enum):
    """Case paperwork types"""
    NOTICE_130 = "NOTICE_130"
    INTERIM_BOND_125_126 = "INTERIM_BOND_125_126"
    ACCUSED_BOND_TIME_REQUEST = "ACCUSED_BOND_TIME_REQUEST"
    STATEMENT_ACCUSED = "STATEMENT_ACCUSED"
    SURETY_BOND_126 = "SURETY_BOND_126"
    STATEMENT_WITNESS = "STATEMENT_WITNESS"
    FINAL_ORDER = "FINAL_ORDER"
    CASE_ROZNAMA = "CASE_ROZNAMA"


class FormStatus(str, enum.Enum):
    """Form approval status"""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CaseEventType(str, enum.Enum):
    """Audit trail event types"""
    CASEFILE_ISSUED = "CASEFILE_ISSUED"
    CASE_STATUS_CHANGED = "CASE_STATUS_CHANGED"


# =============================================================================
# CASE MODELS
# =============================================================================

class PoliceStation(Base):
    """Police station owning chapter cases"""
    __tablename__ = "police_stations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Case(Base):
    """Chapter case"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    branch_case_number = Column(String(100), nullable=False)
    police_station_case_number = Column(String(100), nullable=True)
    sections = Column(JSONB, default=list)  # ordered section codes, e.g. ["126", "129"]
    police_station_id = Column(String(36), ForeignKey("police_stations.id", ondelete="SET NULL"), nullable=True)
    officer_id = Column(String(36), nullable=True)
    status = Column(Enum(CaseStatus), default=CaseStatus.DRAFT, nullable=False)
    language = Column(Enum(CaseLanguage), default=CaseLanguage.MR, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    police_station = relationship("PoliceStation")
    persons = relationship("Person", back_populates="case")
    forms = relationship("Form", back_populates="case")
    case_files = relationship("CaseFile", back_populates="case")
    events = relationship("CaseEvent", back_populates="case")


class Person(Base):
    """Applicant, defendant or witness attached to a case"""
    __tablename__ = "persons"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    role = Column(Enum(PersonRole), nullable=False)
    name = Column(String(255), nullable=False)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)
    mobile = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    occupation = Column(String(255), nullable=True)
    files = Column(JSONB, default=dict)  # {signature, photo, document}: storage paths, not URLs

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_person_case_role", "case_id", "role"),
    )

    # Relationships
    case = relationship("Case", back_populates="persons")


class Form(Base):
    """Typed piece of case paperwork"""
    __tablename__ = "forms"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    form_type = Column(Enum(FormType), nullable=False)
    status = Column(Enum(FormStatus), default=FormStatus.DRAFT, nullable=False)
    content = Column(JSONB, default=dict)
    created_by = Column(String(36), nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_form_case_type_status", "case_id", "form_type", "status"),
        # At most one proceedings log per case
        Index(
            "uq_form_case_roznama",
            "case_id",
            unique=True,
            sqlite_where=text("form_type = 'CASE_ROZNAMA'"),
            postgresql_where=text("form_type = 'CASE_ROZNAMA'"),
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    case = relationship("Case", back_populates="forms")


# =============================================================================
# ISSUANCE / AUDIT
# =============================================================================

class CaseFile(Base):
    """Issued case file (immutable)"""
    __tablename__ = "case_files"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False)
    case_file_number = Column(String(150), nullable=False)
    pages = Column(JSONB, nullable=False)  # [{type, templateVersion, data}] frozen snapshot
    pdf_path = Column(String(500), nullable=False)
    pdf_hash = Column(String(64), nullable=False)
    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    issued_by = Column(String(36), nullable=False)

    __table_args__ = (
        UniqueConstraint("case_file_number", name="uq_case_file_number"),
        Index("ix_case_file_case", "case_id"),
    )

    # Relationships
    case = relationship("Case", back_populates="case_files")

    @property
    def pdf(self):
        return {"path": self.pdf_path, "hash": self.pdf_hash}


class CaseEvent(Base):
    """Audit trail event (append-only)"""
    __tablename__ = "case_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False)
    event_type = Column(Enum(CaseEventType), nullable=False)
    reference_id = Column(String(36), nullable=True)  # causing record, e.g. CaseFile id
    performed_by = Column(String(36), nullable=True)
    note = Column(Text, nullable=True)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_case_event_case", "case_id", "occurred_at"),
    )

    # Relationships
    case = relationship("Case", back_populates="events")


def _refuse_mutation(mapper, connection, target):
    raise InvalidStateError(f"{type(target).__name__} records are immutable")


for _immutable in (CaseFile, CaseEvent):
    event.listen(_immutable, "before_update", _refuse_mutation)
    event.listen(_immutable, "before_delete", _refuse_mutation)
