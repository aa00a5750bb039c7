"""
Pydantic Schemas for Chapter Case File Service
==============================================

Request/response models for the Roznama log, case file issuance and form
approval, plus the page record shape handed to the renderer.
"""

from typing import List, Optional, Dict, Any
from pydantic import AliasChoices, BaseModel, Field, field_validator
import datetime as dt


# =============================================================================
# ROZNAMA
# =============================================================================

class RoznamaHeader(BaseModel):
    """Header captured with the first Roznama entry"""
    branch_chapter_case_no: str = Field(..., min_length=1, validation_alias=AliasChoices("branch_chapter_case_no", "branchChapterCaseNo"))
    police_chapter_case_no: str = Field(..., min_length=1, validation_alias=AliasChoices("police_chapter_case_no", "policeChapterCaseNo"))
    police_station_name: Optional[str] = Field(None, validation_alias=AliasChoices("police_station_name", "policeStationName"))
    sections: List[str] = Field(default_factory=list)
    applicant: Optional[str] = None
    defendants: Optional[str] = None


class RoznamaEntryIn(BaseModel):
    """One proceedings entry"""
    date: dt.date
    proceedings: str = Field(..., min_length=1)
    next_date: Optional[dt.date] = Field(None, validation_alias=AliasChoices("next_date", "nextDate"))
    present_accused_person_ids: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("present_accused_person_ids", "presentAccusedPersonIds"),
    )

    @field_validator("proceedings")
    @classmethod
    def _proceedings_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("proceedings must not be blank")
        return value

    def to_content(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "proceedings": self.proceedings,
            "next_date": self.next_date.isoformat() if self.next_date else None,
            "present_accused_person_ids": list(self.present_accused_person_ids),
        }


class AddRoznamaEntryRequest(BaseModel):
    entry: Dict[str, Any]
    header: Optional[Dict[str, Any]] = None
    close_case: bool = False
    case_file_number: Optional[str] = None


class RoznamaEntryResult(BaseModel):
    """Outcome of appending a Roznama entry"""
    created_roznama: bool
    total_entries: int
    case_closed: bool
    case_file_id: Optional[str] = None
    case_file_number: Optional[str] = None
    # Issuance succeeded but the CLOSED transition did not; retry closure only.
    closure_pending: bool = False
    closure_error: Optional[str] = None


# =============================================================================
# CASE FILES
# =============================================================================

class PageSnapshot(BaseModel):
    """One page as frozen into an issued case file"""
    type: str
    templateVersion: str
    data: Dict[str, Any]


class IssueCaseFileRequest(BaseModel):
    case_file_number: Optional[str] = None


class CaseFileOut(BaseModel):
    id: str
    case_id: str
    case_file_number: str
    pages: List[PageSnapshot]
    pdf: Dict[str, str]
    issued_at: dt.datetime
    issued_by: str

    @classmethod
    def from_record(cls, case_file) -> "CaseFileOut":
        return cls(
            id=case_file.id,
            case_id=case_file.case_id,
            case_file_number=case_file.case_file_number,
            pages=[PageSnapshot(**page) for page in case_file.pages],
            pdf=case_file.pdf,
            issued_at=case_file.issued_at,
            issued_by=case_file.issued_by,
        )


class CaseFileVerification(BaseModel):
    case_file_id: str
    valid: bool


class CloseCaseRequest(BaseModel):
    remark: Optional[str] = None


# =============================================================================
# FORMS
# =============================================================================

class RejectFormRequest(BaseModel):
    reason: str = ""


class FormStatusOut(BaseModel):
    id: str
    form_type: str
    status: str
    approved_by: Optional[str] = None
    approved_at: Optional[dt.datetime] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_record(cls, form) -> "FormStatusOut":
        return cls(
            id=form.id,
            form_type=form.form_type.value,
            status=form.status.value,
            approved_by=form.approved_by,
            approved_at=form.approved_at,
            rejection_reason=form.rejection_reason,
        )


class FormDetailOut(FormStatusOut):
    """Form as shown to the reviewer, with its case summary"""
    case_id: str
    branch_case_number: Optional[str] = None
    sections: List[str] = Field(default_factory=list)
    content: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    submitted_at: Optional[dt.datetime] = None

    @classmethod
    def from_record(cls, form) -> "FormDetailOut":
        case = form.case
        return cls(
            id=form.id,
            form_type=form.form_type.value,
            status=form.status.value,
            approved_by=form.approved_by,
            approved_at=form.approved_at,
            rejection_reason=form.rejection_reason,
            case_id=form.case_id,
            branch_case_number=case.branch_case_number if case else None,
            sections=list(case.sections or []) if case else [],
            content=form.content or {},
            created_by=form.created_by,
            created_at=form.created_at,
            submitted_at=form.submitted_at,
        )


# =============================================================================
# PERSON FILES
# =============================================================================

class PersonFileUrl(BaseModel):
    url: str


# =============================================================================
# GENERIC
# =============================================================================

class ErrorResponse(BaseModel):
    code: str
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    storage_backend: str
    warnings: List[str] = Field(default_factory=list)
