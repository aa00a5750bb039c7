"""
Case Lifecycle
==============

Status machines for forms and cases.

Form: DRAFT -> SUBMITTED -> APPROVED | REJECTED
Case: DRAFT -> NOTICE_ISSUED -> HEARING -> ORDER_PASSED, any open stage -> CLOSED

CLOSED is terminal. A case only enters CLOSED after a case file has been
issued for it; closure is the second phase of the issue-then-close flow and
can be retried on its own via complete_case_closure().
"""

import enum
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .db.models import (
    Case, CaseEvent, CaseEventType, CaseFile, CaseLanguage, CaseStatus, Form, FormStatus, FormType,
)
from .errors import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

OPEN_CASE_STAGES = [
    CaseStatus.DRAFT,
    CaseStatus.NOTICE_ISSUED,
    CaseStatus.HEARING,
    CaseStatus.ORDER_PASSED,
]


class FormAction(str, enum.Enum):
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"


# (required source status, resulting status) per action
FORM_TRANSITIONS = {
    FormAction.SUBMIT: (FormStatus.DRAFT, FormStatus.SUBMITTED),
    FormAction.APPROVE: (FormStatus.SUBMITTED, FormStatus.APPROVED),
    FormAction.REJECT: (FormStatus.SUBMITTED, FormStatus.REJECTED),
}


def next_form_status(current: FormStatus, action: FormAction) -> FormStatus:
    try:
        action = FormAction(action)
    except ValueError:
        raise ValidationError(f"Unknown form action: {action}")
    source, target = FORM_TRANSITIONS[action]
    if FormStatus(current) != source:
        raise InvalidStateError(
            f"Cannot {action.value.lower()} a form in {FormStatus(current).value} status "
            f"(requires {source.value})"
        )
    return target


def next_case_status(current: CaseStatus, target: CaseStatus) -> CaseStatus:
    current, target = CaseStatus(current), CaseStatus(target)
    if current == CaseStatus.CLOSED:
        raise InvalidStateError("Case is closed")
    if target == CaseStatus.CLOSED:
        return target
    if OPEN_CASE_STAGES.index(target) <= OPEN_CASE_STAGES.index(current):
        raise InvalidStateError(f"Cannot move case from {current.value} to {target.value}")
    return target


# =============================================================================
# LOOKUPS / GUARDS
# =============================================================================

def get_case(db: Session, case_id: str) -> Case:
    case = db.query(Case).filter(Case.id == case_id).first()
    if not case:
        raise NotFoundError("Case not found")
    return case


def get_form(db: Session, form_id: str) -> Form:
    form = db.query(Form).filter(Form.id == form_id).first()
    if not form:
        raise NotFoundError("Form not found")
    return form


def ensure_case_open(case: Case, message: str = "Case is closed") -> None:
    if case.status == CaseStatus.CLOSED:
        raise InvalidStateError(message)


# =============================================================================
# CASE OPERATIONS
# =============================================================================

def register_case(
    db: Session,
    branch_case_number: str,
    police_station_case_number: Optional[str] = None,
    sections: Optional[List[str]] = None,
    police_station_id: Optional[str] = None,
    officer_id: Optional[str] = None,
    language: CaseLanguage = CaseLanguage.MR,
) -> Case:
    if not branch_case_number:
        raise ValidationError("branch case number is required")
    case = Case(
        branch_case_number=branch_case_number,
        police_station_case_number=police_station_case_number,
        sections=list(sections or []),
        police_station_id=police_station_id,
        officer_id=officer_id,
        status=CaseStatus.DRAFT,
        language=language,
    )
    db.add(case)
    db.commit()
    logger.info("Registered case %s (%s)", case.id, branch_case_number)
    return case


def transition_case_status(
    db: Session,
    case_id: str,
    target: CaseStatus,
    performed_by: Optional[str] = None,
    remark: Optional[str] = None,
) -> Case:
    case = get_case(db, case_id)
    previous = case.status
    new_status = next_case_status(previous, target)

    if new_status == CaseStatus.CLOSED:
        has_case_file = db.query(CaseFile.id).filter(CaseFile.case_id == case.id).first()
        if not has_case_file:
            raise InvalidStateError("Case cannot be closed before a case file is issued")

    case.status = new_status
    db.add(CaseEvent(
        case_id=case.id,
        event_type=CaseEventType.CASE_STATUS_CHANGED,
        performed_by=performed_by,
        note=remark or f"{previous.value} -> {new_status.value}",
    ))
    db.commit()
    logger.info("Case %s moved %s -> %s", case.id, previous.value, new_status.value)
    return case


def complete_case_closure(db: Session, case_id: str, performed_by: Optional[str] = None,
                          remark: Optional[str] = None) -> Case:
    """Close a case whose case file is already issued (retry of the closing step)."""
    return transition_case_status(db, case_id, CaseStatus.CLOSED, performed_by, remark)


# =============================================================================
# FORM OPERATIONS
# =============================================================================

def create_form(db: Session, case_id: str, form_type: FormType, content: Optional[Dict[str, Any]] = None,
                created_by: Optional[str] = None) -> Form:
    form_type = FormType(form_type)
    if form_type == FormType.CASE_ROZNAMA:
        raise ValidationError("CASE_ROZNAMA is created by the first Roznama entry")

    case = get_case(db, case_id)
    ensure_case_open(case, "Cannot add forms to a closed case")

    form = Form(
        case_id=case.id,
        form_type=form_type,
        status=FormStatus.DRAFT,
        content=content or {},
        created_by=created_by,
    )
    db.add(form)
    db.commit()
    return form


def _apply_form_action(db: Session, form_id: str, action: FormAction) -> Form:
    form = get_form(db, form_id)
    ensure_case_open(get_case(db, form.case_id), "Cannot change forms of a closed case")
    form.status = next_form_status(form.status, action)
    return form


def submit_form(db: Session, form_id: str) -> Form:
    form = _apply_form_action(db, form_id, FormAction.SUBMIT)
    form.submitted_at = datetime.utcnow()
    db.commit()
    return form


def approve_form(db: Session, form_id: str, approved_by: Optional[str]) -> Form:
    if not approved_by:
        raise ValidationError("Approver identity is required")
    form = _apply_form_action(db, form_id, FormAction.APPROVE)
    form.approved_by = approved_by
    form.approved_at = datetime.utcnow()
    db.commit()
    logger.info("Form %s (%s) approved by %s", form.id, form.form_type.value, approved_by)
    return form


def reject_form(db: Session, form_id: str, reason: Optional[str]) -> Form:
    if not reason or not reason.strip():
        raise ValidationError("Rejection reason is required")
    form = _apply_form_action(db, form_id, FormAction.REJECT)
    form.rejection_reason = reason.strip()
    db.commit()
    return form


def list_forms(
    db: Session,
    status: Optional[FormStatus] = None,
    case_id: Optional[str] = None,
    form_type: Optional[FormType] = None,
) -> List[Form]:
    """Forms for the review queue, newest first."""
    query = db.query(Form)
    if status is not None:
        query = query.filter(Form.status == FormStatus(status))
    if case_id is not None:
        query = query.filter(Form.case_id == case_id)
    if form_type is not None:
        query = query.filter(Form.form_type == FormType(form_type))
    return query.order_by(Form.created_at.desc(), Form.id.desc()).all()
