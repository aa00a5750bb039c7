"""
Form and Case Lifecycle Tests
"""

import os
from datetime import datetime
from pathlib import Path

import pytest

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from chapter_cases.db.models import (
    Case, CaseEvent, CaseEventType, CaseFile, CaseStatus, Form, FormStatus, FormType,
)
from chapter_cases.errors import InvalidStateError, NotFoundError, ValidationError
from chapter_cases import lifecycle
from chapter_cases.lifecycle import FormAction, next_case_status, next_form_status


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB and yield a session."""
    from chapter_cases.db.session import reset_engine, init_db, SessionLocal

    old_db_url = os.environ.get("DATABASE_URL")
    os.environ["DATABASE_URL"] = f"sqlite:///{tmp_path / 'lifecycle.db'}"
    reset_engine()
    init_db()

    db = SessionLocal()
    yield db
    db.close()

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


def _seed_case(db, status=CaseStatus.DRAFT):
    case = Case(branch_case_number="BR/1/2024", police_station_case_number="PS-1", status=status)
    db.add(case)
    db.commit()
    return case


def _seed_form(db, case, status=FormStatus.DRAFT, form_type=FormType.NOTICE_130):
    form = Form(case_id=case.id, form_type=form_type, status=status, content={})
    db.add(form)
    db.commit()
    return form


# =============================================================================
# Pure transitions
# =============================================================================

class TestFormTransitions:

    @pytest.mark.parametrize("current,action,expected", [
        (FormStatus.DRAFT, FormAction.SUBMIT, FormStatus.SUBMITTED),
        (FormStatus.SUBMITTED, FormAction.APPROVE, FormStatus.APPROVED),
        (FormStatus.SUBMITTED, FormAction.REJECT, FormStatus.REJECTED),
    ])
    def test_allowed(self, current, action, expected):
        assert next_form_status(current, action) == expected

    @pytest.mark.parametrize("current,action", [
        (FormStatus.DRAFT, FormAction.APPROVE),
        (FormStatus.DRAFT, FormAction.REJECT),
        (FormStatus.APPROVED, FormAction.APPROVE),
        (FormStatus.REJECTED, FormAction.APPROVE),
        (FormStatus.SUBMITTED, FormAction.SUBMIT),
    ])
    def test_wrong_source_status(self, current, action):
        with pytest.raises(InvalidStateError):
            next_form_status(current, action)

    def test_plain_string_action(self):
        assert next_form_status("SUBMITTED", "APPROVE") == FormStatus.APPROVED
        with pytest.raises(InvalidStateError, match="Cannot approve a form in DRAFT status"):
            next_form_status(FormStatus.DRAFT, "APPROVE")
        with pytest.raises(ValidationError):
            next_form_status(FormStatus.DRAFT, "ARCHIVE")


class TestCaseTransitions:

    def test_forward_only(self):
        assert next_case_status(CaseStatus.DRAFT, CaseStatus.HEARING) == CaseStatus.HEARING
        with pytest.raises(InvalidStateError):
            next_case_status(CaseStatus.HEARING, CaseStatus.NOTICE_ISSUED)
        with pytest.raises(InvalidStateError):
            next_case_status(CaseStatus.HEARING, CaseStatus.HEARING)

    def test_any_open_stage_may_close(self):
        for stage in lifecycle.OPEN_CASE_STAGES:
            assert next_case_status(stage, CaseStatus.CLOSED) == CaseStatus.CLOSED

    def test_closed_is_terminal(self):
        for target in CaseStatus:
            with pytest.raises(InvalidStateError):
                next_case_status(CaseStatus.CLOSED, target)


# =============================================================================
# Form operations
# =============================================================================

class TestFormOperations:

    def test_submit_then_approve(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        form = _seed_form(sqlalchemy_db, case)

        form = lifecycle.submit_form(sqlalchemy_db, form.id)
        assert form.status == FormStatus.SUBMITTED
        assert form.submitted_at is not None

        form = lifecycle.approve_form(sqlalchemy_db, form.id, "officer-a")
        assert form.status == FormStatus.APPROVED
        assert form.approved_by == "officer-a"
        assert form.approved_at is not None

    def test_double_approval_rejected(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        form = _seed_form(sqlalchemy_db, case, status=FormStatus.APPROVED)

        with pytest.raises(InvalidStateError):
            lifecycle.approve_form(sqlalchemy_db, form.id, "officer-a")

    def test_approving_draft_rejected(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        form = _seed_form(sqlalchemy_db, case)

        with pytest.raises(InvalidStateError):
            lifecycle.approve_form(sqlalchemy_db, form.id, "officer-a")
        sqlalchemy_db.refresh(form)
        assert form.status == FormStatus.DRAFT

    def test_approve_requires_approver(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        form = _seed_form(sqlalchemy_db, case, status=FormStatus.SUBMITTED)

        with pytest.raises(ValidationError):
            lifecycle.approve_form(sqlalchemy_db, form.id, None)

    def test_reject_requires_reason(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        form = _seed_form(sqlalchemy_db, case, status=FormStatus.SUBMITTED)

        with pytest.raises(ValidationError):
            lifecycle.reject_form(sqlalchemy_db, form.id, "   ")

        form = lifecycle.reject_form(sqlalchemy_db, form.id, "Wrong address")
        assert form.status == FormStatus.REJECTED
        assert form.rejection_reason == "Wrong address"

    def test_closed_case_refuses_form_changes(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db, status=CaseStatus.CLOSED)
        form = _seed_form(sqlalchemy_db, case, status=FormStatus.SUBMITTED)

        with pytest.raises(InvalidStateError):
            lifecycle.approve_form(sqlalchemy_db, form.id, "officer-a")
        with pytest.raises(InvalidStateError):
            lifecycle.create_form(sqlalchemy_db, case.id, FormType.FINAL_ORDER, {})

    def test_unknown_form(self, sqlalchemy_db):
        with pytest.raises(NotFoundError):
            lifecycle.submit_form(sqlalchemy_db, "missing")

    def test_create_form_starts_as_draft(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        form = lifecycle.create_form(sqlalchemy_db, case.id, FormType.NOTICE_130, {"personIds": ["p1"]}, "clerk")

        assert form.status == FormStatus.DRAFT
        assert form.content == {"personIds": ["p1"]}

    def test_roznama_not_created_as_plain_form(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        with pytest.raises(ValidationError):
            lifecycle.create_form(sqlalchemy_db, case.id, FormType.CASE_ROZNAMA, {})

    def test_list_forms_newest_first(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        other = _seed_case(sqlalchemy_db)
        older = _seed_form(sqlalchemy_db, case, status=FormStatus.SUBMITTED)
        newer = _seed_form(sqlalchemy_db, other, status=FormStatus.SUBMITTED, form_type=FormType.FINAL_ORDER)
        _seed_form(sqlalchemy_db, case)
        older.created_at = datetime(2024, 1, 1)
        newer.created_at = datetime(2024, 2, 1)
        sqlalchemy_db.commit()

        submitted = lifecycle.list_forms(sqlalchemy_db, status=FormStatus.SUBMITTED)
        assert [f.id for f in submitted] == [newer.id, older.id]

        assert [f.id for f in lifecycle.list_forms(sqlalchemy_db, status="SUBMITTED", case_id=case.id)] == [older.id]
        assert [f.id for f in lifecycle.list_forms(sqlalchemy_db, form_type=FormType.FINAL_ORDER)] == [newer.id]
        assert len(lifecycle.list_forms(sqlalchemy_db)) == 3
        assert lifecycle.list_forms(sqlalchemy_db, status=FormStatus.APPROVED) == []


# =============================================================================
# Case operations
# =============================================================================

class TestCaseOperations:

    def test_register_case_starts_as_draft(self, sqlalchemy_db):
        case = lifecycle.register_case(sqlalchemy_db, "BR/9/2024", sections=["126"])
        assert case.status == CaseStatus.DRAFT
        assert case.sections == ["126"]

    def test_advance_records_event(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        lifecycle.transition_case_status(sqlalchemy_db, case.id, CaseStatus.NOTICE_ISSUED, "officer-a")

        events = sqlalchemy_db.query(CaseEvent).filter(CaseEvent.case_id == case.id).all()
        assert case.status == CaseStatus.NOTICE_ISSUED
        assert [e.event_type for e in events] == [CaseEventType.CASE_STATUS_CHANGED]

    def test_close_requires_issued_case_file(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db, status=CaseStatus.HEARING)

        with pytest.raises(InvalidStateError):
            lifecycle.complete_case_closure(sqlalchemy_db, case.id, "officer-a")
        sqlalchemy_db.refresh(case)
        assert case.status == CaseStatus.HEARING

    def test_close_after_issuance(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db, status=CaseStatus.HEARING)
        sqlalchemy_db.add(CaseFile(
            case_id=case.id, case_file_number="CF-X", pages=[], pdf_path="casefiles/CF-X.pdf",
            pdf_hash="0" * 64, issued_by="officer-a",
        ))
        sqlalchemy_db.commit()

        case = lifecycle.complete_case_closure(sqlalchemy_db, case.id, "officer-a", "Closed after order")
        assert case.status == CaseStatus.CLOSED

        event = sqlalchemy_db.query(CaseEvent).filter(CaseEvent.case_id == case.id).one()
        assert event.note == "Closed after order"

        with pytest.raises(InvalidStateError):
            lifecycle.complete_case_closure(sqlalchemy_db, case.id, "officer-a")

    def test_events_are_append_only(self, sqlalchemy_db):
        case = _seed_case(sqlalchemy_db)
        lifecycle.transition_case_status(sqlalchemy_db, case.id, CaseStatus.HEARING, "officer-a")
        event = sqlalchemy_db.query(CaseEvent).filter(CaseEvent.case_id == case.id).one()

        event.note = "rewritten"
        with pytest.raises(InvalidStateError):
            sqlalchemy_db.commit()
        sqlalchemy_db.rollback()
