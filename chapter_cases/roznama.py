"""
Roznama Log
===========

The Roznama is the append-only proceedings log of a case, stored as the
single CASE_ROZNAMA form of that case: {header, entries: [...]}.

- The first entry creates the log and must carry the header.
- Entries only ever append to the tail.
- A closing entry issues the case file, then closes the case. Issuance is
  irreversible; if closing fails afterwards the result says so
  (closure_pending) and only lifecycle.complete_case_closure needs retrying.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from .casefile import issue_case_file
from .config import Settings
from .db.models import Case, Form, FormStatus, FormType
from .errors import ChapterCaseError, ConflictError, ValidationError
from .lifecycle import complete_case_closure, ensure_case_open, get_case
from .page_data import content_body, find_roznama_form
from .schemas import RoznamaEntryIn, RoznamaEntryResult, RoznamaHeader

logger = logging.getLogger(__name__)

CLOSURE_REMARK = "Case closed via Roznama final entry"


def _parse_entry(entry: Union[RoznamaEntryIn, Dict[str, Any], None]) -> RoznamaEntryIn:
    if isinstance(entry, RoznamaEntryIn):
        return entry
    try:
        return RoznamaEntryIn.model_validate(entry or {})
    except PydanticValidationError as exc:
        fields = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
        if not fields or fields & {"date", "proceedings"}:
            raise ValidationError("entry.date and entry.proceedings are required") from exc
        raise ValidationError(f"Invalid Roznama entry field(s): {', '.join(sorted(fields))}") from exc


def _parse_header(header: Union[RoznamaHeader, Dict[str, Any]]) -> RoznamaHeader:
    if isinstance(header, RoznamaHeader):
        return header
    try:
        return RoznamaHeader.model_validate(header)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Roznama header requires branch and police chapter case numbers"
        ) from exc


def _create_roznama(db: Session, case: Case, header: RoznamaHeader, created_by: Optional[str]) -> Optional[Form]:
    """
    Insert the case's Roznama form.

    Returns None when another request created it first (uq_form_case_roznama);
    the caller then appends to that one.
    """
    form = Form(
        case_id=case.id,
        form_type=FormType.CASE_ROZNAMA,
        status=FormStatus.APPROVED,
        content={"header": header.model_dump(), "entries": []},
        created_by=created_by,
    )
    db.add(form)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("Roznama for case %s was created concurrently, appending to it", case.id)
        return None
    return form


def add_roznama_entry(
    db: Session,
    case_id: str,
    entry: Union[RoznamaEntryIn, Dict[str, Any]],
    header: Optional[Union[RoznamaHeader, Dict[str, Any]]] = None,
    close_case: bool = False,
    case_file_number: Optional[str] = None,
    performed_by: Optional[str] = None,
    renderer=None,
    blob_store=None,
    settings: Optional[Settings] = None,
) -> RoznamaEntryResult:
    """
    Append one proceedings entry to the case's Roznama.

    With close_case, the case file is issued and the case closed after the
    entry is saved. Issuance errors propagate; a failure to close after a
    successful issuance is reported in the result instead.
    """
    parsed = _parse_entry(entry)
    if close_case and not performed_by:
        raise ValidationError("performed_by is required to close a case")

    case = get_case(db, case_id)
    ensure_case_open(case, "Cannot add roznama entry to closed case")

    created = False
    form = find_roznama_form(db, case.id)
    if form is None:
        if not header:
            raise ValidationError("Roznama header is required for first entry")
        form = _create_roznama(db, case, _parse_header(header), performed_by)
        if form is None:
            form = find_roznama_form(db, case_id)
        else:
            created = True

    content = copy.deepcopy(form.content or {})
    entries = content_body(content, case.language).setdefault("entries", [])
    entries.append(parsed.to_content())
    form.content = content
    flag_modified(form, "content")

    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError("Roznama was updated concurrently, retry the entry") from exc

    logger.info("Roznama entry %d added to case %s", len(entries), case_id)
    result = RoznamaEntryResult(
        created_roznama=created,
        total_entries=len(entries),
        case_closed=False,
    )
    if not close_case:
        return result

    # Phase 1: issuance. Once this returns the case file exists for good.
    case_file = issue_case_file(
        db,
        case_id,
        case_file_number=case_file_number,
        issued_by=performed_by,
        renderer=renderer,
        blob_store=blob_store,
        settings=settings,
    )
    result.case_file_id = case_file.id
    result.case_file_number = case_file.case_file_number

    # Phase 2: closure
    try:
        complete_case_closure(db, case_id, performed_by, CLOSURE_REMARK)
    except (ChapterCaseError, SQLAlchemyError) as exc:
        db.rollback()
        logger.error("Case %s: case file %s issued but closing failed: %s",
                     case_id, case_file.case_file_number, exc)
        result.closure_pending = True
        result.closure_error = getattr(exc, "message", None) or str(exc)
        return result

    result.case_closed = True
    return result


def get_roznama_entries(db: Session, case_id: str) -> List[Dict[str, Any]]:
    case = get_case(db, case_id)
    form = find_roznama_form(db, case.id)
    if form is None:
        return []
    return list(content_body(form.content, case.language).get("entries") or [])
