"""
Case File Issuance
==================

Assemble, render, hash and persist the immutable case file of a case.

Page order is a contract: the Roznama page always comes first, followed by
approved forms in FORM_PAGE_ORDER. Changing FORM_PAGE_ORDER changes the
physical layout of every case file issued afterwards, so bump
FORM_PAGE_ORDER_VERSION with it.

Uniqueness of case file numbers is enforced by the database constraint
(uq_case_file_number) and by write-once blob puts; the lookup before
rendering only avoids wasted work.
"""

import copy
import hashlib
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.models import (
    Case, CaseEvent, CaseEventType, CaseFile, Form, FormStatus, FormType, generate_uuid,
)
from .errors import ConflictError, NotFoundError, ValidationError
from .lifecycle import get_case, get_form
from .page_data import (
    ResolutionContext, build_resolution_context, find_roznama_form, resolve_form_pages, resolve_roznama_page,
)
from .renderer import RenderMode, ReportLabRenderer
from .storage import BlobExistsError, StorageError, get_blob_store

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

FORM_PAGE_ORDER_VERSION = 1
FORM_PAGE_ORDER = (
    FormType.NOTICE_130,
    FormType.ACCUSED_BOND_TIME_REQUEST,
    FormType.INTERIM_BOND_125_126,
    FormType.STATEMENT_ACCUSED,
    FormType.SURETY_BOND_126,
    FormType.STATEMENT_WITNESS,
    FormType.FINAL_ORDER,
)

TEMPLATE_VERSIONS = {form_type: "v1" for form_type in FormType}


def compute_content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def generate_case_file_number(case: Case) -> str:
    branch = (case.branch_case_number or case.id).replace("/", "-")
    return f"CF-{branch}-{int(time.time() * 1000)}"


def _validate_case_file_number(number: str) -> str:
    number = (number or "").strip()
    if not number:
        raise ValidationError("case file number is required")
    if "/" in number or "\\" in number or ".." in number:
        raise ValidationError(f"Invalid case file number: {number!r}")
    return number


def _page(form_type: FormType, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": form_type.value,
        "templateVersion": TEMPLATE_VERSIONS[form_type],
        "data": copy.deepcopy(data),
    }


# =============================================================================
# ASSEMBLY
# =============================================================================

def load_issuable_forms(db: Session, case_id: str) -> Tuple[List[Form], Optional[Form]]:
    """Approved non-Roznama forms (oldest first) and the Roznama form, if any."""
    forms = (
        db.query(Form)
        .filter(
            Form.case_id == case_id,
            Form.status == FormStatus.APPROVED,
            Form.form_type != FormType.CASE_ROZNAMA,
        )
        .order_by(Form.created_at.asc())
        .all()
    )
    roznama = find_roznama_form(db, case_id, (FormStatus.DRAFT, FormStatus.APPROVED))
    return forms, roznama


def assemble_case_pages(ctx: ResolutionContext, forms: List[Form], roznama: Optional[Form]) -> List[Dict[str, Any]]:
    """
    Resolve the ordered page snapshots of a case file.

    Any resolver failure aborts the whole assembly.
    """
    pages = []
    if roznama is not None:
        pages.append(_page(FormType.CASE_ROZNAMA, resolve_roznama_page(ctx, roznama)))

    by_type: Dict[FormType, List[Form]] = {}
    for form in forms:
        by_type.setdefault(form.form_type, []).append(form)

    for form_type in FORM_PAGE_ORDER:
        for form in by_type.get(form_type, []):
            pages.extend(_page(form_type, data) for data in resolve_form_pages(ctx, form))

    return pages


def _collect_case_pages(db: Session, case: Case, store, settings: Settings) -> List[Dict[str, Any]]:
    forms, roznama = load_issuable_forms(db, case.id)
    if not forms and roznama is None:
        raise ValidationError("Nothing to issue: case has no approved forms and no Roznama")
    ctx = build_resolution_context(db, case, store, settings)
    return assemble_case_pages(ctx, forms, roznama)


# =============================================================================
# ISSUANCE
# =============================================================================

def _discard_blob(store, path: str) -> None:
    try:
        store.delete(path)
    except StorageError as exc:
        logger.error("Failed to remove orphaned case file blob %s: %s", path, exc)


def issue_case_file(
    db: Session,
    case_id: str,
    case_file_number: Optional[str] = None,
    issued_by: Optional[str] = None,
    renderer=None,
    blob_store=None,
    settings: Optional[Settings] = None,
) -> CaseFile:
    """
    Issue the immutable case file of a case.

    Raises NotFoundError, ValidationError or ConflictError. Rendering errors
    propagate unchanged. Nothing is persisted unless every step succeeds.
    """
    if not issued_by:
        raise ValidationError("issued_by is required")

    settings = settings or get_settings()
    store = blob_store or get_blob_store(settings)
    renderer = renderer or ReportLabRenderer(settings.renderer_font_path)

    case = get_case(db, case_id)
    number = _validate_case_file_number(case_file_number or generate_case_file_number(case))

    pages = _collect_case_pages(db, case, store, settings)

    if db.query(CaseFile.id).filter(CaseFile.case_file_number == number).first():
        raise ConflictError(f"Case file {number} already exists")

    work_path = Path(settings.work_dir) / f"{number}-{uuid.uuid4().hex}.pdf"
    pdf_path = f"{settings.casefile_prefix}/{number}.pdf"
    try:
        renderer.render(pages, str(work_path), RenderMode.ISSUED)
        data = work_path.read_bytes()
    finally:
        work_path.unlink(missing_ok=True)

    pdf_hash = compute_content_hash(data)

    try:
        store.put(pdf_path, data, PDF_CONTENT_TYPE, overwrite=False)
    except BlobExistsError as exc:
        logger.warning("Case file blob %s already exists", pdf_path)
        raise ConflictError(f"Case file {number} already exists") from exc

    case_file = CaseFile(
        id=generate_uuid(),
        case_id=case.id,
        case_file_number=number,
        pages=pages,
        pdf_path=pdf_path,
        pdf_hash=pdf_hash,
        issued_at=datetime.utcnow(),
        issued_by=issued_by,
    )
    db.add(case_file)
    db.add(CaseEvent(
        case_id=case.id,
        event_type=CaseEventType.CASEFILE_ISSUED,
        reference_id=case_file.id,
        performed_by=issued_by,
        note=number,
    ))
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        _discard_blob(store, pdf_path)
        logger.warning("Case file number %s lost a concurrent issuance", number)
        raise ConflictError(f"Case file {number} already exists") from exc
    except SQLAlchemyError:
        db.rollback()
        _discard_blob(store, pdf_path)
        logger.exception("Failed to persist case file %s for case %s", number, case_id)
        raise

    logger.info("Issued case file %s for case %s (%d pages, sha256=%s)",
                number, case.id, len(pages), pdf_hash)
    return case_file


# =============================================================================
# PREVIEW
# =============================================================================

def _preview_path(settings: Settings, label: str) -> Path:
    stamp = int(time.time() * 1000)
    return Path(settings.preview_dir) / f"{label}-{stamp}-{uuid.uuid4().hex[:8]}.pdf"


def preview_form_pdf(db: Session, form_id: str, renderer=None, blob_store=None,
                     settings: Optional[Settings] = None) -> str:
    """Render one form in any status (DRAFT included) to a disposable preview PDF."""
    settings = settings or get_settings()
    store = blob_store or get_blob_store(settings)
    renderer = renderer or ReportLabRenderer(settings.renderer_font_path)

    form = get_form(db, form_id)
    case = get_case(db, form.case_id)
    ctx = build_resolution_context(db, case, store, settings)
    pages = [_page(form.form_type, data) for data in resolve_form_pages(ctx, form)]

    cleanup_previews(settings)
    result = renderer.render(pages, str(_preview_path(settings, f"form-{form.id}")), RenderMode.PREVIEW)
    return result.path


def preview_full_case_pdf(db: Session, case_id: str, renderer=None, blob_store=None,
                          settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    store = blob_store or get_blob_store(settings)
    renderer = renderer or ReportLabRenderer(settings.renderer_font_path)

    case = get_case(db, case_id)
    pages = _collect_case_pages(db, case, store, settings)

    cleanup_previews(settings)
    result = renderer.render(pages, str(_preview_path(settings, f"case-{case.id}")), RenderMode.PREVIEW)
    return result.path


def cleanup_previews(settings: Optional[Settings] = None, max_age_seconds: Optional[int] = None) -> int:
    """Remove preview PDFs older than max_age_seconds. Returns the number removed."""
    settings = settings or get_settings()
    if max_age_seconds is None:
        max_age_seconds = settings.preview_max_age_seconds
    preview_dir = Path(settings.preview_dir)
    if not preview_dir.is_dir():
        return 0

    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in preview_dir.glob("*.pdf"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as exc:
            logger.warning("Could not remove preview %s: %s", path, exc)
    return removed


# =============================================================================
# READ / VERIFY
# =============================================================================

def list_case_files(db: Session, case_id: str) -> List[CaseFile]:
    get_case(db, case_id)
    return (
        db.query(CaseFile)
        .filter(CaseFile.case_id == case_id)
        .order_by(CaseFile.issued_at.asc())
        .all()
    )


def get_case_file(db: Session, case_file_id: str) -> CaseFile:
    case_file = db.query(CaseFile).filter(CaseFile.id == case_file_id).first()
    if not case_file:
        raise NotFoundError("Case file not found")
    return case_file


def verify_case_file(db: Session, case_file_id: str, blob_store=None,
                     settings: Optional[Settings] = None) -> bool:
    """Re-hash the stored PDF bytes and compare with the issued hash."""
    case_file = get_case_file(db, case_file_id)
    store = blob_store or get_blob_store(settings or get_settings())
    try:
        data = store.get(case_file.pdf_path)
    except StorageError as exc:
        logger.warning("Case file %s artifact unreadable: %s", case_file.case_file_number, exc)
        return False

    valid = compute_content_hash(data) == case_file.pdf_hash
    if not valid:
        logger.warning("Case file %s hash mismatch", case_file.case_file_number)
    return valid
