"""
Chapter Case File Service API
=============================

FastAPI transport over the case file pipeline.

Endpoints:
- GET  /api/v1/forms                            - Review queue (filter by status, case, type)
- GET  /api/v1/forms/{form_id}                  - One form with its case summary
- POST /api/v1/forms/{form_id}/submit            - Submit a draft form
- POST /api/v1/forms/{form_id}/approve           - Approve a submitted form
- POST /api/v1/forms/{form_id}/reject            - Reject a submitted form
- GET  /api/v1/forms/{form_id}/preview           - Preview PDF of one form (any status)
- POST /api/v1/cases/{case_id}/roznama/entries   - Append a Roznama entry (optionally closing the case)
- GET  /api/v1/cases/{case_id}/roznama/entries   - List Roznama entries
- POST /api/v1/cases/{case_id}/casefiles         - Issue the case file
- GET  /api/v1/cases/{case_id}/casefiles         - List issued case files
- GET  /api/v1/casefiles/{case_file_id}/verify   - Re-hash an issued case file
- POST /api/v1/cases/{case_id}/close             - Close a case whose case file is issued
- GET  /api/v1/cases/{case_id}/preview           - Preview PDF of the full case file
- POST /api/v1/persons/{person_id}/files/{kind}  - Upload a signature, photo or document
- GET  /api/v1/persons/{person_id}/files/{kind}  - Short-lived signed URL for a person file
- GET  /files/{path}?token=...                   - Serve a signed local file
- GET  /health                                   - Health check

The acting user is taken from the X-User-Id header.

Run with:
    uvicorn chapter_cases.api:app --host 0.0.0.0 --port 8000
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session

from . import casefile, lifecycle, roznama
from .config import get_settings
from .db.models import FormStatus, FormType
from .db.session import get_db, init_db
from .errors import ChapterCaseError, NotFoundError
from .renderer import ReportLabRenderer
from .schemas import (
    AddRoznamaEntryRequest,
    CaseFileOut,
    CaseFileVerification,
    CloseCaseRequest,
    ErrorResponse,
    FormDetailOut,
    FormStatusOut,
    HealthResponse,
    IssueCaseFileRequest,
    PersonFileUrl,
    RejectFormRequest,
    RoznamaEntryResult,
)
from .storage import LocalBlobStore, get_blob_store, get_person_file_url, store_person_file

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Chapter Case File Service",
    description="Roznama log, form approval and case file issuance for chapter cases",
    version=get_settings().service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.exception_handler(ChapterCaseError)
async def chapter_case_error_handler(request: Request, exc: ChapterCaseError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(code=exc.code, message=exc.message).model_dump(),
    )


@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info("Starting Chapter Case File Service v%s (storage=%s)",
                settings.service_version, settings.storage_backend)
    for warning in settings.validate_storage_config():
        logger.warning("Storage config: %s", warning)
    for warning in settings.validate_renderer_config():
        logger.warning("Renderer config: %s", warning)
    init_db()
    removed = casefile.cleanup_previews(settings)
    if removed:
        logger.info("Removed %d stale preview files", removed)


# =============================================================================
# Dependencies
# =============================================================================

def get_blob_store_dependency():
    return get_blob_store(get_settings())


def get_renderer_dependency():
    return ReportLabRenderer(get_settings().renderer_font_path)


def get_actor(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    return x_user_id


router = APIRouter(prefix="/api/v1")


# =============================================================================
# Forms
# =============================================================================

@router.get("/forms", response_model=List[FormDetailOut], tags=["Forms"])
def list_forms(
    status: Optional[FormStatus] = Query(None),
    case_id: Optional[str] = Query(None),
    form_type: Optional[FormType] = Query(None),
    db: Session = Depends(get_db),
):
    forms = lifecycle.list_forms(db, status=status, case_id=case_id, form_type=form_type)
    return [FormDetailOut.from_record(form) for form in forms]


@router.get("/forms/{form_id}", response_model=FormDetailOut, tags=["Forms"])
def get_form(form_id: str, db: Session = Depends(get_db)):
    return FormDetailOut.from_record(lifecycle.get_form(db, form_id))


@router.post("/forms/{form_id}/submit", response_model=FormStatusOut, tags=["Forms"])
def submit_form(form_id: str, db: Session = Depends(get_db)):
    return FormStatusOut.from_record(lifecycle.submit_form(db, form_id))


@router.post("/forms/{form_id}/approve", response_model=FormStatusOut, tags=["Forms"])
def approve_form(form_id: str, actor: Optional[str] = Depends(get_actor), db: Session = Depends(get_db)):
    return FormStatusOut.from_record(lifecycle.approve_form(db, form_id, actor))


@router.post("/forms/{form_id}/reject", response_model=FormStatusOut, tags=["Forms"])
def reject_form(form_id: str, request: RejectFormRequest, db: Session = Depends(get_db)):
    return FormStatusOut.from_record(lifecycle.reject_form(db, form_id, request.reason))


@router.get("/forms/{form_id}/preview", tags=["Preview"], summary="Preview one form as PDF")
def preview_form(
    form_id: str,
    db: Session = Depends(get_db),
    store=Depends(get_blob_store_dependency),
    renderer=Depends(get_renderer_dependency),
):
    path = casefile.preview_form_pdf(db, form_id, renderer=renderer, blob_store=store)
    return FileResponse(path, media_type="application/pdf", filename=f"form-{form_id}-preview.pdf")


# =============================================================================
# Roznama
# =============================================================================

@router.post("/cases/{case_id}/roznama/entries", response_model=RoznamaEntryResult, tags=["Roznama"])
def add_roznama_entry(
    case_id: str,
    request: AddRoznamaEntryRequest,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db),
    store=Depends(get_blob_store_dependency),
    renderer=Depends(get_renderer_dependency),
):
    return roznama.add_roznama_entry(
        db,
        case_id,
        request.entry,
        header=request.header,
        close_case=request.close_case,
        case_file_number=request.case_file_number,
        performed_by=actor,
        renderer=renderer,
        blob_store=store,
    )


@router.get("/cases/{case_id}/roznama/entries", tags=["Roznama"])
def list_roznama_entries(case_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    entries = roznama.get_roznama_entries(db, case_id)
    return {"case_id": case_id, "entries": entries, "total": len(entries)}


# =============================================================================
# Case files
# =============================================================================

@router.post("/cases/{case_id}/casefiles", response_model=CaseFileOut, status_code=201, tags=["Case Files"])
def issue_case_file(
    case_id: str,
    request: IssueCaseFileRequest,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db),
    store=Depends(get_blob_store_dependency),
    renderer=Depends(get_renderer_dependency),
):
    case_file = casefile.issue_case_file(
        db,
        case_id,
        case_file_number=request.case_file_number,
        issued_by=actor,
        renderer=renderer,
        blob_store=store,
    )
    return CaseFileOut.from_record(case_file)


@router.get("/cases/{case_id}/casefiles", response_model=List[CaseFileOut], tags=["Case Files"])
def list_case_files(case_id: str, db: Session = Depends(get_db)):
    return [CaseFileOut.from_record(cf) for cf in casefile.list_case_files(db, case_id)]


@router.get("/casefiles/{case_file_id}/verify", response_model=CaseFileVerification, tags=["Case Files"])
def verify_case_file(case_file_id: str, db: Session = Depends(get_db), store=Depends(get_blob_store_dependency)):
    return CaseFileVerification(
        case_file_id=case_file_id,
        valid=casefile.verify_case_file(db, case_file_id, blob_store=store),
    )


@router.post("/cases/{case_id}/close", tags=["Cases"], summary="Close a case after issuance")
def close_case(
    case_id: str,
    request: CloseCaseRequest,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db),
):
    case = lifecycle.complete_case_closure(db, case_id, actor, request.remark or roznama.CLOSURE_REMARK)
    return {"id": case.id, "status": case.status.value}


@router.get("/cases/{case_id}/preview", tags=["Preview"], summary="Preview the full case file as PDF")
def preview_case(
    case_id: str,
    db: Session = Depends(get_db),
    store=Depends(get_blob_store_dependency),
    renderer=Depends(get_renderer_dependency),
):
    path = casefile.preview_full_case_pdf(db, case_id, renderer=renderer, blob_store=store)
    return FileResponse(path, media_type="application/pdf", filename=f"case-{case_id}-preview.pdf")


# =============================================================================
# Person files
# =============================================================================

@router.post("/persons/{person_id}/files/{kind}", tags=["Persons"], summary="Upload a person file")
async def upload_person_file(
    person_id: str,
    kind: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    store=Depends(get_blob_store_dependency),
):
    data = await file.read()
    path = store_person_file(db, store, person_id, kind, data, file.content_type or "")
    return {"person_id": person_id, "kind": kind, "path": path}


@router.get("/persons/{person_id}/files/{kind}", response_model=PersonFileUrl, tags=["Persons"])
def get_person_file(
    person_id: str,
    kind: str,
    db: Session = Depends(get_db),
    store=Depends(get_blob_store_dependency),
):
    url = get_person_file_url(db, store, person_id, kind, get_settings().signed_url_ttl_seconds)
    return PersonFileUrl(url=url)


app.include_router(router)


@app.get("/files/{path:path}", tags=["Files"], summary="Serve a signed local file")
def download_signed_file(path: str, token: str = Query(""), store=Depends(get_blob_store_dependency)):
    if not isinstance(store, LocalBlobStore):
        raise NotFoundError("File not found")
    return FileResponse(store.open_signed(path, token))


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=settings.service_version,
        storage_backend=settings.storage_backend,
        warnings=settings.validate_storage_config() + settings.validate_renderer_config(),
    )
