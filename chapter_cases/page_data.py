"""
Page Data Resolution
====================

Turn a Form (plus its Case) into self-contained page-data records ready for
rendering. Person-scoped forms fan out to one page per matched person;
case-scoped forms produce exactly one page.

Form content has accumulated several shapes over time (payload nested under
a language key or flat, camelCase or snake_case ids, generic `personIds`).
`read_form_fields` is the only place that knows about these aliases; the
resolvers below work on the normalized FormFields.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.models import (
    Case, CaseLanguage, Form, FormStatus, FormType, Person, PersonRole, PoliceStation,
)
from .errors import NotFoundError, ValidationError
from .storage import StorageError

logger = logging.getLogger(__name__)

DASH = "—"
NEXT_DATE_PLACEHOLDER = "-"

CONTENT_LANGUAGE_KEYS = ("mr", "en")

# Ordered lookup keys per semantic field: most specific first, generic last.
ACCUSED_ID_KEYS = ("accused_person_ids", "accusedPersonIds", "defendant_person_ids", "defendantPersonIds", "personIds")
WITNESS_ID_KEYS = ("witness_person_ids", "witnessPersonIds", "personIds")
SURETY_ID_KEYS = ("surety_person_ids", "suretyPersonIds", "personIds")
SURETY_LINK_KEYS = ("sureties",)
HEARING_DATE_KEYS = ("hearing.date", "hearing_date", "hearingDate")
HEARING_TIME_KEYS = ("hearing.time", "hearing_time", "hearingTime")
HEARING_PLACE_KEYS = ("hearing.place", "hearing_place", "hearingPlace")
BOND_AMOUNT_KEYS = ("bond.amount", "bond_amount", "bondAmount", "amount")
REQUESTED_DAYS_KEYS = ("requested_days", "requestedDays")
ANSWER1_KEYS = ("answers.q1", "answer1")
ANSWER2_KEYS = ("answers.q2", "answer2")
ACCUSED_NAME_KEYS = ("accused_name", "accusedName")
STATEMENT_KEYS = ("statement",)
FACTS_KEYS = ("facts",)
ORDER_DATE_KEYS = ("order_date", "orderDate", "hearingDate")
ORDER_TEXT_KEYS = ("order_text", "orderText")
OUTCOME_KEYS = ("outcome_type", "outcomeType")

ENTRY_NEXT_DATE_KEYS = ("next_date", "nextDate")
ENTRY_PRESENT_KEYS = ("present_accused_person_ids", "presentAccusedPersonIds")

URL_PASSTHROUGH_PREFIXES = ("http://", "https://", "data:")

DEVANAGARI_DIGITS = str.maketrans("0123456789", "०१२३४५६७८९")

_MISSING = object()


# =============================================================================
# CONTENT NORMALIZATION
# =============================================================================

def _lookup(body: Dict[str, Any], key: str) -> Any:
    value: Any = body
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _first(body: Dict[str, Any], keys: Sequence[str], default: Any = None) -> Any:
    for key in keys:
        value = _lookup(body, key)
        if value is not _MISSING and value not in (None, "", []):
            return value
    return default


def _id_list(body: Dict[str, Any], keys: Sequence[str]) -> List[str]:
    value = _first(body, keys, default=[])
    if isinstance(value, str):
        value = [value]
    seen = set()
    ids = []
    for item in value:
        item = str(item)
        if item and item not in seen:
            seen.add(item)
            ids.append(item)
    return ids


def content_body(content: Optional[Dict[str, Any]], language: Optional[CaseLanguage] = None) -> Dict[str, Any]:
    """Unwrap a payload stored under a language key ("mr"/"en"), else use it flat."""
    content = content or {}
    keys = list(CONTENT_LANGUAGE_KEYS)
    if language == CaseLanguage.EN:
        keys.reverse()
    for key in keys:
        if isinstance(content.get(key), dict):
            return content[key]
    return content


@dataclass
class FormFields:
    """Normalized view of a form's content"""
    accused_ids: List[str] = field(default_factory=list)
    witness_ids: List[str] = field(default_factory=list)
    surety_ids: List[str] = field(default_factory=list)
    surety_links: List[Dict[str, Any]] = field(default_factory=list)
    hearing_date: Optional[str] = None
    hearing_time: Optional[str] = None
    hearing_place: Optional[str] = None
    facts: Optional[str] = None
    bond_amount: Optional[Any] = None
    requested_days: Optional[Any] = None
    answer1: Optional[str] = None
    answer2: Optional[str] = None
    accused_name: Optional[str] = None
    statement: Optional[str] = None
    order_date: Optional[str] = None
    order_text: Optional[str] = None
    outcome: Optional[str] = None


def read_form_fields(form: Form, language: Optional[CaseLanguage] = None) -> FormFields:
    body = content_body(form.content, language)
    return FormFields(
        accused_ids=_id_list(body, ACCUSED_ID_KEYS),
        witness_ids=_id_list(body, WITNESS_ID_KEYS),
        surety_ids=_id_list(body, SURETY_ID_KEYS),
        surety_links=[s for s in _first(body, SURETY_LINK_KEYS, default=[]) if isinstance(s, dict)],
        hearing_date=_first(body, HEARING_DATE_KEYS),
        hearing_time=_first(body, HEARING_TIME_KEYS),
        hearing_place=_first(body, HEARING_PLACE_KEYS),
        facts=_first(body, FACTS_KEYS),
        bond_amount=_first(body, BOND_AMOUNT_KEYS),
        requested_days=_first(body, REQUESTED_DAYS_KEYS),
        answer1=_first(body, ANSWER1_KEYS),
        answer2=_first(body, ANSWER2_KEYS),
        accused_name=_first(body, ACCUSED_NAME_KEYS),
        statement=_first(body, STATEMENT_KEYS),
        order_date=_first(body, ORDER_DATE_KEYS),
        order_text=_first(body, ORDER_TEXT_KEYS),
        outcome=_first(body, OUTCOME_KEYS),
    )


# =============================================================================
# FILE URLS / DATES
# =============================================================================

class FileUrlResolver:
    """
    Resolve stored signature/photo paths into presentable URLs.

    resolve() returns None when no URL can be produced: a missing path, or a
    blob store failure. A missing signature never blocks page generation.
    """

    def __init__(self, store=None, ttl_seconds: int = 300):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, Optional[str]] = {}

    def resolve(self, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        if path.startswith(URL_PASSTHROUGH_PREFIXES):
            return path
        if path in self._cache:
            return self._cache[path]
        if self.store is None:
            return None

        try:
            url = self.store.signed_url(path, self.ttl_seconds)
        except StorageError as exc:
            logger.warning("Signed URL unavailable for %s: %s", path, exc)
            url = None
        self._cache[path] = url
        return url


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def format_display_date(value: Any, language: Optional[CaseLanguage] = CaseLanguage.MR) -> str:
    """Format as d/m/yyyy; Marathi cases use Devanagari digits."""
    if value in (None, ""):
        return NEXT_DATE_PLACEHOLDER
    parsed = _parse_date(value)
    if parsed is None:
        return str(value)
    text = f"{parsed.day}/{parsed.month}/{parsed.year}"
    if language in (CaseLanguage.MR, CaseLanguage.BOTH):
        text = text.translate(DEVANAGARI_DIGITS)
    return text


# =============================================================================
# RESOLUTION CONTEXT
# =============================================================================

@dataclass
class ResolutionContext:
    db: Session
    case: Case
    station_name: str
    urls: FileUrlResolver

    @property
    def language(self) -> CaseLanguage:
        return self.case.language or CaseLanguage.MR

    @property
    def sections(self) -> str:
        return ", ".join(self.case.sections or [])


def build_resolution_context(db: Session, case: Case, store=None, settings: Optional[Settings] = None) -> ResolutionContext:
    settings = settings or get_settings()
    station = None
    if case.police_station_id:
        station = db.query(PoliceStation).filter(PoliceStation.id == case.police_station_id).first()
    return ResolutionContext(
        db=db,
        case=case,
        station_name=station.name if station else settings.unknown_station_label,
        urls=FileUrlResolver(store, settings.signed_url_ttl_seconds),
    )


def _fetch_persons(ctx: ResolutionContext, ids: List[str], role: Optional[PersonRole]) -> List[Person]:
    """Persons of this case with the given ids, in id order."""
    if not ids:
        return []
    query = ctx.db.query(Person).filter(Person.id.in_(ids), Person.case_id == ctx.case.id)
    if role is not None:
        query = query.filter(Person.role == role)
    by_id = {p.id: p for p in query.all()}
    return [by_id[i] for i in ids if i in by_id]


def _require_persons(ctx: ResolutionContext, form: Form, ids: List[str], role: Optional[PersonRole],
                     label: str, not_found: str) -> List[Person]:
    if not ids:
        raise ValidationError(f"{label} are required for {form.form_type.value}")
    persons = _fetch_persons(ctx, ids, role)
    if not persons:
        raise NotFoundError(not_found)
    return persons


def _person_block(ctx: ResolutionContext, person: Person, *fields: str, photo: bool = False) -> Dict[str, Any]:
    block = {"name": person.name}
    for name in fields:
        value = getattr(person, name)
        block[name] = DASH if value in (None, "") and name == "occupation" else value
    files = person.files or {}
    block["signature"] = ctx.urls.resolve(files.get("signature"))
    if photo:
        block["photo"] = ctx.urls.resolve(files.get("photo"))
    return block


def _or_dash(value: Any) -> Any:
    return DASH if value in (None, "") else value


# =============================================================================
# PER-FORM RESOLVERS
# =============================================================================

def resolve_notice_130(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    fields = read_form_fields(form, ctx.language)
    persons = _require_persons(ctx, form, fields.accused_ids, PersonRole.DEFENDANT,
                               "accused person ids", "No valid defendants found")
    return [
        {
            "branchChapterCaseNo": ctx.case.branch_case_number,
            "policeChapterCaseNo": ctx.case.police_station_case_number,
            "policeStationName": ctx.station_name,
            "sections": ctx.sections,
            "facts": fields.facts,
            "hearingDate": _or_dash(fields.hearing_date),
            "hearingTime": fields.hearing_time,
            "hearingPlace": fields.hearing_place,
            "accused": _person_block(ctx, p, "address"),
        }
        for p in persons
    ]


def resolve_interim_bond_125_126(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    fields = read_form_fields(form, ctx.language)
    accused = _require_persons(ctx, form, fields.accused_ids, PersonRole.DEFENDANT,
                               "accused person ids", "No valid defendants found for bond")

    surety_for = {
        str(link.get("accusedId") or link.get("accused_id")): str(link.get("personId") or link.get("person_id"))
        for link in fields.surety_links
        if (link.get("personId") or link.get("person_id"))
    }
    sureties = {p.id: p for p in _fetch_persons(ctx, list(surety_for.values()), None)}

    pages = []
    for person in accused:
        surety = sureties.get(surety_for.get(person.id))
        pages.append({
            "policeStationName": ctx.station_name,
            "caseNumber": ctx.case.branch_case_number,
            "accused": _person_block(ctx, person, "address", "age"),
            "amount": _or_dash(fields.bond_amount),
            "surety": _person_block(ctx, surety, "address") if surety else None,
        })
    return pages


def resolve_accused_bond_time_request(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    fields = read_form_fields(form, ctx.language)
    persons = _require_persons(ctx, form, fields.accused_ids, PersonRole.DEFENDANT,
                               "accused person ids", "No valid accused found for bond time request")
    return [
        {
            "policeStationName": ctx.station_name,
            "caseNumber": ctx.case.branch_case_number,
            "accused": _person_block(ctx, p, "address"),
            "requestedDays": _or_dash(fields.requested_days),
        }
        for p in persons
    ]


def resolve_statement_accused(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    fields = read_form_fields(form, ctx.language)
    persons = _require_persons(ctx, form, fields.accused_ids, PersonRole.DEFENDANT,
                               "accused person ids", "No valid defendants found for statement")
    return [
        {
            "policeStationName": ctx.station_name,
            "accused": _person_block(ctx, p, "age", "address", "occupation", photo=True),
            "answer1": _or_dash(fields.answer1),
            "answer2": _or_dash(fields.answer2),
        }
        for p in persons
    ]


def resolve_surety_bond_126(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    fields = read_form_fields(form, ctx.language)
    # Role-agnostic: a surety may be any person attached to the case
    persons = _require_persons(ctx, form, fields.surety_ids, None,
                               "surety person ids", "No valid sureties found for surety bond")
    return [
        {
            "policeStationName": ctx.station_name,
            "caseNumber": ctx.case.branch_case_number,
            "surety": _person_block(ctx, p, "address"),
            "amount": _or_dash(fields.bond_amount),
            "accusedName": _or_dash(fields.accused_name),
        }
        for p in persons
    ]


def resolve_statement_witness(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    fields = read_form_fields(form, ctx.language)
    persons = _require_persons(ctx, form, fields.witness_ids, None,
                               "witness person ids", "No valid witnesses found for statement")
    return [
        {
            "policeStationName": ctx.station_name,
            "witness": _person_block(ctx, p, "age", "address", "occupation", photo=True),
            "statement": _or_dash(fields.statement),
        }
        for p in persons
    ]


def resolve_final_order(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    fields = read_form_fields(form, ctx.language)
    order_date = fields.order_date or form.approved_at or form.created_at or datetime.utcnow()
    return [{
        "policeStationName": ctx.station_name,
        "caseNumber": ctx.case.branch_case_number,
        "sections": ctx.sections,
        "orderDate": format_display_date(order_date, ctx.language),
        "outcome": fields.outcome,
        "orderText": _or_dash(fields.order_text),
    }]


# =============================================================================
# ROZNAMA
# =============================================================================

def find_roznama_form(db: Session, case_id: str, statuses: Optional[Sequence[FormStatus]] = None) -> Optional[Form]:
    query = db.query(Form).filter(Form.case_id == case_id, Form.form_type == FormType.CASE_ROZNAMA)
    if statuses:
        query = query.filter(Form.status.in_(list(statuses)))
    return query.first()


def resolve_roznama_page(ctx: ResolutionContext, form: Optional[Form] = None) -> Dict[str, Any]:
    """
    Build the proceedings-log page for a case.

    Stricter than the form resolvers: the police station must exist because
    the Roznama header is the case's identifying block.
    """
    case = ctx.case
    station = None
    if case.police_station_id:
        station = ctx.db.query(PoliceStation).filter(PoliceStation.id == case.police_station_id).first()
    if not station:
        raise NotFoundError("Police station not found")

    form = form or find_roznama_form(ctx.db, case.id, (FormStatus.DRAFT, FormStatus.APPROVED))
    if not form:
        raise NotFoundError("CASE_ROZNAMA form not found")

    persons = ctx.db.query(Person).filter(Person.case_id == case.id).order_by(Person.created_at.asc()).all()
    applicant = next((p for p in persons if p.role == PersonRole.APPLICANT), None)
    defendants = [p for p in persons if p.role == PersonRole.DEFENDANT]

    body = content_body(form.content, ctx.language)
    stored_header = body.get("header") or {}

    entries = []
    for entry in body.get("entries") or []:
        present_ids = set(_id_list(entry, ENTRY_PRESENT_KEYS))
        entries.append({
            "date": format_display_date(entry.get("date"), ctx.language),
            "proceedings": entry.get("proceedings", ""),
            "nextDate": format_display_date(_first(entry, ENTRY_NEXT_DATE_KEYS), ctx.language),
            "presentAccused": [
                {"name": d.name, "signature": ctx.urls.resolve((d.files or {}).get("signature"))}
                for d in defendants
                if d.id in present_ids
            ],
        })

    return {
        "header": {
            "branchChapterCaseNo": case.branch_case_number or stored_header.get("branch_chapter_case_no"),
            "policeChapterCaseNo": case.police_station_case_number or stored_header.get("police_chapter_case_no"),
            "policeStationName": station.name,
            "sections": ctx.sections or ", ".join(stored_header.get("sections") or []),
            "applicant": applicant.name if applicant else (stored_header.get("applicant") or DASH),
            "defendants": ", ".join(d.name for d in defendants) or stored_header.get("defendants") or DASH,
        },
        "entries": entries,
    }


PageResolver = Callable[[ResolutionContext, Form], List[Dict[str, Any]]]

PAGE_RESOLVERS: Dict[FormType, PageResolver] = {
    FormType.NOTICE_130: resolve_notice_130,
    FormType.INTERIM_BOND_125_126: resolve_interim_bond_125_126,
    FormType.ACCUSED_BOND_TIME_REQUEST: resolve_accused_bond_time_request,
    FormType.STATEMENT_ACCUSED: resolve_statement_accused,
    FormType.SURETY_BOND_126: resolve_surety_bond_126,
    FormType.STATEMENT_WITNESS: resolve_statement_witness,
    FormType.FINAL_ORDER: resolve_final_order,
}


def resolve_form_pages(ctx: ResolutionContext, form: Form) -> List[Dict[str, Any]]:
    """Page data for any form type, the Roznama included."""
    if form.form_type == FormType.CASE_ROZNAMA:
        return [resolve_roznama_page(ctx, form)]
    resolver = PAGE_RESOLVERS.get(form.form_type)
    if resolver is None:
        raise ValidationError(f"No page layout for form type {form.form_type.value}")
    return resolver(ctx, form)
