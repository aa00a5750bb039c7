"""
Page Data Resolution Tests
==========================

Tests for:
- Legacy content key aliases
- Per-person fan-out and role filtering
- Signature URL resolution and degradation
- Roznama page header and entries
"""

import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from chapter_cases.config import Settings
from chapter_cases.db.models import (
    Case, CaseLanguage, CaseStatus, Form, FormStatus, FormType, Person, PersonRole, PoliceStation,
)
from chapter_cases.errors import NotFoundError, ValidationError
from chapter_cases.page_data import (
    FileUrlResolver,
    build_resolution_context,
    format_display_date,
    read_form_fields,
    resolve_form_pages,
    resolve_roznama_page,
)
from chapter_cases.storage import LocalBlobStore, StorageError


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB and yield a session."""
    from chapter_cases.db.session import reset_engine, init_db, SessionLocal

    old_db_url = os.environ.get("DATABASE_URL")
    os.environ["DATABASE_URL"] = f"sqlite:///{tmp_path / 'page_data.db'}"
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


@pytest.fixture
def settings(tmp_path):
    return Settings(storage_root=str(tmp_path / "blobs"), signing_secret="test-secret")


@pytest.fixture
def store(settings):
    return LocalBlobStore(settings.storage_root, "http://files.local", settings.signing_secret)


def _seed(db, with_station=True, language=CaseLanguage.EN):
    station = None
    if with_station:
        station = PoliceStation(name="Kothrud", code="KTH")
        db.add(station)
        db.flush()

    case = Case(
        branch_case_number="BR/12/2024",
        police_station_case_number="PS-77",
        sections=["126", "129"],
        police_station_id=station.id if station else None,
        status=CaseStatus.HEARING,
        language=language,
    )
    db.add(case)
    db.flush()

    people = {
        "applicant": Person(case_id=case.id, role=PersonRole.APPLICANT, name="Inspector Rao"),
        "d1": Person(case_id=case.id, role=PersonRole.DEFENDANT, name="Amit Patil", age=31,
                     address="Pune", files={"signature": "persons/signatures/d1.png"}),
        "d2": Person(case_id=case.id, role=PersonRole.DEFENDANT, name="Ravi Shinde", age=28,
                     address="Pune", files={"signature": "https://cdn.example.org/ravi.png"}),
        "w1": Person(case_id=case.id, role=PersonRole.WITNESS, name="Sunita Jadhav", address="Pune"),
    }
    db.add_all(people.values())
    db.commit()
    return case, people


def _form(db, case, form_type, content, status=FormStatus.APPROVED):
    form = Form(case_id=case.id, form_type=form_type, status=status, content=content)
    db.add(form)
    db.commit()
    return form


# =============================================================================
# Content normalization
# =============================================================================

class TestReadFormFields:

    def test_specific_alias_wins_over_generic(self):
        form = Form(form_type=FormType.NOTICE_130, content={
            "mr": {"accused_person_ids": ["a1"], "accusedPersonIds": ["a2"], "personIds": ["a3"]},
        })
        assert read_form_fields(form).accused_ids == ["a1"]

    def test_generic_alias_used_last(self):
        form = Form(form_type=FormType.NOTICE_130, content={"personIds": ["p1", "p2", "p1"]})
        fields = read_form_fields(form)
        assert fields.accused_ids == ["p1", "p2"]

    def test_language_nesting_follows_case_language(self):
        form = Form(form_type=FormType.STATEMENT_WITNESS, content={
            "mr": {"statement": "marathi"},
            "en": {"statement": "english"},
        })
        assert read_form_fields(form, CaseLanguage.MR).statement == "marathi"
        assert read_form_fields(form, CaseLanguage.EN).statement == "english"

    def test_nested_fields(self):
        form = Form(form_type=FormType.INTERIM_BOND_125_126, content={
            "hearing": {"date": "2024-02-01"},
            "bond": {"amount": 5000},
            "answers": {"q1": "yes", "q2": "no"},
        })
        fields = read_form_fields(form)
        assert fields.hearing_date == "2024-02-01"
        assert fields.bond_amount == 5000
        assert (fields.answer1, fields.answer2) == ("yes", "no")


class TestFormatDisplayDate:

    def test_marathi_digits(self):
        assert format_display_date("2024-01-10", CaseLanguage.MR) == "१०/१/२०२४"

    def test_english(self):
        assert format_display_date("2024-01-10", CaseLanguage.EN) == "10/1/2024"

    def test_missing_date_is_dash(self):
        assert format_display_date(None, CaseLanguage.EN) == "-"


# =============================================================================
# Signature URLs
# =============================================================================

class TestFileUrlResolver:

    def test_absolute_urls_pass_through(self):
        urls = FileUrlResolver(MagicMock())
        assert urls.resolve("https://cdn.example.org/x.png") == "https://cdn.example.org/x.png"
        assert urls.resolve("data:image/png;base64,AAAA") == "data:image/png;base64,AAAA"
        urls.store.signed_url.assert_not_called()

    def test_stored_path_is_signed(self, store):
        store.put("persons/signatures/d1.png", b"png", "image/png")
        url = FileUrlResolver(store, 300).resolve("persons/signatures/d1.png")
        assert url.startswith("http://files.local/persons/signatures/d1.png?token=")

    def test_storage_failure_degrades_to_none(self):
        failing = MagicMock()
        failing.signed_url.side_effect = StorageError("bucket unreachable")
        assert FileUrlResolver(failing).resolve("persons/signatures/d1.png") is None

    def test_other_errors_propagate(self):
        broken = MagicMock()
        broken.signed_url.side_effect = RuntimeError("bug")
        with pytest.raises(RuntimeError):
            FileUrlResolver(broken).resolve("persons/signatures/d1.png")


# =============================================================================
# Form resolvers
# =============================================================================

class TestFormResolvers:

    def test_notice_fans_out_per_defendant(self, sqlalchemy_db, store, settings):
        case, people = _seed(sqlalchemy_db)
        store.put("persons/signatures/d1.png", b"png", "image/png")
        form = _form(sqlalchemy_db, case, FormType.NOTICE_130, {
            "accusedPersonIds": [people["d2"].id, people["w1"].id, people["d1"].id],
            "hearing": {"date": "2024-02-01"},
        })

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        pages = resolve_form_pages(ctx, form)

        assert [p["accused"]["name"] for p in pages] == ["Ravi Shinde", "Amit Patil"]
        assert pages[0]["accused"]["signature"] == "https://cdn.example.org/ravi.png"
        assert "token=" in pages[1]["accused"]["signature"]
        assert pages[0]["policeStationName"] == "Kothrud"
        assert pages[0]["sections"] == "126, 129"
        assert pages[0]["hearingDate"] == "2024-02-01"

    def test_missing_signature_blob_does_not_block(self, sqlalchemy_db, store, settings):
        case, people = _seed(sqlalchemy_db)
        form = _form(sqlalchemy_db, case, FormType.NOTICE_130, {"personIds": [people["d1"].id]})

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        pages = resolve_form_pages(ctx, form)
        assert len(pages) == 1
        assert pages[0]["accused"]["signature"] is None

    def test_persons_of_other_cases_are_ignored(self, sqlalchemy_db, store, settings):
        case, _ = _seed(sqlalchemy_db)
        _, other_people = _seed(sqlalchemy_db)
        form = _form(sqlalchemy_db, case, FormType.INTERIM_BOND_125_126, {"personIds": [other_people["d1"].id]})

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        with pytest.raises(NotFoundError, match="No valid defendants found for bond"):
            resolve_form_pages(ctx, form)

    def test_empty_id_list_is_validation_error(self, sqlalchemy_db, store, settings):
        case, _ = _seed(sqlalchemy_db)
        form = _form(sqlalchemy_db, case, FormType.STATEMENT_ACCUSED, {"answers": {"q1": "x"}})

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        with pytest.raises(ValidationError):
            resolve_form_pages(ctx, form)

    def test_interim_bond_links_surety(self, sqlalchemy_db, store, settings):
        case, people = _seed(sqlalchemy_db)
        form = _form(sqlalchemy_db, case, FormType.INTERIM_BOND_125_126, {
            "accusedPersonIds": [people["d1"].id, people["d2"].id],
            "sureties": [{"personId": people["w1"].id, "accusedId": people["d1"].id}],
            "bond": {"amount": 10000},
        })

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        pages = resolve_form_pages(ctx, form)

        assert pages[0]["surety"]["name"] == "Sunita Jadhav"
        assert pages[1]["surety"] is None
        assert pages[0]["amount"] == 10000

    def test_surety_bond_is_role_agnostic(self, sqlalchemy_db, store, settings):
        case, people = _seed(sqlalchemy_db)
        form = _form(sqlalchemy_db, case, FormType.SURETY_BOND_126, {
            "suretyPersonIds": [people["w1"].id],
            "amount": 2000,
            "accusedName": "Amit Patil",
        })

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        pages = resolve_form_pages(ctx, form)
        assert [p["surety"]["name"] for p in pages] == ["Sunita Jadhav"]
        assert pages[0]["accusedName"] == "Amit Patil"

    def test_final_order_is_single_page(self, sqlalchemy_db, store, settings):
        case, _ = _seed(sqlalchemy_db)
        form = _form(sqlalchemy_db, case, FormType.FINAL_ORDER, {
            "orderDate": "2024-03-05", "orderText": "Bond accepted",
        })

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        pages = resolve_form_pages(ctx, form)
        assert len(pages) == 1
        assert pages[0]["orderDate"] == "5/3/2024"
        assert pages[0]["orderText"] == "Bond accepted"

    def test_unknown_station_marker(self, sqlalchemy_db, store, settings):
        case, people = _seed(sqlalchemy_db, with_station=False)
        form = _form(sqlalchemy_db, case, FormType.NOTICE_130, {"personIds": [people["d1"].id]})

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        assert resolve_form_pages(ctx, form)[0]["policeStationName"] == "Unknown"


# =============================================================================
# Roznama page
# =============================================================================

class TestRoznamaPage:

    def _roznama(self, db, case, entries, status=FormStatus.APPROVED):
        return _form(db, case, FormType.CASE_ROZNAMA, {
            "header": {"branch_chapter_case_no": "BR/12/2024", "police_chapter_case_no": "PS-77"},
            "entries": entries,
        }, status=status)

    def test_entries_list_present_defendants(self, sqlalchemy_db, store, settings):
        case, people = _seed(sqlalchemy_db)
        self._roznama(sqlalchemy_db, case, [
            {"date": "2024-01-10", "proceedings": "Notice served",
             "next_date": "2024-01-20", "present_accused_person_ids": [people["d2"].id, people["w1"].id]},
            {"date": "2024-01-20", "proceedings": "Bond executed"},
        ], status=FormStatus.DRAFT)

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        page = resolve_roznama_page(ctx)

        assert page["header"]["policeStationName"] == "Kothrud"
        assert page["header"]["applicant"] == "Inspector Rao"
        assert sorted(page["header"]["defendants"].split(", ")) == ["Amit Patil", "Ravi Shinde"]
        assert page["entries"][0]["date"] == "10/1/2024"
        assert page["entries"][0]["nextDate"] == "20/1/2024"
        assert page["entries"][0]["presentAccused"] == [
            {"name": "Ravi Shinde", "signature": "https://cdn.example.org/ravi.png"},
        ]
        assert page["entries"][1]["nextDate"] == "-"
        assert page["entries"][1]["presentAccused"] == []

    def test_marathi_case_uses_devanagari_dates(self, sqlalchemy_db, store, settings):
        case, _ = _seed(sqlalchemy_db, language=CaseLanguage.MR)
        self._roznama(sqlalchemy_db, case, [{"date": "2024-01-10", "proceedings": "X"}])

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        assert resolve_roznama_page(ctx)["entries"][0]["date"] == "१०/१/२०२४"

    def test_station_required(self, sqlalchemy_db, store, settings):
        case, _ = _seed(sqlalchemy_db, with_station=False)
        self._roznama(sqlalchemy_db, case, [])

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        with pytest.raises(NotFoundError, match="Police station"):
            resolve_roznama_page(ctx)

    def test_roznama_form_required(self, sqlalchemy_db, store, settings):
        case, _ = _seed(sqlalchemy_db)

        ctx = build_resolution_context(sqlalchemy_db, case, store, settings)
        with pytest.raises(NotFoundError):
            resolve_roznama_page(ctx)
