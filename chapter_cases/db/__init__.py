"""
Database Package - PostgreSQL with SQLAlchemy
==============================================

Persistence layer for chapter cases, forms, issued case files and events.
"""

from .models import (
    Base,
    PoliceStation, Case, Person, Form, CaseFile, CaseEvent,
    CaseStatus, CaseLanguage, PersonRole, FormType, FormStatus, CaseEventType,
)
from .session import get_db, get_db_session, init_db, get_engine, reset_engine

__all__ = [
    # Base
    "Base",
    # Entities
    "PoliceStation", "Case", "Person", "Form", "CaseFile", "CaseEvent",
    # Enums
    "CaseStatus", "CaseLanguage", "PersonRole", "FormType", "FormStatus", "CaseEventType",
    # Session
    "get_db", "get_db_session", "init_db", "get_engine", "reset_engine",
]
