"""
Shared route dependencies — store selection and caller context.
"""

import os
from typing import Optional

from fastapi import Header, HTTPException

from gradebook.db import create_store
from gradebook.models import CallerContext, Role
from gradebook.store import GradeStore, InMemoryStore

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./gradebook.db")
STORE_KIND = os.getenv("GRADEBOOK_STORE", "sql").strip().lower()
ECHO_SQL = os.getenv("ECHO_SQL", "false").strip().lower() in {"1", "true", "yes", "on"}
PASS_MARK = float(os.getenv("PASS_MARK", "50"))
MOVING_AVERAGE_WINDOW = int(os.getenv("MOVING_AVERAGE_WINDOW", "3"))
SCHOOL_NAME = os.getenv("SCHOOL_NAME", "My School")

_store: Optional[GradeStore] = None


def get_store() -> GradeStore:
    """Process-wide store, built on first use from GRADEBOOK_STORE / DATABASE_URL."""
    global _store
    if _store is None:
        _store = InMemoryStore() if STORE_KIND == "memory" else create_store(DATABASE_URL, echo=ECHO_SQL)
    return _store


def get_caller(
    school_id: str,
    x_school_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_staff_id: Optional[str] = Header(None),
) -> CallerContext:
    """Caller context from the gateway headers; must belong to the school in the URL."""
    if not x_school_id or not x_user_role:
        raise HTTPException(401, "Missing caller context.")
    if x_school_id != school_id:
        raise HTTPException(401, "Unauthorized")
    try:
        role = Role(x_user_role.strip().upper())
    except ValueError:
        raise HTTPException(401, f"Unknown role: {x_user_role}")
    return CallerContext(school_id=x_school_id, role=role, user_id=x_user_id, staff_id=x_staff_id)
