"""
Ranking routes — recompute, overview, Excel export and ranking configuration.
"""

import re
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from gradebook.errors import AuthorizationError, NotFoundError
from gradebook.exports import export_rankings_workbook
from gradebook.models import CallerContext, Cohort
from gradebook.policy import ADMIN_ROLES
from gradebook.publishing import (
    get_ranking_config,
    rankings_overview,
    set_ranking_config,
    student_rankings,
)
from gradebook.ranking import recompute_ranking
from gradebook.store import GradeStore
from routes.deps import PASS_MARK, SCHOOL_NAME, get_caller, get_store

router = APIRouter()

REPORTS_DIR = Path(__file__).resolve().parent.parent / "exports"


class RecomputeIn(BaseModel):
    sectionId: str
    termId: str
    academicYearId: str
    publish: bool = False


class RankingConfigIn(BaseModel):
    academicYearId: str
    classId: str
    overallRankingEnabled: bool


def _safe_token(value: str, fallback: str = "item") -> str:
    """Filesystem-safe token for filenames."""
    token = re.sub(r"[^A-Za-z0-9._-]+", "_", str(value)).strip("._-")
    return token or fallback


def _unlink(path: str):
    Path(path).unlink(missing_ok=True)


@router.post("/rankings/recompute")
def recompute(
    school_id: str,
    body: RecomputeIn,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Recompute one cohort's ranking, optionally publishing the snapshots."""
    if caller.role not in ADMIN_ROLES:
        raise AuthorizationError("Only school administrators may recompute rankings.")
    cohort = Cohort(school_id, body.sectionId, body.termId, body.academicYearId)
    return recompute_ranking(store, cohort, publish=body.publish)


@router.get("/rankings/overview")
def overview(
    school_id: str,
    sectionId: Optional[str] = None,
    termId: Optional[str] = None,
    academicYearId: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Snapshot counts per cohort, newest computation first."""
    return {"items": rankings_overview(store, school_id, sectionId, termId, academicYearId)}


@router.get("/rankings/export")
def export(
    school_id: str,
    sectionId: str,
    termId: str,
    academicYearId: str,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Download one cohort's snapshots as an Excel workbook."""
    if caller.role not in ADMIN_ROLES:
        raise AuthorizationError("Only school administrators may export rankings.")
    snapshots = store.list_snapshots(
        school_id, section_id=sectionId, term_id=termId, academic_year_id=academicYearId
    )
    if not snapshots:
        raise NotFoundError("No ranking snapshots for this cohort.")

    REPORTS_DIR.mkdir(parents=True, exist_ok=True)
    filename = f"rankings_{_safe_token(sectionId)}_{_safe_token(termId)}.xlsx"
    output_path = REPORTS_DIR / f"{uuid.uuid4().hex[:8]}_{filename}"
    export_rankings_workbook(str(output_path), snapshots, school_name=SCHOOL_NAME, pass_mark=PASS_MARK)
    return FileResponse(
        str(output_path),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        filename=filename,
        background=BackgroundTask(_unlink, str(output_path)),
    )


@router.get("/ranking-config")
def read_ranking_config(
    school_id: str,
    academicYearId: str,
    classId: str,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    return get_ranking_config(store, school_id, academicYearId, classId)


@router.put("/ranking-config")
def update_ranking_config(
    school_id: str,
    body: RankingConfigIn,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Enable or disable overall ranking publication for a class and year."""
    return set_ranking_config(
        store, caller, school_id, body.academicYearId, body.classId, body.overallRankingEnabled
    )


@router.get("/students/{student_id}/rankings")
def rankings_for_student(
    school_id: str,
    student_id: str,
    sectionId: Optional[str] = None,
    termId: Optional[str] = None,
    academicYearId: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """A student's published positions with the size of each cohort."""
    if not student_id.strip():
        raise HTTPException(400, "studentId required")
    return {"items": student_rankings(store, school_id, student_id, sectionId, termId, academicYearId)}
