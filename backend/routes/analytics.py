"""
Analytics routes — student and cohort grade analytics, pass thresholds.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from gradebook.analytics import cohort_analytics, get_student_analytics
from gradebook.letters import scale_thresholds
from gradebook.models import CallerContext
from gradebook.store import GradeStore
from gradebook.thresholds import Scope, resolve_grading_scale, resolve_pass_threshold
from routes.deps import MOVING_AVERAGE_WINDOW, PASS_MARK, get_caller, get_store

router = APIRouter()


@router.get("/students/{student_id}/grades-analytics")
def student_grades_analytics(
    school_id: str,
    student_id: str,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Published grades with averages, letter distribution, trend series and predictions."""
    return get_student_analytics(store, school_id, student_id, window=MOVING_AVERAGE_WINDOW)


@router.get("/grades/analytics")
def grades_analytics(
    school_id: str,
    subjectId: Optional[str] = None,
    sectionId: Optional[str] = None,
    termId: Optional[str] = None,
    academicYearId: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Average, letter distribution and subject series over published grades."""
    return cohort_analytics(store, caller, school_id, subjectId, sectionId, termId, academicYearId)


@router.get("/pass-threshold")
def pass_threshold(
    school_id: str,
    academicYearId: str,
    classId: Optional[str] = None,
    subjectId: Optional[str] = None,
    schoolLevelId: Optional[str] = None,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Effective pass mark for a scope, plus the scale legend it came from."""
    scope = Scope(
        school_id=school_id,
        academic_year_id=academicYearId,
        class_id=classId,
        subject_id=subjectId,
        school_level_id=schoolLevelId,
    )
    threshold = resolve_pass_threshold(store, scope, default=PASS_MARK)
    scale = resolve_grading_scale(store, scope)
    return {
        "passThreshold": threshold,
        "scale": scale_thresholds(scale.bands if scale else None),
        "scaleName": scale.name if scale else None,
    }
