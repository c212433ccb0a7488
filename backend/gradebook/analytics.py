"""
analytics.py — Student and cohort analytics reports over published grades.
"""

import logging
from typing import Any, Dict, FrozenSet, List, Optional

from gradebook.distribution import aggregate_distributions
from gradebook.errors import AuthorizationError, ValidationError
from gradebook.models import CallerContext, GradeRecord, Role
from gradebook.store import GradeStore
from gradebook.trends import DEFAULT_WINDOW, build_subject_series, compute_predictions

logger = logging.getLogger(__name__)

COHORT_ANALYTICS_ROLES: FrozenSet[Role] = frozenset({
    Role.SCHOOL_ADMIN, Role.SUPER_ADMIN, Role.TEACHER, Role.SECRETARY, Role.ACCOUNTANT,
})


def grade_to_dict(g: GradeRecord) -> Dict[str, Any]:
    return {
        "id": g.id,
        "studentId": g.student_id,
        "subjectId": g.subject_id,
        "subject": {"id": g.subject_id, "name": g.subject_name} if g.subject_id else None,
        "sectionId": g.section_id,
        "termId": g.term_id,
        "academicYearId": g.academic_year_id,
        "examScheduleId": g.exam_schedule_id,
        "assignmentId": g.assignment_id,
        "marksObtained": g.marks_obtained,
        "gradeLetter": g.grade_letter,
        "isPublished": g.is_published,
        "publishedAt": g.published_at.isoformat() if g.published_at else None,
        "createdAt": g.created_at.isoformat() if g.created_at else None,
    }


def compose_report(grades: List[GradeRecord], window: int = DEFAULT_WINDOW) -> Dict[str, Any]:
    """Combine distribution, series and predictions for one student's grades."""
    series = build_subject_series(grades)
    return {
        "grades": [grade_to_dict(g) for g in grades],
        **aggregate_distributions(grades),
        "series": series,
        "predictions": compute_predictions(series, window),
    }


def get_student_analytics(
    store: GradeStore, school_id: str, student_id: str, window: int = DEFAULT_WINDOW
) -> Dict[str, Any]:
    """
    {grades, average, letterDist, subjects, series, predictions} for a student.

    Only published grades are read; unpublished marks never reach this report.
    """
    missing = [name for name, value in (("schoolId", school_id), ("studentId", student_id)) if not value]
    if missing:
        raise ValidationError.missing(*missing)

    grades = store.list_grades(school_id, student_id=student_id, is_published=True)
    logger.debug("Analytics for student %s: %d published grades", student_id, len(grades))
    return compose_report(grades, window)


def cohort_analytics(
    store: GradeStore,
    caller: CallerContext,
    school_id: str,
    subject_id: Optional[str] = None,
    section_id: Optional[str] = None,
    term_id: Optional[str] = None,
    academic_year_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    School-wide view of published grades, narrowed by any of the filters.

    Returns {"analytics": {average, letterDist, subjects, series}}. Staff
    roles only; students and parents use the per-student report.
    """
    if caller.school_id != school_id or caller.role not in COHORT_ANALYTICS_ROLES:
        raise AuthorizationError("Not allowed to view cohort analytics.")

    grades = store.list_grades(
        school_id,
        subject_id=subject_id,
        section_id=section_id,
        term_id=term_id,
        academic_year_id=academic_year_id,
        is_published=True,
    )
    logger.debug("Cohort analytics for school %s: %d published grades", school_id, len(grades))
    return {"analytics": {**aggregate_distributions(grades), "series": build_subject_series(grades)}}
