"""
publishing.py — Grade publishing, ranking configuration and snapshot views.
"""

import logging
from dataclasses import asdict, replace
from typing import Any, Dict, List, Optional

from gradebook.errors import AuthorizationError, NotFoundError, ValidationError
from gradebook.models import CallerContext, Cohort, WeightConfig, timestamp_of
from gradebook.policy import ADMIN_ROLES
from gradebook.ranking import Clock, recompute_many, snapshot_to_dict, utc_now
from gradebook.store import GradeStore

logger = logging.getLogger(__name__)


def _require_admin(caller: CallerContext, school_id: str):
    if caller.school_id != school_id or caller.role not in ADMIN_ROLES:
        raise AuthorizationError("Only school administrators may do this.")


# ── Ranking configuration ───────────────────────────────────────────

def find_class_config(
    store: GradeStore, school_id: str, academic_year_id: str, class_id: str
) -> Optional[WeightConfig]:
    """The class-level config (no level, no subject) for a year."""
    for config in store.list_weight_configs(school_id, academic_year_id):
        if config.class_id == class_id and config.school_level_id is None and config.subject_id is None:
            return config
    return None


def get_ranking_config(store: GradeStore, school_id: str, academic_year_id: str, class_id: str) -> Dict[str, Any]:
    if not academic_year_id or not class_id:
        raise ValidationError.missing(*[n for n, v in (("academicYearId", academic_year_id), ("classId", class_id)) if not v])
    config = find_class_config(store, school_id, academic_year_id, class_id)
    return {
        "config": asdict(config) if config else None,
        "overallRankingEnabled": bool(config.overall_ranking_enabled) if config else False,
    }


def set_ranking_config(
    store: GradeStore,
    caller: CallerContext,
    school_id: str,
    academic_year_id: str,
    class_id: str,
    overall_ranking_enabled: bool,
) -> Dict[str, Any]:
    """Create or update the class-level config's ranking flag."""
    _require_admin(caller, school_id)
    if not academic_year_id or not class_id:
        raise ValidationError.missing(*[n for n, v in (("academicYearId", academic_year_id), ("classId", class_id)) if not v])

    config = find_class_config(store, school_id, academic_year_id, class_id)
    if config is None:
        config = WeightConfig(
            id=None,
            school_id=school_id,
            academic_year_id=academic_year_id,
            class_id=class_id,
            exam_weight=1,
        )
    saved = store.save_weight_config(replace(config, overall_ranking_enabled=bool(overall_ranking_enabled)))
    return {"config": asdict(saved), "overallRankingEnabled": saved.overall_ranking_enabled}


# ── Publishing ──────────────────────────────────────────────────────

def publish_grades_by_target(
    store: GradeStore,
    caller: CallerContext,
    section_id: str,
    exam_schedule_id: Optional[str] = None,
    assignment_id: Optional[str] = None,
    clock: Clock = utc_now,
) -> Dict[str, Any]:
    """
    Publish every unpublished grade of one assessment in one section.

    Each affected cohort's ranking is then recomputed on its own; the
    snapshots are published when the class config enables overall ranking.
    A failing cohort is tallied and never undoes the grade publish.
    """
    school_id = caller.school_id
    _require_admin(caller, school_id)
    if not section_id or not (exam_schedule_id or assignment_id):
        raise ValidationError(
            "sectionId and one of examScheduleId or assignmentId required",
            [{"field": f, "message": "This field is required."}
             for f, v in (("sectionId", section_id), ("examScheduleId|assignmentId", exam_schedule_id or assignment_id))
             if not v],
        )
    if exam_schedule_id and assignment_id:
        raise ValidationError(
            "Provide examScheduleId or assignmentId, not both.",
            [{"field": "assignmentId", "message": "Cannot be combined with examScheduleId."}],
        )

    section = store.get_section(school_id, section_id)
    if section is None:
        raise NotFoundError(f"Section {section_id} not found.")
    if exam_schedule_id and store.get_exam_schedule(school_id, exam_schedule_id) is None:
        raise NotFoundError(f"Exam schedule {exam_schedule_id} not found.")

    to_publish = store.list_grades(
        school_id,
        section_id=section_id,
        exam_schedule_id=exam_schedule_id,
        assignment_id=assignment_id,
        is_published=False,
    )
    if not to_publish:
        return {"count": 0, "message": "No unpublished grades for target.", "rankings": {"recomputed": 0, "failed": 0}}

    count = store.publish_grades(school_id, [g.id for g in to_publish], clock())

    cohorts: Dict[str, Cohort] = {}
    for g in to_publish:
        if not (g.section_id and g.term_id and g.academic_year_id):
            continue
        cohort = Cohort(school_id, g.section_id, g.term_id, g.academic_year_id)
        cohorts.setdefault(cohort.key, cohort)

    recomputed, failed = 0, 0
    for cohort in cohorts.values():
        config = find_class_config(store, school_id, cohort.academic_year_id, section.class_id) if section.class_id else None
        publish = bool(config and config.overall_ranking_enabled)
        result = recompute_many(store, [cohort], publish=publish, clock=clock)
        recomputed += len(result["recomputed"])
        failed += len(result["failed"])

    logger.info("Published %d grades for section %s; rankings recomputed=%d failed=%d", count, section_id, recomputed, failed)
    return {"count": count, "rankings": {"recomputed": recomputed, "failed": failed}}


# ── Snapshot views ──────────────────────────────────────────────────

def rankings_overview(
    store: GradeStore,
    school_id: str,
    section_id: Optional[str] = None,
    term_id: Optional[str] = None,
    academic_year_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """One row per cohort: snapshot counts and latest computation time."""
    groups: Dict[str, Dict[str, Any]] = {}
    for s in store.list_snapshots(
        school_id, section_id=section_id, term_id=term_id, academic_year_id=academic_year_id
    ):
        item = groups.setdefault(s.cohort_key, {
            "sectionId": s.section_id,
            "termId": s.term_id,
            "academicYearId": s.academic_year_id,
            "totalSnapshots": 0,
            "publishedCount": 0,
            "computedAt": None,
        })
        item["totalSnapshots"] += 1
        item["publishedCount"] += 1 if s.published else 0
        if item["computedAt"] is None or s.computed_at > item["computedAt"]:
            item["computedAt"] = s.computed_at

    items = sorted(
        groups.values(),
        key=lambda i: (timestamp_of(i["computedAt"]), i["sectionId"]),
        reverse=True,
    )
    for item in items:
        item["computedAt"] = item["computedAt"].isoformat() if item["computedAt"] else None
    return items


def student_rankings(
    store: GradeStore,
    school_id: str,
    student_id: str,
    section_id: Optional[str] = None,
    term_id: Optional[str] = None,
    academic_year_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """A student's published snapshots, newest first, with the cohort's published size."""
    mine = store.list_snapshots(
        school_id,
        student_id=student_id,
        section_id=section_id,
        term_id=term_id,
        academic_year_id=academic_year_id,
        published=True,
    )
    mine.sort(key=lambda s: timestamp_of(s.computed_at), reverse=True)

    totals: Dict[str, int] = {}
    results = []
    for s in mine:
        if s.cohort_key not in totals:
            totals[s.cohort_key] = len(store.list_snapshots(
                school_id,
                section_id=s.section_id,
                term_id=s.term_id,
                academic_year_id=s.academic_year_id,
                published=True,
            ))
        results.append({**snapshot_to_dict(s), "sectionTotal": totals[s.cohort_key]})
    return results
