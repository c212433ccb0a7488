"""
policy.py — Authorization and immutability rules for bulk grade submission.

Role rights:
- SCHOOL_ADMIN  create new grades, overwrite existing ones
- TEACHER       create new grades only; resubmitting an existing grade is
                skipped and counted, the stored mark is left untouched
- anyone else   nothing

A teacher must also be linked to the section and subject: class teacher of
the section, a timetable entry for section+subject, or a staff-subject link
for the subject covering the section's class (or any class).
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, List, Optional

from gradebook.errors import AuthorizationError, NotFoundError, ValidationError
from gradebook.letters import map_marks_to_letter
from gradebook.models import CallerContext, Cohort, GradeAction, GradeRecord, Role, Section
from gradebook.ranking import Clock, recompute_ranking, utc_now
from gradebook.store import GradeStore
from gradebook.thresholds import Scope, resolve_grading_scale

logger = logging.getLogger(__name__)

ROLE_GRADE_ACTIONS: Dict[Role, FrozenSet[GradeAction]] = {
    Role.SCHOOL_ADMIN: frozenset({GradeAction.CREATE, GradeAction.OVERWRITE}),
    Role.TEACHER: frozenset({GradeAction.CREATE}),
}

# Roles allowed to overwrite grades also publish, recompute and export.
ADMIN_ROLES: FrozenSet[Role] = frozenset(
    role for role, actions in ROLE_GRADE_ACTIONS.items() if GradeAction.OVERWRITE in actions
)


def permitted_grade_actions(role: Role) -> FrozenSet[GradeAction]:
    """Grade write actions a role may perform."""
    return ROLE_GRADE_ACTIONS.get(role, frozenset())


@dataclass
class BatchTarget:
    """The exam sitting a batch of marks belongs to."""

    school_id: str
    exam_schedule_id: str
    subject_id: str
    section_id: str
    term_id: str
    academic_year_id: str

    def validate(self):
        missing = [
            name for name, value in (
                ("examScheduleId", self.exam_schedule_id),
                ("subjectId", self.subject_id),
                ("sectionId", self.section_id),
                ("termId", self.term_id),
                ("academicYearId", self.academic_year_id),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError.missing(*missing)

    @property
    def cohort(self) -> Cohort:
        return Cohort(self.school_id, self.section_id, self.term_id, self.academic_year_id)


@dataclass
class GradeEntry:
    student_id: str
    marks_obtained: Optional[float]
    comments: Optional[str] = None


def validate_entries(entries: List[GradeEntry]):
    issues = []
    seen = set()
    for idx, entry in enumerate(entries):
        if not entry.student_id or not str(entry.student_id).strip():
            issues.append({"field": f"grades[{idx}].studentId", "message": "Student is required."})
        elif entry.student_id in seen:
            issues.append({"field": f"grades[{idx}].studentId", "message": "Student appears more than once."})
        seen.add(entry.student_id)

        marks = entry.marks_obtained
        if marks is None:
            continue
        try:
            value = float(marks)
        except (TypeError, ValueError):
            value = math.nan
        if not math.isfinite(value) or value < 0:
            issues.append({"field": f"grades[{idx}].marksObtained", "message": "Marks must be a non-negative number."})
    if issues:
        raise ValidationError("Invalid grade entries.", issues)


# ── Teacher linkage ─────────────────────────────────────────────────

def teacher_link_reasons(
    store: GradeStore, caller: CallerContext, section: Section, subject_id: str
) -> List[str]:
    """Which linkage rules grant this teacher access; empty means none."""
    staff_id = caller.staff_id
    if not staff_id:
        return []
    if section.class_teacher_id and section.class_teacher_id == staff_id:
        return ["class-teacher"]
    if store.has_timetable_entry(caller.school_id, staff_id, section.id, subject_id):
        return ["timetable-entry"]
    if store.has_staff_subject_level(caller.school_id, staff_id, subject_id, section.class_id):
        return ["staff-subject-level"]
    return []


def authorize_batch(store: GradeStore, caller: CallerContext, target: BatchTarget) -> Section:
    """
    Check role, tenant, target consistency and teacher linkage.

    Raises before anything is written. Returns the target section.
    """
    if caller.school_id != target.school_id:
        raise AuthorizationError("Caller does not belong to this school.")
    if not permitted_grade_actions(caller.role):
        raise AuthorizationError(f"Role {caller.role.value} may not submit grades.")

    target.validate()
    section = store.get_section(target.school_id, target.section_id)
    if section is None:
        raise NotFoundError(f"Section {target.section_id} not found.")
    schedule = store.get_exam_schedule(target.school_id, target.exam_schedule_id)
    if schedule is None:
        raise NotFoundError(f"Exam schedule {target.exam_schedule_id} not found.")
    if schedule.subject_id != target.subject_id or schedule.class_id != section.class_id:
        raise ValidationError(
            "Exam schedule does not match selected subject/class.",
            [{"field": "examScheduleId", "message": "Exam schedule belongs to a different subject or class."}],
        )

    if caller.role == Role.TEACHER and not teacher_link_reasons(store, caller, section, target.subject_id):
        logger.info(
            "Denied grade submission: staff %s not linked to section %s / subject %s",
            caller.staff_id, target.section_id, target.subject_id,
        )
        raise AuthorizationError("Not allowed to grade this exam for this section.")
    return section


# ── Batch submission ────────────────────────────────────────────────

def submit_grades_batch(
    store: GradeStore,
    caller: CallerContext,
    target: BatchTarget,
    entries: List[GradeEntry],
    clock: Clock = utc_now,
) -> Dict[str, object]:
    """
    Apply a batch of marks for one exam sitting under the role policy.

    Rows for students not enrolled in the section for the academic year are
    skipped and counted. New grades are created for everyone permitted to
    submit. Existing grades are overwritten for administrators and skipped for
    teachers. All writes go to the store in one atomic call, then the cohort
    ranking is refreshed without publishing. A failed refresh leaves the
    written grades in place and is reported as ``rankingRefreshed: False``.

    Returns {created, updated, skippedExisting, skippedNotEnrolled,
    rankingRefreshed, message}.
    """
    section = authorize_batch(store, caller, target)
    validate_entries(entries)
    actions = permitted_grade_actions(caller.role)

    scale = resolve_grading_scale(
        store,
        Scope(
            school_id=target.school_id,
            academic_year_id=target.academic_year_id,
            class_id=section.class_id,
            subject_id=target.subject_id,
            school_level_id=section.school_level_id,
        ),
    )
    bands = scale.bands if scale else []
    now = clock()

    creates: List[GradeRecord] = []
    updates: List[GradeRecord] = []
    skipped = 0
    not_enrolled = 0
    for entry in entries:
        if not store.has_enrollment(target.school_id, entry.student_id, target.section_id, target.academic_year_id):
            not_enrolled += 1
            continue

        marks = None if entry.marks_obtained is None else float(entry.marks_obtained)
        existing = store.find_exam_grade(target.school_id, entry.student_id, target.exam_schedule_id, target.subject_id)

        if existing is None:
            creates.append(GradeRecord(
                id=None,
                school_id=target.school_id,
                student_id=entry.student_id,
                subject_id=target.subject_id,
                section_id=target.section_id,
                term_id=target.term_id,
                academic_year_id=target.academic_year_id,
                exam_schedule_id=target.exam_schedule_id,
                marks_obtained=marks,
                grade_letter=map_marks_to_letter(marks, bands),
                created_at=now,
                comments=entry.comments,
            ))
        elif GradeAction.OVERWRITE in actions:
            updates.append(replace(
                existing,
                marks_obtained=marks,
                grade_letter=map_marks_to_letter(marks, bands),
                comments=entry.comments if entry.comments is not None else existing.comments,
                section_id=target.section_id,
                term_id=target.term_id,
                academic_year_id=target.academic_year_id,
            ))
        else:
            skipped += 1

    store.save_grades(creates, updates)

    refreshed = True
    try:
        recompute_ranking(store, target.cohort, publish=False, clock=clock)
    except Exception as exc:
        refreshed = False
        logger.warning("Ranking refresh failed for cohort %s after grade batch: %s", target.cohort.key, exc)

    logger.info(
        "Grade batch for exam %s section %s: %d created, %d updated, %d skipped, %d not enrolled",
        target.exam_schedule_id, target.section_id, len(creates), len(updates), skipped, not_enrolled,
    )
    message = f"{len(creates)} created, {len(updates)} updated"
    if skipped:
        message += f", {skipped} skipped (already graded)"
    if not_enrolled:
        message += f", {not_enrolled} skipped (not enrolled)"
    if not refreshed:
        message += "; ranking refresh failed"
    return {
        "created": len(creates),
        "updated": len(updates),
        "skippedExisting": skipped,
        "skippedNotEnrolled": not_enrolled,
        "rankingRefreshed": refreshed,
        "message": message + ".",
    }
