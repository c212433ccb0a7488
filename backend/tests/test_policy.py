"""
Tests for gradebook/policy.py — role rights, teacher linkage and batch submission.
"""

import os
import sys
from dataclasses import replace
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from gradebook.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from gradebook.models import (
    CallerContext,
    ExamSchedule,
    GradeAction,
    GradeBand,
    GradingScale,
    Role,
    Section,
    WeightConfig,
)
from gradebook.policy import (
    ADMIN_ROLES,
    BatchTarget,
    GradeEntry,
    permitted_grade_actions,
    submit_grades_batch,
    teacher_link_reasons,
)
from gradebook.store import InMemoryStore

SCHOOL = "school-1"
NOW = datetime(2025, 2, 10, 9, 30, tzinfo=timezone.utc)

ADMIN = CallerContext(SCHOOL, Role.SCHOOL_ADMIN, user_id="u-admin")
CLASS_TEACHER = CallerContext(SCHOOL, Role.TEACHER, user_id="u-t1", staff_id="staff-1")
OTHER_TEACHER = CallerContext(SCHOOL, Role.TEACHER, user_id="u-t2", staff_id="staff-2")


def clock():
    return NOW


@pytest.fixture
def store():
    s = InMemoryStore()
    s.add_section(Section("sec-1", SCHOOL, class_id="c1", class_teacher_id="staff-1"))
    s.add_exam_schedule(ExamSchedule("exam-1", SCHOOL, subject_id="math", class_id="c1"))
    s.add_exam_schedule(ExamSchedule("exam-other", SCHOOL, subject_id="english", class_id="c1"))
    s.add_grading_scale(GradingScale("scale-1", SCHOOL, "Default", [
        GradeBand("A", 80), GradeBand("B", 65, 79.99), GradeBand("C", 50, 64.99), GradeBand("F", 0, 49.99),
    ]))
    s.save_weight_config(WeightConfig(
        id=None, school_id=SCHOOL, academic_year_id="2025", is_default=True, grading_scale_id="scale-1",
    ))
    for student in ("stu-1", "stu-2"):
        s.add_enrollment(SCHOOL, student, "sec-1", "2025")
    return s


@pytest.fixture
def target():
    return BatchTarget(
        school_id=SCHOOL,
        exam_schedule_id="exam-1",
        subject_id="math",
        section_id="sec-1",
        term_id="t1",
        academic_year_id="2025",
    )


class TestPermittedActions:
    def test_admin_may_overwrite(self):
        assert permitted_grade_actions(Role.SCHOOL_ADMIN) == {GradeAction.CREATE, GradeAction.OVERWRITE}

    def test_teacher_create_only(self):
        assert permitted_grade_actions(Role.TEACHER) == {GradeAction.CREATE}

    def test_other_roles_nothing(self):
        for role in (Role.STUDENT, Role.PARENT, Role.ACCOUNTANT, Role.SECRETARY):
            assert permitted_grade_actions(role) == frozenset()


class TestSubmitGradesBatch:
    """Tests for submit_grades_batch."""

    def test_creates_with_letters(self, store, target):
        result = submit_grades_batch(
            store, ADMIN, target, [GradeEntry("stu-1", 85), GradeEntry("stu-2", 55)], clock=clock,
        )
        assert result["created"] == 2
        assert result["updated"] == 0
        assert result["skippedExisting"] == 0
        letters = {g.student_id: g.grade_letter for g in store.list_grades(SCHOOL)}
        assert letters == {"stu-1": "A", "stu-2": "C"}

    def test_grades_start_unpublished(self, store, target):
        submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", 85)], clock=clock)
        grade = store.list_grades(SCHOOL)[0]
        assert grade.is_published is False
        assert grade.created_at == NOW

    def test_refreshes_ranking_without_publishing(self, store, target):
        submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", 40), GradeEntry("stu-2", 90)], clock=clock)
        snaps = {s.student_id: s for s in store.list_snapshots(SCHOOL)}
        assert snaps["stu-2"].position == 1
        assert not any(s.published for s in snaps.values())

    def test_teacher_resubmission_is_skipped(self, store, target):
        submit_grades_batch(store, CLASS_TEACHER, target, [GradeEntry("stu-1", 60)], clock=clock)
        result = submit_grades_batch(
            store, CLASS_TEACHER, target, [GradeEntry("stu-1", 95), GradeEntry("stu-2", 70)], clock=clock,
        )
        assert result["created"] == 1
        assert result["updated"] == 0
        assert result["skippedExisting"] == 1
        marks = {g.student_id: g.marks_obtained for g in store.list_grades(SCHOOL)}
        assert marks["stu-1"] == 60.0

    def test_admin_overwrites(self, store, target):
        submit_grades_batch(store, CLASS_TEACHER, target, [GradeEntry("stu-1", 60)], clock=clock)
        result = submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", 95)], clock=clock)
        assert result["updated"] == 1
        grades = store.list_grades(SCHOOL)
        assert len(grades) == 1
        assert grades[0].marks_obtained == 95.0
        assert grades[0].grade_letter == "A"

    def test_no_scale_means_no_letter(self, store, target):
        store.weight_configs.clear()
        submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", 85)], clock=clock)
        assert store.list_grades(SCHOOL)[0].grade_letter is None

    def test_null_mark_accepted(self, store, target):
        submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", None)], clock=clock)
        grade = store.list_grades(SCHOOL)[0]
        assert grade.marks_obtained is None
        assert grade.grade_letter is None


class TestAuthorization:
    """Role, tenant and linkage checks happen before any write."""

    def test_student_forbidden(self, store, target):
        caller = CallerContext(SCHOOL, Role.STUDENT, user_id="u-s")
        with pytest.raises(AuthorizationError):
            submit_grades_batch(store, caller, target, [GradeEntry("stu-1", 50)])
        assert store.list_grades(SCHOOL) == []

    def test_other_school_forbidden(self, store, target):
        caller = CallerContext("school-2", Role.SCHOOL_ADMIN)
        with pytest.raises(AuthorizationError):
            submit_grades_batch(store, caller, target, [GradeEntry("stu-1", 50)])

    def test_unlinked_teacher_forbidden(self, store, target):
        with pytest.raises(AuthorizationError):
            submit_grades_batch(store, OTHER_TEACHER, target, [GradeEntry("stu-1", 50)])
        assert store.list_grades(SCHOOL) == []

    def test_timetable_link(self, store, target):
        store.add_timetable_entry(SCHOOL, "staff-2", "sec-1", "math")
        section = store.get_section(SCHOOL, "sec-1")
        assert teacher_link_reasons(store, OTHER_TEACHER, section, "math") == ["timetable-entry"]
        assert submit_grades_batch(store, OTHER_TEACHER, target, [GradeEntry("stu-1", 50)])["created"] == 1

    def test_staff_subject_link_any_class(self, store):
        store.add_staff_subject_level(SCHOOL, "staff-2", "math")
        section = store.get_section(SCHOOL, "sec-1")
        assert teacher_link_reasons(store, OTHER_TEACHER, section, "math") == ["staff-subject-level"]

    def test_staff_subject_link_other_class(self, store):
        store.add_staff_subject_level(SCHOOL, "staff-2", "math", class_id="c9")
        section = store.get_section(SCHOOL, "sec-1")
        assert teacher_link_reasons(store, OTHER_TEACHER, section, "math") == []

    def test_class_teacher_link(self, store):
        section = store.get_section(SCHOOL, "sec-1")
        assert teacher_link_reasons(store, CLASS_TEACHER, section, "math") == ["class-teacher"]


class TestBatchValidation:
    def test_missing_target_fields(self, store, target):
        target.term_id = ""
        with pytest.raises(ValidationError) as exc:
            submit_grades_batch(store, ADMIN, target, [])
        assert exc.value.issues[0]["field"] == "termId"

    def test_unknown_section(self, store, target):
        target.section_id = "nope"
        with pytest.raises(NotFoundError):
            submit_grades_batch(store, ADMIN, target, [])

    def test_unknown_exam_schedule(self, store, target):
        target.exam_schedule_id = "nope"
        with pytest.raises(NotFoundError):
            submit_grades_batch(store, ADMIN, target, [])

    def test_schedule_for_other_subject(self, store, target):
        target.exam_schedule_id = "exam-other"
        with pytest.raises(ValidationError) as exc:
            submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", 50)])
        assert exc.value.issues[0]["field"] == "examScheduleId"

    def test_negative_and_duplicate_entries(self, store, target):
        entries = [GradeEntry("stu-1", -5), GradeEntry("stu-2", 50), GradeEntry("stu-2", 60)]
        with pytest.raises(ValidationError) as exc:
            submit_grades_batch(store, ADMIN, target, entries)
        fields = [i["field"] for i in exc.value.issues]
        assert fields == ["grades[0].marksObtained", "grades[2].studentId"]
        assert store.list_grades(SCHOOL) == []


class TestStoreConflicts:
    def test_duplicate_create_raises_and_writes_nothing(self, store, target):
        submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", 50)], clock=clock)
        existing = store.list_grades(SCHOOL)[0]
        with pytest.raises(ConflictError):
            store.save_grades([replace(existing, id=None, student_id="stu-9"), replace(existing, id=None)], [])
        assert len(store.list_grades(SCHOOL)) == 1


class TestEnrollment:
    def test_not_enrolled_rows_skipped_and_counted(self, store, target):
        result = submit_grades_batch(
            store, ADMIN, target, [GradeEntry("stu-1", 70), GradeEntry("stu-x", 90)], clock=clock,
        )
        assert result["created"] == 1
        assert result["skippedNotEnrolled"] == 1
        assert "1 skipped (not enrolled)" in result["message"]
        assert [g.student_id for g in store.list_grades(SCHOOL)] == ["stu-1"]

    def test_enrollment_in_other_year_does_not_count(self, store, target):
        store.add_enrollment(SCHOOL, "stu-3", "sec-1", "2024")
        result = submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-3", 70)], clock=clock)
        assert result["created"] == 0
        assert result["skippedNotEnrolled"] == 1


class TestLevelScopedScale:
    """Letters come from a config scoped only by school level."""

    @pytest.fixture
    def level_store(self):
        s = InMemoryStore()
        s.add_exam_schedule(ExamSchedule("exam-1", SCHOOL, subject_id="math", class_id="c1"))
        s.add_enrollment(SCHOOL, "stu-1", "sec-1", "2025")
        s.add_grading_scale(GradingScale("scale-primary", SCHOOL, "Primary", [
            GradeBand("A", 80), GradeBand("F", 0, 79.99),
        ]))
        s.save_weight_config(WeightConfig(
            id=None, school_id=SCHOOL, academic_year_id="2025", school_level_id="primary",
            grading_scale_id="scale-primary",
        ))
        return s

    def test_matching_level_section(self, level_store, target):
        level_store.add_section(Section("sec-1", SCHOOL, class_id="c1", school_level_id="primary"))
        submit_grades_batch(level_store, ADMIN, target, [GradeEntry("stu-1", 90)], clock=clock)
        assert level_store.list_grades(SCHOOL)[0].grade_letter == "A"

    def test_section_without_level(self, level_store, target):
        level_store.add_section(Section("sec-1", SCHOOL, class_id="c1"))
        submit_grades_batch(level_store, ADMIN, target, [GradeEntry("stu-1", 90)], clock=clock)
        assert level_store.list_grades(SCHOOL)[0].grade_letter == "A"

    def test_other_level_section(self, level_store, target):
        level_store.add_section(Section("sec-1", SCHOOL, class_id="c1", school_level_id="secondary"))
        submit_grades_batch(level_store, ADMIN, target, [GradeEntry("stu-1", 90)], clock=clock)
        assert level_store.list_grades(SCHOOL)[0].grade_letter is None


class BrokenSnapshotStore(InMemoryStore):
    def upsert_snapshots(self, cohort, rankings, computed_at, publish):
        raise RuntimeError("snapshot table unavailable")


class TestRankingRefreshFailure:
    def test_grades_kept_and_failure_reported(self, target):
        s = BrokenSnapshotStore()
        s.add_section(Section("sec-1", SCHOOL, class_id="c1"))
        s.add_exam_schedule(ExamSchedule("exam-1", SCHOOL, subject_id="math", class_id="c1"))
        s.add_enrollment(SCHOOL, "stu-1", "sec-1", "2025")

        result = submit_grades_batch(s, ADMIN, target, [GradeEntry("stu-1", 75)], clock=clock)
        assert result["created"] == 1
        assert result["rankingRefreshed"] is False
        assert result["message"].endswith("ranking refresh failed.")
        assert s.list_grades(SCHOOL)[0].marks_obtained == 75.0
        assert s.list_snapshots(SCHOOL) == []

    def test_successful_batch_reports_refresh(self, store, target):
        result = submit_grades_batch(store, ADMIN, target, [GradeEntry("stu-1", 75)], clock=clock)
        assert result["rankingRefreshed"] is True


class TestAdminRoles:
    def test_only_school_admin(self):
        assert ADMIN_ROLES == frozenset({Role.SCHOOL_ADMIN})

    def test_super_admin_cannot_submit(self, store, target):
        caller = CallerContext(SCHOOL, Role.SUPER_ADMIN)
        with pytest.raises(AuthorizationError):
            submit_grades_batch(store, caller, target, [GradeEntry("stu-1", 50)])
