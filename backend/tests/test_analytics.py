"""
Tests for gradebook/distribution.py, gradebook/trends.py and gradebook/analytics.py.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from gradebook.analytics import cohort_analytics, compose_report, get_student_analytics
from gradebook.distribution import aggregate_distributions, letter_distribution
from gradebook.errors import AuthorizationError, ValidationError
from gradebook.models import CallerContext, GradeRecord, Role
from gradebook.store import InMemoryStore
from gradebook.trends import build_subject_series, compute_predictions, predict_next_mark

SCHOOL = "school-1"
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _grade(idx, subject, marks, letter=None, student="stu-1", published=True, name=None, day=None):
    return GradeRecord(
        id=f"g{idx}",
        school_id=SCHOOL,
        student_id=student,
        subject_id=subject,
        subject_name=name or (subject.title() if subject else None),
        section_id="sec-1",
        term_id="t1",
        academic_year_id="2025",
        assignment_id=f"a{idx}",
        marks_obtained=marks,
        grade_letter=letter,
        is_published=published,
        created_at=T0 + timedelta(days=idx if day is None else day),
    )


@pytest.fixture
def grades():
    return [
        _grade(1, "math", 60, "C"),
        _grade(2, "math", 65, "C"),
        _grade(3, "math", 70, "B"),
        _grade(4, "math", 75, "B"),
        _grade(5, "english", 82, "A"),
        _grade(6, "english", None),
    ]


class TestAggregateDistributions:
    """Tests for aggregate_distributions."""

    def test_empty(self):
        assert aggregate_distributions([]) == {"average": None, "letterDist": [], "subjects": []}

    def test_overall_average_skips_nulls(self, grades):
        result = aggregate_distributions(grades)
        assert result["average"] == pytest.approx((60 + 65 + 70 + 75 + 82) / 5)

    def test_subject_rows(self, grades):
        subjects = {s["subjectId"]: s for s in aggregate_distributions(grades)["subjects"]}
        assert subjects["math"]["total"] == 270.0
        assert subjects["math"]["count"] == 4
        assert subjects["math"]["average"] == pytest.approx(67.5)
        assert subjects["english"]["count"] == 1
        assert subjects["english"]["subjectName"] == "English"

    def test_subjectless_grade_counts_toward_average_only(self):
        rows = [_grade(1, "math", 40), _grade(2, None, 80)]
        result = aggregate_distributions(rows)
        assert result["average"] == pytest.approx(60.0)
        assert [s["subjectId"] for s in result["subjects"]] == ["math"]

    def test_all_null_marks(self):
        result = aggregate_distributions([_grade(1, "math", None)])
        assert result["average"] is None
        assert result["subjects"][0]["average"] is None


class TestLetterDistribution:
    def test_most_frequent_first_and_stable(self, grades):
        assert letter_distribution(grades) == [
            {"grade": "C", "count": 2},
            {"grade": "B", "count": 2},
            {"grade": "A", "count": 1},
        ]


class TestTrends:
    """Tests for build_subject_series and predictions."""

    def test_series_indexed_by_time(self):
        rows = [_grade(1, "math", 70, day=3), _grade(2, "math", 60, day=1), _grade(3, "math", 65, day=2)]
        series = build_subject_series(rows)
        assert series[0]["points"] == [{"x": 1, "y": 60.0}, {"x": 2, "y": 65.0}, {"x": 3, "y": 70.0}]

    def test_null_marks_dropped(self, grades):
        english = [s for s in build_subject_series(grades) if s["subjectId"] == "english"][0]
        assert english["points"] == [{"x": 1, "y": 82.0}]

    def test_improving_subject_predicts_80(self, grades):
        predictions = {p["subjectId"]: p for p in compute_predictions(build_subject_series(grades))}
        assert predictions["math"]["predictedNextMark"] == pytest.approx(80.0)

    def test_single_mark_predicts_itself(self, grades):
        predictions = {p["subjectId"]: p for p in compute_predictions(build_subject_series(grades))}
        assert predictions["english"]["predictedNextMark"] == pytest.approx(82.0)

    def test_empty_series_predicts_none(self):
        assert predict_next_mark([]) is None
        series = build_subject_series([_grade(1, "art", None)])
        assert compute_predictions(series)[0]["predictedNextMark"] is None


class TestStudentAnalytics:
    """Tests for get_student_analytics."""

    @pytest.fixture
    def store(self, grades):
        s = InMemoryStore()
        for g in grades:
            s.add_grade(g)
        s.add_grade(_grade(7, "math", 5, "F", published=False))
        s.add_grade(_grade(8, "math", 99, "A", student="stu-2"))
        return s

    def test_report_shape(self, store):
        report = get_student_analytics(store, SCHOOL, "stu-1")
        assert set(report) == {"grades", "average", "letterDist", "subjects", "series", "predictions"}

    def test_unpublished_and_other_students_excluded(self, store):
        report = get_student_analytics(store, SCHOOL, "stu-1")
        assert len(report["grades"]) == 6
        assert all(g["isPublished"] for g in report["grades"])
        assert all(g["studentId"] == "stu-1" for g in report["grades"])

    def test_grades_in_time_order(self, store):
        report = get_student_analytics(store, SCHOOL, "stu-1")
        assert [g["id"] for g in report["grades"]] == ["g1", "g2", "g3", "g4", "g5", "g6"]

    def test_unknown_student_is_empty(self, store):
        report = get_student_analytics(store, SCHOOL, "nobody")
        assert report["grades"] == []
        assert report["average"] is None
        assert report["series"] == []
        assert report["predictions"] == []

    def test_requires_student(self, store):
        with pytest.raises(ValidationError):
            get_student_analytics(store, SCHOOL, "")

    def test_compose_report_matches_store_path(self, store, grades):
        assert compose_report(grades)["average"] == get_student_analytics(store, SCHOOL, "stu-1")["average"]


class TestCohortAnalytics:
    """Tests for cohort_analytics."""

    ADMIN = CallerContext(SCHOOL, Role.SCHOOL_ADMIN)

    @pytest.fixture
    def store(self, grades):
        s = InMemoryStore()
        for g in grades:
            s.add_grade(g)
        s.add_grade(_grade(7, "math", 5, "F", published=False))
        s.add_grade(_grade(8, "math", 99, "A", student="stu-2"))
        return s

    def test_all_published_grades(self, store):
        report = cohort_analytics(store, self.ADMIN, SCHOOL)["analytics"]
        assert set(report) == {"average", "letterDist", "subjects", "series"}
        assert report["average"] == pytest.approx(451 / 6)

    def test_unpublished_excluded(self, store):
        report = cohort_analytics(store, self.ADMIN, SCHOOL, subject_id="math")["analytics"]
        assert report["average"] == pytest.approx(73.8)
        assert [p["y"] for p in report["series"][0]["points"]] == [60, 65, 70, 75, 99]

    def test_filters_narrow_the_cohort(self, store):
        report = cohort_analytics(store, self.ADMIN, SCHOOL, subject_id="english")["analytics"]
        assert report["average"] == 82.0
        assert [s["subjectId"] for s in report["series"]] == ["english"]
        assert cohort_analytics(store, self.ADMIN, SCHOOL, term_id="t9")["analytics"]["average"] is None

    def test_staff_roles_allowed(self, store):
        for role in (Role.TEACHER, Role.SECRETARY, Role.ACCOUNTANT, Role.SUPER_ADMIN):
            assert "analytics" in cohort_analytics(store, CallerContext(SCHOOL, role), SCHOOL)

    def test_students_and_parents_forbidden(self, store):
        for role in (Role.STUDENT, Role.PARENT):
            with pytest.raises(AuthorizationError):
                cohort_analytics(store, CallerContext(SCHOOL, role), SCHOOL)

    def test_other_school_forbidden(self, store):
        with pytest.raises(AuthorizationError):
            cohort_analytics(store, CallerContext("school-2", Role.SCHOOL_ADMIN), SCHOOL)
