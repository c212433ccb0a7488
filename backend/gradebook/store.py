"""
store.py — The persistence port used by the engine, plus an in-memory store.

Every multi-row write on the port (``save_grades``, ``upsert_snapshots``) is
atomic: either all rows land or none do. The in-memory store stages writes on
a copy and swaps it in only after every row succeeded.
"""

import copy
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from gradebook.errors import ConflictError
from gradebook.models import (
    Cohort,
    ExamSchedule,
    GradeRecord,
    GradingScale,
    RankingEntry,
    RankingSnapshot,
    Section,
    WeightConfig,
    merge_snapshot,
    timestamp_of,
)


class GradeStore(Protocol):
    """What the engine needs from the durable store."""

    def list_grades(
        self,
        school_id: str,
        *,
        student_id: Optional[str] = None,
        section_id: Optional[str] = None,
        term_id: Optional[str] = None,
        academic_year_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        exam_schedule_id: Optional[str] = None,
        assignment_id: Optional[str] = None,
        is_published: Optional[bool] = None,
    ) -> List[GradeRecord]:
        """Matching grades ordered by creation time ascending."""

    def find_exam_grade(
        self, school_id: str, student_id: str, exam_schedule_id: str, subject_id: str
    ) -> Optional[GradeRecord]: ...

    def save_grades(self, creates: List[GradeRecord], updates: List[GradeRecord]) -> List[GradeRecord]:
        """Atomically insert ``creates`` and overwrite ``updates``. Raises ConflictError."""

    def publish_grades(self, school_id: str, grade_ids: List[str], published_at: datetime) -> int: ...

    def get_section(self, school_id: str, section_id: str) -> Optional[Section]: ...

    def get_exam_schedule(self, school_id: str, exam_schedule_id: str) -> Optional[ExamSchedule]: ...

    def has_enrollment(self, school_id: str, student_id: str, section_id: str, academic_year_id: str) -> bool:
        """True if the student is enrolled in the section for the academic year."""

    def has_timetable_entry(self, school_id: str, staff_id: str, section_id: str, subject_id: str) -> bool: ...

    def has_staff_subject_level(
        self, school_id: str, staff_id: str, subject_id: str, class_id: Optional[str]
    ) -> bool:
        """True if a link exists for the subject with this class or with no class restriction."""

    def list_weight_configs(self, school_id: str, academic_year_id: str) -> List[WeightConfig]: ...

    def save_weight_config(self, config: WeightConfig) -> WeightConfig:
        """Upsert keyed on (school, year, level, class, subject)."""

    def get_grading_scale(self, school_id: str, scale_id: str) -> Optional[GradingScale]: ...

    def upsert_snapshots(
        self, cohort: Cohort, rankings: List[RankingEntry], computed_at: datetime, publish: bool
    ) -> int:
        """Atomically upsert one snapshot per ranking entry. Returns rows written."""

    def list_snapshots(
        self,
        school_id: str,
        *,
        section_id: Optional[str] = None,
        term_id: Optional[str] = None,
        academic_year_id: Optional[str] = None,
        student_id: Optional[str] = None,
        published: Optional[bool] = None,
    ) -> List[RankingSnapshot]: ...


def snapshot_from_entry(cohort: Cohort, entry: RankingEntry, computed_at: datetime) -> RankingSnapshot:
    return RankingSnapshot(
        school_id=cohort.school_id,
        section_id=cohort.section_id,
        term_id=cohort.term_id,
        academic_year_id=cohort.academic_year_id,
        student_id=entry.student_id,
        total_score=entry.total,
        average=entry.average,
        total_subjects=entry.total_subjects,
        position=entry.position,
        computed_at=computed_at,
    )


def config_scope(config: WeightConfig) -> Tuple:
    return (
        config.school_id,
        config.academic_year_id,
        config.school_level_id,
        config.class_id,
        config.subject_id,
    )


def _matches(obj, **filters) -> bool:
    return all(value is None or getattr(obj, name) == value for name, value in filters.items())


# ── In-memory store ─────────────────────────────────────────────────

class InMemoryStore:
    """Dict-backed GradeStore. Suitable for tests and single-process demos."""

    def __init__(self):
        self.grades: Dict[str, GradeRecord] = {}
        self.snapshots: Dict[Tuple[str, str, str], RankingSnapshot] = {}
        self.sections: Dict[str, Section] = {}
        self.exam_schedules: Dict[str, ExamSchedule] = {}
        self.weight_configs: List[WeightConfig] = []
        self.grading_scales: Dict[str, GradingScale] = {}
        self.timetable: List[Tuple[str, str, str, str]] = []
        self.staff_subject_levels: List[Tuple[str, str, str, Optional[str]]] = []
        self.enrollments: List[Tuple[str, str, str, str]] = []

    # ── seeding ──

    def add_section(self, section: Section) -> Section:
        self.sections[section.id] = section
        return section

    def add_exam_schedule(self, schedule: ExamSchedule) -> ExamSchedule:
        self.exam_schedules[schedule.id] = schedule
        return schedule

    def add_grading_scale(self, scale: GradingScale) -> GradingScale:
        self.grading_scales[scale.id] = scale
        return scale

    def add_timetable_entry(self, school_id: str, staff_id: str, section_id: str, subject_id: str):
        self.timetable.append((school_id, staff_id, section_id, subject_id))

    def add_staff_subject_level(self, school_id: str, staff_id: str, subject_id: str, class_id: Optional[str] = None):
        self.staff_subject_levels.append((school_id, staff_id, subject_id, class_id))

    def add_enrollment(self, school_id: str, student_id: str, section_id: str, academic_year_id: str):
        self.enrollments.append((school_id, student_id, section_id, academic_year_id))

    def add_grade(self, grade: GradeRecord) -> GradeRecord:
        """Insert directly, bypassing the write policy."""
        return self.save_grades([grade], [])[0]

    # ── grades ──

    def list_grades(self, school_id: str, **filters) -> List[GradeRecord]:
        rows = [
            g for g in self.grades.values()
            if g.school_id == school_id and _matches(g, **filters)
        ]
        # Stable on insertion order for equal/missing timestamps.
        return sorted(rows, key=lambda g: timestamp_of(g.created_at))

    def find_exam_grade(self, school_id, student_id, exam_schedule_id, subject_id):
        for g in self.grades.values():
            if (
                g.school_id == school_id
                and g.student_id == student_id
                and g.exam_schedule_id == exam_schedule_id
                and g.subject_id == subject_id
            ):
                return copy.copy(g)
        return None

    def save_grades(self, creates: Iterable[GradeRecord], updates: Iterable[GradeRecord]) -> List[GradeRecord]:
        staged = dict(self.grades)
        taken = {(g.school_id,) + g.unique_key for g in staged.values()}
        written = []

        for grade in creates:
            key = (grade.school_id,) + grade.unique_key
            if key in taken:
                raise ConflictError(
                    f"A grade already exists for student {grade.student_id}, "
                    f"assessment {grade.source_id}, subject {grade.subject_id}."
                )
            taken.add(key)
            row = replace(grade, id=grade.id or str(uuid.uuid4()))
            staged[row.id] = row
            written.append(row)

        for grade in updates:
            if grade.id not in staged:
                raise ConflictError(f"Grade {grade.id} no longer exists.")
            staged[grade.id] = replace(grade)
            written.append(staged[grade.id])

        self.grades = staged
        return written

    def publish_grades(self, school_id: str, grade_ids: List[str], published_at: datetime) -> int:
        count = 0
        for gid in grade_ids:
            g = self.grades.get(gid)
            if g is not None and g.school_id == school_id:
                self.grades[gid] = replace(g, is_published=True, published_at=published_at)
                count += 1
        return count

    # ── reference data ──

    def get_section(self, school_id, section_id):
        s = self.sections.get(section_id)
        return s if s is not None and s.school_id == school_id else None

    def get_exam_schedule(self, school_id, exam_schedule_id):
        es = self.exam_schedules.get(exam_schedule_id)
        return es if es is not None and es.school_id == school_id else None

    def has_enrollment(self, school_id, student_id, section_id, academic_year_id) -> bool:
        return (school_id, student_id, section_id, academic_year_id) in self.enrollments

    def has_timetable_entry(self, school_id, staff_id, section_id, subject_id) -> bool:
        return (school_id, staff_id, section_id, subject_id) in self.timetable

    def has_staff_subject_level(self, school_id, staff_id, subject_id, class_id) -> bool:
        return any(
            s == school_id and st == staff_id and subj == subject_id and (cls is None or cls == class_id)
            for s, st, subj, cls in self.staff_subject_levels
        )

    # ── configuration ──

    def list_weight_configs(self, school_id, academic_year_id):
        return [
            c for c in self.weight_configs
            if c.school_id == school_id and c.academic_year_id == academic_year_id
        ]

    def save_weight_config(self, config: WeightConfig) -> WeightConfig:
        for idx, existing in enumerate(self.weight_configs):
            if config_scope(existing) == config_scope(config):
                saved = replace(config, id=existing.id)
                self.weight_configs[idx] = saved
                return saved
        saved = replace(config, id=config.id or str(uuid.uuid4()))
        self.weight_configs.append(saved)
        return saved

    def get_grading_scale(self, school_id, scale_id):
        scale = self.grading_scales.get(scale_id)
        return scale if scale is not None and scale.school_id == school_id else None

    # ── snapshots ──

    def _stage_snapshot(self, staged: Dict, snapshot: RankingSnapshot, publish: bool):
        key = snapshot.unique_key
        staged[key] = merge_snapshot(staged.get(key), snapshot, publish)

    def upsert_snapshots(self, cohort, rankings, computed_at, publish) -> int:
        staged = dict(self.snapshots)
        for entry in rankings:
            self._stage_snapshot(staged, snapshot_from_entry(cohort, entry, computed_at), publish)
        self.snapshots = staged
        return len(rankings)

    def list_snapshots(self, school_id: str, **filters) -> List[RankingSnapshot]:
        return [
            s for s in self.snapshots.values()
            if s.school_id == school_id and _matches(s, **filters)
        ]
