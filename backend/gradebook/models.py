"""
models.py — Plain data types shared by the grade analytics engine.

The engine never sees ORM rows; stores convert to and from these dataclasses.
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional


class Role(str, enum.Enum):
    SCHOOL_ADMIN = "SCHOOL_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    TEACHER = "TEACHER"
    SECRETARY = "SECRETARY"
    ACCOUNTANT = "ACCOUNTANT"
    STUDENT = "STUDENT"
    PARENT = "PARENT"


class GradeAction(str, enum.Enum):
    CREATE = "create"
    OVERWRITE = "overwrite"


@dataclass
class CallerContext:
    """Who is calling: supplied by the auth/session layer."""

    school_id: str
    role: Role
    user_id: Optional[str] = None
    staff_id: Optional[str] = None


@dataclass(frozen=True)
class Cohort:
    """The (section, term, academic year) scope rankings are computed over."""

    school_id: str
    section_id: str
    term_id: str
    academic_year_id: str

    @property
    def key(self) -> str:
        return f"{self.section_id}|{self.term_id}|{self.academic_year_id}"


@dataclass
class GradeBand:
    grade: str
    min_percentage: float
    max_percentage: Optional[float] = None


@dataclass
class GradingScale:
    id: str
    school_id: str
    name: str
    bands: List[GradeBand] = field(default_factory=list)


@dataclass
class WeightConfig:
    id: Optional[str]
    school_id: str
    academic_year_id: str
    school_level_id: Optional[str] = None
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    exam_weight: float = 0.0
    classwork_weight: float = 0.0
    assignment_weight: float = 0.0
    grading_scale_id: Optional[str] = None
    is_default: bool = False
    overall_ranking_enabled: bool = False


@dataclass
class Section:
    id: str
    school_id: str
    class_id: Optional[str] = None
    class_teacher_id: Optional[str] = None
    name: str = ""
    school_level_id: Optional[str] = None


@dataclass
class ExamSchedule:
    id: str
    school_id: str
    subject_id: str
    class_id: Optional[str] = None


@dataclass
class GradeRecord:
    """One mark for one student, subject and assessment.

    Exactly one of ``exam_schedule_id`` / ``assignment_id`` is set.
    """

    id: Optional[str]
    school_id: str
    student_id: str
    subject_id: Optional[str]
    section_id: Optional[str]
    term_id: Optional[str]
    academic_year_id: Optional[str]
    exam_schedule_id: Optional[str] = None
    assignment_id: Optional[str] = None
    marks_obtained: Optional[float] = None
    grade_letter: Optional[str] = None
    is_published: bool = False
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    subject_name: Optional[str] = None
    comments: Optional[str] = None

    def __post_init__(self):
        if self.exam_schedule_id and self.assignment_id:
            raise ValueError("A grade references an exam schedule or an assignment, not both.")

    @property
    def source_id(self) -> Optional[str]:
        return self.exam_schedule_id or self.assignment_id

    @property
    def unique_key(self) -> tuple:
        return (self.student_id, self.source_id, self.subject_id)


@dataclass
class RankingEntry:
    """One row of a computed cohort ranking."""

    student_id: str
    total: float
    average: float
    total_subjects: int
    position: int = 0


@dataclass
class RankingSnapshot:
    school_id: str
    section_id: str
    term_id: str
    academic_year_id: str
    student_id: str
    total_score: float
    average: float
    total_subjects: int
    position: int
    computed_at: datetime
    published: bool = False

    @property
    def cohort_key(self) -> str:
        return f"{self.section_id}|{self.term_id}|{self.academic_year_id}"

    @property
    def unique_key(self) -> tuple:
        return (self.section_id, self.term_id, self.student_id)


def merge_snapshot(existing: Optional[RankingSnapshot], fresh: RankingSnapshot, publish: bool) -> RankingSnapshot:
    """
    Combine a freshly computed snapshot with the stored one.

    Figures are always refreshed. ``published`` only ever moves to True:
    an insert takes ``publish``, an update keeps the stored flag unless
    ``publish`` is set.
    """
    if existing is None:
        return replace(fresh, published=bool(publish))
    return replace(fresh, published=True if publish else existing.published)


def timestamp_of(value: Optional[datetime]) -> float:
    """Sort key for optional timestamps; missing sorts first."""
    return value.timestamp() if value is not None else 0.0
