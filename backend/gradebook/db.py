"""
db.py — SQLAlchemy tables and the relational GradeStore.

Each atomic port call runs in one ``Session.begin()`` block; any error inside
it rolls the whole call back. Unique-key violations surface as ConflictError.
Timestamps are stored as UTC and read back timezone-aware.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from gradebook.errors import ConflictError
from gradebook.models import (
    Cohort,
    ExamSchedule,
    GradeBand,
    GradeRecord,
    GradingScale,
    RankingEntry,
    RankingSnapshot,
    Section,
    WeightConfig,
    merge_snapshot,
)
from gradebook.store import snapshot_from_entry

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _eq(column, value):
    return column.is_(None) if value is None else column == value


# ── Tables ──────────────────────────────────────────────────────────

class SectionRow(Base):
    __tablename__ = "sections"
    id = Column(String(36), primary_key=True)
    school_id = Column(String(64), nullable=False, index=True)
    class_id = Column(String(64), nullable=True)
    class_teacher_id = Column(String(64), nullable=True)
    school_level_id = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False, default="")


class ExamScheduleRow(Base):
    __tablename__ = "exam_schedules"
    id = Column(String(36), primary_key=True)
    school_id = Column(String(64), nullable=False, index=True)
    subject_id = Column(String(64), nullable=False)
    class_id = Column(String(64), nullable=True)


class GradeRow(Base):
    __tablename__ = "grades"
    id = Column(String(36), primary_key=True, default=_new_id)
    school_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    subject_id = Column(String(64), nullable=True)
    subject_name = Column(String(255), nullable=True)
    section_id = Column(String(64), nullable=True, index=True)
    term_id = Column(String(64), nullable=True)
    academic_year_id = Column(String(64), nullable=True)
    exam_schedule_id = Column(String(36), nullable=True, index=True)
    assignment_id = Column(String(36), nullable=True, index=True)
    marks_obtained = Column(Float, nullable=True)
    grade_letter = Column(String(8), nullable=True)
    comments = Column(Text, nullable=True)
    is_published = Column(Boolean, default=False, nullable=False)
    published_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("school_id", "student_id", "exam_schedule_id", "subject_id", name="uq_grade_exam"),
        UniqueConstraint("school_id", "student_id", "assignment_id", "subject_id", name="uq_grade_assignment"),
    )


class RankingSnapshotRow(Base):
    __tablename__ = "ranking_snapshots"
    id = Column(Integer, primary_key=True, autoincrement=True)
    school_id = Column(String(64), nullable=False, index=True)
    section_id = Column(String(64), nullable=False)
    term_id = Column(String(64), nullable=False)
    academic_year_id = Column(String(64), nullable=False)
    student_id = Column(String(64), nullable=False, index=True)
    total_score = Column(Float, nullable=False)
    average = Column(Float, nullable=False)
    total_subjects = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False)
    computed_at = Column(DateTime, nullable=False)
    published = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("section_id", "term_id", "student_id", name="uq_snapshot_section_term_student"),
    )


class WeightConfigRow(Base):
    __tablename__ = "weight_configs"
    id = Column(String(36), primary_key=True, default=_new_id)
    school_id = Column(String(64), nullable=False, index=True)
    academic_year_id = Column(String(64), nullable=False)
    school_level_id = Column(String(64), nullable=True)
    class_id = Column(String(64), nullable=True)
    subject_id = Column(String(64), nullable=True)
    exam_weight = Column(Float, default=0.0, nullable=False)
    classwork_weight = Column(Float, default=0.0, nullable=False)
    assignment_weight = Column(Float, default=0.0, nullable=False)
    grading_scale_id = Column(String(36), ForeignKey("grading_scales.id", ondelete="SET NULL"), nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    overall_ranking_enabled = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "school_id", "academic_year_id", "school_level_id", "class_id", "subject_id",
            name="uq_weight_config_scope",
        ),
    )


class GradingScaleRow(Base):
    __tablename__ = "grading_scales"
    id = Column(String(36), primary_key=True, default=_new_id)
    school_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)

    bands = relationship("GradeBandRow", back_populates="scale", cascade="all, delete-orphan", order_by="GradeBandRow.id")


class GradeBandRow(Base):
    __tablename__ = "grade_bands"
    id = Column(Integer, primary_key=True, autoincrement=True)
    scale_id = Column(String(36), ForeignKey("grading_scales.id", ondelete="CASCADE"), nullable=False, index=True)
    grade = Column(String(8), nullable=False)
    min_percentage = Column(Float, nullable=False)
    max_percentage = Column(Float, nullable=True)

    scale = relationship("GradingScaleRow", back_populates="bands")


class TimetableEntryRow(Base):
    __tablename__ = "timetable_entries"
    id = Column(Integer, primary_key=True, autoincrement=True)
    school_id = Column(String(64), nullable=False, index=True)
    staff_id = Column(String(64), nullable=False)
    section_id = Column(String(64), nullable=False)
    subject_id = Column(String(64), nullable=False)


class EnrollmentRow(Base):
    __tablename__ = "student_enrollments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    school_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    section_id = Column(String(64), nullable=False)
    academic_year_id = Column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("student_id", "section_id", "academic_year_id", name="uq_enrollment_student_section_year"),
    )


class StaffSubjectLevelRow(Base):
    __tablename__ = "staff_subject_levels"
    id = Column(Integer, primary_key=True, autoincrement=True)
    school_id = Column(String(64), nullable=False, index=True)
    staff_id = Column(String(64), nullable=False)
    subject_id = Column(String(64), nullable=False)
    class_id = Column(String(64), nullable=True)


# ── Row <-> dataclass ───────────────────────────────────────────────

def _grade_from_row(row: GradeRow) -> GradeRecord:
    return GradeRecord(
        id=row.id,
        school_id=row.school_id,
        student_id=row.student_id,
        subject_id=row.subject_id,
        section_id=row.section_id,
        term_id=row.term_id,
        academic_year_id=row.academic_year_id,
        exam_schedule_id=row.exam_schedule_id,
        assignment_id=row.assignment_id,
        marks_obtained=row.marks_obtained,
        grade_letter=row.grade_letter,
        is_published=bool(row.is_published),
        published_at=_from_utc(row.published_at),
        created_at=_from_utc(row.created_at),
        subject_name=row.subject_name,
        comments=row.comments,
    )


def _apply_grade(row: GradeRow, grade: GradeRecord):
    for name in (
        "school_id", "student_id", "subject_id", "subject_name", "section_id", "term_id",
        "academic_year_id", "exam_schedule_id", "assignment_id", "marks_obtained",
        "grade_letter", "comments",
    ):
        setattr(row, name, getattr(grade, name))
    row.is_published = bool(grade.is_published)
    row.published_at = _to_utc(grade.published_at)
    row.created_at = _to_utc(grade.created_at)


def _snapshot_from_row(row: RankingSnapshotRow) -> RankingSnapshot:
    return RankingSnapshot(
        school_id=row.school_id,
        section_id=row.section_id,
        term_id=row.term_id,
        academic_year_id=row.academic_year_id,
        student_id=row.student_id,
        total_score=row.total_score,
        average=row.average,
        total_subjects=row.total_subjects,
        position=row.position,
        computed_at=_from_utc(row.computed_at),
        published=bool(row.published),
    )


def _config_from_row(row: WeightConfigRow) -> WeightConfig:
    return WeightConfig(
        id=row.id,
        school_id=row.school_id,
        academic_year_id=row.academic_year_id,
        school_level_id=row.school_level_id,
        class_id=row.class_id,
        subject_id=row.subject_id,
        exam_weight=row.exam_weight,
        classwork_weight=row.classwork_weight,
        assignment_weight=row.assignment_weight,
        grading_scale_id=row.grading_scale_id,
        is_default=bool(row.is_default),
        overall_ranking_enabled=bool(row.overall_ranking_enabled),
    )


# ── Engine / store factory ──────────────────────────────────────────

def make_engine(url: str, echo: bool = False):
    """Engine for ``url``; in-memory SQLite shares one connection across threads."""
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def create_store(url: str, echo: bool = False) -> "SqlGradeStore":
    engine = make_engine(url, echo=echo)
    Base.metadata.create_all(engine)
    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
    return SqlGradeStore(engine)


class SqlGradeStore:
    """GradeStore over a SQLAlchemy engine."""

    def __init__(self, engine):
        self.engine = engine
        self._session = sessionmaker(bind=engine, expire_on_commit=False)

    # ── seeding ──

    def add_section(self, section: Section) -> Section:
        with self._session.begin() as session:
            session.merge(SectionRow(
                id=section.id, school_id=section.school_id, class_id=section.class_id,
                class_teacher_id=section.class_teacher_id, name=section.name,
                school_level_id=section.school_level_id,
            ))
        return section

    def add_exam_schedule(self, schedule: ExamSchedule) -> ExamSchedule:
        with self._session.begin() as session:
            session.merge(ExamScheduleRow(
                id=schedule.id, school_id=schedule.school_id,
                subject_id=schedule.subject_id, class_id=schedule.class_id,
            ))
        return schedule

    def add_grading_scale(self, scale: GradingScale) -> GradingScale:
        with self._session.begin() as session:
            row = GradingScaleRow(id=scale.id or _new_id(), school_id=scale.school_id, name=scale.name)
            row.bands = [
                GradeBandRow(grade=b.grade, min_percentage=b.min_percentage, max_percentage=b.max_percentage)
                for b in scale.bands
            ]
            session.add(row)
        return scale

    def add_timetable_entry(self, school_id: str, staff_id: str, section_id: str, subject_id: str):
        with self._session.begin() as session:
            session.add(TimetableEntryRow(
                school_id=school_id, staff_id=staff_id, section_id=section_id, subject_id=subject_id,
            ))

    def add_staff_subject_level(self, school_id: str, staff_id: str, subject_id: str, class_id: Optional[str] = None):
        with self._session.begin() as session:
            session.add(StaffSubjectLevelRow(
                school_id=school_id, staff_id=staff_id, subject_id=subject_id, class_id=class_id,
            ))

    def add_enrollment(self, school_id: str, student_id: str, section_id: str, academic_year_id: str):
        try:
            with self._session.begin() as session:
                session.add(EnrollmentRow(
                    school_id=school_id, student_id=student_id, section_id=section_id, academic_year_id=academic_year_id,
                ))
        except IntegrityError as exc:
            raise ConflictError(f"Student {student_id} is already enrolled in section {section_id} for {academic_year_id}.") from exc

    def add_grade(self, grade: GradeRecord) -> GradeRecord:
        return self.save_grades([grade], [])[0]

    # ── grades ──

    def list_grades(self, school_id: str, **filters) -> List[GradeRecord]:
        with self._session() as session:
            query = session.query(GradeRow).filter(GradeRow.school_id == school_id)
            for name, value in filters.items():
                if value is not None:
                    query = query.filter(getattr(GradeRow, name) == value)
            rows = query.order_by(GradeRow.created_at, GradeRow.id).all()
            return [_grade_from_row(r) for r in rows]

    def find_exam_grade(self, school_id, student_id, exam_schedule_id, subject_id):
        with self._session() as session:
            row = (
                session.query(GradeRow)
                .filter(
                    GradeRow.school_id == school_id,
                    GradeRow.student_id == student_id,
                    GradeRow.exam_schedule_id == exam_schedule_id,
                    GradeRow.subject_id == subject_id,
                )
                .first()
            )
            return _grade_from_row(row) if row else None

    def save_grades(self, creates, updates) -> List[GradeRecord]:
        written: List[GradeRow] = []
        try:
            with self._session.begin() as session:
                for grade in creates:
                    row = GradeRow(id=grade.id or _new_id())
                    _apply_grade(row, grade)
                    session.add(row)
                    written.append(row)
                for grade in updates:
                    row = session.get(GradeRow, grade.id)
                    if row is None:
                        raise ConflictError(f"Grade {grade.id} no longer exists.")
                    _apply_grade(row, grade)
                    written.append(row)
                session.flush()
        except IntegrityError as exc:
            logger.warning("Grade write rolled back: %s", exc.orig)
            raise ConflictError("A grade already exists for this student, assessment and subject.") from exc
        return [_grade_from_row(r) for r in written]

    def publish_grades(self, school_id: str, grade_ids: List[str], published_at: datetime) -> int:
        if not grade_ids:
            return 0
        with self._session.begin() as session:
            return (
                session.query(GradeRow)
                .filter(GradeRow.school_id == school_id, GradeRow.id.in_(list(grade_ids)))
                .update(
                    {GradeRow.is_published: True, GradeRow.published_at: _to_utc(published_at)},
                    synchronize_session=False,
                )
            )

    # ── reference data ──

    def get_section(self, school_id, section_id):
        with self._session() as session:
            row = session.get(SectionRow, section_id)
            if row is None or row.school_id != school_id:
                return None
            return Section(
                id=row.id, school_id=row.school_id, class_id=row.class_id,
                class_teacher_id=row.class_teacher_id, name=row.name,
                school_level_id=row.school_level_id,
            )

    def get_exam_schedule(self, school_id, exam_schedule_id):
        with self._session() as session:
            row = session.get(ExamScheduleRow, exam_schedule_id)
            if row is None or row.school_id != school_id:
                return None
            return ExamSchedule(id=row.id, school_id=row.school_id, subject_id=row.subject_id, class_id=row.class_id)

    def has_enrollment(self, school_id, student_id, section_id, academic_year_id) -> bool:
        with self._session() as session:
            return session.query(EnrollmentRow).filter(
                EnrollmentRow.school_id == school_id,
                EnrollmentRow.student_id == student_id,
                EnrollmentRow.section_id == section_id,
                EnrollmentRow.academic_year_id == academic_year_id,
            ).first() is not None

    def has_timetable_entry(self, school_id, staff_id, section_id, subject_id) -> bool:
        with self._session() as session:
            return session.query(TimetableEntryRow).filter(
                TimetableEntryRow.school_id == school_id,
                TimetableEntryRow.staff_id == staff_id,
                TimetableEntryRow.section_id == section_id,
                TimetableEntryRow.subject_id == subject_id,
            ).first() is not None

    def has_staff_subject_level(self, school_id, staff_id, subject_id, class_id) -> bool:
        with self._session() as session:
            query = session.query(StaffSubjectLevelRow).filter(
                StaffSubjectLevelRow.school_id == school_id,
                StaffSubjectLevelRow.staff_id == staff_id,
                StaffSubjectLevelRow.subject_id == subject_id,
            )
            if class_id is None:
                query = query.filter(StaffSubjectLevelRow.class_id.is_(None))
            else:
                query = query.filter(
                    (StaffSubjectLevelRow.class_id.is_(None)) | (StaffSubjectLevelRow.class_id == class_id)
                )
            return query.first() is not None

    # ── configuration ──

    def list_weight_configs(self, school_id, academic_year_id):
        with self._session() as session:
            rows = (
                session.query(WeightConfigRow)
                .filter(WeightConfigRow.school_id == school_id, WeightConfigRow.academic_year_id == academic_year_id)
                .all()
            )
            return [_config_from_row(r) for r in rows]

    def save_weight_config(self, config: WeightConfig) -> WeightConfig:
        with self._session.begin() as session:
            row = (
                session.query(WeightConfigRow)
                .filter(
                    WeightConfigRow.school_id == config.school_id,
                    WeightConfigRow.academic_year_id == config.academic_year_id,
                    _eq(WeightConfigRow.school_level_id, config.school_level_id),
                    _eq(WeightConfigRow.class_id, config.class_id),
                    _eq(WeightConfigRow.subject_id, config.subject_id),
                )
                .first()
            )
            if row is None:
                row = WeightConfigRow(id=config.id or _new_id())
                session.add(row)
            for name in (
                "school_id", "academic_year_id", "school_level_id", "class_id", "subject_id",
                "exam_weight", "classwork_weight", "assignment_weight", "grading_scale_id",
                "is_default", "overall_ranking_enabled",
            ):
                setattr(row, name, getattr(config, name))
            session.flush()
            return _config_from_row(row)

    def get_grading_scale(self, school_id, scale_id):
        with self._session() as session:
            row = session.get(GradingScaleRow, scale_id)
            if row is None or row.school_id != school_id:
                return None
            return GradingScale(
                id=row.id,
                school_id=row.school_id,
                name=row.name,
                bands=[GradeBand(b.grade, b.min_percentage, b.max_percentage) for b in row.bands],
            )

    # ── snapshots ──

    def upsert_snapshots(self, cohort: Cohort, rankings: List[RankingEntry], computed_at: datetime, publish: bool) -> int:
        try:
            with self._session.begin() as session:
                existing = {
                    row.student_id: row
                    for row in session.query(RankingSnapshotRow).filter(
                        RankingSnapshotRow.section_id == cohort.section_id,
                        RankingSnapshotRow.term_id == cohort.term_id,
                    )
                }
                for entry in rankings:
                    fresh = snapshot_from_entry(cohort, entry, computed_at)
                    row = existing.get(entry.student_id)
                    merged = merge_snapshot(_snapshot_from_row(row) if row else None, fresh, publish)
                    if row is None:
                        row = RankingSnapshotRow()
                        session.add(row)
                        existing[entry.student_id] = row
                    row.school_id = merged.school_id
                    row.section_id = merged.section_id
                    row.term_id = merged.term_id
                    row.academic_year_id = merged.academic_year_id
                    row.student_id = merged.student_id
                    row.total_score = merged.total_score
                    row.average = merged.average
                    row.total_subjects = merged.total_subjects
                    row.position = merged.position
                    row.computed_at = _to_utc(merged.computed_at)
                    row.published = merged.published
                session.flush()
        except IntegrityError as exc:
            logger.warning("Snapshot write for %s rolled back: %s", cohort, exc.orig)
            raise ConflictError("A ranking snapshot already exists for a student in this section and term.") from exc
        return len(rankings)

    def list_snapshots(self, school_id: str, **filters) -> List[RankingSnapshot]:
        with self._session() as session:
            query = session.query(RankingSnapshotRow).filter(RankingSnapshotRow.school_id == school_id)
            for name, value in filters.items():
                if value is not None:
                    query = query.filter(getattr(RankingSnapshotRow, name) == value)
            return [_snapshot_from_row(r) for r in query.order_by(RankingSnapshotRow.position, RankingSnapshotRow.id)]
