"""
ranking.py — Cohort rankings and their persisted snapshots.

A cohort is one (section, term, academic year). Rankings are computed from
every submitted grade in the cohort, published or not; publishing the
resulting snapshots is a separate, one-way flag.

Ordering is total desc, average desc, student id asc, so equal input always
gives the same sequence. Positions follow competition ranking: equal
(total, average) share a position and the next distinct entry takes its
own index + 1, e.g. totals [180, 150, 150, 120] -> positions [1, 2, 2, 4].
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List

import pandas as pd

from gradebook.errors import NotFoundError, ValidationError
from gradebook.models import Cohort, GradeRecord, RankingEntry, RankingSnapshot
from gradebook.store import GradeStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Ranking computation ─────────────────────────────────────────────

def rank_students(grades: List[GradeRecord]) -> List[RankingEntry]:
    """Aggregate marks per student and assign tie-aware positions."""
    if not grades:
        return []

    df = pd.DataFrame(
        [{"student_id": str(g.student_id), "marks": g.marks_obtained} for g in grades],
        columns=["student_id", "marks"],
    )
    df["marks"] = pd.to_numeric(df["marks"], errors="coerce")

    summary = (
        df.groupby("student_id")["marks"]
        .agg(total="sum", total_subjects="count")
        .reset_index()
    )
    summary["average"] = [
        total / count if count else 0.0
        for total, count in zip(summary["total"], summary["total_subjects"])
    ]
    summary = summary.sort_values(
        ["total", "average", "student_id"],
        ascending=[False, False, True],
        kind="mergesort",
    ).reset_index(drop=True)

    entries: List[RankingEntry] = []
    last_key = None
    position = 0
    for idx, row in enumerate(summary.itertuples(index=False)):
        key = (float(row.total), float(row.average))
        if key != last_key:
            position = idx + 1
            last_key = key
        entries.append(RankingEntry(
            student_id=row.student_id,
            total=float(row.total),
            average=float(row.average),
            total_subjects=int(row.total_subjects),
            position=position,
        ))
    return entries


def validate_cohort(cohort: Cohort):
    missing = [
        name for name, value in (
            ("schoolId", cohort.school_id),
            ("sectionId", cohort.section_id),
            ("termId", cohort.term_id),
            ("academicYearId", cohort.academic_year_id),
        )
        if not value or not str(value).strip()
    ]
    if missing:
        raise ValidationError.missing(*missing)


def compute_section_rankings(store: GradeStore, cohort: Cohort) -> List[RankingEntry]:
    """Rankings for one cohort over all of its grades regardless of publish state."""
    validate_cohort(cohort)
    grades = store.list_grades(
        cohort.school_id,
        section_id=cohort.section_id,
        term_id=cohort.term_id,
        academic_year_id=cohort.academic_year_id,
    )
    return rank_students(grades)


# ── Snapshot publishing ─────────────────────────────────────────────

def publish_rankings(
    store: GradeStore,
    cohort: Cohort,
    rankings: List[RankingEntry],
    publish: bool = False,
    clock: Clock = utc_now,
) -> int:
    """
    Upsert one snapshot per ranked student in a single atomic store call.

    ``publish=False`` never clears an already published snapshot.
    """
    return store.upsert_snapshots(cohort, rankings, clock(), bool(publish))


def recompute_ranking(
    store: GradeStore, cohort: Cohort, publish: bool = False, clock: Clock = utc_now
) -> Dict[str, int]:
    """Recompute a cohort's ranking and refresh its snapshots. Returns {count}."""
    validate_cohort(cohort)
    if store.get_section(cohort.school_id, cohort.section_id) is None:
        raise NotFoundError(f"Section {cohort.section_id} not found.")

    rankings = compute_section_rankings(store, cohort)
    count = publish_rankings(store, cohort, rankings, publish=publish, clock=clock)
    logger.info("Recomputed ranking for cohort %s: %d students (publish=%s)", cohort.key, count, bool(publish))
    return {"count": count}


def recompute_many(
    store: GradeStore, cohorts: Iterable[Cohort], publish: bool = False, clock: Clock = utc_now
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Recompute several cohorts independently.

    One cohort failing is recorded and does not stop the others.
    """
    recomputed, failed = [], []
    for cohort in cohorts:
        try:
            result = recompute_ranking(store, cohort, publish=publish, clock=clock)
        except Exception as exc:
            logger.warning("Ranking recompute failed for cohort %s: %s", cohort.key, exc)
            failed.append({"cohort": cohort.key, "error": str(exc)})
            continue
        recomputed.append({"cohort": cohort.key, "count": result["count"]})
    return {"recomputed": recomputed, "failed": failed}


def snapshot_to_dict(s: RankingSnapshot) -> Dict[str, Any]:
    return {
        "sectionId": s.section_id,
        "termId": s.term_id,
        "academicYearId": s.academic_year_id,
        "studentId": s.student_id,
        "totalScore": s.total_score,
        "average": s.average,
        "totalSubjects": s.total_subjects,
        "position": s.position,
        "computedAt": s.computed_at.isoformat() if s.computed_at else None,
        "published": s.published,
    }
