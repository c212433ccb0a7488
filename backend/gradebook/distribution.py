"""
distribution.py — Fold a set of grade records into summary figures.

Produces:
- overall average of all non-null marks
- letter frequency table, most frequent first
- per-subject totals, counts and averages
"""

from collections import Counter
from typing import Any, Dict, List

import pandas as pd

from gradebook.models import GradeRecord
from gradebook.stats import _safe_float, _sanitize


def _grades_frame(grades: List[GradeRecord]) -> pd.DataFrame:
    df = pd.DataFrame(
        [
            {
                "subject_id": g.subject_id,
                "subject_name": g.subject_name,
                "marks": g.marks_obtained,
            }
            for g in grades
        ],
        columns=["subject_id", "subject_name", "marks"],
    )
    df["marks"] = pd.to_numeric(df["marks"], errors="coerce")
    return df


def letter_distribution(grades: List[GradeRecord]) -> List[Dict[str, Any]]:
    """[{grade, count}] sorted by count descending, first-seen order on ties."""
    counts = Counter(g.grade_letter for g in grades if g.grade_letter)
    return [
        {"grade": grade, "count": count}
        for grade, count in sorted(counts.items(), key=lambda item: item[1], reverse=True)
    ]


def subject_averages(df: pd.DataFrame) -> List[Dict[str, Any]]:
    subjects = []
    with_subject = df[df["subject_id"].notna()]
    for subject_id, group in with_subject.groupby("subject_id", sort=False):
        marks = group["marks"].dropna()
        names = group["subject_name"].dropna()
        subjects.append({
            "subjectId": subject_id,
            "subjectName": str(names.iloc[0]) if len(names) else "Subject",
            "total": float(marks.sum()),
            "count": int(len(marks)),
            "average": _safe_float(marks.mean()) if len(marks) else None,
        })
    return subjects


def aggregate_distributions(grades: List[GradeRecord]) -> Dict[str, Any]:
    """
    Overall average, letter distribution and per-subject averages.

    Records without a subject count toward the overall average only.
    """
    if not grades:
        return {"average": None, "letterDist": [], "subjects": []}

    df = _grades_frame(grades)
    marks = df["marks"].dropna()

    return _sanitize({
        "average": _safe_float(marks.mean()) if len(marks) else None,
        "letterDist": letter_distribution(grades),
        "subjects": subject_averages(df),
    })
