"""
trends.py — Per-subject mark series and next-mark predictions.

Series are re-indexed x = 1, 2, 3, ... after ordering by creation time, so
assessments are treated as evenly spaced whatever the calendar gap between
them.
"""

import math
from typing import Any, Dict, List, Optional

from gradebook.models import GradeRecord, timestamp_of
from gradebook.stats import linear_regression, moving_average

DEFAULT_WINDOW = 3


def build_subject_series(grades: List[GradeRecord]) -> List[Dict[str, Any]]:
    """
    Group grades by subject into [{subjectId, subjectName, points}].

    Records without a subject are ignored, null marks are dropped, and the
    remaining points are ordered by timestamp and numbered from 1.
    """
    by_subject: Dict[str, Dict[str, Any]] = {}
    for g in grades:
        if not g.subject_id:
            continue
        entry = by_subject.setdefault(
            g.subject_id,
            {"subjectId": g.subject_id, "subjectName": g.subject_name or "Subject", "raw": []},
        )
        if g.marks_obtained is not None:
            entry["raw"].append((timestamp_of(g.created_at), float(g.marks_obtained)))

    series = []
    for entry in by_subject.values():
        ordered = sorted(entry.pop("raw"), key=lambda p: p[0])
        entry["points"] = [{"x": i + 1, "y": y} for i, (_, y) in enumerate(ordered)]
        series.append(entry)
    return series


def predict_next_mark(points: List[Dict[str, Any]], window: int = DEFAULT_WINDOW) -> Optional[float]:
    """
    Regression value at the next index, falling back to the moving average.

    An empty series has nothing to extrapolate from and predicts None.
    """
    if not points:
        return None
    next_x = points[-1]["x"] + 1
    predicted = linear_regression(points).predict(next_x)
    if predicted is not None and math.isfinite(predicted):
        return predicted
    return moving_average(points, window)


def compute_predictions(series: List[Dict[str, Any]], window: int = DEFAULT_WINDOW) -> List[Dict[str, Any]]:
    """One {subjectId, subjectName, predictedNextMark} per subject series."""
    return [
        {
            "subjectId": s["subjectId"],
            "subjectName": s["subjectName"],
            "predictedNextMark": predict_next_mark(s["points"], window),
        }
        for s in series
    ]
