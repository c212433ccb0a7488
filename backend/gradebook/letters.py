"""
letters.py — Mark to letter classification against configurable scale bands.

Bands are matched by descending ``min_percentage``; the first band whose
inclusive [min, max] range contains the mark wins. A missing ``max_percentage``
means 100. An unmatched mark yields None rather than an error.
"""

from typing import Any, Dict, Iterable, List, Optional

from gradebook.models import GradeBand


# Fallback bands for schools that have not configured a scale yet.
# (min_percentage, label, description), ordered high to low.
UNIVERSAL_BANDS = [
    (80.0, "A", "Excellent"),
    (70.0, "B", "Very Good"),
    (60.0, "C", "Good"),
    (50.0, "D", "Satisfactory"),
    (40.0, "E", "Needs Improvement"),
    (0.0, "F", "Poor"),
]


def universal_scale() -> List[GradeBand]:
    """Return the universal A-F scale as bands (max left open)."""
    bands = []
    for idx, (min_pct, label, _desc) in enumerate(UNIVERSAL_BANDS):
        max_pct = None if idx == 0 else UNIVERSAL_BANDS[idx - 1][0] - 0.01
        bands.append(GradeBand(grade=label, min_percentage=min_pct, max_percentage=max_pct))
    return bands


def _band_min(band: GradeBand) -> float:
    return float(band.min_percentage or 0)


def _band_max(band: GradeBand) -> float:
    return 100.0 if band.max_percentage is None else float(band.max_percentage)


def map_marks_to_letter(marks: Optional[float], bands: Optional[Iterable[GradeBand]]) -> Optional[str]:
    """Return the letter of the band containing ``marks``, or None."""
    if marks is None or not bands:
        return None
    try:
        m = float(marks)
    except (TypeError, ValueError):
        return None

    for band in sorted(bands, key=_band_min, reverse=True):
        if _band_min(band) <= m <= _band_max(band):
            return band.grade or None
    return None


def scale_thresholds(bands: Optional[Iterable[GradeBand]] = None) -> List[Dict[str, Any]]:
    """Return bands high to low with effective min/max, for legends."""
    bands = list(bands) if bands else universal_scale()
    return [
        {
            "grade": band.grade,
            "min": _band_min(band),
            "max": round(_band_max(band), 2),
        }
        for band in sorted(bands, key=_band_min, reverse=True)
    ]
