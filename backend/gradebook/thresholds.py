"""
thresholds.py — Weight-config lookup and pass-threshold resolution.

A config applies to a scope when each of its scope fields is either unset
(wildcard) or equal to the scope's value; a level-scoped config also applies
when the scope's level is unknown. Among the applicable configs the
most specific wins: subject+class, then subject, then class, then school
level, then the year-wide default.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from gradebook.errors import ValidationError
from gradebook.models import GradeBand, GradingScale, WeightConfig
from gradebook.store import GradeStore

logger = logging.getLogger(__name__)

DEFAULT_PASS_THRESHOLD = 50.0
PASSING_PREFIXES = ("A", "B", "C", "P")


@dataclass(frozen=True)
class Scope:
    school_id: str
    academic_year_id: str
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    school_level_id: Optional[str] = None

    def validate(self):
        missing = [
            name for name, value in (("schoolId", self.school_id), ("academicYearId", self.academic_year_id))
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError.missing(*missing)


def _applies(config: WeightConfig, scope: Scope) -> bool:
    for field_name in ("class_id", "subject_id"):
        wanted = getattr(config, field_name)
        if wanted is not None and wanted != getattr(scope, field_name):
            return False
    # An unknown scope level matches any level-scoped config.
    if config.school_level_id is not None and scope.school_level_id is not None:
        return config.school_level_id == scope.school_level_id
    return True


def _specificity(config: WeightConfig) -> Tuple[bool, bool, bool, bool]:
    return (
        config.subject_id is not None,
        config.class_id is not None,
        config.school_level_id is not None,
        bool(config.is_default),
    )


def select_weight_config(configs: List[WeightConfig], scope: Scope) -> Optional[WeightConfig]:
    """Pick the most specific config applicable to ``scope``; first one wins on ties."""
    best = None
    for config in configs:
        if config.school_id != scope.school_id or config.academic_year_id != scope.academic_year_id:
            continue
        if not _applies(config, scope):
            continue
        if best is None or _specificity(config) > _specificity(best):
            best = config
    return best


def resolve_grading_scale(store: GradeStore, scope: Scope) -> Optional[GradingScale]:
    """Grading scale attached to the best config for ``scope``, if any."""
    config = select_weight_config(store.list_weight_configs(scope.school_id, scope.academic_year_id), scope)
    if config is None or not config.grading_scale_id:
        return None
    return store.get_grading_scale(scope.school_id, config.grading_scale_id)


def passing_bands(bands: List[GradeBand]) -> List[GradeBand]:
    """Bands whose label starts with A, B, C or P (case-insensitive)."""
    return [b for b in bands if (b.grade or "").strip().upper().startswith(PASSING_PREFIXES)]


def pass_threshold_from_bands(bands: Optional[List[GradeBand]], default: float = DEFAULT_PASS_THRESHOLD) -> float:
    """Lowest ``min_percentage`` among passing bands, else ``default``."""
    candidates = passing_bands(bands or [])
    if not candidates:
        return float(default)
    return min(float(b.min_percentage or 0) for b in candidates)


def resolve_pass_threshold(
    store: GradeStore, scope: Scope, default: float = DEFAULT_PASS_THRESHOLD
) -> float:
    """
    Pass threshold for a scope.

    Missing config, missing scale or a scale with no passing band all fall
    back to ``default`` (50 unless configured otherwise).
    """
    scope.validate()
    scale = resolve_grading_scale(store, scope)
    if scale is None:
        logger.debug("No grading scale for %s; using default pass threshold %s", scope, default)
        return float(default)
    return pass_threshold_from_bands(scale.bands, default=default)
