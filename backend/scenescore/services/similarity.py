"""Scene similarity scorer.

Scores a candidate preset's scene against the live query scene. Categorical
factors score 1 on equality and 0 otherwise; continuous factors score
``1 - |a - b|``. The weighted sum is divided by the weight actually applied,
so disabling a factor renormalizes instead of lowering every score.
"""

from __future__ import annotations

from typing import Callable, Iterable

from scenescore.models import SceneDescriptor

Factor = Callable[[SceneDescriptor, SceneDescriptor], float]


def _same(a, b) -> float:
    return 1.0 if a == b else 0.0


FACTORS: dict[str, tuple[float, Factor]] = {
    "environment": (0.30, lambda a, b: _same(a.environment, b.environment)),
    "action": (0.25, lambda a, b: _same(a.current_action, b.current_action)),
    "threat": (0.20, lambda a, b: 1.0 - abs(a.threat_level - b.threat_level)),
    "intensity": (0.15, lambda a, b: 1.0 - abs(a.intensity() - b.intensity())),
    "time_of_day": (0.10, lambda a, b: _same(a.time_of_day, b.time_of_day)),
}

DEFAULT_FACTORS = tuple(FACTORS)


def score(
    query: SceneDescriptor,
    candidate: SceneDescriptor,
    factors: Iterable[str] = DEFAULT_FACTORS,
) -> float:
    """Return the similarity of ``candidate`` to ``query`` in [0, 1].

    Unknown factor names raise KeyError. An empty factor set scores 0.
    """
    total = 0.0
    weight_sum = 0.0
    for name in factors:
        weight, factor = FACTORS[name]
        total += factor(query, candidate) * weight
        weight_sum += weight
    if weight_sum <= 0:
        return 0.0
    return max(0.0, min(1.0, total / weight_sum))
