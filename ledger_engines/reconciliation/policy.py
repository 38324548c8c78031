"""
Confidence gates for proposed fixes -- pure functions.

    confidence >= auto_apply                     -> AUTO_APPLY
    stage_for_review <= confidence < auto_apply  -> STAGE (manual approval)
    confidence < stage_for_review                -> BELOW_THRESHOLD (never applied)

Independently, an investigation whose best fix is below
``investigation_floor`` is routed to manual review as a whole and none of
its fixes is considered.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class GateDecision(str, Enum):
    AUTO_APPLY = "auto_apply"
    STAGE = "stage"
    BELOW_THRESHOLD = "below_threshold"


def route_fix(
    confidence: float,
    *,
    auto_apply: float = 0.95,
    stage_for_review: float = 0.70,
) -> GateDecision:
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence must be in [0, 1], got {confidence}")
    if confidence >= auto_apply:
        return GateDecision.AUTO_APPLY
    if confidence >= stage_for_review:
        return GateDecision.STAGE
    return GateDecision.BELOW_THRESHOLD


def investigation_below_floor(
    confidences: Iterable[float], *, investigation_floor: float = 0.60
) -> bool:
    """True when no fix reaches the floor (including when there are none)."""
    return not any(c >= investigation_floor for c in confidences)
