"""
Engine settings schema.

Every tunable number the parse and reconciliation engines read lives in one
of the frozen dataclasses below.  The loader builds an ``EngineSettings``
from YAML; callers that never load a file get the defaults.

    EngineSettings
      |-- tolerance        ToleranceSettings
      |-- severity         SeverityBands
      |-- parse            ParseSettings
      |-- reconciliation   ReconciliationSettings
      +-- confidence       ConfidencePolicy
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class ToleranceSettings:
    """Amount below which two money values are treated as equal."""

    amount: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class SeverityBands:
    """
    Upper bounds (inclusive) of the LOW and MEDIUM discrepancy bands.

    LOW covers (tolerance, low_max], MEDIUM covers (low_max, medium_max],
    anything larger is CRITICAL.
    """

    low_max: Decimal = Decimal("10")
    medium_max: Decimal = Decimal("1000")


@dataclass(frozen=True)
class ParseSettings:
    commit_chunk_size: int = 500
    transform_step_timeout_seconds: float = 2.0
    default_sample_size: int = 20
    adjacency_window: int = 3


THOROUGHNESS_PRESETS: dict[str, int] = {
    "quick": 3,
    "balanced": 7,
    "thorough": 14,
}


@dataclass(frozen=True)
class ReconciliationSettings:
    max_iterations: int = 3
    assistant_timeout_seconds: float = 10.0
    context_window_days: int = 7
    thoroughness: dict[str, int] = field(
        default_factory=lambda: dict(THOROUGHNESS_PRESETS)
    )

    def window_days(self, preset: str | None) -> int:
        """Context window for a thoroughness preset, or the default window."""
        if preset is None:
            return self.context_window_days
        try:
            return self.thoroughness[preset]
        except KeyError:
            raise ValueError(
                f"Unknown thoroughness preset {preset!r}; "
                f"expected one of {sorted(self.thoroughness)}"
            ) from None


@dataclass(frozen=True)
class ConfidencePolicy:
    """
    Confidence gates for Assistant-proposed fixes.

    ``auto_apply``: at or above, a validated fix is applied without review.
    ``stage_for_review``: at or above (and below auto_apply), the fix waits
    in the manual-review queue.
    ``investigation_floor``: an investigation whose best fix is below this
    is routed to manual review as a whole.
    """

    auto_apply: float = 0.95
    stage_for_review: float = 0.70
    investigation_floor: float = 0.60


@dataclass(frozen=True)
class EngineSettings:
    tolerance: ToleranceSettings = field(default_factory=ToleranceSettings)
    severity: SeverityBands = field(default_factory=SeverityBands)
    parse: ParseSettings = field(default_factory=ParseSettings)
    reconciliation: ReconciliationSettings = field(
        default_factory=ReconciliationSettings
    )
    confidence: ConfidencePolicy = field(default_factory=ConfidencePolicy)
    checksum: str = ""
