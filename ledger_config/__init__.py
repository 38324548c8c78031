"""
ledger_config -- engine settings.

Responsibility:
    Typed, frozen settings for tolerances, severity bands, parse chunking
    and timeouts, reconciliation limits and confidence gates.  Settings are
    passed explicitly to services; nothing here is global state.

Architecture position:
    Configuration.  Imports nothing from the other ledger packages.
"""

from ledger_config.loader import (
    compute_checksum,
    load_plan_descriptor,
    load_settings,
    settings_from_dict,
)
from ledger_config.schema import (
    THOROUGHNESS_PRESETS,
    ConfidencePolicy,
    EngineSettings,
    ParseSettings,
    ReconciliationSettings,
    SeverityBands,
    ToleranceSettings,
)

__all__ = [
    "THOROUGHNESS_PRESETS",
    "ConfidencePolicy",
    "EngineSettings",
    "ParseSettings",
    "ReconciliationSettings",
    "SeverityBands",
    "ToleranceSettings",
    "compute_checksum",
    "load_plan_descriptor",
    "load_settings",
    "settings_from_dict",
]
