"""
Settings loader (``ledger_config.loader``).

Responsibility
--------------
Loads YAML settings files and plan descriptors into typed, frozen values.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or mis-ordered values  -> ``ValueError``.
* Unknown top-level section  -> ``ValueError`` (typos must not silently
  fall back to defaults).
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import (
    ConfidencePolicy,
    EngineSettings,
    ParseSettings,
    ReconciliationSettings,
    SeverityBands,
    ToleranceSettings,
)

_SECTIONS = ("tolerance", "severity", "parse", "reconciliation", "confidence")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file and return its contents as a dict."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{name}: {value!r} is not a decimal") from None
    if not result.is_finite():
        raise ValueError(f"{name}: {value!r} is not finite")
    return result


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name}: expected a positive integer, got {value!r}")
    return value


def _positive_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ValueError(f"{name}: expected a positive number, got {value!r}")
    return float(value)


def _unit_float(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or not 0 <= value <= 1:
        raise ValueError(f"{name}: expected a number in [0, 1], got {value!r}")
    return float(value)


def parse_tolerance(data: dict[str, Any]) -> ToleranceSettings:
    amount = _decimal(data.get("amount", ToleranceSettings.amount), "tolerance.amount")
    if amount < 0:
        raise ValueError("tolerance.amount must not be negative")
    return ToleranceSettings(amount=amount)


def parse_severity(data: dict[str, Any]) -> SeverityBands:
    defaults = SeverityBands()
    low_max = _decimal(data.get("low_max", defaults.low_max), "severity.low_max")
    medium_max = _decimal(
        data.get("medium_max", defaults.medium_max), "severity.medium_max"
    )
    if not Decimal("0") < low_max < medium_max:
        raise ValueError(
            f"severity bands must satisfy 0 < low_max < medium_max, "
            f"got {low_max} / {medium_max}"
        )
    return SeverityBands(low_max=low_max, medium_max=medium_max)


def parse_parse_settings(data: dict[str, Any]) -> ParseSettings:
    defaults = ParseSettings()
    return ParseSettings(
        commit_chunk_size=_positive_int(
            data.get("commit_chunk_size", defaults.commit_chunk_size),
            "parse.commit_chunk_size",
        ),
        transform_step_timeout_seconds=_positive_float(
            data.get(
                "transform_step_timeout_seconds",
                defaults.transform_step_timeout_seconds,
            ),
            "parse.transform_step_timeout_seconds",
        ),
        default_sample_size=_positive_int(
            data.get("default_sample_size", defaults.default_sample_size),
            "parse.default_sample_size",
        ),
        adjacency_window=_positive_int(
            data.get("adjacency_window", defaults.adjacency_window),
            "parse.adjacency_window",
        ),
    )


def parse_reconciliation(data: dict[str, Any]) -> ReconciliationSettings:
    defaults = ReconciliationSettings()
    thoroughness = dict(defaults.thoroughness)
    for name, days in (data.get("thoroughness") or {}).items():
        thoroughness[str(name)] = _positive_int(days, f"reconciliation.thoroughness.{name}")
    return ReconciliationSettings(
        max_iterations=_positive_int(
            data.get("max_iterations", defaults.max_iterations),
            "reconciliation.max_iterations",
        ),
        assistant_timeout_seconds=_positive_float(
            data.get("assistant_timeout_seconds", defaults.assistant_timeout_seconds),
            "reconciliation.assistant_timeout_seconds",
        ),
        context_window_days=_positive_int(
            data.get("context_window_days", defaults.context_window_days),
            "reconciliation.context_window_days",
        ),
        thoroughness=thoroughness,
    )


def parse_confidence(data: dict[str, Any]) -> ConfidencePolicy:
    defaults = ConfidencePolicy()
    policy = ConfidencePolicy(
        auto_apply=_unit_float(
            data.get("auto_apply", defaults.auto_apply), "confidence.auto_apply"
        ),
        stage_for_review=_unit_float(
            data.get("stage_for_review", defaults.stage_for_review),
            "confidence.stage_for_review",
        ),
        investigation_floor=_unit_float(
            data.get("investigation_floor", defaults.investigation_floor),
            "confidence.investigation_floor",
        ),
    )
    if not policy.investigation_floor <= policy.stage_for_review <= policy.auto_apply:
        raise ValueError(
            "confidence gates must satisfy "
            "investigation_floor <= stage_for_review <= auto_apply"
        )
    return policy


def settings_from_dict(data: dict[str, Any]) -> EngineSettings:
    """
    Build ``EngineSettings`` from a parsed mapping.

    Absent sections and keys take their defaults; the checksum covers the
    mapping exactly as given.
    """
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown settings sections: {', '.join(unknown)}")
    return EngineSettings(
        tolerance=parse_tolerance(data.get("tolerance") or {}),
        severity=parse_severity(data.get("severity") or {}),
        parse=parse_parse_settings(data.get("parse") or {}),
        reconciliation=parse_reconciliation(data.get("reconciliation") or {}),
        confidence=parse_confidence(data.get("confidence") or {}),
        checksum=compute_checksum(data),
    )


def load_settings(path: Path | str) -> EngineSettings:
    return settings_from_dict(load_yaml_file(Path(path)))


def load_plan_descriptor(path: Path | str) -> dict[str, Any]:
    """
    Load a plan descriptor (dialect, schema, steps, rules) as a raw mapping.

    Structural validation happens in ``PlanDefinition.from_dict``.
    """
    return load_yaml_file(Path(path))
