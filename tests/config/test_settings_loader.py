"""
Engine settings loader.

Covers:
- Defaults when no file is loaded
- YAML files override individual keys; absent keys keep defaults
- Unknown sections and out-of-range values are rejected
- Thoroughness presets and the settings checksum
- Plan descriptors loaded from YAML feed PlanDefinition
"""

from decimal import Decimal

import pytest
import yaml

from ledger_config import (
    EngineSettings,
    compute_checksum,
    load_plan_descriptor,
    load_settings,
    settings_from_dict,
)
from ledger_ingestion.domain.types import PlanDefinition


class TestDefaults:
    def test_engine_defaults(self):
        settings = EngineSettings()

        assert settings.tolerance.amount == Decimal("0.01")
        assert (settings.severity.low_max, settings.severity.medium_max) == (Decimal("10"), Decimal("1000"))
        assert settings.parse.commit_chunk_size == 500
        assert settings.reconciliation.max_iterations == 3
        assert settings.reconciliation.assistant_timeout_seconds == 10.0
        assert settings.confidence.auto_apply == 0.95
        assert settings.confidence.stage_for_review == 0.70
        assert settings.confidence.investigation_floor == 0.60

    def test_empty_mapping_equals_defaults_apart_from_checksum(self):
        settings = settings_from_dict({})
        assert settings.reconciliation == EngineSettings().reconciliation
        assert settings.checksum == compute_checksum({})


class TestThoroughness:
    @pytest.mark.parametrize("preset, days", [(None, 7), ("quick", 3), ("balanced", 7), ("thorough", 14)])
    def test_presets(self, preset, days):
        assert EngineSettings().reconciliation.window_days(preset) == days

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="expected one of"):
            EngineSettings().reconciliation.window_days("forensic")

    def test_custom_preset_from_settings(self):
        settings = settings_from_dict({"reconciliation": {"thoroughness": {"forensic": 30}}})
        assert settings.reconciliation.window_days("forensic") == 30
        assert settings.reconciliation.window_days("quick") == 3


class TestLoadSettings:
    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "tolerance": {"amount": "0.005"},
                    "parse": {"commit_chunk_size": 50},
                    "confidence": {"auto_apply": 0.98},
                }
            )
        )

        settings = load_settings(path)

        assert settings.tolerance.amount == Decimal("0.005")
        assert settings.parse.commit_chunk_size == 50
        assert settings.parse.default_sample_size == 20
        assert settings.confidence.auto_apply == 0.98
        assert len(settings.checksum) == 64

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("")
        assert load_settings(path).confidence == EngineSettings().confidence

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            load_settings(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")

    def test_checksum_ignores_key_order(self):
        a = settings_from_dict({"tolerance": {"amount": "0.01"}, "parse": {"adjacency_window": 2}})
        b = settings_from_dict({"parse": {"adjacency_window": 2}, "tolerance": {"amount": "0.01"}})
        assert a.checksum == b.checksum


class TestRejectedValues:
    @pytest.mark.parametrize(
        "data, fragment",
        [
            ({"tolerences": {}}, "Unknown settings sections: tolerences"),
            ({"tolerance": {"amount": "-0.01"}}, "must not be negative"),
            ({"tolerance": {"amount": "a penny"}}, "not a decimal"),
            ({"severity": {"low_max": 2000}}, "low_max < medium_max"),
            ({"parse": {"commit_chunk_size": 0}}, "positive integer"),
            ({"parse": {"adjacency_window": True}}, "positive integer"),
            ({"reconciliation": {"assistant_timeout_seconds": -1}}, "positive number"),
            ({"confidence": {"auto_apply": 1.5}}, r"\[0, 1\]"),
            ({"confidence": {"stage_for_review": 0.5}}, "investigation_floor <= stage_for_review"),
        ],
    )
    def test_rejected(self, data, fragment):
        with pytest.raises(ValueError, match=fragment):
            settings_from_dict(data)


def test_plan_descriptor_from_yaml(tmp_path):
    path = tmp_path / "checking.yaml"
    path.write_text(
        """
account_id: checking:42
currency: usd
dialect:
  format: csv
  delimiter: ";"
schema:
  fields:
    - {name: date, type: date, format: "%d.%m.%Y"}
    - {name: amount, type: currency}
    - {name: balance, type: currency}
transform_steps:
  - {name: clean_amount, kind: strip, target_field: amount}
"""
    )

    definition = PlanDefinition.from_dict(load_plan_descriptor(path))

    assert definition.account_id == "checking:42"
    assert definition.currency == "USD"
    assert definition.dialect.delimiter == ";"
    assert [f.name for f in definition.schema.fields] == ["date", "amount", "balance"]
    assert definition.transform_steps[0].kind == "strip"
