"""Tests for workflow configuration loading, validation and bridging.

Verifies that the default set loads and validates, that malformed sets are
refused before use, and that the bridges produce kernel definitions that
match the YAML.
"""
from __future__ import annotations

import copy
import logging

import pytest
import yaml

from licensing_config import get_active_config
from licensing_config.bridges import build_pipeline, build_protected_fields
from licensing_config.loader import (
    WORKFLOW_FILE,
    compute_checksum,
    load_yaml_file,
    parse_workflow_config,
)
from licensing_config.validator import validate_configuration
from licensing_kernel.exceptions import ConfigurationError

BASE = {
    "config_id": "TEST-SET",
    "version": 2,
    "pipeline": {
        "name": "test",
        "admin_role": "operator",
        "phases": [
            {"name": "intake", "role": "dealer"},
            {"name": "registry_review", "role": "registry", "branching": True},
            {"name": "club_review", "role": "club"},
            {"name": "registry_final", "role": "cfr"},
        ],
    },
    "change_control": {
        "subject_type": "applicant_profile",
        "authorizer_role": "registry",
        "protected_fields": [
            "id_number",
            {"name": "location", "components": ["province", "town"]},
        ],
    },
}


def _write_set(tmp_path, data, name="custom"):
    set_dir = tmp_path / name
    set_dir.mkdir()
    (set_dir / WORKFLOW_FILE).write_text(yaml.safe_dump(data))
    return tmp_path


def _variant(**edits):
    data = copy.deepcopy(BASE)
    for path, value in edits.items():
        node = data
        keys = path.split("__")
        for key in keys[:-1]:
            node = node[key]
        node[keys[-1]] = value
    return data


class TestDefaultSet:

    def test_default_set_loads(self, config):
        assert config.config_id == "LICENSING-DEFAULT"
        assert config.version == 1
        assert len(config.checksum) == 64
        assert config.pipeline.admin_role == "operator"
        assert config.change_control.authorizer_role == "registry"

    def test_default_set_is_valid(self, config):
        result = validate_configuration(config)
        assert result.is_valid, result.errors

    def test_config_trace_logged(self, captured_logs):
        get_active_config()
        traces = [r for r in captured_logs() if r["message"] == "LICENSING_CONFIG_TRACE"]
        assert traces
        assert traces[-1]["config_set_id"] == "LICENSING-DEFAULT"
        assert traces[-1]["role_map"]["intake"] == "dealer"

    def test_missing_set_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config("nope", config_dir=tmp_path)


class TestLoader:

    def test_checksum_is_deterministic(self):
        assert compute_checksum(BASE) == compute_checksum(copy.deepcopy(BASE))
        assert compute_checksum(BASE) != compute_checksum(_variant(version=3))

    def test_bare_string_is_scalar_field(self):
        config = parse_workflow_config(BASE)
        scalar, composite = config.change_control.protected_fields
        assert scalar.attributes == ("id_number",)
        assert composite.attributes == ("province", "town")

    def test_missing_required_key_raises(self):
        data = copy.deepcopy(BASE)
        del data["pipeline"]["admin_role"]
        with pytest.raises(KeyError):
            parse_workflow_config(data)

    def test_round_trip_through_file(self, tmp_path):
        _write_set(tmp_path, BASE)
        data = load_yaml_file(tmp_path / "custom" / WORKFLOW_FILE)
        assert data == BASE

    def test_custom_set_directory(self, tmp_path):
        config = get_active_config("custom", config_dir=_write_set(tmp_path, BASE))
        assert config.config_id == "TEST-SET"
        assert config.version == 2


class TestValidator:

    def test_role_owning_two_phases(self):
        data = _variant()
        data["pipeline"]["phases"][2]["role"] = "dealer"
        result = validate_configuration(parse_workflow_config(data))
        assert any("owns 2 phases" in e for e in result.errors)

    def test_branching_only_before_club_review(self):
        data = _variant()
        data["pipeline"]["phases"][3]["branching"] = True
        result = validate_configuration(parse_workflow_config(data))
        assert any("cannot branch" in e for e in result.errors)

    def test_branches_on_non_branching_phase(self):
        data = _variant()
        data["pipeline"]["phases"][0]["branches"] = ["club-a"]
        result = validate_configuration(parse_workflow_config(data))
        assert any("lists branches" in e for e in result.errors)

    def test_composite_needs_two_parts(self):
        data = _variant()
        data["change_control"]["protected_fields"][1]["components"] = ["province"]
        result = validate_configuration(parse_workflow_config(data))
        assert any("at least two attributes" in e for e in result.errors)

    def test_overlapping_attributes(self):
        data = _variant()
        data["change_control"]["protected_fields"].append("town")
        result = validate_configuration(parse_workflow_config(data))
        assert any("covered by both" in e for e in result.errors)

    def test_terminal_status_as_phase(self):
        data = _variant()
        data["pipeline"]["phases"].append({"name": "completed", "role": "x"})
        result = validate_configuration(parse_workflow_config(data))
        assert any("terminal status" in e for e in result.errors)

    def test_missing_authorizer(self):
        result = validate_configuration(
            parse_workflow_config(_variant(change_control__authorizer_role=""))
        )
        assert not result.is_valid

    def test_admin_owning_phase_is_a_warning(self):
        data = _variant(pipeline__admin_role="registry")
        result = validate_configuration(parse_workflow_config(data))
        assert result.is_valid
        assert result.warnings

    def test_invalid_set_never_returned(self, tmp_path):
        data = _variant()
        data["pipeline"]["phases"][2]["role"] = "dealer"
        with pytest.raises(ConfigurationError) as exc_info:
            get_active_config("custom", config_dir=_write_set(tmp_path, data))
        assert exc_info.value.errors

    def test_warnings_are_logged(self, tmp_path, captured_logs):
        data = _variant(pipeline__admin_role="registry")
        get_active_config("custom", config_dir=_write_set(tmp_path, data))
        assert any(
            r["message"] == "config_validation_warning" and r["level"] == "WARNING"
            for r in captured_logs()
        )


class TestBridges:

    def test_pipeline_matches_yaml(self, config):
        pipeline = build_pipeline(config)
        assert [p.name for p in pipeline.phases] == [p.name for p in config.pipeline.phases]
        assert pipeline.phase("registry_review").supports_branching
        assert pipeline.admin_role == "operator"

    def test_protected_fields_match_yaml(self, config):
        fields = build_protected_fields(config)
        assert fields.require("location").components == ("province", "town")
        assert fields.require("full_name").components == ("full_name",)

    def test_branch_allow_list_is_carried(self):
        data = _variant()
        data["pipeline"]["phases"][1]["branches"] = ["club-a", "club-b"]
        pipeline = build_pipeline(parse_workflow_config(data))
        assert pipeline.phase("registry_review").allowed_branches == ("club-a", "club-b")
