"""
Configuration Loader (``licensing_config.loader``).

Responsibility
--------------
Loads a configuration set's ``workflow.yaml`` and parses it into typed
``licensing_config.schema`` dataclasses.  This is build/test tooling; the
single runtime entry point is ``licensing_config.get_active_config()``.

Invariants enforced
-------------------
* Missing required keys raise ``KeyError``; no silent defaults for
  required fields.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the source.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from licensing_config.schema import (
    ChangeControlDef,
    PhaseDef,
    PipelineDef,
    ProtectedFieldDef,
    WorkflowConfigurationSet,
)

WORKFLOW_FILE = "workflow.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_phase(data: dict[str, Any]) -> PhaseDef:
    """Parse a PhaseDef from a dict."""
    return PhaseDef(
        name=data["name"],
        role=data["role"],
        branching=bool(data.get("branching", False)),
        branches=tuple(data.get("branches") or ()),
    )


def parse_pipeline(data: dict[str, Any]) -> PipelineDef:
    """Parse a PipelineDef from a dict."""
    return PipelineDef(
        name=data.get("name", "default"),
        phases=tuple(parse_phase(p) for p in data["phases"]),
        admin_role=data["admin_role"],
        completed_status=data.get("completed_status", "completed"),
        rejected_status=data.get("rejected_status", "rejected"),
    )


def parse_protected_field(data: dict[str, Any] | str) -> ProtectedFieldDef:
    """Parse a ProtectedFieldDef; a bare string is a scalar field."""
    if isinstance(data, str):
        return ProtectedFieldDef(name=data)
    return ProtectedFieldDef(
        name=data["name"],
        components=tuple(data.get("components") or ()),
    )


def parse_change_control(data: dict[str, Any]) -> ChangeControlDef:
    """Parse a ChangeControlDef from a dict."""
    return ChangeControlDef(
        subject_type=data["subject_type"],
        authorizer_role=data["authorizer_role"],
        protected_fields=tuple(
            parse_protected_field(f) for f in data.get("protected_fields", ())
        ),
    )


def parse_workflow_config(data: dict[str, Any]) -> WorkflowConfigurationSet:
    """
    Parse a complete configuration set from its YAML dict.

    Postconditions:
        - ``checksum`` is ``compute_checksum(data)``.
    """
    return WorkflowConfigurationSet(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        checksum=compute_checksum(data),
        pipeline=parse_pipeline(data["pipeline"]),
        change_control=parse_change_control(data["change_control"]),
        description=data.get("description", ""),
    )


def load_config_set(directory: Path) -> WorkflowConfigurationSet:
    """Load ``workflow.yaml`` from a configuration set directory."""
    return parse_workflow_config(load_yaml_file(directory / WORKFLOW_FILE))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
