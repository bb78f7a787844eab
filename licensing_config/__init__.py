"""
licensing_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain the workflow configuration at runtime
    through ``get_active_config()``: the phase order, the role that owns
    each phase, which phase may branch, the administrative role, and the
    protected fields with their authorizer role.

Architecture position:
    Configuration -- YAML-driven, validated before use.  This package sits
    above ``licensing_kernel`` and below ``licensing_services``.  The kernel
    MUST NEVER import from ``licensing_config``; ``bridges`` translates the
    configuration into kernel definitions.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - A set that fails validation is never returned.
    - Deterministic: the same YAML always produces the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- no configuration set with the requested name.
    - ``ConfigurationError`` -- validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``LICENSING_CONFIG_TRACE`` log entry carrying the config id, version,
    checksum and role map, tying every transition to the configuration
    that gated it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from licensing_config.loader import WORKFLOW_FILE, load_config_set
from licensing_config.schema import WorkflowConfigurationSet
from licensing_config.validator import validate_configuration
from licensing_kernel.exceptions import ConfigurationError

_logger = logging.getLogger("licensing_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_config(
    name: str = "default",
    config_dir: Path | None = None,
) -> WorkflowConfigurationSet:
    """The ONLY public configuration entrypoint.

    Args:
        name: Configuration set name (sub-directory of the sets directory).
        config_dir: Override path to the configuration sets directory.
            Defaults to licensing_config/sets/.

    Raises:
        FileNotFoundError: If the set does not exist.
        ConfigurationError: If validation fails.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    set_dir = sets_dir / name
    if not (set_dir / WORKFLOW_FILE).is_file():
        raise FileNotFoundError(
            f"No configuration set '{name}' in {sets_dir}"
        )

    config = load_config_set(set_dir)

    validation = validate_configuration(config)
    if not validation.is_valid:
        raise ConfigurationError(validation.errors)
    for warning in validation.warnings:
        _logger.warning(
            "config_validation_warning",
            extra={"config_set_id": config.config_id, "warning": warning},
        )

    _logger.info(
        "LICENSING_CONFIG_TRACE",
        extra={
            "trace_type": "LICENSING_CONFIG_TRACE",
            "config_set_id": config.config_id,
            "config_set_version": config.version,
            "checksum": config.checksum,
            "phase_count": len(config.pipeline.phases),
            "role_map": {p.name: p.role for p in config.pipeline.phases},
            "protected_field_count": len(config.change_control.protected_fields),
        },
    )

    return config


__all__ = [
    "WorkflowConfigurationSet",
    "get_active_config",
]
