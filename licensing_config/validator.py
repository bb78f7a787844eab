"""
Configuration Validator (``licensing_config.validator``).

Responsibility
--------------
Validates a ``WorkflowConfigurationSet`` before it is bridged into kernel
definitions.

Invariants enforced
-------------------
* Static 1:1 role map -- every phase has a role and no role owns two phases.
* Terminal statuses are distinct and never declared as active phases.
* Branching is only allowed on the phase that precedes ``club_review``
  (when a club review phase exists), and branch lists only on branching
  phases.
* Protected fields are unique, never share an attribute, and composite
  fields cover at least two attributes.
* The change authorizer role is declared.

Failure modes
-------------
* Validation errors (``ConfigValidationResult.errors``) -> the set MUST NOT
  be used.
* Warnings -> usable, but should be reviewed.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from licensing_config.schema import WorkflowConfigurationSet

CLUB_REVIEW_PHASE = "club_review"


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` returns ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: WorkflowConfigurationSet) -> ConfigValidationResult:
    """Validate a configuration set."""
    result = ConfigValidationResult()

    _validate_phases(config, result)
    _validate_role_map(config, result)
    _validate_branching(config, result)
    _validate_protected_fields(config, result)
    _validate_authorizer(config, result)

    return result


def _validate_phases(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    pipeline = config.pipeline
    if not pipeline.phases:
        result.add_error("pipeline declares no phases")
        return
    counts = Counter(p.name for p in pipeline.phases)
    for name, n in sorted(counts.items()):
        if n > 1:
            result.add_error(f"phase '{name}' is declared {n} times")
    if pipeline.completed_status == pipeline.rejected_status:
        result.add_error("completed_status and rejected_status must differ")
    for terminal in (pipeline.completed_status, pipeline.rejected_status):
        if terminal in counts:
            result.add_error(f"terminal status '{terminal}' is declared as an active phase")


def _validate_role_map(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    pipeline = config.pipeline
    for phase in pipeline.phases:
        if not phase.role:
            result.add_error(f"phase '{phase.name}' has no role")
    roles = Counter(p.role for p in pipeline.phases if p.role)
    for role, n in sorted(roles.items()):
        if n > 1:
            result.add_error(f"role '{role}' owns {n} phases")
    if not pipeline.admin_role:
        result.add_error("admin_role is required")
    elif pipeline.admin_role in roles:
        result.add_warning(
            f"admin_role '{pipeline.admin_role}' also owns a phase"
        )


def _validate_branching(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    phases = config.pipeline.phases
    names = [p.name for p in phases]
    branching_host = None
    if CLUB_REVIEW_PHASE in names:
        idx = names.index(CLUB_REVIEW_PHASE)
        branching_host = names[idx - 1] if idx > 0 else None

    for phase in phases:
        if phase.branches and not phase.branching:
            result.add_error(f"phase '{phase.name}' lists branches but is not branching")
        if phase.branching and branching_host is not None and phase.name != branching_host:
            result.add_error(
                f"phase '{phase.name}' cannot branch; only '{branching_host}' "
                f"(the phase before '{CLUB_REVIEW_PHASE}') may"
            )
        if len(set(phase.branches)) != len(phase.branches):
            result.add_error(f"phase '{phase.name}' lists a branch more than once")


def _validate_protected_fields(
    config: WorkflowConfigurationSet, result: ConfigValidationResult,
) -> None:
    fields = config.change_control.protected_fields
    if not fields:
        result.add_warning("no protected fields declared")
    counts = Counter(f.name for f in fields)
    for name, n in sorted(counts.items()):
        if n > 1:
            result.add_error(f"protected field '{name}' is declared {n} times")

    owner: dict[str, str] = {}
    for f in fields:
        if f.components and len(f.components) < 2:
            result.add_error(
                f"composite field '{f.name}' must cover at least two attributes"
            )
        for attr in f.attributes:
            if attr in owner and owner[attr] != f.name:
                result.add_error(
                    f"attribute '{attr}' is covered by both '{owner[attr]}' and '{f.name}'"
                )
            owner[attr] = f.name


def _validate_authorizer(config: WorkflowConfigurationSet, result: ConfigValidationResult) -> None:
    if not config.change_control.authorizer_role:
        result.add_error("change_control.authorizer_role is required")
    if not config.change_control.subject_type:
        result.add_error("change_control.subject_type is required")
