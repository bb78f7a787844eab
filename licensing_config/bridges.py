"""
Config -> Kernel Bridges.

Functions that convert a validated WorkflowConfigurationSet into kernel
definitions.  These live in licensing_config (the producer) because the
kernel must NEVER import licensing_config.

Usage:
    from licensing_config import get_active_config
    from licensing_config.bridges import build_pipeline, build_protected_fields

    config = get_active_config()
    pipeline = build_pipeline(config)
    fields = build_protected_fields(config)
"""

from __future__ import annotations

from licensing_config.schema import WorkflowConfigurationSet
from licensing_kernel.domain.pipeline import PhaseDefinition, PipelineDefinition
from licensing_kernel.domain.protected_fields import ProtectedField, ProtectedFieldSet


def build_pipeline(config: WorkflowConfigurationSet) -> PipelineDefinition:
    """Build the kernel PipelineDefinition from the configured pipeline."""
    p = config.pipeline
    return PipelineDefinition(
        phases=tuple(
            PhaseDefinition(
                name=phase.name,
                role=phase.role,
                supports_branching=phase.branching,
                allowed_branches=phase.branches,
            )
            for phase in p.phases
        ),
        admin_role=p.admin_role,
        completed_status=p.completed_status,
        rejected_status=p.rejected_status,
        name=p.name,
    )


def build_protected_fields(config: WorkflowConfigurationSet) -> ProtectedFieldSet:
    """Build the kernel ProtectedFieldSet for the configured owner type."""
    cc = config.change_control
    return ProtectedFieldSet(
        subject_type=cc.subject_type,
        fields=tuple(
            ProtectedField(name=f.name, components=f.attributes)
            for f in cc.protected_fields
        ),
    )
