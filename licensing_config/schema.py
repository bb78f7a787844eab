"""
WorkflowConfigurationSet schema.

Defines the human-authored, reviewable source artifact for the licensing
workflow.  YAML is parsed into these types by the loader, checked by the
validator, and turned into kernel definitions (PipelineDefinition,
ProtectedFieldSet) by the bridges.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PhaseDef:
    """One active phase and the role that owns it."""

    name: str
    role: str
    branching: bool = False
    branches: tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineDef:
    """Ordered pipeline plus its terminal statuses and administrative role."""

    name: str
    phases: tuple[PhaseDef, ...]
    admin_role: str
    completed_status: str = "completed"
    rejected_status: str = "rejected"


@dataclass(frozen=True)
class ProtectedFieldDef:
    """A protected field; ``components`` lists the owner attributes it covers.

    A scalar field covers one attribute with the field's own name.
    """

    name: str
    components: tuple[str, ...] = ()

    @property
    def attributes(self) -> tuple[str, ...]:
        return self.components or (self.name,)


@dataclass(frozen=True)
class ChangeControlDef:
    """Dual-control settings for one protected-field owner type."""

    subject_type: str
    authorizer_role: str
    protected_fields: tuple[ProtectedFieldDef, ...]


@dataclass(frozen=True)
class WorkflowConfigurationSet:
    """Human-authored, reviewable source artifact for the workflow.

    Attributes:
        config_id: Unique identifier (e.g., "LICENSING-DEFAULT")
        version: Configuration version number
        checksum: SHA-256 of the canonical serialization of the source YAML
        pipeline: Phase pipeline and role gate
        change_control: Protected fields and their authorizer role
    """

    config_id: str
    version: int
    checksum: str
    pipeline: PipelineDef
    change_control: ChangeControlDef
    description: str = ""
