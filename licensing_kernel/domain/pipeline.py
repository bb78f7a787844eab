"""
Phase pipeline definition and replay (``licensing_kernel.domain.pipeline``).

Responsibility
--------------
Pure value objects for the licensing phase pipeline: the ordered active
phases, the role that owns each phase, which phases may branch, and the
rules that say which ``from_status -> to_status`` edges each transition
action may produce.  ``replay_status`` folds a history into a status so the
Phase Engine (and tests) can check that the history reproduces the stored
status exactly.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.  The
pipeline is built from YAML by ``licensing_config.bridges`` but can be
constructed directly, which keeps the state machine testable without any
configuration files.

Invariants enforced
-------------------
* Each active phase is owned by exactly one role and each role owns at
  most one phase (static 1:1 map).
* ``completed`` and ``rejected`` are terminal; they never appear as active
  phases.
* Flag, unflag and request-info never change status; advance and forward
  move to the next phase in pipeline order; reject moves to ``rejected``;
  reset moves to an active phase from any status.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol

from licensing_kernel.exceptions import ConfigurationError

INTAKE = "intake"
REGISTRY_REVIEW = "registry_review"
CLUB_REVIEW = "club_review"
POLICE_REVIEW = "police_review"
PROVINCE_REVIEW = "province_review"
INTELLIGENCE_REVIEW = "intelligence_review"
REGISTRY_FINAL = "registry_final"
COMPLETED = "completed"
REJECTED = "rejected"


class TransitionAction(str, Enum):
    """Kinds of history entries."""

    # Application pipeline
    ADVANCE = "advance"
    REJECT = "reject"
    FLAG = "flag"
    UNFLAG = "unflag"
    FORWARD = "forward"
    REQUEST_INFO = "request_info"
    RESET = "reset"

    # Protected-field owners
    CHANGE_PROPOSED = "change_proposed"
    CHANGE_APPROVED = "change_approved"
    CHANGE_REJECTED = "change_rejected"
    ADMIN_PATCH = "admin_patch"


# Annotations layered on the pipeline; they keep the status unchanged.
STATUS_PRESERVING_ACTIONS: frozenset[TransitionAction] = frozenset({
    TransitionAction.FLAG,
    TransitionAction.UNFLAG,
    TransitionAction.REQUEST_INFO,
})


@dataclass(frozen=True)
class PhaseDefinition:
    """One active phase of the pipeline.

    ``allowed_branches`` is an optional allow-list for ``forward``; an empty
    tuple on a branching phase accepts any non-empty branch name.
    """

    name: str
    role: str
    supports_branching: bool = False
    allowed_branches: tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineDefinition:
    """The fixed, ordered licensing pipeline.

    Contract: frozen; validated at construction.
    Guarantees: ``phases[0]`` is the intake phase; the terminal approved
    status follows the last active phase.
    """

    phases: tuple[PhaseDefinition, ...]
    admin_role: str
    completed_status: str = COMPLETED
    rejected_status: str = REJECTED
    name: str = "default"

    def __post_init__(self) -> None:
        errors = self.structural_errors()
        if errors:
            raise ConfigurationError(errors)

    def structural_errors(self) -> list[str]:
        errors: list[str] = []
        if not self.phases:
            errors.append("pipeline has no active phases")
        names = [p.name for p in self.phases]
        roles = [p.role for p in self.phases]
        for dup in sorted({n for n in names if names.count(n) > 1}):
            errors.append(f"phase '{dup}' is declared more than once")
        for dup in sorted({r for r in roles if roles.count(r) > 1}):
            errors.append(f"role '{dup}' owns more than one phase")
        for phase in self.phases:
            if not phase.role:
                errors.append(f"phase '{phase.name}' has no role")
            if phase.name in (self.completed_status, self.rejected_status):
                errors.append(f"terminal status '{phase.name}' declared as active phase")
            if phase.allowed_branches and not phase.supports_branching:
                errors.append(f"phase '{phase.name}' lists branches but does not branch")
        if self.completed_status == self.rejected_status:
            errors.append("completed and rejected statuses must differ")
        if not self.admin_role:
            errors.append("admin role is required")
        return errors

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def initial_status(self) -> str:
        return self.phases[0].name

    @property
    def active_statuses(self) -> tuple[str, ...]:
        return tuple(p.name for p in self.phases)

    @property
    def terminal_statuses(self) -> frozenset[str]:
        return frozenset({self.completed_status, self.rejected_status})

    @property
    def statuses(self) -> tuple[str, ...]:
        return self.active_statuses + (self.completed_status, self.rejected_status)

    def phase(self, status: str) -> PhaseDefinition | None:
        for p in self.phases:
            if p.name == status:
                return p
        return None

    def is_active(self, status: str) -> bool:
        return self.phase(status) is not None

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal_statuses

    def role_for(self, status: str) -> str | None:
        p = self.phase(status)
        return p.role if p else None

    def phase_for_role(self, role: str) -> str | None:
        for p in self.phases:
            if p.role == role:
                return p.name
        return None

    def next_status(self, status: str) -> str:
        """Status that follows *status* in pipeline order.

        Raises:
            ValueError: *status* is not an active phase.
        """
        names = self.active_statuses
        if status not in names:
            raise ValueError(f"'{status}' is not an active phase")
        idx = names.index(status)
        if idx + 1 < len(names):
            return names[idx + 1]
        return self.completed_status

    # ------------------------------------------------------------------
    # Edge rules
    # ------------------------------------------------------------------

    def is_valid_edge(
        self,
        action: TransitionAction,
        from_status: str,
        to_status: str,
    ) -> bool:
        """Whether *action* may move an application from one status to another."""
        if action == TransitionAction.RESET:
            return self.is_active(to_status)
        if not self.is_active(from_status):
            return False
        if action in STATUS_PRESERVING_ACTIONS:
            return to_status == from_status
        if action == TransitionAction.ADVANCE:
            return to_status == self.next_status(from_status)
        if action == TransitionAction.FORWARD:
            phase = self.phase(from_status)
            return phase.supports_branching and to_status == self.next_status(from_status)
        if action == TransitionAction.REJECT:
            return to_status == self.rejected_status
        return False


class HistoryFold(Protocol):
    """Minimal view of a history entry needed for replay."""

    sequence: int
    action: TransitionAction | str
    from_status: str
    to_status: str


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of folding a history.

    ``divergent_sequence`` is the first sequence whose ``from_status`` did not
    match the running state, whose edge is invalid, or which left a gap.
    """

    status: str
    entries_applied: int
    divergent_sequence: int | None = None

    @property
    def is_consistent(self) -> bool:
        return self.divergent_sequence is None


def replay_status(
    pipeline: PipelineDefinition,
    entries: Iterable[HistoryFold],
) -> ReplayResult:
    """Fold history entries in sequence order starting from intake."""
    state = pipeline.initial_status
    expected_seq = 1
    applied = 0
    for entry in sorted(entries, key=lambda e: e.sequence):
        action = TransitionAction(entry.action)
        if (
            entry.sequence != expected_seq
            or entry.from_status != state
            or not pipeline.is_valid_edge(action, entry.from_status, entry.to_status)
        ):
            return ReplayResult(
                status=state,
                entries_applied=applied,
                divergent_sequence=entry.sequence,
            )
        state = entry.to_status
        expected_seq += 1
        applied += 1
    return ReplayResult(status=state, entries_applied=applied)
