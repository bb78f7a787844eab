"""
Typed Exception Hierarchy for the Licensing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every failure in the workflow core is surfaced verbatim to the caller (the
collaborator or UI layer).  Callers must be able to render a specific message
without parsing strings, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (offending id / field / role)

Example:
    try:
        engine.advance(application_id, actor)
    except ForbiddenError as e:
        api_response(code=e.code, role=e.actor_role, phase=e.phase)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LicensingKernelError (base)
    |
    +-- NotFoundError
    |   +-- ApplicationNotFoundError
    |   +-- ChangeRequestNotFoundError
    |   +-- SubjectNotFoundError
    |
    +-- ForbiddenError
    |
    +-- InvalidTransitionError
    |   +-- ApplicationFlaggedError
    |
    +-- TokenConflictError
    |
    +-- ChangeRequestError
    |   +-- ChangeRequestConflictError
    |   +-- StaleChangeRequestError
    |   +-- ChangeRequestAlreadyResolvedError
    |   +-- InvalidChangeValueError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentWriteError
    |
    +-- UnavailableError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |   +-- ReplayMismatchError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Not found       | APPLICATION_NOT_FOUND         | Application id doesn't exist
                | CHANGE_REQUEST_NOT_FOUND      | Change request id doesn't exist
                | SUBJECT_NOT_FOUND             | Protected-field owner record absent
----------------|-------------------------------|---------------------------------------
Authorization   | FORBIDDEN                     | Role does not own the current phase
----------------|-------------------------------|---------------------------------------
Transition      | INVALID_TRANSITION            | Terminal state / unsupported branch
                | APPLICATION_FLAGGED           | Forward of a flagged application
----------------|-------------------------------|---------------------------------------
Uniqueness      | TOKEN_CONFLICT                | Asset token held by another application
----------------|-------------------------------|---------------------------------------
Change request  | CHANGE_REQUEST_CONFLICT       | Pending request already exists for field
                | STALE_CHANGE_REQUEST          | Live value drifted since proposal
                | CHANGE_REQUEST_ALREADY_RESOLVED | Resolve on a terminal request
                | INVALID_CHANGE_VALUE          | Unknown field / malformed composite
----------------|-------------------------------|---------------------------------------
Concurrency     | CONCURRENT_WRITE              | History sequence race
----------------|-------------------------------|---------------------------------------
Infrastructure  | UNAVAILABLE                   | Store unavailable after bounded retry
----------------|-------------------------------|---------------------------------------
Audit           | AUDIT_CHAIN_BROKEN            | History hash chain validation failed
                | REPLAY_MISMATCH               | History fold != current status
----------------|-------------------------------|---------------------------------------
Immutability    | IMMUTABILITY_VIOLATION        | Modifying an append-only record

===============================================================================
RETRY POLICY
===============================================================================

Client errors (FORBIDDEN, INVALID_TRANSITION, NOT_FOUND) are not retryable
without a role or state change.  TOKEN_CONFLICT is retryable only after the
holding application's status changes.  CONCURRENT_WRITE is retried by the
caller with a freshly computed sequence.  Only infrastructure faults are
retried locally (bounded) before surfacing as UNAVAILABLE.
"""


class LicensingKernelError(Exception):
    """
    Base exception for all licensing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LICENSING_KERNEL_ERROR"


# Not-found exceptions


class NotFoundError(LicensingKernelError):
    """Base exception for absent records."""

    code: str = "NOT_FOUND"


class ApplicationNotFoundError(NotFoundError):
    """Application with given ID was not found."""

    code: str = "APPLICATION_NOT_FOUND"

    def __init__(self, application_id: str):
        self.application_id = application_id
        super().__init__(f"Application not found: {application_id}")


class ChangeRequestNotFoundError(NotFoundError):
    """Change request with given ID was not found."""

    code: str = "CHANGE_REQUEST_NOT_FOUND"

    def __init__(self, change_request_id: str):
        self.change_request_id = change_request_id
        super().__init__(f"Change request not found: {change_request_id}")


class SubjectNotFoundError(NotFoundError):
    """The record owning a protected field was not found."""

    code: str = "SUBJECT_NOT_FOUND"

    def __init__(self, subject_type: str, subject_id: str):
        self.subject_type = subject_type
        self.subject_id = subject_id
        super().__init__(f"{subject_type} not found: {subject_id}")


# Authorization


class ForbiddenError(LicensingKernelError):
    """Actor role does not own the phase (or action) it attempted."""

    code: str = "FORBIDDEN"

    def __init__(
        self,
        actor_role: str,
        phase: str | None = None,
        required_role: str | None = None,
        reason: str | None = None,
    ):
        self.actor_role = actor_role
        self.phase = phase
        self.required_role = required_role
        self.reason = reason
        message = f"Role '{actor_role}' may not act"
        if phase is not None:
            message += f" on phase '{phase}'"
        if required_role is not None:
            message += f" (requires '{required_role}')"
        if reason:
            message += f": {reason}"
        super().__init__(message)


# Transition errors


class InvalidTransitionError(LicensingKernelError):
    """Transition is not permitted from the application's current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, application_id: str, current_status: str, reason: str):
        self.application_id = application_id
        self.current_status = current_status
        self.reason = reason
        super().__init__(
            f"Invalid transition for application {application_id} "
            f"at '{current_status}': {reason}"
        )


class ApplicationFlaggedError(InvalidTransitionError):
    """Flagged application cannot be forwarded without an explicit override."""

    code: str = "APPLICATION_FLAGGED"

    def __init__(self, application_id: str, current_status: str):
        super().__init__(
            application_id,
            current_status,
            "application is flagged - forward requires override",
        )


class ClientRequestReusedError(InvalidTransitionError):
    """client_request_id already names a different operation or actor."""

    code: str = "CLIENT_REQUEST_REUSED"

    def __init__(self, application_id: str, current_status: str, client_request_id: str):
        self.client_request_id = client_request_id
        super().__init__(
            application_id,
            current_status,
            f"client request '{client_request_id}' was already used for another operation",
        )


# Uniqueness


class TokenConflictError(LicensingKernelError):
    """Asset token is already claimed by a different application."""

    code: str = "TOKEN_CONFLICT"

    def __init__(
        self,
        asset_token_ref: str,
        application_id: str,
        holding_application_id: str | None,
    ):
        self.asset_token_ref = asset_token_ref
        self.application_id = application_id
        self.holding_application_id = holding_application_id
        super().__init__(
            f"Asset token {asset_token_ref} is held by application "
            f"{holding_application_id}; application {application_id} cannot claim it"
        )


# Change-request exceptions


class ChangeRequestError(LicensingKernelError):
    """Base exception for change-request errors."""

    code: str = "CHANGE_REQUEST_ERROR"


class ChangeRequestConflictError(ChangeRequestError):
    """A pending change request already exists for the subject field."""

    code: str = "CHANGE_REQUEST_CONFLICT"

    def __init__(self, subject_id: str, field: str, pending_request_id: str):
        self.subject_id = subject_id
        self.field = field
        self.pending_request_id = pending_request_id
        super().__init__(
            f"Change request {pending_request_id} is already pending for "
            f"{subject_id}.{field}"
        )


class StaleChangeRequestError(ChangeRequestError):
    """The live field value no longer matches the value captured at proposal."""

    code: str = "STALE_CHANGE_REQUEST"

    def __init__(self, change_request_id: str, field: str, expected, actual):
        self.change_request_id = change_request_id
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Change request {change_request_id} is stale: {field} was "
            f"{expected!r} at proposal, is now {actual!r}"
        )


class ChangeRequestAlreadyResolvedError(ChangeRequestError):
    """Change request is already in a terminal state."""

    code: str = "CHANGE_REQUEST_ALREADY_RESOLVED"

    def __init__(self, change_request_id: str, status: str):
        self.change_request_id = change_request_id
        self.status = status
        super().__init__(
            f"Change request {change_request_id} is already {status}"
        )


class InvalidChangeValueError(ChangeRequestError):
    """Field is not protected, or a composite value is malformed."""

    code: str = "INVALID_CHANGE_VALUE"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid change for field '{field}': {reason}")


# Concurrency


class ConcurrencyError(LicensingKernelError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentWriteError(ConcurrencyError):
    """Two history appends raced for the same sequence slot."""

    code: str = "CONCURRENT_WRITE"

    def __init__(self, record_type: str, record_id: str, sequence: int):
        self.record_type = record_type
        self.record_id = record_id
        self.sequence = sequence
        super().__init__(
            f"Concurrent history write on {record_type}:{record_id} "
            f"at sequence {sequence}"
        )


# Infrastructure


class UnavailableError(LicensingKernelError):
    """Backing store unavailable after bounded retries."""

    code: str = "UNAVAILABLE"

    def __init__(self, operation: str, attempts: int, cause: str):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"{operation} unavailable after {attempts} attempt(s): {cause}"
        )


# Audit


class AuditError(LicensingKernelError):
    """Base exception for audit trail errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """History hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(
        self,
        record_id: str,
        sequence: int,
        expected_hash: str,
        actual_hash: str,
    ):
        self.record_id = record_id
        self.sequence = sequence
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"History chain broken for {record_id} at sequence {sequence}: "
            f"expected {expected_hash}, got {actual_hash}"
        )


class ReplayMismatchError(AuditError):
    """Folding the history does not reproduce the stored status."""

    code: str = "REPLAY_MISMATCH"

    def __init__(
        self,
        application_id: str,
        stored_status: str,
        replayed_status: str,
        sequence: int | None = None,
    ):
        self.application_id = application_id
        self.stored_status = stored_status
        self.replayed_status = replayed_status
        self.sequence = sequence
        detail = f" (diverged at sequence {sequence})" if sequence is not None else ""
        super().__init__(
            f"Replay of application {application_id} yields '{replayed_status}', "
            f"stored status is '{stored_status}'{detail}"
        )


# Immutability


class ImmutabilityError(LicensingKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify an append-only or terminal record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Configuration


class ConfigurationError(LicensingKernelError):
    """Workflow definition is structurally invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            "Invalid workflow configuration:\n"
            + "\n".join(f"  - {e}" for e in self.errors)
        )
