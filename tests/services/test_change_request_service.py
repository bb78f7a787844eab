"""
Tests for the change-request subsystem (dual control over protected fields).

Verifies:
- Proposals capture the old value and do not touch the subject
- A no-op proposal creates nothing
- At most one pending request per (subject, field)
- Approval applies the value; rejection leaves it
- A value that drifted since proposal makes approval stale
- Requesters cannot approve their own requests
"""

from datetime import date
from uuid import uuid4

import pytest

from licensing_kernel.domain.dtos import ChangeDecision, ChangeRequestStatus
from licensing_kernel.domain.pipeline import TransitionAction
from licensing_kernel.exceptions import (
    ChangeRequestAlreadyResolvedError,
    ChangeRequestConflictError,
    ChangeRequestNotFoundError,
    ForbiddenError,
    ImmutabilityViolationError,
    InvalidChangeValueError,
    StaleChangeRequestError,
    SubjectNotFoundError,
)
from licensing_kernel.models.change_request import ChangeRequestModel

SUBJECT = "applicant_profile"


@pytest.fixture
def profile(make_profile):
    return make_profile(id_number="8804125000087")


@pytest.fixture
def requester():
    return uuid4()


class TestPropose:

    def test_proposal_captures_old_value(self, kernel, profile, requester):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        assert cr.status == ChangeRequestStatus.PENDING
        assert cr.old_value == "8804125000087"
        assert cr.new_value == "999"
        assert cr.requested_by == requester
        assert kernel.profiles.get_profile(profile.id).id_number == "8804125000087"

    def test_proposal_is_recorded_in_subject_history(self, kernel, profile, requester):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        [entry] = kernel.ledger.list_by_record(SUBJECT, profile.id)
        assert entry.action == TransitionAction.CHANGE_PROPOSED
        assert (entry.from_status, entry.to_status) == ("none", "pending")
        assert entry.details["change_request_id"] == str(cr.id)

    def test_same_value_is_noop(self, kernel, profile, requester, captured_logs):
        result = kernel.change_requests.propose_change(
            SUBJECT, profile.id, "id_number", "8804125000087", requester,
        )
        assert result is None
        assert kernel.change_requests.list_pending(SUBJECT, profile.id) == []
        assert kernel.ledger.list_by_record(SUBJECT, profile.id) == []
        assert any(r["message"] == "change_request_noop" for r in captured_logs())

    def test_second_pending_request_conflicts(self, kernel, profile):
        first = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", uuid4())
        with pytest.raises(ChangeRequestConflictError) as exc_info:
            kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "888", uuid4())
        assert exc_info.value.pending_request_id == str(first.id)
        assert len(kernel.change_requests.list_pending(SUBJECT, profile.id)) == 1

    def test_different_fields_do_not_conflict(self, kernel, profile, requester):
        kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        kernel.change_requests.propose_change(SUBJECT, profile.id, "full_name", "T. Mokoena", requester)
        assert len(kernel.change_requests.list_pending(SUBJECT, profile.id)) == 2

    def test_new_request_allowed_after_resolution(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "reject")
        again = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "888", requester)
        assert again.is_pending

    def test_composite_needs_both_parts(self, kernel, profile, requester):
        with pytest.raises(InvalidChangeValueError):
            kernel.change_requests.propose_change(
                SUBJECT, profile.id, "location", {"province": "Limpopo"}, requester,
            )

    def test_composite_proposal(self, kernel, profile, requester):
        cr = kernel.change_requests.propose_change(
            SUBJECT, profile.id, "location", {"town": "Polokwane", "province": "Limpopo"}, requester,
        )
        assert cr.old_value == {"province": "Gauteng", "town": "Pretoria"}
        assert cr.new_value == {"province": "Limpopo", "town": "Polokwane"}

    def test_date_value_equal_to_stored_is_noop(self, kernel, profile, requester):
        result = kernel.change_requests.propose_change(
            SUBJECT, profile.id, "date_of_birth", date(1988, 4, 12), requester,
        )
        assert result is None
        assert kernel.ledger.list_by_record(SUBJECT, profile.id) == []

    def test_date_value_is_stored_as_iso_string(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(
            SUBJECT, profile.id, "date_of_birth", date(1988, 4, 21), requester,
        )
        assert cr.old_value == "1988-04-12"
        assert cr.new_value == "1988-04-21"
        kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "approve")
        assert kernel.profiles.get_profile(profile.id).date_of_birth == "1988-04-21"

    def test_unprotected_field_refused(self, kernel, profile, requester):
        with pytest.raises(InvalidChangeValueError):
            kernel.change_requests.propose_change(SUBJECT, profile.id, "phone", "1", requester)

    def test_unknown_subject_type_refused(self, kernel, profile, requester):
        with pytest.raises(InvalidChangeValueError):
            kernel.change_requests.propose_change("vehicle", profile.id, "id_number", "1", requester)

    def test_unknown_subject(self, kernel, requester):
        with pytest.raises(SubjectNotFoundError):
            kernel.change_requests.propose_change(SUBJECT, uuid4(), "id_number", "1", requester)


class TestResolve:

    def test_approve_applies_value(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        resolved = kernel.change_requests.resolve(
            cr.id, actors["registry"].actor_id, ChangeDecision.APPROVE,
            note="verified with home affairs", authorizer_role="registry",
        )
        assert resolved.status == ChangeRequestStatus.APPROVED
        assert resolved.resolved_by == actors["registry"].actor_id
        assert resolved.resolved_at is not None
        assert resolved.note == "verified with home affairs"
        assert kernel.profiles.get_profile(profile.id).id_number == "999"

        history = kernel.ledger.list_by_record(SUBJECT, profile.id)
        assert [e.action for e in history] == [
            TransitionAction.CHANGE_PROPOSED,
            TransitionAction.CHANGE_APPROVED,
        ]
        assert kernel.ledger.verify_chain(SUBJECT, profile.id)

    def test_approve_composite_writes_both_parts(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(
            SUBJECT, profile.id, "location", {"province": "Limpopo", "town": "Polokwane"}, requester,
        )
        kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "approve")
        updated = kernel.profiles.get_profile(profile.id)
        assert (updated.province, updated.town) == ("Limpopo", "Polokwane")

    def test_reject_leaves_value(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        resolved = kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "reject")
        assert resolved.status == ChangeRequestStatus.REJECTED
        assert kernel.profiles.get_profile(profile.id).id_number == "8804125000087"

    def test_stale_approval_refused_and_request_stays_pending(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        kernel.profiles.admin_patch(
            profile.id, {"id_number": "777"}, actors["operator"], "hot fix",
        )

        with pytest.raises(StaleChangeRequestError) as exc_info:
            kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "approve")

        assert exc_info.value.expected == "8804125000087"
        assert exc_info.value.actual == "777"
        assert kernel.change_requests.get(cr.id).is_pending
        assert kernel.profiles.get_profile(profile.id).id_number == "777"

    def test_stale_request_can_still_be_rejected(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        kernel.profiles.admin_patch(profile.id, {"id_number": "777"}, actors["operator"], "hot fix")
        resolved = kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "reject")
        assert resolved.status == ChangeRequestStatus.REJECTED

    def test_resolved_request_cannot_be_resolved_again(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "approve")
        with pytest.raises(ChangeRequestAlreadyResolvedError):
            kernel.change_requests.resolve(cr.id, actors["second_registry"].actor_id, "reject")

    def test_requester_cannot_resolve_own_request(self, kernel, profile, actors):
        me = actors["registry"]
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", me.actor_id)
        with pytest.raises(ForbiddenError):
            kernel.change_requests.resolve(cr.id, me.actor_id, "approve", authorizer_role="registry")
        assert kernel.change_requests.get(cr.id).is_pending

    def test_wrong_authorizer_role_forbidden(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        with pytest.raises(ForbiddenError):
            kernel.change_requests.resolve(
                cr.id, actors["police"].actor_id, "approve", authorizer_role="police",
            )

    def test_unknown_request(self, kernel, actors):
        with pytest.raises(ChangeRequestNotFoundError):
            kernel.change_requests.resolve(uuid4(), actors["registry"].actor_id, "approve")

    def test_unknown_decision(self, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        with pytest.raises(ValueError):
            kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "maybe")


class TestQueue:

    def test_pending_queue_filters(self, kernel, make_profile, requester):
        p1 = make_profile()
        p2 = make_profile()
        kernel.change_requests.propose_change(SUBJECT, p1.id, "full_name", "A", requester)
        kernel.change_requests.propose_change(SUBJECT, p2.id, "full_name", "B", requester)
        assert len(kernel.change_requests.list_pending()) >= 2
        assert [c.new_value for c in kernel.change_requests.list_pending(SUBJECT, p2.id)] == ["B"]


class TestResolvedRequestsAreFinal:

    def test_terminal_request_row_cannot_change(self, session, kernel, profile, requester, actors):
        cr = kernel.change_requests.propose_change(SUBJECT, profile.id, "id_number", "999", requester)
        kernel.change_requests.resolve(cr.id, actors["registry"].actor_id, "reject")

        row = session.get(ChangeRequestModel, cr.id)
        row.note = "edited later"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()