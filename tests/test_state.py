"""Tests for the pay run and import state machines."""

import pytest

from payroll_recon.database import ImportStatus, PayRunStatus
from payroll_recon.errors import ValidationError
from payroll_recon.permissions import Role
from payroll_recon.reconciliation import (
    assert_import_transition,
    assert_pay_run_transition,
    can_transition_import,
    can_transition_pay_run,
    is_pay_run_locked,
)
from payroll_recon.reconciliation.state import allowed_pay_run_transitions, is_import_errored


class TestPayRunTransitions:
    """Tests for role-gated pay run transitions."""

    @pytest.mark.parametrize("from_status,to_status,role", [
        (PayRunStatus.DRAFT, PayRunStatus.IMPORTED, Role.PREPARER),
        (PayRunStatus.IMPORTED, PayRunStatus.MAPPED, Role.ADMIN),
        (PayRunStatus.MAPPED, PayRunStatus.RECONCILING, Role.PREPARER),
        (PayRunStatus.RECONCILED, PayRunStatus.RECONCILING, Role.PREPARER),
        (PayRunStatus.RECONCILING, PayRunStatus.RECONCILED, Role.SYSTEM),
        (PayRunStatus.READY_FOR_REVIEW, PayRunStatus.APPROVED, Role.REVIEWER),
        (PayRunStatus.LOCKED, PayRunStatus.ARCHIVED, Role.ADMIN),
    ])
    def test_allowed(self, from_status, to_status, role):
        """Test transitions the table allows."""
        assert can_transition_pay_run(from_status, to_status, role)
        assert_pay_run_transition(from_status, to_status, role)

    @pytest.mark.parametrize("from_status,to_status,role", [
        (PayRunStatus.RECONCILING, PayRunStatus.RECONCILED, Role.PREPARER),
        (PayRunStatus.READY_FOR_REVIEW, PayRunStatus.APPROVED, Role.PREPARER),
        (PayRunStatus.DRAFT, PayRunStatus.RECONCILING, Role.ADMIN),
        (PayRunStatus.LOCKED, PayRunStatus.ARCHIVED, Role.REVIEWER),
        (PayRunStatus.MAPPED, PayRunStatus.RECONCILING, Role.SYSTEM),
    ])
    def test_rejected(self, from_status, to_status, role):
        """Test transitions the table rejects."""
        assert not can_transition_pay_run(from_status, to_status, role)
        with pytest.raises(ValidationError):
            assert_pay_run_transition(from_status, to_status, role)

    def test_error_names_the_transition(self):
        """Test that the error message names from, to and role."""
        with pytest.raises(ValidationError) as exc_info:
            assert_pay_run_transition("RECONCILING", "RECONCILED", "PREPARER")
        assert exc_info.value.message == "Illegal pay run transition from RECONCILING to RECONCILED for PREPARER."

    def test_allowed_transitions_for_role(self):
        """Test listing the statuses a role can reach."""
        assert allowed_pay_run_transitions("RECONCILED", "PREPARER") == [
            PayRunStatus.RECONCILING,
            PayRunStatus.READY_FOR_REVIEW,
        ]
        assert allowed_pay_run_transitions("RECONCILED", "REVIEWER") == []

    def test_locked_statuses(self):
        """Test which statuses count as locked."""
        assert is_pay_run_locked("LOCKED")
        assert is_pay_run_locked("ARCHIVED")
        assert not is_pay_run_locked("PACKED")


class TestImportTransitions:
    """Tests for the import state machine."""

    def test_same_state_is_allowed(self):
        """Test that staying in the same state is a no-op."""
        assert can_transition_import("MAPPED", "MAPPED")
        assert_import_transition(ImportStatus.ERROR_PARSE_FAILED, ImportStatus.ERROR_PARSE_FAILED)

    def test_uploaded_cannot_skip_parsing(self):
        """Test that an uploaded import must be parsed before mapping."""
        assert not can_transition_import("UPLOADED", "MAPPED")
        with pytest.raises(ValidationError) as exc_info:
            assert_import_transition("UPLOADED", "MAPPED")
        assert exc_info.value.message == "Import cannot move from UPLOADED to MAPPED."

    def test_parsed_to_mapped(self):
        """Test the normal mapping path."""
        assert can_transition_import("UPLOADED", "PARSING")
        assert can_transition_import("PARSING", "PARSED")
        assert can_transition_import("PARSED", "MAPPED")
        assert can_transition_import("MAPPED", "READY")
        assert can_transition_import("READY", "MAPPED")

    def test_error_states_are_terminal(self):
        """Test that errored imports cannot move."""
        for target in ImportStatus:
            if target != ImportStatus.ERROR_FILE_INVALID:
                assert not can_transition_import(ImportStatus.ERROR_FILE_INVALID, target)
        assert is_import_errored("ERROR_FILE_INVALID")
        assert is_import_errored("ERROR_PARSE_FAILED")
        assert not is_import_errored("MAPPED")
