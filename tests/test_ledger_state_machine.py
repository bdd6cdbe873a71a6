"""
Test ledger state machine
Entry creation rules and monotonic status transitions
"""

from decimal import Decimal

import pytest

from models import (
    LedgerEntryType, LedgerEntryStatus, WithdrawalRequestStatus, PositionStatus, CapitalSweepStatus,
)
from services.ledger_state_machine import LedgerStateMachine, LedgerError, InvalidTransitionError


class TestNewEntryRules:
    """Initial status and sign rules"""

    def test_deposit_starts_pending_sweep(self):
        entry_type, status = LedgerStateMachine.validate_new_entry("DEPOSIT", "PENDING_SWEEP", Decimal("80"))
        assert entry_type == LedgerEntryType.DEPOSIT
        assert status == LedgerEntryStatus.PENDING_SWEEP

    def test_deposit_cannot_start_swept(self):
        with pytest.raises(LedgerError):
            LedgerStateMachine.validate_new_entry(LedgerEntryType.DEPOSIT, LedgerEntryStatus.SWEPT, Decimal("80"))

    def test_sign_is_enforced(self):
        with pytest.raises(LedgerError):
            LedgerStateMachine.validate_new_entry(LedgerEntryType.DEPOSIT, LedgerEntryStatus.PENDING_SWEEP, Decimal("-1"))
        with pytest.raises(LedgerError):
            LedgerStateMachine.validate_new_entry(
                LedgerEntryType.WITHDRAWAL_REQUEST, LedgerEntryStatus.COMPLETED, Decimal("5")
            )

    def test_zero_amount_rejected(self):
        with pytest.raises(LedgerError):
            LedgerStateMachine.validate_new_entry(LedgerEntryType.PNL_DISTRIBUTION, LedgerEntryStatus.COMPLETED, 0)

    def test_pnl_may_be_negative(self):
        LedgerStateMachine.validate_new_entry(LedgerEntryType.PNL_DISTRIBUTION, LedgerEntryStatus.COMPLETED, Decimal("-3"))

    def test_unknown_type_rejected(self):
        with pytest.raises(LedgerError):
            LedgerStateMachine.validate_new_entry("BONUS", "COMPLETED", Decimal("1"))

    def test_reversal_offset_requires_related_entry(self):
        with pytest.raises(LedgerError):
            LedgerStateMachine.validate_new_entry(
                LedgerEntryType.TRANSFER_FUNDS_HELD, LedgerEntryStatus.REVERSED, Decimal("10")
            )
        LedgerStateMachine.validate_new_entry(
            LedgerEntryType.TRANSFER_FUNDS_HELD, LedgerEntryStatus.REVERSED, Decimal("10"), related_entry_id=7
        )


class TestEntryTransitions:

    def test_deposit_forward_path(self):
        assert LedgerStateMachine.validate_entry_transition(
            "DEPOSIT", "PENDING_SWEEP", "ACTIVE_IN_POOL"
        ) == LedgerEntryType.DEPOSIT
        LedgerStateMachine.validate_entry_transition("DEPOSIT", "ACTIVE_IN_POOL", "SWEPT")

    def test_swept_is_terminal(self):
        assert LedgerStateMachine.is_terminal_entry_status("DEPOSIT", "SWEPT")
        with pytest.raises(InvalidTransitionError):
            LedgerStateMachine.validate_entry_transition("DEPOSIT", "SWEPT", "PENDING_SWEEP")

    def test_completed_hold_is_retyped(self):
        new_type = LedgerStateMachine.validate_entry_transition("TRANSFER_FUNDS_HELD", "PENDING", "COMPLETED")
        assert new_type == LedgerEntryType.VAULT_TRANSFER_OUT

    def test_backward_move_rejected(self):
        with pytest.raises(InvalidTransitionError):
            LedgerStateMachine.validate_entry_transition("DEPOSIT", "ACTIVE_IN_POOL", "PENDING_SWEEP")


class TestActivityAndPositionTransitions:

    def test_withdrawal_request_happy_path(self):
        path = [
            WithdrawalRequestStatus.PENDING,
            WithdrawalRequestStatus.APPROVED,
            WithdrawalRequestStatus.PENDING_FUNDING,
            WithdrawalRequestStatus.PENDING_CONFIRMATION,
            WithdrawalRequestStatus.SWEEP_CONFIRMED,
            WithdrawalRequestStatus.COMPLETED,
        ]
        for current, nxt in zip(path, path[1:]):
            assert LedgerStateMachine.validate_activity_transition(current, nxt) == nxt

    def test_cannot_skip_confirmation(self):
        with pytest.raises(InvalidTransitionError):
            LedgerStateMachine.validate_activity_transition("APPROVED", "SWEEP_CONFIRMED")

    def test_terminal_activity_states(self):
        assert LedgerStateMachine.get_valid_activity_transitions("COMPLETED") == set()
        with pytest.raises(InvalidTransitionError):
            LedgerStateMachine.validate_activity_transition("FAILED", "PENDING")

    def test_sweep_failed_position_only_clears_to_in_trade(self):
        LedgerStateMachine.validate_position_transition("sweep_failed", "in_trade")
        with pytest.raises(InvalidTransitionError):
            LedgerStateMachine.validate_position_transition(PositionStatus.SWEEP_FAILED, PositionStatus.ACTIVE)

    def test_completed_sweep_is_final(self):
        with pytest.raises(InvalidTransitionError):
            LedgerStateMachine.validate_sweep_transition(CapitalSweepStatus.COMPLETED, CapitalSweepStatus.SWEEP_FAILED)
