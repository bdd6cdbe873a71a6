"""
Ledger State Transition Validator
=================================

Transition tables for vault ledger entries, withdrawal request activities,
positions and capital sweeps. All transitions are monotonic: nothing moves
backwards and terminal states accept no further transitions.
"""

import logging
from typing import Dict, Set, Optional, Tuple

from models import (
    LedgerEntryType, LedgerEntryStatus, WithdrawalRequestStatus,
    PositionStatus, CapitalSweepStatus,
)

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised when a ledger operation would break a ledger invariant"""
    pass


class InvalidTransitionError(LedgerError):
    """Raised when an invalid or backward status transition is attempted"""
    pass


class InsufficientFundsError(LedgerError):
    """Raised when a balance or vault capital cannot cover a debit"""
    pass


POSITIVE = "positive"
NEGATIVE = "negative"
NON_ZERO = "non_zero"


class LedgerStateMachine:
    """
    Validates ledger entry creation and status transitions.

    Entry rules map each entry type to the statuses it may be created in and
    the sign its amount must carry.
    """

    NEW_ENTRY_RULES: Dict[LedgerEntryType, Tuple[Set[LedgerEntryStatus], str]] = {
        LedgerEntryType.DEPOSIT: ({LedgerEntryStatus.PENDING_SWEEP}, POSITIVE),
        LedgerEntryType.WITHDRAWAL_REQUEST: ({LedgerEntryStatus.COMPLETED}, NEGATIVE),
        LedgerEntryType.VAULT_TRANSFER_IN: ({LedgerEntryStatus.COMPLETED}, POSITIVE),
        LedgerEntryType.VAULT_TRANSFER_OUT: ({LedgerEntryStatus.COMPLETED}, NEGATIVE),
        LedgerEntryType.TRANSFER_FUNDS_HELD: ({LedgerEntryStatus.PENDING}, NEGATIVE),
        LedgerEntryType.PNL_DISTRIBUTION: ({LedgerEntryStatus.COMPLETED}, NON_ZERO),
        LedgerEntryType.PERFORMANCE_FEE: ({LedgerEntryStatus.COMPLETED}, NEGATIVE),
        LedgerEntryType.DEPOSIT_BUYBACK: ({LedgerEntryStatus.COMPLETED}, NON_ZERO),
    }

    # Offsetting entries must reference the entry they cancel
    OFFSET_ENTRY_RULES: Dict[LedgerEntryType, Tuple[Set[LedgerEntryStatus], str]] = {
        LedgerEntryType.TRANSFER_FUNDS_HELD: ({LedgerEntryStatus.REVERSED}, POSITIVE),
    }

    ENTRY_TRANSITIONS: Dict[LedgerEntryType, Dict[LedgerEntryStatus, Set[LedgerEntryStatus]]] = {
        LedgerEntryType.DEPOSIT: {
            LedgerEntryStatus.PENDING_SWEEP: {LedgerEntryStatus.ACTIVE_IN_POOL, LedgerEntryStatus.SWEPT},
            LedgerEntryStatus.ACTIVE_IN_POOL: {LedgerEntryStatus.SWEPT},
            LedgerEntryStatus.SWEPT: set(),
        },
        LedgerEntryType.TRANSFER_FUNDS_HELD: {
            LedgerEntryStatus.PENDING: {LedgerEntryStatus.COMPLETED, LedgerEntryStatus.REVERSED},
            LedgerEntryStatus.REVERSED: set(),
        },
    }

    # A completed transfer hold is re-typed; its amount is never touched
    TYPE_ON_TRANSITION: Dict[Tuple[LedgerEntryType, LedgerEntryStatus], LedgerEntryType] = {
        (LedgerEntryType.TRANSFER_FUNDS_HELD, LedgerEntryStatus.COMPLETED): LedgerEntryType.VAULT_TRANSFER_OUT,
    }

    ACTIVITY_TRANSITIONS: Dict[WithdrawalRequestStatus, Set[WithdrawalRequestStatus]] = {
        WithdrawalRequestStatus.PENDING: {
            WithdrawalRequestStatus.PENDING_APPROVAL,
            WithdrawalRequestStatus.APPROVED,
            WithdrawalRequestStatus.FAILED,
        },
        WithdrawalRequestStatus.PENDING_APPROVAL: {
            WithdrawalRequestStatus.APPROVED,
            WithdrawalRequestStatus.FAILED,
        },
        WithdrawalRequestStatus.APPROVED: {
            WithdrawalRequestStatus.PENDING_FUNDING,
            WithdrawalRequestStatus.FAILED,
        },
        WithdrawalRequestStatus.PENDING_FUNDING: {
            WithdrawalRequestStatus.PENDING_CONFIRMATION,
            WithdrawalRequestStatus.FAILED,
        },
        WithdrawalRequestStatus.PENDING_CONFIRMATION: {
            WithdrawalRequestStatus.SWEEP_CONFIRMED,
            WithdrawalRequestStatus.FAILED,
        },
        WithdrawalRequestStatus.SWEEP_CONFIRMED: {
            WithdrawalRequestStatus.COMPLETED,
            WithdrawalRequestStatus.FAILED,
        },
        WithdrawalRequestStatus.COMPLETED: set(),
        WithdrawalRequestStatus.FAILED: set(),
    }

    POSITION_TRANSITIONS: Dict[PositionStatus, Set[PositionStatus]] = {
        PositionStatus.ACTIVE: {PositionStatus.IN_TRADE, PositionStatus.SWEEP_FAILED},
        # New capital allocated, or a sibling entry's sweep failed
        PositionStatus.IN_TRADE: {PositionStatus.ACTIVE, PositionStatus.SWEEP_FAILED},
        # Only manual resolution clears the failure marker
        PositionStatus.SWEEP_FAILED: {PositionStatus.IN_TRADE},
    }

    SWEEP_TRANSITIONS: Dict[CapitalSweepStatus, Set[CapitalSweepStatus]] = {
        CapitalSweepStatus.IN_PROGRESS: {CapitalSweepStatus.COMPLETED, CapitalSweepStatus.SWEEP_FAILED},
        CapitalSweepStatus.SWEEP_FAILED: {CapitalSweepStatus.COMPLETED},
        CapitalSweepStatus.COMPLETED: set(),
    }

    @staticmethod
    def coerce(enum_cls, value):
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(value)
        except ValueError:
            raise LedgerError(f"Unknown {enum_cls.__name__} value: {value!r}")

    @classmethod
    def validate_new_entry(
        cls,
        entry_type,
        status,
        amount,
        related_entry_id: Optional[int] = None,
    ) -> Tuple[LedgerEntryType, LedgerEntryStatus]:
        """Check a new entry's type, initial status and sign; returns the coerced enums"""
        entry_type = cls.coerce(LedgerEntryType, entry_type)
        status = cls.coerce(LedgerEntryStatus, status)

        offset_rule = cls.OFFSET_ENTRY_RULES.get(entry_type)
        if related_entry_id is not None and offset_rule and status in offset_rule[0]:
            allowed, sign = offset_rule
        else:
            allowed, sign = cls.NEW_ENTRY_RULES[entry_type]

        if status not in allowed:
            raise LedgerError(
                f"{entry_type.value} entries must start in {sorted(s.value for s in allowed)}, got {status.value}"
            )

        if amount == 0:
            raise LedgerError(f"{entry_type.value} entry amount must be non-zero")
        if sign == POSITIVE and amount < 0:
            raise LedgerError(f"{entry_type.value} entry amount must be positive, got {amount}")
        if sign == NEGATIVE and amount > 0:
            raise LedgerError(f"{entry_type.value} entry amount must be negative, got {amount}")

        return entry_type, status

    @classmethod
    def validate_entry_transition(
        cls,
        entry_type,
        from_status,
        to_status,
        entry_id: Optional[int] = None,
    ) -> LedgerEntryType:
        """
        Validate an entry status change.

        Returns the entry type the row must carry after the transition.
        Raises InvalidTransitionError for illegal or backward moves.
        """
        entry_type = cls.coerce(LedgerEntryType, entry_type)
        from_status = cls.coerce(LedgerEntryStatus, from_status)
        to_status = cls.coerce(LedgerEntryStatus, to_status)
        entry_ref = f"Entry {entry_id}" if entry_id else "Entry"

        valid_next = cls.ENTRY_TRANSITIONS.get(entry_type, {}).get(from_status, set())
        if to_status not in valid_next:
            logger.error(
                f"❌ INVALID_TRANSITION: {entry_ref} ({entry_type.value}) {from_status.value} -> {to_status.value} "
                f"Valid options: {sorted(s.value for s in valid_next)}"
            )
            raise InvalidTransitionError(
                f"Invalid transition for {entry_type.value}: {from_status.value} -> {to_status.value}"
            )

        logger.info(f"✅ VALID_TRANSITION: {entry_ref} ({entry_type.value}) {from_status.value} -> {to_status.value}")
        return cls.TYPE_ON_TRANSITION.get((entry_type, to_status), entry_type)

    @classmethod
    def _validate(cls, table, enum_cls, from_status, to_status, label: str):
        from_status = cls.coerce(enum_cls, from_status)
        to_status = cls.coerce(enum_cls, to_status)
        valid_next = table.get(from_status, set())
        if to_status not in valid_next:
            logger.error(
                f"❌ INVALID_TRANSITION: {label} {from_status.value} -> {to_status.value} "
                f"Valid options: {sorted(s.value for s in valid_next)}"
            )
            raise InvalidTransitionError(f"Invalid {label} transition: {from_status.value} -> {to_status.value}")
        return to_status

    @classmethod
    def validate_activity_transition(cls, from_status, to_status) -> WithdrawalRequestStatus:
        return cls._validate(cls.ACTIVITY_TRANSITIONS, WithdrawalRequestStatus, from_status, to_status, "withdrawal request")

    @classmethod
    def validate_position_transition(cls, from_status, to_status) -> PositionStatus:
        return cls._validate(cls.POSITION_TRANSITIONS, PositionStatus, from_status, to_status, "position")

    @classmethod
    def validate_sweep_transition(cls, from_status, to_status) -> CapitalSweepStatus:
        return cls._validate(cls.SWEEP_TRANSITIONS, CapitalSweepStatus, from_status, to_status, "capital sweep")

    @classmethod
    def is_terminal_entry_status(cls, entry_type, status) -> bool:
        entry_type = cls.coerce(LedgerEntryType, entry_type)
        status = cls.coerce(LedgerEntryStatus, status)
        return not cls.ENTRY_TRANSITIONS.get(entry_type, {}).get(status)

    @classmethod
    def get_valid_activity_transitions(cls, status) -> Set[WithdrawalRequestStatus]:
        return cls.ACTIVITY_TRANSITIONS.get(cls.coerce(WithdrawalRequestStatus, status), set())
