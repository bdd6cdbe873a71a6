"""
Custodial Ledger & Settlement Engine - Database Schema
======================================================

Tables backing the custodial settlement pipelines:
- Per-user custodial wallets and available balances
- Append-only vault ledger entries with a status state machine
- On-chain deposit records (one per transaction hash)
- Capital sweeps, withdrawal queue, permanent withdrawals
- Scanner cursor, hot wallet funding audit log and job leases

Money columns are Numeric(38, 18) and handled as Decimal; timestamps are naive UTC.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _in_list(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


MONEY = Numeric(38, 18)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class LedgerEntryType(Enum):
    """Types of vault ledger entries"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL_REQUEST = "WITHDRAWAL_REQUEST"
    VAULT_TRANSFER_IN = "VAULT_TRANSFER_IN"
    VAULT_TRANSFER_OUT = "VAULT_TRANSFER_OUT"
    TRANSFER_FUNDS_HELD = "TRANSFER_FUNDS_HELD"
    PNL_DISTRIBUTION = "PNL_DISTRIBUTION"
    PERFORMANCE_FEE = "PERFORMANCE_FEE"
    DEPOSIT_BUYBACK = "DEPOSIT_BUYBACK"


class LedgerEntryStatus(Enum):
    """Vault ledger entry lifecycle states"""
    PENDING_SWEEP = "PENDING_SWEEP"    # Capital still sits in the depositor's custodial wallet
    ACTIVE_IN_POOL = "ACTIVE_IN_POOL"  # Administratively activated in the trading pool
    SWEPT = "SWEPT"                    # Both sweep legs confirmed on chain
    PENDING = "PENDING"                # Hold awaiting an operator decision
    COMPLETED = "COMPLETED"
    REVERSED = "REVERSED"


class WithdrawalRequestStatus(Enum):
    """Vault withdrawal request (activity log) states"""
    PENDING = "PENDING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PENDING_FUNDING = "PENDING_FUNDING"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    SWEEP_CONFIRMED = "SWEEP_CONFIRMED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ActivityType(Enum):
    VAULT_WITHDRAWAL_REQUEST = "VAULT_WITHDRAWAL_REQUEST"


class PositionStatus(Enum):
    """User vault position sweep markers"""
    ACTIVE = "active"
    IN_TRADE = "in_trade"
    SWEEP_FAILED = "sweep_failed"


class CapitalSweepStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SWEEP_FAILED = "sweep_failed"


class WithdrawalQueueStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    FAILED = "failed"


class WithdrawalStatus(Enum):
    SENT = "sent"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


class VaultStatus(Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class FundingPurpose(Enum):
    """Why the hot wallet sent native currency to a custodial wallet"""
    SWEEP = "sweep"
    WITHDRAWAL = "withdrawal"
    ALLOCATION = "allocation"


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """Custodial account: one wallet per user, key encrypted at rest"""
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), nullable=True)
    eth_address = Column(String(42), nullable=False, unique=True, index=True)  # stored lower-cased
    eth_private_key_encrypted = Column(Text, nullable=False)
    balance = Column(MONEY, nullable=False, default=0)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )


class Vault(Base):
    """Pooled trading vault users allocate capital to"""
    __tablename__ = "vaults"

    vault_id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=VaultStatus.ACTIVE.value)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint(_in_list("status", VaultStatus), name="ck_vaults_status"),
    )


class LedgerEntry(Base):
    """
    Append-only vault ledger entry.

    The signed sum of a user's entries for a vault equals their capital in it.
    Only ``status`` (and, for a completed transfer hold, ``entry_type``) ever changes.
    """
    __tablename__ = "vault_ledger_entries"

    entry_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    vault_id = Column(Integer, ForeignKey("vaults.vault_id"), nullable=False, index=True)
    entry_type = Column(String(40), nullable=False)
    amount = Column(MONEY, nullable=False)
    fee_amount = Column(MONEY, nullable=True)
    status = Column(String(40), nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    tx_hash = Column(String(66), nullable=True)
    related_entry_id = Column(Integer, ForeignKey("vault_ledger_entries.entry_id"), nullable=True)
    counterparty_vault_id = Column(Integer, ForeignKey("vaults.vault_id"), nullable=True)  # transfer destination
    notes = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(_in_list("entry_type", LedgerEntryType), name="ck_ledger_entry_type"),
        CheckConstraint(_in_list("status", LedgerEntryStatus), name="ck_ledger_entry_status"),
        Index("ix_ledger_user_vault", "user_id", "vault_id"),
        Index("ix_ledger_type_status", "entry_type", "status"),
    )


class DepositRecord(Base):
    """One row per credited on-chain transaction hash"""
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    token = Column(String(20), nullable=False)
    tx_hash = Column(String(66), nullable=False, unique=True)
    block_number = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)


class UserVaultPosition(Base):
    """Per (user, vault) tradable capital with its sweep marker"""
    __tablename__ = "user_vault_positions"

    position_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    vault_id = Column(Integer, ForeignKey("vaults.vault_id"), nullable=False)
    tradable_capital = Column(MONEY, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=PositionStatus.ACTIVE.value)
    updated_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now,
                        onupdate=get_naive_utc_now)

    __table_args__ = (
        UniqueConstraint("user_id", "vault_id", name="uq_position_user_vault"),
        CheckConstraint(_in_list("status", PositionStatus), name="ck_position_status"),
    )


class CapitalSweep(Base):
    """Durable record of a sweep's two legs; the operator-visible failure surface"""
    __tablename__ = "capital_sweeps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("vault_ledger_entries.entry_id"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False)
    vault_id = Column(Integer, ForeignKey("vaults.vault_id"), nullable=False)
    status = Column(String(20), nullable=False, default=CapitalSweepStatus.IN_PROGRESS.value)
    trading_desk_amount = Column(MONEY, nullable=False, default=0)
    devops_amount = Column(MONEY, nullable=False, default=0)
    trading_desk_tx_hash = Column(String(66), nullable=True)
    devops_tx_hash = Column(String(66), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now,
                        onupdate=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint(_in_list("status", CapitalSweepStatus), name="ck_capital_sweep_status"),
        Index("ix_capital_sweeps_status", "status"),
    )


class UserActivity(Base):
    """Activity log companion for vault withdrawal requests"""
    __tablename__ = "user_activity_log"

    activity_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    vault_id = Column(Integer, ForeignKey("vaults.vault_id"), nullable=False)
    activity_type = Column(String(40), nullable=False, default=ActivityType.VAULT_WITHDRAWAL_REQUEST.value)
    status = Column(String(30), nullable=False, default=WithdrawalRequestStatus.PENDING.value)
    amount_primary = Column(MONEY, nullable=False)
    related_sweep_tx_hash = Column(String(66), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    updated_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now,
                        onupdate=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint(_in_list("activity_type", ActivityType), name="ck_activity_type"),
        CheckConstraint(_in_list("status", WithdrawalRequestStatus), name="ck_activity_status"),
        Index("ix_activity_type_status", "activity_type", "status"),
    )


class WithdrawalQueueItem(Base):
    """Pending payout; deleted once its transfer is broadcast"""
    __tablename__ = "withdrawal_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    to_address = Column(String(42), nullable=False)
    amount = Column(MONEY, nullable=False)
    token = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=WithdrawalQueueStatus.QUEUED.value)
    gas_funded = Column(Boolean, nullable=False, default=False)
    last_gas_fund_attempt = Column(DateTime(timezone=False), nullable=True)
    retries = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawal_queue_amount_positive"),
        CheckConstraint(_in_list("status", WithdrawalQueueStatus), name="ck_withdrawal_queue_status"),
        Index("ix_withdrawal_queue_status_created", "status", "created_at"),
    )


class Withdrawal(Base):
    """Permanent record of a broadcast withdrawal"""
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=False, index=True)
    to_address = Column(String(42), nullable=False)
    amount = Column(MONEY, nullable=False)
    token = Column(String(20), nullable=False)
    tx_hash = Column(String(66), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=WithdrawalStatus.SENT.value)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint(_in_list("status", WithdrawalStatus), name="ck_withdrawal_status"),
    )


class SystemState(Base):
    """Key/value process state (deposit scanner cursor)"""
    __tablename__ = "system_state"

    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now,
                        onupdate=get_naive_utc_now)


class HotWalletFundingLog(Base):
    """Audit trail of native currency sent from the hot wallet"""
    __tablename__ = "hot_wallet_funding_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id"), nullable=True, index=True)
    to_address = Column(String(42), nullable=False)
    amount_eth = Column(MONEY, nullable=False)
    tx_hash = Column(String(66), nullable=False)
    purpose = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        CheckConstraint(_in_list("purpose", FundingPurpose), name="ck_funding_purpose"),
    )


class DistributedLock(Base):
    """Database-backed lease lock; the unique lock_name is the compare-and-swap"""
    __tablename__ = "distributed_locks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lock_name = Column(String(255), nullable=False, unique=True)
    owner_token = Column(String(64), nullable=False)
    process_id = Column(Integer, nullable=True)
    acquired_at = Column(DateTime(timezone=False), nullable=False, default=get_naive_utc_now)
    expires_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index("ix_distributed_locks_expires_at", "expires_at"),
    )
