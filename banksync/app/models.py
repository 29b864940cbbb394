from sqlalchemy import (
    Column, Integer, String, DateTime, Date, DECIMAL, Text, ForeignKey,
    UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from datetime import datetime, UTC
import enum
from banksync.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in this schema stores naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


class AccountType(str, enum.Enum):
    CURRENT = "current"
    SAVINGS = "savings"
    CREDIT = "credit"
    CASH = "cash"
    INVESTMENT = "investment"
    OTHER = "other"


class TransactionType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"


class BankConnectionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class SyncRunStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(SQLEnum(AccountType), nullable=False, default=AccountType.CURRENT)
    balance = Column(DECIMAL(15, 2), nullable=False, default=0)
    currency = Column(String(3), default="GBP")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    transactions = relationship("Transaction", back_populates="account")


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    type = Column(SQLEnum(TransactionType), nullable=False, default=TransactionType.EXPENSE)
    color = Column(String(7))
    icon = Column(String(50))
    created_at = Column(DateTime, default=utcnow)

    transactions = relationship("Transaction", back_populates="category")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        # Dedup key for provider-sourced imports
        UniqueConstraint("tenant_id", "account_id", "provider_transaction_id", name="uq_transactions_provider_id"),
        Index("ix_transactions_dedup_hash", "tenant_id", "account_id", "dedup_hash"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    date = Column(Date, nullable=False)
    type = Column(SQLEnum(TransactionType), nullable=False)
    description = Column(String(500), nullable=False)
    notes = Column(Text, nullable=True)
    provider_transaction_id = Column(String(255), nullable=True)
    dedup_hash = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("Account", back_populates="transactions")
    category = relationship("Category", back_populates="transactions")


# Bank Integration Models

class BankConnection(Base):
    __tablename__ = "bank_connections"
    __table_args__ = (
        UniqueConstraint("provider", "provider_connection_id", name="uq_bank_connections_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(50), nullable=False, default="truelayer")
    provider_connection_id = Column(String(255), nullable=False)
    institution_id = Column(String(255), nullable=True)
    institution_name = Column(String(255), nullable=True)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # Connection status
    status = Column(SQLEnum(BankConnectionStatus), nullable=False, default=BankConnectionStatus.PENDING, index=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    linked_accounts = relationship("LinkedBankAccount", back_populates="connection")
    sync_runs = relationship("SyncRun", back_populates="connection")


class LinkedBankAccount(Base):
    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint("connection_id", "provider_account_id", name="uq_bank_accounts_provider_account"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("bank_connections.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)

    # Provider-side identifiers
    provider_account_id = Column(String(255), nullable=False)
    account_number = Column(String(50), nullable=True)  # masked
    sort_code = Column(String(20), nullable=True)
    iban = Column(String(50), nullable=True)
    account_type = Column(String(50), nullable=True)  # raw provider string
    currency = Column(String(3), default="GBP")

    # Watermark; advances only after a successful import
    sync_from_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    connection = relationship("BankConnection", back_populates="linked_accounts")
    account = relationship("Account")


class SyncRun(Base):
    __tablename__ = "transaction_sync_history"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("bank_connections.id"), nullable=False, index=True)

    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    status = Column(SQLEnum(SyncRunStatus), nullable=False, default=SyncRunStatus.IN_PROGRESS, index=True)

    # Results
    transactions_fetched = Column(Integer, default=0)
    transactions_imported = Column(Integer, default=0)
    transactions_skipped = Column(Integer, default=0)
    transactions_failed = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)

    connection = relationship("BankConnection", back_populates="sync_runs")


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id = Column(Integer, primary_key=True, index=True)
    state_key = Column(String(128), unique=True, nullable=False)
    tenant_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    return_to = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
