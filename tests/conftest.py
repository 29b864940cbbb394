"""Shared test fixtures."""

import asyncio
import os
from datetime import timedelta
from decimal import Decimal

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from banksync.config import Settings
from banksync.database import Base
from banksync.app.models import (
    Account, AccountType, BankConnection, BankConnectionStatus, LinkedBankAccount, utcnow
)
from banksync.app.bank_integration.encryption import TokenEncryption
from banksync.app.bank_integration.locks import ConnectionLocks
from banksync.app.bank_integration.providers.base import (
    BaseBankProvider, ProviderBalance, ProviderMetadata,
    ProviderTokens, ProviderTransaction
)

TENANT = "tenant-1"
USER = "user-1"


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider(BaseBankProvider):
    """In-memory provider. Values in `transactions` may be exceptions to raise."""

    name = "truelayer"

    def __init__(self):
        self.transactions = {}
        self.accounts = []
        self.balances = {}
        self.metadata = ProviderMetadata(credentials_id="cred-1", institution_id="ob-bank", institution_name="OB Bank")
        self.exchange_tokens = ProviderTokens(access_token="access-new", refresh_token="refresh-new", expires_in=3600)
        self.refresh_error = None
        self.rotate_refresh_tokens = True
        self.refresh_delay = 0
        self.fetch_delays = {}
        self.fetch_gate = None
        self.revoke_error = None

        self.refresh_calls = []
        self.fetch_calls = []
        self.revoked = []

    def build_authorization_url(self, state, nonce=None):
        return f"https://auth.example.com/?state={state}"

    async def exchange_code(self, code):
        return self.exchange_tokens

    async def refresh_access_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error:
            raise self.refresh_error
        n = len(self.refresh_calls)
        return ProviderTokens(
            access_token=f"access-{n}",
            refresh_token=f"refresh-{n}" if self.rotate_refresh_tokens else None,
            expires_in=3600
        )

    async def fetch_metadata(self, access_token):
        return self.metadata

    async def fetch_accounts(self, access_token):
        return list(self.accounts)

    async def fetch_transactions(self, access_token, provider_account_id, from_date, to_date):
        self.fetch_calls.append((access_token, provider_account_id, from_date, to_date))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        delay = self.fetch_delays.get(provider_account_id)
        if delay:
            await asyncio.sleep(delay)
        result = self.transactions.get(provider_account_id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def fetch_balance(self, access_token, provider_account_id):
        result = self.balances.get(provider_account_id, ProviderBalance())
        if isinstance(result, Exception):
            raise result
        return result

    async def revoke_token(self, refresh_token):
        self.revoked.append(refresh_token)
        if self.revoke_error:
            raise self.revoke_error


def provider_txn(transaction_id, amount, description="Coffee", timestamp="2024-03-01T10:00:00Z", reference=None):
    return ProviderTransaction(
        transaction_id=transaction_id,
        timestamp=timestamp,
        description=description,
        amount=Decimal(str(amount)) if amount is not None else None,
        currency="GBP",
        provider_reference=reference
    )


@pytest.fixture
def txn():
    return provider_txn


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def encryption():
    return TokenEncryption("test-secret-key")


@pytest.fixture
def locks():
    return ConnectionLocks()


@pytest.fixture
def settings():
    return Settings(secret_key="test-secret-key", frontend_url="http://frontend.test")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_connection(db, encryption):
    """
    Create an active connection with linked accounts.

    Returns the BankConnection; linked accounts are reachable through
    `connection.linked_accounts`.
    """

    def _make(
        tenant_id=TENANT,
        account_ids=("acc-1",),
        access_token="access-0",
        refresh_token="refresh-0",
        expires_in=timedelta(hours=1),
        status=BankConnectionStatus.ACTIVE,
        last_sync_at=None,
        provider_connection_id=None
    ):
        connection = BankConnection(
            tenant_id=tenant_id,
            user_id=USER,
            provider="truelayer",
            provider_connection_id=provider_connection_id or f"cred-{tenant_id}-{len(db.query(BankConnection).all())}",
            institution_name="OB Bank",
            access_token=encryption.encrypt(access_token),
            refresh_token=encryption.encrypt(refresh_token),
            token_expires_at=utcnow() + expires_in,
            status=status,
            last_sync_at=last_sync_at
        )
        db.add(connection)
        db.flush()

        for provider_account_id in account_ids:
            account = Account(
                tenant_id=tenant_id,
                name=f"Account {provider_account_id}",
                type=AccountType.CURRENT,
                balance=Decimal("0"),
                currency="GBP"
            )
            db.add(account)
            db.flush()
            db.add(LinkedBankAccount(
                tenant_id=tenant_id,
                connection_id=connection.id,
                account_id=account.id,
                provider_account_id=provider_account_id,
                currency="GBP"
            ))

        db.commit()
        return connection

    return _make
