"""Tests for the sync orchestrator."""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from banksync.config import Settings
from banksync.app.errors import (
    InvalidStateError, NotFoundError, ProviderRejectedError, ProviderUnavailableError
)
from banksync.app.models import (
    Account, BankConnection, BankConnectionStatus, Category, LinkedBankAccount, SyncRun,
    SyncRunStatus, Transaction, TransactionType, utcnow
)
from banksync.app.bank_integration.sync import (
    TransactionSyncService, map_provider_transaction, parse_provider_date
)
from conftest import TENANT, provider_txn


def reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


def linked(db, provider_account_id):
    db.expire_all()
    return db.query(LinkedBankAccount).filter_by(provider_account_id=provider_account_id).one()


@pytest.fixture
def service(session_factory, provider, encryption, locks, settings):
    return TransactionSyncService(session_factory, provider, encryption, locks, settings)


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


class TestMapping:
    def test_negative_amount_is_expense(self):
        candidate = map_provider_transaction(provider_txn("t1", "-12.50", reference="REF-1"))

        assert candidate.type == "expense"
        assert candidate.amount == Decimal("12.50")
        assert candidate.notes == "REF-1"
        assert candidate.date == date(2024, 3, 1)
        assert candidate.provider_transaction_id == "t1"

    def test_zero_is_income(self):
        assert map_provider_transaction(provider_txn("t1", "0")).type == "income"

    def test_blank_description_gets_default(self):
        assert map_provider_transaction(provider_txn("t1", "1", description="   ")).description == "Transaction"

    def test_long_description_is_truncated(self):
        assert len(map_provider_transaction(provider_txn("t1", "1", description="x" * 600)).description) == 500

    def test_missing_amount_raises(self):
        with pytest.raises(ValueError):
            map_provider_transaction(provider_txn("t1", None))

    def test_bad_timestamp_leaves_date_empty(self):
        assert map_provider_transaction(provider_txn("t1", "1", timestamp="yesterday")).date is None

    @pytest.mark.parametrize("value, expected", [
        ("2024-03-01", date(2024, 3, 1)),
        ("2024-03-01T23:59:59Z", date(2024, 3, 1)),
        ("2024-03-01T10:00:00+01:00", date(2024, 3, 1)),
        ("", None),
        (None, None),
        ("not a date", None),
    ])
    def test_parse_provider_date(self, value, expected):
        assert parse_provider_date(value) == expected


# ---------------------------------------------------------------------------
# Successful syncs
# ---------------------------------------------------------------------------


class TestSyncConnection:
    @pytest.mark.asyncio
    async def test_imports_and_records_run(self, service, provider, db, make_connection):
        provider.transactions["acc-1"] = [
            provider_txn("t1", "-12.50", reference="REF-1"),
            provider_txn("t2", "100"),
            provider_txn("t3", None),
        ]
        connection = make_connection()

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "success"
        assert (result.fetched, result.imported, result.skipped, result.failed) == (3, 2, 0, 1)

        run = reload(db, SyncRun, result.sync_id)
        assert run.status == SyncRunStatus.COMPLETED
        assert run.completed_at is not None
        assert run.transactions_imported == 2

        stored = db.get(BankConnection, connection.id)
        assert stored.last_sync_at is not None
        assert stored.last_error is None

        rows = {t.provider_transaction_id: t for t in db.query(Transaction).all()}
        assert rows["t1"].type == TransactionType.EXPENSE
        assert rows["t1"].notes == "REF-1"
        assert rows["t2"].type == TransactionType.INCOME

        account_row = db.get(Account, linked(db, "acc-1").account_id)
        assert account_row.balance == Decimal("87.50")

    @pytest.mark.asyncio
    async def test_creates_uncategorized_categories(self, service, provider, db, make_connection):
        provider.transactions["acc-1"] = [provider_txn("t1", "-1"), provider_txn("t2", "1")]
        connection = make_connection()

        await service.sync_connection(connection.id, TENANT)

        db.expire_all()
        names = {(c.name, c.type) for c in db.query(Category).filter_by(tenant_id=TENANT).all()}
        assert names == {("Uncategorized", TransactionType.EXPENSE), ("Uncategorized", TransactionType.INCOME)}

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, service, provider, db, make_connection):
        provider.transactions["acc-1"] = [provider_txn("t1", "-5"), provider_txn("t2", "-6")]
        connection = make_connection()

        first = await service.sync_connection(connection.id, TENANT)
        second = await service.sync_connection(connection.id, TENANT)

        assert first.imported == 2
        assert (second.imported, second.skipped) == (0, 2)
        db.expire_all()
        assert db.query(Transaction).count() == 2
        assert db.query(SyncRun).count() == 2

    @pytest.mark.asyncio
    async def test_refreshes_expired_token_before_fetching(self, service, provider, make_connection):
        connection = make_connection(expires_in=timedelta(minutes=-1))

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "success"
        assert provider.refresh_calls == ["refresh-0"]
        assert provider.fetch_calls[0][0] == "access-1"


class TestFetchWindow:
    @pytest.mark.asyncio
    async def test_first_sync_uses_long_lookback(self, service, provider, make_connection):
        connection = make_connection()

        await service.sync_connection(connection.id, TENANT)

        _, _, from_date, to_date = provider.fetch_calls[0]
        assert (to_date - from_date).days == 730

    @pytest.mark.asyncio
    async def test_account_without_watermark_on_known_connection(self, service, provider, make_connection):
        connection = make_connection(last_sync_at=utcnow() - timedelta(days=1))

        await service.sync_connection(connection.id, TENANT)

        _, _, from_date, to_date = provider.fetch_calls[0]
        assert (to_date - from_date).days == 90

    @pytest.mark.asyncio
    async def test_watermark_is_used_after_success(self, service, provider, db, make_connection):
        connection = make_connection()

        await service.sync_connection(connection.id, TENANT)
        watermark = linked(db, "acc-1").sync_from_date
        await service.sync_connection(connection.id, TENANT)

        assert watermark is not None
        assert provider.fetch_calls[1][2] == watermark.date()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestAccountFailures:
    @pytest.mark.asyncio
    async def test_one_failing_account_does_not_fail_the_sync(self, service, provider, db, make_connection):
        provider.transactions = {
            "acc-1": [provider_txn("t1", "-1")],
            "acc-2": ProviderUnavailableError("timeout"),
            "acc-3": [provider_txn("t3", "-3")],
        }
        connection = make_connection(account_ids=("acc-1", "acc-2", "acc-3"))

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "success"
        assert result.imported == 2
        assert result.failed == 1

        stored = reload(db, BankConnection, connection.id)
        assert stored.status == BankConnectionStatus.ACTIVE
        assert stored.last_error is None
        assert linked(db, "acc-1").sync_from_date is not None
        assert linked(db, "acc-2").sync_from_date is None
        assert linked(db, "acc-3").sync_from_date is not None

    @pytest.mark.asyncio
    async def test_all_accounts_failing_fails_the_sync(self, service, provider, db, make_connection):
        provider.transactions = {
            "acc-1": ProviderUnavailableError("down"),
            "acc-2": ProviderRejectedError("forbidden", 403),
        }
        connection = make_connection(account_ids=("acc-1", "acc-2"))

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "failed"
        assert result.failed == 2
        stored = reload(db, BankConnection, connection.id)
        assert stored.status == BankConnectionStatus.ACTIVE
        assert "acc-1" in stored.last_error
        assert "acc-2" in stored.last_error
        assert db.get(SyncRun, result.sync_id).status == SyncRunStatus.COMPLETED


class TestConnectionFailures:
    @pytest.mark.asyncio
    async def test_expired_token_without_refresh_marks_error(self, service, provider, db, make_connection):
        connection = make_connection(refresh_token=None, expires_in=timedelta(minutes=-5))

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "failed"
        assert provider.fetch_calls == []
        stored = reload(db, BankConnection, connection.id)
        assert stored.status == BankConnectionStatus.ERROR
        assert stored.last_error
        run = db.get(SyncRun, result.sync_id)
        assert run.status == SyncRunStatus.FAILED
        assert run.error_message == stored.last_error

    @pytest.mark.asyncio
    async def test_rejected_refresh_marks_error(self, service, provider, db, make_connection):
        provider.refresh_error = ProviderRejectedError("invalid_grant", 400)
        connection = make_connection(expires_in=timedelta(minutes=-5))

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "failed"
        assert reload(db, BankConnection, connection.id).status == BankConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_unavailable_refresh_keeps_connection_active(self, service, provider, db, make_connection):
        provider.refresh_error = ProviderUnavailableError("503")
        connection = make_connection(expires_in=timedelta(minutes=-5))

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "failed"
        stored = reload(db, BankConnection, connection.id)
        assert stored.status == BankConnectionStatus.ACTIVE
        assert stored.last_error == "503"
        assert db.get(SyncRun, result.sync_id).status == SyncRunStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_linked_accounts(self, service, db, make_connection):
        connection = make_connection(account_ids=())

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "failed"
        assert "no linked accounts" in result.error
        assert reload(db, SyncRun, result.sync_id).status == SyncRunStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout_keeps_partial_counts(self, session_factory, provider, encryption, locks, db, make_connection):
        settings = Settings(secret_key="test-secret-key", sync_max_duration_seconds=0.2)
        service = TransactionSyncService(session_factory, provider, encryption, locks, settings)
        provider.transactions = {"acc-1": [provider_txn("t1", "-1")], "acc-2": [provider_txn("t2", "-2")]}
        provider.fetch_delays = {"acc-2": 2.0}
        connection = make_connection(account_ids=("acc-1", "acc-2"))

        result = await service.sync_connection(connection.id, TENANT)

        assert result.status == "failed"
        assert result.imported == 1
        run = reload(db, SyncRun, result.sync_id)
        assert run.status == SyncRunStatus.FAILED
        assert "exceeded" in run.error_message
        assert linked(db, "acc-1").sync_from_date is not None
        assert linked(db, "acc-2").sync_from_date is None


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_unknown_connection(self, service, db):
        with pytest.raises(NotFoundError):
            await service.sync_connection(999, TENANT)
        assert db.query(SyncRun).count() == 0

    @pytest.mark.asyncio
    async def test_other_tenants_connection(self, service, db, make_connection):
        connection = make_connection(tenant_id="tenant-2")

        with pytest.raises(NotFoundError):
            await service.sync_connection(connection.id, TENANT)
        assert db.query(SyncRun).count() == 0

    @pytest.mark.asyncio
    async def test_inactive_connection(self, service, db, make_connection):
        connection = make_connection(status=BankConnectionStatus.DISCONNECTED)

        with pytest.raises(InvalidStateError):
            await service.sync_connection(connection.id, TENANT)
        assert db.query(SyncRun).count() == 0

    @pytest.mark.asyncio
    async def test_concurrent_sync_is_rejected(self, service, provider, make_connection):
        provider.fetch_gate = asyncio.Event()
        connection = make_connection()
        connection_id = connection.id

        running = asyncio.create_task(service.sync_connection(connection_id, TENANT))
        for _ in range(100):
            if provider.fetch_calls:
                break
            await asyncio.sleep(0)

        with pytest.raises(InvalidStateError):
            await service.sync_connection(connection_id, TENANT)

        provider.fetch_gate.set()
        result = await running
        assert result.status == "success"


# ---------------------------------------------------------------------------
# Tenant-wide sync
# ---------------------------------------------------------------------------


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, service, provider, make_connection):
        provider.transactions = {
            "acc-1": [provider_txn("t1", "-1")],
            "acc-2": ProviderUnavailableError("down"),
        }
        make_connection(account_ids=("acc-1",))
        make_connection(account_ids=("acc-2",))
        make_connection(account_ids=("acc-3",), status=BankConnectionStatus.DISCONNECTED)

        results = await service.sync_all_connections_for_tenant(TENANT)

        assert [r.status for r in results] == ["success", "failed"]
        assert "acc-3" not in [call[1] for call in provider.fetch_calls]

    @pytest.mark.asyncio
    async def test_no_connections(self, service):
        assert await service.sync_all_connections_for_tenant(TENANT) == []
