"""
Sync Orchestrator

Runs one sync of a bank connection: refresh the token, pull each linked
account's transactions over its window, merge them through the importer and
record the outcome on a SyncRun. A failing account is counted and skipped;
connection-level failures end the run and are recorded, never raised.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from banksync.app.errors import (
    InvalidStateError, NoLinkedAccountsError, NotFoundError, ProviderRejectedError,
    SyncTimeoutError, TokenExpiredError
)
from banksync.app.models import (
    BankConnection, BankConnectionStatus, Category, LinkedBankAccount, SyncRun,
    SyncRunStatus, TransactionType, utcnow
)
from banksync.app.schemas import ImportCandidate, SyncResult
from banksync.app.categorization.engine import CategorizationEngine, CategorizationService
from banksync.app.categorization.merchants import UNCATEGORIZED_NAME
from banksync.config import Settings, get_settings
from .encryption import TokenEncryption
from .importer import TransactionImporter
from .locks import ConnectionLocks, connection_locks
from .providers.base import BaseBankProvider, ProviderTransaction
from .tokens import TokenManager

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Transaction"
MAX_DESCRIPTION_LENGTH = 500

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


def parse_provider_date(value: Optional[str]):
    """Provider timestamps are ISO-8601 date or datetime strings; returns None if unparsable."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00')).date()
    except ValueError:
        return None


def map_provider_transaction(raw: ProviderTransaction) -> ImportCandidate:
    """
    Map a provider transaction to the import shape.

    The sign decides the type (non-negative is income) and the magnitude is
    stored. An unparsable date is left as None for the importer to reject.

    Raises:
        ValueError: The provider amount is missing or not a number
    """
    if raw.amount is None:
        raise ValueError(f"Transaction {raw.transaction_id or '?'} has no valid amount")

    description = ((raw.description or "").strip() or DEFAULT_DESCRIPTION)[:MAX_DESCRIPTION_LENGTH]

    return ImportCandidate(
        description=description,
        amount=abs(raw.amount),
        date=parse_provider_date(raw.timestamp),
        type=TransactionType.INCOME.value if raw.amount >= 0 else TransactionType.EXPENSE.value,
        provider_transaction_id=raw.transaction_id or None,
        notes=raw.provider_reference
    )


class TransactionSyncService:
    """
    Orchestrates provider syncs.

    Each sync works in its own session from `session_factory`, so syncs of
    different connections can run concurrently. Two syncs of the same
    connection cannot: the second is rejected with InvalidStateError.

    Example:
        >>> service = TransactionSyncService(SessionLocal, TrueLayerProvider.from_settings(settings))
        >>> result = await service.sync_connection(connection_id=12, tenant_id="tenant-1")
        >>> print(f"{result.imported} imported, {result.failed} failed")
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: BaseBankProvider,
        encryption: Optional[TokenEncryption] = None,
        locks: Optional[ConnectionLocks] = None,
        settings: Optional[Settings] = None,
        engine: Optional[CategorizationEngine] = None,
        auto_categorize: bool = True
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.encryption = encryption or TokenEncryption()
        self.locks = locks or connection_locks
        self.settings = settings or get_settings()
        self.engine = engine
        self.auto_categorize = auto_categorize

    async def sync_all_connections_for_tenant(self, tenant_id: str) -> List[SyncResult]:
        """
        Sync every active connection of a tenant concurrently.

        One connection failing never cancels the others; exceptions are
        turned into failed results.
        """
        db = self.session_factory()
        try:
            connection_ids = [
                row.id for row in db.query(BankConnection.id).filter(
                    BankConnection.tenant_id == tenant_id,
                    BankConnection.status == BankConnectionStatus.ACTIVE
                ).order_by(BankConnection.id).all()
            ]
        finally:
            db.close()

        logger.info(f"Syncing {len(connection_ids)} connection(s) for tenant {tenant_id}")

        outcomes = await asyncio.gather(
            *(self.sync_connection(connection_id, tenant_id) for connection_id in connection_ids),
            return_exceptions=True
        )

        results = []
        for connection_id, outcome in zip(connection_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Sync of connection {connection_id} raised: {outcome}")
                results.append(SyncResult(status=STATUS_FAILED, error=str(outcome)))
            else:
                results.append(outcome)
        return results

    async def sync_connection(self, connection_id: int, tenant_id: Optional[str] = None) -> SyncResult:
        """
        Sync one connection.

        Raises:
            NotFoundError: No such connection (for this tenant)
            InvalidStateError: Connection is not active, or already syncing

        Every other failure is recorded on the SyncRun and returned as a
        failed SyncResult.
        """
        db = self.session_factory()
        try:
            query = db.query(BankConnection).filter(BankConnection.id == connection_id)
            if tenant_id is not None:
                query = query.filter(BankConnection.tenant_id == tenant_id)
            connection = query.first()

            if not connection:
                raise NotFoundError(f"Bank connection {connection_id} not found")
            if connection.status != BankConnectionStatus.ACTIVE:
                raise InvalidStateError(
                    f"Bank connection {connection_id} is {connection.status.value}, not active"
                )

            lock = self.locks.for_sync(connection.id)
            if lock.locked():
                raise InvalidStateError(f"A sync of bank connection {connection_id} is already running")

            async with lock:
                return await self._run(db, connection)
        finally:
            db.close()

    async def _run(self, db: Session, connection: BankConnection) -> SyncResult:
        deadline = time.monotonic() + self.settings.sync_max_duration_seconds

        sync_run = SyncRun(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            started_at=utcnow(),
            status=SyncRunStatus.IN_PROGRESS,
            transactions_fetched=0,
            transactions_imported=0,
            transactions_skipped=0,
            transactions_failed=0
        )
        db.add(sync_run)
        db.commit()

        logger.info(f"Sync {sync_run.id} started for connection {connection.id}")

        try:
            token_manager = TokenManager(db, self.provider, self.encryption, self.locks)
            try:
                access_token = await token_manager.ensure_fresh_token(connection)
            except (TokenExpiredError, ProviderRejectedError) as e:
                # The grant is unusable until the user re-links
                connection.status = BankConnectionStatus.ERROR
                return self._fail(db, sync_run, connection, str(e))

            linked_accounts = db.query(LinkedBankAccount).filter(
                LinkedBankAccount.connection_id == connection.id,
                LinkedBankAccount.tenant_id == connection.tenant_id
            ).order_by(LinkedBankAccount.id).all()

            if not linked_accounts:
                raise NoLinkedAccountsError(f"Bank connection {connection.id} has no linked accounts")

            # Decided before any account updates a watermark
            first_sync = connection.last_sync_at is None

            account_errors = []
            for linked_account in linked_accounts:
                if time.monotonic() >= deadline:
                    raise SyncTimeoutError(
                        f"Sync exceeded {self.settings.sync_max_duration_seconds}s before account "
                        f"{linked_account.provider_account_id}"
                    )
                try:
                    await self._sync_account(db, sync_run, linked_account, access_token, first_sync, deadline)
                except SyncTimeoutError:
                    raise
                except Exception as e:
                    db.rollback()
                    sync_run.transactions_failed += 1
                    db.commit()
                    account_errors.append(f"{linked_account.provider_account_id}: {e}")
                    logger.warning(
                        f"Sync {sync_run.id}: account {linked_account.provider_account_id} failed: {e}"
                    )

            overall_failure = len(account_errors) == len(linked_accounts)

            connection.last_sync_at = utcnow()
            if overall_failure:
                connection.last_error = f"All {len(linked_accounts)} linked account(s) failed: " + "; ".join(account_errors)
            else:
                connection.last_error = None

            sync_run.status = SyncRunStatus.COMPLETED
            sync_run.completed_at = utcnow()
            db.commit()

            logger.info(
                f"Sync {sync_run.id} completed - fetched {sync_run.transactions_fetched}, "
                f"imported {sync_run.transactions_imported}, skipped {sync_run.transactions_skipped}, "
                f"failed {sync_run.transactions_failed}"
            )

            return self._result(
                sync_run,
                STATUS_FAILED if overall_failure else STATUS_SUCCESS,
                connection.last_error if overall_failure else None
            )

        except Exception as e:
            logger.error(f"Sync {sync_run.id} for connection {connection.id} failed: {e}")
            db.rollback()
            return self._fail(db, sync_run, connection, str(e))

    async def _sync_account(
        self,
        db: Session,
        sync_run: SyncRun,
        linked_account: LinkedBankAccount,
        access_token: str,
        first_sync: bool,
        deadline: float
    ) -> None:
        from_date, to_date = self.fetch_window(linked_account, first_sync)
        window_end = utcnow()

        # Nothing is held open across the provider call
        db.commit()

        remaining = deadline - time.monotonic()
        try:
            raw_transactions = await asyncio.wait_for(
                self.provider.fetch_transactions(
                    access_token, linked_account.provider_account_id, from_date, to_date
                ),
                timeout=max(remaining, 0)
            )
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(
                f"Sync exceeded {self.settings.sync_max_duration_seconds}s while fetching account "
                f"{linked_account.provider_account_id}"
            ) from e

        candidates = []
        mapping_failures = 0
        for raw in raw_transactions:
            try:
                candidates.append(map_provider_transaction(raw))
            except ValueError as e:
                mapping_failures += 1
                logger.warning(f"Skipping unmappable transaction on account {linked_account.provider_account_id}: {e}")

        tenant_id = linked_account.tenant_id
        expense_category, income_category = self.resolve_default_categories(db, tenant_id)

        categorizer = None
        if self.auto_categorize:
            categorizer = CategorizationService(db, self.engine)

        result = TransactionImporter(db, categorizer).import_batch(
            tenant_id,
            linked_account.account,
            expense_category.id,
            candidates,
            income_category_id=income_category.id
        )

        linked_account.sync_from_date = window_end

        sync_run.transactions_fetched += len(raw_transactions)
        sync_run.transactions_imported += result.imported
        sync_run.transactions_skipped += result.skipped
        sync_run.transactions_failed += result.failed + mapping_failures
        db.commit()

        logger.info(
            f"Sync {sync_run.id}: account {linked_account.provider_account_id} "
            f"{from_date}..{to_date} fetched {len(raw_transactions)}, imported {result.imported}, "
            f"skipped {result.skipped}, failed {result.failed + mapping_failures}"
        )

    def fetch_window(self, linked_account: LinkedBankAccount, first_sync: bool):
        """
        [watermark, today], or a lookback window for an account with no
        watermark. A connection's first sync seeds a longer history.
        """
        now = utcnow()
        if linked_account.sync_from_date is not None:
            from_date = linked_account.sync_from_date.date()
        else:
            lookback = (
                self.settings.initial_sync_lookback_days if first_sync
                else self.settings.default_sync_lookback_days
            )
            from_date = (now - timedelta(days=lookback)).date()
        return from_date, now.date()

    @staticmethod
    def resolve_default_categories(db: Session, tenant_id: str) -> Tuple[Category, Category]:
        """
        The tenant's "Uncategorized" expense and income categories, created
        on first use.
        """
        resolved = []
        for tx_type in (TransactionType.EXPENSE, TransactionType.INCOME):
            category = db.query(Category).filter(
                Category.tenant_id == tenant_id,
                Category.name == UNCATEGORIZED_NAME,
                Category.type == tx_type
            ).order_by(Category.id).first()

            if not category:
                category = Category(tenant_id=tenant_id, name=UNCATEGORIZED_NAME, type=tx_type, color="#9ca3af")
                db.add(category)
                db.commit()
                logger.info(f"Created {tx_type.value} '{UNCATEGORIZED_NAME}' category for tenant {tenant_id}")
            resolved.append(category)

        return resolved[0], resolved[1]

    def _fail(self, db: Session, sync_run: SyncRun, connection: BankConnection, message: str) -> SyncResult:
        sync_run.status = SyncRunStatus.FAILED
        sync_run.completed_at = utcnow()
        sync_run.error_message = message
        connection.last_error = message
        db.commit()

        logger.error(f"Sync {sync_run.id} for connection {connection.id} failed: {message}")
        return self._result(sync_run, STATUS_FAILED, message)

    @staticmethod
    def _result(sync_run: SyncRun, status: str, error: Optional[str] = None) -> SyncResult:
        return SyncResult(
            sync_id=sync_run.id,
            status=status,
            fetched=sync_run.transactions_fetched,
            imported=sync_run.transactions_imported,
            skipped=sync_run.transactions_skipped,
            failed=sync_run.transactions_failed,
            error=error
        )
