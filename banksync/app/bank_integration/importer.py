"""
Transaction import/merge.

Merges mapped provider rows into the tenant's transaction store without
duplicates. Every row is committed on its own, so one bad row never rolls
back the rows imported before it.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from banksync.app.errors import ImportConflictError
from banksync.app.models import Account, Transaction, TransactionType
from banksync.app.schemas import ImportCandidate, ImportResult
from .deduplication import TransactionDeduplicator

logger = logging.getLogger(__name__)

# Errors kept on the result; counters stay exact past this
MAX_REPORTED_ERRORS = 50


class TransactionImporter:
    """
    Import mapped transactions into an account.

    When a CategorizationService is attached, rows it can auto-assign with a
    category of the matching type are filed there instead of the default.

    Example:
        >>> importer = TransactionImporter(db)
        >>> result = importer.import_batch("tenant-1", account, uncategorized.id, candidates)
        >>> print(f"{result.imported} new, {result.skipped} already present")
    """

    def __init__(self, db: Session, categorizer=None):
        self.db = db
        self.categorizer = categorizer

    def import_batch(
        self,
        tenant_id: str,
        account: Account,
        default_category_id: int,
        transactions: Iterable[ImportCandidate],
        income_category_id: Optional[int] = None
    ) -> ImportResult:
        """
        Import rows in the order given.

        Args:
            tenant_id: Owning tenant
            account: Internal account the rows belong to
            default_category_id: Category for rows nothing better is found for
            transactions: Mapped candidates
            income_category_id: Default for income rows, when different

        Returns:
            ImportResult with imported/skipped/failed counts
        """
        result = ImportResult()
        context = None

        for candidate in transactions:
            try:
                if self.categorizer is not None and context is None:
                    context = self.categorizer.load_context(tenant_id)
                transaction = self._import_one(
                    tenant_id, account, candidate, default_category_id, income_category_id, context
                )
                self.db.commit()
                result.imported += 1
                logger.debug(f"Imported transaction {transaction.id} into account {account.id}")

            except ImportConflictError as e:
                result.skipped += 1
                logger.debug(f"Skipped duplicate: {e}")

            except (ValueError, SQLAlchemyError) as e:
                self.db.rollback()
                result.failed += 1
                if len(result.errors) < MAX_REPORTED_ERRORS:
                    result.errors.append(f"{candidate.description[:50]}: {e}")
                logger.warning(f"Failed to import transaction '{candidate.description[:50]}' into account {account.id}: {e}")

        logger.info(
            f"Import into account {account.id}: {result.imported} imported, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    def _import_one(
        self,
        tenant_id: str,
        account: Account,
        candidate: ImportCandidate,
        default_category_id: int,
        income_category_id: Optional[int],
        context
    ) -> Transaction:
        if candidate.date is None:
            raise ValueError("Transaction has no valid date")

        tx_type = TransactionType(candidate.type)

        if candidate.provider_transaction_id:
            existing = TransactionDeduplicator.find_by_provider_id(
                self.db, tenant_id, account.id, candidate.provider_transaction_id
            )
            if existing:
                raise ImportConflictError(
                    f"Provider transaction {candidate.provider_transaction_id} already imported",
                    existing_transaction_id=existing.id
                )

        dedup_hash = TransactionDeduplicator.generate_hash(
            account.id, candidate.date, tx_type, candidate.amount, candidate.description
        )
        if not candidate.provider_transaction_id:
            existing = TransactionDeduplicator.find_by_hash(self.db, tenant_id, account.id, dedup_hash)
            if existing:
                raise ImportConflictError(
                    f"Transaction matching {dedup_hash} already imported",
                    existing_transaction_id=existing.id
                )

        category_id = default_category_id
        if tx_type == TransactionType.INCOME and income_category_id is not None:
            category_id = income_category_id
        if context is not None:
            category_id = self._auto_category(tenant_id, candidate.description, tx_type, context) or category_id

        transaction = Transaction(
            tenant_id=tenant_id,
            account_id=account.id,
            category_id=category_id,
            amount=candidate.amount,
            date=candidate.date,
            type=tx_type,
            description=candidate.description,
            notes=candidate.notes,
            provider_transaction_id=candidate.provider_transaction_id,
            dedup_hash=dedup_hash
        )
        self.db.add(transaction)

        delta = Decimal(candidate.amount)
        account.balance = Decimal(account.balance or 0) + (delta if tx_type == TransactionType.INCOME else -delta)

        self.db.flush()
        return transaction

    def _auto_category(self, tenant_id: str, description: str, tx_type: TransactionType, context) -> Optional[int]:
        merchant_patterns, categories = context
        suggestion = self.categorizer.categorize(
            tenant_id, description, merchant_patterns=merchant_patterns, categories=categories
        )
        if suggestion.action != "auto-assign" or suggestion.suggested_category_id is None:
            return None

        category = next((c for c in categories if c.id == suggestion.suggested_category_id), None)
        if category is None or category.type != tx_type:
            return None
        return category.id
