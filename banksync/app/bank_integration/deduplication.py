"""
Transaction Deduplication Module

Detects transactions that are already in the store:
1. Provider transaction ID (exact, backed by a unique constraint)
2. Fingerprint hash, for rows the provider gave no ID
"""

import hashlib
from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from typing import Optional, Union
from sqlalchemy.orm import Session

from banksync.app.models import Transaction, TransactionType
from banksync.app.categorization.taxonomy import normalize_text

DESCRIPTION_HASH_LENGTH = 200


class TransactionDeduplicator:
    """
    Handle transaction deduplication for provider imports.

    Prevents importing the same transaction multiple times when:
    - Overlapping sync windows return the same rows
    - A sync is retried after a partial failure
    """

    @staticmethod
    def generate_hash(
        account_id: int,
        transaction_date: date,
        transaction_type: Union[TransactionType, str],
        amount: Decimal,
        description: str
    ) -> str:
        """
        Generate the fallback fingerprint for a transaction.

        Uses MD5 for speed (not security). Amount is rounded half-up to two
        decimals and the description is normalized, so cosmetic differences
        between two fetches of the same row hash identically.

        Args:
            account_id: Internal account the row belongs to
            transaction_date: Transaction date
            transaction_type: income or expense
            amount: Unsigned amount
            description: Transaction description

        Returns:
            32-character hex MD5 hash

        Example:
            >>> TransactionDeduplicator.generate_hash(
            ...     7, date(2024, 1, 15), "expense", Decimal("3.455"), "Coffee  Shop!"
            ... ) == TransactionDeduplicator.generate_hash(
            ...     7, date(2024, 1, 15), "expense", Decimal("3.46"), "coffee shop"
            ... )
            True
        """
        type_str = transaction_type.value if isinstance(transaction_type, TransactionType) else str(transaction_type)
        amount_str = str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
        desc_normalized = normalize_text(description)[:DESCRIPTION_HASH_LENGTH]

        hash_input = f"{account_id}|{transaction_date.isoformat()}|{type_str}|{amount_str}|{desc_normalized}"
        return hashlib.md5(hash_input.encode()).hexdigest()

    @staticmethod
    def find_by_provider_id(
        db: Session,
        tenant_id: str,
        account_id: int,
        provider_transaction_id: str
    ) -> Optional[Transaction]:
        return db.query(Transaction).filter(
            Transaction.tenant_id == tenant_id,
            Transaction.account_id == account_id,
            Transaction.provider_transaction_id == provider_transaction_id
        ).first()

    @staticmethod
    def find_by_hash(
        db: Session,
        tenant_id: str,
        account_id: int,
        dedup_hash: str
    ) -> Optional[Transaction]:
        """
        Find a row with the same fingerprint.

        Only rows without a provider ID are candidates: a row the provider
        identified is deduplicated by that ID alone.
        """
        return db.query(Transaction).filter(
            Transaction.tenant_id == tenant_id,
            Transaction.account_id == account_id,
            Transaction.provider_transaction_id.is_(None),
            Transaction.dedup_hash == dedup_hash
        ).first()
