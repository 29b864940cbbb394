"""
Transaction Categorization Engine

Layered, confidence-scored categorization of a transaction description:

1. Merchant history: a merchant the tenant filed under the same category at
   least three times is auto-assigned with 0.95 confidence.
2. Keyword scoring against the category taxonomy.
3. Confidence thresholds decide between auto-assign, suggest and manual.

CategorizationEngine is pure (no I/O). CategorizationService wraps it with the
tenant's categories and learned merchant patterns.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from banksync.app.errors import InvalidStateError, NotFoundError
from banksync.app.models import Category, Transaction, TransactionType
from banksync.app.schemas import CategorizationResult, CategorizationStats, TopMerchant
from .merchants import (
    UNCATEGORIZED_NAME, MerchantPattern, MerchantPatternLearner, extract_merchant_name
)
from .taxonomy import CategoryKeywordEntry, CategoryTaxonomy, get_default_taxonomy, normalize_text

logger = logging.getLogger(__name__)

ACTION_AUTO_ASSIGN = "auto-assign"
ACTION_SUGGEST = "suggest"
ACTION_MANUAL = "manual"

MERCHANT_CONFIDENCE = 0.95
MERCHANT_MIN_FREQUENCY = 3

AUTO_ASSIGN_THRESHOLD = 0.8
SUGGEST_THRESHOLD = 0.5

# Keyword score that maps to full confidence
SCORE_SCALE = 10.0


class CategorizationEngine:
    """
    Pure categorizer over an injected taxonomy.

    Example:
        >>> engine = CategorizationEngine(get_default_taxonomy())
        >>> result = engine.categorize("TESCO STORES 2291", {}, categories)
        >>> result.action
        'auto-assign'
    """

    def __init__(self, taxonomy: Optional[CategoryTaxonomy] = None):
        self.taxonomy = taxonomy or get_default_taxonomy()

    def categorize(
        self,
        description: str,
        merchant_patterns: Optional[Dict[str, MerchantPattern]] = None,
        categories: Sequence[Category] = ()
    ) -> CategorizationResult:
        """
        Categorize one description.

        Args:
            description: Raw bank description
            merchant_patterns: Learned patterns keyed by merchant key
            categories: The tenant's categories, used to resolve a taxonomy
                name to a category id

        Returns:
            CategorizationResult. The same inputs always give the same result.
        """
        merchant = extract_merchant_name(description)
        if merchant_patterns and merchant:
            pattern = merchant_patterns.get(merchant)
            if pattern and pattern.frequency >= MERCHANT_MIN_FREQUENCY:
                return CategorizationResult(
                    suggested_category_id=pattern.category_id,
                    suggested_category_name=pattern.category_name,
                    confidence=MERCHANT_CONFIDENCE,
                    matched_keywords=[merchant],
                    action=ACTION_AUTO_ASSIGN,
                    reasoning=(
                        f'You\'ve used "{pattern.category_name}" for this merchant '
                        f'{pattern.frequency} times before'
                    )
                )

        entry, score, matched = self._best_keyword_match(description)
        if entry is None:
            return CategorizationResult(
                confidence=0.0,
                action=ACTION_MANUAL,
                reasoning="No matching patterns found. Please categorize manually."
            )

        confidence = min(score / SCORE_SCALE, 1.0)
        if confidence < SUGGEST_THRESHOLD:
            return CategorizationResult(
                confidence=confidence,
                action=ACTION_MANUAL,
                reasoning=f'Weak match for "{entry.name}". Please categorize manually.'
            )

        category = self.find_category(entry.name, categories)
        if category is None:
            return CategorizationResult(
                suggested_category_name=entry.name,
                confidence=confidence,
                matched_keywords=matched,
                action=ACTION_SUGGEST,
                reasoning=f'Looks like "{entry.name}", but you have no such category yet. Create it to use this suggestion.'
            )

        action = ACTION_AUTO_ASSIGN if confidence >= AUTO_ASSIGN_THRESHOLD else ACTION_SUGGEST
        return CategorizationResult(
            suggested_category_id=category.id,
            suggested_category_name=category.name,
            confidence=confidence,
            matched_keywords=matched,
            action=action,
            reasoning=f"Matched keywords: {', '.join(matched)}"
        )

    def _best_keyword_match(self, description: str) -> Tuple[Optional[CategoryKeywordEntry], int, List[str]]:
        normalized = normalize_text(description)
        if not normalized:
            return None, 0, []

        # A term must start a word; any suffix is allowed ("sainsbury" matches "sainsburys")
        padded = f" {normalized}"

        best_entry, best_score, best_matched = None, 0, []
        for entry in self.taxonomy.entries:
            score = 0
            matched = []
            for keyword in entry.keywords:
                if f" {keyword}" in padded:
                    score += entry.keyword_weight
                    matched.append(keyword)
            for alias in entry.aliases:
                if f" {alias}" in padded:
                    score += entry.alias_weight
                    matched.append(alias)

            # Strictly greater: ties keep the earlier taxonomy entry
            if score > best_score:
                best_entry, best_score, best_matched = entry, score, matched

        return best_entry, best_score, best_matched

    @staticmethod
    def find_category(name: str, categories: Iterable[Category]) -> Optional[Category]:
        """
        Resolve a taxonomy name to one of the tenant's expense categories:
        case-insensitive exact match first, then a tenant category whose name
        contains the taxonomy name ("Dining" finds "Dining & Restaurants").
        """
        expense = sorted(
            (c for c in categories if c.type in (None, TransactionType.EXPENSE, TransactionType.EXPENSE.value)),
            key=lambda c: c.id
        )
        wanted = name.lower()

        for category in expense:
            if category.name.lower() == wanted:
                return category
        for category in expense:
            current = category.name.lower()
            if wanted in current:
                return category
        return None


class CategorizationService:
    """
    Tenant-aware categorization: loads the tenant's categories and merchant
    patterns and runs them through a CategorizationEngine.
    """

    def __init__(
        self,
        db: Session,
        engine: Optional[CategorizationEngine] = None,
        learner: Optional[MerchantPatternLearner] = None
    ):
        self.db = db
        self.engine = engine or CategorizationEngine()
        self.learner = learner or MerchantPatternLearner(db)

    def load_categories(self, tenant_id: str) -> List[Category]:
        return self.db.query(Category).filter(
            Category.tenant_id == tenant_id
        ).order_by(Category.id).all()

    def load_context(self, tenant_id: str) -> Tuple[Dict[str, MerchantPattern], List[Category]]:
        """Patterns and categories for one batch."""
        return self.learner.build_patterns(tenant_id), self.load_categories(tenant_id)

    def categorize(
        self,
        tenant_id: str,
        description: str,
        merchant_patterns: Optional[Dict[str, MerchantPattern]] = None,
        categories: Optional[Sequence[Category]] = None
    ) -> CategorizationResult:
        if merchant_patterns is None:
            merchant_patterns = self.learner.build_patterns(tenant_id)
        if categories is None:
            categories = self.load_categories(tenant_id)
        return self.engine.categorize(description, merchant_patterns, categories)

    def categorize_batch(
        self,
        tenant_id: str,
        items: Sequence[Tuple[str, str]]
    ) -> List[Tuple[str, CategorizationResult]]:
        """
        Categorize many (id, description) pairs, building the merchant
        patterns once for the whole batch.
        """
        merchant_patterns, categories = self.load_context(tenant_id)
        results = [
            (item_id, self.engine.categorize(description, merchant_patterns, categories))
            for item_id, description in items
        ]
        logger.info(f"Categorized batch of {len(results)} descriptions for tenant {tenant_id}")
        return results

    def learn_from_correction(self, tenant_id: str, transaction_id: int, category_id: int) -> Transaction:
        """
        Re-file a transaction under the category the user picked.

        Patterns are derived from the transaction history, so the correction
        is picked up the next time patterns are built.

        Raises:
            NotFoundError: Transaction or category does not belong to the tenant
            InvalidStateError: Category type does not match the transaction type
        """
        transaction = self.db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.tenant_id == tenant_id
        ).first()
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        category = self.db.query(Category).filter(
            Category.id == category_id,
            Category.tenant_id == tenant_id
        ).first()
        if not category:
            raise NotFoundError(f"Category {category_id} not found")

        if category.type != transaction.type:
            raise InvalidStateError(
                f"Category {category.name} is for {category.type.value} transactions, "
                f"transaction {transaction_id} is {transaction.type.value}"
            )

        transaction.category_id = category.id
        self.db.commit()
        logger.info(f"Transaction {transaction_id} re-categorized to {category.name} for tenant {tenant_id}")
        return transaction

    def get_categorization_stats(self, tenant_id: str, top_limit: int = 10) -> CategorizationStats:
        """Totals, categorized vs placeholder-filed rows, and the most common merchants."""
        total = self.db.query(func.count(Transaction.id)).filter(
            Transaction.tenant_id == tenant_id
        ).scalar() or 0

        uncategorized = self.db.query(func.count(Transaction.id)).join(
            Category, Category.id == Transaction.category_id
        ).filter(
            Transaction.tenant_id == tenant_id,
            func.lower(Category.name) == UNCATEGORIZED_NAME.lower()
        ).scalar() or 0

        categorized = total - uncategorized

        rows = self.db.query(
            Transaction.description,
            Category.name,
            func.count(Transaction.id).label("count")
        ).join(
            Category, Category.id == Transaction.category_id
        ).filter(
            Transaction.tenant_id == tenant_id
        ).group_by(
            Transaction.description, Category.name
        ).order_by(
            func.count(Transaction.id).desc(), Transaction.description
        ).limit(top_limit).all()

        return CategorizationStats(
            total_transactions=total,
            categorized_transactions=categorized,
            uncategorized_transactions=uncategorized,
            categorization_rate=categorized / total if total else 0.0,
            top_merchants=[
                TopMerchant(merchant=extract_merchant_name(description), count=count, category=category_name)
                for description, category_name, count in rows
            ]
        )
