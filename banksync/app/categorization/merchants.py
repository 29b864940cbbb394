"""
Merchant Pattern Learner

Builds, per tenant, a map from normalized merchant key to the category the
tenant most often files that merchant under. Patterns are derived on demand
from the transaction history and live for one categorization batch.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from banksync.app.models import Category, Transaction
from .taxonomy import normalize_text

logger = logging.getLogger(__name__)

# A merchant must appear this many times before it becomes a pattern
MIN_PATTERN_OCCURRENCES = 2

# Placeholder category name used for rows nobody has categorized yet
UNCATEGORIZED_NAME = "Uncategorized"

_STORE_NUMBER = re.compile(r"#\d+")
_CARD_REFERENCE = re.compile(r"\*\w*\d+")
_LONG_NUMBER = re.compile(r"\b\d{5,}\b")

_TYPE_TOKENS = {
    "pos", "debit", "credit", "purchase", "payment", "transfer",
    "atm", "withdrawal", "deposit",
}

MERCHANT_KEY_WORDS = 3


def extract_merchant_name(description: Optional[str]) -> str:
    """
    Reduce a raw bank description to a stable merchant key.

    Store numbers, card/reference suffixes, long digit runs and leading or
    trailing transaction-type words are stripped; the first three remaining
    words form the key.

    Example:
        >>> extract_merchant_name("POS PURCHASE STARBUCKS #1234 LONDON")
        'starbucks london'
        >>> extract_merchant_name("AMZN Mktp UK*2K4LP0TQ5")
        'amzn mktp uk'
    """
    if not description:
        return ""

    text = description.lower()
    text = _STORE_NUMBER.sub(" ", text)
    text = _CARD_REFERENCE.sub(" ", text)
    text = normalize_text(text)
    text = _LONG_NUMBER.sub(" ", text)

    words = text.split()
    while words and words[0] in _TYPE_TOKENS:
        words.pop(0)
    while words and words[-1] in _TYPE_TOKENS:
        words.pop()

    return " ".join(words[:MERCHANT_KEY_WORDS])


@dataclass
class MerchantPattern:
    merchant_name: str
    category_id: int
    category_name: str
    frequency: int
    last_seen: Optional[date] = None


class MerchantPatternLearner:
    """
    Learns merchant → category associations from a tenant's history.

    Example:
        >>> patterns = MerchantPatternLearner(db).build_patterns("tenant-1")
        >>> patterns["starbucks"].category_name
        'Dining'
    """

    def __init__(self, db: Session, min_occurrences: int = MIN_PATTERN_OCCURRENCES):
        self.db = db
        self.min_occurrences = min_occurrences

    def build_patterns(self, tenant_id: str) -> Dict[str, MerchantPattern]:
        """
        Group the tenant's categorized transactions by merchant key and
        category and keep, per merchant, the winning category.

        A (merchant, category) pair seen fewer than `min_occurrences` times
        is ignored. Of the rest, the most frequent category wins; ties go to
        the most recently used one, then to the lowest category id.
        """
        rows = self.db.query(
            Transaction.description,
            Transaction.date,
            Category.id,
            Category.name
        ).join(
            Category, Category.id == Transaction.category_id
        ).filter(
            Transaction.tenant_id == tenant_id,
            Category.tenant_id == tenant_id,
            func.lower(Category.name) != UNCATEGORIZED_NAME.lower()
        ).all()

        # merchant -> category_id -> [count, last_seen, category_name]
        grouped: Dict[str, Dict[int, list]] = defaultdict(dict)
        for description, tx_date, category_id, category_name in rows:
            merchant = extract_merchant_name(description)
            if not merchant:
                continue
            entry = grouped[merchant].get(category_id)
            if entry is None:
                grouped[merchant][category_id] = [1, tx_date, category_name]
            else:
                entry[0] += 1
                if tx_date and (entry[1] is None or tx_date > entry[1]):
                    entry[1] = tx_date

        patterns: Dict[str, MerchantPattern] = {}
        for merchant, by_category in grouped.items():
            frequent = {
                category_id: entry for category_id, entry in by_category.items()
                if entry[0] >= self.min_occurrences
            }
            if not frequent:
                continue

            category_id, (count, last_seen, category_name) = max(
                frequent.items(),
                key=lambda item: (item[1][0], item[1][1] or date.min, -item[0])
            )
            patterns[merchant] = MerchantPattern(
                merchant_name=merchant,
                category_id=category_id,
                category_name=category_name,
                frequency=count,
                last_seen=last_seen
            )

        logger.debug(f"Built {len(patterns)} merchant patterns for tenant {tenant_id}")
        return patterns
