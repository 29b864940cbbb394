"""
Transaction categorization

Keyword taxonomy, merchant-history learning and the layered engine that
combines them.
"""

from .engine import CategorizationEngine, CategorizationService
from .merchants import MerchantPattern, MerchantPatternLearner, extract_merchant_name
from .taxonomy import CategoryKeywordEntry, CategoryTaxonomy, get_default_taxonomy, load_taxonomy

__all__ = [
    'CategorizationEngine', 'CategorizationService', 'MerchantPattern',
    'MerchantPatternLearner', 'extract_merchant_name', 'CategoryKeywordEntry',
    'CategoryTaxonomy', 'get_default_taxonomy', 'load_taxonomy'
]
