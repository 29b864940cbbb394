"""
Bank Provider Implementations

Abstract base class and concrete implementations for different banking APIs.
"""

from .base import (
    BaseBankProvider, ProviderAccount, ProviderBalance, ProviderMetadata,
    ProviderTokens, ProviderTransaction
)
from .truelayer import TrueLayerProvider

__all__ = [
    'BaseBankProvider', 'TrueLayerProvider', 'ProviderAccount', 'ProviderBalance',
    'ProviderMetadata', 'ProviderTokens', 'ProviderTransaction'
]
