"""
Bank Integration Module

Open-banking connections and transaction sync: OAuth linking, token refresh,
multi-account sync with per-account failure isolation and deduplicated import.
"""

from .service import BankIntegrationService
from .sync import TransactionSyncService
from .importer import TransactionImporter
from .tokens import TokenManager
from .encryption import TokenEncryption
from .deduplication import TransactionDeduplicator

__all__ = [
    'BankIntegrationService', 'TransactionSyncService', 'TransactionImporter',
    'TokenManager', 'TokenEncryption', 'TransactionDeduplicator'
]
