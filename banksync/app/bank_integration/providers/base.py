"""
Abstract base class for bank integration providers

Defines the common interface that every open-banking provider adapter must
implement, plus the normalized shapes those adapters return.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ProviderTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None  # seconds
    token_type: str = "Bearer"
    scope: Optional[str] = None


class ProviderMetadata(BaseModel):
    credentials_id: Optional[str] = None
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None


class ProviderAccount(BaseModel):
    account_id: str
    account_type: Optional[str] = None
    account_subtype: Optional[str] = None
    display_name: Optional[str] = None
    currency: str = "GBP"
    account_number: Optional[str] = None
    sort_code: Optional[str] = None
    iban: Optional[str] = None
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None


class ProviderTransaction(BaseModel):
    transaction_id: Optional[str] = None
    timestamp: Optional[str] = None  # raw provider value, parsed at import time
    description: Optional[str] = None
    amount: Optional[Decimal] = None  # None when the provider value is not a finite number
    currency: Optional[str] = None
    transaction_type: Optional[str] = None
    provider_reference: Optional[str] = None
    merchant_name: Optional[str] = None


class ProviderBalance(BaseModel):
    currency: Optional[str] = None
    available: Optional[Decimal] = None
    current: Optional[Decimal] = None
    updated_at: Optional[datetime] = None


class BaseBankProvider(ABC):
    """
    Abstract base class for bank integration providers.

    Implementations are stateless apart from configuration (client id/secret,
    redirect URI). Every network operation must raise ProviderUnavailableError
    for network failures, timeouts and 5xx responses, and ProviderRejectedError
    for 4xx responses.
    """

    name: str = "base"

    @abstractmethod
    def build_authorization_url(self, state: str, nonce: Optional[str] = None) -> str:
        """
        Build the URL the user is redirected to in order to grant access.

        Args:
            state: CSRF protection token, echoed back on the callback
            nonce: Optional replay-protection value

        Returns:
            Full authorization URL
        """
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> ProviderTokens:
        """Exchange an authorization code for access/refresh tokens."""
        pass

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> ProviderTokens:
        """
        Refresh an expired access token.

        Provider refresh tokens are typically single-use: the returned
        refresh_token (when present) replaces the old one.
        """
        pass

    @abstractmethod
    async def fetch_metadata(self, access_token: str) -> ProviderMetadata:
        """Fetch grant metadata (credentials id, institution)."""
        pass

    @abstractmethod
    async def fetch_accounts(self, access_token: str) -> List[ProviderAccount]:
        pass

    @abstractmethod
    async def fetch_transactions(
        self,
        access_token: str,
        provider_account_id: str,
        from_date: date,
        to_date: date
    ) -> List[ProviderTransaction]:
        """
        Fetch transactions for an account within a date range.

        Pagination is handled internally; callers receive a flat list in the
        order the provider returned them.

        Args:
            access_token: Valid OAuth access token
            provider_account_id: Account identifier from provider
            from_date: Start date (inclusive)
            to_date: End date (inclusive)
        """
        pass

    @abstractmethod
    async def fetch_balance(self, access_token: str, provider_account_id: str) -> ProviderBalance:
        pass

    @abstractmethod
    async def revoke_token(self, refresh_token: str) -> None:
        """Revoke a grant (disconnect bank)."""
        pass

    @staticmethod
    def _first(results: List[Dict[str, Any]]) -> Dict[str, Any]:
        return results[0] if results else {}
