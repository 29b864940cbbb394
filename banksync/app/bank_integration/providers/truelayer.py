"""
TrueLayer Provider Implementation

TrueLayer is a UK/EU open-banking aggregator using standard OAuth2
authorization-code grants with rotating refresh tokens.

Documentation: https://docs.truelayer.com/docs/data-api-basics
"""

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from banksync.app.errors import ProviderRejectedError, ProviderUnavailableError
from .base import (
    BaseBankProvider, ProviderAccount, ProviderBalance, ProviderMetadata,
    ProviderTokens, ProviderTransaction
)

logger = logging.getLogger(__name__)

# Guards against a provider that keeps returning a cursor
MAX_TRANSACTION_PAGES = 500


class TrueLayerProvider(BaseBankProvider):
    """
    TrueLayer Data API integration.

    A new httpx.AsyncClient is opened per call with a bounded timeout; a
    timeout is reported as ProviderUnavailableError.
    """

    name = "truelayer"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        auth_url: str = "https://auth.truelayer.com",
        api_url: str = "https://api.truelayer.com",
        scopes: str = "info accounts balance transactions offline_access",
        providers: str = "uk-ob-all uk-oauth-all",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_url = auth_url.rstrip('/')
        self.api_url = api_url.rstrip('/')
        self.scopes = scopes
        self.providers = providers
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "TrueLayerProvider":
        return cls(
            client_id=settings.truelayer_client_id,
            client_secret=settings.truelayer_client_secret,
            redirect_uri=settings.truelayer_redirect_uri,
            auth_url=settings.truelayer_auth_url,
            api_url=settings.truelayer_api_url,
            scopes=settings.truelayer_scopes,
            providers=settings.truelayer_providers,
            timeout=settings.provider_timeout_seconds,
            transport=transport
        )

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Perform a request and classify failures.

        Raises:
            ProviderUnavailableError: network error, timeout, 5xx or 429
            ProviderRejectedError: any other 4xx
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"TrueLayer request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"TrueLayer request failed: {method} {url}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"TrueLayer unavailable - Status: {response.status_code}, URL: {url}")
            raise ProviderUnavailableError(
                f"TrueLayer returned {response.status_code} for {method} {url}"
            )

        if response.status_code >= 400:
            detail = self._error_detail(response)
            logger.error(f"TrueLayer rejected request - Status: {response.status_code}, Detail: {detail}")
            raise ProviderRejectedError(
                f"TrueLayer rejected {method} {url}: {detail}",
                status_code=response.status_code
            )

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError(f"TrueLayer returned invalid JSON for {method} {url}") from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or "Unknown error"
        if isinstance(body, dict):
            return body.get('error_description') or body.get('error') or str(body)
        return str(body)

    def _auth_headers(self, access_token: str) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {access_token}',
            'Accept': 'application/json'
        }

    def build_authorization_url(self, state: str, nonce: Optional[str] = None) -> str:
        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': self.scopes,
            'state': state,
            'providers': self.providers,
        }
        if nonce:
            params['nonce'] = nonce

        return f"{self.auth_url}/?{urlencode(params)}"

    async def exchange_code(self, code: str) -> ProviderTokens:
        data = await self._request(
            'POST',
            f"{self.auth_url}/connect/token",
            data={
                'grant_type': 'authorization_code',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'redirect_uri': self.redirect_uri,
                'code': code,
            }
        )
        return ProviderTokens(**data)

    async def refresh_access_token(self, refresh_token: str) -> ProviderTokens:
        data = await self._request(
            'POST',
            f"{self.auth_url}/connect/token",
            data={
                'grant_type': 'refresh_token',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'refresh_token': refresh_token,
            }
        )
        return ProviderTokens(**data)

    async def fetch_metadata(self, access_token: str) -> ProviderMetadata:
        data = await self._request(
            'GET',
            f"{self.api_url}/data/v1/me",
            headers=self._auth_headers(access_token)
        )
        info = self._first(data.get('results', []))
        provider = info.get('provider') or {}

        return ProviderMetadata(
            credentials_id=info.get('credentials_id'),
            institution_id=provider.get('provider_id'),
            institution_name=provider.get('display_name')
        )

    async def fetch_accounts(self, access_token: str) -> List[ProviderAccount]:
        data = await self._request(
            'GET',
            f"{self.api_url}/data/v1/accounts",
            headers=self._auth_headers(access_token)
        )

        accounts = []
        for raw in data.get('results', []):
            number = raw.get('account_number') or {}
            provider = raw.get('provider') or {}
            accounts.append(ProviderAccount(
                account_id=raw['account_id'],
                account_type=raw.get('account_type'),
                account_subtype=raw.get('account_subtype'),
                display_name=raw.get('display_name'),
                currency=raw.get('currency') or 'GBP',
                account_number=number.get('number'),
                sort_code=number.get('sort_code'),
                iban=number.get('iban'),
                institution_id=provider.get('provider_id'),
                institution_name=provider.get('display_name')
            ))

        logger.info(f"Retrieved {len(accounts)} accounts from TrueLayer")
        return accounts

    async def fetch_transactions(
        self,
        access_token: str,
        provider_account_id: str,
        from_date: date,
        to_date: date
    ) -> List[ProviderTransaction]:
        """
        Fetch transactions, following `next_cursor` until the provider stops
        returning one.
        """
        url = f"{self.api_url}/data/v1/accounts/{provider_account_id}/transactions"
        params = {'from': from_date.isoformat(), 'to': to_date.isoformat()}

        transactions: List[ProviderTransaction] = []
        for page in range(1, MAX_TRANSACTION_PAGES + 1):
            data = await self._request('GET', url, params=params, headers=self._auth_headers(access_token))

            for raw in data.get('results', []):
                transactions.append(self._normalize_transaction(raw))

            next_cursor = data.get('next_cursor') or (data.get('pagination') or {}).get('next_cursor')
            if not next_cursor:
                break
            params = {**params, 'cursor': next_cursor}
        else:
            logger.warning(f"Stopped paging account {provider_account_id} after {MAX_TRANSACTION_PAGES} pages")

        logger.info(f"Fetched {len(transactions)} transactions for account {provider_account_id} ({page} page(s))")
        return transactions

    @staticmethod
    def _normalize_transaction(raw: Dict[str, Any]) -> ProviderTransaction:
        meta = raw.get('meta') or {}
        try:
            amount = Decimal(str(raw.get('amount')))
        except InvalidOperation:
            amount = None
        if amount is not None and not amount.is_finite():
            amount = None

        return ProviderTransaction(
            transaction_id=raw.get('transaction_id') or meta.get('provider_transaction_id'),
            timestamp=raw.get('timestamp'),
            description=raw.get('description'),
            amount=amount,
            currency=raw.get('currency'),
            transaction_type=raw.get('transaction_type'),
            provider_reference=meta.get('provider_reference'),
            merchant_name=raw.get('merchant_name')
        )

    async def fetch_balance(self, access_token: str, provider_account_id: str) -> ProviderBalance:
        data = await self._request(
            'GET',
            f"{self.api_url}/data/v1/accounts/{provider_account_id}/balance",
            headers=self._auth_headers(access_token)
        )
        balance = self._first(data.get('results', []))

        updated_at = None
        if balance.get('update_timestamp'):
            try:
                updated_at = datetime.fromisoformat(balance['update_timestamp'].replace('Z', '+00:00'))
            except ValueError:
                logger.warning(f"Could not parse balance timestamp '{balance['update_timestamp']}'")

        return ProviderBalance(
            currency=balance.get('currency'),
            available=balance.get('available'),
            current=balance.get('current'),
            updated_at=updated_at
        )

    async def revoke_token(self, refresh_token: str) -> None:
        await self._request(
            'POST',
            f"{self.auth_url}/connect/revoke",
            data={
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'token': refresh_token,
            }
        )
