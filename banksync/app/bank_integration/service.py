"""
Bank Integration Service

Connection-level operations around the sync engine:
- OAuth flow (state tokens, code exchange, connection and account upsert)
- Listing connections and their sync history
- Live balances
- Disconnecting banks
"""

import logging
import secrets
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from banksync.app import schemas
from banksync.app.errors import (
    InvalidStateError, NoLinkedAccountsError, NotFoundError, ProviderError, ProviderRejectedError,
    TokenExpiredError
)
from banksync.app.models import (
    Account, BankConnection, BankConnectionStatus, Category, LinkedBankAccount,
    OAuthState, SyncRun, TransactionType, utcnow
)
from banksync.config import Settings, get_settings
from .account_types import normalize_account_type
from .encryption import TokenEncryption
from .locks import ConnectionLocks
from .providers.base import BaseBankProvider, ProviderMetadata
from .tokens import TokenManager

logger = logging.getLogger(__name__)

OAUTH_STATE_PREFIX = "oauth:state:"

DEFAULT_ACCOUNT_NAME = "Linked Bank Account"

DEFAULT_CATEGORIES = [
    # Income
    ("Salary", TransactionType.INCOME, "#10b981", "💼"),
    ("Freelance", TransactionType.INCOME, "#14b8a6", "💻"),
    ("Investments", TransactionType.INCOME, "#06b6d4", "📈"),
    ("Rental Income", TransactionType.INCOME, "#0ea5e9", "🏠"),
    ("Other Income", TransactionType.INCOME, "#3b82f6", "💰"),
    # Expense
    ("Groceries", TransactionType.EXPENSE, "#f59e0b", "🛒"),
    ("Dining & Restaurants", TransactionType.EXPENSE, "#f97316", "🍽️"),
    ("Transportation", TransactionType.EXPENSE, "#ef4444", "🚗"),
    ("Utilities", TransactionType.EXPENSE, "#8b5cf6", "⚡"),
    ("Rent/Mortgage", TransactionType.EXPENSE, "#ec4899", "🏡"),
    ("Healthcare", TransactionType.EXPENSE, "#06b6d4", "⚕️"),
    ("Entertainment", TransactionType.EXPENSE, "#d946ef", "🎬"),
    ("Shopping", TransactionType.EXPENSE, "#a855f7", "🛍️"),
    ("Insurance", TransactionType.EXPENSE, "#3b82f6", "🛡️"),
    ("Education", TransactionType.EXPENSE, "#6366f1", "📚"),
    ("Personal Care", TransactionType.EXPENSE, "#ec4899", "💅"),
    ("Subscriptions", TransactionType.EXPENSE, "#f43f5e", "📱"),
    ("Travel", TransactionType.EXPENSE, "#14b8a6", "✈️"),
    ("Gifts & Donations", TransactionType.EXPENSE, "#10b981", "🎁"),
    ("Uncategorized", TransactionType.EXPENSE, "#6b7280", "❓"),
]


def mask_account_number(account_number: Optional[str]) -> Optional[str]:
    """
    Keep only the last four digits of an account number.

    Example:
        >>> mask_account_number("12 34 56 78")
        '****5678'
        >>> mask_account_number("123")
        '123'
    """
    if not account_number:
        return None
    trimmed = "".join(account_number.split())
    if len(trimmed) <= 4:
        return trimmed
    return f"****{trimmed[-4:]}"


class BankIntegrationService:
    """
    Main service for bank connections.

    Provides high-level operations for:
    - Starting OAuth flows
    - Handling OAuth callbacks
    - Listing and disconnecting connections
    - Reading sync history and live balances
    """

    def __init__(
        self,
        db: Session,
        provider: BaseBankProvider,
        encryption: Optional[TokenEncryption] = None,
        settings: Optional[Settings] = None,
        locks: Optional[ConnectionLocks] = None
    ):
        """
        Initialize service with database session and provider.

        Args:
            db: SQLAlchemy database session
            provider: Provider client used for every network call
        """
        self.db = db
        self.provider = provider
        self.encryption = encryption or TokenEncryption()
        self.settings = settings or get_settings()
        self.tokens = TokenManager(db, provider, self.encryption, locks)

    def start_link(self, tenant: schemas.TenantContext, return_to: Optional[str] = None) -> schemas.LinkResponse:
        """
        Initiate the OAuth flow for connecting a bank.

        Creates a single-use state token (CSRF protection) that expires after
        `oauth_state_ttl_minutes`, and builds the authorization URL.

        Example:
            >>> link = service.start_link(TenantContext(tenant_id="t1", user_id="u1"), "/accounts")
            >>> # Redirect user to link.authorization_url
        """
        self._purge_expired_states()

        state = secrets.token_urlsafe(32)
        now = utcnow()
        self.db.add(OAuthState(
            state_key=f"{OAUTH_STATE_PREFIX}{state}",
            tenant_id=tenant.tenant_id,
            user_id=tenant.user_id,
            return_to=return_to,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        ))
        self.db.commit()

        authorization_url = self.provider.build_authorization_url(state, nonce=secrets.token_urlsafe(16))
        logger.info(f"Started bank link for tenant {tenant.tenant_id}")

        return schemas.LinkResponse(authorization_url=authorization_url, state=state)

    def consume_state(self, state: str) -> Dict[str, Optional[str]]:
        """
        Validate and delete an OAuth state token.

        Returns:
            {'tenant_id', 'user_id', 'return_to'} stored when the flow started

        Raises:
            InvalidStateError: Unknown, already used or expired state
        """
        oauth_state = self.db.query(OAuthState).filter(
            OAuthState.state_key == f"{OAUTH_STATE_PREFIX}{state}"
        ).first()

        if not oauth_state:
            raise InvalidStateError("Bank connection session expired. Please try again.")

        payload = {
            'tenant_id': oauth_state.tenant_id,
            'user_id': oauth_state.user_id,
            'return_to': oauth_state.return_to,
        }
        expired = oauth_state.expires_at < utcnow()

        self.db.delete(oauth_state)
        self.db.commit()

        if expired:
            raise InvalidStateError("Bank connection session expired. Please try again.")
        return payload

    async def complete_link(self, link_state: Dict[str, Optional[str]], code: str) -> BankConnection:
        """
        Exchange the authorization code and record the connection.

        The connection is upserted on (provider, provider connection id) so
        re-linking the same grant reactivates the existing row; linked
        accounts are upserted on (connection, provider account id). New
        tenants get the default category set.

        Raises:
            ProviderError: Code exchange or account listing failed
            NoLinkedAccountsError: The bank returned no accounts
            InvalidStateError: The grant already belongs to another tenant
        """
        tenant_id = link_state['tenant_id']

        tokens = await self.provider.exchange_code(code)

        try:
            metadata = await self.provider.fetch_metadata(tokens.access_token)
        except ProviderError as e:
            logger.warning(f"Could not fetch connection metadata: {e}")
            metadata = ProviderMetadata()

        provider_accounts = await self.provider.fetch_accounts(tokens.access_token)
        if not provider_accounts:
            raise NoLinkedAccountsError("No accounts were returned by your bank.")

        provider_connection_id = metadata.credentials_id or uuid.uuid4().hex
        first = provider_accounts[0]

        connection = self.db.query(BankConnection).filter(
            BankConnection.provider == self.provider.name,
            BankConnection.provider_connection_id == provider_connection_id
        ).first()

        if connection and connection.tenant_id != tenant_id:
            raise InvalidStateError("This bank connection belongs to another account.")

        if connection:
            logger.info(f"Re-authorizing existing connection {connection.id}")
            previous_expiry = connection.token_expires_at
        else:
            connection = BankConnection(
                tenant_id=tenant_id,
                user_id=link_state['user_id'],
                provider=self.provider.name,
                provider_connection_id=provider_connection_id
            )
            self.db.add(connection)
            previous_expiry = None

        connection.institution_id = metadata.institution_id or first.institution_id
        connection.institution_name = metadata.institution_name or first.institution_name
        self.tokens.store_tokens(connection, tokens, previous_expiry=previous_expiry)
        connection.status = BankConnectionStatus.ACTIVE
        connection.last_error = None
        self.db.flush()

        for provider_account in provider_accounts:
            self._upsert_linked_account(connection, provider_account)

        self.seed_default_categories(tenant_id)
        self.db.commit()

        logger.info(
            f"Connection {connection.id} linked for tenant {tenant_id} "
            f"with {len(provider_accounts)} account(s)"
        )
        return connection

    async def handle_callback(self, code: str, state: str) -> BankConnection:
        """Consume the state token and complete the link."""
        return await self.complete_link(self.consume_state(state), code)

    def _upsert_linked_account(self, connection: BankConnection, provider_account) -> LinkedBankAccount:
        currency = provider_account.currency or "GBP"

        linked = self.db.query(LinkedBankAccount).filter(
            LinkedBankAccount.connection_id == connection.id,
            LinkedBankAccount.provider_account_id == provider_account.account_id
        ).first()

        if not linked:
            account = Account(
                tenant_id=connection.tenant_id,
                name=provider_account.display_name or connection.institution_name or DEFAULT_ACCOUNT_NAME,
                type=normalize_account_type(provider_account.account_type, provider_account.account_subtype),
                balance=0,
                currency=currency
            )
            self.db.add(account)
            self.db.flush()

            linked = LinkedBankAccount(
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                account_id=account.id,
                provider_account_id=provider_account.account_id
            )
            self.db.add(linked)

        linked.account_number = mask_account_number(provider_account.account_number)
        linked.sort_code = provider_account.sort_code
        linked.iban = provider_account.iban
        linked.account_type = provider_account.account_type
        linked.currency = currency
        return linked

    def seed_default_categories(self, tenant_id: str) -> int:
        """Create the default category set for a tenant that has no categories. Returns the number created."""
        if self.db.query(Category.id).filter(Category.tenant_id == tenant_id).first():
            return 0

        for name, category_type, color, icon in DEFAULT_CATEGORIES:
            self.db.add(Category(tenant_id=tenant_id, name=name, type=category_type, color=color, icon=icon))
        self.db.flush()

        logger.info(f"Seeded {len(DEFAULT_CATEGORIES)} default categories for tenant {tenant_id}")
        return len(DEFAULT_CATEGORIES)

    def _purge_expired_states(self) -> None:
        self.db.query(OAuthState).filter(OAuthState.expires_at < utcnow()).delete(synchronize_session=False)

    def get_connection(self, tenant_id: str, connection_id: int) -> BankConnection:
        connection = self.db.query(BankConnection).filter(
            BankConnection.id == connection_id,
            BankConnection.tenant_id == tenant_id
        ).first()
        if not connection:
            raise NotFoundError(f"Bank connection {connection_id} not found")
        return connection

    def list_connections(self, tenant_id: str) -> List[schemas.BankConnection]:
        connections = self.db.query(BankConnection).filter(
            BankConnection.tenant_id == tenant_id
        ).order_by(BankConnection.created_at.desc(), BankConnection.id.desc()).all()

        return [self._connection_out(connection) for connection in connections]

    def _connection_out(self, connection: BankConnection) -> schemas.BankConnection:
        linked_accounts = self.db.query(LinkedBankAccount).filter(
            LinkedBankAccount.connection_id == connection.id,
            LinkedBankAccount.tenant_id == connection.tenant_id
        ).order_by(LinkedBankAccount.id).all()

        latest_run = self.db.query(SyncRun).filter(
            SyncRun.connection_id == connection.id
        ).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).first()

        return schemas.BankConnection(
            id=connection.id,
            provider=connection.provider,
            provider_connection_id=connection.provider_connection_id,
            institution_id=connection.institution_id,
            institution_name=connection.institution_name,
            status=connection.status.value,
            last_sync_at=connection.last_sync_at,
            last_error=connection.last_error,
            created_at=connection.created_at,
            latest_sync=schemas.SyncRun.model_validate(latest_run) if latest_run else None,
            accounts=[
                schemas.LinkedAccount(
                    id=linked.id,
                    account_id=linked.account_id,
                    provider_account_id=linked.provider_account_id,
                    name=linked.account.name,
                    type=linked.account.type.value,
                    balance=linked.account.balance,
                    currency=linked.currency,
                    account_number=linked.account_number,
                    sort_code=linked.sort_code,
                    iban=linked.iban,
                    sync_from_date=linked.sync_from_date,
                    last_updated_at=linked.updated_at
                )
                for linked in linked_accounts
            ]
        )

    def get_sync_history(self, tenant_id: str, connection_id: int, limit: int = 20) -> List[SyncRun]:
        connection = self.get_connection(tenant_id, connection_id)
        return self.db.query(SyncRun).filter(
            SyncRun.connection_id == connection.id,
            SyncRun.tenant_id == tenant_id
        ).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()

    async def get_balances(self, tenant_id: str, connection_id: int) -> List[schemas.AccountBalance]:
        """
        Fetch live balances for every linked account.

        A failing account is reported in its `error` field; an expired or
        rejected grant marks the connection as errored and raises.

        Raises:
            NotFoundError: Unknown connection
            InvalidStateError: Connection is not active
            TokenExpiredError: Grant expired and cannot be refreshed
            ProviderRejectedError: Provider refused the refresh grant
        """
        connection = self.get_connection(tenant_id, connection_id)
        if connection.status != BankConnectionStatus.ACTIVE:
            raise InvalidStateError(f"Bank connection {connection_id} is {connection.status.value}, not active")

        try:
            access_token = await self.tokens.ensure_fresh_token(connection)
        except (TokenExpiredError, ProviderRejectedError) as e:
            connection.status = BankConnectionStatus.ERROR
            connection.last_error = str(e)
            self.db.commit()
            raise

        linked_accounts = self.db.query(LinkedBankAccount).filter(
            LinkedBankAccount.connection_id == connection.id,
            LinkedBankAccount.tenant_id == tenant_id
        ).order_by(LinkedBankAccount.id).all()
        self.db.commit()

        balances = []
        for linked in linked_accounts:
            try:
                balance = await self.provider.fetch_balance(access_token, linked.provider_account_id)
                balances.append(schemas.AccountBalance(
                    linked_account_id=linked.id,
                    provider_account_id=linked.provider_account_id,
                    currency=balance.currency or linked.currency,
                    available=balance.available,
                    current=balance.current
                ))
            except ProviderError as e:
                logger.warning(f"Balance fetch failed for account {linked.provider_account_id}: {e}")
                balances.append(schemas.AccountBalance(
                    linked_account_id=linked.id,
                    provider_account_id=linked.provider_account_id,
                    currency=linked.currency,
                    error=str(e)
                ))
        return balances

    async def disconnect(self, tenant_id: str, connection_id: int) -> BankConnection:
        """
        Disconnect a bank.

        Revokes the grant (best-effort) and marks the connection
        disconnected. Rows are kept; disconnecting twice is a no-op.
        """
        connection = self.get_connection(tenant_id, connection_id)
        if connection.status == BankConnectionStatus.DISCONNECTED:
            return connection
        return await self.tokens.disconnect(connection)
