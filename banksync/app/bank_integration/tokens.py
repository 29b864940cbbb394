"""
Connection & token state management.

Owns the token lifecycle of a BankConnection: refreshing expired access
tokens (serialized per connection), storing tokens from the OAuth callback,
and soft-disconnecting.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from banksync.app.errors import TokenExpiredError
from banksync.app.models import BankConnection, BankConnectionStatus, utcnow
from .encryption import TokenEncryption
from .locks import ConnectionLocks, connection_locks
from .providers.base import BaseBankProvider, ProviderTokens

logger = logging.getLogger(__name__)

# Used when the provider omits expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class TokenManager:
    """
    Keeps a connection's access token usable.

    Example:
        >>> manager = TokenManager(db, provider, TokenEncryption())
        >>> access_token = await manager.ensure_fresh_token(connection)
    """

    def __init__(
        self,
        db: Session,
        provider: BaseBankProvider,
        encryption: TokenEncryption,
        locks: Optional[ConnectionLocks] = None
    ):
        self.db = db
        self.provider = provider
        self.encryption = encryption
        self.locks = locks or connection_locks

    @staticmethod
    def is_expired(connection: BankConnection, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return connection.token_expires_at is not None and connection.token_expires_at < now

    async def ensure_fresh_token(self, connection: BankConnection) -> str:
        """
        Return a usable access token, refreshing it if it has expired.

        The refresh runs under the connection's refresh lock and re-reads the
        row first, so a token refreshed by a concurrent sync is reused rather
        than refreshed again with a stale refresh token.

        Raises:
            TokenExpiredError: Expired and no refresh token stored. The
                connection status is left for the caller to update.
            ProviderRejectedError / ProviderUnavailableError: Refresh failed
        """
        if not self.is_expired(connection):
            return self.encryption.decrypt(connection.access_token)

        async with self.locks.for_refresh(connection.id):
            # Another task may have refreshed while we waited for the lock
            self.db.refresh(connection, with_for_update=True)

            if not self.is_expired(connection):
                self.db.commit()
                return self.encryption.decrypt(connection.access_token)

            if not connection.refresh_token:
                self.db.commit()
                raise TokenExpiredError(
                    f"Access token for connection {connection.id} expired and no refresh token is available"
                )

            refresh_token = self.encryption.decrypt(connection.refresh_token)
            previous_expiry = connection.token_expires_at

            # Release the row lock before the network call
            self.db.commit()

            logger.info(f"Refreshing access token for connection {connection.id}")
            tokens = await self.provider.refresh_access_token(refresh_token)

            self.store_tokens(connection, tokens, previous_expiry=previous_expiry)
            self.db.commit()

            logger.info(f"Access token refreshed for connection {connection.id}, expires {connection.token_expires_at}")
            return tokens.access_token

    def store_tokens(
        self,
        connection: BankConnection,
        tokens: ProviderTokens,
        previous_expiry: Optional[datetime] = None
    ) -> None:
        """
        Write provider tokens onto the connection (caller commits).

        Providers that do not rotate refresh tokens omit refresh_token in the
        response; the stored one is kept in that case.
        """
        lifetime = tokens.expires_in if tokens.expires_in and tokens.expires_in > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
        new_expiry = utcnow() + timedelta(seconds=lifetime)

        # Expiry never moves backwards
        if previous_expiry is not None and new_expiry <= previous_expiry:
            new_expiry = previous_expiry + timedelta(seconds=1)

        connection.access_token = self.encryption.encrypt(tokens.access_token)
        if tokens.refresh_token:
            connection.refresh_token = self.encryption.encrypt(tokens.refresh_token)
        connection.token_expires_at = new_expiry

    async def disconnect(self, connection: BankConnection) -> BankConnection:
        """
        Revoke the grant with the provider (best-effort) and soft-disconnect.

        The connection row and its linked accounts are kept so imported
        transactions keep their provenance.
        """
        if connection.refresh_token:
            try:
                await self.provider.revoke_token(self.encryption.decrypt(connection.refresh_token))
            except Exception as e:
                logger.warning(f"Token revocation failed for connection {connection.id}: {e}")

        connection.status = BankConnectionStatus.DISCONNECTED
        connection.access_token = None
        connection.refresh_token = None
        connection.token_expires_at = None
        connection.last_error = None

        self.db.commit()
        logger.info(f"Connection {connection.id} disconnected")
        return connection
