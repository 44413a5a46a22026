"""
Token Service for OAuth token lifecycle management.
Credential provider for the calendar client: encrypted storage, on-demand
refresh and cleanup of revoked tokens.
"""

from app.db.helpers import DatabaseError, execute_query, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import OAuthToken
from app.services.calendar.errors import InvalidCredentialError, NoCredentialError
from app.services.google_oauth_service import (
    GoogleOAuthError,
    TokenResponse,
    exchange_code_for_tokens,
    refresh_google_token,
)
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decrypt_oauth_tokens,
    encrypt_oauth_tokens,
)

logger = get_logger(__name__)

# Refresh tokens expiring within this window
TOKEN_REFRESH_BUFFER_MINUTES = 5


class TokenServiceError(Exception):
    """Custom exception for token service operations."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class TokenService:
    """
    Manages OAuth tokens with encryption and persistence.

    Concurrent refreshes for the same user are allowed: each writes the pair
    it received with an upsert, and the last write wins.
    """

    def __init__(self, refresh_func=None, exchange_func=None):
        self._refresh = refresh_func or refresh_google_token
        self._exchange = exchange_func or exchange_code_for_tokens

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def store_tokens(
        self, user_id: str, token_response: TokenResponse, provider: str = "google"
    ) -> bool:
        """
        Store encrypted OAuth tokens, replacing any existing pair.

        Raises:
            TokenServiceError: If storage fails due to system errors
        """
        try:
            encrypted_access, encrypted_refresh = encrypt_oauth_tokens(
                access_token=token_response.access_token,
                refresh_token=token_response.refresh_token,
            )
        except EncryptionError as e:
            logger.error("Token encryption failed", user_id=user_id, error=str(e))
            raise TokenServiceError(
                f"Token encryption failed: {e}", user_id=user_id, recoverable=False
            ) from e

        query = """
        INSERT INTO oauth_tokens (
            user_id, provider, access_token, refresh_token,
            scope, expires_at, updated_at
        ) VALUES (
            %s, %s, %s, %s, %s, %s, NOW()
        )
        ON CONFLICT (user_id)
        DO UPDATE SET
            access_token = EXCLUDED.access_token,
            refresh_token = COALESCE(EXCLUDED.refresh_token, oauth_tokens.refresh_token),
            scope = EXCLUDED.scope,
            expires_at = EXCLUDED.expires_at,
            updated_at = NOW()
        """

        affected_rows = await execute_query(
            query,
            (
                user_id,
                provider,
                encrypted_access,
                encrypted_refresh,
                token_response.scope,
                token_response.expires_at,
            ),
        )

        logger.info(
            "OAuth tokens stored",
            user_id=user_id,
            provider=provider,
            has_refresh_token=bool(token_response.refresh_token),
            expires_at=token_response.expires_at.isoformat() if token_response.expires_at else None,
        )
        return affected_rows > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_tokens(self, user_id: str, provider: str = "google") -> OAuthToken | None:
        """
        Retrieve and decrypt OAuth tokens for user.

        Raises:
            TokenServiceError: If stored tokens cannot be decrypted
        """
        query = """
        SELECT access_token, refresh_token, scope, expires_at, updated_at
        FROM oauth_tokens
        WHERE user_id = %s AND provider = %s
        """
        row = await fetch_one(query, (user_id, provider))
        if not row:
            logger.debug("No tokens found for user", user_id=user_id, provider=provider)
            return None

        try:
            access_token, refresh_token = decrypt_oauth_tokens(
                encrypted_access=row["access_token"], encrypted_refresh=row["refresh_token"]
            )
        except EncryptionError as e:
            logger.error("Token decryption failed", user_id=user_id, error=str(e))
            raise TokenServiceError(
                f"Token decryption failed: {e}", user_id=user_id, recoverable=False
            ) from e

        return OAuthToken(
            user_id=user_id,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            scope=row["scope"] or "",
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
        )

    async def refresh(self, user_id: str, current: OAuthToken) -> OAuthToken:
        """
        Refresh a token pair and persist the result.

        Raises:
            InvalidCredentialError: no refresh token, or Google rejected the grant
            TokenServiceError: transient refresh failure (retryable)
        """
        if not current.can_refresh():
            raise InvalidCredentialError(
                "No refresh token available - re-authentication required", user_id=user_id
            )

        try:
            token_response = await self._refresh(current.refresh_token)
        except GoogleOAuthError as e:
            logger.error(
                "Google OAuth error during token refresh",
                user_id=user_id,
                error=str(e),
                error_code=e.error_code,
            )
            if not e.recoverable:
                raise InvalidCredentialError(
                    f"Token refresh rejected: {e}", user_id=user_id
                ) from e
            raise TokenServiceError(f"Token refresh failed: {e}", user_id=user_id) from e

        await self.store_tokens(user_id, token_response, current.provider)
        logger.info("Token refresh successful", user_id=user_id)

        return OAuthToken(
            user_id=user_id,
            provider=current.provider,
            access_token=token_response.access_token,
            refresh_token=token_response.refresh_token,
            scope=token_response.scope or current.scope,
            expires_at=token_response.expires_at,
        )

    async def get_valid_access_token(self, user_id: str) -> str:
        """
        Return an access token good for at least the refresh buffer.

        Raises:
            NoCredentialError: the user never connected a calendar
            InvalidCredentialError: the stored grant can no longer be refreshed
        """
        tokens = await self.get_tokens(user_id)
        if not tokens:
            raise NoCredentialError("No calendar credentials for user", user_id=user_id)

        if tokens.needs_refresh(buffer_minutes=TOKEN_REFRESH_BUFFER_MINUTES):
            tokens = await self.refresh(user_id, tokens)

        return tokens.access_token

    async def connect_with_code(self, user_id: str, code: str) -> TokenResponse:
        """
        Exchange an authorization code and store the resulting pair.

        Raises:
            InvalidCredentialError: the code was rejected
        """
        try:
            token_response = await self._exchange(code)
        except GoogleOAuthError as e:
            if not e.recoverable:
                raise InvalidCredentialError(
                    f"Authorization code rejected: {e}", user_id=user_id
                ) from e
            raise TokenServiceError(f"Code exchange failed: {e}", user_id=user_id) from e

        await self.store_tokens(user_id, token_response)
        return token_response

    async def cleanup_revoked_tokens(self) -> int:
        """
        Remove revoked-token rows whose expiry has passed.

        Raises:
            TokenServiceError: on database failure, so the cleanup job retries
        """
        try:
            deleted = await execute_query("DELETE FROM revoked_tokens WHERE expires_at < NOW()")
        except DatabaseError as e:
            logger.error("Revoked token cleanup failed", error=str(e))
            raise TokenServiceError(f"Revoked token cleanup failed: {e}") from e

        logger.info("Revoked token cleanup completed", deleted=deleted)
        return deleted


# Singleton instance for application use
token_service = TokenService()

