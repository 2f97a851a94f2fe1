"""OAuth bearer session mixin for SharePoint clients.

This mixin adds OAuth authentication support to the AsyncClient class,
attaching the stored access token to every request through the existing
_invoke method.
"""

import logging
import typing as t

from sharepoint_client.exceptions import NotAuthenticatedError, UnauthorizedError
from sharepoint_oauth.models import DEFAULT_AUTHORITY, DEFAULT_SCOPE, Credential

if t.TYPE_CHECKING:
    import httpx

    from sharepoint_client.client.base import InvokeType
    from sharepoint_oauth.stores.base import CredentialStore
    from sharepoint_oauth.token import TokenExchangeClient

logger = logging.getLogger(__name__)


class AsyncOAuthSessionMixin:
    """Mixin that adds OAuth bearer session support to AsyncClient.

    When an OAuth session is active, all requests carry the access token.
    A 401 answer triggers one refresh with the refresh token, if the client
    was configured with tenant and client ID, and the request is retried.

    OAuth configuration is optional - clients work normally without it.
    """

    def __init__(
        self,
        *args: t.Any,
        oauth_tenant_id: t.Optional[str] = None,
        oauth_client_id: t.Optional[str] = None,
        oauth_client_secret: t.Optional[str] = None,
        oauth_scope: str = DEFAULT_SCOPE,
        oauth_authority: str = DEFAULT_AUTHORITY,
        credential_store: t.Optional['CredentialStore'] = None,
        token_client: t.Optional['TokenExchangeClient'] = None,
        **kwargs: t.Any,
    ) -> None:
        super().__init__(*args, **kwargs)

        # OAuth configuration (optional)
        self._oauth_tenant_id = oauth_tenant_id
        self._oauth_client_id = oauth_client_id
        self._oauth_client_secret = oauth_client_secret
        self._oauth_scope = oauth_scope
        self._oauth_authority = oauth_authority
        self._credential_store = credential_store

        # OAuth session state
        self._oauth_session: t.Optional[Credential] = None

        # Lazy-initialized components
        self._token_client = token_client

    def _ensure_oauth_initialized(self) -> 'TokenExchangeClient':
        """Initialize the token client on first refresh."""
        if self._token_client is not None:
            return self._token_client

        if not all([self._oauth_tenant_id, self._oauth_client_id]):
            raise ValueError('OAuth not configured. Provide oauth_tenant_id and oauth_client_id.')

        from sharepoint_oauth.token import TokenExchangeClient

        self._token_client = TokenExchangeClient(authority=self._oauth_authority)
        return self._token_client

    def _is_oauth_session(self) -> bool:
        """Check if currently using an OAuth session."""
        return self._oauth_session is not None

    def _can_refresh(self) -> bool:
        session = self._oauth_session
        return bool(session and session.refresh_token and self._oauth_tenant_id and self._oauth_client_id)

    async def _invoke(self, invoke_type: 'InvokeType', **kwargs: t.Any) -> 'httpx.Response':
        """Override _invoke to attach the bearer token of the OAuth session.

        For regular sessions, delegates to parent implementation.
        """
        # Non-OAuth requests use normal flow
        if not self._is_oauth_session():
            return await super()._invoke(invoke_type, **kwargs)  # type: ignore[misc]

        return await self._invoke_with_oauth(invoke_type, **kwargs)

    async def _invoke_with_oauth(self, invoke_type: 'InvokeType', **kwargs: t.Any) -> 'httpx.Response':
        """Make OAuth-authenticated request, refreshing the token once on 401."""
        headers = dict(kwargs.pop('headers', None) or {})

        if self._oauth_session.is_expired and self._can_refresh():
            await self.refresh_oauth_session()

        for attempt in range(2):
            session = self._oauth_session
            headers['Authorization'] = f'{session.token_type} {session.access_token}'

            try:
                return await super()._invoke(invoke_type, headers=headers, **kwargs)  # type: ignore[misc]
            except UnauthorizedError:
                if attempt == 0 and self._can_refresh():
                    logger.info('Access token rejected, refreshing')
                    await self.refresh_oauth_session()
                    continue
                raise

        raise NotAuthenticatedError('Access token rejected after refresh')

    async def refresh_oauth_session(self) -> Credential:
        """Replace the session credential using its refresh token.

        The new credential is written to the credential store, if any.

        Raises:
            NotAuthenticatedError: If there is no session or no refresh token.
            OAuthTokenError: If the token endpoint rejects the refresh.
        """
        session = self._oauth_session
        if session is None or not session.refresh_token:
            raise NotAuthenticatedError('No refresh token available')

        token_client = self._ensure_oauth_initialized()
        token = await token_client.refresh_token(
            refresh_token=session.refresh_token,
            tenant_id=self._oauth_tenant_id,
            client_id=self._oauth_client_id,
            client_secret=self._oauth_client_secret,
            scope=self._oauth_scope,
        )

        credential = token.to_credential(session.service_url)
        if credential.refresh_token is None:
            credential.refresh_token = session.refresh_token

        if self._credential_store is not None:
            await self._credential_store.save_credential(credential)
        self._oauth_session = credential
        return credential

    def oauth_login(self, oauth_session: Credential) -> None:
        """Set up client with an OAuth session.

        After calling this, all requests will be authenticated with the
        session's bearer token.

        Args:
            oauth_session: Credential obtained by the login flow or restored from storage.

        Example:
            >>> credential = await store.load_credential(site_url)
            >>> client.oauth_login(credential)
            >>> site = await client.get_site(site_url)
        """
        self._oauth_session = oauth_session

    def oauth_logout(self) -> None:
        """Clear OAuth session."""
        self._oauth_session = None

    def export_oauth_session(self) -> t.Optional[Credential]:
        """Export OAuth session for persistence.

        Returns the current credential, which may have been refreshed since
        oauth_login().

        Returns:
            Credential, or None if not in OAuth session.
        """
        return self._oauth_session


__all__ = ['AsyncOAuthSessionMixin']
