"""Data API surface consumed by the record display layer."""

import logging
import typing as t
from pathlib import Path

from sharepoint_client.client import AsyncClient
from sharepoint_client.exceptions import NotAuthenticatedError
from sharepoint_oauth import config as config_module
from sharepoint_oauth.config import AppConfig
from sharepoint_oauth.exceptions import ConfigFileError, OAuthError, OAuthStateError
from sharepoint_oauth.models import (
    DEFAULT_AUTHORITY,
    DEFAULT_REDIRECT_URI,
    DEFAULT_SCOPE,
    AuthContext,
    AuthSession,
    Credential,
)
from sharepoint_oauth.pkce import generate_pkce, generate_state_nonce
from sharepoint_oauth.stores.base import CredentialStore, StateStore
from sharepoint_oauth.stores.memory import MemoryStateStore
from sharepoint_oauth.token import TokenExchangeClient
from sharepoint_oauth.urls import build_authorization_url

logger = logging.getLogger(__name__)

ConfigPaths = t.Optional[t.Sequence[t.Union[str, Path]]]


class SharePointDataApi:
    """Authentication and configuration commands of the application.

    The facade is the only holder of the loaded configuration; windows ask
    it, never each other, whether the configured site is authenticated.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        state_store: t.Optional[StateStore] = None,
        token_client: t.Optional[TokenExchangeClient] = None,
        config_paths: ConfigPaths = None,
        authority: str = DEFAULT_AUTHORITY,
    ) -> None:
        self.credentials = credential_store
        self.config: t.Optional[AppConfig] = None
        self._state_store = state_store or MemoryStateStore()
        self._token_client = token_client or TokenExchangeClient(authority=authority)
        self._config_paths = config_paths
        self._authority = authority
        self._pending_state: t.Optional[str] = None

    @property
    def site_url(self) -> t.Optional[str]:
        return self.config.sharepoint.site_url if self.config else None

    @property
    def lists(self) -> t.Dict[str, str]:
        return dict(self.config.lists) if self.config else {}

    def auth_context(self, **overrides: t.Any) -> AuthContext:
        """Authentication context of the loaded configuration.

        Without configuration the context is incomplete, which the
        coordinator reports as a configuration error.
        """
        if self.config is None:
            values: t.Dict[str, t.Any] = {'tenant_id': '', 'client_id': '', 'service_url': ''}
            values.update(overrides)
            return AuthContext(authority=values.pop('authority', self._authority), **values)
        overrides.setdefault('authority', self._authority)
        return AuthContext.from_config(self.config, **overrides)

    async def load_config_file(self, paths: ConfigPaths = None) -> t.Dict[str, t.Any]:
        """Read ``config.json`` without applying it.

        Raises:
            ConfigFileError: If no configuration file can be read or parsed.
        """
        config = config_module.load_config_file(paths or self._config_paths)
        return config.model_dump()

    async def init_from_config(self, paths: ConfigPaths = None) -> AppConfig:
        """Initialize from ``config.json``, or the configuration saved by a previous sign-in.

        When the configured site is already authenticated, its credential is
        kept and tenant/client settings already known are not overwritten.

        Raises:
            ConfigFileError: If neither a configuration file nor a saved
                configuration is available.
        """
        loaded = config_module.resolve_config(paths or self._config_paths)
        if loaded is None:
            raise ConfigFileError('No config.json found and no saved configuration')

        previous = self.config
        if previous is not None and await self.credentials.is_authenticated(loaded.sharepoint.site_url):
            section = loaded.sharepoint.model_copy(
                update={
                    'tenant_id': previous.sharepoint.tenant_id or loaded.sharepoint.tenant_id,
                    'client_id': previous.sharepoint.client_id or loaded.sharepoint.client_id,
                    'client_secret': previous.sharepoint.client_secret or loaded.sharepoint.client_secret,
                }
            )
            loaded = loaded.model_copy(update={'sharepoint': section})
            logger.info('Site already authenticated, keeping existing credential')

        self.config = loaded
        return loaded

    async def check_authentication(self) -> bool:
        site_url = self.site_url
        if not site_url:
            logger.debug('Authentication check without a configured site')
            return False
        return await self.credentials.is_authenticated(site_url)

    async def save_credentials(self, service_url: str, token: str) -> None:
        """Store an access token obtained elsewhere for ``service_url``."""
        await self.credentials.save_credential(Credential(service_url=service_url, access_token=token))
        if self.config is None:
            self.config = AppConfig.model_validate({'sharepoint': {'site_url': service_url}})
        logger.info('Saved credentials for %s', service_url)

    async def get_oauth_authorization_url(
        self,
        tenant_id: str,
        client_id: str,
        service_url: str,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        scope: str = DEFAULT_SCOPE,
    ) -> str:
        """Start a login and return the URL to open.

        Any login started earlier through this method can no longer be
        completed.
        """
        if self._pending_state is not None:
            await self._state_store.delete_state(self._pending_state)

        code_verifier, code_challenge, method = generate_pkce()
        state, nonce = generate_state_nonce()
        session = AuthSession(
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            code_challenge_method=method,
            tenant_id=tenant_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
        )
        await self._state_store.save_state(session)
        self._pending_state = state
        logger.info('Prepared authorization URL for %s', service_url)

        return build_authorization_url(
            tenant_id=tenant_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            code_challenge=code_challenge,
            method=method,
            state=state,
            nonce=nonce,
            authority=self._authority,
        )

    async def _consume_pending(self, state: t.Optional[str]) -> AuthSession:
        pending_key, self._pending_state = self._pending_state, None
        if pending_key is None:
            raise OAuthStateError('No login is pending')

        session = await self._state_store.get_state(pending_key)
        await self._state_store.delete_state(pending_key)
        if session is None:
            raise OAuthStateError('The pending login has expired')
        if state is not None and state != session.state:
            raise OAuthStateError('Callback state does not match the pending login')
        return session

    async def complete_oauth_authentication(
        self,
        code: str,
        tenant_id: str,
        client_id: str,
        client_secret: t.Optional[str],
        service_url: str,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
        state: t.Optional[str] = None,
    ) -> t.Dict[str, t.Any]:
        """Exchange the code of the pending login and store the credential.

        The pending login is consumed whatever the outcome.

        Returns:
            ``{'success': True, 'access_token': ..., 'expires_at': ...}``.

        Raises:
            OAuthStateError: If no login is pending or ``state`` does not match it.
            OAuthTokenError: If the token endpoint rejects the code.
        """
        session = await self._consume_pending(state)
        token = await self._token_client.exchange_code(
            code=code,
            code_verifier=session.code_verifier,
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret,
            scope=session.scope,
            redirect_uri=redirect_uri,
        )

        credential = token.to_credential(service_url)
        await self.credentials.save_credential(credential)
        self.config = AppConfig.model_validate(
            {
                'sharepoint': {
                    'site_url': service_url,
                    'tenant_id': tenant_id,
                    'client_id': client_id,
                    'client_secret': client_secret,
                },
                'lists': self.lists,
            }
        )
        try:
            config_module.save_config(self.config)
        except OSError as e:
            logger.warning('Could not save configuration: %s', e)
        logger.info('Authenticated %s', service_url)

        return {
            'success': True,
            'access_token': credential.access_token,
            'expires_at': credential.expires_at.isoformat() if credential.expires_at else '',
        }

    async def ensure_valid_token(self, service_url: t.Optional[str] = None) -> bool:
        """Refresh an expired credential when possible.

        Returns:
            True if a usable credential is stored afterwards.
        """
        service_url = service_url or self.site_url
        if not service_url:
            return False

        credential = await self.credentials.load_credential(service_url)
        if credential is None or not credential.access_token:
            return False
        if not credential.is_expired:
            return True

        context = self.auth_context()
        if not credential.refresh_token or not context.is_complete:
            logger.info('Access token expired and cannot be refreshed')
            return False

        try:
            token = await self._token_client.refresh_token(
                refresh_token=credential.refresh_token,
                tenant_id=context.tenant_id,
                client_id=context.client_id,
                client_secret=context.client_secret,
                scope=context.scope,
            )
        except OAuthError as e:
            logger.warning('Token refresh failed: %s', e)
            return False

        refreshed = token.to_credential(service_url)
        if refreshed.refresh_token is None:
            refreshed.refresh_token = credential.refresh_token
        await self.credentials.save_credential(refreshed)
        logger.info('Access token refreshed for %s', service_url)
        return True

    async def logout(self, service_url: t.Optional[str] = None) -> bool:
        service_url = service_url or self.site_url
        if not service_url:
            return False
        removed = await self.credentials.delete_credential(service_url)
        logger.info('Logged out of %s', service_url)
        return removed

    async def get_client(self, **kwargs: t.Any) -> AsyncClient:
        """Graph client carrying the stored credential of the configured site.

        Raises:
            NotAuthenticatedError: If no credential is stored.
        """
        site_url = self.site_url
        credential = await self.credentials.load_credential(site_url) if site_url else None
        if credential is None:
            raise NotAuthenticatedError(f'Not signed in to {site_url or "any site"}')

        context = self.auth_context()
        client = AsyncClient(
            oauth_tenant_id=context.tenant_id or None,
            oauth_client_id=context.client_id or None,
            oauth_client_secret=context.client_secret,
            oauth_scope=context.scope,
            oauth_authority=context.authority,
            credential_store=self.credentials,
            token_client=self._token_client,
            **kwargs,
        )
        client.oauth_login(credential)
        return client
