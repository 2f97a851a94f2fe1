"""Authentication coordinator.

Drives one OAuth 2.0 authorization code + PKCE login at a time::

    IDLE -> AWAITING_PROVIDER_REDIRECT -> EXCHANGING_CODE -> AUTHENTICATED
                                       \\-> FAILED
                                       \\-> TIMED_OUT

While a session awaits the provider redirect, several completion channels
run concurrently: direct interception of the main window's URL, the
``oauth-code-received`` message from the auth window, polling of the
credential store, the auth-window-closed watcher and manual code entry.
Each channel must claim the session before acting on it; only the first
claim succeeds, so the authorization code is exchanged at most once.
"""

import asyncio
import inspect
import logging
import typing as t

from sharepoint_oauth.bus import OAUTH_CODE_ACK, OAUTH_CODE_RECEIVED, OAUTH_SUCCESS, WindowEventBus
from sharepoint_oauth.config import CoordinatorSettings
from sharepoint_oauth.exceptions import (
    AuthorizationDeniedError,
    AuthTimeoutError,
    ConfigurationIncompleteError,
    ErrorKind,
    OAuthError,
    OAuthStateError,
    WindowCreationError,
)
from sharepoint_oauth.models import (
    AuthContext,
    AuthOutcome,
    AuthSession,
    AuthState,
    CallbackParams,
    Channel,
    Fallback,
)
from sharepoint_oauth.pkce import generate_pkce, generate_state_nonce
from sharepoint_oauth.stores.base import CredentialStore, StateStore
from sharepoint_oauth.stores.memory import MemoryStateStore
from sharepoint_oauth.token import TokenExchangeClient
from sharepoint_oauth.urls import build_authorization_url, parse_callback_url
from sharepoint_oauth.windows import (
    AUTH_WINDOW_LABEL,
    MAIN_WINDOW_LABEL,
    AuthWindowHandle,
    WindowHost,
    open_in_browser,
)

logger = logging.getLogger(__name__)

Observer = t.Callable[[AuthOutcome], t.Any]
BrowserOpener = t.Callable[[str], t.Awaitable[None]]

_TRANSITIONS: t.Dict[AuthState, t.FrozenSet[AuthState]] = {
    AuthState.IDLE: frozenset({AuthState.AWAITING_PROVIDER_REDIRECT, AuthState.FAILED}),
    AuthState.AWAITING_PROVIDER_REDIRECT: frozenset(
        {
            AuthState.AWAITING_PROVIDER_REDIRECT,
            AuthState.EXCHANGING_CODE,
            AuthState.AUTHENTICATED,
            AuthState.FAILED,
            AuthState.TIMED_OUT,
            AuthState.IDLE,
        }
    ),
    AuthState.EXCHANGING_CODE: frozenset(
        {AuthState.AWAITING_PROVIDER_REDIRECT, AuthState.AUTHENTICATED, AuthState.FAILED, AuthState.IDLE}
    ),
    AuthState.AUTHENTICATED: frozenset({AuthState.AWAITING_PROVIDER_REDIRECT, AuthState.IDLE, AuthState.FAILED}),
    AuthState.FAILED: frozenset({AuthState.AWAITING_PROVIDER_REDIRECT, AuthState.IDLE, AuthState.FAILED}),
    AuthState.TIMED_OUT: frozenset({AuthState.AWAITING_PROVIDER_REDIRECT, AuthState.IDLE, AuthState.FAILED}),
}


class AuthCoordinator:
    """State machine for a multi-window OAuth 2.0 + PKCE login.

    The coordinator lives in the main window. It owns the pending session
    (state, nonce, PKCE verifier) and the handle of the authentication
    window; nothing else may close that window on its behalf.
    """

    def __init__(
        self,
        context: AuthContext,
        credential_store: CredentialStore,
        windows: WindowHost,
        bus: WindowEventBus,
        token_client: t.Optional[TokenExchangeClient] = None,
        state_store: t.Optional[StateStore] = None,
        settings: t.Optional[CoordinatorSettings] = None,
        label: str = MAIN_WINDOW_LABEL,
        browser_opener: t.Optional[BrowserOpener] = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            context: Tenant/client configuration and the service URL.
            credential_store: Process-wide credential store.
            windows: Host used to open and observe the auth window.
            bus: Cross-window message bus.
            token_client: Token endpoint client.
            state_store: Store for the pending session.
            settings: Polling and delay timings.
            label: Label of the window the coordinator runs in.
            browser_opener: Opens a URL outside the application.
        """
        self.context = context
        self.settings = settings or CoordinatorSettings()
        self.label = label
        self._credentials = credential_store
        self._windows = windows
        self._bus = bus
        self._token_client = token_client or TokenExchangeClient(authority=context.authority)
        self._state_store = state_store or MemoryStateStore()
        self._browser_opener = browser_opener or open_in_browser

        self._state = AuthState.IDLE
        self._session: t.Optional[AuthSession] = None
        self._auth_window: t.Optional[AuthWindowHandle] = None
        self._authorization_url: t.Optional[str] = None
        self._tasks: t.Set['asyncio.Task[t.Any]'] = set()
        self._outcome: t.Optional['asyncio.Future[AuthOutcome]'] = None
        self._observers: t.List[Observer] = []
        self.last_outcome: t.Optional[AuthOutcome] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> t.Optional[AuthSession]:
        return self._session

    @property
    def authorization_url(self) -> t.Optional[str]:
        """Authorization URL of the latest session, for display in manual mode."""
        return self._authorization_url

    @property
    def is_pending(self) -> bool:
        return self._session is not None and self._state is AuthState.AWAITING_PROVIDER_REDIRECT

    def add_observer(self, observer: Observer) -> t.Callable[[], None]:
        """Register a callback invoked with every terminal outcome.

        Returns:
            Callable removing the observer.
        """
        self._observers.append(observer)

        def _remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove

    async def wait(self, timeout: t.Optional[float] = None) -> AuthOutcome:
        """Wait for the outcome of the current (or last) session."""
        if self._outcome is None:
            if self.last_outcome is not None:
                return self.last_outcome
            raise RuntimeError('No login in progress')
        return await asyncio.wait_for(asyncio.shield(self._outcome), timeout)

    async def start_login(self) -> AuthSession:
        """Start a login in a secondary authentication window.

        Any pending session is superseded: its state can never be matched
        again.

        Returns:
            The new pending session.

        Raises:
            ConfigurationIncompleteError: If tenant ID or client ID is empty.
        """
        await self._require_configuration()
        session = await self._begin_session()
        url = self._authorization_url_for(session)

        try:
            await self._windows.open_window(AUTH_WINDOW_LABEL, url, visible=True, focus=False)
        except Exception as e:
            error = e if isinstance(e, WindowCreationError) else WindowCreationError(str(e))
            logger.error('Failed to open the authentication window: %s', error)
            await self._finish(session, AuthOutcome(AuthState.FAILED, error=error, fallback=Fallback.EXTERNAL_BROWSER))
            return session

        self._auth_window = AuthWindowHandle(host=self._windows, url=url)
        self._arm_channels(session, watch_window=True)
        self._spawn(self._keep_main_window_visible())
        logger.info('Authentication window opened')
        return session

    async def start_external_login(self) -> AuthSession:
        """Start a login in the system browser.

        Used when the authentication window cannot be created or a previous
        attempt failed. The redirect is caught by direct interception when a
        loopback listener is running, otherwise the user pastes the code
        with :meth:`submit_manual_code`.

        Raises:
            ConfigurationIncompleteError: If tenant ID or client ID is empty.
        """
        await self._require_configuration()
        session = await self._begin_session()
        url = self._authorization_url_for(session)

        try:
            await self._browser_opener(url)
        except Exception as e:
            logger.warning('Could not open the system browser: %s', e)

        self._arm_channels(session, watch_window=False)
        return session

    async def handle_redirect(self, url: str) -> t.Optional[AuthOutcome]:
        """Direct interception: the main window itself loaded a callback URL.

        Returns:
            The outcome if this call drove the session to completion, None if
            the URL carried nothing or another channel already claimed it.
        """
        params = parse_callback_url(url)
        if params.is_empty:
            return None
        return await self._deliver(params, Channel.DIRECT)

    async def submit_manual_code(self, code_or_url: str) -> t.Optional[AuthOutcome]:
        """Complete the pending session with a code pasted by the user.

        Accepts a bare authorization code or the full redirect URL. When a
        URL is pasted its ``state`` is validated like any other callback.
        """
        text = code_or_url.strip()
        if not text:
            return None
        if 'code=' in text or 'error=' in text:
            if '?' not in text and '#' not in text:
                text = f'?{text}'
            params = parse_callback_url(text)
        else:
            params = CallbackParams(code=text)
        return await self._deliver(params, Channel.MANUAL)

    async def cancel(self) -> None:
        """Abandon the pending session and return to IDLE."""
        session = self._session
        if session is None:
            return
        session.claim(Channel.MANUAL)
        logger.info('Login cancelled')
        await self._finish(session, AuthOutcome(AuthState.IDLE))

    async def _require_configuration(self) -> None:
        if self.context.is_complete:
            return
        error = ConfigurationIncompleteError('Tenant ID and client ID must be configured before signing in')
        outcome = AuthOutcome(AuthState.FAILED, error=error)
        if self._session is None:
            self._set_state(AuthState.FAILED)
        self.last_outcome = outcome
        await self._notify(outcome)
        raise error

    async def _begin_session(self) -> AuthSession:
        await self._supersede()

        code_verifier, code_challenge, method = generate_pkce()
        state, nonce = generate_state_nonce()
        session = AuthSession(
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            code_challenge_method=method,
            tenant_id=self.context.tenant_id,
            client_id=self.context.client_id,
            client_secret=self.context.client_secret,
            redirect_uri=self.context.redirect_uri,
            scope=self.context.scope,
        )
        await self._state_store.save_state(session)
        dropped = self._bus.clear(self.label)
        if dropped:
            logger.debug('Dropped %d stale window messages', dropped)

        self._session = session
        self._outcome = asyncio.get_running_loop().create_future()
        self._set_state(AuthState.AWAITING_PROVIDER_REDIRECT)
        return session

    async def _supersede(self) -> None:
        previous = self._session
        if previous is None:
            return
        logger.info('Superseding pending login')
        previous.claim(Channel.MANUAL)
        self._cancel_channels()
        await self._state_store.delete_state(previous.state)
        self._session = None
        await self._close_auth_window()
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(AuthOutcome(AuthState.IDLE))

    def _authorization_url_for(self, session: AuthSession) -> str:
        url = build_authorization_url(
            tenant_id=session.tenant_id,
            client_id=session.client_id,
            redirect_uri=session.redirect_uri,
            scope=session.scope,
            code_challenge=session.code_challenge,
            method=session.code_challenge_method,
            state=session.state,
            nonce=session.nonce,
            authority=self.context.authority,
        )
        self._authorization_url = url
        return url

    def _arm_channels(self, session: AuthSession, watch_window: bool) -> None:
        self._spawn(self._listen_for_window_messages(session))
        self._spawn(self._poll_for_credential(session))
        if watch_window:
            self._spawn(self._watch_auth_window(session))

    def _spawn(self, coro: t.Coroutine[t.Any, t.Any, t.Any]) -> 'asyncio.Task[t.Any]':
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_channels(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

    def _set_state(self, new_state: AuthState) -> None:
        if new_state is not AuthState.IDLE and new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f'Invalid transition {self._state.value} -> {new_state.value}')
        logger.debug('Auth state %s -> %s', self._state.value, new_state.value)
        self._state = new_state

    def _is_current(self, session: AuthSession) -> bool:
        return session is self._session and self._state is AuthState.AWAITING_PROVIDER_REDIRECT

    async def _claim(self, session: AuthSession, channel: Channel) -> bool:
        if not self._is_current(session) or not session.claim(channel):
            return False
        logger.info('Login claimed by %s channel', channel.value)
        self._cancel_channels()
        return True

    async def _consume_state(self, session: AuthSession) -> bool:
        """Take the pending entry out of the state store.

        Returns:
            False if the store no longer holds the session (expired, or
            removed by another holder of the store).
        """
        stored = await self._state_store.get_state(session.state)
        await self._state_store.delete_state(session.state)
        return stored is not None and stored.code_verifier == session.code_verifier

    async def _deliver(self, params: CallbackParams, channel: Channel) -> t.Optional[AuthOutcome]:
        session = self._session
        if session is None or not self._is_current(session):
            logger.info('Ignoring callback from %s channel: no login awaiting a redirect', channel.value)
            return None

        if params.is_error:
            if not await self._claim(session, channel):
                return None
            error = AuthorizationDeniedError(params.error or 'error', params.error_description)
            return await self._finish(session, AuthOutcome(AuthState.FAILED, error=error, channel=channel))

        if not params.code:
            return None

        # A bare pasted code carries no state; everything else must match.
        if params.state is not None or channel is not Channel.MANUAL:
            if params.state != session.state:
                if not await self._claim(session, channel):
                    return None
                logger.warning('Rejected callback with mismatched state from %s channel', channel.value)
                error = OAuthStateError('Callback state does not match the pending login')
                return await self._finish(
                    session, AuthOutcome(AuthState.FAILED, error=error, fallback=Fallback.MANUAL_CODE, channel=channel)
                )

        if not await self._claim(session, channel):
            return None
        if not await self._consume_state(session):
            logger.warning('Pending login no longer in the state store, not exchanging the code')
            error = OAuthStateError('The pending login has expired')
            return await self._finish(
                session, AuthOutcome(AuthState.FAILED, error=error, fallback=Fallback.MANUAL_CODE, channel=channel)
            )
        return await self._exchange(session, params.code, channel)

    async def _exchange(self, session: AuthSession, code: str, channel: Channel) -> AuthOutcome:
        self._set_state(AuthState.EXCHANGING_CODE)
        try:
            token = await self._token_client.exchange_code(
                code=code,
                code_verifier=session.code_verifier,
                tenant_id=session.tenant_id,
                client_id=session.client_id,
                client_secret=session.client_secret,
                scope=session.scope,
                redirect_uri=session.redirect_uri,
            )
        except OAuthError as e:
            logger.error('Token exchange failed: %s', e)
            return await self._finish(
                session, AuthOutcome(AuthState.FAILED, error=e, fallback=Fallback.MANUAL_CODE, channel=channel)
            )

        if session is not self._session:
            logger.info('Login was superseded during the token exchange, discarding token')
            return AuthOutcome(AuthState.IDLE, channel=channel)

        credential = token.to_credential(self.context.service_url)
        try:
            await self._credentials.save_credential(credential)
        except OSError as e:
            logger.error('Failed to store credential: %s', e)
            error = OAuthError(f'Could not store the access token: {e}', kind=ErrorKind.UNKNOWN)
            return await self._finish(session, AuthOutcome(AuthState.FAILED, error=error, channel=channel))

        return await self._finish(
            session, AuthOutcome(AuthState.AUTHENTICATED, credential=credential, channel=channel)
        )

    async def _finish(self, session: AuthSession, outcome: AuthOutcome) -> AuthOutcome:
        if session is not self._session:
            return outcome

        self._cancel_channels()
        await self._state_store.delete_state(session.state)
        self._session = None
        self._set_state(outcome.state)
        self.last_outcome = outcome
        logger.info('Login finished: %s', outcome.state.value)

        await self._close_auth_window()
        if outcome.success:
            await self._bus.emit(OAUTH_SUCCESS, {'service_url': self.context.service_url}, source=self.label)
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)
        await self._notify(outcome)
        return outcome

    async def _notify(self, outcome: AuthOutcome) -> None:
        for observer in list(self._observers):
            try:
                result = observer(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning('Auth observer failed: %s', e)

    async def _close_auth_window(self) -> None:
        handle, self._auth_window = self._auth_window, None
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as e:
            logger.debug('Auth window already closed: %s', e)

    async def _keep_main_window_visible(self) -> None:
        # The auth window is shown but never focused, or it hides the main window.
        await asyncio.sleep(self.settings.window_settle_delay)
        for action, label in (('show', self.label), ('set_focus', self.label), ('show', AUTH_WINDOW_LABEL)):
            try:
                await getattr(self._windows, action)(label)
            except Exception as e:
                logger.debug('Window %s failed on %s: %s', action, label, e)

    async def _listen_for_window_messages(self, session: AuthSession) -> None:
        while self._is_current(session):
            message = await self._bus.receive(self.label)

            if message.event == OAUTH_CODE_RECEIVED:
                await self._bus.send(message.source, OAUTH_CODE_ACK, source=self.label)
                payload = message.payload
                params = CallbackParams(
                    code=payload.get('code'),
                    state=payload.get('state'),
                    error=payload.get('error'),
                    error_description=payload.get('error_description'),
                )
                await self._deliver(params, Channel.WINDOW_MESSAGE)

            elif message.event == OAUTH_SUCCESS:
                # Another window completed the exchange and stored the credential.
                await self._complete_from_store(session, Channel.WINDOW_MESSAGE)

    async def _poll_for_credential(self, session: AuthSession) -> None:
        attempts = self.settings.max_poll_attempts
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self.settings.poll_interval)
            if not self._is_current(session):
                return
            try:
                authenticated = await self._credentials.is_authenticated(self.context.service_url)
            except Exception as e:
                logger.debug('Authentication poll %d/%d failed: %s', attempt, attempts, e)
                continue
            logger.debug('Authentication poll %d/%d: %s', attempt, attempts, authenticated)
            if authenticated:
                await self._complete_from_store(session, Channel.POLLING)
                return

        if await self._claim(session, Channel.POLLING):
            logger.warning('No completion detected after %d polls', attempts)
            error = AuthTimeoutError('Authentication timed out. Please try again.')
            await self._finish(
                session, AuthOutcome(AuthState.TIMED_OUT, error=error, fallback=Fallback.MANUAL_CODE, channel=Channel.POLLING)
            )

    async def _watch_auth_window(self, session: AuthSession) -> None:
        await self._windows.wait_closed(AUTH_WINDOW_LABEL)
        if not self._is_current(session):
            return

        # The redirect, exchange and self-close can all land within this delay.
        logger.info('Authentication window closed, re-checking in %.1fs', self.settings.close_grace_delay)
        await asyncio.sleep(self.settings.close_grace_delay)
        if not self._is_current(session):
            return

        try:
            authenticated = await self._credentials.is_authenticated(self.context.service_url)
        except Exception as e:
            logger.debug('Authentication check after window close failed: %s', e)
            authenticated = False

        if authenticated:
            await self._complete_from_store(session, Channel.WINDOW_CLOSED)
        elif await self._claim(session, Channel.WINDOW_CLOSED):
            logger.info('Authentication window closed before completion')
            await self._finish(session, AuthOutcome(AuthState.IDLE, channel=Channel.WINDOW_CLOSED))

    async def _complete_from_store(self, session: AuthSession, channel: Channel) -> None:
        if not await self._claim(session, channel):
            return
        credential = await self._credentials.load_credential(self.context.service_url)
        await self._finish(session, AuthOutcome(AuthState.AUTHENTICATED, credential=credential, channel=channel))
