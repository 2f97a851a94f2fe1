"""Session bootstrap, redirect guard and login page controller."""

import enum
import logging
import typing as t

from sharepoint_client.api import SharePointDataApi
from sharepoint_oauth.callback import AuthWindowActor
from sharepoint_oauth.coordinator import AuthCoordinator
from sharepoint_oauth.exceptions import OAuthError
from sharepoint_oauth.models import AuthOutcome, AuthState, Fallback
from sharepoint_oauth.urls import parse_callback_url, strip_callback_params
from sharepoint_oauth.windows import AUTH_WINDOW_LABEL, MAIN_WINDOW_LABEL, WindowHost

logger = logging.getLogger(__name__)

LOGIN_PAGE = 'auth.html'
HOME_PAGE = 'index.html'


class LoginPageAction(str, enum.Enum):
    """What a login page load resulted in."""

    NONE = 'none'
    ALREADY_AUTHENTICATED = 'already_authenticated'
    ERROR = 'error'
    HANDED_OFF = 'handed_off'
    COMPLETED = 'completed'


class SessionBootstrap:
    """Runs on every window load.

    Protected views are guarded by :meth:`guard_protected_view`; the login
    entry point calls :meth:`on_login_page_load`, which also picks up a
    ``code``/``error`` the provider left in the URL, on whichever window it
    landed.
    """

    def __init__(
        self,
        windows: WindowHost,
        api: t.Optional[SharePointDataApi],
        coordinator: t.Optional[AuthCoordinator] = None,
        actor: t.Optional[AuthWindowActor] = None,
        login_page: str = LOGIN_PAGE,
        home_page: str = HOME_PAGE,
    ) -> None:
        self._windows = windows
        self.api = api
        self.coordinator = coordinator
        self.actor = actor
        self.login_page = login_page
        self.home_page = home_page
        self.demo_mode = False
        self.last_error: t.Optional[str] = None

    def attach(self) -> t.Callable[[], None]:
        """Route page loads and coordinator outcomes through this bootstrap.

        Returns:
            Callable detaching both subscriptions.
        """
        remove_handler = self._windows.add_navigation_handler(self._on_navigation)
        remove_observer = self.coordinator.add_observer(self._on_outcome) if self.coordinator else None

        def _detach() -> None:
            remove_handler()
            if remove_observer is not None:
                remove_observer()

        return _detach

    async def guard_protected_view(self, label: str = MAIN_WINDOW_LABEL) -> bool:
        """Check authentication before a protected view loads.

        Returns:
            True if the view may load, False if the window was sent to the
            login page.
        """
        if self.api is None:
            if not self.demo_mode:
                logger.warning('No data API available, running in demo mode')
            self.demo_mode = True
            return True

        try:
            await self.api.init_from_config()
        except OAuthError as e:
            logger.info('Could not initialize from configuration: %s', e)

        if await self.api.check_authentication():
            return True

        logger.info('Not authenticated, redirecting %s to %s', label, self.login_page)
        await self._windows.navigate(label, self.login_page)
        return False

    async def on_login_page_load(self, url: str, label: str = MAIN_WINDOW_LABEL) -> LoginPageAction:
        """Handle a load of the login entry point.

        Args:
            url: URL the window loaded, possibly carrying callback parameters.
            label: Window that loaded it.
        """
        params = parse_callback_url(url)

        if label == AUTH_WINDOW_LABEL:
            if params.is_empty:
                return LoginPageAction.NONE
            if self.actor is None:
                logger.warning('Callback reached the auth window but no handoff actor is attached')
                return LoginPageAction.NONE
            await self.actor.on_page_load(url)
            return LoginPageAction.HANDED_OFF

        if params.is_error:
            self.last_error = params.error_description or params.error
            logger.warning('Provider returned an error: %s', params.error)
            await self._windows.navigate(label, strip_callback_params(url))
            if self.coordinator is not None:
                await self.coordinator.handle_redirect(url)
            return LoginPageAction.ERROR

        if params.code:
            if self.coordinator is None:
                self.last_error = 'Received an authorization code but no login is in progress'
                return LoginPageAction.ERROR
            await self._windows.navigate(label, strip_callback_params(url))
            outcome = await self.coordinator.handle_redirect(url)
            if outcome is None:
                logger.info('Authorization code on %s ignored, no matching login', label)
                return LoginPageAction.NONE
            return LoginPageAction.COMPLETED

        if self.api is not None and await self.api.check_authentication():
            await self._windows.navigate(label, self.home_page)
            return LoginPageAction.ALREADY_AUTHENTICATED
        return LoginPageAction.NONE

    async def _on_navigation(self, label: str, url: str) -> None:
        if not parse_callback_url(url).is_empty:
            await self.on_login_page_load(url, label)

    async def _on_outcome(self, outcome: AuthOutcome) -> None:
        if outcome.success:
            self.last_error = None
            await self._windows.navigate(MAIN_WINDOW_LABEL, self.home_page)
        elif outcome.error is not None:
            self.last_error = str(outcome.error)


_MESSAGES = {
    AuthState.TIMED_OUT: 'Authentication timed out. Please try again.',
}


class LoginController:
    """Login page buttons: sign in, retry in the browser, paste a code."""

    def __init__(self, coordinator: AuthCoordinator) -> None:
        self.coordinator = coordinator
        self.fallback: t.Optional[Fallback] = None
        self.message: t.Optional[str] = None
        coordinator.add_observer(self._on_outcome)

    @property
    def manual_entry_available(self) -> bool:
        return self.fallback is Fallback.MANUAL_CODE or self.coordinator.is_pending

    async def login(self) -> None:
        self.fallback = None
        self.message = None
        try:
            await self.coordinator.start_login()
        except OAuthError as e:
            self.message = str(e)

    async def login_in_browser(self) -> None:
        self.fallback = None
        self.message = None
        try:
            await self.coordinator.start_external_login()
        except OAuthError as e:
            self.message = str(e)

    async def submit_code(self, code_or_url: str) -> t.Optional[AuthOutcome]:
        """Complete the pending login with a pasted code or redirect URL."""
        if not self.coordinator.is_pending:
            self.message = 'Start a new sign-in first, then paste the code it returns.'
            return None
        return await self.coordinator.submit_manual_code(code_or_url)

    def _on_outcome(self, outcome: AuthOutcome) -> None:
        self.fallback = outcome.fallback
        if outcome.success or outcome.state is AuthState.IDLE:
            self.message = None
        else:
            self.message = _MESSAGES.get(outcome.state) or str(outcome.error)
