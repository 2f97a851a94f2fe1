"""Authentication window side of the redirect handoff."""

import asyncio
import logging
import typing as t

from sharepoint_oauth.bus import OAUTH_CODE_ACK, OAUTH_CODE_RECEIVED, WindowEventBus
from sharepoint_oauth.urls import parse_callback_url
from sharepoint_oauth.windows import AUTH_WINDOW_LABEL, MAIN_WINDOW_LABEL, WindowHost

logger = logging.getLogger(__name__)


class AuthWindowActor:
    """Runs in the authentication window.

    When the provider redirects the auth window back to the application
    with ``code``/``state`` (or ``error``) it forwards them to the main
    window, waits for the acknowledgement (or ``ack_timeout``), and closes
    itself. It never exchanges the code: only the main window holds the
    PKCE verifier.
    """

    def __init__(
        self,
        bus: WindowEventBus,
        windows: WindowHost,
        label: str = AUTH_WINDOW_LABEL,
        target: str = MAIN_WINDOW_LABEL,
        ack_timeout: float = 1.0,
    ) -> None:
        self._bus = bus
        self._windows = windows
        self.label = label
        self.target = target
        self.ack_timeout = ack_timeout

    async def on_page_load(self, url: str) -> bool:
        """Handle a page load in the authentication window.

        Args:
            url: URL the window navigated to.

        Returns:
            True if the URL carried a callback and was handed off.
        """
        params = parse_callback_url(url)
        if params.is_empty:
            return False

        payload: t.Dict[str, t.Any] = {
            'code': params.code,
            'state': params.state,
            'error': params.error,
            'error_description': params.error_description,
        }
        logger.info('Auth window received %s, handing off to %s', 'error' if params.is_error else 'code', self.target)
        await self._bus.send(self.target, OAUTH_CODE_RECEIVED, payload, source=self.label)

        try:
            await self._bus.receive_event(self.label, OAUTH_CODE_ACK, timeout=self.ack_timeout)
        except asyncio.TimeoutError:
            logger.debug('No acknowledgement within %.1fs, closing anyway', self.ack_timeout)

        try:
            await self._windows.close_window(self.label)
        except Exception as e:
            logger.debug('Failed to close auth window: %s', e)
        return True
