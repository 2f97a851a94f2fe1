"""Loopback redirect listener and system-browser window host.

Without an embedded webview the identity provider redirects the system
browser to ``http://localhost:<port>``. :class:`RedirectListener` accepts
that request and reports it as a page load of the window that owns the
flow, so the rest of the application handles it exactly like a webview
navigation.
"""

import asyncio
import logging
import typing as t
from urllib.parse import urlsplit

from aiohttp import web

from sharepoint_oauth.exceptions import WindowCreationError
from sharepoint_oauth.models import DEFAULT_REDIRECT_URI
from sharepoint_oauth.urls import parse_callback_url
from sharepoint_oauth.windows import AUTH_WINDOW_LABEL, MAIN_WINDOW_LABEL, WindowHost, open_in_browser

logger = logging.getLogger(__name__)

_RESPONSE_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body><h3>{title}</h3><p>You can close this window and return to the application.</p></body>
</html>
"""


class BrowserWindowHost(WindowHost):
    """Window host backed by the system browser.

    Opening a window opens a browser tab; the host cannot observe the tab,
    so a window counts as open until the application closes it.
    """

    def __init__(self, opener: t.Optional[t.Callable[[str], t.Awaitable[None]]] = None) -> None:
        super().__init__()
        self._opener = opener or open_in_browser
        self._closed: t.Dict[str, asyncio.Event] = {}
        self.locations: t.Dict[str, str] = {}

    async def open_window(self, label: str, url: str, *, visible: bool = True, focus: bool = False) -> None:
        try:
            await self._opener(url)
        except Exception as e:
            raise WindowCreationError(f'Cannot open {label}: {e}') from e
        self._closed[label] = asyncio.Event()
        self.locations[label] = url

    async def close_window(self, label: str) -> None:
        event = self._closed.pop(label, None)
        self.locations.pop(label, None)
        if event is not None:
            event.set()

    async def show(self, label: str) -> None:
        pass

    async def set_focus(self, label: str) -> None:
        pass

    async def navigate(self, label: str, url: str) -> None:
        self.locations[label] = url

    def is_open(self, label: str) -> bool:
        return label in self._closed

    async def wait_closed(self, label: str) -> None:
        event = self._closed.get(label)
        if event is not None:
            await event.wait()


class RedirectListener:
    """HTTP server receiving the provider redirect on the loopback interface."""

    def __init__(self, windows: WindowHost, redirect_uri: str = DEFAULT_REDIRECT_URI) -> None:
        """Initialize the listener.

        Args:
            windows: Host whose navigation handlers receive the callback URL.
            redirect_uri: Registered redirect URI; its host and port are bound.
        """
        parts = urlsplit(redirect_uri)
        self.redirect_uri = redirect_uri
        self.host = parts.hostname or 'localhost'
        self.port = parts.port or 80
        self._windows = windows
        self._runner: t.Optional[web.AppRunner] = None

        self.app = web.Application()
        self.app.router.add_get('/{tail:.*}', self._handle_callback)

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info('Redirect listener on %s:%d', self.host, self.port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.info('Redirect listener stopped')

    async def __aenter__(self) -> 'RedirectListener':
        await self.start()
        return self

    async def __aexit__(self, *args: t.Any) -> None:
        await self.stop()

    def _callback_url(self, request: web.Request) -> str:
        return f'{self.redirect_uri.rstrip("/")}{request.path_qs}'

    async def _handle_callback(self, request: web.Request) -> web.Response:
        url = self._callback_url(request)
        params = parse_callback_url(url)
        if params.is_empty:
            return web.Response(status=404, text='Not found')

        label = AUTH_WINDOW_LABEL if self._windows.is_open(AUTH_WINDOW_LABEL) else MAIN_WINDOW_LABEL
        logger.info('Redirect received, routing to %s window', label)
        await self._windows.dispatch_navigation(label, url)

        title = 'Sign-in failed' if params.is_error else 'Sign-in complete'
        return web.Response(text=_RESPONSE_PAGE.format(title=title), content_type='text/html')
