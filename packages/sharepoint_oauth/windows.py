"""Window host abstraction.

The coordinator talks to windows only through :class:`WindowHost`, so the
same state machine drives an embedded webview, the system browser, or a
test double.
"""

import asyncio
import logging
import typing as t
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAIN_WINDOW_LABEL = 'main'
AUTH_WINDOW_LABEL = 'oauth-auth'

NavigationHandler = t.Callable[[str, str], t.Awaitable[None]]


class WindowHost(ABC):
    """Opens, closes and observes application windows identified by label."""

    def __init__(self) -> None:
        self._navigation_handlers: t.List[NavigationHandler] = []

    @abstractmethod
    async def open_window(self, label: str, url: str, *, visible: bool = True, focus: bool = False) -> None:
        """Open a window navigated to ``url``.

        Raises:
            WindowCreationError: If the window cannot be created.
        """

    @abstractmethod
    async def close_window(self, label: str) -> None:
        """Close a window. Closing a window that is not open is a no-op."""

    @abstractmethod
    async def show(self, label: str) -> None:
        """Make a window visible without focusing it."""

    @abstractmethod
    async def set_focus(self, label: str) -> None:
        """Bring a window to the foreground."""

    @abstractmethod
    async def navigate(self, label: str, url: str) -> None:
        """Load ``url`` in a window."""

    @abstractmethod
    def is_open(self, label: str) -> bool:
        """Check whether a window is currently open."""

    @abstractmethod
    async def wait_closed(self, label: str) -> None:
        """Wait until the currently open window with this label is closed."""

    def add_navigation_handler(self, handler: NavigationHandler) -> t.Callable[[], None]:
        """Register ``handler(label, url)`` for page loads. Returns an unsubscribe callable."""
        self._navigation_handlers.append(handler)

        def _remove() -> None:
            if handler in self._navigation_handlers:
                self._navigation_handlers.remove(handler)

        return _remove

    async def dispatch_navigation(self, label: str, url: str) -> None:
        """Report that a window finished loading ``url``."""
        for handler in list(self._navigation_handlers):
            await handler(label, url)


@dataclass
class AuthWindowHandle:
    """The coordinator's exclusive handle on the authentication window."""

    host: WindowHost
    url: str
    label: str = AUTH_WINDOW_LABEL

    @property
    def is_open(self) -> bool:
        return self.host.is_open(self.label)

    async def close(self) -> None:
        if self.host.is_open(self.label):
            await self.host.close_window(self.label)


async def open_in_browser(url: str) -> None:
    """Open ``url`` in the system browser.

    Raises:
        RuntimeError: If no browser could be launched.
    """
    opened = await asyncio.to_thread(webbrowser.open, url)
    if not opened:
        raise RuntimeError('No web browser available')
    logger.info('Opened authorization page in the system browser')
