import asyncio
import typing as t
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sharepoint_oauth import config as config_module
from sharepoint_oauth.bus import WindowEventBus
from sharepoint_oauth.config import CoordinatorSettings
from sharepoint_oauth.coordinator import AuthCoordinator
from sharepoint_oauth.exceptions import WindowCreationError
from sharepoint_oauth.models import AuthContext, TokenResponse
from sharepoint_oauth.stores.memory import MemoryCredentialStore
from sharepoint_oauth.windows import WindowHost

SITE_URL = 'https://contoso.sharepoint.com/sites/Transport'
REDIRECT_URI = 'http://localhost:1420'


class RecordingWindowHost(WindowHost):
    """Window host that records every call instead of drawing windows."""

    def __init__(self, fail_open: bool = False) -> None:
        super().__init__()
        self.fail_open = fail_open
        self.opened: t.List[t.Tuple[str, str, bool, bool]] = []
        self.closed: t.List[str] = []
        self.shown: t.List[str] = []
        self.focused: t.List[str] = []
        self.navigations: t.List[t.Tuple[str, str]] = []
        self._closed_events: t.Dict[str, asyncio.Event] = {}

    async def open_window(self, label: str, url: str, *, visible: bool = True, focus: bool = False) -> None:
        if self.fail_open:
            raise WindowCreationError('webview unavailable')
        self.opened.append((label, url, visible, focus))
        self._closed_events[label] = asyncio.Event()

    async def close_window(self, label: str) -> None:
        event = self._closed_events.pop(label, None)
        if event is not None:
            self.closed.append(label)
            event.set()

    async def show(self, label: str) -> None:
        self.shown.append(label)

    async def set_focus(self, label: str) -> None:
        self.focused.append(label)

    async def navigate(self, label: str, url: str) -> None:
        self.navigations.append((label, url))

    def is_open(self, label: str) -> bool:
        return label in self._closed_events

    async def wait_closed(self, label: str) -> None:
        event = self._closed_events.get(label)
        if event is not None:
            await event.wait()


def make_token_response(access_token: str = 'access-123') -> TokenResponse:
    return TokenResponse(access_token=access_token, refresh_token='refresh-123', expires_in=3600)


@pytest.fixture(autouse=True)
def user_config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    # Keep saved configuration out of the real per-user directory.
    directory = tmp_path / 'user-config'
    monkeypatch.setattr(config_module, 'user_config_dir', lambda app_name: str(directory))
    return directory


@pytest.fixture
def windows() -> RecordingWindowHost:
    return RecordingWindowHost()


@pytest.fixture
def bus() -> WindowEventBus:
    return WindowEventBus()


@pytest.fixture
def credential_store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def auth_context() -> AuthContext:
    return AuthContext(tenant_id='t1', client_id='c1', service_url=SITE_URL, redirect_uri=REDIRECT_URI)


@pytest.fixture
def token_client() -> MagicMock:
    client = MagicMock()
    client.exchange_code = AsyncMock(return_value=make_token_response())
    client.refresh_token = AsyncMock(return_value=make_token_response('refreshed-123'))
    return client


@pytest.fixture
def settings() -> CoordinatorSettings:
    # Polling is slow by default so it never races the channel under test.
    return CoordinatorSettings(
        poll_interval=10.0,
        max_poll_attempts=60,
        close_grace_delay=0.01,
        window_settle_delay=0.0,
        handoff_ack_timeout=0.05,
    )


@pytest_asyncio.fixture
async def make_coordinator(
    auth_context: AuthContext,
    credential_store: MemoryCredentialStore,
    windows: RecordingWindowHost,
    bus: WindowEventBus,
    token_client: MagicMock,
    settings: CoordinatorSettings,
) -> t.AsyncIterator[t.Callable[..., AuthCoordinator]]:
    created: t.List[AuthCoordinator] = []

    def _make(**overrides: t.Any) -> AuthCoordinator:
        kwargs: t.Dict[str, t.Any] = {
            'context': auth_context,
            'credential_store': credential_store,
            'windows': windows,
            'bus': bus,
            'token_client': token_client,
            'settings': settings,
        }
        kwargs.update(overrides)
        coordinator = AuthCoordinator(**kwargs)
        created.append(coordinator)
        return coordinator

    yield _make

    # Stop channel tasks of logins a test left pending.
    for coordinator in created:
        await coordinator.cancel()


@pytest.fixture
def coordinator(make_coordinator: t.Callable[..., AuthCoordinator]) -> AuthCoordinator:
    return make_coordinator()
