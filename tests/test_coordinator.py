"""Tests for the authentication coordinator state machine."""

import asyncio
import typing as t
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from conftest import REDIRECT_URI, SITE_URL, RecordingWindowHost, make_token_response
from sharepoint_oauth.bus import OAUTH_CODE_ACK, OAUTH_CODE_RECEIVED, OAUTH_SUCCESS, WindowEventBus
from sharepoint_oauth.callback import AuthWindowActor
from sharepoint_oauth.coordinator import AuthCoordinator
from sharepoint_oauth.exceptions import (
    AuthorizationDeniedError,
    AuthTimeoutError,
    ConfigurationIncompleteError,
    ErrorKind,
    OAuthStateError,
)
from sharepoint_oauth.models import AuthContext, AuthState, Channel, Credential, Fallback
from sharepoint_oauth.pkce import PKCEManager
from sharepoint_oauth.stores.memory import MemoryCredentialStore, MemoryStateStore
from sharepoint_oauth.token import TokenExchangeClient
from sharepoint_oauth.windows import AUTH_WINDOW_LABEL, MAIN_WINDOW_LABEL

Factory = t.Callable[..., AuthCoordinator]


def _callback(state: str, code: str = 'auth-code-1') -> str:
    return f'{REDIRECT_URI}/?code={code}&state={state}'


def _query(url: str) -> t.Dict[str, t.List[str]]:
    return parse_qs(urlparse(url).query)


@pytest.mark.asyncio
async def test_login_and_redirect_authenticates(
    coordinator: AuthCoordinator,
    windows: RecordingWindowHost,
    credential_store: MemoryCredentialStore,
    token_client: MagicMock,
) -> None:
    """A matching callback is exchanged once and the credential stored."""
    session = await coordinator.start_login()

    assert coordinator.state is AuthState.AWAITING_PROVIDER_REDIRECT
    label, url, visible, focus = windows.opened[0]
    assert label == AUTH_WINDOW_LABEL
    assert visible is True
    assert focus is False

    query = _query(url)
    assert query['client_id'] == ['c1']
    assert query['code_challenge_method'] == ['S256']
    assert query['state'] == [session.state]
    assert query['nonce'] == [session.nonce]

    outcome = await coordinator.handle_redirect(_callback(session.state))

    assert outcome is not None
    assert outcome.success
    assert outcome.channel is Channel.DIRECT
    assert coordinator.state is AuthState.AUTHENTICATED
    assert coordinator.session is None
    assert await credential_store.is_authenticated(SITE_URL)
    assert (await credential_store.load_credential(SITE_URL)).access_token == 'access-123'
    assert AUTH_WINDOW_LABEL in windows.closed

    token_client.exchange_code.assert_awaited_once()
    kwargs = token_client.exchange_code.await_args.kwargs
    assert kwargs['code'] == 'auth-code-1'
    assert kwargs['tenant_id'] == 't1'
    assert kwargs['redirect_uri'] == REDIRECT_URI


@pytest.mark.asyncio
async def test_exchange_uses_verifier_matching_sent_challenge(
    coordinator: AuthCoordinator, windows: RecordingWindowHost, token_client: MagicMock
) -> None:
    """The verifier sent to the token endpoint derives the challenge of the authorization request."""
    session = await coordinator.start_login()
    sent_challenge = _query(windows.opened[0][1])['code_challenge'][0]

    await coordinator.handle_redirect(_callback(session.state))

    verifier = token_client.exchange_code.await_args.kwargs['code_verifier']
    assert PKCEManager.generate_challenge(verifier) == sent_challenge


@pytest.mark.asyncio
async def test_state_mismatch_is_rejected(
    coordinator: AuthCoordinator, credential_store: MemoryCredentialStore, token_client: MagicMock
) -> None:
    """A callback with a different state fails without a token request."""
    await coordinator.start_login()

    outcome = await coordinator.handle_redirect(_callback('XYZ'))

    assert outcome.state is AuthState.FAILED
    assert isinstance(outcome.error, OAuthStateError)
    assert outcome.error.kind is ErrorKind.STATE_MISMATCH
    assert outcome.fallback is Fallback.MANUAL_CODE
    token_client.exchange_code.assert_not_awaited()
    assert await credential_store.load_credential(SITE_URL) is None


@pytest.mark.asyncio
async def test_callback_without_state_is_rejected(coordinator: AuthCoordinator, token_client: MagicMock) -> None:
    await coordinator.start_login()

    outcome = await coordinator.handle_redirect(f'{REDIRECT_URI}/?code=abc')

    assert outcome.state is AuthState.FAILED
    assert outcome.error.kind is ErrorKind.STATE_MISMATCH
    token_client.exchange_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_grant_offers_manual_code(
    make_coordinator: Factory, credential_store: MemoryCredentialStore
) -> None:
    """A rejected code fails the session with INVALID_GRANT and a manual fallback."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={'error': 'invalid_grant', 'error_description': 'AADSTS70008: expired'})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    coordinator = make_coordinator(token_client=TokenExchangeClient(http_client=http_client))
    session = await coordinator.start_login()

    outcome = await coordinator.handle_redirect(_callback(session.state))
    await http_client.aclose()

    assert outcome.state is AuthState.FAILED
    assert outcome.error.kind is ErrorKind.INVALID_GRANT
    assert outcome.fallback is Fallback.MANUAL_CODE
    assert coordinator.state is AuthState.FAILED
    assert await credential_store.load_credential(SITE_URL) is None


@pytest.mark.asyncio
async def test_polling_budget_exhausted_times_out(
    make_coordinator: Factory, settings: t.Any, windows: RecordingWindowHost
) -> None:
    """Polling without any completion ends in TIMED_OUT and closes the auth window."""
    coordinator = make_coordinator(settings=settings.model_copy(update={'poll_interval': 0.01, 'max_poll_attempts': 3}))
    await coordinator.start_login()

    outcome = await coordinator.wait(timeout=2)

    assert outcome.state is AuthState.TIMED_OUT
    assert isinstance(outcome.error, AuthTimeoutError)
    assert outcome.fallback is Fallback.MANUAL_CODE
    assert outcome.channel is Channel.POLLING
    assert AUTH_WINDOW_LABEL in windows.closed


@pytest.mark.asyncio
async def test_missing_tenant_fails_before_opening_window(
    make_coordinator: Factory, auth_context: AuthContext, windows: RecordingWindowHost, token_client: MagicMock
) -> None:
    """An empty tenant ID fails immediately without a window or network call."""
    auth_context.tenant_id = ''
    coordinator = make_coordinator(context=auth_context)

    with pytest.raises(ConfigurationIncompleteError):
        await coordinator.start_login()

    assert coordinator.state is AuthState.FAILED
    assert windows.opened == []
    token_client.exchange_code.assert_not_awaited()
    assert (await coordinator.wait()).error.kind is ErrorKind.CONFIGURATION_INCOMPLETE


@pytest.mark.asyncio
async def test_concurrent_direct_redirects_exchange_once(coordinator: AuthCoordinator, token_client: MagicMock) -> None:
    async def slow_exchange(**kwargs: t.Any) -> t.Any:
        await asyncio.sleep(0.02)
        return make_token_response()

    token_client.exchange_code.side_effect = slow_exchange
    session = await coordinator.start_login()

    results = await asyncio.gather(
        coordinator.handle_redirect(_callback(session.state)),
        coordinator.handle_redirect(_callback(session.state)),
    )

    assert [r is None for r in results].count(True) == 1
    token_client.exchange_code.assert_awaited_once()
    assert coordinator.state is AuthState.AUTHENTICATED


@pytest.mark.asyncio
async def test_direct_and_window_message_exchange_once(
    coordinator: AuthCoordinator, bus: WindowEventBus, token_client: MagicMock
) -> None:
    """The same code arriving over the bus and by interception is exchanged once."""
    session = await coordinator.start_login()
    payload = {'code': 'auth-code-1', 'state': session.state, 'error': None, 'error_description': None}

    await bus.send(MAIN_WINDOW_LABEL, OAUTH_CODE_RECEIVED, payload, source=AUTH_WINDOW_LABEL)
    direct = await coordinator.handle_redirect(_callback(session.state))
    outcome = await coordinator.wait(timeout=1)

    assert outcome.success
    token_client.exchange_code.assert_awaited_once()
    assert direct is None or direct.channel is Channel.DIRECT


@pytest.mark.asyncio
async def test_polling_then_late_redirect_does_not_exchange(
    make_coordinator: Factory, settings: t.Any, credential_store: MemoryCredentialStore, token_client: MagicMock
) -> None:
    """Once polling saw the credential, a late callback is ignored."""
    coordinator = make_coordinator(settings=settings.model_copy(update={'poll_interval': 0.01}))
    session = await coordinator.start_login()

    await credential_store.save_credential(Credential(service_url=SITE_URL, access_token='from-other-window'))
    outcome = await coordinator.wait(timeout=1)
    late = await coordinator.handle_redirect(_callback(session.state))

    assert outcome.success
    assert outcome.channel is Channel.POLLING
    assert outcome.credential.access_token == 'from-other-window'
    assert late is None
    token_client.exchange_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_new_login_supersedes_pending_one(
    coordinator: AuthCoordinator, windows: RecordingWindowHost, token_client: MagicMock
) -> None:
    """A callback for the first session is rejected once a second login started."""
    first = await coordinator.start_login()
    first_waiter = asyncio.ensure_future(coordinator.wait(timeout=1))
    await asyncio.sleep(0)

    second = await coordinator.start_login()

    assert second.state != first.state
    assert second.code_verifier != first.code_verifier
    assert (await first_waiter).state is AuthState.IDLE
    assert windows.closed == [AUTH_WINDOW_LABEL]
    assert len(windows.opened) == 2

    outcome = await coordinator.handle_redirect(_callback(first.state))

    assert outcome.state is AuthState.FAILED
    assert outcome.error.kind is ErrorKind.STATE_MISMATCH
    token_client.exchange_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_callback_for_session_missing_from_state_store_is_rejected(
    make_coordinator: Factory, token_client: MagicMock
) -> None:
    """A matching state is not enough: the pending entry must still be in the store."""
    state_store = MemoryStateStore()
    coordinator = make_coordinator(state_store=state_store)
    session = await coordinator.start_login()
    assert await state_store.get_state(session.state) is session

    await state_store.delete_state(session.state)
    outcome = await coordinator.handle_redirect(_callback(session.state))

    assert outcome.state is AuthState.FAILED
    assert isinstance(outcome.error, OAuthStateError)
    assert outcome.fallback is Fallback.MANUAL_CODE
    token_client.exchange_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_expired_pending_state_is_not_exchanged(make_coordinator: Factory, token_client: MagicMock) -> None:
    state_store = MemoryStateStore(state_ttl_seconds=60)
    coordinator = make_coordinator(state_store=state_store)
    session = await coordinator.start_login()
    session.created_at -= timedelta(seconds=61)

    outcome = await coordinator.handle_redirect(_callback(session.state))

    assert outcome.state is AuthState.FAILED
    assert outcome.error.kind is ErrorKind.STATE_MISMATCH
    token_client.exchange_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_exchange_consumes_pending_state(make_coordinator: Factory) -> None:
    state_store = MemoryStateStore()
    coordinator = make_coordinator(state_store=state_store)
    session = await coordinator.start_login()

    outcome = await coordinator.handle_redirect(_callback(session.state))

    assert outcome.success
    assert await state_store.get_state(session.state) is None


@pytest.mark.asyncio
async def test_retry_after_failure_uses_fresh_session(coordinator: AuthCoordinator) -> None:
    first = await coordinator.start_login()
    await coordinator.handle_redirect(_callback('XYZ'))
    assert coordinator.state is AuthState.FAILED

    second = await coordinator.start_login()

    assert coordinator.state is AuthState.AWAITING_PROVIDER_REDIRECT
    assert second.state != first.state
    assert second.code_verifier != first.code_verifier


@pytest.mark.asyncio
async def test_provider_error_is_authorization_denied(coordinator: AuthCoordinator, token_client: MagicMock) -> None:
    await coordinator.start_login()

    outcome = await coordinator.handle_redirect(
        f'{REDIRECT_URI}/?error=access_denied&error_description=User+cancelled'
    )

    assert outcome.state is AuthState.FAILED
    assert isinstance(outcome.error, AuthorizationDeniedError)
    assert outcome.error.error == 'access_denied'
    assert outcome.error.description == 'User cancelled'
    token_client.exchange_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_closed_window_without_login_returns_to_idle(
    coordinator: AuthCoordinator, windows: RecordingWindowHost
) -> None:
    await coordinator.start_login()

    await windows.close_window(AUTH_WINDOW_LABEL)
    outcome = await coordinator.wait(timeout=1)

    assert outcome.state is AuthState.IDLE
    assert outcome.channel is Channel.WINDOW_CLOSED
    assert coordinator.state is AuthState.IDLE


@pytest.mark.asyncio
async def test_closed_window_rechecks_authentication(
    coordinator: AuthCoordinator, windows: RecordingWindowHost, credential_store: MemoryCredentialStore
) -> None:
    """Login completed elsewhere just as the window closed is still detected."""
    await coordinator.start_login()

    await windows.close_window(AUTH_WINDOW_LABEL)
    await credential_store.save_credential(Credential(service_url=SITE_URL, access_token='late-token'))
    outcome = await coordinator.wait(timeout=1)

    assert outcome.success
    assert outcome.channel is Channel.WINDOW_CLOSED


@pytest.mark.asyncio
async def test_main_window_kept_visible_and_focused(coordinator: AuthCoordinator, windows: RecordingWindowHost) -> None:
    await coordinator.start_login()
    await asyncio.sleep(0.01)

    assert MAIN_WINDOW_LABEL in windows.shown
    assert AUTH_WINDOW_LABEL in windows.shown
    assert windows.focused == [MAIN_WINDOW_LABEL]


@pytest.mark.asyncio
async def test_focus_failure_does_not_abort_login(coordinator: AuthCoordinator, windows: RecordingWindowHost) -> None:
    windows.set_focus = AsyncMock(side_effect=RuntimeError('no focus'))  # type: ignore[method-assign]
    session = await coordinator.start_login()
    await asyncio.sleep(0.01)

    outcome = await coordinator.handle_redirect(_callback(session.state))

    assert outcome.success


@pytest.mark.asyncio
async def test_window_creation_failure_offers_external_browser(
    make_coordinator: Factory, credential_store: MemoryCredentialStore
) -> None:
    opener = AsyncMock()
    coordinator = make_coordinator(windows=RecordingWindowHost(fail_open=True), browser_opener=opener)

    await coordinator.start_login()
    outcome = await coordinator.wait()

    assert outcome.state is AuthState.FAILED
    assert outcome.error.kind is ErrorKind.WINDOW_CREATION_FAILED
    assert outcome.fallback is Fallback.EXTERNAL_BROWSER

    await coordinator.start_external_login()
    opener.assert_awaited_once_with(coordinator.authorization_url)

    outcome = await coordinator.submit_manual_code('pasted-code')

    assert outcome.success
    assert outcome.channel is Channel.MANUAL
    assert await credential_store.is_authenticated(SITE_URL)


@pytest.mark.asyncio
async def test_manual_redirect_url_is_state_checked(coordinator: AuthCoordinator, token_client: MagicMock) -> None:
    session = await coordinator.start_login()

    outcome = await coordinator.submit_manual_code(f'code=pasted&state={session.state}')
    assert outcome.success
    assert token_client.exchange_code.await_args.kwargs['code'] == 'pasted'

    await coordinator.start_login()
    outcome = await coordinator.submit_manual_code(f'{REDIRECT_URI}/?code=pasted&state=other')
    assert outcome.error.kind is ErrorKind.STATE_MISMATCH


@pytest.mark.asyncio
async def test_cancel_discards_pending_session(coordinator: AuthCoordinator, token_client: MagicMock) -> None:
    session = await coordinator.start_login()

    await coordinator.cancel()
    late = await coordinator.handle_redirect(_callback(session.state))

    assert coordinator.state is AuthState.IDLE
    assert late is None
    token_client.exchange_code.assert_not_awaited()


@pytest.mark.asyncio
async def test_observers_notified_and_failures_swallowed(coordinator: AuthCoordinator, bus: WindowEventBus) -> None:
    seen = []
    coordinator.add_observer(MagicMock(side_effect=RuntimeError('broken observer')))
    coordinator.add_observer(seen.append)
    bus.mailbox('records')

    session = await coordinator.start_login()
    await coordinator.handle_redirect(_callback(session.state))

    assert [o.state for o in seen] == [AuthState.AUTHENTICATED]
    message = await bus.receive('records', timeout=1)
    assert message.event == OAUTH_SUCCESS
    assert message.payload == {'service_url': SITE_URL}


@pytest.mark.asyncio
async def test_auth_window_handoff(
    coordinator: AuthCoordinator, bus: WindowEventBus, windows: RecordingWindowHost, token_client: MagicMock
) -> None:
    """The auth window forwards the code, the main window acknowledges and exchanges it."""
    actor = AuthWindowActor(bus, windows, ack_timeout=1.0)
    session = await coordinator.start_login()

    handed_off = await actor.on_page_load(_callback(session.state))
    outcome = await coordinator.wait(timeout=1)

    assert handed_off is True
    assert outcome.success
    assert outcome.channel is Channel.WINDOW_MESSAGE
    assert not windows.is_open(AUTH_WINDOW_LABEL)
    token_client.exchange_code.assert_awaited_once()


@pytest.mark.asyncio
async def test_ack_sent_to_auth_window(coordinator: AuthCoordinator, bus: WindowEventBus) -> None:
    session = await coordinator.start_login()
    payload = {'code': 'auth-code-1', 'state': session.state}

    await bus.send(MAIN_WINDOW_LABEL, OAUTH_CODE_RECEIVED, payload, source=AUTH_WINDOW_LABEL)
    ack = await bus.receive_event(AUTH_WINDOW_LABEL, OAUTH_CODE_ACK, timeout=1)

    assert ack.source == MAIN_WINDOW_LABEL
    assert (await coordinator.wait(timeout=1)).success
