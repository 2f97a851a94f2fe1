"""Command line entry point.

Examples:
  python -m sharepoint_client login             Sign in through the system browser
  python -m sharepoint_client login --manual    Sign in by pasting the code
  python -m sharepoint_client status --verify   Check the stored token against Graph
  python -m sharepoint_client logout            Forget the stored token
"""

import argparse
import asyncio
import logging
import sys
import typing as t

from rich.logging import RichHandler

from sharepoint_client.api import SharePointDataApi
from sharepoint_client.bootstrap import SessionBootstrap
from sharepoint_client.exceptions import SharePointClientError
from sharepoint_oauth.bus import WindowEventBus
from sharepoint_oauth.callback import AuthWindowActor
from sharepoint_oauth.config import CoordinatorSettings, default_credentials_path
from sharepoint_oauth.coordinator import AuthCoordinator
from sharepoint_oauth.exceptions import OAuthError
from sharepoint_oauth.loopback import BrowserWindowHost, RedirectListener
from sharepoint_oauth.models import AuthOutcome, AuthState, Fallback
from sharepoint_oauth.stores.file import FileCredentialStore

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'INFO') -> None:
    """Route log records through Rich."""
    logging.basicConfig(
        level=level,
        format='%(message)s',
        datefmt='[%X]',
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # httpx logs every request at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)


def _build_api(args: argparse.Namespace) -> SharePointDataApi:
    store = FileCredentialStore(args.credentials or default_credentials_path())
    return SharePointDataApi(store, config_paths=[args.config] if args.config else None)


def _report(outcome: AuthOutcome) -> int:
    if outcome.success:
        print('Signed in.')
        return 0
    if outcome.state is AuthState.IDLE:
        print('Sign-in cancelled.')
        return 1

    print(f'Sign-in failed: {outcome.error}', file=sys.stderr)
    if outcome.fallback is Fallback.MANUAL_CODE:
        print('Retry with "login --manual" and paste the code from the redirect URL.', file=sys.stderr)
    elif outcome.fallback is Fallback.EXTERNAL_BROWSER:
        print('Open the printed URL in a browser and retry with "login --manual".', file=sys.stderr)
    return 1


async def _login(args: argparse.Namespace) -> int:
    api = _build_api(args)
    await api.init_from_config()
    if await api.check_authentication():
        if not args.force:
            print(f'Already signed in to {api.site_url}. Use --force to sign in again.')
            return 0
        # Polling would report the old credential as a completed login.
        await api.logout()

    windows = BrowserWindowHost()
    bus = WindowEventBus()
    settings = CoordinatorSettings(max_poll_attempts=args.timeout // 2 or 1)
    coordinator = AuthCoordinator(api.auth_context(), api.credentials, windows, bus, settings=settings)
    actor = AuthWindowActor(bus, windows, ack_timeout=settings.handoff_ack_timeout)
    bootstrap = SessionBootstrap(windows, api, coordinator, actor)
    detach = bootstrap.attach()

    try:
        if args.manual:
            await coordinator.start_external_login()
            print(f'Open this URL if the browser did not start:\n{coordinator.authorization_url}\n')
            code = await asyncio.to_thread(input, 'Paste the code or the full redirect URL: ')
            outcome = await coordinator.submit_manual_code(code) or coordinator.last_outcome
            if outcome is None:
                await coordinator.cancel()
                print('No code entered.', file=sys.stderr)
                return 1
            return _report(outcome)

        async with RedirectListener(windows, coordinator.context.redirect_uri):
            await coordinator.start_login()
            if coordinator.authorization_url:
                print(f'Waiting for sign-in. If no browser opened, visit:\n{coordinator.authorization_url}\n')
            return _report(await coordinator.wait())
    finally:
        detach()


async def _status(args: argparse.Namespace) -> int:
    api = _build_api(args)
    await api.init_from_config()

    if not await api.ensure_valid_token():
        print(f'Not signed in to {api.site_url}.')
        return 1
    print(f'Signed in to {api.site_url}.')

    if args.verify:
        client = await api.get_client()
        async with client:
            site = await client.get_site(api.site_url)
        print(f'Site: {site.get("displayName")} ({site.get("id")})')
    return 0


async def _logout(args: argparse.Namespace) -> int:
    api = _build_api(args)
    await api.init_from_config()
    if await api.logout():
        print(f'Signed out of {api.site_url}.')
    else:
        print(f'No stored sign-in for {api.site_url}.')
    return 0


_COMMANDS: t.Dict[str, t.Callable[[argparse.Namespace], t.Awaitable[int]]] = {
    'login': _login,
    'status': _status,
    'logout': _logout,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sharepoint_client',
        description='Sign in to the SharePoint site of the transport application',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--config', help='Path to config.json (default: search the usual locations)')
    parser.add_argument('--credentials', help='Path of the credential store file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    login = subparsers.add_parser('login', help='Sign in')
    login.add_argument('--manual', action='store_true', help='Paste the authorization code instead of waiting')
    login.add_argument('--timeout', type=int, default=120, help='Seconds to wait for the redirect (default: 120)')
    login.add_argument('--force', action='store_true', help='Sign in again even if a token is stored')

    status = subparsers.add_parser('status', help='Show whether the configured site is signed in')
    status.add_argument('--verify', action='store_true', help='Call Graph with the stored token')

    subparsers.add_parser('logout', help='Forget the stored token')
    return parser


def main(argv: t.Optional[t.Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging('DEBUG' if args.verbose else 'INFO')

    try:
        return asyncio.run(_COMMANDS[args.command](args))
    except (OAuthError, SharePointClientError) as e:
        logger.error('%s', e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == '__main__':
    sys.exit(main())
