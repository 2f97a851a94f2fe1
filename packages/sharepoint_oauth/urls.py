"""Authorization URL construction and callback parsing."""

import typing as t
from urllib.parse import parse_qs, quote, urlparse

from sharepoint_oauth.models import DEFAULT_AUTHORITY, CallbackParams


def _encode(value: str) -> str:
    return quote(value, safe='')


def authorize_endpoint(tenant_id: str, authority: str = DEFAULT_AUTHORITY) -> str:
    return f'{authority.rstrip("/")}/{_encode(tenant_id)}/oauth2/v2.0/authorize'


def token_endpoint(tenant_id: str, authority: str = DEFAULT_AUTHORITY) -> str:
    return f'{authority.rstrip("/")}/{_encode(tenant_id)}/oauth2/v2.0/token'


def build_authorization_url(
    tenant_id: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str,
    method: str,
    state: str,
    nonce: str,
    authority: str = DEFAULT_AUTHORITY,
) -> str:
    """Compose the ``/authorize`` URL for the authorization code flow.

    Each value is percent-encoded on its own before the query string is
    joined, so characters that are already safe are never encoded twice.

    Args:
        tenant_id: Azure AD tenant.
        client_id: Application (client) ID.
        redirect_uri: Registered redirect URI.
        scope: Space separated scopes.
        code_challenge: PKCE challenge.
        method: PKCE challenge method.
        state: Anti-CSRF correlator.
        nonce: Replay protection value.
        authority: Identity provider base URL.

    Returns:
        Authorization URL.
    """
    params = [
        ('client_id', client_id),
        ('response_type', 'code'),
        ('redirect_uri', redirect_uri),
        ('response_mode', 'query'),
        ('scope', scope),
        ('code_challenge', code_challenge),
        ('code_challenge_method', method),
        ('state', state),
        ('nonce', nonce),
    ]
    query = '&'.join(f'{name}={_encode(value)}' for name, value in params)
    return f'{authorize_endpoint(tenant_id, authority)}?{query}'


def _first(values: t.Dict[str, t.List[str]], name: str) -> t.Optional[str]:
    found = values.get(name)
    return found[0] if found else None


def parse_callback_url(url: str) -> CallbackParams:
    """Extract ``code``/``state``/``error`` from a redirect URL.

    The provider may put the parameters in the query string or in the
    fragment; the query string wins when both carry a value.

    Args:
        url: Full URL the window was navigated to.

    Returns:
        Parsed callback parameters (all None when nothing is present).
    """
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    fragment = parse_qs(parsed.fragment)

    def lookup(name: str) -> t.Optional[str]:
        return _first(query, name) or _first(fragment, name)

    return CallbackParams(
        code=lookup('code'),
        state=lookup('state'),
        error=lookup('error'),
        error_description=lookup('error_description'),
    )


def strip_callback_params(url: str) -> str:
    """Return ``url`` without its query string and fragment."""
    parsed = urlparse(url)
    return parsed._replace(query='', fragment='').geturl()
