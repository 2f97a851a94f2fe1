"""Tests for authorization URL construction and callback parsing."""

from urllib.parse import parse_qs, urlparse

import pytest
from sharepoint_oauth.models import DEFAULT_SCOPE
from sharepoint_oauth.urls import build_authorization_url, parse_callback_url, strip_callback_params, token_endpoint


def _build(**overrides: str) -> str:
    params = {
        'tenant_id': 't1',
        'client_id': 'c1',
        'redirect_uri': 'http://localhost:1420',
        'scope': DEFAULT_SCOPE,
        'code_challenge': 'E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM',
        'method': 'S256',
        'state': 'state-abc',
        'nonce': 'nonce-xyz',
    }
    params.update(overrides)
    return build_authorization_url(**params)


def test_authorization_url_endpoint() -> None:
    parsed = urlparse(_build())

    assert parsed.scheme == 'https'
    assert parsed.netloc == 'login.microsoftonline.com'
    assert parsed.path == '/t1/oauth2/v2.0/authorize'


def test_authorization_url_round_trips_parameters() -> None:
    """Every input is recovered exactly by standard query decoding."""
    url = _build(state='a+b/c=d&e f', nonce='n%20?#')
    query = parse_qs(urlparse(url).query)

    assert query['client_id'] == ['c1']
    assert query['response_type'] == ['code']
    assert query['redirect_uri'] == ['http://localhost:1420']
    assert query['scope'] == [DEFAULT_SCOPE]
    assert query['code_challenge'] == ['E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM']
    assert query['code_challenge_method'] == ['S256']
    assert query['state'] == ['a+b/c=d&e f']
    assert query['nonce'] == ['n%20?#']


def test_authorization_url_encodes_values_individually() -> None:
    url = _build()

    assert 'redirect_uri=http%3A%2F%2Flocalhost%3A1420' in url
    assert 'scope=https%3A%2F%2Fgraph.microsoft.com%2FSites.ReadWrite.All%20offline_access' in url
    assert '%25' not in url


def test_authorization_url_is_deterministic() -> None:
    assert _build() == _build()


def test_token_endpoint_uses_authority() -> None:
    assert token_endpoint('t1') == 'https://login.microsoftonline.com/t1/oauth2/v2.0/token'
    assert token_endpoint('t1', 'https://login.example.com/') == 'https://login.example.com/t1/oauth2/v2.0/token'


@pytest.mark.parametrize(
    'url',
    [
        'http://localhost:1420/?code=abc&state=s1',
        'http://localhost:1420/auth.html#code=abc&state=s1',
    ],
)
def test_parse_callback_query_or_fragment(url: str) -> None:
    params = parse_callback_url(url)

    assert params.code == 'abc'
    assert params.state == 's1'
    assert params.is_success
    assert not params.is_error


def test_parse_callback_query_wins_over_fragment() -> None:
    params = parse_callback_url('http://localhost:1420/?code=query#code=fragment&state=s1')

    assert params.code == 'query'
    assert params.state == 's1'


def test_parse_callback_error() -> None:
    params = parse_callback_url('http://localhost:1420/?error=access_denied&error_description=User+declined')

    assert params.is_error
    assert params.error == 'access_denied'
    assert params.error_description == 'User declined'


def test_parse_callback_empty() -> None:
    assert parse_callback_url('http://localhost:1420/index.html').is_empty


def test_strip_callback_params() -> None:
    assert strip_callback_params('http://localhost:1420/auth.html?code=a&state=b#x') == 'http://localhost:1420/auth.html'
