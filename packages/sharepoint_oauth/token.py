"""Token endpoint client."""

import logging
import typing as t

import httpx

from sharepoint_oauth.exceptions import ErrorKind, OAuthTokenError
from sharepoint_oauth.models import DEFAULT_AUTHORITY, TokenResponse
from sharepoint_oauth.urls import token_endpoint

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

_ERROR_KINDS = {
    'invalid_grant': ErrorKind.INVALID_GRANT,
    'invalid_client': ErrorKind.INVALID_CLIENT,
    'unauthorized_client': ErrorKind.INVALID_CLIENT,
}


class TokenExchangeClient:
    """Exchanges authorization codes and refresh tokens at the token endpoint.

    Requests are never retried: an authorization code is single-use, so a
    second submission would fail anyway. Persisting the returned token is
    the caller's job.
    """

    def __init__(
        self,
        http_client: t.Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        authority: str = DEFAULT_AUTHORITY,
    ) -> None:
        """Initialize the client.

        Args:
            http_client: Shared HTTP client. A short-lived one is created per
                request when omitted.
            timeout: Request timeout in seconds.
            authority: Identity provider base URL.
        """
        self._http_client = http_client
        self._timeout = timeout
        self._authority = authority

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        tenant_id: str,
        client_id: str,
        client_secret: t.Optional[str],
        scope: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """Exchange an authorization code for an access token.

        Args:
            code: Authorization code from the callback.
            code_verifier: PKCE verifier of the session that requested the code.
            tenant_id: Azure AD tenant.
            client_id: Application (client) ID.
            client_secret: Client secret; omitted from the request when empty.
            scope: Space separated scopes.
            redirect_uri: Redirect URI used in the authorization request.

        Returns:
            Validated token response.

        Raises:
            OAuthTokenError: If the request fails or the response is unusable.
        """
        data = {
            'client_id': client_id,
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': redirect_uri,
            'code_verifier': code_verifier,
            'scope': scope,
        }
        if client_secret:
            data['client_secret'] = client_secret

        logger.info('Exchanging authorization code %s... for tenant %s', code[:8], tenant_id)
        return await self._request_token(tenant_id, data)

    async def refresh_token(
        self,
        refresh_token: str,
        tenant_id: str,
        client_id: str,
        client_secret: t.Optional[str],
        scope: str,
    ) -> TokenResponse:
        """Obtain a new access token from a refresh token.

        Raises:
            OAuthTokenError: If the request fails or the response is unusable.
        """
        data = {
            'client_id': client_id,
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'scope': scope,
        }
        if client_secret:
            data['client_secret'] = client_secret

        logger.info('Refreshing access token for tenant %s', tenant_id)
        return await self._request_token(tenant_id, data)

    async def _request_token(self, tenant_id: str, data: t.Dict[str, str]) -> TokenResponse:
        url = token_endpoint(tenant_id, self._authority)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, data=data, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, data=data)
        except httpx.TimeoutException as e:
            raise OAuthTokenError(ErrorKind.TIMEOUT, f'Token request timed out: {e}') from e
        except httpx.HTTPError as e:
            raise OAuthTokenError(ErrorKind.NETWORK_FAILURE, f'Token request failed: {e}') from e

        logger.debug('Token endpoint answered %s', response.status_code)
        if not response.is_success:
            raise self._classify_error(response)

        return self._parse_token_response(response)

    @staticmethod
    def _get_error_body(response: httpx.Response) -> t.Optional[t.Dict[str, t.Any]]:
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @classmethod
    def _classify_error(cls, response: httpx.Response) -> OAuthTokenError:
        body = cls._get_error_body(response)
        error = body.get('error') if body else None
        description = body.get('error_description') if body else None

        kind = _ERROR_KINDS.get(error or '', ErrorKind.UNKNOWN)
        detail = description or error or response.text[:500] or f'HTTP {response.status_code}'
        logger.warning('Token request rejected: status=%s error=%s', response.status_code, error)
        return OAuthTokenError(kind, detail, status_code=response.status_code, error=error)

    @classmethod
    def _parse_token_response(cls, response: httpx.Response) -> TokenResponse:
        body = cls._get_error_body(response)
        if body is None:
            raise OAuthTokenError(
                ErrorKind.MALFORMED_RESPONSE, 'Token response is not a JSON object', status_code=response.status_code
            )

        access_token = body.get('access_token')
        if not isinstance(access_token, str) or not access_token:
            raise OAuthTokenError(
                ErrorKind.MALFORMED_RESPONSE,
                'Token response has no access_token',
                status_code=response.status_code,
            )

        expires_in = body.get('expires_in')
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None

        return TokenResponse(
            access_token=access_token,
            token_type=body.get('token_type') or 'Bearer',
            refresh_token=body.get('refresh_token'),
            expires_in=expires_in,
            scope=body.get('scope'),
        )
