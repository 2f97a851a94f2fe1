import typing as t
from enum import Enum

import httpx

from sharepoint_client.exceptions import BadRequestError, NetworkError, RequestException, UnauthorizedError

GRAPH_BASE_URL = 'https://graph.microsoft.com/v1.0'
DEFAULT_TIMEOUT = 30.0


class InvokeType(Enum):
    QUERY = 'query'
    PROCEDURE = 'procedure'


def _handle_response(response: httpx.Response) -> httpx.Response:
    if response.is_success:
        return response
    if response.status_code == 401:
        raise UnauthorizedError(response)
    if response.status_code in (400, 403, 404):
        raise BadRequestError(response)
    raise RequestException(response)


class AsyncClientBase:
    """Low-level Graph request plumbing shared by every client."""

    def __init__(
        self,
        base_url: t.Optional[str] = None,
        http_client: t.Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = (base_url or GRAPH_BASE_URL).rstrip('/')
        self._owns_http_client = http_client is None
        self.request = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def base_url(self) -> str:
        return self._base_url

    def update_base_url(self, base_url: str) -> None:
        self._base_url = base_url.rstrip('/')

    def build_url(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            return path
        return f'{self._base_url}/{path.lstrip("/")}'

    async def _invoke(self, invoke_type: InvokeType, **kwargs: t.Any) -> httpx.Response:
        url = self.build_url(kwargs.pop('url'))
        try:
            if invoke_type is InvokeType.QUERY:
                response = await self.request.get(url, **kwargs)
            else:
                response = await self.request.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(str(e)) from e

        return _handle_response(response)

    async def close(self) -> None:
        if self._owns_http_client:
            await self.request.aclose()

    async def __aenter__(self) -> 'AsyncClientBase':
        return self

    async def __aexit__(self, *args: t.Any) -> None:
        await self.close()
