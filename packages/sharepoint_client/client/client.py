import typing as t
from urllib.parse import urlsplit

from sharepoint_client.client.base import AsyncClientBase, InvokeType
from sharepoint_client.client.methods_mixin.oauth import AsyncOAuthSessionMixin


def site_path(site_url: str) -> str:
    """Graph resource path of a SharePoint site URL.

    ``https://contoso.sharepoint.com/sites/Transport`` becomes
    ``sites/contoso.sharepoint.com:/sites/Transport``.
    """
    parts = urlsplit(site_url)
    if not parts.hostname:
        raise ValueError(f'Not a site URL: {site_url!r}')
    path = parts.path.rstrip('/')
    return f'sites/{parts.hostname}:{path}' if path else f'sites/{parts.hostname}'


class AsyncClient(AsyncOAuthSessionMixin, AsyncClientBase):
    """Microsoft Graph client for a SharePoint site."""

    async def get(self, path: str, params: t.Optional[t.Dict[str, t.Any]] = None) -> t.Dict[str, t.Any]:
        response = await self._invoke(InvokeType.QUERY, url=path, params=params)
        return response.json()

    async def post(self, path: str, data: t.Dict[str, t.Any]) -> t.Dict[str, t.Any]:
        response = await self._invoke(InvokeType.PROCEDURE, url=path, json=data)
        return response.json() if response.content else {}

    async def get_site(self, site_url: str) -> t.Dict[str, t.Any]:
        """Get the Graph site resource (id, displayName, webUrl...)."""
        return await self.get(site_path(site_url))
