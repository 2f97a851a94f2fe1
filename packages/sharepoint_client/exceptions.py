import typing as t

if t.TYPE_CHECKING:
    import httpx


class SharePointClientError(Exception):
    pass


class NetworkError(SharePointClientError):
    pass


class RequestException(SharePointClientError):
    def __init__(self, response: 'httpx.Response') -> None:
        self.response = response
        super().__init__(f'HTTP {response.status_code} for {response.request.method} {response.request.url}')


class BadRequestError(RequestException):
    pass


class UnauthorizedError(RequestException):
    pass


class NotAuthenticatedError(SharePointClientError):
    """No usable credential is available for the site."""
