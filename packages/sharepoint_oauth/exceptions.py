"""OAuth exceptions."""

import enum
import typing as t


class ErrorKind(str, enum.Enum):
    """Classification of authentication failures."""

    CONFIGURATION_INCOMPLETE = 'configuration_incomplete'
    STATE_MISMATCH = 'state_mismatch'
    AUTHORIZATION_DENIED = 'authorization_denied'
    NETWORK_FAILURE = 'network_failure'
    TIMEOUT = 'timeout'
    INVALID_GRANT = 'invalid_grant'
    INVALID_CLIENT = 'invalid_client'
    MALFORMED_RESPONSE = 'malformed_response'
    TIMED_OUT = 'timed_out'
    WINDOW_CREATION_FAILED = 'window_creation_failed'
    CONFIG_FILE = 'config_file'
    UNKNOWN = 'unknown'


class OAuthError(Exception):
    """Base exception for OAuth errors.

    Attributes:
        kind: Classification of the failure.
        detail: Human readable detail, safe to show to the user.
    """

    default_kind: t.ClassVar[ErrorKind] = ErrorKind.UNKNOWN

    def __init__(self, detail: str = '', kind: t.Optional[ErrorKind] = None) -> None:
        self.kind = kind or self.default_kind
        self.detail = detail
        super().__init__(detail or self.kind.value)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(kind={self.kind.value!r}, detail={self.detail!r})'


class ConfigurationIncompleteError(OAuthError):
    """Tenant ID or client ID is missing."""

    default_kind = ErrorKind.CONFIGURATION_INCOMPLETE


class ConfigFileError(OAuthError):
    """Configuration file could not be found or parsed."""

    default_kind = ErrorKind.CONFIG_FILE


class OAuthStateError(OAuthError):
    """Callback state does not match the pending session."""

    default_kind = ErrorKind.STATE_MISMATCH


class AuthorizationDeniedError(OAuthError):
    """Identity provider redirected back with an ``error`` parameter."""

    default_kind = ErrorKind.AUTHORIZATION_DENIED

    def __init__(self, error: str, description: t.Optional[str] = None) -> None:
        self.error = error
        self.description = description
        detail = f'{error}: {description}' if description else error
        super().__init__(detail)


class OAuthTokenError(OAuthError):
    """Token endpoint request failed.

    The ``kind`` is one of INVALID_GRANT, INVALID_CLIENT, NETWORK_FAILURE,
    TIMEOUT, MALFORMED_RESPONSE or UNKNOWN.
    """

    def __init__(
        self,
        kind: ErrorKind,
        detail: str = '',
        status_code: t.Optional[int] = None,
        error: t.Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.error = error
        super().__init__(detail, kind=kind)


class AuthTimeoutError(OAuthError):
    """Completion was not detected within the polling budget."""

    default_kind = ErrorKind.TIMED_OUT


class WindowCreationError(OAuthError):
    """The authentication window could not be opened."""

    default_kind = ErrorKind.WINDOW_CREATION_FAILED
