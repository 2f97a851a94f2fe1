"""OAuth data models."""

import enum
import typing as t
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

if t.TYPE_CHECKING:
    from sharepoint_oauth.config import AppConfig
    from sharepoint_oauth.exceptions import OAuthError

DEFAULT_AUTHORITY = 'https://login.microsoftonline.com'
DEFAULT_REDIRECT_URI = 'http://localhost:1420'
DEFAULT_SCOPE = 'https://graph.microsoft.com/Sites.ReadWrite.All offline_access'

# Issuer expiry is shortened by this margin when a credential is stored.
EXPIRY_MARGIN_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthState(str, enum.Enum):
    """States of the authentication coordinator."""

    IDLE = 'idle'
    AWAITING_PROVIDER_REDIRECT = 'awaiting_provider_redirect'
    EXCHANGING_CODE = 'exchanging_code'
    AUTHENTICATED = 'authenticated'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'

    @property
    def is_terminal(self) -> bool:
        return self in (AuthState.AUTHENTICATED, AuthState.FAILED, AuthState.TIMED_OUT)


class Fallback(str, enum.Enum):
    """Retry affordance offered to the user after a failed session."""

    MANUAL_CODE = 'manual_code'
    EXTERNAL_BROWSER = 'external_browser'


class Channel(str, enum.Enum):
    """Completion-detection channels that may claim a pending session."""

    DIRECT = 'direct'
    WINDOW_MESSAGE = 'window_message'
    POLLING = 'polling'
    MANUAL = 'manual'
    WINDOW_CLOSED = 'window_closed'


@dataclass
class AuthContext:
    """Configuration consumed by the authentication coordinator."""

    tenant_id: str
    client_id: str
    service_url: str
    client_secret: t.Optional[str] = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scope: str = DEFAULT_SCOPE
    authority: str = DEFAULT_AUTHORITY

    @property
    def is_complete(self) -> bool:
        return bool(self.tenant_id and self.client_id)

    @property
    def issuer(self) -> str:
        return f'{self.authority.rstrip("/")}/{self.tenant_id}'

    @classmethod
    def from_config(cls, config: 'AppConfig', **overrides: t.Any) -> 'AuthContext':
        """Build a context from a loaded configuration file.

        Args:
            config: Parsed application configuration.
            **overrides: Field values taking precedence over the file.

        Returns:
            Authentication context.
        """
        section = config.sharepoint
        values: t.Dict[str, t.Any] = {
            'tenant_id': section.tenant_id or '',
            'client_id': section.client_id or '',
            'client_secret': section.client_secret or None,
            'service_url': section.site_url,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class AuthSession:
    """Pending login attempt.

    Holds the PKCE verifier and anti-CSRF state between the authorization
    request and the callback. A session may be claimed exactly once; the
    claim decides which completion channel drives it forward.
    """

    state: str
    nonce: str
    code_verifier: str
    code_challenge: str
    tenant_id: str
    client_id: str
    redirect_uri: str
    scope: str
    client_secret: t.Optional[str] = None
    code_challenge_method: str = 'S256'
    created_at: datetime = field(default_factory=_utcnow)
    claimed_by: t.Optional[Channel] = field(default=None, repr=False)

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None

    def claim(self, channel: Channel) -> bool:
        """Take ownership of driving this session forward.

        Args:
            channel: Channel attempting the claim.

        Returns:
            True for the first caller, False for every later one.
        """
        if self.claimed_by is not None:
            return False
        self.claimed_by = channel
        return True


@dataclass
class Credential:
    """Access token stored for a service URL. Always replaced wholesale."""

    service_url: str
    access_token: str
    refresh_token: t.Optional[str] = None
    token_type: str = 'Bearer'
    expires_at: t.Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= _utcnow()

    @property
    def is_usable(self) -> bool:
        return bool(self.access_token) and not self.is_expired

    def to_dict(self) -> t.Dict[str, t.Any]:
        data = asdict(self)
        data['expires_at'] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_dict(cls, data: t.Dict[str, t.Any]) -> 'Credential':
        values = dict(data)
        expires_at = values.get('expires_at')
        values['expires_at'] = datetime.fromisoformat(expires_at) if expires_at else None
        return cls(**values)


@dataclass(frozen=True)
class TokenResponse:
    """Validated token endpoint response."""

    access_token: str
    token_type: str = 'Bearer'
    refresh_token: t.Optional[str] = None
    expires_in: t.Optional[int] = None
    scope: t.Optional[str] = None

    def to_credential(self, service_url: str) -> Credential:
        expires_at = None
        if self.expires_in is not None:
            expires_at = _utcnow() + timedelta(seconds=self.expires_in - EXPIRY_MARGIN_SECONDS)
        return Credential(
            service_url=service_url,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_type=self.token_type,
            expires_at=expires_at,
        )


@dataclass(frozen=True)
class CallbackParams:
    """Parameters the identity provider appends to the redirect URI."""

    code: t.Optional[str] = None
    state: t.Optional[str] = None
    error: t.Optional[str] = None
    error_description: t.Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_empty(self) -> bool:
        return self.code is None and self.error is None


@dataclass
class AuthOutcome:
    """Terminal result of a login attempt."""

    state: AuthState
    credential: t.Optional[Credential] = None
    error: t.Optional['OAuthError'] = None
    fallback: t.Optional[Fallback] = None
    channel: t.Optional[Channel] = None

    @property
    def success(self) -> bool:
        return self.state is AuthState.AUTHENTICATED
