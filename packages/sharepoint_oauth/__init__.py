"""OAuth 2.0 authorization code + PKCE login coordinated across application windows."""

from sharepoint_oauth.bus import WindowEventBus
from sharepoint_oauth.callback import AuthWindowActor
from sharepoint_oauth.config import AppConfig, CoordinatorSettings, load_config_file, resolve_config
from sharepoint_oauth.coordinator import AuthCoordinator
from sharepoint_oauth.exceptions import (
    AuthorizationDeniedError,
    AuthTimeoutError,
    ConfigFileError,
    ConfigurationIncompleteError,
    ErrorKind,
    OAuthError,
    OAuthStateError,
    OAuthTokenError,
    WindowCreationError,
)
from sharepoint_oauth.models import AuthContext, AuthOutcome, AuthSession, AuthState, Credential, Fallback
from sharepoint_oauth.pkce import PKCEManager, generate_pkce, generate_state_nonce
from sharepoint_oauth.token import TokenExchangeClient
from sharepoint_oauth.urls import build_authorization_url, parse_callback_url
from sharepoint_oauth.windows import AUTH_WINDOW_LABEL, MAIN_WINDOW_LABEL, WindowHost

__all__ = [
    'AUTH_WINDOW_LABEL',
    'MAIN_WINDOW_LABEL',
    'AppConfig',
    'AuthContext',
    'AuthCoordinator',
    'AuthOutcome',
    'AuthSession',
    'AuthState',
    'AuthTimeoutError',
    'AuthWindowActor',
    'AuthorizationDeniedError',
    'ConfigFileError',
    'ConfigurationIncompleteError',
    'CoordinatorSettings',
    'Credential',
    'ErrorKind',
    'Fallback',
    'OAuthError',
    'OAuthStateError',
    'OAuthTokenError',
    'PKCEManager',
    'TokenExchangeClient',
    'WindowCreationError',
    'WindowEventBus',
    'WindowHost',
    'build_authorization_url',
    'generate_pkce',
    'generate_state_nonce',
    'load_config_file',
    'parse_callback_url',
    'resolve_config',
]
