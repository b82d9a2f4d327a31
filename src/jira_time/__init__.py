import logging

lib_logger = logging.getLogger("jira_time")

if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

from .api_client import JiraApiClient
from .authenticator import OAuthAuthenticator, build_authorization_url, generate_state
from .background_refresher import BackgroundRefresher
from .config import Settings, load_settings
from .errors import (
    ApiRequestFailed,
    AuthenticationFailed,
    AuthorizationFailed,
    ConfigurationError,
    JiraTimeAuthError,
    ListenerBindFailed,
    NetworkError,
    NotAuthenticated,
    RefreshFailed,
    TenantDiscoveryFailed,
    TokenExchangeFailed,
)
from .lifecycle import TokenLifecycleManager, migrate_record
from .oauth import OAuthCallbackServer, TokenExchangeClient
from .storage import CredentialStore
from .types import (
    AuthenticationResult,
    AuthState,
    CredentialRecord,
    RefreshOutcome,
    Tenant,
    TokenResponse,
)

__all__ = [
    "JiraApiClient",
    "OAuthAuthenticator",
    "build_authorization_url",
    "generate_state",
    "BackgroundRefresher",
    "Settings",
    "load_settings",
    "TokenLifecycleManager",
    "migrate_record",
    "OAuthCallbackServer",
    "TokenExchangeClient",
    "CredentialStore",
    "AuthenticationResult",
    "AuthState",
    "CredentialRecord",
    "RefreshOutcome",
    "Tenant",
    "TokenResponse",
    # Errors
    "JiraTimeAuthError",
    "ApiRequestFailed",
    "AuthenticationFailed",
    "AuthorizationFailed",
    "ConfigurationError",
    "ListenerBindFailed",
    "NetworkError",
    "NotAuthenticated",
    "RefreshFailed",
    "TenantDiscoveryFailed",
    "TokenExchangeFailed",
]
