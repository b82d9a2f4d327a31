# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from .errors import ConfigurationError

lib_logger = logging.getLogger("jira_time")

# Atlassian OAuth 2.0 (3LO) endpoints
ATLASSIAN_AUTHORIZE_URL = "https://auth.atlassian.com/authorize"
ATLASSIAN_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
ATLASSIAN_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
ATLASSIAN_AUDIENCE = "api.atlassian.com"
JIRA_API_BASE_URL = "https://api.atlassian.com/ex/jira"

DEFAULT_REDIRECT_URI = "http://localhost:8080/callback"
DEFAULT_SCOPES: Tuple[str, ...] = (
    "read:jira-work",
    "write:jira-work",
    "read:jira-user",
    "offline_access",  # Required for refresh tokens
)

# Provider token endpoints occasionally stall
DEFAULT_HTTP_TIMEOUT = 30.0


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_number_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {name} value: {raw}, using default {default}")
        return default


def _split_scopes_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values = [value.strip() for value in raw.replace(",", " ").split()]
    return tuple(value for value in values if value) or default


def default_auth_file() -> Path:
    data_home = os.getenv("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(data_home) / "jira-time" / "auth.json"


@dataclass(frozen=True)
class OAuthSettings:
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: Tuple[str, ...] = DEFAULT_SCOPES
    audience: str = ATLASSIAN_AUDIENCE
    authorize_url: str = ATLASSIAN_AUTHORIZE_URL
    token_url: str = ATLASSIAN_TOKEN_URL
    resources_url: str = ATLASSIAN_RESOURCES_URL

    @property
    def callback_port(self) -> Optional[int]:
        return urlparse(self.redirect_uri).port

    @property
    def callback_path(self) -> str:
        return urlparse(self.redirect_uri).path or "/"


@dataclass(frozen=True)
class TokenRefreshSettings:
    proactive: bool = True
    background_interval: float = 1800  # seconds between background checks
    refresh_before_expiry: float = 1800  # refresh this many seconds before expiry
    max_refresh_age_days: float = 60  # keep the refresh token alive past this age
    refresh_token_warn_age_days: float = 80
    refresh_token_lifetime_days: float = 90  # provider-side absolute lifetime


@dataclass(frozen=True)
class StorageSettings:
    auth_file: Path = field(default_factory=default_auth_file)


@dataclass(frozen=True)
class Settings:
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    token_refresh: TokenRefreshSettings = field(default_factory=TokenRefreshSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    api_base_url: str = JIRA_API_BASE_URL

    def problems(self) -> List[str]:
        """Every configuration problem, empty when the settings are usable."""
        errors = []
        if not self.oauth.client_id:
            errors.append("oauth client_id is required (JIRA_TIME_CLIENT_ID)")
        if not self.oauth.client_secret:
            errors.append("oauth client_secret is required (JIRA_TIME_CLIENT_SECRET)")
        if self.oauth.callback_port is None:
            errors.append(
                f"redirect_uri must include an explicit port: {self.oauth.redirect_uri}"
            )
        return errors

    def validate(self) -> "Settings":
        errors = self.problems()
        if errors:
            raise ConfigurationError(errors)
        return self


def load_settings() -> Settings:
    """Build settings from ``JIRA_TIME_*`` environment variables."""
    defaults = TokenRefreshSettings()
    oauth = OAuthSettings(
        client_id=(os.getenv("JIRA_TIME_CLIENT_ID") or "").strip() or None,
        client_secret=(os.getenv("JIRA_TIME_CLIENT_SECRET") or "").strip() or None,
        redirect_uri=(os.getenv("JIRA_TIME_REDIRECT_URI") or "").strip()
        or DEFAULT_REDIRECT_URI,
        scopes=_split_scopes_env("JIRA_TIME_SCOPES", DEFAULT_SCOPES),
    )
    token_refresh = TokenRefreshSettings(
        proactive=parse_bool_env("JIRA_TIME_PROACTIVE_REFRESH", defaults.proactive),
        background_interval=parse_number_env(
            "JIRA_TIME_BACKGROUND_INTERVAL", defaults.background_interval
        ),
        refresh_before_expiry=parse_number_env(
            "JIRA_TIME_REFRESH_BEFORE_EXPIRY", defaults.refresh_before_expiry
        ),
        max_refresh_age_days=parse_number_env(
            "JIRA_TIME_MAX_REFRESH_AGE_DAYS", defaults.max_refresh_age_days
        ),
    )
    auth_file = os.getenv("JIRA_TIME_AUTH_FILE")
    storage = StorageSettings(
        auth_file=Path(auth_file).expanduser() if auth_file else default_auth_file()
    )
    return Settings(
        oauth=oauth,
        token_refresh=token_refresh,
        storage=storage,
        http_timeout=parse_number_env("JIRA_TIME_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
    )
