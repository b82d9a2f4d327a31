# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the jira-time auth package.

The credential record mirrors the persisted ``auth.json`` object one field
per attribute; everything else here is an in-memory result type.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import JiraTimeAuthError

CURRENT_SCHEMA_VERSION = 1

DEFAULT_EXPIRES_IN = 3600


def schema_version_of(data: Dict[str, Any]) -> int:
    """Stored schema version; 0 when absent. Raises ValueError if malformed."""
    value = data.get("schema_version") or 0
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"schema_version must be an integer, got {value!r}")
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"schema_version must be an integer, got {value!r}")


def _optional_float(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}")


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


# =============================================================================
# ENUMS
# =============================================================================


class AuthState(str, Enum):
    """Where the credential record sits in the token lifecycle."""

    UNAUTHENTICATED = "unauthenticated"  # No record, no token, or re-auth required
    VALID = "valid"  # Unexpired token and a known tenant
    EXPIRED = "expired"  # Token present but now >= expires_at
    REFRESHING = "refreshing"  # A refresh is in flight
    REFRESH_FAILED = "refresh_failed"  # Transient failure; next trigger retries


# =============================================================================
# PERSISTED RECORD
# =============================================================================


@dataclass
class RefreshErrorInfo:
    """Diagnostic left behind by the most recent failed refresh."""

    timestamp: float
    message: str = ""
    status_code: Optional[int] = None
    error_code: Optional[str] = None
    terminal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "status_code": self.status_code,
            "error_code": self.error_code,
            "terminal": self.terminal,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RefreshErrorInfo"]:
        if not isinstance(data, dict):
            return None
        return cls(
            timestamp=_optional_float(data, "timestamp") or 0.0,
            message=data.get("message") or "",
            status_code=data.get("status_code"),
            error_code=data.get("error_code"),
            terminal=bool(data.get("terminal", False)),
        )


@dataclass
class CredentialRecord:
    """
    The single persisted credential record.

    Overwritten wholesale on every save. ``expires_at`` is always computed
    locally as issue time + provider ``expires_in``.
    """

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    tenant_id: Optional[str] = None
    refresh_token_issued_at: Optional[float] = None
    last_refresh_at: Optional[float] = None
    last_refresh_error: Optional[RefreshErrorInfo] = None
    schema_version: int = CURRENT_SCHEMA_VERSION

    def is_expired(self, now: float) -> bool:
        """True when there is no usable expiry or ``now`` has reached it."""
        if self.expires_at is None:
            return True
        return now >= self.expires_at

    @property
    def is_usable_shape(self) -> bool:
        """Token and tenant both present; expiry is checked separately."""
        return bool(self.access_token) and bool(self.tenant_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "tenant_id": self.tenant_id,
            "refresh_token_issued_at": self.refresh_token_issued_at,
            "last_refresh_at": self.last_refresh_at,
            "last_refresh_error": (
                self.last_refresh_error.to_dict() if self.last_refresh_error else None
            ),
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialRecord":
        # Older records called the tenant "cloud_id"
        tenant_id = _optional_str(data, "tenant_id") or _optional_str(data, "cloud_id")
        return cls(
            access_token=_optional_str(data, "access_token"),
            refresh_token=_optional_str(data, "refresh_token"),
            expires_at=_optional_float(data, "expires_at"),
            tenant_id=tenant_id or None,
            refresh_token_issued_at=_optional_float(data, "refresh_token_issued_at"),
            last_refresh_at=_optional_float(data, "last_refresh_at"),
            last_refresh_error=RefreshErrorInfo.from_dict(
                data.get("last_refresh_error")
            ),
            schema_version=schema_version_of(data),
        )


# =============================================================================
# PROVIDER RESPONSES
# =============================================================================


@dataclass
class TokenResponse:
    """Parsed token endpoint response."""

    access_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: str = ""


@dataclass
class Tenant:
    """One entry from the accessible-resources endpoint."""

    id: str
    name: str = ""
    url: str = ""
    scopes: List[str] = field(default_factory=list)


@dataclass
class CallbackResult:
    """Authorization redirect captured by the loopback listener."""

    code: str
    state: str


# =============================================================================
# OUTCOMES
# =============================================================================


@dataclass
class RefreshOutcome:
    """Terminal resolution of one refresh attempt."""

    success: bool
    error: Optional[JiraTimeAuthError] = None
    rotated: bool = False  # Provider issued a new refresh token

    @property
    def terminal(self) -> bool:
        return bool(self.error is not None and getattr(self.error, "terminal", False))


@dataclass
class AuthenticationResult:
    """
    Standardized result of an interactive authorization flow.
    """

    success: bool
    tenant_id: Optional[str] = None
    tenants: List[Tenant] = field(default_factory=list)
    error: Optional[JiraTimeAuthError] = None
