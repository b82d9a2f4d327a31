import socket
import sys
from pathlib import Path
from typing import Callable, List
from urllib.parse import parse_qs

import httpx
import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from jira_time.config import OAuthSettings, Settings, StorageSettings, TokenRefreshSettings
from jira_time.lifecycle import TokenLifecycleManager
from jira_time.oauth.token_client import TokenExchangeClient
from jira_time.storage import CredentialStore


T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingHandler:
    """MockTransport handler that logs every request and delegates to ``respond``."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    def token_requests(self) -> List[dict]:
        return [
            form_data(r) for r in self.requests if r.url.path == "/oauth/token"
        ]


def form_data(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_settings(auth_file: Path, **token_refresh) -> Settings:
    return Settings(
        oauth=OAuthSettings(
            client_id="client-123",
            client_secret="secret-456",
            redirect_uri=f"http://localhost:{free_port()}/callback",
        ),
        token_refresh=TokenRefreshSettings(**token_refresh),
        storage=StorageSettings(auth_file=auth_file),
    )


def token_json(access="T2", refresh="R2", expires_in=3600, status=200) -> httpx.Response:
    body = {"access_token": access, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh is not None:
        body["refresh_token"] = refresh
    return httpx.Response(status, json=body)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_file(tmp_path: Path) -> Path:
    return tmp_path / "jira-time" / "auth.json"


@pytest.fixture
def store(auth_file: Path) -> CredentialStore:
    return CredentialStore(auth_file)


@pytest.fixture
def settings(auth_file: Path) -> Settings:
    return make_settings(auth_file)


@pytest.fixture
def make_lifecycle(settings: Settings, store: CredentialStore, clock: FakeClock):
    """Build a lifecycle manager whose HTTP goes to ``handler``."""

    def factory(handler, lifecycle_settings: Settings = None) -> TokenLifecycleManager:
        active = lifecycle_settings or settings
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        token_client = TokenExchangeClient(active.oauth, http_client=http_client)
        return TokenLifecycleManager(active, store, token_client, clock=clock)

    return factory


def seed_record(store: CredentialStore, **overrides) -> dict:
    record = {
        "access_token": "T1",
        "refresh_token": "R1",
        "expires_at": T0 + 3600,
        "tenant_id": "cloud-9",
        "refresh_token_issued_at": T0,
        "last_refresh_at": T0,
        "last_refresh_error": None,
        "schema_version": 1,
    }
    record.update(overrides)
    assert store.save(record)
    return record


def ok_token(request: httpx.Request) -> httpx.Response:
    return token_json()
