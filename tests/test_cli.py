import pytest

from conftest import seed_record
from jira_time.storage import CredentialStore
from jira_time_cli.main import build_parser, main, render_status


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path, auth_file):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JIRA_TIME_AUTH_FILE", str(auth_file))
    monkeypatch.delenv("JIRA_TIME_CLIENT_ID", raising=False)
    monkeypatch.delenv("JIRA_TIME_CLIENT_SECRET", raising=False)
    return auth_file


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_status_without_credentials(cli_env) -> None:
    assert main(["status"]) == 0


def test_logout_removes_record(cli_env, store: CredentialStore) -> None:
    seed_record(store)

    assert main(["logout"]) == 0
    assert store.exists() is False


def test_refresh_requires_configuration(cli_env) -> None:
    assert main(["refresh"]) == 1


def test_render_status_mentions_terminal_error() -> None:
    lines = render_status(
        {
            "state": "unauthenticated",
            "auth_file": "/tmp/auth.json",
            "has_record": True,
            "tenant_id": "cloud-9",
            "token_prefix": "T1",
            "expires_at": None,
            "expires_in_seconds": -120,
            "has_refresh_token": True,
            "last_refresh_at": None,
            "last_refresh_error": {"message": "invalid_grant", "terminal": True},
        }
    )

    text = "\n".join(lines)
    assert "expired 2m ago" in text
    assert "re-authentication required" in text
