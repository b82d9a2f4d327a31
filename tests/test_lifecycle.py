import asyncio
import logging

import httpx
import pytest

from conftest import T0, RecordingHandler, form_data, make_settings, ok_token, seed_record, token_json
from jira_time.errors import NotAuthenticated, RefreshFailed
from jira_time.storage import CredentialStore
from jira_time.types import AuthState, TokenResponse


async def drain_background(lifecycle) -> None:
    while lifecycle._background_tasks:
        await asyncio.gather(*list(lifecycle._background_tasks))


def invalid_grant(request: httpx.Request) -> httpx.Response:
    return httpx.Response(400, json={"error": "invalid_grant"})


def test_no_record_means_unauthenticated(make_lifecycle) -> None:
    lifecycle = make_lifecycle(RecordingHandler(ok_token))

    assert lifecycle.get_access_token() is None
    assert lifecycle.get_tenant_id() is None
    assert lifecycle.is_authenticated() is False
    assert lifecycle.state() is AuthState.UNAUTHENTICATED


def test_valid_token_is_returned(make_lifecycle, store: CredentialStore) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(ok_token))

    assert lifecycle.get_access_token() == "T1"
    assert lifecycle.get_tenant_id() == "cloud-9"
    assert lifecycle.is_authenticated() is True
    assert lifecycle.state() is AuthState.VALID


def test_token_without_tenant_is_not_authenticated(make_lifecycle, store: CredentialStore) -> None:
    seed_record(store, tenant_id=None)
    lifecycle = make_lifecycle(RecordingHandler(ok_token))

    assert lifecycle.get_access_token() == "T1"
    assert lifecycle.is_authenticated() is False
    assert lifecycle.state() is AuthState.UNAUTHENTICATED


def test_expired_token_outside_event_loop(make_lifecycle, store: CredentialStore, clock) -> None:
    seed_record(store)
    handler = RecordingHandler(ok_token)
    lifecycle = make_lifecycle(handler)
    clock.advance(3600)

    assert lifecycle.get_access_token() is None
    assert lifecycle.state() is AuthState.EXPIRED
    assert handler.requests == []


@pytest.mark.asyncio
async def test_expired_token_schedules_refresh(make_lifecycle, store: CredentialStore, clock) -> None:
    seed_record(store)
    handler = RecordingHandler(lambda request: token_json("T2", "R2"))
    lifecycle = make_lifecycle(handler)
    clock.advance(3700)

    assert lifecycle.get_access_token() is None
    await drain_background(lifecycle)

    assert [r["refresh_token"] for r in handler.token_requests()] == ["R1"]
    assert lifecycle.get_access_token() == "T2"


@pytest.mark.asyncio
async def test_token_inside_window_is_returned_and_refreshed(
    make_lifecycle, store: CredentialStore, clock
) -> None:
    seed_record(store)
    handler = RecordingHandler(lambda request: token_json("T2", "R2"))
    lifecycle = make_lifecycle(handler)
    clock.advance(3600 - 600)

    assert lifecycle.get_access_token() == "T1"
    await drain_background(lifecycle)

    assert len(handler.token_requests()) == 1
    assert lifecycle.get_access_token() == "T2"


@pytest.mark.asyncio
async def test_successful_refresh_replaces_tokens(make_lifecycle, store: CredentialStore, clock) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(lambda request: token_json("T2", "R2", 1200)))
    clock.advance(4000)

    outcome = await lifecycle.refresh()

    assert outcome.success is True
    assert outcome.rotated is True
    record = lifecycle.load_record()
    assert record.access_token == "T2"
    assert record.refresh_token == "R2"
    assert record.expires_at == T0 + 4000 + 1200
    assert record.last_refresh_at == T0 + 4000
    assert record.refresh_token_issued_at == T0 + 4000
    assert record.tenant_id == "cloud-9"
    assert record.last_refresh_error is None


@pytest.mark.asyncio
async def test_refresh_without_rotation_keeps_refresh_token(
    make_lifecycle, store: CredentialStore, clock
) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(lambda request: token_json("T2", None)))
    clock.advance(100)

    outcome = await lifecycle.refresh()

    assert outcome.success is True
    assert outcome.rotated is False
    record = lifecycle.load_record()
    assert record.refresh_token == "R1"
    assert record.refresh_token_issued_at == T0
    assert record.last_refresh_at == T0 + 100


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_request(make_lifecycle, store: CredentialStore) -> None:
    seed_record(store)
    handler = RecordingHandler(lambda request: token_json("T2", "R2"))
    lifecycle = make_lifecycle(handler)

    first, second = await asyncio.gather(lifecycle.refresh(), lifecycle.refresh())

    assert first.success and second.success
    assert len(handler.token_requests()) == 1


@pytest.mark.asyncio
async def test_terminal_failure_keeps_tokens_and_requires_reauth(
    make_lifecycle, store: CredentialStore, clock
) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(invalid_grant))
    clock.advance(3700)

    outcome = await lifecycle.refresh()

    assert outcome.success is False
    assert outcome.terminal is True
    assert isinstance(outcome.error, RefreshFailed)
    record = lifecycle.load_record()
    assert record.access_token == "T1"
    assert record.refresh_token == "R1"
    assert record.last_refresh_error.terminal is True
    assert record.last_refresh_error.error_code == "invalid_grant"
    assert record.last_refresh_error.timestamp == T0 + 3700
    assert lifecycle.state() is AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_transient_failure_is_retryable(make_lifecycle, store: CredentialStore, clock) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(lambda request: httpx.Response(502)))
    clock.advance(3700)

    outcome = await lifecycle.refresh()

    assert outcome.success is False
    assert outcome.terminal is False
    assert lifecycle.load_record().last_refresh_error.status_code == 502
    assert lifecycle.state() is AuthState.REFRESH_FAILED


@pytest.mark.asyncio
async def test_failure_backs_off_automatic_refreshes(
    make_lifecycle, store: CredentialStore, clock
) -> None:
    seed_record(store)
    handler = RecordingHandler(lambda request: httpx.Response(502))
    lifecycle = make_lifecycle(handler)
    clock.advance(3700)

    await lifecycle.refresh()
    assert await lifecycle.refresh_if_needed() is None
    assert len(handler.token_requests()) == 1

    # Explicit refresh ignores the backoff
    await lifecycle.refresh()
    assert len(handler.token_requests()) == 2

    clock.advance(301)
    assert await lifecycle.refresh_if_needed() is not None
    assert len(handler.token_requests()) == 3


@pytest.mark.asyncio
async def test_refresh_without_refresh_token(make_lifecycle, store: CredentialStore) -> None:
    seed_record(store, refresh_token=None)
    handler = RecordingHandler(ok_token)
    lifecycle = make_lifecycle(handler)

    outcome = await lifecycle.refresh()

    assert outcome.success is False
    assert outcome.terminal is True
    assert isinstance(outcome.error.cause, NotAuthenticated)
    assert handler.requests == []


@pytest.mark.asyncio
async def test_logout_during_refresh_discards_result(
    make_lifecycle, store: CredentialStore
) -> None:
    seed_record(store)
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_token(request: httpx.Request) -> httpx.Response:
        entered.set()
        await release.wait()
        return token_json("T2", "R2")

    lifecycle = make_lifecycle(slow_token)
    task = asyncio.create_task(lifecycle.refresh())
    await entered.wait()

    assert lifecycle.state() is AuthState.REFRESHING
    assert lifecycle.logout() is True
    release.set()
    outcome = await task

    assert outcome.success is False
    assert store.exists() is False
    assert lifecycle.state() is AuthState.UNAUTHENTICATED


def test_needs_refresh_reasons(make_lifecycle, store: CredentialStore, clock) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(ok_token))
    record = lifecycle.load_record()

    assert lifecycle.needs_refresh(record, T0) is None
    assert "expires in" in lifecycle.needs_refresh(record, T0 + 2000)
    assert lifecycle.needs_refresh(record, T0 + 3600) == "access token expired"

    record.expires_at = T0 + 70 * 86400
    assert "last refresh" in lifecycle.needs_refresh(record, T0 + 61 * 86400)

    record.refresh_token = None
    assert lifecycle.needs_refresh(record, T0 + 3600) is None


def test_store_authorization(make_lifecycle, store: CredentialStore, clock) -> None:
    lifecycle = make_lifecycle(RecordingHandler(ok_token))
    token = TokenResponse(access_token="T1", refresh_token="R1", expires_in=3600)

    assert lifecycle.store_authorization(token, "cloud-9") is True

    assert store.load() == {
        "access_token": "T1",
        "refresh_token": "R1",
        "expires_at": T0 + 3600,
        "tenant_id": "cloud-9",
        "refresh_token_issued_at": T0,
        "last_refresh_at": T0,
        "last_refresh_error": None,
        "schema_version": 1,
    }


@pytest.mark.asyncio
async def test_validate_on_startup_refreshes_expired_token(
    make_lifecycle, store: CredentialStore, clock
) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(lambda request: token_json("T2", "R2")))
    clock.advance(3700)

    outcome = await lifecycle.validate_on_startup()

    assert outcome.success is True
    assert lifecycle.get_access_token() == "T2"


@pytest.mark.asyncio
async def test_validate_on_startup_warns_about_old_refresh_token(
    make_lifecycle, store: CredentialStore, clock, caplog: pytest.LogCaptureFixture
) -> None:
    seed_record(store, expires_at=T0 + 90 * 86400)
    lifecycle = make_lifecycle(RecordingHandler(ok_token))
    clock.advance(81 * 86400)

    with caplog.at_level(logging.WARNING, logger="jira_time"):
        outcome = await lifecycle.validate_on_startup()

    assert outcome is None
    assert "81 days old" in caplog.text


def test_logout_without_record(make_lifecycle) -> None:
    lifecycle = make_lifecycle(RecordingHandler(ok_token))

    assert lifecycle.logout() is True


def test_diagnostics(make_lifecycle, store: CredentialStore, clock) -> None:
    seed_record(store, access_token="T1-very-long-access-token-value")
    lifecycle = make_lifecycle(RecordingHandler(ok_token))
    clock.advance(10 * 86400)

    info = lifecycle.diagnostics()

    assert info["state"] == "expired"
    assert info["token_prefix"] == "T1-very-long-access-"
    assert info["tenant_id"] == "cloud-9"
    assert info["expired"] is True
    assert info["refresh_token_age_days"] == 10.0
    assert info["refresh_token_days_remaining"] == 80.0
    assert info["refresh_needed"] == "access token expired"


def test_diagnostics_without_record(make_lifecycle) -> None:
    info = make_lifecycle(RecordingHandler(ok_token)).diagnostics()

    assert info["state"] == "unauthenticated"
    assert info["has_record"] is False


def test_proactive_window_is_configurable(store: CredentialStore, auth_file, make_lifecycle) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(
        RecordingHandler(ok_token), make_settings(auth_file, refresh_before_expiry=60)
    )

    assert lifecycle.needs_refresh(lifecycle.load_record(), T0 + 3500) is None


@pytest.mark.asyncio
async def test_logout_ends_authentication(make_lifecycle, store: CredentialStore) -> None:
    seed_record(store)
    lifecycle = make_lifecycle(RecordingHandler(ok_token))
    assert lifecycle.is_authenticated() is True

    assert lifecycle.logout() is True

    assert lifecycle.is_authenticated() is False
    assert lifecycle.get_access_token() is None
    assert lifecycle.get_tenant_id() is None


@pytest.mark.asyncio
async def test_refresh_after_reauthorization_starts_fresh_exchange(
    make_lifecycle, store: CredentialStore
) -> None:
    seed_record(store)
    entered = asyncio.Event()
    release = asyncio.Event()
    seen = []

    async def respond(request: httpx.Request) -> httpx.Response:
        refresh_token = form_data(request)["refresh_token"]
        seen.append(refresh_token)
        if refresh_token == "R1":
            entered.set()
            await release.wait()
            return token_json("T-old", "R-old")
        return token_json("T3", "R10")

    lifecycle = make_lifecycle(respond)
    held = asyncio.create_task(lifecycle.refresh())
    await entered.wait()

    lifecycle.store_authorization(TokenResponse(access_token="T1b", refresh_token="R9"), "cloud-9")
    assert lifecycle.is_refreshing is False

    outcome = await lifecycle.refresh()
    release.set()
    held_outcome = await held

    assert outcome.success is True
    assert held_outcome.success is False
    assert seen == ["R1", "R9"]
    assert lifecycle.get_access_token() == "T3"


@pytest.mark.parametrize(
    "overrides",
    [
        {"expires_at": "soon"},
        {"expires_at": [1]},
        {"access_token": 42},
        {"schema_version": "one"},
        {"last_refresh_error": {"timestamp": "yesterday"}},
    ],
)
def test_malformed_record_reads_as_logged_out(
    make_lifecycle, store: CredentialStore, overrides
) -> None:
    seed_record(store, **overrides)
    lifecycle = make_lifecycle(RecordingHandler(ok_token))

    assert lifecycle.load_record() is None
    assert lifecycle.get_access_token() is None
    assert lifecycle.is_authenticated() is False
    assert lifecycle.state() is AuthState.UNAUTHENTICATED
    assert lifecycle.diagnostics()["has_record"] is False


def test_numeric_strings_are_coerced(make_lifecycle, store: CredentialStore) -> None:
    seed_record(store, expires_at=str(int(T0 + 3600)), schema_version="1")
    lifecycle = make_lifecycle(RecordingHandler(ok_token))

    record = lifecycle.load_record()

    assert record.expires_at == T0 + 3600
    assert record.schema_version == 1
    assert lifecycle.get_access_token() == "T1"
