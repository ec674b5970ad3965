from __future__ import annotations

import asyncio

import pytest

from conceptsim.errors import CredentialMissing, CredentialStoreError, SessionInvalid
from conceptsim.session import AuthEvent, InMemoryCredentialStore, Session, SessionGuard, SessionState


class ScriptedStore(InMemoryCredentialStore):
    """In-memory store whose verification outcomes can be scripted per call."""

    def __init__(self, session=None, *, refresher=None, verify_errors=()) -> None:
        super().__init__(session, refresher=refresher)
        self.verify_errors = list(verify_errors)
        self.verify_calls = 0
        self.sign_out_error: Exception | None = None

    async def verify_session(self, session: Session) -> None:
        self.verify_calls += 1
        if self.verify_errors:
            error = self.verify_errors.pop(0)
            if error is not None:
                raise error
        await super().verify_session(session)

    async def sign_out(self) -> None:
        await super().sign_out()
        if self.sign_out_error is not None:
            raise self.sign_out_error


def _guard(store, event_logger) -> SessionGuard:
    return SessionGuard(store, event_logger, refresh_threshold_seconds=300, refresh_retries=1)


async def _token(snapshot: Session) -> str:
    return snapshot.access_token


def test_initialize_without_session_is_invalid(event_logger) -> None:
    guard = _guard(InMemoryCredentialStore(), event_logger)
    assert guard.state is SessionState.UNINITIALIZED

    state = asyncio.run(guard.initialize())

    assert state is SessionState.INVALID
    assert guard.session is None
    assert guard.current_identity() is None


def test_no_privileged_call_on_invalid_session(event_logger) -> None:
    guard = _guard(InMemoryCredentialStore(), event_logger)
    calls = []

    async def operation(snapshot: Session) -> None:
        calls.append(snapshot)

    with pytest.raises(SessionInvalid) as exc_info:
        asyncio.run(guard.with_valid_session(operation))

    assert calls == []
    assert str(exc_info.value) == "Session invalid or expired"
    types = {e["event_type"] for e in event_logger.read_recent(50)}
    assert "privileged_call_rejected" in types


def test_live_session_is_verified_and_passed_as_snapshot(event_logger, make_session) -> None:
    session = make_session()
    store = ScriptedStore(session)
    guard = _guard(store, event_logger)

    token = asyncio.run(guard.with_valid_session(_token))

    assert token == "token-1"
    assert store.verify_calls == 1
    assert guard.state is SessionState.VALID
    assert guard.current_identity() == "user-1"


def test_session_near_expiry_is_refreshed_before_the_call(event_logger, make_session) -> None:
    refreshed_calls = []

    def refresher(current: Session) -> Session:
        refreshed_calls.append(current.access_token)
        return make_session(token="token-2", ttl_seconds=3600)

    store = ScriptedStore(make_session(ttl_seconds=60), refresher=refresher)
    guard = _guard(store, event_logger)

    token = asyncio.run(guard.with_valid_session(_token))

    assert refreshed_calls == ["token-1"]
    assert token == "token-2"
    assert guard.state is SessionState.VALID
    assert guard.session.access_token == "token-2"


def test_refresh_is_retried_once(event_logger, make_session) -> None:
    attempts = []

    def refresher(current: Session) -> Session:
        attempts.append(1)
        if len(attempts) == 1:
            raise CredentialStoreError("network down")
        return make_session(token="token-2")

    store = ScriptedStore(make_session(ttl_seconds=10), refresher=refresher)
    guard = _guard(store, event_logger)

    assert asyncio.run(guard.validate())
    assert len(attempts) == 2
    events = event_logger.events_of_type("session_refresh_failed")
    assert len(events) == 1 and events[0]["attempt"] == 1


def test_refresh_failing_twice_invalidates_without_calling(event_logger, make_session) -> None:
    attempts = []

    def refresher(current: Session) -> Session:
        attempts.append(1)
        raise CredentialStoreError("network down")

    store = ScriptedStore(make_session(ttl_seconds=10), refresher=refresher)
    guard = _guard(store, event_logger)
    calls = []

    async def operation(snapshot: Session) -> None:
        calls.append(snapshot)

    with pytest.raises(SessionInvalid):
        asyncio.run(guard.with_valid_session(operation))

    assert len(attempts) == 2
    assert calls == []
    assert guard.state is SessionState.INVALID
    assert guard.session is None


def test_refresh_returning_expired_credential_counts_as_failure(event_logger, make_session) -> None:
    store = ScriptedStore(
        make_session(ttl_seconds=10),
        refresher=lambda current: make_session(token="stale", ttl_seconds=-5),
    )
    guard = _guard(store, event_logger)

    assert not asyncio.run(guard.validate())
    assert guard.state is SessionState.INVALID


def test_revoked_credential_invalidates(event_logger, make_session) -> None:
    store = ScriptedStore(make_session(), verify_errors=[CredentialMissing("Auth session missing")])
    guard = _guard(store, event_logger)

    assert not asyncio.run(guard.validate())
    assert guard.state is SessionState.INVALID
    assert "credential revoked" in guard.last_error


def test_transient_verification_error_rejects_call_but_keeps_session(event_logger, make_session) -> None:
    store = ScriptedStore(make_session(), verify_errors=[CredentialStoreError("timeout"), None])
    guard = _guard(store, event_logger)

    async def scenario() -> tuple[bool, bool]:
        first = await guard.validate()
        second = await guard.validate()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is False
    assert second is True
    assert guard.state is SessionState.VALID


def test_operation_failure_propagates_and_is_logged(event_logger, make_session) -> None:
    guard = _guard(ScriptedStore(make_session()), event_logger)

    async def operation(snapshot: Session) -> None:
        raise RuntimeError("upstream exploded")

    with pytest.raises(RuntimeError):
        asyncio.run(guard.with_valid_session(operation))

    failures = event_logger.events_of_type("privileged_call_failed")
    assert failures and failures[0]["identity"] == "user-1"


def test_store_sign_out_event_invalidates_and_sign_in_recovers(event_logger, make_session) -> None:
    store = ScriptedStore(make_session())
    guard = _guard(store, event_logger)

    async def scenario() -> None:
        await guard.initialize()
        assert guard.state is SessionState.VALID
        await store.sign_out()
        assert guard.state is SessionState.INVALID
        store.sign_in(make_session(identity="user-2", token="token-9"))

    asyncio.run(scenario())

    assert guard.state is SessionState.VALID
    assert guard.current_identity() == "user-2"


def test_refresh_notification_does_not_resurrect_invalid_session(event_logger, make_session) -> None:
    guard = _guard(InMemoryCredentialStore(), event_logger)
    asyncio.run(guard.initialize())

    guard.handle_auth_event(AuthEvent.TOKEN_REFRESHED, make_session())

    assert guard.state is SessionState.INVALID


def test_sign_out_clears_local_state_even_if_revocation_fails(event_logger, make_session) -> None:
    store = ScriptedStore(make_session())
    store.sign_out_error = CredentialStoreError("logout endpoint down")
    guard = _guard(store, event_logger)

    async def scenario() -> None:
        await guard.initialize()
        await guard.sign_out()

    asyncio.run(scenario())

    assert guard.state is SessionState.INVALID
    assert guard.session is None
    assert guard.last_error == "Sign out failed: logout endpoint down"
    assert event_logger.events_of_type("session_revocation_failed")


def test_periodic_revalidation_detects_revocation(event_logger, make_session) -> None:
    store = ScriptedStore(make_session(), verify_errors=[None, CredentialMissing("Auth session missing")])
    guard = SessionGuard(store, event_logger, revalidate_interval_seconds=0.01)

    async def scenario() -> None:
        assert await guard.validate()
        guard.start_revalidation()
        for _ in range(100):
            if guard.state is SessionState.INVALID:
                break
            await asyncio.sleep(0.01)
        await guard.close()

    asyncio.run(scenario())

    assert guard.state is SessionState.INVALID
    assert event_logger.events_of_type("session_periodic_validation")


def test_tokens_never_reach_the_event_log(event_logger, make_session) -> None:
    guard = _guard(ScriptedStore(make_session(token="secret-token-value")), event_logger)
    asyncio.run(guard.validate())

    raw = event_logger.output_path.read_text(encoding="utf-8")
    assert "secret-token-value" not in raw
