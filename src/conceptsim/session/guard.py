"""Session lifecycle gating for privileged calls."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, TypeVar

from ..errors import CredentialMissing, CredentialStoreError, SessionInvalid
from ..logger import EventLogger
from .credentials import CredentialStore
from .models import AuthEvent, Session, SessionState

T = TypeVar("T")

SESSION_INVALID_MESSAGE = "Session invalid or expired"


class SessionGuard:
    """Owns the session and is the only path through which privileged work runs.

    State machine: ``UNINITIALIZED -> LOADING -> {VALID, INVALID}``. ``INVALID`` is
    terminal until the credential store announces a new sign-in.
    """

    def __init__(
        self,
        store: CredentialStore,
        logger: EventLogger,
        *,
        refresh_threshold_seconds: float = 300.0,
        refresh_retries: int = 1,
        revalidate_interval_seconds: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.logger = logger
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.refresh_retries = max(0, min(1, refresh_retries))
        self.revalidate_interval_seconds = revalidate_interval_seconds
        self._clock = clock

        self._session = Session()
        self._state = SessionState.UNINITIALIZED
        self._unsubscribe: Callable[[], None] | None = None
        self._revalidate_task: asyncio.Task[None] | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def loading(self) -> bool:
        return self._state is SessionState.LOADING

    @property
    def session(self) -> Session | None:
        if self._session.is_empty:
            return None
        return self._session.copy()

    def current_identity(self) -> str | None:
        return self._session.identity

    # ---- state transitions ----

    def _adopt(self, session: Session, event_type: str = "session_validated") -> None:
        previous = self._session.identity
        self._session.update_from(session)
        self._state = SessionState.VALID
        self.last_error = None
        self.logger.log(
            event_type,
            {
                "identity": self._session.identity,
                "previous_identity": previous,
                "expires_at": self._session.expires_at,
            },
        )

    def _invalidate(self, reason: str, event_type: str = "session_invalidated") -> None:
        identity = self._session.identity
        self._session.clear()
        self._state = SessionState.INVALID
        self.last_error = reason
        self.logger.log(event_type, {"identity": identity, "reason": reason})

    # ---- lifecycle ----

    async def initialize(self) -> SessionState:
        """Load the stored session and subscribe to store notifications."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self.handle_auth_event)
        self._state = SessionState.LOADING
        try:
            stored = await self.store.get_session()
        except CredentialStoreError as exc:
            self._invalidate(f"initial session error: {exc}")
            return self._state
        if stored is None or stored.is_empty:
            self._invalidate("no initial session")
        else:
            self._adopt(stored, "session_loaded")
        return self._state

    def handle_auth_event(self, event: AuthEvent, session: Session | None) -> None:
        self.logger.log(
            "auth_state_changed",
            {"auth_event": event.value, "identity": session.identity if session else None},
        )
        if event is AuthEvent.SIGNED_OUT or session is None or session.is_empty:
            if self._state is not SessionState.INVALID:
                self._invalidate("signed out by credential store")
            return
        if event is AuthEvent.SIGNED_IN:
            self._state = SessionState.LOADING
            self._adopt(session, "session_signed_in")
            return
        # Refresh/update notifications never resurrect an invalid session.
        if self._state is SessionState.INVALID:
            return
        self._adopt(session, "session_updated")

    # ---- validation ----

    async def _refresh(self) -> bool:
        attempts = 1 + self.refresh_retries
        reason = "session refresh failed"
        for attempt in range(1, attempts + 1):
            try:
                refreshed = await self.store.refresh_session()
            except CredentialMissing as exc:
                self._invalidate(f"refresh rejected: {exc}")
                return False
            except CredentialStoreError as exc:
                reason = f"session refresh failed: {exc}"
                self.logger.log("session_refresh_failed", {"attempt": attempt, "error": str(exc)})
                continue
            if refreshed is None or refreshed.is_empty:
                reason = "no session returned from refresh"
                self.logger.log("session_refresh_failed", {"attempt": attempt, "error": reason})
                continue
            remaining = refreshed.seconds_until_expiry(self._clock())
            if remaining is not None and remaining <= 0:
                reason = "refreshed credential is already expired"
                self.logger.log("session_refresh_failed", {"attempt": attempt, "error": reason})
                continue
            self._adopt(refreshed, "session_refreshed")
            return True
        self._invalidate(reason)
        return False

    async def validate(self) -> bool:
        """Return whether the session is live, refreshing it when close to expiry."""
        if self._state is SessionState.UNINITIALIZED:
            await self.initialize()
        if self._state is SessionState.INVALID:
            return False

        try:
            stored = await self.store.get_session()
        except CredentialMissing as exc:
            self._invalidate(str(exc))
            return False
        except CredentialStoreError as exc:
            self.last_error = f"session validation error: {exc}"
            self.logger.log("session_validation_error", {"error": str(exc)})
            return False

        if stored is None or stored.is_empty:
            self._invalidate("no session found during validation")
            return False

        remaining = stored.seconds_until_expiry(self._clock())
        if remaining is not None and remaining < self.refresh_threshold_seconds:
            self.logger.log("session_expiring", {"identity": stored.identity, "seconds_remaining": remaining})
            return await self._refresh()

        try:
            await self.store.verify_session(stored)
        except CredentialMissing as exc:
            self._invalidate(f"credential revoked: {exc}")
            return False
        except CredentialStoreError as exc:
            self.last_error = f"session validation error: {exc}"
            self.logger.log("session_validation_error", {"error": str(exc)})
            return False

        self._adopt(stored)
        return True

    async def with_valid_session(self, operation: Callable[[Session], Awaitable[T]]) -> T:
        """Run ``operation`` with a fresh session snapshot or raise ``SessionInvalid``."""
        if not await self.validate():
            self.logger.log("privileged_call_rejected", {"reason": self.last_error})
            raise SessionInvalid(SESSION_INVALID_MESSAGE)
        snapshot = self._session.copy()
        try:
            return await operation(snapshot)
        except Exception as exc:
            self.logger.log("privileged_call_failed", {"identity": snapshot.identity, "error": repr(exc)})
            raise

    async def sign_out(self) -> None:
        """Clear local state first, then revoke; the local state stays cleared on failure."""
        self._invalidate("signed out", "session_signed_out")
        self.last_error = None
        try:
            await self.store.sign_out()
        except CredentialStoreError as exc:
            self.last_error = f"Sign out failed: {exc}"
            self.logger.log("session_revocation_failed", {"error": str(exc)})

    # ---- background revalidation ----

    async def _revalidate_loop(self) -> None:
        while True:
            await asyncio.sleep(self.revalidate_interval_seconds)
            if self._state is SessionState.VALID:
                self.logger.log("session_periodic_validation", {"identity": self._session.identity})
                await self.validate()

    def start_revalidation(self) -> None:
        if self._revalidate_task is None or self._revalidate_task.done():
            self._revalidate_task = asyncio.create_task(self._revalidate_loop())

    async def close(self) -> None:
        if self._revalidate_task is not None:
            self._revalidate_task.cancel()
            await asyncio.gather(self._revalidate_task, return_exceptions=True)
            self._revalidate_task = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
