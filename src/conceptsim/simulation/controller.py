"""Simulation request orchestration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

import httpx

from ..config import AppConfig
from ..errors import SessionInvalid
from ..generation.client import GenerationClient
from ..generation.models import Artifact, Clarification, Failure, GenerationRequest, Outcome, Subject
from ..logger import EventLogger
from ..quota.ledger import QuotaLedger
from ..sandbox.executor import SandboxExecutor
from ..sandbox.renderer import SandboxRenderer
from ..session.credentials import CredentialStore
from ..session.guard import SessionGuard
from ..session.models import Session, SessionState


class ControllerStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    SUGGESTION = "suggestion"
    ERROR = "error"


@dataclass
class ControllerState:
    status: ControllerStatus = ControllerStatus.IDLE
    request_id: int | None = None
    artifact: Artifact | None = None
    suggestion: str | None = None
    error: str | None = None
    auth_required: bool = False
    render_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "request_id": self.request_id,
            "artifact": self.artifact.to_dict() if self.artifact is not None else None,
            "suggestion": self.suggestion,
            "error": self.error,
            "auth_required": self.auth_required,
            "render_error": self.render_error,
        }


class Navigator(Protocol):
    def redirect_to_authentication(self) -> None: ...


StateListener = Callable[[ControllerState], None]


@dataclass
class _RunContext:
    request: GenerationRequest
    identity: str | None = None


class SimulationController:
    """Drives one request/response cycle at a time and exposes a small state surface.

    Runs may overlap; only the most recently issued request is ever rendered.
    """

    def __init__(
        self,
        guard: SessionGuard,
        ledger: QuotaLedger,
        client: GenerationClient,
        renderer: SandboxRenderer,
        logger: EventLogger,
        *,
        navigator: Navigator | None = None,
        max_prompt_chars: int = 2000,
    ) -> None:
        self.guard = guard
        self.ledger = ledger
        self.client = client
        self.renderer = renderer
        self.logger = logger
        self.navigator = navigator
        self.max_prompt_chars = max_prompt_chars

        self._state = ControllerState()
        self._listeners: list[StateListener] = []
        self._request_counter = 0
        self._latest_request_id = 0
        self._last_subject: Subject | None = None
        self._prior_artifact: Artifact | None = None

    @property
    def state(self) -> ControllerState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ControllerState) -> ControllerState:
        self._state = state
        self.logger.log("controller_state", {"status": state.status.value, "request_id": state.request_id})
        for listener in list(self._listeners):
            listener(state)
        return state

    def _reject(self, message: str) -> ControllerState:
        self.logger.log("run_rejected", {"reason": message})
        return self._set_state(ControllerState(ControllerStatus.ERROR, error=message))

    def _require_auth(self, request_id: int | None, message: str) -> ControllerState:
        state = self._set_state(
            ControllerState(ControllerStatus.ERROR, request_id=request_id, error=message, auth_required=True)
        )
        if self.navigator is not None:
            self.navigator.redirect_to_authentication()
        return state

    def _next_request_id(self) -> int:
        self._request_counter += 1
        self._latest_request_id = self._request_counter
        return self._request_counter

    def _is_latest(self, request_id: int) -> bool:
        return request_id == self._latest_request_id

    def remaining_quota(self) -> int:
        identity = self.guard.current_identity()
        if identity is None:
            return 0
        return self.ledger.remaining(identity)

    # ---- runs ----

    async def run(self, prompt: str, subject: str | Subject) -> ControllerState:
        return await self._execute(prompt, subject, prior_artifact=None)

    async def run_follow_up(self, prompt: str) -> ControllerState:
        if self._prior_artifact is None or self._last_subject is None:
            return self._reject("Run a simulation before asking a follow-up question")
        return await self._execute(prompt, self._last_subject, prior_artifact=self._prior_artifact)

    def _units_for(self, outcome: Outcome, prompt: str) -> int:
        if outcome.units_used is not None:
            return outcome.units_used
        if isinstance(outcome, Artifact):
            return self.ledger.estimate_units(prompt, outcome.result_text())
        return 0

    async def _execute(self, prompt: str, subject: str | Subject, prior_artifact: Artifact | None) -> ControllerState:
        text = prompt.strip()
        if not text:
            return self._reject("Please enter a prompt describing the simulation")
        if len(text) > self.max_prompt_chars:
            return self._reject(f"Prompt is too long ({len(text)} characters, maximum {self.max_prompt_chars})")
        try:
            parsed_subject = Subject.parse(subject)
        except ValueError as exc:
            return self._reject(str(exc))

        if self.guard.state is SessionState.UNINITIALIZED:
            await self.guard.initialize()
        identity = self.guard.current_identity()
        if identity is None:
            return self._require_auth(None, "Please sign in to run simulations")
        if not self.ledger.try_reserve(identity):
            return self._reject(
                f"Usage limit reached: {self.ledger.consumed(identity)}/{self.ledger.limit} units used"
            )

        request_id = self._next_request_id()
        self._last_subject = parsed_subject
        self.renderer.teardown()
        self._set_state(ControllerState(ControllerStatus.LOADING, request_id=request_id))
        context = _RunContext(GenerationRequest(request_id, text, parsed_subject, prior_artifact))

        async def generate(session: Session) -> Outcome:
            context.identity = session.identity
            return await self.client.generate(context.request, session)

        try:
            outcome = await self.guard.with_valid_session(generate)
        except SessionInvalid as exc:
            if not self._is_latest(request_id):
                self.logger.log("stale_response_dropped", {"request_id": request_id, "kind": "session_invalid"})
                return self._state
            return self._require_auth(request_id, str(exc))
        except Exception as exc:
            self.logger.log("generation_unexpected_error", {"request_id": request_id, "error": repr(exc)})
            if not self._is_latest(request_id):
                return self._state
            return self._set_state(
                ControllerState(ControllerStatus.ERROR, request_id=request_id, error=f"Failed to generate simulation: {exc}")
            )

        self.ledger.commit(context.identity or identity, request_id, self._units_for(outcome, text))

        if not self._is_latest(request_id):
            self.logger.log(
                "stale_response_dropped",
                {"request_id": request_id, "latest_request_id": self._latest_request_id, "kind": type(outcome).__name__},
            )
            return self._state

        if isinstance(outcome, Clarification):
            return self._set_state(
                ControllerState(ControllerStatus.SUGGESTION, request_id=request_id, suggestion=outcome.suggested_prompt)
            )
        if isinstance(outcome, Failure):
            return self._set_state(ControllerState(ControllerStatus.ERROR, request_id=request_id, error=outcome.message))

        result = await self.renderer.render(outcome)
        if not self._is_latest(request_id) or result.superseded:
            self.logger.log("stale_response_dropped", {"request_id": request_id, "kind": "render"})
            return self._state
        self._prior_artifact = outcome
        return self._set_state(
            ControllerState(
                ControllerStatus.READY,
                request_id=request_id,
                artifact=outcome,
                render_error=result.error,
            )
        )

    # ---- lifecycle ----

    def reset(self) -> ControllerState:
        # Consuming an id makes every in-flight response stale.
        self._next_request_id()
        self._prior_artifact = None
        self.renderer.teardown()
        return self._set_state(ControllerState())

    async def sign_out(self) -> ControllerState:
        state = self.reset()
        await self.guard.sign_out()
        if self.navigator is not None:
            self.navigator.redirect_to_authentication()
        return state

    async def close(self) -> None:
        self._next_request_id()
        self.renderer.teardown()
        await self.guard.close()
        await self.client.close()


def build_controller(
    config: AppConfig,
    store: CredentialStore,
    logger: EventLogger,
    *,
    navigator: Navigator | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> SimulationController:
    """Wire the controller and its collaborators from config."""
    guard = SessionGuard(
        store,
        logger,
        refresh_threshold_seconds=config.session.refresh_threshold_seconds,
        refresh_retries=config.session.refresh_retries,
        revalidate_interval_seconds=config.session.revalidate_interval_seconds,
    )
    ledger = QuotaLedger(logger, limit=config.quota.limit, chars_per_unit=config.quota.chars_per_unit)
    client = GenerationClient(
        config.generation.endpoint,
        logger,
        timeout_seconds=config.generation.timeout_seconds,
        diagnostic_body_chars=config.generation.diagnostic_body_chars,
        http_client=http_client,
    )
    renderer = SandboxRenderer(
        logger,
        executor=SandboxExecutor(
            timeout_seconds=config.sandbox.execution_timeout_seconds,
            allowed_modules=config.sandbox.allowed_modules,
        ),
        readiness_timeout_seconds=config.sandbox.readiness_timeout_seconds,
        frame_interval_seconds=config.sandbox.frame_interval_seconds,
        max_pending_timers=config.sandbox.max_pending_timers,
        max_draw_commands=config.sandbox.max_draw_commands,
        max_console_lines=config.sandbox.max_console_lines,
    )
    return SimulationController(
        guard,
        ledger,
        client,
        renderer,
        logger,
        navigator=navigator,
        max_prompt_chars=config.generation.max_prompt_chars,
    )
