"""Renders generated artifacts inside an isolated, disposable sandbox instance.

Every render tears down the previous instance first: pending timers and
animation frames are cancelled, script namespaces are released and the
container document is cleared. Errors raised by generated code are converted
into an in-document error block and never reach the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from types import CodeType
from typing import Any, Callable

from ..errors import SandboxLimitError
from ..generation.models import Artifact
from ..logger import EventLogger
from .document import CanvasElement, MarkupError, SandboxDocument
from .executor import SandboxExecutor

MIN_INTERVAL_MS = 4.0


class InstanceStatus(str, Enum):
    MOUNTING = "mounting"
    READY = "ready"
    RUNNING = "running"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


class TimerKind(str, Enum):
    TIMEOUT = "timeout"
    INTERVAL = "interval"
    ANIMATION_FRAME = "animation_frame"


@dataclass
class TimerRecord:
    handle_id: int
    kind: TimerKind
    handle: asyncio.TimerHandle
    callback: Callable[..., Any]
    args: tuple[Any, ...] = ()
    interval_seconds: float = 0.0


@dataclass
class ScriptHandle:
    handle_id: int
    code: CodeType | None
    namespace: dict[str, Any] | None

    def release(self) -> None:
        if self.namespace is not None:
            self.namespace.clear()
        self.namespace = None
        self.code = None


@dataclass
class RenderResult:
    success: bool
    instance_id: int
    error: str | None = None
    superseded: bool = False


@dataclass
class SandboxInstance:
    instance_id: int
    artifact: Artifact | None
    container: SandboxDocument | None = None
    surface: CanvasElement | None = None
    pending_timers: dict[int, TimerRecord] = field(default_factory=dict)
    injected_scripts: dict[int, ScriptHandle] = field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.MOUNTING
    error: str | None = None
    console: list[str] = field(default_factory=list)
    started_at: float = 0.0
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    _next_handle: int = 0

    @property
    def is_live(self) -> bool:
        return self.status is not InstanceStatus.TORN_DOWN

    def next_handle_id(self) -> int:
        self._next_handle += 1
        return self._next_handle

    def live_handle_count(self) -> int:
        return len(self.pending_timers) + len(self.injected_scripts)

    def add_script(self, code: CodeType, namespace: dict[str, Any]) -> ScriptHandle:
        script = ScriptHandle(self.next_handle_id(), code, namespace)
        self.injected_scripts[script.handle_id] = script
        return script

    def cancel_timers(self) -> int:
        cancelled = len(self.pending_timers)
        for record in self.pending_timers.values():
            record.handle.cancel()
        self.pending_timers.clear()
        return cancelled

    def teardown(self) -> dict[str, int]:
        timers = self.cancel_timers()
        scripts = len(self.injected_scripts)
        for script in self.injected_scripts.values():
            script.release()
        self.injected_scripts.clear()
        if self.container is not None:
            self.container.clear()
        self.container = None
        self.surface = None
        self.artifact = None
        self.status = InstanceStatus.TORN_DOWN
        return {"timers_cancelled": timers, "scripts_released": scripts}


class SandboxConsole:
    """``console`` object exposed to generated code."""

    def __init__(self, instance: SandboxInstance, limit: int) -> None:
        self._instance = instance
        self._limit = limit

    def _write(self, level: str, args: tuple[Any, ...]) -> None:
        lines = self._instance.console
        lines.append(f"[{level}] " + " ".join(str(a) for a in args))
        if len(lines) > self._limit:
            del lines[: len(lines) - self._limit]

    def log(self, *args: Any) -> None:
        self._write("log", args)

    def info(self, *args: Any) -> None:
        self._write("info", args)

    def warn(self, *args: Any) -> None:
        self._write("warn", args)

    def error(self, *args: Any) -> None:
        self._write("error", args)


class SandboxRenderer:
    """Sole owner of the active ``SandboxInstance``."""

    def __init__(
        self,
        logger: EventLogger,
        *,
        executor: SandboxExecutor | None = None,
        readiness_timeout_seconds: float = 2.0,
        frame_interval_seconds: float = 1.0 / 60.0,
        max_pending_timers: int = 256,
        max_draw_commands: int = 5000,
        max_console_lines: int = 200,
    ) -> None:
        self.logger = logger
        self.executor = executor or SandboxExecutor()
        self.readiness_timeout_seconds = readiness_timeout_seconds
        self.frame_interval_seconds = frame_interval_seconds
        self.max_pending_timers = max_pending_timers
        self.max_draw_commands = max_draw_commands
        self.max_console_lines = max_console_lines
        self._instance: SandboxInstance | None = None
        self._sequence = 0

    @property
    def active_instance(self) -> SandboxInstance | None:
        return self._instance

    def live_handle_count(self) -> int:
        return self._instance.live_handle_count() if self._instance is not None else 0

    # ---- lifecycle ----

    def teardown(self) -> None:
        instance = self._instance
        if instance is None:
            return
        self._instance = None
        released = instance.teardown()
        self.logger.log("sandbox_torn_down", {"instance_id": instance.instance_id, **released})

    def _fail_fast(self, instance: SandboxInstance, message: str) -> RenderResult:
        instance.status = InstanceStatus.FAILED
        instance.error = message
        if instance.container is None:
            instance.container = SandboxDocument(max_draw_commands=self.max_draw_commands)
        instance.container.show_error("Simulation Setup Error", message)
        self.logger.log("sandbox_setup_error", {"instance_id": instance.instance_id, "error": message})
        return RenderResult(False, instance.instance_id, message)

    def _contain(self, instance: SandboxInstance, message: str, title: str) -> None:
        if not instance.is_live or instance.status is InstanceStatus.FAILED:
            return
        timers = instance.cancel_timers()
        instance.status = InstanceStatus.FAILED
        instance.error = message
        if instance.container is not None:
            instance.container.show_error(title, message)
        self.logger.log(
            "sandbox_runtime_error",
            {"instance_id": instance.instance_id, "error": message, "timers_cancelled": timers},
        )

    async def render(self, artifact: Artifact) -> RenderResult:
        self.teardown()

        self._sequence += 1
        instance = SandboxInstance(self._sequence, artifact)
        self._instance = instance
        self.logger.log(
            "sandbox_mounting",
            {
                "instance_id": instance.instance_id,
                "markup_chars": len(artifact.markup),
                "script_chars": len(artifact.script),
            },
        )

        try:
            document = SandboxDocument.parse(artifact.markup, max_draw_commands=self.max_draw_commands)
        except MarkupError as exc:
            return self._fail_fast(instance, f"Invalid simulation markup: {exc}")
        instance.container = document
        if document.stripped_tags:
            self.logger.log(
                "sandbox_markup_stripped",
                {"instance_id": instance.instance_id, "tags": sorted(set(document.stripped_tags))},
            )

        canvases = document.canvases
        if not canvases:
            return self._fail_fast(instance, "Simulation markup has no <canvas> drawing surface")
        instance.surface = canvases[0]

        valid, message = self.executor.validate_code(artifact.script)
        if not valid:
            return self._fail_fast(instance, f"Invalid simulation script: {message}")
        code = self.executor.compile(artifact.script)

        loop = asyncio.get_running_loop()
        instance.status = InstanceStatus.READY
        loop.call_soon(instance.ready.set)
        try:
            await asyncio.wait_for(instance.ready.wait(), timeout=self.readiness_timeout_seconds)
        except asyncio.TimeoutError:
            return self._fail_fast(instance, "Sandbox did not report ready")

        if instance is not self._instance or not instance.is_live:
            return RenderResult(False, instance.instance_id, "superseded before execution", superseded=True)

        namespace = self.executor.build_namespace(self._bindings(instance, document, instance.surface))
        instance.add_script(code, namespace)
        instance.status = InstanceStatus.RUNNING
        instance.started_at = loop.time()

        result = self.executor.execute(code, namespace)
        if not result.success:
            error = result.error or "script failed"
            self._contain(instance, error, "Script Error")
            return RenderResult(False, instance.instance_id, error)

        self.logger.log(
            "sandbox_rendered",
            {
                "instance_id": instance.instance_id,
                "execution_time_ms": result.execution_time_ms,
                "pending_timers": len(instance.pending_timers),
            },
        )
        return RenderResult(True, instance.instance_id)

    # ---- timers ----

    def _schedule(
        self,
        instance: SandboxInstance,
        kind: TimerKind,
        callback: Callable[..., Any],
        delay_seconds: float,
        args: tuple[Any, ...] = (),
    ) -> int:
        if not callable(callback):
            raise TypeError("timer callback must be callable")
        if not instance.is_live or instance.status is InstanceStatus.FAILED:
            return 0
        if len(instance.pending_timers) >= self.max_pending_timers:
            raise SandboxLimitError("pending timer", self.max_pending_timers)
        handle_id = instance.next_handle_id()
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay_seconds, self._fire, instance, handle_id)
        instance.pending_timers[handle_id] = TimerRecord(
            handle_id,
            kind,
            handle,
            callback,
            args,
            delay_seconds if kind is TimerKind.INTERVAL else 0.0,
        )
        return handle_id

    def _fire(self, instance: SandboxInstance, handle_id: int) -> None:
        record = instance.pending_timers.get(handle_id)
        if record is None or instance.status is not InstanceStatus.RUNNING:
            return
        loop = asyncio.get_running_loop()
        if record.kind is TimerKind.INTERVAL:
            record.handle = loop.call_later(record.interval_seconds, self._fire, instance, handle_id)
        else:
            del instance.pending_timers[handle_id]

        if record.kind is TimerKind.ANIMATION_FRAME:
            args: tuple[Any, ...] = ((loop.time() - instance.started_at) * 1000.0,)
        else:
            args = record.args
        result = self.executor.invoke(record.callback, *args)
        if not result.success:
            self._contain(instance, result.error or "callback failed", "Simulation Error")

    def _cancel(self, instance: SandboxInstance, handle_id: int) -> None:
        record = instance.pending_timers.pop(handle_id, None)
        if record is not None:
            record.handle.cancel()

    def _bindings(self, instance: SandboxInstance, document: SandboxDocument, surface: CanvasElement) -> dict[str, Any]:
        def set_timeout(callback: Callable[..., Any], delay_ms: float = 0, *args: Any) -> int:
            return self._schedule(instance, TimerKind.TIMEOUT, callback, max(0.0, float(delay_ms)) / 1000.0, args)

        def set_interval(callback: Callable[..., Any], delay_ms: float = 0, *args: Any) -> int:
            delay = max(MIN_INTERVAL_MS, float(delay_ms)) / 1000.0
            return self._schedule(instance, TimerKind.INTERVAL, callback, delay, args)

        def request_animation_frame(callback: Callable[[float], Any]) -> int:
            return self._schedule(instance, TimerKind.ANIMATION_FRAME, callback, self.frame_interval_seconds)

        def cancel(handle_id: int) -> None:
            self._cancel(instance, handle_id)

        return {
            "document": document,
            "canvas": surface,
            "console": SandboxConsole(instance, self.max_console_lines),
            "set_timeout": set_timeout,
            "clear_timeout": cancel,
            "set_interval": set_interval,
            "clear_interval": cancel,
            "request_animation_frame": request_animation_frame,
            "cancel_animation_frame": cancel,
        }

    # ---- inspection ----

    def snapshot(self) -> dict[str, Any]:
        instance = self._instance
        if instance is None:
            return {"mounted": False}
        canvas: dict[str, Any] | None = None
        if instance.surface is not None:
            context = instance.surface.get_context("2d")
            canvas = {
                "id": instance.surface.id,
                "width": instance.surface.width,
                "height": instance.surface.height,
                "frames": context.frames if context is not None else 0,
                "commands": list(context.commands) if context is not None else [],
            }
        return {
            "mounted": True,
            "instance_id": instance.instance_id,
            "status": instance.status.value,
            "error": instance.error,
            "document": instance.container.to_html() if instance.container is not None else "",
            "canvas": canvas,
            "console": list(instance.console),
            "pending_timers": len(instance.pending_timers),
            "explanation": instance.artifact.explanation if instance.artifact is not None else None,
        }
