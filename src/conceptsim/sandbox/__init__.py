"""Sandbox package exports."""

from .document import CanvasContext2D, CanvasElement, Element, MarkupError, SandboxDocument
from .executor import ExecutionResult, SandboxExecutor
from .renderer import InstanceStatus, RenderResult, SandboxInstance, SandboxRenderer

__all__ = [
    "CanvasContext2D",
    "CanvasElement",
    "Element",
    "ExecutionResult",
    "InstanceStatus",
    "MarkupError",
    "RenderResult",
    "SandboxDocument",
    "SandboxExecutor",
    "SandboxInstance",
    "SandboxRenderer",
]
