"""Execution namespace for generated simulation scripts."""

from __future__ import annotations

import ast
import builtins
import random
import signal
import time
from contextlib import contextmanager
from dataclasses import dataclass
from types import CodeType, FrameType, ModuleType, SimpleNamespace
from typing import Any, Callable, Generator, Iterable

BLOCKED_BUILTINS = {
    "__import__",
    "breakpoint",
    "compile",
    "delattr",
    "eval",
    "exec",
    "exit",
    "getattr",
    "globals",
    "hasattr",
    "help",
    "input",
    "locals",
    "memoryview",
    "open",
    "quit",
    "setattr",
    "vars",
}


def _timeout_handler(_signum: int, _frame: FrameType | None) -> None:
    raise TimeoutError("execution timed out")


@contextmanager
def _timeout_context(seconds: int) -> Generator[None, None, None]:
    old_handler: Any = None
    try:
        old_handler = signal.signal(signal.SIGALRM, _timeout_handler)
        signal.alarm(seconds)
    except (ValueError, AttributeError):
        # signal.alarm missing on some platforms or off the main thread, skip timeout enforcement
        pass
    try:
        yield
    finally:
        try:
            signal.alarm(0)
            if old_handler is not None:
                signal.signal(signal.SIGALRM, old_handler)
        except (ValueError, AttributeError):
            pass


def _module_view(module: ModuleType) -> SimpleNamespace:
    """Public, non-module attributes only, so submodules like ``json.codecs`` stay out of reach."""
    return SimpleNamespace(
        **{
            name: value
            for name, value in vars(module).items()
            if not name.startswith("_") and not isinstance(value, ModuleType)
        }
    )


def _random_view() -> SimpleNamespace:
    """Module view whose functions are bound to a private generator instead of the host's."""
    view = _module_view(random)
    generator = random.Random()
    for name, value in list(vars(view).items()):
        if isinstance(getattr(value, "__self__", None), random.Random):
            setattr(view, name, getattr(generator, name))
    return view


def _safe_getattr(obj: Any, name: str, *default: Any) -> Any:
    if name.startswith("_"):
        raise AttributeError(f"access to '{name}' is not allowed in simulations")
    return getattr(obj, name, *default)


def _safe_hasattr(obj: Any, name: str) -> bool:
    if name.startswith("_"):
        return False
    return hasattr(obj, name)


class _PrivateAccessChecker(ast.NodeVisitor):
    def __init__(self) -> None:
        self.violations: list[str] = []

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self.violations.append(f"line {node.lineno}: attribute '{node.attr}'")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self.violations.append(f"line {node.lineno}: name '{node.id}'")

    def visit_Constant(self, node: ast.Constant) -> None:
        # str.format can walk dunder attributes
        if isinstance(node.value, str) and "__" in node.value:
            self.violations.append(f"line {node.lineno}: string containing '__'")


@dataclass
class ExecutionResult:
    success: bool
    error: str | None = None
    execution_time_ms: float = 0.0


class SandboxExecutor:
    """Compiles and runs generated code in namespaces with curated builtins.

    Every namespace gets its own module views, so state a script leaves on
    ``math`` or ``random`` never reaches the next render or the host.
    """

    def __init__(self, timeout_seconds: int = 5, allowed_modules: Iterable[str] = ("math", "random", "json")) -> None:
        self.timeout_seconds = timeout_seconds
        self.allowed_modules = frozenset(allowed_modules)

    def _view(self, name: str) -> SimpleNamespace:
        if name == "random":
            return _random_view()
        return _module_view(__import__(name))

    def _importer(self, views: dict[str, SimpleNamespace]) -> Callable[..., Any]:
        def safe_import(
            name: str,
            globals: dict[str, Any] | None = None,
            locals: dict[str, Any] | None = None,
            fromlist: tuple[str, ...] | None = (),
            level: int = 0,
        ) -> Any:
            root = name.split(".")[0]
            if level != 0 or root not in self.allowed_modules or "." in name:
                raise ImportError(f"import of '{name}' is not allowed in simulations")
            if root not in views:
                views[root] = self._view(root)
            return views[root]

        return safe_import

    def validate_code(self, code: str) -> tuple[bool, str]:
        if not code.strip():
            return False, "empty script"
        try:
            tree = ast.parse(code, "<simulation>", "exec")
        except SyntaxError as exc:
            return False, f"syntax error: {exc}"
        checker = _PrivateAccessChecker()
        checker.visit(tree)
        if checker.violations:
            return False, "private access is not allowed: " + "; ".join(checker.violations[:5])
        return True, ""

    def compile(self, code: str) -> CodeType:
        return compile(code, "<simulation>", "exec")

    def build_namespace(self, injected: dict[str, Any]) -> dict[str, Any]:
        views = {name: self._view(name) for name in ("math", "random", "json") if name in self.allowed_modules}
        safe_builtins = {name: value for name, value in vars(builtins).items() if name not in BLOCKED_BUILTINS}
        safe_builtins["__import__"] = self._importer(views)
        safe_builtins["getattr"] = _safe_getattr
        safe_builtins["hasattr"] = _safe_hasattr
        namespace: dict[str, Any] = {
            "__builtins__": safe_builtins,
            "__name__": "__simulation__",
        }
        namespace.update(views)
        namespace.update(injected)
        return namespace

    def _guarded(self, action: Callable[[], Any]) -> ExecutionResult:
        wall_start = time.perf_counter()
        try:
            with _timeout_context(self.timeout_seconds):
                action()
        except TimeoutError:
            return ExecutionResult(False, "execution timed out", (time.perf_counter() - wall_start) * 1000)
        except BaseException as exc:
            # generated code may raise anything, including SystemExit and KeyboardInterrupt
            return ExecutionResult(
                False,
                f"runtime error: {type(exc).__name__}: {exc}",
                (time.perf_counter() - wall_start) * 1000,
            )
        return ExecutionResult(True, None, (time.perf_counter() - wall_start) * 1000)

    def execute(self, code: CodeType, namespace: dict[str, Any]) -> ExecutionResult:
        return self._guarded(lambda: exec(code, namespace))

    def invoke(self, callback: Callable[..., Any], *args: Any) -> ExecutionResult:
        return self._guarded(lambda: callback(*args))
