"""conceptsim command-line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .dashboard import DashboardNavigator, create_app
from .errors import CredentialStoreError
from .generation.models import Subject
from .logger import EventLogger
from .session import HttpCredentialStore, InMemoryCredentialStore, Session
from .simulation import SimulationController, build_controller


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate and run concept simulations")
    parser.add_argument("--config", default="config/config.yaml", help="Path to config YAML")
    parser.add_argument("--prompt", default=None, help="Describe the simulation to generate")
    parser.add_argument(
        "--subject",
        default=Subject.MATHEMATICS.value,
        choices=[s.value for s in Subject],
        help="Subject area for the prompt",
    )
    parser.add_argument("--follow-up", default=None, help="Follow-up question about the generated simulation")
    parser.add_argument("--access-token", default=None, help="Use a static bearer token instead of signing in")
    parser.add_argument("--identity", default=None, help="Identity to bill when using --access-token")
    parser.add_argument("--sign-up", action="store_true", help="Register the configured email account instead of signing in")
    parser.add_argument("--run-seconds", type=float, default=0.0, help="Keep the sandbox running this long")
    parser.add_argument("--dashboard", action="store_true", help="Serve the dashboard UI")
    parser.add_argument("--host", default=None, help="Dashboard host override")
    parser.add_argument("--port", type=int, default=None, help="Dashboard port override")
    return parser.parse_args(argv)


async def _build_store(
    config: AppConfig,
    access_token: str | None,
    identity: str | None,
    *,
    sign_up: bool = False,
) -> InMemoryCredentialStore | HttpCredentialStore:
    creds = config.credentials
    token = access_token or os.getenv(creds.access_token_env)
    if creds.provider == "static" or token:
        if not token:
            raise ValueError(f"static credentials need --access-token or ${creds.access_token_env}")
        email = os.getenv(creds.email_env)
        return InMemoryCredentialStore(
            Session(identity=identity or email or "local", access_token=token, email=email)
        )

    api_key = os.getenv(creds.api_key_env, "")
    email = os.getenv(creds.email_env)
    password = os.getenv(creds.password_env)
    store = HttpCredentialStore(creds.base_url, api_key, timeout_seconds=creds.timeout_seconds)
    if email and password:
        try:
            if sign_up:
                if await store.sign_up(email, password) is None:
                    print(f"signed up {email}: confirm the address from your inbox, then sign in")
            else:
                await store.sign_in_with_password(email, password)
        except CredentialStoreError as exc:
            # The guard reports the missing session; keep running so the UI can show it.
            print(f"{'sign-up' if sign_up else 'sign-in'} failed: {exc}")
    return store


def _new_logger(config: AppConfig) -> EventLogger:
    return EventLogger(
        logs_dir=config.logging.logs_dir,
        run_id=datetime.now(timezone.utc).strftime("run_%Y%m%d_%H%M%S"),
        event_file_name=config.logging.event_file_name,
    )


def _print_summary(controller: SimulationController) -> None:
    state = controller.state
    print("=== conceptsim ===")
    print(f"status: {state.status.value}")
    if state.suggestion:
        print(f"suggestion: {state.suggestion}")
    if state.error:
        print(f"error: {state.error}")
    if state.render_error:
        print(f"render_error: {state.render_error}")
    if state.artifact is not None and state.artifact.explanation:
        print(f"explanation: {state.artifact.explanation}")
    snapshot = controller.renderer.snapshot()
    if snapshot["mounted"]:
        print(f"draw_commands: {len(snapshot['canvas']['commands']) if snapshot['canvas'] else 0}")
        for line in snapshot["console"]:
            print(f"console: {line}")
    print(f"remaining_quota: {controller.remaining_quota()}")
    print(f"log_path: {controller.logger.output_path}")


async def _run_headless(config: AppConfig, args: argparse.Namespace) -> SimulationController:
    logger = _new_logger(config)
    store = await _build_store(config, args.access_token, args.identity, sign_up=args.sign_up)
    controller = build_controller(config, store, logger)
    try:
        await controller.run(args.prompt, args.subject)
        if args.follow_up:
            await controller.run_follow_up(args.follow_up)
        if args.run_seconds > 0:
            await asyncio.sleep(args.run_seconds)
        _print_summary(controller)
    finally:
        await controller.close()
        if isinstance(store, HttpCredentialStore):
            await store.close()
    return controller


async def _run_with_dashboard(config: AppConfig, args: argparse.Namespace) -> None:
    import uvicorn

    logger = _new_logger(config)
    store = await _build_store(config, args.access_token, args.identity, sign_up=args.sign_up)
    navigator = DashboardNavigator()
    controller = build_controller(config, store, logger, navigator=navigator)
    await controller.guard.initialize()
    controller.guard.start_revalidation()

    app = create_app(
        controller_provider=lambda: controller,
        navigator=navigator,
        event_limit=config.logging.recent_event_limit,
    )
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=args.host or config.dashboard.host,
            port=args.port or config.dashboard.port,
            log_level="warning",
        )
    )
    try:
        await server.serve()
    finally:
        await controller.close()
        if isinstance(store, HttpCredentialStore):
            await store.close()


def _select_mode(config: AppConfig, args: argparse.Namespace) -> str | None:
    """Pick "dashboard" or "headless"; None when there is nothing to run."""
    if args.dashboard or not args.prompt:
        return "dashboard" if config.dashboard.enabled else None
    return "headless"


def main() -> int:
    load_dotenv()
    args = _parse_args()

    os.chdir(Path(__file__).resolve().parents[2])

    config = load_config(args.config)
    if args.run_seconds < 0:
        raise ValueError("--run-seconds must be >= 0")

    mode = _select_mode(config, args)
    if mode is None:
        if args.dashboard:
            print("dashboard is disabled in config (dashboard.enabled: false)")
        else:
            print("nothing to do: pass --prompt or enable the dashboard")
        return 2

    if mode == "dashboard":
        asyncio.run(_run_with_dashboard(config, args))
        return 0

    controller = asyncio.run(_run_headless(config, args))
    return 0 if controller.state.error is None else 1


if __name__ == "__main__":
    raise SystemExit(main())
