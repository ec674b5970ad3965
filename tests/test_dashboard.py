from __future__ import annotations

import time

import httpx
from fastapi.testclient import TestClient

from conceptsim.config import AppConfig
from conceptsim.dashboard import DashboardNavigator, create_app
from conceptsim.logger import EventLogger
from conceptsim.session import InMemoryCredentialStore, Session
from conceptsim.simulation import build_controller

ARTIFACT = {
    "markup": '<canvas id="sim" width="320" height="200"></canvas>',
    "script": "ctx = canvas.get_context('2d')\nctx.fill_rect(10, 10, 50, 50)\nconsole.log('drawn')\n",
    "explanation": "A square.",
    "usage": {"totalUnits": 40},
}


def _handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=ARTIFACT)


def _app(tmp_path, *, session: Session | None = None, event_limit: int = 500):
    cfg = AppConfig()
    cfg.logging.logs_dir = str(tmp_path / "logs")
    logger = EventLogger(logs_dir=cfg.logging.logs_dir, run_id="test_dashboard")
    store = InMemoryCredentialStore(session)
    navigator = DashboardNavigator()
    controller = build_controller(
        cfg,
        store,
        logger,
        navigator=navigator,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
    )
    app = create_app(controller_provider=lambda: controller, navigator=navigator, event_limit=event_limit)
    return app, controller


def _session() -> Session:
    return Session(identity="user-1", access_token="tok", expires_at=time.time() + 3600)


def test_index_and_health(tmp_path) -> None:
    app, _ = _app(tmp_path, session=_session())
    with TestClient(app) as client:
        assert client.get("/health").json() == {"ok": True}
        page = client.get("/")
        assert page.status_code == 200
        assert "Run Simulation" in page.text
        assert '"Computer Science"' in page.text


def test_simulate_flow_exposes_state_sandbox_console_and_events(tmp_path) -> None:
    app, controller = _app(tmp_path, session=_session())
    with TestClient(app) as client:
        run = client.post("/simulate", json={"prompt": "Draw a square", "subject": "Mathematics"}).json()
        assert run["success"] is True
        assert run["controller"]["status"] == "ready"
        assert run["remaining_quota"] == 1960
        assert run["session"]["identity"] == "user-1"
        assert "access_token" not in run["session"]

        sandbox = client.get("/sandbox").json()
        assert sandbox["mounted"] is True
        assert sandbox["canvas"]["width"] == 320
        assert sandbox["canvas"]["commands"] == [{"op": "fill_rect", "args": [10, 10, 50, 50]}]
        assert sandbox["console"] == ["[log] drawn"]

        console = client.get("/console").json()
        assert '"totalUnits": 40' in console["raw_response"]

        quota = client.get("/quota").json()
        assert quota["remaining"] == 1960
        assert quota["ledger"]["user-1"]["units_consumed"] == 40

        events = client.get("/events", params={"limit": 500}).json()
        types = {e["event_type"] for e in events["events"]}
        assert {"generation_artifact", "quota_committed", "sandbox_rendered"} <= types
        first = client.get("/events", params={"offset": 0, "limit": 1}).json()
        assert first["count"] == 1

        follow = client.post("/simulate/follow-up", json={"prompt": "Make it a circle"}).json()
        assert follow["controller"]["request_id"] == 2

        reset = client.post("/simulate/reset").json()
        assert reset["controller"]["status"] == "idle"
        assert client.get("/sandbox").json() == {"mounted": False}
    controller.renderer.teardown()


def test_invalid_prompt_reports_error(tmp_path) -> None:
    app, _ = _app(tmp_path, session=_session())
    with TestClient(app) as client:
        body = client.post("/simulate", json={"prompt": "  ", "subject": "Physics"}).json()
    assert body["success"] is False
    assert body["controller"]["error"] == "Please enter a prompt describing the simulation"


def test_run_without_session_asks_for_sign_in(tmp_path) -> None:
    app, _ = _app(tmp_path)
    with TestClient(app) as client:
        body = client.post("/simulate", json={"prompt": "Draw a square"}).json()
    assert body["controller"]["auth_required"] is True
    assert body["auth_redirects"] == 1
    assert body["session_state"] == "invalid"


def test_sign_out_invalidates_session(tmp_path) -> None:
    app, controller = _app(tmp_path, session=_session())
    with TestClient(app) as client:
        client.post("/simulate", json={"prompt": "Draw a square"})
        body = client.post("/session/sign-out").json()
    assert body["success"] is True
    assert body["session_state"] == "invalid"
    assert body["session"] is None
    assert body["remaining_quota"] == 0
    assert body["auth_redirects"] == 1
    assert controller.renderer.active_instance is None


def test_missing_controller_returns_503() -> None:
    app = create_app(controller_provider=lambda: None)
    with TestClient(app) as client:
        response = client.get("/state")
    assert response.status_code == 503


def test_event_pages_are_capped_by_configured_limit(tmp_path) -> None:
    app, controller = _app(tmp_path, session=_session(), event_limit=3)
    with TestClient(app) as client:
        client.post("/simulate", json={"prompt": "Draw a square"})
        assert len(controller.logger.read_recent(100)) > 3
        assert client.get("/events").json()["count"] == 3
        assert client.get("/events", params={"limit": 50}).json()["count"] == 3
        assert client.get("/events", params={"limit": 2}).json()["count"] == 2
        assert client.get("/events", params={"limit": 0}).status_code == 422
    controller.renderer.teardown()
