"""Presentation API and single-page simulation UI."""

from __future__ import annotations

from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from ..generation.models import Subject
from ..simulation.controller import SimulationController


_DASHBOARD_HTML = """<!doctype html>
<html lang=\"en\">
<head>
  <meta charset=\"utf-8\" />
  <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
  <title>conceptsim</title>
  <style>
    :root {
      --bg: #0f1420;
      --panel: #171f31;
      --text: #e8eefc;
      --muted: #9fb1d1;
      --accent: #f2c14e;
      --danger: #e76f51;
      --mono: "IBM Plex Mono", "Consolas", monospace;
      --sans: "IBM Plex Sans", "Segoe UI", sans-serif;
    }
    * { box-sizing: border-box; }
    body { margin: 0; font-family: var(--sans); color: var(--text); background: var(--bg); }
    .wrap { display: grid; grid-template-columns: 320px 1fr; gap: 16px; padding: 20px; }
    .panel {
      background: var(--panel);
      border: 1px solid rgba(255,255,255,.08);
      border-radius: 14px;
      padding: 14px;
      display: flex;
      flex-direction: column;
      gap: 10px;
    }
    .panel h2 { margin: 0; font-size: 15px; color: var(--muted); text-transform: uppercase; letter-spacing: .08em; }
    select, textarea { width: 100%; background: #222c44; color: var(--text); border: 0; border-radius: 8px; padding: 8px; }
    textarea { height: 160px; resize: none; }
    button { border: 0; border-radius: 8px; padding: 8px 12px; font: 13px var(--sans); cursor: pointer; background: var(--accent); color: #111; }
    button.secondary { background: #8fa4cc; }
    button.danger { background: var(--danger); color: #fff; }
    .notice { border-radius: 8px; padding: 10px; font-size: 13px; display: none; }
    .notice.suggestion { background: rgba(242,193,78,.12); color: #f7dd9b; }
    .notice.error { background: rgba(231,111,81,.15); color: #f5b8a8; }
    canvas { background: #fff; border-radius: 8px; align-self: center; }
    pre { margin: 0; white-space: pre-wrap; word-break: break-word; font: 12px/1.45 var(--mono); color: #dce8ff; max-height: 220px; overflow: auto; }
    .status { color: var(--muted); font-size: 13px; }
  </style>
</head>
<body>
  <div class=\"wrap\">
    <section class=\"panel\">
      <h2>Simulation Prompt</h2>
      <label>Subject <select id=\"subject\"></select></label>
      <label>Prompt <textarea id=\"prompt\" placeholder=\"Describe what you want to simulate...\"></textarea></label>
      <button onclick=\"run('/simulate')\">Run Simulation</button>
      <button class=\"secondary\" onclick=\"run('/simulate/follow-up')\">Ask Follow-up</button>
      <button class=\"secondary\" onclick=\"post('/simulate/reset')\">Reset Simulation</button>
      <button class=\"danger\" onclick=\"post('/session/sign-out')\">Sign Out</button>
      <div class=\"status\" id=\"statusLine\">loading...</div>
    </section>
    <section class=\"panel\">
      <h2>Simulation</h2>
      <div class=\"notice suggestion\" id=\"suggestion\"></div>
      <div class=\"notice error\" id=\"error\"></div>
      <canvas id=\"surface\" width=\"600\" height=\"400\"></canvas>
      <pre id=\"document\"></pre>
      <h2>Response Console</h2>
      <pre id=\"console\"></pre>
    </section>
  </div>
  <script>
    const SUBJECTS = __SUBJECTS__;
    const subjectSelect = document.getElementById('subject');
    SUBJECTS.forEach((s) => { const o = document.createElement('option'); o.value = s; o.textContent = s; subjectSelect.appendChild(o); });

    async function fetchJson(url, options) {
      const res = await fetch(url, options);
      return await res.json();
    }

    function show(id, text) {
      const el = document.getElementById(id);
      el.textContent = text || '';
      el.style.display = text ? 'block' : 'none';
    }

    const CAMEL = {
      clear_rect: 'clearRect', fill_rect: 'fillRect', stroke_rect: 'strokeRect', begin_path: 'beginPath',
      close_path: 'closePath', move_to: 'moveTo', line_to: 'lineTo', fill_text: 'fillText',
      fill_style: 'fillStyle', stroke_style: 'strokeStyle', line_width: 'lineWidth', global_alpha: 'globalAlpha',
      text_align: 'textAlign',
    };

    function replay(canvasState) {
      const surface = document.getElementById('surface');
      const ctx = surface.getContext('2d');
      if (!canvasState) { ctx.clearRect(0, 0, surface.width, surface.height); return; }
      surface.width = canvasState.width;
      surface.height = canvasState.height;
      for (const cmd of canvasState.commands) {
        if (cmd.op === 'set') { ctx[CAMEL[cmd.args[0]] || cmd.args[0]] = cmd.args[1]; continue; }
        const fn = ctx[CAMEL[cmd.op] || cmd.op];
        if (typeof fn === 'function') fn.apply(ctx, cmd.args);
      }
    }

    async function refresh() {
      try {
        const state = await fetchJson('/state');
        const s = state.controller;
        document.getElementById('statusLine').textContent =
          `status: ${s.status} | quota remaining: ${state.remaining_quota} | session: ${state.session_state}`;
        show('suggestion', s.suggestion ? `Prompt unclear. Try this: ${s.suggestion}` : '');
        show('error', s.error || s.render_error || '');
        const sandbox = await fetchJson('/sandbox');
        replay(sandbox.mounted ? sandbox.canvas : null);
        document.getElementById('document').textContent = sandbox.mounted ? sandbox.document : '';
        const consoleData = await fetchJson('/console');
        document.getElementById('console').textContent = consoleData.raw_response || '';
      } catch (err) {
        document.getElementById('statusLine').textContent = `dashboard error: ${err}`;
      }
    }

    async function run(url) {
      const body = { prompt: document.getElementById('prompt').value, subject: subjectSelect.value };
      try {
        await fetchJson(url, { method: 'POST', headers: { 'Content-Type': 'application/json' }, body: JSON.stringify(body) });
      } finally {
        await refresh();
      }
    }

    async function post(url) {
      try { await fetchJson(url, { method: 'POST' }); } finally { await refresh(); }
    }

    refresh();
    setInterval(refresh, 250);
  </script>
</body>
</html>
"""


class RunRequest(BaseModel):
    prompt: str = Field(default="", max_length=20000)
    subject: str = Subject.MATHEMATICS.value


class FollowUpRequest(BaseModel):
    prompt: str = Field(default="", max_length=20000)


class DashboardNavigator:
    """Records re-authentication redirects so the UI can prompt for sign-in."""

    def __init__(self) -> None:
        self.redirects = 0

    def redirect_to_authentication(self) -> None:
        self.redirects += 1


def create_app(
    *,
    controller_provider: Callable[[], SimulationController | None],
    navigator: DashboardNavigator | None = None,
    event_limit: int = 500,
) -> FastAPI:
    """Create the presentation app around a live controller.

    ``event_limit`` is both the default and the cap for one page of ``/events``.
    """

    app = FastAPI(title="conceptsim", version="0.1.0")

    def _controller() -> SimulationController:
        controller = controller_provider()
        if controller is None:
            raise HTTPException(status_code=503, detail="controller unavailable")
        return controller

    def _state_payload(controller: SimulationController) -> dict[str, Any]:
        session = controller.guard.session
        return {
            "controller": controller.state.to_dict(),
            "session_state": controller.guard.state.value,
            "session": session.to_dict() if session is not None else None,
            "remaining_quota": controller.remaining_quota(),
            "quota_limit": controller.ledger.limit,
            "auth_redirects": navigator.redirects if navigator is not None else 0,
        }

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        subjects = "[" + ", ".join(f'"{s.value}"' for s in Subject) + "]"
        return _DASHBOARD_HTML.replace("__SUBJECTS__", subjects)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/state")
    async def state() -> dict[str, Any]:
        return _state_payload(_controller())

    @app.get("/quota")
    async def quota() -> dict[str, Any]:
        controller = _controller()
        return {
            "identity": controller.guard.current_identity(),
            "remaining": controller.remaining_quota(),
            "limit": controller.ledger.limit,
            "ledger": controller.ledger.snapshot(),
        }

    @app.get("/sandbox")
    async def sandbox() -> dict[str, Any]:
        return _controller().renderer.snapshot()

    @app.get("/console")
    async def console() -> dict[str, Any]:
        return {"raw_response": _controller().client.last_raw_response}

    @app.get("/events")
    async def events(
        limit: int | None = Query(default=None, ge=1),
        offset: int | None = Query(default=None, ge=0),
    ) -> dict[str, Any]:
        logger = _controller().logger
        limit = min(limit or event_limit, event_limit)
        items = logger.read_slice(offset, limit) if offset is not None else logger.read_recent(limit)
        return {"success": True, "events": items, "count": len(items)}

    @app.post("/simulate")
    async def simulate(body: RunRequest) -> dict[str, Any]:
        controller = _controller()
        result = await controller.run(body.prompt, body.subject)
        return {"success": result.error is None, **_state_payload(controller)}

    @app.post("/simulate/follow-up")
    async def simulate_follow_up(body: FollowUpRequest) -> dict[str, Any]:
        controller = _controller()
        result = await controller.run_follow_up(body.prompt)
        return {"success": result.error is None, **_state_payload(controller)}

    @app.post("/simulate/reset")
    async def simulate_reset() -> dict[str, Any]:
        controller = _controller()
        controller.reset()
        return {"success": True, **_state_payload(controller)}

    @app.post("/session/sign-out")
    async def sign_out() -> dict[str, Any]:
        controller = _controller()
        await controller.sign_out()
        return {"success": controller.guard.last_error is None, **_state_payload(controller)}

    return app
