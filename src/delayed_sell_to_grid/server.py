import hmac
import html
import logging
import ssl
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Optional

from aiohttp import web

from delayed_sell_to_grid.config import AppConfig
from delayed_sell_to_grid.errors import ConfigError

log = logging.getLogger(__name__)


# --------------------------------------------------------------------
# Shared state (written by the control loop, read by the status pages)
# --------------------------------------------------------------------
STATUS: Dict[str, object] = {
    "grid_mode": "UNDEFINED",
    "grid_power": None,
    "active_power": 0,
    "reactive_power": 0,
    "cycle": 0,
    "last_error": None,
    "last_update": 0.0,
}

HISTORY: Dict[str, Deque[Optional[int]]] = {
    "grid_power": deque(maxlen=50),
    "active_power": deque(maxlen=50),
}

CONTROL: Dict[str, bool] = {
    "enabled": True,
}


# --------------------------------------------------------------------
# Auth / TLS
# --------------------------------------------------------------------
# Paths that change the controller or expose its history
PROTECTED_PATHS = ("/control", "/status/json")


def _bearer_token(request: web.Request) -> Optional[str]:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


@web.middleware
async def auth_middleware(request: web.Request, handler):
    token = request.app["config"].api_token
    if token and request.path in PROTECTED_PATHS:
        presented = _bearer_token(request)
        if presented is None or not hmac.compare_digest(presented, token):
            return web.json_response({"error": "unauthorized"}, status=401)
    return await handler(request)


def build_ssl_context(cfg: AppConfig) -> Optional[ssl.SSLContext]:
    """Return an SSLContext for the configured cert and key, None without TLS."""
    if not cfg.api_tls_enabled:
        return None

    certfile = Path(cfg.api_tls_certfile)
    keyfile = Path(cfg.api_tls_keyfile)
    missing = [str(p) for p in (certfile, keyfile) if not p.is_file()]
    if missing:
        raise ConfigError(f"API.TLS_ENABLED is set but {', '.join(missing)} not found")

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(certfile=str(certfile), keyfile=str(keyfile))
    return ctx


# --------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------
async def handle_heartbeat(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "message": "Controller is alive"})


async def handle_status(request: web.Request) -> web.Response:
    cfg: AppConfig = request.app["config"]
    ctrl = cfg.controller
    rows = "\n".join(
        f"  <tr><td>{html.escape(label)}</td><td>{html.escape(str(value))}</td></tr>"
        for label, value in (
            ("Controller", f"{ctrl.alias} ({ctrl.id})"),
            ("Enabled", CONTROL["enabled"]),
            ("Grid Mode", STATUS["grid_mode"]),
            ("Grid Power", f"{STATUS['grid_power']} W"),
            ("Active Power Setpoint", f"{STATUS['active_power']} W"),
            ("Reactive Power Setpoint", f"{STATUS['reactive_power']} var"),
            ("Continuous Sell To Grid", f"{ctrl.continuous_sell_to_grid_power} W"),
            ("Sell To Grid Limit", f"{ctrl.sell_to_grid_power_limit} W"),
            ("Cycle", STATUS["cycle"]),
            ("Last Error", STATUS["last_error"]),
            ("Last Update", STATUS["last_update"]),
        )
    )
    history = html.escape(str({k: list(v) for k, v in HISTORY.items()}))
    page = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Delayed Sell To Grid</title></head>
<body>
<h1>Delayed Sell To Grid</h1>
<table border="1" cellpadding="6">
  <tr><th>Metric</th><th>Value</th></tr>
{rows}
</table>

<h2>History (last 50 cycles)</h2>
<pre>{history}</pre>
</body>
</html>
"""
    return web.Response(text=page, content_type="text/html")


async def handle_status_json(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "status": dict(STATUS),
            "history": {k: list(v) for k, v in HISTORY.items()},
            "control": dict(CONTROL),
        }
    )


async def handle_control(request: web.Request) -> web.Response:
    """
    Payload example:
      {"enabled": false}
    """
    try:
        data = await request.json()
    except ValueError as exc:
        return web.json_response({"error": f"invalid JSON: {exc}"}, status=400)

    if not isinstance(data, dict):
        return web.json_response({"error": "payload must be an object"}, status=400)
    if "enabled" in data:
        if not isinstance(data["enabled"], bool):
            return web.json_response({"error": "'enabled' must be a boolean"}, status=400)
        CONTROL["enabled"] = data["enabled"]
        log.info("Controller %s", "enabled" if CONTROL["enabled"] else "disabled")
    return web.json_response({"status": "ok", "updated": dict(CONTROL)})


def create_app(config: AppConfig) -> web.Application:
    app = web.Application(middlewares=[auth_middleware])
    app["config"] = config

    app.router.add_get("/health", handle_heartbeat)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/status/json", handle_status_json)
    app.router.add_post("/control", handle_control)
    return app


# --------------------------------------------------------------------
# Start server
# --------------------------------------------------------------------
async def start_server(config: AppConfig) -> web.AppRunner:
    ssl_ctx = build_ssl_context(config)

    runner = web.AppRunner(create_app(config))
    await runner.setup()

    site = web.TCPSite(
        runner,
        host=config.api_host,
        port=config.api_port,
        ssl_context=ssl_ctx,
    )
    await site.start()

    scheme = "https" if ssl_ctx else "http"
    log.info("Server running on %s://%s:%d", scheme, config.api_host, config.api_port)
    return runner
