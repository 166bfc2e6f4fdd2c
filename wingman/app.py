"""FastAPI application — HTTP + WebSocket endpoints for the audio relay.

Endpoints:

  WS   /ws/relay                  Browser relay WebSocket (mic audio in, replies out)
  GET  /health                    Health check
  GET  /api/relay/status          Upstream configuration + active session count
  GET  /api/sessions              Active relay sessions (admin)
  GET  /api/sessions/{id}         One session with context and event log (admin)
  WS   /ws/debug/{id}?token=      Live debug event stream for a session (admin)
  GET  /api/config                Runtime speech-detector settings (admin)
  POST /api/config                Update runtime speech-detector settings (admin)

The relay flow:
  1. Browser connects to WS /ws/relay → gets a welcome status
  2. Sends "connect" → relay opens the upstream and sends ``setup``
  3. After the ready delay the relay reports "ready for audio streaming"
  4. Mic frames are forwarded as ``realtime_input``; replies come back
     as ``text`` then ``audio`` events
"""

from __future__ import annotations

# Load .env into os.environ before Settings() is first read.
from dotenv import load_dotenv
load_dotenv()

import logging
import time

# Configure root logger early so all app loggers (gateway.server, etc.)
# have a handler and are visible when run via `uvicorn wingman.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from gateway.server import handle_relay_ws
from wingman.auth import require_admin_token, require_admin_ws
from wingman.config import RuntimeSettingsUpdate, runtime_settings, settings
from wingman.debug_events import find_broadcaster, get_broadcaster
from wingman.session import get_active_sessions, get_session

log = logging.getLogger("wingman.app")

_START_TIME = time.time()

WS_CLOSE_SESSION_NOT_FOUND = 4004


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    for warning in settings.validate_startup():
        log.warning(warning)

    app = FastAPI(
        title="AI Wingman Relay",
        description="Real-time audio relay between browsers and a streaming speech model",
        version="0.1.0",
    )

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check — confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    @app.get("/api/relay/status")
    async def relay_status() -> JSONResponse:
        """Report whether relay sessions can reach a reply source."""
        available = settings.upstream_available
        if settings.response_source == "canned":
            message = "Serving canned demo replies"
        elif available:
            message = "Upstream API key configured"
        else:
            message = "GEMINI_API_KEY not configured"
        return JSONResponse({
            "success": available or settings.response_source == "canned",
            "message": message,
            "upstream_available": available,
            "response_source": settings.response_source,
            "active_sessions": len(get_active_sessions()),
        })

    # ── Relay WebSocket ────────────────────────────────────────

    @app.websocket("/ws/relay")
    async def ws_relay(websocket: WebSocket) -> None:
        """Audio relay WebSocket for browser clients."""
        await handle_relay_ws(websocket)

    # ── Admin API ──────────────────────────────────────────────

    @app.get("/api/sessions", dependencies=[Depends(require_admin_token)])
    async def list_sessions():
        """Return summary of all active relay sessions."""
        sessions = get_active_sessions()
        return JSONResponse({
            "sessions": [s.to_dict() for s in sessions.values()],
            "count": len(sessions),
        })

    @app.get("/api/sessions/{session_id}", dependencies=[Depends(require_admin_token)])
    async def get_relay_session(session_id: str):
        """Return detailed state of a single session."""
        session = get_session(session_id)
        if not session:
            return JSONResponse({"error": "Session not found"}, status_code=404)
        detail = session.to_dict(detail=True)
        broadcaster = find_broadcaster(session_id)
        detail["debug_subscribers"] = broadcaster.subscriber_count if broadcaster else 0
        return JSONResponse(detail)

    @app.get("/api/config", dependencies=[Depends(require_admin_token)])
    async def get_config():
        return JSONResponse(runtime_settings)

    @app.post("/api/config", dependencies=[Depends(require_admin_token)])
    async def update_config(update: RuntimeSettingsUpdate):
        """Update detector settings; applies to sessions created afterwards.

        Out-of-range values are rejected with 422 before anything changes.
        """
        update.apply(runtime_settings)
        log.info("Config updated: %s", runtime_settings)
        return JSONResponse(runtime_settings)

    # ── Debug stream WebSocket ─────────────────────────────────

    @app.websocket("/ws/debug/{session_id}")
    async def debug_stream(websocket: WebSocket, session_id: str, token: str = "") -> None:
        """WebSocket endpoint that streams real-time debug events."""
        if not await require_admin_ws(websocket, token):
            return
        session = get_session(session_id)
        if not session:
            await websocket.close(code=WS_CLOSE_SESSION_NOT_FOUND, reason="Session not found")
            return

        await websocket.accept()
        broadcaster = get_broadcaster(session_id)
        session.attach_broadcaster(broadcaster)
        queue = broadcaster.subscribe()

        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            log.warning("Debug stream error for %s: %s", session_id, e)
        finally:
            broadcaster.unsubscribe(queue)

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "wingman.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
