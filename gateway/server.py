"""Client-facing WebSocket handler for the audio relay.

One browser connection ↔ one RelaySession ↔ at most one upstream
connection.  The browser streams microphone PCM either as raw binary
frames or as JSON ``audio`` messages; everything else is JSON.

Protocol messages:

  Client → Server:
    <binary frame, >= MIN_BINARY_FRAME_BYTES>  → mic audio (int16 LE PCM)
    {"type": "connect"}                        → open upstream session
    {"type": "audio", "data": [...]}           → mic audio as byte array
    {"type": "text", "data": "..."}            → text turn
    {"type": "ping"}                           → pong
    {"type": "disconnect"}                     → close upstream, keep socket

  Server → Client:
    {"type": "status", "message": "..."}
    {"type": "text", "data": "..."}
    {"type": "audio", "data": [...], "sampleRate": 24000, "encoding": "LINEAR16"}
    {"type": "speech", "state": "speaking" | "idle"}
    {"type": "error", "message": "..."}
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from wingman.codec import bytes_from_payload
from wingman.config import Settings, settings
from wingman.debug_events import get_broadcaster, remove_broadcaster
from wingman.errors import ConfigurationError, ProtocolError
from wingman.protocol import ControlMessage, error_event, parse_client_message, pong_event, status_event
from wingman.session import RelaySession, register_session, unregister_session
from wingman.sources import ResponseSource, create_response_source

log = logging.getLogger("gateway.server")

WS_CLOSE_CONFIG_ERROR = 1011

WELCOME_MESSAGE = 'Connected to AI Wingman. Send "connect" to start the upstream session.'


def _client_sink(ws: WebSocket) -> Callable[[dict[str, Any]], Awaitable[None]]:
    """Event sink that never raises once the client has gone away."""

    async def send(event: dict[str, Any]) -> None:
        try:
            await ws.send_json(event)
        except (WebSocketDisconnect, RuntimeError) as e:
            log.debug("Client send dropped (%s): %s", event.get("type"), e)

    return send


async def _handle_control(
    session: RelaySession,
    send: Callable[[dict[str, Any]], Awaitable[None]],
    msg: ControlMessage,
) -> None:
    if msg.type == "connect":
        await session.connect()

    elif msg.type == "audio":
        try:
            pcm = bytes_from_payload(msg.data)
        except ValueError as e:
            log.warning("Dropping malformed audio message: %s", e)
            await send(error_event(f"Invalid audio payload: {e}"))
            return
        await session.handle_audio(pcm)

    elif msg.type == "text":
        await session.send_text(msg.data)

    elif msg.type == "ping":
        await send(pong_event())

    elif msg.type == "disconnect":
        await session.disconnect_upstream()


async def handle_relay_ws(
    ws: WebSocket,
    source: ResponseSource | None = None,
    cfg: Settings | None = None,
) -> None:
    """Handle one relay WebSocket connection for its whole lifetime.

    Called from the FastAPI WebSocket endpoint.  The session (and with it
    the upstream connection and any pending timers) is torn down when the
    client disconnects.
    """
    cfg = cfg or settings
    await ws.accept()
    log.info("Relay client connected")
    send = _client_sink(ws)

    try:
        source = source or create_response_source(cfg)
        source.check_configured()
        session = RelaySession(send, source, cfg)
    except ConfigurationError as e:
        log.error("Refusing relay session: %s", e)
        await send(error_event(f"Server configuration error: {e}"))
        await ws.close(code=WS_CLOSE_CONFIG_ERROR, reason="configuration error")
        return

    sid = register_session(session)
    session.attach_broadcaster(get_broadcaster(sid))
    await send(status_event(WELCOME_MESSAGE))

    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break

            data = message.get("bytes")
            if data is not None:
                if len(data) < cfg.min_binary_frame_bytes:
                    log.debug("Ignoring short binary frame (%d bytes)", len(data))
                    continue
                await session.handle_audio(data)
                continue

            raw = message.get("text")
            if raw is None:
                continue
            try:
                msg = parse_client_message(raw)
            except ProtocolError as e:
                log.warning("Dropping client message: %s", e)
                await send(error_event(str(e)))
                continue
            log.debug("Relay recv: %s", msg.type)
            await _handle_control(session, send, msg)

    except WebSocketDisconnect:
        log.info("Relay client disconnected")
    except Exception as e:
        log.error("Relay error: %s", e, exc_info=True)
    finally:
        await session.close()
        remove_broadcaster(sid)
        unregister_session(sid)
        log.info("Relay session %s cleaned up", sid)
