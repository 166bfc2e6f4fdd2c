"""Per-client relay session: owns the upstream connection and its lifecycle.

Each client WebSocket gets one RelaySession that:
  1. Opens at most one upstream connection (via a ResponseSource)
  2. Sends the ``setup`` handshake and declares itself ready after a
     fixed delay (or on an explicit setupComplete, if the upstream sends one)
  3. Forwards microphone audio and text turns once ready
  4. Translates upstream candidates into client text/audio events
  5. Reconnects after unexpected upstream closure, within a bounded budget

State machine::

    idle ─connect─▶ connecting ─open─▶ configuring ─delay/ack─▶ ready
      ▲                 │                   │                     │
      │                 └──── lost ─────────┴──── lost ───────────┘
      │                                  │
      └── budget exhausted / 1000 ── reconnecting ─backoff─▶ connecting

    any ─close()─▶ closed

Every timer (ready delay, reconnect backoff) captures the session
generation when it is scheduled; ``close()`` and every new upstream
connection bump the generation so stale timers do nothing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from wingman.codec import AudioFrame, decode_inbound, encode_pcm_bytes
from wingman.config import Settings, runtime_settings, settings as default_settings
from wingman.debug_events import DebugBroadcaster
from wingman.detector import DetectorEvent, SpeechDetector, spectrum_bins
from wingman.errors import ConfigurationError, ProtocolError, UpstreamError
from wingman.protocol import (
    UpstreamEvent,
    audio_event,
    build_client_content,
    build_realtime_input,
    build_setup_message,
    error_event,
    make_turn,
    parse_upstream_message,
    speech_event,
    status_event,
    text_event,
    text_first,
)
from wingman.sources import NORMAL_CLOSE, ResponseSource, UpstreamConnection

log = logging.getLogger("wingman.session")

EventSink = Callable[[dict[str, Any]], Awaitable[None]]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONFIGURING = "configuring"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


_ACTIVE_STATES = {
    SessionState.CONNECTING,
    SessionState.CONFIGURING,
    SessionState.READY,
    SessionState.RECONNECTING,
}


# ── Session registry ─────────────────────────────────────────────

_active_sessions: dict[str, "RelaySession"] = {}


def register_session(session: "RelaySession") -> str:
    """Register a session and return its unique ID."""
    session_id = secrets.token_urlsafe(18)
    session._session_id = session_id
    session._started_at = time.time()
    _active_sessions[session_id] = session
    log.info("Session registered: %s", session_id)
    return session_id


def unregister_session(session_id: str) -> None:
    """Remove a session from the registry."""
    _active_sessions.pop(session_id, None)
    log.info("Session unregistered: %s", session_id)


def get_active_sessions() -> dict[str, "RelaySession"]:
    """Return all active sessions."""
    return _active_sessions


def get_session(session_id: str) -> "RelaySession | None":
    """Look up a session by ID."""
    return _active_sessions.get(session_id)


class RelaySession:
    """One client's relay to the upstream.

    Typical lifecycle::

        session = RelaySession(send_to_client, source)
        await session.connect()            # client sent {"type": "connect"}
        await session.handle_audio(pcm)    # dropped until ready
        await session.send_text("hi")      # dropped (with a warning) until ready
        await session.close()              # client went away
    """

    def __init__(
        self,
        send_to_client: EventSink,
        source: ResponseSource,
        cfg: Settings | None = None,
        detector: SpeechDetector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._send_to_client = send_to_client
        self._source = source
        self._cfg = cfg or default_settings
        self._clock = clock

        if detector is None and runtime_settings.get("server_vad_enabled", False):
            try:
                detector = SpeechDetector(
                    threshold=float(runtime_settings.get("vad_threshold", 0.012)),
                    silence_timeout_s=float(runtime_settings.get("vad_silence_timeout_s", 0.8)),
                    smoothing=float(runtime_settings.get("vad_smoothing", 0.8)),
                )
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid speech detector settings: {e}") from e
        self._detector = detector

        # Registry metadata (set by register_session)
        self._session_id: str = ""
        self._started_at: float = 0.0

        self._state = SessionState.IDLE
        self._upstream: Optional[UpstreamConnection] = None
        self._upstream_connected = False
        self._upstream_configured = False
        self._generation = 0
        self._reconnect_attempts = 0
        self._closed = False

        self._reader_task: asyncio.Task | None = None
        self._ready_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        # Rolling context sent with text turns
        self._context: list[dict[str, Any]] = []

        self._frames_forwarded = 0
        self._frames_dropped = 0
        self._audio_forwarded_ms = 0.0

        self._debug_broadcaster: DebugBroadcaster | None = None

    # ── Public API ────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def upstream_connected(self) -> bool:
        return self._upstream_connected

    @property
    def upstream_configured(self) -> bool:
        return self._upstream_configured

    @property
    def is_ready(self) -> bool:
        return (
            self._state is SessionState.READY
            and self._upstream_connected
            and self._upstream_configured
        )

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def conversation_context(self) -> list[dict[str, Any]]:
        return list(self._context)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def attach_broadcaster(self, broadcaster: DebugBroadcaster) -> None:
        """Attach a debug broadcaster for real-time event streaming."""
        self._debug_broadcaster = broadcaster

    def to_dict(self, detail: bool = False) -> dict[str, Any]:
        """Serialize session state for the admin API."""
        d: dict[str, Any] = {
            "session_id": self._session_id,
            "state": self._state.value,
            "upstream_connected": self._upstream_connected,
            "upstream_configured": self._upstream_configured,
            "reconnect_attempts": self._reconnect_attempts,
            "started_at": self._started_at,
            "frames_forwarded": self._frames_forwarded,
            "frames_dropped": self._frames_dropped,
            "audio_forwarded_ms": round(self._audio_forwarded_ms, 1),
            "response_source": self._source.name,
        }
        if detail:
            d["context"] = self.conversation_context
            if self._detector is not None:
                d["speech_state"] = self._detector.state.value
                d["speech_level"] = round(self._detector.level, 4)
            if self._debug_broadcaster:
                d["event_log"] = self._debug_broadcaster.event_log
        return d

    async def connect(self) -> None:
        """Open the upstream session. A no-op (with status) if one exists."""
        if self._closed:
            return
        if self._state in _ACTIVE_STATES:
            await self._emit(status_event(
                f"Already connected to upstream (state={self._state.value})"
            ))
            return
        self._reconnect_attempts = 0
        await self._open_upstream()

    async def handle_audio(self, pcm: bytes) -> bool:
        """Forward one microphone frame. Returns False if it was dropped.

        Frames that arrive before the handshake completes are dropped
        without an error; that race is expected while configuring.
        """
        if not self.is_ready or self._upstream is None:
            self._frames_dropped += 1
            log.debug("Dropping %d-byte audio frame (state=%s)", len(pcm), self._state.value)
            return False

        gen = self._generation
        try:
            await self._upstream.send_json(build_realtime_input(encode_pcm_bytes(pcm)))
        except UpstreamError as e:
            log.warning("Audio forward failed: %s", e)
            await self._on_upstream_lost(gen, None, str(e))
            return False

        self._frames_forwarded += 1
        self._audio_forwarded_ms += AudioFrame(pcm, sample_rate=self._cfg.input_sample_rate).duration_ms
        await self._feed_detector(pcm)
        return True

    async def send_text(self, text: str) -> bool:
        """Send a text turn with the rolling context. Returns False if dropped."""
        if not self.is_ready or self._upstream is None:
            log.warning("Dropping text turn: upstream not ready (state=%s)", self._state.value)
            return False

        self._remember(make_turn("user", text))
        gen = self._generation
        try:
            await self._upstream.send_json(build_client_content(self.conversation_context))
        except UpstreamError as e:
            log.warning("Text forward failed: %s", e)
            await self._on_upstream_lost(gen, None, str(e))
            return False

        log.info("Sent text turn (%d context entries)", len(self._context))
        self._emit_debug("text_turn", {"text": text, "context_len": len(self._context)})
        return True

    async def disconnect_upstream(self) -> None:
        """Close the upstream by client request; the client socket stays open."""
        if self._closed:
            return
        self._invalidate_timers()
        await self._drop_upstream()
        self._set_state(SessionState.IDLE, "client requested disconnect")
        await self._emit(status_event("Disconnected from upstream"))

    async def close(self) -> None:
        """Tear down the session. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        self._invalidate_timers()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        self._reader_task = None
        await self._drop_upstream()
        self._set_state(SessionState.CLOSED, "client disconnected")

    # ── Internal: upstream lifecycle ──────────────────────────

    def _invalidate_timers(self) -> None:
        self._generation += 1
        for task in (self._ready_task, self._reconnect_task):
            if task is not None and not task.done():
                task.cancel()
        self._ready_task = None
        self._reconnect_task = None

    async def _drop_upstream(self) -> None:
        conn = self._upstream
        self._upstream = None
        self._upstream_connected = False
        self._upstream_configured = False
        if conn is not None:
            try:
                await conn.close()
            except Exception as e:
                log.debug("Upstream close raised: %s", e)

    async def _open_upstream(self) -> None:
        self._generation += 1
        gen = self._generation
        self._set_state(SessionState.CONNECTING)

        try:
            conn = await self._source.open()
        except ConfigurationError as e:
            log.error("Upstream not configured: %s", e)
            self._set_state(SessionState.IDLE, "configuration error")
            await self._emit(error_event(f"Server configuration error: {e}"))
            return
        except UpstreamError as e:
            log.warning("Upstream connect failed: %s", e)
            await self._on_upstream_lost(gen, None, str(e))
            return

        if self._closed or gen != self._generation:
            # Torn down while the connection was opening
            await conn.close()
            return

        self._upstream = conn
        self._upstream_connected = True
        self._set_state(SessionState.CONFIGURING)

        try:
            await conn.send_json(build_setup_message(self._cfg))
        except UpstreamError as e:
            log.warning("Setup handshake failed: %s", e)
            await self._on_upstream_lost(gen, None, str(e))
            return

        log.info("Upstream setup sent (model=%s voice=%s)", self._cfg.upstream_model, self._cfg.voice_name)
        await self._emit(status_event("Connected to upstream"))
        if self._closed or gen != self._generation:
            return

        # Replies buffered in the connection are read only after the
        # handshake status has gone out
        self._reader_task = asyncio.create_task(self._read_upstream(conn, gen))
        self._ready_task = asyncio.create_task(self._ready_after_delay(gen))

    async def _ready_after_delay(self, gen: int) -> None:
        await asyncio.sleep(self._cfg.ready_delay_s)
        if self._closed or gen != self._generation:
            return
        if self._state is SessionState.CONFIGURING:
            await self._mark_ready(gen)

    async def _mark_ready(self, gen: int) -> None:
        if self._closed or gen != self._generation:
            return
        self._upstream_configured = True
        self._reconnect_attempts = 0
        self._set_state(SessionState.READY)
        await self._emit(status_event("Upstream session ready for audio streaming"))

    async def _read_upstream(self, conn: UpstreamConnection, gen: int) -> None:
        error: Optional[str] = None
        try:
            async for raw in conn.messages():
                if self._closed or gen != self._generation:
                    return
                await self._handle_upstream_message(raw, gen)
        except UpstreamError as e:
            error = str(e)
            log.warning("Upstream read failed: %s", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = f"relay error: {e}"
            log.error("Upstream reader crashed: %s", e, exc_info=True)

        await self._on_upstream_lost(gen, conn.close_code, error)

    async def _on_upstream_lost(self, gen: int, code: Optional[int], error: Optional[str]) -> None:
        if self._closed or gen != self._generation:
            return
        log.info("Upstream lost: code=%s error=%s", code, error)
        self._invalidate_timers()
        await self._drop_upstream()

        if error:
            await self._emit(error_event(f"Upstream error: {error}"))

        if error is None and code == NORMAL_CLOSE:
            self._set_state(SessionState.IDLE, "upstream closed normally")
            await self._emit(status_event("Upstream connection closed"))
            return

        max_attempts = self._cfg.max_reconnect_attempts
        if self._reconnect_attempts >= max_attempts:
            self._set_state(SessionState.IDLE, "reconnect budget exhausted")
            await self._emit(error_event(
                f"Upstream unavailable after {max_attempts} reconnect attempts. "
                "Send connect to try again."
            ))
            return

        self._reconnect_attempts += 1
        delay = self._backoff_delay(self._reconnect_attempts)
        self._set_state(SessionState.RECONNECTING, f"attempt {self._reconnect_attempts} in {delay:.1f}s")
        await self._emit(status_event(
            f"Upstream connection closed - attempting reconnect "
            f"({self._reconnect_attempts}/{max_attempts})..."
        ))
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay, self._generation))

    def _backoff_delay(self, attempt: int) -> float:
        factor = max(1.0, self._cfg.reconnect_backoff_factor)
        return self._cfg.reconnect_delay_s * factor ** (attempt - 1)

    async def _reconnect_after(self, delay: float, gen: int) -> None:
        await asyncio.sleep(delay)
        if self._closed or gen != self._generation:
            log.debug("Stale reconnect timer ignored")
            return
        self._reconnect_task = None
        await self._open_upstream()

    # ── Internal: upstream → client ───────────────────────────

    async def _handle_upstream_message(self, raw: str | bytes, gen: int) -> None:
        try:
            events = parse_upstream_message(raw)
        except ProtocolError as e:
            log.warning("Dropping malformed upstream message: %s", e)
            return

        for event in text_first(events):
            await self._deliver(event, gen)

    async def _deliver(self, event: UpstreamEvent, gen: int) -> None:
        if event.kind == "setup_complete":
            if self._state is SessionState.CONFIGURING:
                if self._ready_task is not None and not self._ready_task.done():
                    self._ready_task.cancel()
                self._ready_task = None
                await self._mark_ready(gen)

        elif event.kind == "text":
            log.info("Upstream text: %s", event.text[:100])
            self._remember(make_turn("model", event.text))
            self._emit_debug("upstream_text", {"text": event.text})
            await self._emit(text_event(event.text))

        elif event.kind == "audio":
            try:
                pcm = decode_inbound(event.data)
            except ValueError as e:
                log.warning("Dropping upstream audio part: %s", e)
                return
            rate = event.sample_rate or self._cfg.output_sample_rate
            log.debug("Upstream audio: %d bytes @ %dHz", len(pcm), rate)
            await self._emit(audio_event(pcm, rate))

        elif event.kind == "error":
            log.error("Upstream API error: %s", event.message)
            await self._emit(error_event(f"Upstream error: {event.message}"))

        elif event.kind == "turn_complete":
            log.debug("Upstream turn complete")

    # ── Internal: helpers ─────────────────────────────────────

    def _remember(self, turn: dict[str, Any]) -> None:
        self._context.append(turn)
        limit = self._cfg.context_max_turns
        if len(self._context) > limit:
            self._context = self._context[-limit:]

    async def _feed_detector(self, pcm: bytes) -> None:
        if self._detector is None or len(pcm) < 2:
            return
        event = self._detector.update(spectrum_bins(pcm), now=self._clock())
        if event is DetectorEvent.SPEECH_STARTED:
            self._emit_debug("speech", {"state": "speaking", "level": self._detector.level})
            await self._emit(speech_event("speaking"))
        elif event is DetectorEvent.UTTERANCE_ENDED:
            log.info("Utterance ended (session=%s)", self._session_id)
            self._emit_debug("speech", {"state": "idle", "level": self._detector.level})
            await self._emit(speech_event("idle"))

    def _set_state(self, new: SessionState, reason: str = "") -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        log.info("Session %s: %s -> %s%s", self._session_id or "-", old.value, new.value,
                 f" ({reason})" if reason else "")
        self._emit_debug("transition", {"from": old.value, "to": new.value, "reason": reason})

    def _emit_debug(self, event_type: str, data: dict) -> None:
        """Emit a debug event if a broadcaster is attached."""
        if self._debug_broadcaster:
            self._debug_broadcaster.emit(event_type, self._state.value, data)

    async def _emit(self, event: dict[str, Any]) -> None:
        await self._send_to_client(event)


__all__ = [
    "EventSink",
    "RelaySession",
    "SessionState",
    "get_active_sessions",
    "get_session",
    "register_session",
    "unregister_session",
]
