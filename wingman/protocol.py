"""Wire formats on both sides of the relay.

Client ↔ Relay (JSON text frames, plus raw binary audio):

  Client → Relay:
    {"type": "connect"}                        → open upstream session
    {"type": "audio", "data": [..bytes..]}     → mic frame (int16 LE PCM)
    {"type": "text", "data": "..."}            → text turn
    {"type": "ping"} / {"type": "disconnect"}

  Relay → Client:
    {"type": "status", "message": "..."}
    {"type": "text", "data": "..."}
    {"type": "audio", "data": [...], "sampleRate": 24000, "encoding": "LINEAR16"}
    {"type": "speech", "state": "speaking" | "idle"}
    {"type": "error", "message": "..."}

Relay ↔ Upstream:

  → {"setup": {...}}
  → {"realtime_input": {"media_chunks": [{"mime_type": "audio/pcm", "data": "<b64>"}]}}
  → {"client_content": {"turns": [...], "turn_complete": true}}
  ← {"candidates": [{"content": {"parts": [...]}}]}  (or serverContent.modelTurn)
  ← {"setupComplete": {}}
  ← {"error": {"message": "..."}}
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal, Optional

from pydantic import BaseModel

from wingman.codec import bytes_to_payload, media_chunk
from wingman.config import Settings
from wingman.errors import ProtocolError

CLIENT_MESSAGE_TYPES = {"connect", "audio", "text", "ping", "disconnect"}

_RATE_PATTERN = re.compile(r"rate=(\d+)")


# ── Client side ──────────────────────────────────────────────────


class ControlMessage(BaseModel):
    """A parsed client control message."""

    type: Literal["connect", "audio", "text", "ping", "disconnect"]
    data: Any = None


def parse_client_message(raw: str) -> ControlMessage:
    """Parse one client JSON text frame. Raises ProtocolError on bad input."""
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON: {exc.msg}") from exc

    if not isinstance(msg, dict):
        raise ProtocolError("Message must be a JSON object")

    msg_type = msg.get("type")
    if not isinstance(msg_type, str) or not msg_type.strip():
        raise ProtocolError("Message missing non-empty 'type'")
    msg_type = msg_type.strip()
    if msg_type not in CLIENT_MESSAGE_TYPES:
        raise ProtocolError(f"Unknown message type: {msg_type}")

    data = msg.get("data")
    if msg_type == "text" and (not isinstance(data, str) or not data.strip()):
        raise ProtocolError("'text' message requires a non-empty string 'data'")
    if msg_type == "audio" and not isinstance(data, (list, str)):
        raise ProtocolError("'audio' message requires 'data' as a byte array or base64 string")

    return ControlMessage(type=msg_type, data=data)


def status_event(message: str) -> dict[str, Any]:
    return {"type": "status", "message": message}


def error_event(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}


def text_event(text: str) -> dict[str, Any]:
    return {"type": "text", "data": text}


def audio_event(pcm_bytes: bytes, sample_rate: int) -> dict[str, Any]:
    return {
        "type": "audio",
        "data": bytes_to_payload(pcm_bytes),
        "sampleRate": sample_rate,
        "encoding": "LINEAR16",
    }


def speech_event(state: str) -> dict[str, Any]:
    return {"type": "speech", "state": state}


def pong_event() -> dict[str, Any]:
    return {"type": "pong"}


# ── Upstream side ────────────────────────────────────────────────


def build_setup_message(cfg: Settings) -> dict[str, Any]:
    """Session configuration handshake; must precede any media frame."""
    return {
        "setup": {
            "model": cfg.upstream_model,
            "generation_config": {
                "response_modalities": ["AUDIO", "TEXT"],
                "speech_config": {
                    "voice_config": {
                        "prebuilt_voice_config": {"voice_name": cfg.voice_name},
                    },
                },
                "temperature": cfg.temperature,
                "max_output_tokens": cfg.max_output_tokens,
            },
            "system_instruction": {"parts": [{"text": cfg.system_instruction}]},
        },
    }


def build_realtime_input(b64_audio: str) -> dict[str, Any]:
    return {"realtime_input": {"media_chunks": [media_chunk(b64_audio)]}}


def build_client_content(turns: list[dict[str, Any]]) -> dict[str, Any]:
    return {"client_content": {"turns": turns, "turn_complete": True}}


def make_turn(role: str, text: str) -> dict[str, Any]:
    return {"role": role, "parts": [{"text": text}]}


class UpstreamEvent(BaseModel):
    """One translated unit of an upstream response."""

    kind: Literal["text", "audio", "error", "setup_complete", "turn_complete"]
    text: str = ""
    mime_type: str = ""
    data: str = ""  # base64 audio
    message: str = ""

    @property
    def sample_rate(self) -> Optional[int]:
        match = _RATE_PATTERN.search(self.mime_type)
        return int(match.group(1)) if match else None


def is_pcm_mime(mime_type: str) -> bool:
    return mime_type.split(";", 1)[0].strip().lower() in {"audio/pcm", "audio/l16"}


def _expect(value: Any, kind: type, where: str) -> Any:
    """Return ``value`` (or an empty ``kind`` when absent); raise if mistyped."""
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ProtocolError(f"Upstream {where} must be a {kind.__name__}, got {type(value).__name__}")
    return value


def _server_content(msg: dict[str, Any]) -> dict[str, Any]:
    return _expect(msg.get("serverContent", msg.get("server_content")), dict, "serverContent")


def _parts_from(msg: dict[str, Any]) -> list[dict[str, Any]]:
    parts: list[Any] = []
    for candidate in _expect(msg.get("candidates"), list, "candidates"):
        candidate = _expect(candidate, dict, "candidate")
        content = _expect(candidate.get("content"), dict, "candidate content")
        parts.extend(_expect(content.get("parts"), list, "content parts"))

    server_content = _server_content(msg)
    model_turn = _expect(
        server_content.get("modelTurn", server_content.get("model_turn")), dict, "modelTurn",
    )
    parts.extend(_expect(model_turn.get("parts"), list, "modelTurn parts"))
    return [p for p in parts if isinstance(p, dict)]


def _part_event(part: dict[str, Any]) -> Optional[UpstreamEvent]:
    text = part.get("text")
    if isinstance(text, str) and text:
        return UpstreamEvent(kind="text", text=text)

    inline = part.get("inline_data") or part.get("inlineData")
    if isinstance(inline, dict):
        mime = inline.get("mime_type") or inline.get("mimeType") or ""
        data = inline.get("data") or ""
        if isinstance(mime, str) and is_pcm_mime(mime) and isinstance(data, str) and data:
            return UpstreamEvent(kind="audio", mime_type=mime, data=data)
    return None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        return str(message) if message else "Unknown error"
    return str(error)


def _translate(msg: dict[str, Any]) -> list[UpstreamEvent]:
    events: list[UpstreamEvent] = []

    if "setupComplete" in msg or "setup_complete" in msg:
        events.append(UpstreamEvent(kind="setup_complete"))

    for part in _parts_from(msg):
        event = _part_event(part)
        if event is not None:
            events.append(event)

    server_content = _server_content(msg)
    if server_content.get("turnComplete") or server_content.get("turn_complete"):
        events.append(UpstreamEvent(kind="turn_complete"))

    error = msg.get("error")
    if error:
        events.append(UpstreamEvent(kind="error", message=_error_message(error)))

    return events


def parse_upstream_message(raw: str | bytes) -> list[UpstreamEvent]:
    """Translate one upstream message into events, in part order.

    Raises ProtocolError when the message isn't a JSON object or any
    level of it has the wrong shape; nothing else escapes.
    """
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Invalid upstream JSON: {exc}") from exc
    if not isinstance(msg, dict):
        raise ProtocolError("Upstream message must be a JSON object")

    try:
        return _translate(msg)
    except ProtocolError:
        raise
    except (TypeError, AttributeError, ValueError) as exc:
        raise ProtocolError(f"Unreadable upstream message: {exc}") from exc


def text_first(events: list[UpstreamEvent]) -> list[UpstreamEvent]:
    """Reorder so text parts are delivered before audio parts.

    setupComplete goes first; errors and turn markers go last. Parts of the
    same kind keep their order.
    """
    rank = {"setup_complete": -1, "text": 0, "audio": 1}
    return sorted(events, key=lambda e: rank.get(e.kind, 2))


__all__ = [
    "ControlMessage",
    "UpstreamEvent",
    "parse_client_message",
    "parse_upstream_message",
    "text_first",
    "status_event",
    "error_event",
    "text_event",
    "audio_event",
    "speech_event",
    "pong_event",
    "build_setup_message",
    "build_realtime_input",
    "build_client_content",
    "make_turn",
    "is_pcm_mime",
]
