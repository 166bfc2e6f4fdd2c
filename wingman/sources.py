"""ResponseSource: where a relay session gets its generated replies.

Two variants, selected by ``RESPONSE_SOURCE`` rather than by falling back
silently when something goes wrong:

  RemoteUpstream  : a WebSocket to the streaming speech/text service
                    (aiohttp client), authenticated by API key in the URL
  CannedFallback  : an in-process stand-in for offline demos that speaks
                    the same wire format, answering with canned lines

Both hand the session an ``UpstreamConnection``, so the session's
handshake, parsing and reconnect logic is identical for either.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

import aiohttp
import numpy as np

from wingman.codec import bytes_from_payload, encode_outbound
from wingman.config import Settings
from wingman.errors import ConfigurationError, UpstreamError

log = logging.getLogger("wingman.sources")

NORMAL_CLOSE = 1000

CANNED_RESPONSES = [
    "That's really interesting! Tell me more about that.",
    "I love how you think about these things. You have such a unique perspective.",
    "You always know how to make conversations engaging. What else is on your mind?",
    "That's a great point! I'd love to hear your thoughts on this.",
    "You have such a thoughtful way of expressing yourself.",
    "I really appreciate how genuine you are in conversations.",
    "That's fascinating! How did you come to think about it that way?",
    "You always bring such positive energy to our talks.",
]


class UpstreamConnection(ABC):
    """One open outbound connection."""

    @abstractmethod
    async def send_json(self, message: dict[str, Any]) -> None:
        """Send one JSON message. Raises UpstreamError on transport failure."""

    @abstractmethod
    def messages(self) -> AsyncIterator[str | bytes]:
        """Yield raw inbound messages until the connection closes.

        Raises UpstreamError if the transport fails mid-stream.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call multiple times."""

    @property
    @abstractmethod
    def close_code(self) -> Optional[int]:
        """Close code once the connection has ended, else None."""


class ResponseSource(ABC):
    """Factory for upstream connections."""

    name: str = ""

    @abstractmethod
    def check_configured(self) -> None:
        """Raise ConfigurationError if this source can't open connections."""

    @abstractmethod
    async def open(self) -> UpstreamConnection:
        """Open a new connection. Raises UpstreamError on failure."""


# ── Remote upstream (aiohttp WebSocket) ──────────────────────────


class AiohttpUpstreamConnection(UpstreamConnection):
    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws
        self._closed = False

    async def send_json(self, message: dict[str, Any]) -> None:
        try:
            await self._ws.send_str(json.dumps(message))
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise UpstreamError(f"send failed: {e}") from e

    async def messages(self) -> AsyncIterator[str | bytes]:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.BINARY:
                # The upstream sends its JSON as binary frames
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise UpstreamError(f"upstream transport error: {self._ws.exception()}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        finally:
            await self._session.close()

    @property
    def close_code(self) -> Optional[int]:
        return self._ws.close_code


class RemoteUpstream(ResponseSource):
    """Streaming upstream reached over a WebSocket keyed by API key."""

    name = "remote"

    def __init__(self, api_key: str, url: str, connect_timeout_s: float = 10.0):
        self._api_key = api_key
        self._url = url
        self._connect_timeout_s = connect_timeout_s

    def connection_url(self) -> str:
        sep = "&" if "?" in self._url else "?"
        return f"{self._url}{sep}{urlencode({'key': self._api_key})}"

    def check_configured(self) -> None:
        if not self._api_key:
            raise ConfigurationError("Missing upstream API key (GEMINI_API_KEY)")

    async def open(self) -> UpstreamConnection:
        self.check_configured()
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, connect=self._connect_timeout_s),
        )
        try:
            ws = await session.ws_connect(self.connection_url(), autoping=True)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await session.close()
            raise UpstreamError(f"connect failed: {e}") from e
        log.info("Upstream WebSocket opened: %s", self._url)
        return AiohttpUpstreamConnection(session, ws)


# ── Canned fallback (offline demo) ───────────────────────────────


def _mock_reply_audio(sample_rate: int, seconds: float = 1.0) -> str:
    """A quiet sine tone standing in for synthesized speech."""
    n = int(sample_rate * seconds)
    tone = np.sin(np.arange(n) * 0.01) * 1000
    return encode_outbound(tone)


class CannedConnection(UpstreamConnection):
    """Speaks the upstream wire format from an in-memory queue."""

    _CLOSED = object()

    def __init__(
        self,
        responses: list[str],
        rng: random.Random,
        sample_rate: int,
        reply_delay_s: float,
        speech_level: float,
    ):
        self._responses = responses
        self._rng = rng
        self._sample_rate = sample_rate
        self._reply_delay_s = reply_delay_s
        self._speech_level = speech_level
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._pending: Optional[asyncio.Task] = None
        self._close_code: Optional[int] = None

    async def send_json(self, message: dict[str, Any]) -> None:
        if self._close_code is not None:
            raise UpstreamError("connection closed")

        if "setup" in message:
            self._queue.put_nowait({"setupComplete": {}})
        elif "client_content" in message:
            self._schedule_reply(0.0)
        elif "realtime_input" in message:
            chunks = message["realtime_input"].get("media_chunks") or []
            for chunk in chunks:
                if self._is_speech(chunk.get("data", "")):
                    self._schedule_reply(self._reply_delay_s)
                    break

    def _is_speech(self, b64: str) -> bool:
        try:
            pcm = bytes_from_payload(b64)
        except ValueError:
            return False
        usable = len(pcm) - (len(pcm) % 2)
        samples = np.frombuffer(pcm[:usable], dtype="<i2")[:1000]
        if samples.size == 0:
            return False
        return float(np.mean(np.abs(samples.astype(np.float64)))) > self._speech_level

    def _schedule_reply(self, delay: float) -> None:
        if self._pending is not None and not self._pending.done():
            return
        self._pending = asyncio.create_task(self._reply_after(delay))

    async def _reply_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        text = self._rng.choice(self._responses)
        self._queue.put_nowait({
            "candidates": [{
                "content": {
                    "parts": [
                        {"text": text},
                        {"inline_data": {
                            "mime_type": f"audio/pcm;rate={self._sample_rate}",
                            "data": _mock_reply_audio(self._sample_rate),
                        }},
                    ],
                },
            }],
        })

    async def messages(self) -> AsyncIterator[str | bytes]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield json.dumps(item)

    async def close(self) -> None:
        if self._close_code is not None:
            return
        self._close_code = NORMAL_CLOSE
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._queue.put_nowait(self._CLOSED)

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code


class CannedFallback(ResponseSource):
    """Offline demo mode: canned coaching lines, no network."""

    name = "canned"

    def __init__(
        self,
        responses: Optional[list[str]] = None,
        rng: Optional[random.Random] = None,
        sample_rate: int = 24000,
        reply_delay_s: float = 1.0,
        speech_level: float = 1000.0,
    ):
        self._responses = responses or CANNED_RESPONSES
        self._rng = rng or random.Random()
        self._sample_rate = sample_rate
        self._reply_delay_s = reply_delay_s
        self._speech_level = speech_level

    def check_configured(self) -> None:
        return None

    async def open(self) -> UpstreamConnection:
        return CannedConnection(
            self._responses, self._rng, self._sample_rate,
            self._reply_delay_s, self._speech_level,
        )


def create_response_source(cfg: Settings) -> ResponseSource:
    """Build the configured ResponseSource."""
    if cfg.response_source == "canned":
        return CannedFallback(sample_rate=cfg.output_sample_rate)
    if cfg.response_source == "remote":
        api_key = cfg.gemini_api_key if cfg.upstream_available else ""
        return RemoteUpstream(api_key=api_key, url=cfg.upstream_url)
    raise ConfigurationError(f"Unknown RESPONSE_SOURCE: {cfg.response_source!r}")


__all__ = [
    "CANNED_RESPONSES",
    "UpstreamConnection",
    "ResponseSource",
    "RemoteUpstream",
    "CannedFallback",
    "create_response_source",
]
