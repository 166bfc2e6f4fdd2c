"""Per-session debug event broadcaster for live relay tracing.

Each RelaySession can have a DebugBroadcaster attached.  State
transitions, text turns, upstream replies and speech-detector changes are
pushed to every subscriber's asyncio.Queue for delivery over the admin
debug WebSocket, and kept in a bounded log for the session detail API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import TypedDict

log = logging.getLogger("wingman.debug_events")


class DebugEvent(TypedDict):
    type: str          # transition | text_turn | upstream_text | speech
    timestamp: float
    session_id: str
    state: str
    data: dict


class DebugBroadcaster:
    """Per-session event broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, session_id: str, queue_size: int = 200, log_size: int = 500) -> None:
        self._session_id = session_id
        self._queue_size = queue_size
        self._subscribers: list[asyncio.Queue[DebugEvent]] = []
        self._event_log: deque[DebugEvent] = deque(maxlen=log_size)

    def subscribe(self) -> asyncio.Queue[DebugEvent]:
        """Create a new subscriber queue and return it."""
        q: asyncio.Queue[DebugEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(q)
        log.info("Debug subscriber added for session %s (total: %d)",
                 self._session_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[DebugEvent]) -> None:
        """Remove a subscriber queue."""
        if q in self._subscribers:
            self._subscribers.remove(q)
        log.info("Debug subscriber removed for session %s (total: %d)",
                 self._session_id, len(self._subscribers))

    def emit(self, event_type: str, state: str, data: dict) -> None:
        """Broadcast an event to all subscribers and append to the log."""
        event: DebugEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "session_id": self._session_id,
            "state": state,
            "data": data,
        }
        self._event_log.append(event)

        for q in self._subscribers:
            if q.full():
                # Slow subscriber: drop its oldest event to make room
                q.get_nowait()
            q.put_nowait(event)

    @property
    def event_log(self) -> list[DebugEvent]:
        """Recent event history (copy)."""
        return list(self._event_log)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# ── Broadcaster registry ─────────────────────────────────────────

_broadcasters: dict[str, DebugBroadcaster] = {}


def get_broadcaster(session_id: str) -> DebugBroadcaster:
    """Get or create a broadcaster for a session."""
    if session_id not in _broadcasters:
        _broadcasters[session_id] = DebugBroadcaster(session_id)
        log.debug("DebugBroadcaster created for session %s", session_id)
    return _broadcasters[session_id]


def find_broadcaster(session_id: str) -> DebugBroadcaster | None:
    """Look up an existing broadcaster without creating one."""
    return _broadcasters.get(session_id)


def remove_broadcaster(session_id: str) -> None:
    """Remove a broadcaster when the session ends."""
    if _broadcasters.pop(session_id, None) is not None:
        log.debug("DebugBroadcaster removed for session %s", session_id)
