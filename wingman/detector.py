"""Energy-based speech detector over frequency-bin magnitudes.

A coarse energy gate, not a VAD model: background noise can read as
speech and soft speech can read as silence.  The detector works on 8-bit
magnitude bins (what a browser AnalyserNode's getByteFrequencyData
returns), so the same thresholds apply whether the bins come from the
browser or from ``spectrum_bins()`` run over PCM on the server.

State machine::

    IDLE ──(smoothed level > threshold)──▶ SPEAKING
    SPEAKING ──(below threshold)──▶ silence timer armed
        timer armed + level back above threshold → timer cancelled
        timer armed + silence_timeout elapsed    → IDLE, "utterance_ended"

Time is passed in explicitly (``now``) so the silence timer is
deterministic; callers that don't care get ``time.monotonic()``.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Optional, Sequence

import numpy as np

log = logging.getLogger("wingman.detector")

MAX_BIN_MAGNITUDE = 255.0

# Browser AnalyserNode defaults
ANALYSER_FFT_SIZE = 2048
ANALYSER_MIN_DB = -100.0
ANALYSER_MAX_DB = -30.0


class DetectorState(str, enum.Enum):
    IDLE = "idle"
    SPEAKING = "speaking"


class DetectorEvent(str, enum.Enum):
    SPEECH_STARTED = "speech_started"
    UTTERANCE_ENDED = "utterance_ended"


def frame_level(bins: Sequence[float] | np.ndarray, step: int = 2) -> float:
    """RMS of every ``step``-th bin, normalized to [0, 1] by 255."""
    arr = np.asarray(bins, dtype=np.float64)[:: max(1, step)]
    if arr.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(arr**2)))
    return min(1.0, rms / MAX_BIN_MAGNITUDE)


def spectrum_bins(
    pcm_bytes: bytes,
    fft_size: int = ANALYSER_FFT_SIZE,
    min_db: float = ANALYSER_MIN_DB,
    max_db: float = ANALYSER_MAX_DB,
) -> np.ndarray:
    """Byte magnitude bins for int16 PCM, shaped like getByteFrequencyData.

    Uses the most recent ``fft_size`` samples (zero-padded when shorter),
    a Blackman window and the analyser's dB → 0..255 mapping.
    """
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2").astype(np.float64) / 32768.0
    if samples.size >= fft_size:
        samples = samples[-fft_size:]
    else:
        samples = np.pad(samples, (0, fft_size - samples.size))

    spectrum = np.abs(np.fft.rfft(samples * np.blackman(fft_size)))[: fft_size // 2] / fft_size
    with np.errstate(divide="ignore"):
        db = 20.0 * np.log10(spectrum)
    scaled = (db - min_db) * (MAX_BIN_MAGNITUDE / (max_db - min_db))
    return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, MAX_BIN_MAGNITUDE).astype(np.uint8)


class SpeechDetector:
    """Idle/Speaking gate driven by periodic frequency-bin frames."""

    def __init__(
        self,
        threshold: float = 0.012,
        silence_timeout_s: float = 0.8,
        smoothing: float = 0.8,
        bin_step: int = 2,
    ) -> None:
        if not 0.0 <= smoothing < 1.0:
            raise ValueError("smoothing must be in [0, 1)")
        self.threshold = threshold
        self.silence_timeout_s = silence_timeout_s
        self.smoothing = smoothing
        self.bin_step = bin_step

        self._state = DetectorState.IDLE
        self._level = 0.0
        self._raw_level = 0.0
        self._silence_since: Optional[float] = None

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def level(self) -> float:
        """Smoothed normalized level."""
        return self._level

    @property
    def raw_level(self) -> float:
        return self._raw_level

    @property
    def silence_timer_armed(self) -> bool:
        return self._silence_since is not None

    def reset(self) -> None:
        self._state = DetectorState.IDLE
        self._level = 0.0
        self._raw_level = 0.0
        self._silence_since = None

    def update(
        self, bins: Sequence[float] | np.ndarray, now: Optional[float] = None,
    ) -> Optional[DetectorEvent]:
        """Feed one frame of magnitude bins; return a transition event if any."""
        if now is None:
            now = time.monotonic()

        self._raw_level = frame_level(bins, self.bin_step)
        self._level = self.smoothing * self._level + (1.0 - self.smoothing) * self._raw_level
        above = self._level > self.threshold

        if self._state is DetectorState.IDLE:
            if above:
                self._state = DetectorState.SPEAKING
                self._silence_since = None
                log.debug("Speech started (level=%.4f threshold=%.4f)", self._level, self.threshold)
                return DetectorEvent.SPEECH_STARTED
            return None

        if above:
            if self._silence_since is not None:
                log.debug("Silence timer cancelled (level=%.4f)", self._level)
            self._silence_since = None
            return None

        if self._silence_since is None:
            self._silence_since = now
            log.debug("Silence timer armed (level=%.4f)", self._level)
        return self.poll(now)

    def poll(self, now: Optional[float] = None) -> Optional[DetectorEvent]:
        """Fire the silence timer if it has elapsed, without a new frame."""
        if self._state is not DetectorState.SPEAKING or self._silence_since is None:
            return None
        if now is None:
            now = time.monotonic()
        if now - self._silence_since >= self.silence_timeout_s:
            self._state = DetectorState.IDLE
            self._silence_since = None
            log.debug("Utterance ended after %.2fs of silence", self.silence_timeout_s)
            return DetectorEvent.UTTERANCE_ENDED
        return None


__all__ = [
    "DetectorEvent",
    "DetectorState",
    "SpeechDetector",
    "frame_level",
    "spectrum_bins",
]
