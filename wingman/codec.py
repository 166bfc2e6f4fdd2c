"""Audio framing codec — PCM16 <-> base64 for the upstream, floats for playback.

The browser captures microphone audio as float32 in [-1, 1] and ships it
as little-endian int16 PCM.  The upstream expects that PCM base64-encoded
inside a media chunk, and replies with base64 PCM at 24kHz which the
browser plays through a float32 audio sink.

  outbound:  float32 / int16 samples → clamp → int16 LE bytes → base64
  inbound:   base64 → int16 LE bytes → float32 (÷ 32768) for playback
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

PCM_MIME_TYPE = "audio/pcm"
INT16_MIN = -32768
INT16_MAX = 32767
INT16_SCALE = 32768.0


@dataclass
class AudioFrame:
    """PCM mono int16 little-endian audio at a known sample rate."""

    samples: bytes  # int16 LE PCM
    sample_rate: int = 16000
    channels: int = 1

    @property
    def duration_ms(self) -> float:
        """Duration of this frame in milliseconds."""
        return (self.num_samples / self.sample_rate) * 1000

    @property
    def num_samples(self) -> int:
        """Number of int16 samples in this frame."""
        return len(self.samples) // 2  # 2 bytes per int16 sample

    def to_float(self) -> np.ndarray:
        """Playback buffer: samples normalized to [-1, 1] as float32."""
        return pcm16_to_float(self.samples)


def clamp_samples(samples: Sequence[float] | np.ndarray) -> np.ndarray:
    """Clamp arbitrary numeric samples into the signed 16-bit range."""
    arr = np.asarray(samples, dtype=np.float64)
    return np.clip(np.round(arr), INT16_MIN, INT16_MAX).astype("<i2")


def float_to_pcm16(samples: Sequence[float] | np.ndarray) -> bytes:
    """Convert normalized float samples to int16 LE bytes.

    Values are scaled by 32768 and clamped, so +1.0 saturates at 32767
    instead of wrapping to -32768.
    """
    arr = np.asarray(samples, dtype=np.float64) * INT16_SCALE
    return clamp_samples(arr).tobytes()


def pcm16_to_float(pcm_bytes: bytes) -> np.ndarray:
    """Reinterpret int16 LE bytes as float32 in [-1, 1].

    A trailing odd byte (half a sample) is ignored.
    """
    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2")
    return (samples.astype(np.float32) / INT16_SCALE).astype(np.float32)


def encode_pcm_bytes(pcm_bytes: bytes) -> str:
    """Base64-encode raw PCM bytes for the wire."""
    return base64.b64encode(pcm_bytes).decode("ascii")


def encode_outbound(pcm: Sequence[int] | np.ndarray) -> str:
    """Pack int16 samples little-endian and base64-encode them."""
    return encode_pcm_bytes(clamp_samples(pcm).tobytes())


def decode_inbound(b64: str) -> bytes:
    """Decode a base64 PCM payload from the upstream back to raw bytes."""
    try:
        return base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 audio payload: {exc}") from exc


def media_chunk(b64: str, mime_type: str = PCM_MIME_TYPE) -> dict[str, str]:
    """Wrap an encoded payload in a media-chunk envelope."""
    return {"mime_type": mime_type, "data": b64}


def bytes_from_payload(data: Any) -> bytes:
    """Turn a client ``audio`` payload into bytes.

    Accepts a list of byte values (0..255, as produced by
    ``Array.from(new Uint8Array(buf))`` in the browser) or a base64 string.
    """
    if isinstance(data, str):
        return decode_inbound(data)
    if isinstance(data, list):
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in data):
            raise ValueError("audio data array must contain integers")
        try:
            return bytes(data)
        except ValueError as exc:
            raise ValueError("audio data values must be in 0..255") from exc
    raise ValueError("audio data must be a byte array or base64 string")


def bytes_to_payload(pcm_bytes: bytes) -> list[int]:
    """Byte list form used in client ``audio`` events."""
    return list(pcm_bytes)


__all__ = [
    "PCM_MIME_TYPE",
    "AudioFrame",
    "clamp_samples",
    "float_to_pcm16",
    "pcm16_to_float",
    "encode_pcm_bytes",
    "encode_outbound",
    "decode_inbound",
    "media_chunk",
    "bytes_from_payload",
    "bytes_to_payload",
]
