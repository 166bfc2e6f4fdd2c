"""Tests for the audio framing codec."""

import base64

import numpy as np
import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from wingman.codec import (
    AudioFrame,
    bytes_from_payload,
    bytes_to_payload,
    clamp_samples,
    decode_inbound,
    encode_outbound,
    encode_pcm_bytes,
    float_to_pcm16,
    media_chunk,
    pcm16_to_float,
)


class TestAudioFrame:
    def test_audioframe_properties(self):
        # 160 samples of int16 = 320 bytes = 10ms at 16kHz
        frame = AudioFrame(samples=b"\x00\x00" * 160)
        assert frame.num_samples == 160
        assert frame.duration_ms == pytest.approx(10.0)
        assert frame.sample_rate == 16000
        assert frame.channels == 1

    def test_reply_frame_duration(self):
        frame = AudioFrame(samples=b"\x00\x00" * 2400, sample_rate=24000)
        assert frame.duration_ms == pytest.approx(100.0)

    def test_to_float(self):
        frame = AudioFrame(samples=np.array([16384, -16384], dtype="<i2").tobytes())
        assert frame.to_float().tolist() == [0.5, -0.5]


class TestPcmConversion:
    def test_float_round_trip_within_one_step(self):
        samples = np.linspace(-0.999, 0.999, 501)
        restored = pcm16_to_float(float_to_pcm16(samples))
        assert np.max(np.abs(restored - samples)) <= 1 / 32768

    def test_full_scale_clamps(self):
        pcm = np.frombuffer(float_to_pcm16([1.0, -1.0, 1.5, -2.0]), dtype="<i2")
        assert pcm.tolist() == [32767, -32768, 32767, -32768]

    def test_little_endian_layout(self):
        assert float_to_pcm16([1 / 32768]) == b"\x01\x00"
        assert clamp_samples([256]).tobytes() == b"\x00\x01"

    def test_clamp_out_of_range_integers(self):
        assert clamp_samples([40000, -40000, 12]).tolist() == [32767, -32768, 12]

    def test_odd_trailing_byte_ignored(self):
        pcm = np.array([1000, -1000], dtype="<i2").tobytes() + b"\x7f"
        assert pcm16_to_float(pcm).size == 2

    def test_playback_scale(self):
        pcm = np.array([-32768, 0], dtype="<i2").tobytes()
        assert pcm16_to_float(pcm).tolist() == [-1.0, 0.0]


class TestBase64:
    def test_encode_outbound_packs_int16(self):
        b64 = encode_outbound([0, 1, -1])
        assert base64.b64decode(b64) == b"\x00\x00\x01\x00\xff\xff"

    def test_decode_inbound_round_trip(self):
        pcm = np.arange(-50, 50, dtype="<i2").tobytes()
        assert decode_inbound(encode_pcm_bytes(pcm)) == pcm

    def test_full_int16_range_through_base64(self):
        samples = np.arange(-32768, 32768)
        pcm = decode_inbound(encode_outbound(samples))
        assert pcm == samples.astype("<i2").tobytes()
        restored = pcm16_to_float(pcm)
        assert np.max(np.abs(restored - samples / 32768)) <= 1 / 32768

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            decode_inbound("not base64!!")

    def test_media_chunk(self):
        assert media_chunk("AAAA") == {"mime_type": "audio/pcm", "data": "AAAA"}


class TestClientPayload:
    def test_byte_list(self):
        assert bytes_from_payload([0, 1, 255]) == b"\x00\x01\xff"

    def test_base64_string(self):
        assert bytes_from_payload(base64.b64encode(b"\x01\x02").decode()) == b"\x01\x02"

    def test_out_of_range_values(self):
        with pytest.raises(ValueError):
            bytes_from_payload([0, 256])

    def test_non_integers(self):
        with pytest.raises(ValueError):
            bytes_from_payload([0.5, 1])
        with pytest.raises(ValueError):
            bytes_from_payload([True, False])

    def test_wrong_type(self):
        with pytest.raises(ValueError):
            bytes_from_payload({"data": [1, 2]})

    def test_payload_list(self):
        assert bytes_to_payload(b"\x00\x10") == [0, 16]
