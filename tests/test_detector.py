"""Tests for the energy-based speech detector."""

import numpy as np
import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from wingman.detector import (
    DetectorEvent,
    DetectorState,
    SpeechDetector,
    frame_level,
    spectrum_bins,
)


def flat_bins(value, n=1024):
    return [value] * n


# 0.012 * 255 = 3.06: bins of 6 read above the default threshold, bins of 2 below
LOUD = flat_bins(6)
QUIET = flat_bins(2)
SILENT = flat_bins(0)


class TestFrameLevel:
    def test_silence(self):
        assert frame_level(SILENT) == 0.0

    def test_full_scale(self):
        assert frame_level(flat_bins(255)) == pytest.approx(1.0)

    def test_uses_every_second_bin(self):
        bins = [255, 0] * 512
        assert frame_level(bins) == pytest.approx(1.0)
        assert frame_level(bins, step=1) == pytest.approx(np.sqrt(0.5))

    def test_empty(self):
        assert frame_level([]) == 0.0


class TestSpectrumBins:
    def test_shape_and_range(self):
        pcm = (np.sin(np.arange(2048) * 0.3) * 10000).astype("<i2").tobytes()
        bins = spectrum_bins(pcm)
        assert bins.shape == (1024,)
        assert bins.dtype == np.uint8
        assert bins.max() > 200

    def test_silence_is_zero(self):
        assert spectrum_bins(b"\x00\x00" * 2048).max() == 0

    def test_short_frame_padded(self):
        pcm = (np.ones(320) * 8000).astype("<i2").tobytes()
        assert spectrum_bins(pcm).shape == (1024,)


class TestTransitions:
    def test_starts_idle(self):
        d = SpeechDetector()
        assert d.state is DetectorState.IDLE
        assert d.level == 0.0

    def test_threshold_crossing_starts_speech(self):
        d = SpeechDetector(threshold=0.012, smoothing=0.0)
        assert d.update(QUIET, now=0.0) is None
        assert d.update(LOUD, now=0.1) is DetectorEvent.SPEECH_STARTED
        assert d.state is DetectorState.SPEAKING

    def test_smoothing_delays_onset(self):
        d = SpeechDetector(threshold=0.012, smoothing=0.8)
        # 0.2 * 6/255 = 0.0047, below threshold on the first loud frame
        assert d.update(LOUD, now=0.0) is None
        events = [d.update(LOUD, now=0.1 * i) for i in range(1, 10)]
        assert DetectorEvent.SPEECH_STARTED in events

    def test_level_equal_to_threshold_is_not_speech(self):
        d = SpeechDetector(threshold=frame_level(LOUD), smoothing=0.0)
        assert d.update(LOUD, now=0.0) is None

    def test_silence_timeout_ends_utterance(self):
        d = SpeechDetector(threshold=0.012, silence_timeout_s=0.8, smoothing=0.0)
        d.update(LOUD, now=0.0)
        assert d.update(SILENT, now=1.0) is None
        assert d.silence_timer_armed is True
        assert d.update(SILENT, now=1.79) is None
        assert d.update(SILENT, now=1.85) is DetectorEvent.UTTERANCE_ENDED
        assert d.state is DetectorState.IDLE
        assert d.silence_timer_armed is False

    def test_speech_resuming_cancels_timer(self):
        d = SpeechDetector(threshold=0.012, silence_timeout_s=0.8, smoothing=0.0)
        d.update(LOUD, now=0.0)
        d.update(SILENT, now=1.0)
        assert d.update(LOUD, now=1.5) is None
        assert d.silence_timer_armed is False
        assert d.update(SILENT, now=2.0) is None
        # Timer restarted at 2.0, so 2.5 is too early
        assert d.update(SILENT, now=2.5) is None
        assert d.state is DetectorState.SPEAKING

    def test_poll_fires_without_new_frame(self):
        d = SpeechDetector(threshold=0.012, silence_timeout_s=0.5, smoothing=0.0)
        d.update(LOUD, now=0.0)
        d.update(SILENT, now=0.1)
        assert d.poll(now=0.5) is None
        assert d.poll(now=0.65) is DetectorEvent.UTTERANCE_ENDED

    def test_poll_idle_is_noop(self):
        assert SpeechDetector().poll(now=100.0) is None

    def test_reset(self):
        d = SpeechDetector(smoothing=0.0)
        d.update(LOUD, now=0.0)
        d.reset()
        assert d.state is DetectorState.IDLE
        assert d.level == 0.0

    def test_invalid_smoothing(self):
        with pytest.raises(ValueError):
            SpeechDetector(smoothing=1.0)
