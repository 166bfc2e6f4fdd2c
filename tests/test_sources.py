"""Tests for response sources (remote upstream + canned fallback)."""

import asyncio
import base64
import json
import random

import numpy as np
import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from wingman.codec import encode_outbound
from wingman.config import Settings
from wingman.errors import ConfigurationError
from wingman.protocol import build_client_content, build_realtime_input, build_setup_message, make_turn
from wingman.sources import (
    CANNED_RESPONSES,
    CannedFallback,
    RemoteUpstream,
    create_response_source,
)


async def next_message(conn, timeout=1.0):
    return json.loads(await asyncio.wait_for(conn.messages().__anext__(), timeout))


class TestRemoteUpstream:
    def test_connection_url_carries_key(self):
        source = RemoteUpstream(api_key="abc123", url="wss://example.test/ws")
        assert source.connection_url() == "wss://example.test/ws?key=abc123"

    def test_connection_url_existing_query(self):
        source = RemoteUpstream(api_key="abc", url="wss://example.test/ws?alt=json")
        assert source.connection_url() == "wss://example.test/ws?alt=json&key=abc"

    def test_missing_key_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            RemoteUpstream(api_key="", url="wss://example.test/ws").check_configured()

    @pytest.mark.asyncio
    async def test_open_without_key_never_dials(self):
        with pytest.raises(ConfigurationError):
            await RemoteUpstream(api_key="", url="wss://example.test/ws").open()


class TestCreateResponseSource:
    def test_remote(self):
        source = create_response_source(Settings(gemini_api_key="real-key"))
        assert isinstance(source, RemoteUpstream)
        source.check_configured()

    def test_remote_placeholder_key_unconfigured(self):
        source = create_response_source(Settings(gemini_api_key="your-api-key"))
        with pytest.raises(ConfigurationError):
            source.check_configured()

    def test_canned(self):
        source = create_response_source(Settings(response_source="canned"))
        assert isinstance(source, CannedFallback)
        assert source.name == "canned"

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            create_response_source(Settings(response_source="carrier-pigeon"))


class TestCannedFallback:
    @pytest.mark.asyncio
    async def test_setup_acknowledged(self):
        conn = await CannedFallback().open()
        await conn.send_json(build_setup_message(Settings()))
        assert await next_message(conn) == {"setupComplete": {}}
        await conn.close()

    @pytest.mark.asyncio
    async def test_text_turn_gets_text_and_audio(self):
        conn = await CannedFallback(rng=random.Random(1), sample_rate=24000).open()
        await conn.send_json(build_client_content([make_turn("user", "hi")]))

        parts = (await next_message(conn))["candidates"][0]["content"]["parts"]
        assert parts[0]["text"] in CANNED_RESPONSES
        inline = parts[1]["inline_data"]
        assert inline["mime_type"] == "audio/pcm;rate=24000"
        assert len(base64.b64decode(inline["data"])) == 24000 * 2
        await conn.close()

    @pytest.mark.asyncio
    async def test_loud_audio_triggers_reply(self):
        conn = await CannedFallback(reply_delay_s=0.0).open()
        loud = np.full(1600, 4000, dtype=np.int16)
        await conn.send_json(build_realtime_input(encode_outbound(loud)))
        msg = await next_message(conn)
        assert "candidates" in msg
        await conn.close()

    @pytest.mark.asyncio
    async def test_quiet_audio_ignored(self):
        conn = await CannedFallback(reply_delay_s=0.0).open()
        quiet = np.full(1600, 10, dtype=np.int16)
        await conn.send_json(build_realtime_input(encode_outbound(quiet)))
        with pytest.raises(asyncio.TimeoutError):
            await next_message(conn, timeout=0.05)
        await conn.close()

    @pytest.mark.asyncio
    async def test_close_ends_stream_normally(self):
        conn = await CannedFallback().open()
        await conn.close()
        assert conn.close_code == 1000
        received = [m async for m in conn.messages()]
        assert received == []
