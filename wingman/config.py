"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, StrictBool
from pydantic_settings import BaseSettings

log = logging.getLogger("wingman.config")

DEFAULT_SYSTEM_INSTRUCTION = """You are an AI wingman helping with real-time conversation coaching.

CRITICAL INSTRUCTIONS:
- Generate INSTANT responses (1-2 sentences max)
- Be supportive, charming, and confidence-building
- Provide natural conversation suggestions
- Match the energy and tone of the conversation
- Help the user sound authentic and engaging

Keep responses SHORT, ACTIONABLE, and INSTANT!"""


class Settings(BaseSettings):
    # Upstream
    gemini_api_key: str = ""
    upstream_url: str = (
        "wss://generativelanguage.googleapis.com/ws/"
        "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContent"
    )
    upstream_model: str = "models/gemini-2.0-flash-exp"
    voice_name: str = "Aoede"
    temperature: float = 0.8
    max_output_tokens: int = 150
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION

    # "remote" talks to the upstream; "canned" serves offline demo replies
    response_source: str = "remote"

    # Session lifecycle
    ready_delay_s: float = 0.5
    reconnect_delay_s: float = 2.0
    reconnect_backoff_factor: float = 1.0
    max_reconnect_attempts: int = 3
    context_max_turns: int = 8

    # Audio
    min_binary_frame_bytes: int = 100
    input_sample_rate: int = 16000
    output_sample_rate: int = 24000

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def upstream_available(self) -> bool:
        return bool(self.gemini_api_key) and self.gemini_api_key not in _PLACEHOLDERS

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        if self.response_source not in {"remote", "canned"}:
            raise ValueError(
                f"RESPONSE_SOURCE must be 'remote' or 'canned', got {self.response_source!r}."
            )

        # The credential is checked again per session; at startup it only warns
        # so the health endpoints stay reachable.
        if self.response_source == "remote" and not self.upstream_available:
            warnings.append(
                "GEMINI_API_KEY is missing or still a placeholder. "
                "Relay sessions will be refused until it is set."
            )

        if self.response_source == "canned":
            warnings.append("RESPONSE_SOURCE=canned: serving demo replies, upstream disabled.")

        if self.max_reconnect_attempts < 0:
            raise ValueError("MAX_RECONNECT_ATTEMPTS must be >= 0.")

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        return warnings


_PLACEHOLDERS = {"AIza...", "your-api-key", "changeme"}

settings = Settings()

# Runtime-mutable settings (admin API can change these)
runtime_settings = {
    # Server-side speech detection on forwarded microphone frames
    "server_vad_enabled": True,
    # Normalized smoothed level above which the caller counts as speaking.
    # Observed useful range is 0.008-0.015.
    "vad_threshold": 0.012,
    # Silence after speech before the utterance is considered ended (seconds)
    "vad_silence_timeout_s": 0.8,
    # EMA weight on the previous level: 0.8 responds fast, 0.7 is steadier
    "vad_smoothing": 0.8,
}


class RuntimeSettingsUpdate(BaseModel):
    """Body of ``POST /api/config``; unknown keys are ignored, bad values rejected."""

    server_vad_enabled: StrictBool | None = None
    vad_threshold: float | None = Field(default=None, gt=0.0, le=1.0)
    vad_silence_timeout_s: float | None = Field(default=None, gt=0.0)
    vad_smoothing: float | None = Field(default=None, ge=0.0, lt=1.0)

    model_config = {"extra": "ignore"}

    def apply(self, target: dict) -> dict:
        """Write the fields that were sent into ``target`` and return it."""
        target.update(self.model_dump(exclude_unset=True, exclude_none=True))
        return target
