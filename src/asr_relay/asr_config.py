"""Configuration classes for the realtime ASR client.

All settings live in frozen dataclasses so a session can be described by a single
``AsrConfig`` value instead of a long list of keyword arguments.

All configuration dataclasses are used with simple-parsing for CLI generation.
"""

from __future__ import annotations

import dataclasses
from typing import Literal

DASHSCOPE_ENDPOINT = "wss://dashscope.aliyuncs.com/api-ws/v1/inference/"


@dataclasses.dataclass(frozen=True, kw_only=True)
class ConnectionRetryConfig:
    """
    Retry policy for opening the websocket.

    The delay before retry ``k`` (0-indexed) is ``base_delay * min(2**k, max_backoff_factor)``.
    """

    max_retries: int = 2
    """Number of retries after the first attempt (2 = three attempts in total)."""

    base_delay: float = 1.0
    """Delay (seconds) before the first retry."""

    max_backoff_factor: int = 4
    """Upper bound on the exponential multiplier applied to base_delay."""

    def __post_init__(self) -> None:
        """Validate connection retry configuration."""
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be non-negative, got {self.base_delay}")
        if self.max_backoff_factor < 1:
            raise ValueError(f"max_backoff_factor must be >= 1, got {self.max_backoff_factor}")


@dataclasses.dataclass(frozen=True, kw_only=True)
class StreamingConfig:
    """
    Audio upload settings.

    The defaults send 3200-byte windows (100 ms of 16 kHz 16-bit mono audio) every 20 ms.
    """

    sample_rate: int = 16000
    """Sample rate (Hz) declared to the server and expected in the audio buffer."""

    audio_format: Literal["pcm"] = "pcm"
    """Wire format declared in the run-task parameters."""

    chunk_bytes: int = 3200
    """Size of each binary audio frame."""

    chunk_interval: float = 0.02
    """Pause (seconds) after each audio frame."""

    def __post_init__(self) -> None:
        """Validate streaming configuration."""
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.chunk_bytes <= 0:
            raise ValueError(f"chunk_bytes must be positive, got {self.chunk_bytes}")
        if self.chunk_bytes % 2:
            raise ValueError(f"chunk_bytes must hold whole 16-bit samples, got {self.chunk_bytes}")
        if self.chunk_interval < 0:
            raise ValueError(f"chunk_interval must be non-negative, got {self.chunk_interval}")

    @property
    def bytes_per_second(self) -> int:
        """Nominal byte rate of the declared 16-bit mono stream."""
        return self.sample_rate * 2


@dataclasses.dataclass(frozen=True, kw_only=True)
class DashScopeConfig:
    """
    Settings for the DashScope realtime recognition service.

    Contains the credential, endpoint, model and the session deadline.
    """

    api_key: str | None = None
    """DashScope API key. If None, the CLI reads DASHSCOPE_API_KEY."""

    endpoint: str = DASHSCOPE_ENDPOINT
    """Inference websocket endpoint (advanced)."""

    model: str = "paraformer-realtime-v2"
    """Realtime recognition model."""

    timeout: float = 60.0
    """Wall-clock limit (seconds) for receiving results, measured from the start of the read loop."""

    open_timeout: float = 10.0
    """Limit (seconds) for a single websocket handshake attempt."""

    ca_cert: str | None = None
    """Custom certificate bundle to trust for the wss:// connection."""

    disable_ssl_verify: bool = False
    """Disable certificate verification. WARNING: insecure, for restricted networks only."""

    debug: bool = False
    """Enable debug logging for every protocol event."""

    def __post_init__(self) -> None:
        """Validate DashScope configuration."""
        if not self.endpoint.startswith(("ws://", "wss://")):
            raise ValueError(f"endpoint must be a ws:// or wss:// URL, got {self.endpoint}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.open_timeout <= 0:
            raise ValueError(f"open_timeout must be positive, got {self.open_timeout}")


@dataclasses.dataclass(frozen=True, kw_only=True)
class SessionRetryConfig:
    """
    Retry policy for re-running a whole transcription session.

    Delay before retry ``k`` is ``min(initial_delay * backoff_multiplier**k, max_delay)``.
    Set max_retries to 0 to disable.
    """

    max_retries: int = 2
    """Number of extra sessions to attempt after a retryable failure."""

    initial_delay: float = 1.0
    """Delay (seconds) before the first session retry."""

    max_delay: float = 5.0
    """Cap (seconds) on the delay between session retries."""

    backoff_multiplier: float = 2.0
    """Growth factor applied to the delay after each retry."""

    def __post_init__(self) -> None:
        """Validate session retry configuration."""
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be non-negative, got {self.initial_delay}")
        if self.max_delay < self.initial_delay:
            raise ValueError(f"max_delay must be >= initial_delay, got {self.max_delay}")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}")


@dataclasses.dataclass(frozen=True, kw_only=True)
class AsrConfig:
    """Everything a transcription session needs besides the credential and the audio."""

    dashscope: DashScopeConfig = dataclasses.field(default_factory=DashScopeConfig)
    """Service endpoint, model and deadline."""

    streaming: StreamingConfig = dataclasses.field(default_factory=StreamingConfig)
    """Audio chunking and pacing."""

    connection_retry: ConnectionRetryConfig = dataclasses.field(default_factory=ConnectionRetryConfig)
    """Handshake retry policy."""

    session_retry: SessionRetryConfig = dataclasses.field(default_factory=SessionRetryConfig)
    """Whole-session retry policy (used by transcribe.transcribe only)."""


@dataclasses.dataclass(frozen=True, kw_only=True)
class CLIConfig:
    """
    Complete CLI configuration for asr-relay.

    This is the top-level configuration used with simple-parsing to auto-generate
    command-line arguments.
    """

    audio_file: str
    """Recording to transcribe. WAV/FLAC/OGG are decoded and resampled; .pcm/.raw are sent as-is."""

    asr: AsrConfig = dataclasses.field(default_factory=AsrConfig)
    """Transcription session settings."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    """Logging level for diagnostics written to stderr."""
