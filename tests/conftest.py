"""Pytest configuration and fixtures for asr_relay tests."""

from __future__ import annotations

import pytest

from asr_relay.asr_config import AsrConfig, ConnectionRetryConfig, DashScopeConfig, SessionRetryConfig, StreamingConfig


@pytest.fixture
def pcm_audio() -> bytes:
    """Three full 3200-byte chunks plus a 1000-byte tail of silence."""
    return bytes(3200 * 3 + 1000)


@pytest.fixture
def fast_config() -> AsrConfig:
    """
    Session configuration that keeps tests quick.

    No pacing between audio frames, no backoff between handshake attempts, a short
    deadline and no whole-session retries.
    """
    return AsrConfig(
        dashscope=DashScopeConfig(endpoint="wss://example.com/api-ws/v1/inference/", timeout=2.0),
        streaming=StreamingConfig(chunk_interval=0.0),
        connection_retry=ConnectionRetryConfig(base_delay=0.0),
        session_retry=SessionRetryConfig(max_retries=0, initial_delay=0.0, max_delay=0.0),
    )
