from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from asr_relay import audio_io, session
from asr_relay.asr_config import AsrConfig, SessionRetryConfig
from asr_relay.errors import AsrError

logger = logging.getLogger(__name__)


def session_retry_delay(attempt: int, config: SessionRetryConfig) -> float:
    """Delay (seconds) before re-running the session after failed attempt ``attempt``."""
    return min(config.initial_delay * config.backoff_multiplier**attempt, config.max_delay)


async def transcribe_async(
    api_key: str,
    audio: bytes,
    *,
    config: AsrConfig | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> str:
    """
    Transcribe a recording, re-running the whole session on retryable failures.

    This is the entry point the desktop client uses after push-to-talk ends: it
    accepts either raw PCM or a WAV blob, and gives up only after
    ``config.session_retry.max_retries`` extra sessions.

    Args:
        api_key: DashScope API key
        audio: Raw 16-bit PCM, or the same samples wrapped in a 44-byte WAV header
        config: Session configuration; defaults to ``AsrConfig()``
        sleep: Coroutine used to wait between sessions (injectable for tests)

    Returns:
        The transcript of the first successful session.

    Raises:
        AsrError: The error of the last attempt, or the first non-retryable error.
    """
    config = config or AsrConfig()
    pcm = audio_io.strip_wav_header(audio)
    retry = config.session_retry

    attempt = 0
    while True:
        try:
            return await session.transcribe_realtime_async(api_key, pcm, config=config)
        except AsrError as e:
            logger.error(f"Attempt {attempt + 1} failed: {e}")
            if not e.retryable or attempt >= retry.max_retries:
                raise
            delay = session_retry_delay(attempt, retry)
            logger.warning(f"Retrying transcription in {delay * 1000:.0f}ms (attempt {attempt + 2})")
        await sleep(delay)
        attempt += 1


def transcribe(api_key: str, audio: bytes, *, config: AsrConfig | None = None) -> str:
    """Blocking wrapper around ``transcribe_async``."""
    return asyncio.run(transcribe_async(api_key, audio, config=config))
