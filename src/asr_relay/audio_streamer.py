"""Producer side of a session: paced upload of the recorded audio."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterator
from typing import Any

import websockets

from asr_relay.asr_config import StreamingConfig
from asr_relay.errors import ProtocolSendError
from asr_relay.protocol import build_finish_task, send_json

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class StreamReport:
    """What the producer managed to send before it stopped."""

    chunks_sent: int = 0
    finish_sent: bool = False
    cancelled: bool = False
    error: ProtocolSendError | None = None


def iter_chunks(audio: bytes, chunk_bytes: int) -> Iterator[bytes]:
    """Yield consecutive ``chunk_bytes`` windows of ``audio``; the last may be shorter."""
    for start in range(0, len(audio), chunk_bytes):
        yield audio[start : start + chunk_bytes]


async def stream_audio(
    ws: Any,
    audio: bytes,
    task_id: str,
    start_signal: asyncio.Future[None],
    *,
    config: StreamingConfig,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> StreamReport:
    """
    Upload ``audio`` as binary frames once ``start_signal`` resolves, then send finish-task.

    The signal is awaited through ``asyncio.shield`` so that cancelling this task and
    dropping the signal can be told apart: a cancelled signal means the session ended
    before the server accepted the task, and the producer returns without sending.

    Args:
        ws: Open websocket; this coroutine is its only writer once started
        audio: 16-bit PCM bytes
        task_id: Task id used in the finish-task header
        start_signal: One-shot future resolved on task-started
        config: Chunk size and pacing
        sleep: Coroutine used for pacing (injectable for tests)

    Returns:
        StreamReport describing what was sent. Send failures are recorded, not raised.
    """
    report = StreamReport()

    try:
        await asyncio.shield(start_signal)
    except asyncio.CancelledError:
        if not start_signal.cancelled():
            raise
        logger.info("Start signal dropped before task-started; audio not sent")
        report.cancelled = True
        return report

    logger.info(f"Sending {len(audio)} bytes of audio...")
    for index, chunk in enumerate(iter_chunks(audio, config.chunk_bytes)):
        try:
            await ws.send(chunk)
        except (websockets.ConnectionClosed, OSError) as e:
            logger.warning(f"Send audio failed at chunk {index}: {e}")
            report.error = ProtocolSendError(f"Send audio failed at chunk {index}: {e}")
            return report
        report.chunks_sent += 1
        await sleep(config.chunk_interval)

    logger.info("Audio sent, sending finish-task...")
    try:
        await send_json(ws, build_finish_task(task_id))
    except ProtocolSendError as e:
        logger.warning(str(e))
        report.error = e
        return report
    report.finish_sent = True
    logger.info("finish-task sent")
    return report
