"""Realtime transcription session against the DashScope duplex websocket API."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from asr_relay.aggregator import ResponseAggregator, SessionOutcome, consume
from asr_relay.asr_config import AsrConfig
from asr_relay.audio_streamer import StreamReport, stream_audio
from asr_relay.connection import connect_with_retry
from asr_relay.errors import ConfigurationError, InputError
from asr_relay.protocol import build_run_task, new_task_id, send_json

logger = logging.getLogger(__name__)


def validate_inputs(api_key: str, audio: bytes) -> None:
    """Fail fast, before any network I/O, on a missing credential or empty audio."""
    if not api_key:
        raise ConfigurationError("DashScope API key is not configured")
    if not audio:
        raise InputError("Audio data is empty")


def _note_upload_finished(producer: asyncio.Task[StreamReport], aggregator: ResponseAggregator) -> None:
    if producer.cancelled() or producer.exception() is not None:
        return
    if producer.result().finish_sent:
        aggregator.mark_upload_finished()


async def _stop_producer(producer: asyncio.Task[StreamReport], start_signal: asyncio.Future[None]) -> None:
    # Dropping an unfired signal lets a waiting producer exit without sending.
    if not start_signal.done():
        start_signal.cancel()
    producer.cancel()
    results = await asyncio.gather(producer, return_exceptions=True)
    report = results[0]
    if isinstance(report, StreamReport):
        logger.debug(
            f"Producer stopped: chunks_sent={report.chunks_sent} finish_sent={report.finish_sent} "
            f"error={report.error}"
        )


async def transcribe_realtime_async(
    api_key: str,
    audio: bytes,
    *,
    config: AsrConfig | None = None,
) -> str:
    """
    Transcribe a complete PCM recording over one duplex recognition task.

    Args:
        api_key: DashScope API key (bearer token)
        audio: 16 kHz 16-bit mono PCM bytes
        config: Session configuration; defaults to ``AsrConfig()``

    Returns:
        The concatenated text of all finalized sentences. A session that times out or
        is closed by the server after producing some text returns that partial text.

    Raises:
        ConfigurationError: Empty API key.
        InputError: Empty audio.
        AsrConnectionError: Handshake failed on every attempt.
        ProtocolSendError: run-task could not be sent.
        RemoteTaskFailure: The server reported task-failed.
        TransportError: Reading from the socket failed.
        EmptyResultError: No terminal event and no text before the session ended.
    """
    config = config or AsrConfig()
    validate_inputs(api_key, audio)

    task_id = new_task_id()
    logger.info(f"Starting transcription task {task_id}, audio: {len(audio)} bytes")
    started_at = time.perf_counter()

    ws = await connect_with_retry(api_key, config=config.dashscope, retry=config.connection_retry)
    logger.info(f"Connected in {time.perf_counter() - started_at:.2f}s")

    try:
        await send_json(
            ws,
            build_run_task(
                task_id,
                model=config.dashscope.model,
                sample_rate=config.streaming.sample_rate,
                audio_format=config.streaming.audio_format,
            ),
        )
        logger.info("run-task sent")

        loop = asyncio.get_running_loop()
        start_signal: asyncio.Future[None] = loop.create_future()
        aggregator = ResponseAggregator(start_signal)
        aggregator.mark_task_requested()

        producer = asyncio.create_task(
            stream_audio(ws, audio, task_id, start_signal, config=config.streaming),
            name=f"asr-producer-{task_id}",
        )
        producer.add_done_callback(lambda task: _note_upload_finished(task, aggregator))
        try:
            outcome: SessionOutcome = await consume(
                ws,
                aggregator,
                deadline=loop.time() + config.dashscope.timeout,
                loop=loop,
            )
        finally:
            await _stop_producer(producer, start_signal)
    finally:
        await _close_quietly(ws)

    logger.info(
        f"Task {task_id} ended in state {aggregator.state.value} after {time.perf_counter() - started_at:.2f}s"
    )
    if outcome.error is not None:
        raise outcome.error
    return outcome.text or ""


async def _close_quietly(ws: Any) -> None:
    try:
        await ws.close()
    except Exception as e:
        logger.debug(f"Error while closing websocket: {e}")


def transcribe_realtime(api_key: str, audio: bytes, *, config: AsrConfig | None = None) -> str:
    """Blocking wrapper around ``transcribe_realtime_async``."""
    return asyncio.run(transcribe_realtime_async(api_key, audio, config=config))

