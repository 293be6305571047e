from __future__ import annotations

import asyncio
import dataclasses
import json
import math

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from asr_relay import connection, session
from asr_relay.aggregator import ResponseAggregator
from asr_relay.asr_config import DashScopeConfig, StreamingConfig
from asr_relay.audio_streamer import StreamReport
from asr_relay.errors import (
    AsrConnectionError,
    ConfigurationError,
    EmptyResultError,
    InputError,
    ProtocolSendError,
    RemoteTaskFailure,
    TransportError,
)
from asr_relay.protocol import TaskStarted
from test_helpers import Delay, FakeConnector, FakeDashScopeSocket, event_frame, received_at, sentence_frame


def _run_session(monkeypatch, config, audio, api_key="sk-test", **socket_kwargs):
    """Run one session against a scripted socket; returns (result or exception, socket, connector)."""
    holder: dict[str, object] = {}

    async def run():
        ws = FakeDashScopeSocket(**socket_kwargs)
        connector = FakeConnector(ws)
        holder["ws"] = ws
        holder["connector"] = connector
        monkeypatch.setattr(connection.websockets, "connect", connector)
        try:
            return await session.transcribe_realtime_async(api_key, audio, config=config)
        except Exception as e:
            return e

    result = asyncio.run(run())
    return result, holder.get("ws"), holder.get("connector")


def test_empty_credential_fails_before_connecting(monkeypatch, fast_config, pcm_audio):
    connector = FakeConnector(FakeDashScopeSocket())
    monkeypatch.setattr(connection.websockets, "connect", connector)

    with pytest.raises(ConfigurationError):
        session.transcribe_realtime("", pcm_audio, config=fast_config)
    assert connector.calls == []


def test_empty_audio_fails_before_connecting(monkeypatch, fast_config):
    connector = FakeConnector(FakeDashScopeSocket())
    monkeypatch.setattr(connection.websockets, "connect", connector)

    with pytest.raises(InputError):
        session.transcribe_realtime("sk-test", b"", config=fast_config)
    assert connector.calls == []


@pytest.mark.integration
def test_session_returns_final_sentences_in_order(monkeypatch, fast_config, pcm_audio):
    result, ws, connector = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        on_run_task=[event_frame("task-started")],
        on_finish_task=[
            sentence_frame("S", False),
            sentence_frame("S1", True),
            sentence_frame("S2 par", None),
            sentence_frame("S2", True),
            event_frame("task-finished"),
        ],
    )

    assert result == "S1S2"
    assert ws.closed

    _, kwargs = connector.calls[0]
    assert ("Authorization", "Bearer sk-test") in kwargs["additional_headers"]

    # run-task first, then every audio chunk, then finish-task.
    assert isinstance(ws.sent[0][1], str)
    first = json.loads(ws.sent[0][1])
    assert first["header"]["action"] == "run-task"
    assert first["payload"]["model"] == "paraformer-realtime-v2"
    assert len(ws.sent_binary) == math.ceil(len(pcm_audio) / 3200)
    assert len(ws.sent_binary[-1][1]) == len(pcm_audio) % 3200
    assert ws.sent_actions == ["run-task", "finish-task"]

    last = json.loads(ws.sent[-1][1])
    assert last["header"]["task_id"] == first["header"]["task_id"]


@pytest.mark.integration
def test_no_audio_is_sent_before_task_started(monkeypatch, fast_config, pcm_audio):
    result, ws, _ = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        on_run_task=[Delay(0.05), event_frame("task-started")],
        on_finish_task=[sentence_frame("ok", True), event_frame("task-finished")],
    )

    assert result == "ok"
    started = received_at(ws, "task-started")
    assert ws.sent_binary
    assert all(ts >= started for ts, _ in ws.sent_binary)


@pytest.mark.integration
def test_task_failed_surfaces_server_message(monkeypatch, fast_config, pcm_audio):
    result, ws, _ = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        on_run_task=[event_frame("task-failed", error_message="model unavailable")],
    )

    assert isinstance(result, RemoteTaskFailure)
    assert "model unavailable" in str(result)
    assert ws.sent_binary == []
    assert ws.closed


@pytest.mark.integration
def test_task_failed_without_message_uses_default(monkeypatch, fast_config, pcm_audio):
    result, _, _ = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        on_run_task=[event_frame("task-started")],
        on_finish_task=[event_frame("task-failed")],
    )

    assert isinstance(result, RemoteTaskFailure)
    assert result.server_message == "Unknown error"


@pytest.mark.integration
def test_producer_stops_after_terminal_event(monkeypatch, fast_config, pcm_audio):
    slow = dataclasses.replace(fast_config, streaming=StreamingConfig(chunk_interval=0.05))
    long_audio = pcm_audio * 20

    async def run():
        ws = FakeDashScopeSocket(
            on_run_task=[event_frame("task-started"), Delay(0.12), event_frame("task-finished")],
        )
        monkeypatch.setattr(connection.websockets, "connect", FakeConnector(ws))
        text = await session.transcribe_realtime_async("sk-test", long_audio, config=slow)
        sent_when_done = len(ws.sent)
        await asyncio.sleep(0.2)
        return text, ws, sent_when_done

    text, ws, sent_when_done = asyncio.run(run())

    assert text == ""
    assert len(ws.sent) == sent_when_done
    assert 0 < len(ws.sent_binary) < math.ceil(len(long_audio) / 3200)
    assert "finish-task" not in ws.sent_actions
    finished = received_at(ws, "task-finished")
    assert all(ts <= finished for ts, _ in ws.sent_binary)


@pytest.mark.integration
def test_silent_server_times_out_with_empty_result(monkeypatch, fast_config, pcm_audio):
    short = dataclasses.replace(
        fast_config,
        dashscope=dataclasses.replace(fast_config.dashscope, timeout=0.1),
    )
    result, ws, _ = _run_session(monkeypatch, short, pcm_audio)

    assert isinstance(result, EmptyResultError)
    assert ws.sent_actions == ["run-task"]
    assert ws.sent_binary == []
    assert ws.closed


@pytest.mark.integration
def test_timeout_with_partial_text_is_degraded_success(monkeypatch, fast_config, pcm_audio):
    short = dataclasses.replace(
        fast_config,
        dashscope=dataclasses.replace(fast_config.dashscope, timeout=0.2),
    )
    result, _, _ = _run_session(
        monkeypatch,
        short,
        pcm_audio,
        on_run_task=[event_frame("task-started")],
        on_finish_task=[sentence_frame("truncated", True)],
    )

    assert result == "truncated"


@pytest.mark.integration
def test_peer_close_with_partial_text_returns_it(monkeypatch, fast_config, pcm_audio):
    result, _, _ = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        on_run_task=[event_frame("task-started")],
        on_finish_task=[sentence_frame("S1", True), ConnectionClosedOK(Close(1000, ""), None)],
    )

    assert result == "S1"


@pytest.mark.integration
def test_peer_close_without_text_is_empty_result(monkeypatch, fast_config, pcm_audio):
    result, _, _ = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        on_run_task=[ConnectionClosedOK(Close(1000, ""), None)],
    )

    assert isinstance(result, EmptyResultError)


@pytest.mark.integration
def test_read_failure_is_transport_error(monkeypatch, fast_config, pcm_audio):
    result, ws, _ = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        on_run_task=[event_frame("task-started"), sentence_frame("lost", True), ConnectionClosedError(None, None)],
    )

    assert isinstance(result, TransportError)
    assert ws.closed


@pytest.mark.integration
def test_audio_send_failure_is_left_to_the_reader(monkeypatch, fast_config, pcm_audio):
    result, ws, _ = _run_session(
        monkeypatch,
        fast_config,
        pcm_audio,
        fail_audio_at=1,
        on_run_task=[event_frame("task-started"), Delay(0.05), ConnectionClosedError(None, None)],
    )

    assert isinstance(result, TransportError)
    assert len(ws.sent_binary) == 1
    assert "finish-task" not in ws.sent_actions


@pytest.mark.integration
def test_run_task_send_failure_closes_socket(monkeypatch, fast_config, pcm_audio):
    result, ws, _ = _run_session(monkeypatch, fast_config, pcm_audio, fail_control={"run-task"})

    assert isinstance(result, ProtocolSendError)
    assert ws.closed


def test_connection_failure_after_retries(monkeypatch, fast_config, pcm_audio):
    connector = FakeConnector(failures=10)
    monkeypatch.setattr(connection.websockets, "connect", connector)

    with pytest.raises(AsrConnectionError):
        session.transcribe_realtime("sk-test", pcm_audio, config=fast_config)
    assert len(connector.calls) == 3


def test_each_session_uses_a_new_task_id(monkeypatch, fast_config, pcm_audio):
    task_ids = []
    for _ in range(2):
        _, ws, _ = _run_session(
            monkeypatch,
            fast_config,
            pcm_audio,
            on_run_task=[event_frame("task-finished")],
        )
        task_ids.append(json.loads(ws.sent[0][1])["header"]["task_id"])

    assert task_ids[0] != task_ids[1]


def test_blocking_session_connects_once_on_runtime_error(monkeypatch, fast_config, pcm_audio):
    calls = []

    async def connector(*args, **kwargs):
        calls.append((args, kwargs))
        raise RuntimeError("event loop is closed")

    monkeypatch.setattr(connection.websockets, "connect", connector)

    with pytest.raises(RuntimeError, match="event loop is closed"):
        session.transcribe_realtime("sk-test", pcm_audio, config=fast_config)
    assert len(calls) == 1


def test_default_config_targets_dashscope():
    config = DashScopeConfig()
    assert config.endpoint == "wss://dashscope.aliyuncs.com/api-ws/v1/inference/"
    assert config.timeout == 60.0


@pytest.mark.parametrize("finish_sent, expected", [(True, "awaiting_finish"), (False, "streaming")])
def test_producer_completion_updates_session_state(finish_sent, expected):
    async def run():
        signal = asyncio.get_running_loop().create_future()
        aggregator = ResponseAggregator(signal)
        aggregator.mark_task_requested()
        aggregator.handle(TaskStarted())

        async def producer():
            return StreamReport(chunks_sent=3, finish_sent=finish_sent)

        task = asyncio.create_task(producer())
        await task
        session._note_upload_finished(task, aggregator)
        return aggregator.state.value

    assert asyncio.run(run()) == expected
