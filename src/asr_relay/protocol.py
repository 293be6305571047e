"""Wire format of the DashScope duplex recognition protocol.

Outbound control messages are plain dicts serialized with ``json``. Inbound frames
are classified into a closed set of event types; anything the client does not
understand becomes ``Unrecognized`` so the read loop can skip it explicitly.
"""

from __future__ import annotations

import dataclasses
import json
import uuid
from typing import Any

import websockets

from asr_relay.errors import ProtocolSendError

STREAMING_MODE = "duplex"
UNKNOWN_ERROR = "Unknown error"


@dataclasses.dataclass(frozen=True)
class Sentence:
    text: str | None
    sentence_end: bool


@dataclasses.dataclass(frozen=True)
class TaskStarted:
    pass


@dataclasses.dataclass(frozen=True)
class ResultGenerated:
    sentence: Sentence


@dataclasses.dataclass(frozen=True)
class TaskFinished:
    pass


@dataclasses.dataclass(frozen=True)
class TaskFailed:
    message: str


@dataclasses.dataclass(frozen=True)
class Unrecognized:
    reason: str


InboundEvent = TaskStarted | ResultGenerated | TaskFinished | TaskFailed | Unrecognized


def new_task_id() -> str:
    """Return a fresh task id (a UUID4 without hyphens)."""
    return uuid.uuid4().hex


def _header(action: str, task_id: str) -> dict[str, object]:
    return {"action": action, "task_id": task_id, "streaming": STREAMING_MODE}


def build_run_task(
    task_id: str,
    *,
    model: str,
    sample_rate: int,
    audio_format: str = "pcm",
) -> dict[str, object]:
    """Build the run-task payload that opens a recognition task."""

    return {
        "header": _header("run-task", task_id),
        "payload": {
            "task_group": "audio",
            "task": "asr",
            "function": "recognition",
            "model": model,
            "parameters": {"format": audio_format, "sample_rate": sample_rate},
            "input": {},
        },
    }


def build_finish_task(task_id: str) -> dict[str, object]:
    """Build the finish-task payload sent after the last audio frame."""

    return {"header": _header("finish-task", task_id), "payload": {"input": {}}}


async def send_json(ws: Any, payload: dict[str, object]) -> None:
    """Send a JSON payload through the websocket.

    Raises:
        ProtocolSendError: If the payload cannot be serialized or the send fails.
    """

    try:
        message = json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise ProtocolSendError(f"Failed to serialize control message: {e}") from e
    try:
        await ws.send(message)
    except (websockets.ConnectionClosed, OSError) as e:
        action = _as_dict(payload.get("header")).get("action", "message")
        raise ProtocolSendError(f"Send {action} failed: {e}") from e


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_event(message: str | bytes) -> InboundEvent:
    """
    Classify a single inbound websocket frame.

    Args:
        message: Frame as returned by ``ws.recv()``

    Returns:
        The matching event, or ``Unrecognized`` for binary frames, malformed JSON
        and unknown event names.
    """
    if isinstance(message, bytes):
        return Unrecognized(reason=f"binary frame ({len(message)} bytes)")

    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        return Unrecognized(reason=f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return Unrecognized(reason="frame is not a JSON object")

    header = _as_dict(data.get("header"))
    event = header.get("event")

    if event == "task-started":
        return TaskStarted()
    if event == "result-generated":
        output = _as_dict(_as_dict(data.get("payload")).get("output"))
        sentence = _as_dict(output.get("sentence"))
        text = sentence.get("text")
        return ResultGenerated(
            sentence=Sentence(
                text=text if isinstance(text, str) else None,
                sentence_end=sentence.get("sentence_end") is True,
            )
        )
    if event == "task-finished":
        return TaskFinished()
    if event == "task-failed":
        message_text = header.get("error_message") or header.get("message") or UNKNOWN_ERROR
        return TaskFailed(message=str(message_text))
    return Unrecognized(reason=f"unknown event {event!r}")
