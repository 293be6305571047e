"""Consumer side of a session: the task lifecycle state machine and its read loop."""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Any

import websockets

from asr_relay.errors import AsrError, EmptyResultError, RemoteTaskFailure, TransportError
from asr_relay.protocol import (
    InboundEvent,
    ResultGenerated,
    TaskFailed,
    TaskFinished,
    TaskStarted,
    Unrecognized,
    parse_event,
)

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 150


class SessionState(enum.Enum):
    """Lifecycle of one recognition task. AWAITING_FINISH means all audio and finish-task were sent."""

    CONNECTING = "connecting"
    AWAITING_TASK_STARTED = "awaiting_task_started"
    STREAMING = "streaming"
    AWAITING_FINISH = "awaiting_finish"
    FINISHED = "finished"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"
    TRANSPORT_ERROR = "transport_error"


TERMINAL_STATES = frozenset(
    {
        SessionState.FINISHED,
        SessionState.FAILED,
        SessionState.TIMED_OUT,
        SessionState.CLOSED,
        SessionState.TRANSPORT_ERROR,
    }
)


@dataclasses.dataclass
class TranscriptState:
    """Finalized sentences in arrival order. Append-only."""

    sentences: list[str] = dataclasses.field(default_factory=list)

    def append(self, text: str) -> None:
        self.sentences.append(text)

    @property
    def text(self) -> str:
        return "".join(self.sentences)


@dataclasses.dataclass(frozen=True)
class SessionOutcome:
    """Terminal result of a session: either ``text`` or ``error`` is set."""

    text: str | None = None
    error: AsrError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResponseAggregator:
    """
    Tracks the recognition task from the server's point of view.

    The aggregator owns the sending end of the start signal and the transcript.
    Every method that ends the session returns a ``SessionOutcome``; once one has
    been produced the aggregator refuses to produce another.
    """

    def __init__(self, start_signal: asyncio.Future[None]) -> None:
        self._start_signal = start_signal
        self.transcript = TranscriptState()
        self.state = SessionState.CONNECTING
        self.outcome: SessionOutcome | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def mark_task_requested(self) -> None:
        """Record that run-task went out and the server's acknowledgement is pending."""
        self.state = SessionState.AWAITING_TASK_STARTED

    def mark_upload_finished(self) -> None:
        """Record that finish-task went out; only task-finished or task-failed should follow."""
        if self.state is SessionState.STREAMING:
            self.state = SessionState.AWAITING_FINISH

    def handle(self, event: InboundEvent) -> SessionOutcome | None:
        """
        Apply one inbound event.

        Returns:
            The session outcome for task-finished / task-failed, otherwise None.
        """
        if self.is_terminal:
            return None

        if isinstance(event, TaskStarted):
            if not self._start_signal.done():
                logger.info("Task started")
                self._start_signal.set_result(None)
                self.state = SessionState.STREAMING
            return None

        if isinstance(event, ResultGenerated):
            sentence = event.sentence
            if sentence.sentence_end and sentence.text:
                self.transcript.append(sentence.text)
                logger.debug(f"Sentence: {sentence.text}")
            return None

        if isinstance(event, TaskFinished):
            logger.info(f"Task finished, {len(self.transcript.sentences)} sentence(s)")
            return self._finish(SessionState.FINISHED, SessionOutcome(text=self.transcript.text))

        if isinstance(event, TaskFailed):
            logger.warning(f"Task failed: {event.message}")
            return self._finish(SessionState.FAILED, SessionOutcome(error=RemoteTaskFailure(event.message)))

        if isinstance(event, Unrecognized):
            logger.debug(f"Ignoring frame: {event.reason}")
            return None

        raise TypeError(f"Unhandled inbound event: {event!r}")

    def fail_transport(self, error: BaseException) -> SessionOutcome:
        """End the session because reading from the socket failed."""
        return self._finish(
            SessionState.TRANSPORT_ERROR,
            SessionOutcome(error=TransportError(f"WebSocket error: {error}")),
        )

    def finalize(self, state: SessionState) -> SessionOutcome:
        """
        End a session whose read loop stopped without a terminal event.

        Accumulated text is returned as a (possibly truncated) success; with no
        text the session fails with ``EmptyResultError``.
        """
        if self.outcome is not None:
            return self.outcome
        text = self.transcript.text
        if text:
            outcome = SessionOutcome(text=text)
        else:
            outcome = SessionOutcome(error=EmptyResultError("No recognition result received"))
        return self._finish(state, outcome)

    def _finish(self, state: SessionState, outcome: SessionOutcome) -> SessionOutcome:
        if self.outcome is not None:
            return self.outcome
        self.state = state
        self.outcome = outcome
        return outcome


def _preview(message: str | bytes) -> str:
    if isinstance(message, bytes):
        return f"<{len(message)} bytes>"
    return message[:_PREVIEW_CHARS]


async def consume(
    ws: Any,
    aggregator: ResponseAggregator,
    *,
    deadline: float,
    loop: asyncio.AbstractEventLoop | None = None,
) -> SessionOutcome:
    """
    Read frames in arrival order until the session reaches a terminal state.

    The deadline (in ``loop.time()`` units) is checked before every read and also
    bounds each individual read, so a silent socket cannot hang the session.

    Args:
        ws: Open websocket; this coroutine is its only reader
        aggregator: State machine fed with every parsed frame
        deadline: Loop time at which the session stops waiting for results
        loop: Event loop whose clock defines the deadline (defaults to the running loop)

    Returns:
        The session outcome; never raises for protocol or transport failures.
    """
    loop = loop or asyncio.get_running_loop()

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning("Timed out waiting for task-finished")
            return aggregator.finalize(SessionState.TIMED_OUT)

        try:
            message = await asyncio.wait_for(ws.recv(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for task-finished")
            return aggregator.finalize(SessionState.TIMED_OUT)
        except websockets.ConnectionClosed as e:
            if e.rcvd is not None:
                logger.warning(f"Connection closed by server: {e}")
                return aggregator.finalize(SessionState.CLOSED)
            logger.error(f"WebSocket error: {e}")
            return aggregator.fail_transport(e)
        except OSError as e:
            logger.error(f"WebSocket error: {e}")
            return aggregator.fail_transport(e)

        logger.debug(f"Received: {_preview(message)}")
        outcome = aggregator.handle(parse_event(message))
        if outcome is not None:
            return outcome
