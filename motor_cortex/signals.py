"""Run lifecycle signals: one per terminal or pause transition."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class MotorTopics:
    """Signal topics emitted by the runtime."""

    # Run finished; payload: {"result": TaskResult dict}
    COMPLETED = "motor.run.completed"

    # Paused on ask_user; payload: {"question": str}
    AWAITING_INPUT = "motor.run.awaiting_input"

    # Paused on request_approval; payload: {"action": str, "expires_at": iso str}
    AWAITING_APPROVAL = "motor.run.awaiting_approval"

    # Run failed for good; payload: {"failure": FailureSummary dict | None, "error": str}
    FAILED = "motor.run.failed"


TOPIC_BY_STATUS = {
    "completed": MotorTopics.COMPLETED,
    "awaiting_input": MotorTopics.AWAITING_INPUT,
    "awaiting_approval": MotorTopics.AWAITING_APPROVAL,
    "failed": MotorTopics.FAILED,
}


@dataclass(frozen=True)
class Signal:
    """Immutable notification handed to a SignalSink."""

    topic: str
    run_id: str
    attempt_index: int
    status: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


def make_signal(run_id: str, attempt_index: int, status: str, **payload: Any) -> Signal:
    return Signal(
        topic=TOPIC_BY_STATUS[status],
        run_id=run_id,
        attempt_index=attempt_index,
        status=status,
        payload=payload,
    )


@runtime_checkable
class SignalSink(Protocol):
    def emit(self, signal: Signal) -> None: ...


class QueueSignalSink:
    """Buffers signals in an asyncio.Queue for a consumer task."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Signal] = asyncio.Queue()

    def emit(self, signal: Signal) -> None:
        self._queue.put_nowait(signal)

    async def get(self, timeout: float | None = None) -> Signal:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def drain(self) -> list[Signal]:
        """Return and remove everything queued so far."""
        items: list[Signal] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items


class CallbackSignalSink:
    """Calls a plain function per signal. Handler errors are logged, never propagated."""

    def __init__(self, callback: Callable[[Signal], None]) -> None:
        self._callback = callback

    def emit(self, signal: Signal) -> None:
        try:
            self._callback(signal)
        except Exception:
            logger.exception("signals: callback failed for %s (run %s)", signal.topic, signal.run_id)


class LoggingSignalSink:
    """Default sink: records signals in the log only."""

    def emit(self, signal: Signal) -> None:
        logger.info(
            "signals: %s run=%s attempt=%d", signal.topic, signal.run_id, signal.attempt_index
        )
