"""In-process message bus between the workflow engine and agent executors.

Carries the three message kinds:

- TaskRequest: published by the dispatcher onto the target agent's
  channel. Channels are priority heaps (critical first, FIFO within a
  priority).
- TaskResult: published by executor workers into the per-task Mailbox the
  dispatcher is waiting on.
- StatusUpdate: fanned out to every status subscriber.

Ordering: a task has at most one unacknowledged attempt. Publishing a new
attempt before the previous one is acknowledged (its result published or
the attempt cancelled) raises AttemptOrderingError. Tasks are unordered
relative to each other.

Backpressure: once more requests are pending than ``high_watermark``,
medium/low priority publishers wait until the backlog drains. Critical and
high priority requests are always accepted. Nothing is ever dropped.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools

import structlog

from src.squadron.core.errors import AttemptOrderingError
from src.squadron.events.schemas import StatusUpdate, TaskRequest, TaskResult

logger = structlog.get_logger(__name__)


class Mailbox:
    """Reply channel for one task.

    The dispatcher declares which attempt it is waiting for; results for
    any other attempt (late replies to timed-out or cancelled attempts) are
    discarded.
    """

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self._queue: asyncio.Queue[TaskResult] = asyncio.Queue()
        self._expected: int | None = None

    def expect(self, attempt: int) -> None:
        self._expected = attempt
        # Drop anything left over from an earlier attempt.
        while not self._queue.empty():
            self._queue.get_nowait()

    def deliver(self, result: TaskResult) -> bool:
        if result.attempt != self._expected:
            logger.debug(
                "mailbox_result_discarded",
                task_id=self.task_id,
                attempt=result.attempt,
                expected=self._expected,
            )
            return False
        self._queue.put_nowait(result)
        return True

    async def receive(self, timeout: float | None = None) -> TaskResult:
        """Wait for the expected attempt's result.

        Raises:
            TimeoutError: No result arrived within ``timeout`` seconds.
        """
        return await asyncio.wait_for(self._queue.get(), timeout)


class MessageBus:
    """Priority-ordered, backpressured delivery of task messages.

    Args:
        high_watermark: Pending-request count above which non-urgent
            publishers are held back.
    """

    def __init__(self, high_watermark: int = 1000) -> None:
        self._high_watermark = high_watermark
        self._cond = asyncio.Condition()
        self._channels: dict[str, list[tuple[int, int, TaskRequest]]] = {}
        self._seq = itertools.count()
        self._pending = 0
        self._outstanding: dict[str, int] = {}
        self._queued: set[tuple[str, int]] = set()
        self._cancelled: set[tuple[str, int]] = set()
        self._running: dict[tuple[str, int], asyncio.Future] = {}
        self._mailboxes: dict[str, Mailbox] = {}
        self._subscribers: list[asyncio.Queue[StatusUpdate]] = []

    @property
    def pending(self) -> int:
        """Requests published but not yet taken by a worker."""
        return self._pending

    @property
    def high_watermark(self) -> int:
        return self._high_watermark

    def depth(self, agent_id: str) -> int:
        return len(self._channels.get(agent_id, []))

    # -- requests -------------------------------------------------------------

    async def publish_request(self, request: TaskRequest) -> None:
        """Queue a request on its agent's channel.

        A request whose attempt is cancelled while it waits out backpressure
        is never queued.

        Raises:
            AttemptOrderingError: The task still has an unacknowledged attempt.
        """
        outstanding = self._outstanding.get(request.task_id)
        if outstanding is not None and outstanding != request.attempt:
            raise AttemptOrderingError(
                f"Task '{request.task_id}' attempt {request.attempt} published "
                f"before attempt {outstanding} was acknowledged"
            )
        self._outstanding[request.task_id] = request.attempt

        async with self._cond:
            if not request.priority.is_urgent and self._pending > self._high_watermark:
                logger.info(
                    "bus_backpressure_applied",
                    task_id=request.task_id,
                    priority=request.priority.value,
                    pending=self._pending,
                    high_watermark=self._high_watermark,
                )
                await self._cond.wait_for(lambda: self._pending <= self._high_watermark)
                if self._outstanding.get(request.task_id) != request.attempt:
                    logger.debug(
                        "bus_withdrawn_request_dropped",
                        task_id=request.task_id,
                        attempt=request.attempt,
                    )
                    return

            channel = self._channels.setdefault(request.agent_id, [])
            heapq.heappush(channel, (request.priority.rank, next(self._seq), request))
            self._queued.add((request.task_id, request.attempt))
            self._pending += 1
            self._cond.notify_all()

        logger.debug(
            "bus_request_published",
            task_id=request.task_id,
            agent_id=request.agent_id,
            attempt=request.attempt,
            priority=request.priority.value,
            pending=self._pending,
        )

    async def next_request(self, agent_id: str) -> TaskRequest:
        """Take the highest-priority live request for ``agent_id``.

        Requests whose attempt was cancelled while queued are skipped.
        """
        while True:
            async with self._cond:
                await self._cond.wait_for(lambda: bool(self._channels.get(agent_id)))
                _rank, _seq, request = heapq.heappop(self._channels[agent_id])
                self._pending -= 1
                self._cond.notify_all()

            key = (request.task_id, request.attempt)
            self._queued.discard(key)
            if key in self._cancelled:
                self._cancelled.discard(key)
                logger.debug(
                    "bus_cancelled_request_skipped",
                    task_id=request.task_id,
                    attempt=request.attempt,
                )
                continue
            return request

    # -- results --------------------------------------------------------------

    def publish_result(self, result: TaskResult) -> bool:
        """Acknowledge the attempt and deliver the result to its mailbox.

        Returns:
            True if a waiting dispatcher received the result.
        """
        self._acknowledge(result.task_id, result.attempt)
        mailbox = self._mailboxes.get(result.task_id)
        if mailbox is None:
            logger.debug(
                "bus_result_without_mailbox",
                task_id=result.task_id,
                attempt=result.attempt,
            )
            return False
        return mailbox.deliver(result)

    def cancel_attempt(self, task_id: str, attempt: int) -> None:
        """Ask an attempt to stop and acknowledge it.

        A queued request is skipped when dequeued; a running execution is
        cancelled cooperatively. Any result it still produces is discarded.
        """
        key = (task_id, attempt)
        running = self._running.get(key)
        if running is not None:
            running.cancel()
        elif key in self._queued:
            self._cancelled.add(key)
        self._acknowledge(task_id, attempt)
        logger.debug("bus_attempt_cancelled", task_id=task_id, attempt=attempt)

    def track_running(self, request: TaskRequest, future: asyncio.Future) -> None:
        """Register an executing attempt so cancel_attempt() can reach it."""
        key = (request.task_id, request.attempt)
        self._running[key] = future
        future.add_done_callback(lambda _f: self._running.pop(key, None))

    def _acknowledge(self, task_id: str, attempt: int) -> None:
        if self._outstanding.get(task_id) == attempt:
            del self._outstanding[task_id]

    # -- mailboxes ------------------------------------------------------------

    def open_mailbox(self, task_id: str) -> Mailbox:
        mailbox = self._mailboxes.get(task_id)
        if mailbox is None:
            mailbox = Mailbox(task_id)
            self._mailboxes[task_id] = mailbox
        return mailbox

    def close_mailbox(self, task_id: str) -> None:
        self._mailboxes.pop(task_id, None)
        self._outstanding.pop(task_id, None)

    # -- status ---------------------------------------------------------------

    def subscribe_status(self) -> asyncio.Queue[StatusUpdate]:
        queue: asyncio.Queue[StatusUpdate] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe_status(self, queue: asyncio.Queue[StatusUpdate]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish_status(self, update: StatusUpdate) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(update)
