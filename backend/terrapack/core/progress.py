"""Progress events published by the pipeline and consumed by subscribers.

The pipeline never calls presentation code directly. Build and export steps
publish ProgressEvent objects on a ProgressBus; any number of subscribers
(an SSE endpoint, a test, a CLI) receive them through their own
``asyncio.Queue``. Publishing without subscribers is a no-op, so progress
reporting never affects the outcome of a build.

Example:
    Follow a build:
        >>> bus = ProgressBus()
        >>> reporter = bus.reporter(project.id)
        >>> async for event in bus.stream(project.id):
        ...     print(event.label, event.status, event.percent)
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import datetime
import logging
import threading
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

Stage = Literal["resolve", "acquisition", "layering", "assembly", "export"]
Status = Literal[
    "queued",
    "downloading",
    "extracting",
    "ready",
    "failed",
    "running",
    "done",
]

FINAL_STATUSES = ("done", "failed")


@dataclasses.dataclass(frozen=True)
class ProgressEvent:
    """One progress notification.

    Attributes:
        project_id: Project the event belongs to.
        stage: Pipeline stage emitting the event.
        label: Human-readable task label, e.g. "Paris - vegetation".
        status: Task status (queued, downloading, extracting, ready, ...).
        percent: Completion in [0, 100], None when indeterminate.
        done: Sub-tasks completed, when the task has a count.
        total: Sub-tasks in total, when the task has a count.
        message: Optional free text (error message on failure).
        final: True for the last event of a build or export.
    """

    project_id: str
    stage: Stage
    label: str
    status: Status
    percent: float | None = None
    done: int | None = None
    total: int | None = None
    message: str | None = None
    final: bool = False
    at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(tz=datetime.UTC)
    )

    def to_dict(self) -> dict[str, Any]:
        result = dataclasses.asdict(self)
        result["at"] = self.at.isoformat()
        return result


class ProgressBus:
    """Fan-out channel of progress events keyed by project identifier.

    Subscribers get a bounded queue; when a slow subscriber's queue is full
    the oldest pending event is dropped. Events may be published from worker
    threads; they are handed to the subscriber's event loop.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._subscribers: dict[
            str,
            list[tuple[asyncio.Queue[ProgressEvent], asyncio.AbstractEventLoop]],
        ] = collections.defaultdict(list)
        self._latest: dict[str, ProgressEvent] = {}

    def subscribe(self, project_id: str) -> asyncio.Queue[ProgressEvent]:
        """Register a queue receiving the project's future events.

        Must be called from within a running event loop.
        """
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(self._maxsize)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers[project_id].append((queue, loop))
        return queue

    def unsubscribe(
        self,
        project_id: str,
        queue: asyncio.Queue[ProgressEvent],
    ) -> None:
        with self._lock:
            entries = self._subscribers.get(project_id, [])
            entries[:] = [e for e in entries if e[0] is not queue]
            if not entries:
                self._subscribers.pop(project_id, None)

    def latest(self, project_id: str) -> ProgressEvent | None:
        """Return the last event published for a project, if any."""
        with self._lock:
            return self._latest.get(project_id)

    def publish(self, event: ProgressEvent) -> None:
        """Deliver an event to every subscriber of its project."""
        with self._lock:
            self._latest[event.project_id] = event
            targets = list(self._subscribers.get(event.project_id, []))
        for queue, loop in targets:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                _offer(queue, event)
            elif not loop.is_closed():
                loop.call_soon_threadsafe(_offer, queue, event)

    def reporter(self, project_id: str) -> ProgressReporter:
        return ProgressReporter(self, project_id)

    async def stream(self, project_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield the project's events until a final one is seen."""
        queue = self.subscribe(project_id)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.final:
                    return
        finally:
            self.unsubscribe(project_id, queue)


def _offer(queue: asyncio.Queue[ProgressEvent], event: ProgressEvent) -> None:
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(event)


class ProgressReporter:
    """Convenience handle publishing events for one project."""

    def __init__(self, bus: ProgressBus | None, project_id: str) -> None:
        self.bus = bus
        self.project_id = project_id

    def emit(
        self,
        stage: Stage,
        label: str,
        status: Status,
        percent: float | None = None,
        done: int | None = None,
        total: int | None = None,
        message: str | None = None,
        final: bool = False,
    ) -> None:
        if self.bus is None:
            return
        if percent is None and done is not None and total:
            percent = round(100.0 * done / total, 1)
        self.bus.publish(
            ProgressEvent(
                project_id=self.project_id,
                stage=stage,
                label=label,
                status=status,
                percent=percent,
                done=done,
                total=total,
                message=message,
                final=final,
            )
        )
