"""Tests for the progress bus and reporters.

See Also:
    - backend/terrapack/core/progress.py
"""

from __future__ import annotations

import asyncio
import threading

from terrapack.core import progress


def test_reporter_without_bus_is_noop() -> None:
    reporter = progress.ProgressReporter(None, "p-1")
    reporter.emit("resolve", "area", "done", 100.0)


def test_reporter_computes_percent() -> None:
    bus = progress.ProgressBus()
    bus.reporter("p-1").emit("export", "tiling", "running", done=3, total=12)
    latest = bus.latest("p-1")
    assert latest is not None
    assert latest.percent == 25.0
    assert latest.to_dict()["stage"] == "export"


def test_stream_ends_on_final_event() -> None:
    async def scenario() -> list[str]:
        bus = progress.ProgressBus()
        received: list[str] = []

        async def consume() -> None:
            async for event in bus.stream("p-1"):
                received.append(event.status)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        reporter = bus.reporter("p-1")
        reporter.emit("acquisition", "Essonne (91) - vegetation", "queued")
        reporter.emit("acquisition", "Essonne (91) - vegetation", "ready", 100.0)
        reporter.emit("assembly", "demo", "done", 100.0, final=True)
        await asyncio.wait_for(consumer, timeout=5)
        return received

    assert asyncio.run(scenario()) == ["queued", "ready", "done"]


def test_events_are_scoped_to_project() -> None:
    async def scenario() -> int:
        bus = progress.ProgressBus()
        queue = bus.subscribe("p-1")
        bus.reporter("p-2").emit("resolve", "other", "done")
        bus.reporter("p-1").emit("resolve", "mine", "done")
        size = queue.qsize()
        bus.unsubscribe("p-1", queue)
        return size

    assert asyncio.run(scenario()) == 1


def test_publish_from_worker_thread() -> None:
    async def scenario() -> str:
        bus = progress.ProgressBus()
        queue = bus.subscribe("p-1")
        worker = threading.Thread(
            target=bus.reporter("p-1").emit,
            args=("layering", "roads", "running"),
        )
        worker.start()
        worker.join()
        event = await asyncio.wait_for(queue.get(), timeout=5)
        return event.label

    assert asyncio.run(scenario()) == "roads"


def test_full_queue_drops_oldest() -> None:
    async def scenario() -> list[str]:
        bus = progress.ProgressBus(maxsize=2)
        queue = bus.subscribe("p-1")
        reporter = bus.reporter("p-1")
        for label in ("a", "b", "c"):
            reporter.emit("layering", label, "running")
        return [queue.get_nowait().label for _ in range(queue.qsize())]

    assert asyncio.run(scenario()) == ["b", "c"]


def test_latest_under_concurrent_publishers() -> None:
    bus = progress.ProgressBus()
    start = threading.Barrier(8)
    seen: list[progress.ProgressEvent | None] = []

    def publish(project_id: str) -> None:
        reporter = bus.reporter(project_id)
        start.wait()
        for done in range(1, 201):
            reporter.emit("layering", project_id, "running", done=done, total=200)
            seen.append(bus.latest(project_id))

    workers = [
        threading.Thread(target=publish, args=(f"p-{n}",)) for n in range(8)
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert all(event is not None for event in seen)
    for n in range(8):
        latest = bus.latest(f"p-{n}")
        assert latest is not None
        assert latest.project_id == f"p-{n}"
        assert latest.done == 200
    assert bus.latest("p-unknown") is None
