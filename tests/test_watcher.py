from __future__ import annotations

import asyncio

from watchdog.events import FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from tactical_api.controller.watcher import CSV, IMAGE, ArrivalWatcher, WatchState, _ArrivalHandler
from tactical_api.data_processing.scanner import IMAGE_EXTENSIONS


class BatchRecorder:
    def __init__(self, delay: float = 0.0) -> None:
        self.batches: list[tuple] = []
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def __call__(self, image_path, csv_path) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.batches.append((image_path, csv_path))
        finally:
            self.active -= 1


def _watcher(recorder, debounce_s: float = 0.02) -> ArrivalWatcher:
    return ArrivalWatcher(recorder, "/data/image", "/data/csv", debounce_s=debounce_s)


def test_burst_within_window_is_one_batch_with_last_files() -> None:
    recorder = BatchRecorder()
    watcher = _watcher(recorder)

    async def scenario():
        for i in range(5):
            watcher.enqueue(IMAGE, f"/data/image/img_{i:04d}.jpg")
        watcher.enqueue(CSV, "/data/csv/det_0003.csv")
        watcher.enqueue(CSV, "/data/csv/det_0004.csv")
        assert watcher.state is WatchState.QUEUING
        await asyncio.sleep(0.1)
        await watcher.wait_idle()

    asyncio.run(scenario())

    assert recorder.batches == [("/data/image/img_0004.jpg", "/data/csv/det_0004.csv")]
    assert watcher.flush_count == 1
    assert watcher.dropped_count == 5
    assert watcher.state is WatchState.IDLE


def test_events_during_flush_trigger_another_flush() -> None:
    recorder = BatchRecorder(delay=0.2)
    watcher = _watcher(recorder)

    async def scenario():
        watcher.enqueue(IMAGE, "/data/image/img_0001.jpg")
        await asyncio.sleep(0.08)
        assert watcher.state is WatchState.FLUSHING
        watcher.enqueue(IMAGE, "/data/image/img_0002.jpg")
        watcher.enqueue(CSV, "/data/csv/det_0002.csv")
        await asyncio.sleep(0.1)
        await watcher.wait_idle()

    asyncio.run(scenario())

    assert recorder.batches == [
        ("/data/image/img_0001.jpg", None),
        ("/data/image/img_0002.jpg", "/data/csv/det_0002.csv"),
    ]
    assert recorder.max_active == 1


def test_flush_request_while_flushing_is_skipped() -> None:
    recorder = BatchRecorder(delay=0.05)
    watcher = _watcher(recorder, debounce_s=10)

    async def scenario():
        watcher.enqueue(IMAGE, "/data/image/img_0001.jpg")
        first = asyncio.ensure_future(watcher.flush())
        await asyncio.sleep(0.01)
        second = await watcher.flush()
        return await first, second

    ran, skipped = asyncio.run(scenario())

    assert ran is True
    assert skipped is False
    assert recorder.batches == [("/data/image/img_0001.jpg", None)]


def test_failing_batch_does_not_stop_the_watcher() -> None:
    calls = []

    async def explode(image_path, csv_path):
        calls.append(image_path)
        if len(calls) == 1:
            raise OSError("disk went away")

    watcher = ArrivalWatcher(explode, "/i", "/c", debounce_s=0.01)

    async def scenario():
        watcher.enqueue(IMAGE, "/i/img_1.jpg")
        await asyncio.sleep(0.05)
        await watcher.wait_idle()
        watcher.enqueue(IMAGE, "/i/img_2.jpg")
        await asyncio.sleep(0.05)
        await watcher.wait_idle()

    asyncio.run(scenario())

    assert calls == ["/i/img_1.jpg", "/i/img_2.jpg"]
    assert watcher.state is WatchState.IDLE


def test_handler_filters_and_marshals_onto_loop(tmp_path) -> None:
    recorder = BatchRecorder()
    watcher = _watcher(recorder, debounce_s=10)

    async def scenario():
        handler = _ArrivalHandler(watcher, IMAGE, IMAGE_EXTENSIONS, asyncio.get_running_loop())
        handler.on_created(FileCreatedEvent(str(tmp_path / "img_0001.jpg")))
        handler.on_modified(FileModifiedEvent(str(tmp_path / "notes.txt")))
        handler.on_created(FileCreatedEvent(str(tmp_path / ".img_0002.jpg")))
        handler.on_moved(FileMovedEvent(str(tmp_path / "tmp.part"), str(tmp_path / "img_0003.png")))
        await asyncio.sleep(0)
        return list(watcher.queues[IMAGE])

    queued = asyncio.run(scenario())

    assert queued == [str(tmp_path / "img_0001.jpg"), str(tmp_path / "img_0003.png")]
