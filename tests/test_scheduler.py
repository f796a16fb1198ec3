from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool

import pytest
from PIL import Image

from image_wrangler import (
    DecodeError,
    ImageWranglerError,
    JobScheduler,
    OutputFormat,
    ProcessOptions,
    ProcessRequest,
    SchedulerFatal,
    ValidationResult,
)
from image_wrangler.models import ResponseKind, WorkerMessage, WorkerResponse

from helpers import image_to_bytes

OPTIONS = ProcessOptions(output_format=OutputFormat.PNG, target_width=4, target_height=4)


class ManualExecutor:
    """Executor stand-in whose futures are completed by the test."""

    def __init__(self) -> None:
        self.jobs: list[tuple[WorkerMessage, concurrent.futures.Future]] = []
        self.shutdown_calls = 0
        self.max_in_flight = 0

    def submit(self, fn, message: WorkerMessage) -> concurrent.futures.Future:
        future: concurrent.futures.Future = concurrent.futures.Future()
        self.jobs.append((message, future))
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return future

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        self.shutdown_calls += 1

    @property
    def in_flight(self) -> int:
        return sum(1 for _, future in self.jobs if not future.done())

    @property
    def submitted_ids(self) -> list[str]:
        return [message.id for message, _ in self.jobs]

    def complete(self, index: int, result: bytes = b"done") -> None:
        message, future = self.jobs[index]
        future.set_result(WorkerResponse(id=message.id, kind=ResponseKind.PROCESS_COMPLETE, result=result))


class ManualExecutorFactory:
    def __init__(self) -> None:
        self.created: list[ManualExecutor] = []

    def __call__(self, max_workers: int) -> ManualExecutor:
        executor = ManualExecutor()
        self.created.append(executor)
        return executor

    @property
    def current(self) -> ManualExecutor:
        return self.created[-1]


def _request(request_id: str, data: bytes = b"payload") -> ProcessRequest:
    return ProcessRequest(request_id=request_id, source_bytes=data, options=OPTIONS)


async def _drain() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


def test_five_requests_two_run_three_queue() -> None:
    async def scenario() -> None:
        factory = ManualExecutorFactory()
        scheduler = JobScheduler(max_concurrency=2, executor_factory=factory)

        futures = [scheduler.submit(_request(f"r{i}")) for i in range(5)]

        assert scheduler.running == 2
        assert scheduler.queued == 3
        assert factory.current.submitted_ids == ["r0", "r1"]

        factory.current.complete(0, b"first")
        await _drain()

        assert futures[0].result() == b"first"
        assert scheduler.running == 2
        assert scheduler.queued == 2
        assert factory.current.submitted_ids == ["r0", "r1", "r2"]

        for index in range(1, 5):
            factory.current.complete(index)
            await _drain()

        assert all(future.done() for future in futures)
        assert factory.current.submitted_ids == ["r0", "r1", "r2", "r3", "r4"]
        assert factory.current.max_in_flight <= 2
        assert scheduler.running == 0
        assert scheduler.pending == 0
        scheduler.terminate()

    asyncio.run(scenario())


def test_queued_requests_dispatch_in_fifo_order_as_slots_free() -> None:
    async def scenario() -> None:
        factory = ManualExecutorFactory()
        scheduler = JobScheduler(max_concurrency=2, executor_factory=factory)
        for i in range(4):
            scheduler.submit(_request(f"r{i}"))

        factory.current.complete(1)
        await _drain()
        assert factory.current.submitted_ids[-1] == "r2"

        factory.current.complete(0)
        await _drain()
        assert factory.current.submitted_ids[-1] == "r3"
        scheduler.terminate()

    asyncio.run(scenario())


def test_fatal_executor_error_fails_everything_and_self_heals() -> None:
    async def scenario() -> None:
        factory = ManualExecutorFactory()
        scheduler = JobScheduler(max_concurrency=2, executor_factory=factory)
        futures = [scheduler.submit(_request(f"r{i}")) for i in range(3)]
        broken = factory.current

        broken.jobs[0][1].set_exception(BrokenProcessPool("worker died"))
        await _drain()

        errors = []
        for future in futures:
            with pytest.raises(SchedulerFatal) as excinfo:
                future.result()
            errors.append(str(excinfo.value))
        assert len(set(errors)) == 1
        assert errors[0] == "Execution context lost"
        assert scheduler.running == 0
        assert scheduler.queued == 0
        assert scheduler.pending == 0
        assert broken.shutdown_calls == 1

        # a late answer from the dead context must not disturb the new one
        broken.complete(1)
        await _drain()

        retry = scheduler.submit(_request("after"))
        assert len(factory.created) == 2
        factory.current.complete(0, b"recovered")
        await _drain()
        assert await retry == b"recovered"
        scheduler.terminate()

    asyncio.run(scenario())


def test_synchronous_dispatch_failure_frees_the_slot() -> None:
    class FlakyExecutor(ManualExecutor):
        def submit(self, fn, message: WorkerMessage) -> concurrent.futures.Future:
            if message.id == "unpicklable":
                raise TypeError("cannot pickle payload")
            return super().submit(fn, message)

    async def scenario() -> None:
        executor = FlakyExecutor()
        scheduler = JobScheduler(max_concurrency=1, executor_factory=lambda workers: executor)

        bad = scheduler.submit(_request("unpicklable"))
        good = scheduler.submit(_request("good"))

        assert bad.done()
        with pytest.raises(TypeError):
            bad.result()
        assert scheduler.running == 1
        assert executor.submitted_ids == ["good"]

        executor.complete(0)
        await _drain()
        assert await good == b"done"
        assert scheduler.running == 0
        scheduler.terminate()

    asyncio.run(scenario())


def test_worker_error_response_maps_to_error_type() -> None:
    async def scenario() -> None:
        factory = ManualExecutorFactory()
        scheduler = JobScheduler(max_concurrency=2, executor_factory=factory)
        future = scheduler.submit(_request("r0"))

        message, worker_future = factory.current.jobs[0]
        worker_future.set_result(
            WorkerResponse(
                id=message.id,
                kind=ResponseKind.PROCESS_ERROR,
                error="Unable to decode image",
                error_type="DecodeError",
            )
        )
        await _drain()

        with pytest.raises(DecodeError, match="Unable to decode image"):
            future.result()
        assert scheduler.running == 0
        scheduler.terminate()

    asyncio.run(scenario())


def test_mismatched_response_id_fails_request_and_frees_slot(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> None:
        factory = ManualExecutorFactory()
        scheduler = JobScheduler(max_concurrency=1, executor_factory=factory)
        future = scheduler.submit(_request("r0"))
        queued = scheduler.submit(_request("r1"))

        factory.current.jobs[0][1].set_result(
            WorkerResponse(id="stranger", kind=ResponseKind.PROCESS_COMPLETE, result=b"?")
        )
        await _drain()

        with pytest.raises(ImageWranglerError, match="Malformed worker response"):
            future.result()
        assert scheduler.pending == 1
        assert factory.current.submitted_ids == ["r0", "r1"]

        factory.current.complete(1)
        await _drain()
        assert await queued == b"done"
        assert scheduler.running == 0
        scheduler.terminate()

    with caplog.at_level(logging.WARNING, logger="image_wrangler.scheduler"):
        asyncio.run(scenario())
    assert "unknown/cancelled operation: stranger" in caplog.text


def test_zero_concurrency_is_refused() -> None:
    with pytest.raises(ValueError):
        JobScheduler(max_concurrency=0, executor_factory=ManualExecutorFactory())


def test_terminate_resets_to_initial_state() -> None:
    async def scenario() -> None:
        factory = ManualExecutorFactory()
        scheduler = JobScheduler(max_concurrency=2, executor_factory=factory)
        futures = [scheduler.submit(_request(f"r{i}")) for i in range(3)]

        scheduler.terminate()

        assert all(future.cancelled() for future in futures)
        assert (scheduler.running, scheduler.queued, scheduler.pending) == (0, 0, 0)
        assert factory.created[0].shutdown_calls == 1

        again = scheduler.submit(_request("r0"))
        assert len(factory.created) == 2
        factory.current.complete(0)
        await _drain()
        assert await again == b"done"
        scheduler.terminate()

    asyncio.run(scenario())


def test_terminate_is_safe_before_any_submit() -> None:
    scheduler = JobScheduler(max_concurrency=2, executor_factory=ManualExecutorFactory())

    scheduler.terminate()
    scheduler.terminate()

    assert (scheduler.running, scheduler.queued, scheduler.pending) == (0, 0, 0)


def test_cancelled_queued_request_is_skipped() -> None:
    async def scenario() -> None:
        factory = ManualExecutorFactory()
        scheduler = JobScheduler(max_concurrency=1, executor_factory=factory)
        scheduler.submit(_request("r0"))
        skipped = scheduler.submit(_request("r1"))
        scheduler.submit(_request("r2"))

        skipped.cancel()
        factory.current.complete(0)
        await _drain()

        assert factory.current.submitted_ids == ["r0", "r2"]
        scheduler.terminate()

    asyncio.run(scenario())


def test_duplicate_request_id_is_refused() -> None:
    async def scenario() -> None:
        scheduler = JobScheduler(max_concurrency=1, executor_factory=ManualExecutorFactory())
        scheduler.submit(_request("same"))
        with pytest.raises(ValueError):
            scheduler.submit(_request("same"))
        scheduler.terminate()

    asyncio.run(scenario())


def test_thread_backend_runs_real_transforms() -> None:
    source = image_to_bytes(Image.new("RGB", (16, 16), (0, 128, 255)))

    async def scenario() -> tuple[list[bytes], ValidationResult]:
        scheduler = JobScheduler(max_concurrency=2, executor_factory=ThreadPoolExecutor)
        try:
            outputs = await asyncio.gather(*(scheduler.process(source, OPTIONS) for _ in range(5)))
            validation = await scheduler.validate(source, "image/png")
        finally:
            scheduler.terminate()
        return outputs, validation

    outputs, validation = asyncio.run(scenario())

    assert len(outputs) == 5
    assert all(output.startswith(b"\x89PNG") for output in outputs)
    assert validation.is_valid
    assert validation.detected_type == "image/png"


def test_process_backend_runs_real_transforms() -> None:
    source = image_to_bytes(Image.new("RGB", (16, 16), (255, 128, 0)))

    async def scenario() -> bytes:
        scheduler = JobScheduler(max_concurrency=2, executor_factory=ProcessPoolExecutor)
        try:
            return await scheduler.process(source, OPTIONS, declared_mime_type="image/png")
        finally:
            scheduler.terminate()

    output = asyncio.run(scenario())

    assert output.startswith(b"\x89PNG")
