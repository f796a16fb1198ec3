"""Bounded-concurrency job scheduler.

Requests are queued FIFO and at most ``max_concurrency`` of them run at once
on an isolated executor (a process pool by default). All bookkeeping lives on
the asyncio loop that calls ``submit``; executor callbacks hop back onto that
loop before touching any state.

If the executor breaks (a worker process died), every running and queued
request fails with one shared ``SchedulerFatal`` and the next ``submit``
starts a fresh executor.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from collections import deque
from concurrent.futures import BrokenExecutor, Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Callable, Deque, Dict, List, Optional

from .config import Settings, get_settings
from .exceptions import ERRORS_BY_NAME, ImageWranglerError, SchedulerFatal
from .models import (
    MessageKind,
    ProcessPayload,
    ProcessRequest,
    ResponseKind,
    ValidatePayload,
    ValidationResult,
    WorkerMessage,
    WorkerResponse,
)
from .schemas import ProcessOptions
from .utils import generate_id
from .worker import handle_message

logger = logging.getLogger(__name__)

EXECUTION_CONTEXT_LOST = "Execution context lost"

ExecutorFactory = Callable[[int], Executor]
Handler = Callable[[WorkerMessage], WorkerResponse]


def default_executor_factory(backend: str = "process") -> ExecutorFactory:
    if backend == "thread":
        return partial(ThreadPoolExecutor, thread_name_prefix="image-wrangler")
    return ProcessPoolExecutor


@dataclass
class _QueuedJob:
    message: WorkerMessage
    future: asyncio.Future


class JobScheduler:
    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        executor_factory: Optional[ExecutorFactory] = None,
        handler: Handler = handle_message,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.max_concurrency = settings.max_concurrency if max_concurrency is None else max_concurrency
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._executor_factory = executor_factory or default_executor_factory(settings.worker_backend)
        self._handler = handler
        self._executor: Optional[Executor] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Deque[_QueuedJob] = deque()
        self._pending: Dict[str, asyncio.Future] = {}
        self._running = 0
        # bumped on every reset so late results from a discarded executor are ignored
        self._generation = 0

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, request: ProcessRequest) -> "asyncio.Future[bytes]":
        """Queue a transform; the future resolves to the encoded output bytes."""

        payload = ProcessPayload(
            source_bytes=request.source_bytes,
            options=request.options,
            declared_mime_type=request.declared_mime_type,
        )
        return self._enqueue(WorkerMessage(id=request.request_id, kind=MessageKind.PROCESS, payload=payload))

    def submit_validation(
        self,
        source_bytes: bytes,
        declared_mime_type: str,
        request_id: Optional[str] = None,
    ) -> "asyncio.Future[ValidationResult]":
        payload = ValidatePayload(source_bytes=source_bytes, declared_mime_type=declared_mime_type)
        return self._enqueue(
            WorkerMessage(id=request_id or generate_id(), kind=MessageKind.VALIDATE, payload=payload)
        )

    async def process(
        self,
        source_bytes: bytes,
        options: ProcessOptions,
        declared_mime_type: Optional[str] = None,
    ) -> bytes:
        request = ProcessRequest(
            request_id=generate_id(),
            source_bytes=source_bytes,
            options=options,
            declared_mime_type=declared_mime_type,
        )
        return await self.submit(request)

    async def validate(self, source_bytes: bytes, declared_mime_type: str) -> ValidationResult:
        return await self.submit_validation(source_bytes, declared_mime_type)

    def terminate(self) -> None:
        """Tear down the executor and drop all queued and pending work.

        Outstanding futures are cancelled. The scheduler is back in its
        initial state afterwards and can be used again.
        """

        futures = self._outstanding_futures()
        self._reset()
        self._loop = None
        for future in futures:
            if not future.done() and not future.get_loop().is_closed():
                future.cancel()
        if futures:
            logger.info("Scheduler terminated with %d outstanding request(s)", len(futures))

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _enqueue(self, message: WorkerMessage) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            if self._pending or self._queue:
                raise RuntimeError("JobScheduler is already serving another event loop")
            self._loop = loop

        if message.id in self._pending or any(job.message.id == message.id for job in self._queue):
            raise ValueError(f"Duplicate request id: {message.id}")

        future = loop.create_future()
        self._queue.append(_QueuedJob(message=message, future=future))
        logger.debug("Queued %s %s (running=%d, queued=%d)", message.kind.value, message.id, self._running, len(self._queue))
        self._dispatch()
        return future

    def _dispatch(self) -> None:
        while self._running < self.max_concurrency and self._queue:
            job = self._queue.popleft()
            if job.future.done():
                # cancelled by the caller while still queued
                continue
            self._running += 1
            self._start(job)

    def _start(self, job: _QueuedJob) -> None:
        message_id = job.message.id
        generation = self._generation
        try:
            executor = self._get_executor()
            self._pending[message_id] = job.future
            worker_future = executor.submit(self._handler, job.message)
        except BrokenExecutor as exc:
            logger.error("Execution context unusable at dispatch: %s", exc)
            self._pending.setdefault(message_id, job.future)
            self._fail_all()
            return
        except Exception as exc:
            logger.warning("Failed to hand request %s to the worker: %s", message_id, exc)
            self._pending.pop(message_id, None)
            self._running -= 1
            if not job.future.done():
                job.future.set_exception(exc)
            return

        worker_future.add_done_callback(partial(self._on_worker_done, self._loop, generation, message_id))

    def _get_executor(self) -> Executor:
        if self._executor is None:
            self._executor = self._executor_factory(self.max_concurrency)
            logger.debug("Started execution context %r (generation %d)", self._executor, self._generation)
        return self._executor

    def _on_worker_done(
        self,
        loop: asyncio.AbstractEventLoop,
        generation: int,
        message_id: str,
        worker_future: concurrent.futures.Future,
    ) -> None:
        # runs on an executor thread; state is only touched on the loop
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(self._handle_worker_done, generation, message_id, worker_future)

    def _handle_worker_done(
        self,
        generation: int,
        message_id: str,
        worker_future: concurrent.futures.Future,
    ) -> None:
        if generation != self._generation:
            logger.debug("Ignoring result for %s from a discarded execution context", message_id)
            return

        if worker_future.cancelled():
            error: Optional[BaseException] = ImageWranglerError(f"Request {message_id} was cancelled by the worker")
        else:
            error = worker_future.exception()

        if isinstance(error, BrokenExecutor):
            logger.error("Worker error: %s", error)
            self._fail_all()
            return

        if error is not None:
            future = self._release(message_id)
            if future is not None and not future.done():
                future.set_exception(error)
            return

        response: WorkerResponse = worker_future.result()
        future = self._release(message_id)
        if response.id != message_id:
            logger.warning("Received response for unknown/cancelled operation: %s", response.id)
            if future is not None and not future.done():
                future.set_exception(
                    ImageWranglerError(f"Malformed worker response for {message_id}: id {response.id!r}")
                )
            return
        if future is not None:
            self._resolve(future, response)

    def _release(self, message_id: str) -> Optional[asyncio.Future]:
        future = self._pending.pop(message_id, None)
        if future is None:
            return None
        self._running -= 1
        self._dispatch()
        return future

    @staticmethod
    def _resolve(future: asyncio.Future, response: WorkerResponse) -> None:
        if future.done():
            return
        if response.kind is ResponseKind.PROCESS_ERROR:
            error_cls = ERRORS_BY_NAME.get(response.error_type or "", ImageWranglerError)
            future.set_exception(error_cls(response.error or "Unknown processing error"))
        elif response.kind is ResponseKind.PROCESS_COMPLETE and response.result is not None:
            future.set_result(response.result)
        elif response.kind is ResponseKind.VALIDATE_RESULT:
            future.set_result(response.to_validation_result())
        else:
            future.set_exception(ImageWranglerError(f"Malformed worker response for {response.id}"))

    def _outstanding_futures(self) -> List[asyncio.Future]:
        return list(self._pending.values()) + [job.future for job in self._queue]

    def _fail_all(self) -> None:
        error = SchedulerFatal(EXECUTION_CONTEXT_LOST)
        futures = self._outstanding_futures()
        self._reset()
        for future in futures:
            if not future.done():
                future.set_exception(error)
        logger.error("%s; failed %d in-flight request(s)", EXECUTION_CONTEXT_LOST, len(futures))

    def _reset(self) -> None:
        executor, self._executor = self._executor, None
        self._generation += 1
        self._pending.clear()
        self._queue.clear()
        self._running = 0
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
