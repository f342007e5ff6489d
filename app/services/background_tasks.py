"""Фоновые задачи шлюза: очередь отложенной работы и периодические задачи."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]


class DeferredWorkQueue:
    """Bounded queue for fire-and-forget work scheduled after a request is admitted.

    ``submit`` never waits: when the queue is full the job is dropped with a
    warning. Job failures are logged and never reach the submitter.
    ``flush`` waits until everything submitted so far has run; ``stop``
    drains what is left (bounded by a timeout) and cancels the workers.
    """

    def __init__(self, *, max_size: int = 1000, workers: int = 2, name: str = "deferred"):
        if workers <= 0:
            raise ValueError("workers must be positive")
        self.name = name
        self._queue: asyncio.Queue[Tuple[str, Job]] = asyncio.Queue(maxsize=max_size)
        self._workers_count = workers
        self._workers: List[asyncio.Task] = []
        self._accepting = False
        self.dropped = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(), name=f"{self.name}-worker-{index}")
            for index in range(self._workers_count)
        ]
        logger.info("Очередь %s запущена (%s воркеров)", self.name, self._workers_count)

    def submit(self, job: Job, *, description: str = "job") -> bool:
        if not self._accepting:
            logger.warning("Очередь %s остановлена, задача %s отброшена", self.name, description)
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait((description, job))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Очередь %s переполнена, задача %s отброшена", self.name, description)
            return False
        return True

    async def flush(self) -> None:
        await self._queue.join()

    async def stop(self, *, timeout: float = 10.0) -> None:
        self._accepting = False
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Очередь %s не успела обработать %s задач за %.1f с",
                self.name,
                self._queue.qsize(),
                timeout,
            )
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Очередь %s остановлена", self.name)

    async def _worker(self) -> None:
        while True:
            description, job = await self._queue.get()
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as error:
                self.failed += 1
                logger.error("Ошибка фоновой задачи %s: %s", description, error, exc_info=True)
            finally:
                self._queue.task_done()


async def run_periodic(
    task_name: str,
    interval_seconds: float,
    job: Callable[[], Awaitable[None]],
    *,
    max_backoff: Optional[float] = None,
    backoff_multiplier: int = 2,
) -> None:
    """Запускает корутину периодически с экспоненциальным backoff при ошибках."""

    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")

    backoff = interval_seconds
    max_backoff = max_backoff or interval_seconds * 8

    while True:
        await asyncio.sleep(backoff)
        started_at = time.monotonic()
        try:
            await job()
            backoff = interval_seconds
        except Exception as error:
            logger.error("Error in %s: %s", task_name, error, exc_info=True)
            backoff = min(backoff * backoff_multiplier, max_backoff)

        elapsed = time.monotonic() - started_at
        if elapsed > interval_seconds:
            logger.warning("%s took %.1fs, longer than its %.1fs interval", task_name, elapsed, interval_seconds)
