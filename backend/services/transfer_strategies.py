# services/transfer_strategies.py
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Awaitable, Callable, Deque, List, Set, Tuple

import httpx

from config import Settings
from models.upload_models import (
    Chunk,
    ChunkCompleted,
    ChunkFailed,
    ChunkProgress,
    ChunkSource,
    ChunkSubmitted,
    UploadJob,
)
from services.background_transport import BackgroundTransport, CorrelationKey, Emit, TransportCorrelation
from services.connectivity import ReachabilityProbe
from services.errors import (
    ChunkUploadExhausted,
    HttpError,
    OfflineTimeout,
    TooManyChunkFailures,
)
from services.file_store import FileStore

logger = logging.getLogger(__name__)

CHUNK_HEADERS = {"Content-Type": "application/octet-stream"}


class TransferStrategy(ABC):
    """Moves a job's chunks to their presigned destinations.

    ``transfer`` reports chunk events through ``emit``: progress updates and
    exactly one terminal event per chunk. Job-level failures are raised.
    """

    name = "base"

    @abstractmethod
    async def transfer(
        self, job: UploadJob, chunks: List[Chunk], destinations: List[str], emit: Emit
    ) -> None:
        ...

    async def cancel(self, job_id: str) -> None:
        """Tear down outstanding work for ``job_id``."""


class _Batch:
    def __init__(self, chunks: List[Chunk], destinations: List[str]):
        self.queue: Deque[Tuple[Chunk, str]] = deque(zip(chunks, destinations))
        self.failed: Set[int] = set()
        self.aborted = False
        self.online = asyncio.Event()
        self.online.set()
        self.connectivity_lock = asyncio.Lock()


class DirectTransferStrategy(TransferStrategy):
    """In-process PUTs under a bounded batch, with per-chunk retries.

    Build one instance per job attempt.
    """

    name = "direct"

    def __init__(
        self,
        client: httpx.AsyncClient,
        file_store: FileStore,
        probe: ReachabilityProbe,
        concurrency: int = 4,
        max_retries: int = 5,
        retry_base: float = 1.0,
        retry_step: float = 1.0,
        max_chunk_failures: int = 10,
        offline_poll_interval: float = 5.0,
        offline_timeout: float = 120.0,
        progress_step: int = 256 * 1024,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.file_store = file_store
        self.probe = probe
        self.concurrency = max(1, concurrency)
        self.max_retries = max_retries
        self.retry_base = retry_base
        self.retry_step = retry_step
        self.max_chunk_failures = max_chunk_failures
        self.offline_poll_interval = offline_poll_interval
        self.offline_timeout = offline_timeout
        self.progress_step = progress_step
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, client, file_store, probe, **kwargs):
        return cls(
            client,
            file_store,
            probe,
            concurrency=settings.upload_concurrency,
            max_retries=settings.chunk_max_retries,
            retry_base=settings.chunk_retry_base,
            retry_step=settings.chunk_retry_step,
            max_chunk_failures=settings.max_chunk_failures,
            offline_poll_interval=settings.offline_poll_interval,
            offline_timeout=settings.offline_timeout,
            **kwargs,
        )

    def retry_delay(self, attempt: int) -> float:
        return self.retry_base + attempt * self.retry_step

    async def transfer(self, job, chunks, destinations, emit):
        if len(destinations) != len(chunks):
            raise ValueError(f"{len(chunks)} chunks but {len(destinations)} destinations")

        batch = _Batch(chunks, destinations)
        workers = [
            asyncio.create_task(self._worker(job, batch, emit))
            for _ in range(min(self.concurrency, len(chunks)))
        ]
        try:
            done, _ = await asyncio.wait(workers, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.exception() is not None:
                    raise task.exception()
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        if batch.failed:
            raise ChunkUploadExhausted(batch.failed)

    async def _worker(self, job: UploadJob, batch: _Batch, emit: Emit):
        while True:
            await batch.online.wait()
            if batch.aborted or not batch.queue:
                return
            chunk, url = batch.queue.popleft()
            if await self._upload_chunk(job, chunk, url, batch, emit) or batch.aborted:
                continue
            batch.failed.add(chunk.index)
            if len(batch.failed) > self.max_chunk_failures:
                batch.aborted = True
                logger.error("Job %s: %d chunks failed, aborting", job.id, len(batch.failed))
                raise TooManyChunkFailures(len(batch.failed))

    async def _upload_chunk(self, job, chunk, url, batch, emit) -> bool:
        attempt = 0
        while True:
            try:
                status = await self._put_chunk(job, chunk, url, emit)
                emit(ChunkCompleted(chunk.index, status))
                return True
            except (httpx.HTTPError, HttpError, OSError) as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Job %s: chunk %d failed after %d attempts: %s",
                        job.id, chunk.index, attempt + 1, e,
                    )
                    if not batch.aborted:
                        emit(ChunkFailed(chunk.index, ChunkUploadExhausted([chunk.index])))
                    return False
                delay = self.retry_delay(attempt)
                logger.warning(
                    "Job %s: chunk %d failed (%s), retry %d/%d in %.1fs",
                    job.id, chunk.index, e, attempt + 1, self.max_retries, delay,
                )
                await self._sleep(delay)
                attempt += 1
                await self._wait_for_connectivity(job.id, batch)

    async def _put_chunk(self, job: UploadJob, chunk: Chunk, url: str, emit: Emit) -> int:
        data = await asyncio.to_thread(
            self.file_store.read, job.file_uri, chunk.offset, chunk.length
        )
        headers = {**CHUNK_HEADERS, "Content-Length": str(len(data))}
        response = await self.client.put(
            url, content=self._stream(chunk.index, data, emit), headers=headers
        )
        if not response.is_success:
            raise HttpError(response.status_code)
        return response.status_code

    async def _stream(self, index: int, data: bytes, emit: Emit):
        total = len(data)
        sent = 0
        reported = 0
        for start in range(0, total, self.progress_step):
            piece = data[start:start + self.progress_step]
            yield piece
            sent += len(piece)
            percent = min(99, sent * 100 // total)
            if percent > reported:
                reported = percent
                emit(ChunkProgress(index, percent))

    async def _wait_for_connectivity(self, job_id: str, batch: _Batch):
        # One worker polls while the others queue on the lock; no new chunk
        # starts until the batch is back online.
        async with batch.connectivity_lock:
            if await self.probe.is_reachable():
                return
            batch.online.clear()
            offline_since = self._clock()
            logger.warning("Job %s: connection lost, waiting for connectivity", job_id)
            try:
                while True:
                    await self._sleep(self.offline_poll_interval)
                    if await self.probe.is_reachable():
                        logger.info("Job %s: connectivity restored", job_id)
                        return
                    offline_for = self._clock() - offline_since
                    if offline_for >= self.offline_timeout:
                        logger.error("Job %s: offline for %.0fs, giving up", job_id, offline_for)
                        raise OfflineTimeout(offline_for)
            finally:
                batch.online.set()


class DelegatedTransferStrategy(TransferStrategy):
    """Hands every chunk to a background transport and lets it report back.

    Submissions go out in index order with no cap on outstanding transfers.
    Any chunk error fails the job; there is no per-chunk retry on this path.
    """

    name = "delegated"

    def __init__(self, transport: BackgroundTransport, correlation: TransportCorrelation):
        self.transport = transport
        self.correlation = correlation

    async def transfer(self, job, chunks, destinations, emit):
        if len(destinations) != len(chunks):
            raise ValueError(f"{len(chunks)} chunks but {len(destinations)} destinations")

        self.correlation.open(job.id, emit)
        for chunk, url in zip(chunks, destinations):
            source = ChunkSource(job.file_uri, chunk.offset, chunk.length)
            handle = await self.transport.submit(source, url, "PUT", dict(CHUNK_HEADERS))
            emit(ChunkSubmitted(chunk.index, handle))
            # Callbacks that raced the submit response are replayed here
            self.correlation.bind(handle, CorrelationKey(job.id, chunk.index))
        logger.info("Job %s: submitted %d chunks to background transport", job.id, len(chunks))

    async def cancel(self, job_id: str) -> None:
        for handle in self.correlation.close(job_id):
            try:
                await self.transport.cancel(handle)
            except Exception as e:
                logger.warning("Job %s: could not cancel transfer %s: %s", job_id, handle, e)
