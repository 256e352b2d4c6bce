# services/upload_service.py
import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Dict, List, Optional

from models.upload_models import (
    Chunk,
    ChunkCompleted,
    ChunkFailed,
    ChunkProgress,
    ChunkSubmitted,
    LifecycleState,
    PauseOrigin,
    TransferAborted,
    UploadJob,
    UploadJobCreate,
    UploadStatus,
)
from services.chunk_planner import plan_chunks
from services.control_plane import ControlPlane, SystemOfRecordNotifier
from services.errors import FinalizeFailure, InvalidTransition, TransportError, UploadError
from services.file_store import FileStore
from services.job_state import JobStateMachine
from services.job_store import JobStore
from services.notifications import UploadNotifier
from services.progress_aggregator import ProgressAggregator
from services.transfer_strategies import TransferStrategy

logger = logging.getLogger(__name__)


class UploadService:
    """Runs upload jobs end to end.

    Each job attempt is owned by one asyncio task that plans the chunks,
    requests presigned URLs, drives a transfer strategy, folds its events into
    job progress and finalizes. Strategies only enqueue events; every job
    write happens on the owning task through the state machine.
    """

    def __init__(
        self,
        store: JobStore,
        control_plane: ControlPlane,
        file_store: FileStore,
        direct_strategy_factory,
        notifier: UploadNotifier,
        record_notifier: Optional[SystemOfRecordNotifier] = None,
        delegated_strategy_factory=None,
        chunk_size: int = 5 * 1024 * 1024,
        max_active_jobs: int = 2,
    ):
        self.store = store
        self.state = JobStateMachine(store)
        self.control_plane = control_plane
        self.file_store = file_store
        self.direct_strategy_factory = direct_strategy_factory
        self.delegated_strategy_factory = delegated_strategy_factory
        self.notifier = notifier
        self.record_notifier = record_notifier
        self.chunk_size = chunk_size
        self.max_active_jobs = max_active_jobs
        self.lifecycle = LifecycleState.FOREGROUND

        self._active: Dict[str, asyncio.Task] = {}
        self._strategies: Dict[str, TransferStrategy] = {}

        self.store.add_insert_hook(self._on_job_inserted)

    # Queue management

    def enqueue(self, job_data: UploadJobCreate) -> UploadJob:
        """Add a new job to the queue; it starts as soon as there is capacity."""
        if self.store.get(job_data.id) is not None:
            raise ValueError(f"Upload job {job_data.id} already exists")

        now = datetime.now()
        job = UploadJob(
            id=job_data.id,
            file_uri=job_data.file_uri,
            file_size=self.file_store.size(job_data.file_uri),
            target_id=job_data.target_id,
            filename=job_data.filename,
            mime_type=job_data.mime_type,
            status=UploadStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.store.upsert(job)
        return self.state.get(job.id)

    def get_job(self, job_id: str) -> UploadJob:
        return self.state.get(job_id)

    def get_active_jobs(self) -> List[UploadJob]:
        return [job for job in self.store.list() if job.status != UploadStatus.COMPLETED]

    def is_running(self, job_id: str) -> bool:
        task = self._active.get(job_id)
        return task is not None and not task.done()

    def has_capacity(self) -> bool:
        return sum(1 for task in self._active.values() if not task.done()) < self.max_active_jobs

    def set_lifecycle(self, state: LifecycleState):
        """Foreground/background switch; applies to jobs started from now on."""
        if state != self.lifecycle:
            logger.info("App lifecycle: %s -> %s", self.lifecycle.value, state.value)
        self.lifecycle = state

    def _on_job_inserted(self, job: UploadJob):
        if job.status != UploadStatus.PENDING or not self.has_capacity():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the queue processor picks it up.
            return
        self.start_upload(job.id)

    def _is_queued(self, job: UploadJob) -> bool:
        if job.status == UploadStatus.PENDING:
            return True
        return job.status == UploadStatus.PAUSED and job.paused_by == PauseOrigin.INTERRUPTED

    def start_pending_jobs(self) -> List[str]:
        """Start pending and interrupted jobs while capacity remains."""
        started = []
        for job in self.store.list():
            if not self.has_capacity():
                break
            if self._is_queued(job) and not self.is_running(job.id):
                self.start_upload(job.id)
                started.append(job.id)
        return started

    def recover_interrupted_jobs(self) -> int:
        running = {job_id for job_id in self._active if self.is_running(job_id)}
        recovered = self.state.recover_interrupted(running)
        if recovered:
            logger.info("Paused %d upload(s) interrupted by a previous run", recovered)
        return recovered

    # Job actions

    def start_upload(self, job_id: str) -> asyncio.Task:
        """Start a fresh attempt for a pending or paused job."""
        if self.is_running(job_id):
            return self._active[job_id]

        job = self.state.start(job_id)
        self.notifier.started(job)
        task = asyncio.create_task(self._run_job(job_id), name=f"upload-{job_id}")
        self._active[job_id] = task
        return task

    async def pause_upload(self, job_id: str) -> UploadJob:
        job = self.state.get(job_id)
        if not self.state.can_transition(job, UploadStatus.PAUSED):
            raise InvalidTransition(job_id, job.status, UploadStatus.PAUSED)
        await self._stop(job_id)
        return self.state.pause(job_id)

    def resume_upload(self, job_id: str) -> UploadJob:
        job = self.state.get(job_id)
        if job.status != UploadStatus.PAUSED:
            raise InvalidTransition(job_id, job.status, UploadStatus.UPLOADING)
        self.start_upload(job_id)
        return self.state.get(job_id)

    def retry_upload(self, job_id: str) -> UploadJob:
        """Re-queue a failed job; the whole chunk plan runs again from chunk 0."""
        self.state.retry(job_id)
        self.start_upload(job_id)
        return self.state.get(job_id)

    async def cancel_upload(self, job_id: str) -> None:
        self.state.get(job_id)
        await self._stop(job_id)
        self.store.remove(job_id)
        logger.info("Job %s cancelled and removed", job_id)

    async def wait(self, job_id: str) -> UploadJob:
        task = self._active.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.state.get(job_id)

    async def shutdown(self):
        for job_id in list(self._active):
            await self._stop(job_id)

    async def _stop(self, job_id: str):
        task = self._active.pop(job_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        strategy = self._strategies.pop(job_id, None)
        if strategy is not None:
            await strategy.cancel(job_id)

    # Job runner

    def _select_strategy(self) -> TransferStrategy:
        if self.lifecycle == LifecycleState.BACKGROUND:
            if self.delegated_strategy_factory is not None:
                return self.delegated_strategy_factory()
            logger.warning("No background transport configured, uploading directly")
        return self.direct_strategy_factory()

    async def _run_job(self, job_id: str):
        job = self.state.get(job_id)
        strategy = None
        try:
            chunks = plan_chunks(self.file_store.size(job.file_uri), self.chunk_size)
            url_set = await self.control_plane.request_presigned_urls(
                job.target_id, job.filename, len(chunks), job.mime_type
            )

            strategy = self._select_strategy()
            self._strategies[job_id] = strategy
            logger.info(
                "Job %s: uploading %d chunks (%s strategy)", job_id, len(chunks), strategy.name
            )
            await self._drive_transfer(job, chunks, url_set.presign_urls, strategy)

            if not await self.control_plane.finalize(job.target_id, job.filename, len(chunks)):
                raise FinalizeFailure()
            job = self.state.complete(job_id)
            self.notifier.completed(job)
            if self.record_notifier is not None:
                await self.record_notifier.notify_uploaded(job.target_id, job.filename, len(chunks))
        except UploadError as e:
            logger.error("Job %s failed: %s", job_id, e)
            self._fail(job_id, str(e))
        except OSError as e:
            logger.exception("Job %s: cannot read %s", job_id, job.file_uri)
            self._fail(job_id, f"Cannot read source file: {e}")
        finally:
            if strategy is not None:
                self._strategies.pop(job_id, None)
                await strategy.cancel(job_id)
            if self._active.get(job_id) is asyncio.current_task():
                del self._active[job_id]

    def _fail(self, job_id: str, error: str):
        job = self.state.fail(job_id, error)
        self.notifier.failed(job)

    async def _drive_transfer(
        self, job: UploadJob, chunks: List[Chunk], destinations: List[str], strategy: TransferStrategy
    ):
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()

        def emit(event):
            loop.call_soon_threadsafe(events.put_nowait, event)

        aggregator = ProgressAggregator(len(chunks))
        transfer = asyncio.create_task(strategy.transfer(job, chunks, destinations, emit))
        transfer.add_done_callback(partial(self._on_transfer_done, emit))
        try:
            while not aggregator.all_done:
                self._apply_event(job, aggregator, await events.get())
        finally:
            if not transfer.done():
                transfer.cancel()
                await asyncio.gather(transfer, return_exceptions=True)

    @staticmethod
    def _on_transfer_done(emit, task: asyncio.Task):
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        if not isinstance(error, UploadError):
            error = TransportError(str(error) or type(error).__name__)
        emit(TransferAborted(error))

    def _apply_event(self, job: UploadJob, aggregator: ProgressAggregator, event):
        if isinstance(event, ChunkSubmitted):
            self.state.record_handle(job.id, event.index, event.handle)
        elif isinstance(event, ChunkProgress):
            self._push_progress(job, aggregator.update(event.index, event.percent))
        elif isinstance(event, ChunkCompleted):
            self.state.clear_handle(job.id, event.index)
            self._push_progress(job, aggregator.complete(event.index))
        elif isinstance(event, ChunkFailed):
            logger.warning("Job %s: chunk %d failed: %s", job.id, event.index, event.error)
            self.state.clear_handle(job.id, event.index)
            if event.fatal:
                raise event.error
        elif isinstance(event, TransferAborted):
            raise event.error

    def _push_progress(self, job: UploadJob, progress: int):
        updated = self.state.update_progress(job.id, progress)
        if updated is not None:
            self.notifier.progress(updated, updated.progress)
