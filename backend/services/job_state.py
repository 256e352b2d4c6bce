# services/job_state.py
import logging
from datetime import datetime
from typing import Dict, Optional, Set

from models.upload_models import PauseOrigin, UploadJob, UploadStatus
from services.errors import InvalidTransition, JobNotFound
from services.job_store import JobStore

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[UploadStatus, Set[UploadStatus]] = {
    UploadStatus.PENDING: {UploadStatus.UPLOADING},
    UploadStatus.UPLOADING: {UploadStatus.PAUSED, UploadStatus.COMPLETED, UploadStatus.FAILED},
    UploadStatus.PAUSED: {UploadStatus.UPLOADING},
    UploadStatus.FAILED: {UploadStatus.PENDING},
    UploadStatus.COMPLETED: set(),
}


class JobStateMachine:
    """Single writer of job status, progress and error.

    Every mutation is read-modify-write against the job store.
    """

    def __init__(self, store: JobStore):
        self.store = store

    def get(self, job_id: str) -> UploadJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def can_transition(self, job: UploadJob, target: UploadStatus) -> bool:
        return target in TRANSITIONS[job.status]

    def _transition(self, job_id: str, target: UploadStatus, **fields) -> UploadJob:
        job = self.get(job_id)
        if not self.can_transition(job, target):
            raise InvalidTransition(job_id, job.status, target)
        updated = job.model_copy(
            update={"status": target, "updated_at": datetime.now(), **fields}
        )
        self.store.upsert(updated)
        logger.info("Job %s: %s -> %s", job_id, job.status.value, target.value)
        return updated

    def start(self, job_id: str) -> UploadJob:
        """Begin a fresh attempt (first start or resume); progress restarts at 0."""
        job = self.get(job_id)
        return self._transition(
            job_id,
            UploadStatus.UPLOADING,
            progress=0,
            error=None,
            paused_by=None,
            transport_handles={},
            attempt=job.attempt + 1,
        )

    def pause(self, job_id: str, origin: PauseOrigin = PauseOrigin.USER) -> UploadJob:
        return self._transition(
            job_id, UploadStatus.PAUSED, paused_by=origin, transport_handles={}
        )

    def fail(self, job_id: str, error: str) -> UploadJob:
        return self._transition(
            job_id, UploadStatus.FAILED, error=error, transport_handles={}
        )

    def complete(self, job_id: str) -> UploadJob:
        return self._transition(
            job_id,
            UploadStatus.COMPLETED,
            progress=100,
            error=None,
            transport_handles={},
            completed_at=datetime.now(),
        )

    def retry(self, job_id: str) -> UploadJob:
        return self._transition(job_id, UploadStatus.PENDING, progress=0, error=None)

    def update_progress(self, job_id: str, progress: int) -> Optional[UploadJob]:
        job = self.store.get(job_id)
        if job is None or job.status != UploadStatus.UPLOADING:
            return None
        if progress <= job.progress:
            return job
        updated = job.model_copy(update={"progress": min(progress, 100), "updated_at": datetime.now()})
        self.store.upsert(updated)
        return updated

    def record_handle(self, job_id: str, index: int, handle: str) -> None:
        self._update_handles(job_id, index, handle)

    def clear_handle(self, job_id: str, index: int) -> None:
        self._update_handles(job_id, index, None)

    def _update_handles(self, job_id: str, index: int, handle: Optional[str]):
        job = self.store.get(job_id)
        if job is None or job.status != UploadStatus.UPLOADING:
            return
        handles = dict(job.transport_handles)
        if handle is None:
            if handles.pop(index, None) is None:
                return
        else:
            handles[index] = handle
        self.store.upsert(job.model_copy(update={"transport_handles": handles}))

    def recover_interrupted(self, running: Set[str] = frozenset()) -> int:
        """Pause jobs left in ``uploading`` that no task in this process owns.

        They are marked as interrupted so the queue resumes them; jobs a user
        paused stay parked until resumed explicitly.
        """
        recovered = 0
        for job in self.store.list():
            if job.status == UploadStatus.UPLOADING and job.id not in running:
                self.pause(job.id, PauseOrigin.INTERRUPTED)
                recovered += 1
        return recovered
