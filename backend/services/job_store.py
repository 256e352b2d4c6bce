# services/job_store.py
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Dict, List, Optional

import redis

from models.upload_models import UploadJob

logger = logging.getLogger(__name__)

InsertHook = Callable[[UploadJob], None]


class JobStore(ABC):
    """Persistent upload queue.

    Insert hooks run synchronously whenever ``upsert`` creates a job that
    was not stored before.
    """

    def __init__(self):
        self._insert_hooks: List[InsertHook] = []

    def add_insert_hook(self, hook: InsertHook):
        self._insert_hooks.append(hook)

    def upsert(self, job: UploadJob) -> UploadJob:
        created = self._write(job)
        if created:
            for hook in self._insert_hooks:
                hook(job)
        return job

    @abstractmethod
    def get(self, job_id: str) -> Optional[UploadJob]:
        ...

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def list(self) -> List[UploadJob]:
        ...

    @abstractmethod
    def _write(self, job: UploadJob) -> bool:
        """Store ``job``; return True when it did not exist before."""


class InMemoryJobStore(JobStore):
    def __init__(self):
        super().__init__()
        self._jobs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[UploadJob]:
        data = self._jobs.get(job_id)
        if data is None:
            return None
        return UploadJob.model_validate_json(data)

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list(self) -> List[UploadJob]:
        jobs = [UploadJob.model_validate_json(data) for data in list(self._jobs.values())]
        return sorted(jobs, key=lambda job: job.created_at)

    def _write(self, job: UploadJob) -> bool:
        with self._lock:
            created = job.id not in self._jobs
            self._jobs[job.id] = job.model_dump_json()
        return created


class RedisJobStore(JobStore):
    KEY_PREFIX = "upload_job:"

    def __init__(self, redis_client: redis.Redis, job_ttl: timedelta = timedelta(days=7)):
        super().__init__()
        self.redis_client = redis_client
        self.job_ttl = job_ttl

    @classmethod
    def from_url(cls, url: str) -> "RedisJobStore":
        return cls(
            redis.Redis.from_url(
                url,
                decode_responses=False,
                socket_connect_timeout=5,
                health_check_interval=30,
            )
        )

    def _key(self, job_id: str) -> str:
        return f"{self.KEY_PREFIX}{job_id}"

    def get(self, job_id: str) -> Optional[UploadJob]:
        data = self.redis_client.get(self._key(job_id))
        if not data:
            return None
        return UploadJob.model_validate_json(data)

    def remove(self, job_id: str) -> bool:
        return bool(self.redis_client.delete(self._key(job_id)))

    def list(self) -> List[UploadJob]:
        jobs = []
        for key in self.redis_client.keys(f"{self.KEY_PREFIX}*"):
            data = self.redis_client.get(key)
            if data:
                jobs.append(UploadJob.model_validate_json(data))
        return sorted(jobs, key=lambda job: job.created_at)

    def _write(self, job: UploadJob) -> bool:
        try:
            previous = self.redis_client.set(
                self._key(job.id),
                job.model_dump_json(),
                ex=int(self.job_ttl.total_seconds()),
                get=True,
            )
        except redis.RedisError as e:
            logger.error("Failed to store upload job %s: %s", job.id, e)
            raise
        return previous is None
