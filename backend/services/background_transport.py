# services/background_transport.py
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from models.upload_models import (
    ChunkCompleted,
    ChunkFailed,
    ChunkProgress,
    ChunkSource,
    TransferEvent,
)
from services.errors import HttpError, TransportError

logger = logging.getLogger(__name__)

Emit = Callable[[TransferEvent], None]


class BackgroundTransport(Protocol):
    """Background transfer primitive the delegated strategy hands chunks to.

    Completion is reported out of band through ``TransportCorrelation``'s
    ``on_progress`` / ``on_completed`` / ``on_error`` callbacks.
    """

    async def submit(
        self, source: ChunkSource, url: str, method: str, headers: Dict[str, str]
    ) -> str:
        ...

    async def cancel(self, handle: str) -> None:
        ...


@dataclass(frozen=True)
class CorrelationKey:
    job_id: str
    chunk_index: int


class TransportCorrelation:
    """Maps transport handles back to (job, chunk) and routes callbacks.

    Callbacks may arrive from any thread and in any order; they are turned
    into transfer events and handed to the emitter of the job that owns the
    handle. A callback can beat the submit response that carries its
    handle, so callbacks for handles not bound yet are held for
    ``retention`` seconds and replayed by ``bind``. Handles that stay
    unknown (stale, duplicate, or belonging to a cancelled job) are dropped.
    """

    def __init__(self, retention: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.retention = retention
        self._clock = clock
        self._keys: Dict[str, CorrelationKey] = {}
        self._emitters: Dict[str, Emit] = {}
        # handle -> [(received_at, callback, args)] for handles not bound yet
        self._early: Dict[str, List[Tuple[float, Callable, tuple]]] = {}
        self._lock = threading.Lock()

    def open(self, job_id: str, emit: Emit):
        with self._lock:
            self._emitters[job_id] = emit

    def bind(self, handle: str, key: CorrelationKey):
        with self._lock:
            self._prune_early()
            early = self._early.pop(handle, [])
            if key.job_id not in self._emitters:
                logger.debug("Ignoring handle %s for closed job %s", handle, key.job_id)
                return
            self._keys[handle] = key
        for _, callback, args in early:
            logger.debug("Replaying early callback %s for handle %s", callback.__name__, handle)
            callback(handle, *args)

    def lookup(self, handle: str) -> Optional[CorrelationKey]:
        return self._keys.get(handle)

    def handles_for(self, job_id: str) -> Dict[int, str]:
        with self._lock:
            return {
                key.chunk_index: handle
                for handle, key in self._keys.items()
                if key.job_id == job_id
            }

    def close(self, job_id: str) -> List[str]:
        """Forget a job; returns its outstanding handles."""
        with self._lock:
            self._emitters.pop(job_id, None)
            handles = [h for h, key in self._keys.items() if key.job_id == job_id]
            for handle in handles:
                del self._keys[handle]
        return handles

    def _prune_early(self):
        cutoff = self._clock() - self.retention
        for handle in list(self._early):
            kept = [entry for entry in self._early[handle] if entry[0] >= cutoff]
            if kept:
                self._early[handle] = kept
            else:
                del self._early[handle]

    def _resolve(self, handle: str, callback: Callable, args: tuple,
                 release: bool = False) -> Optional[Tuple[CorrelationKey, Emit]]:
        with self._lock:
            key = self._keys.pop(handle, None) if release else self._keys.get(handle)
            if key is None:
                self._prune_early()
                self._early.setdefault(handle, []).append((self._clock(), callback, args))
                return None
            emit = self._emitters.get(key.job_id)
        if emit is None:
            return None
        return key, emit

    def on_progress(self, handle: str, percent: int):
        resolved = self._resolve(handle, self.on_progress, (percent,))
        if resolved is None:
            return
        key, emit = resolved
        # 100 is reserved for a confirmed completion
        emit(ChunkProgress(key.chunk_index, max(0, min(int(percent), 99))))

    def on_completed(self, handle: str, status: int):
        resolved = self._resolve(handle, self.on_completed, (status,), release=True)
        if resolved is None:
            return
        key, emit = resolved
        if 200 <= status < 300:
            emit(ChunkCompleted(key.chunk_index, status))
        else:
            emit(ChunkFailed(key.chunk_index, HttpError(status), fatal=True))

    def on_error(self, handle: str, message: str):
        resolved = self._resolve(handle, self.on_error, (message,), release=True)
        if resolved is None:
            return
        key, emit = resolved
        emit(ChunkFailed(key.chunk_index, TransportError(message), fatal=True))


class WebhookBackgroundTransport:
    """Hands chunks to an external transfer agent over HTTP.

    The agent performs the PUT on its own schedule and reports back through
    ``POST /transport/events``.
    """

    def __init__(self, client: httpx.AsyncClient, agent_url: str):
        self.client = client
        self.agent_url = agent_url.rstrip("/")

    async def submit(self, source, url, method, headers) -> str:
        try:
            response = await self.client.post(
                f"{self.agent_url}/transfers",
                json={
                    "file_uri": source.locator,
                    "offset": source.offset,
                    "length": source.length,
                    "url": url,
                    "method": method,
                    "headers": headers,
                },
            )
            response.raise_for_status()
            return str(response.json()["handle"])
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise TransportError(f"transfer agent rejected submission: {e}") from e

    async def cancel(self, handle: str) -> None:
        response = await self.client.delete(f"{self.agent_url}/transfers/{handle}")
        if response.status_code != 404:
            response.raise_for_status()
