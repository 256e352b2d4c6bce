import asyncio
import itertools
from typing import Dict, List

import httpx
import pytest

from models.upload_models import PresignedUrlSet
from services.background_transport import TransportCorrelation
from services.control_plane import ControlPlane, ControlPlaneError
from services.file_store import FileStore
from services.job_store import InMemoryJobStore
from services.notifications import UploadNotifier
from services.transfer_strategies import DelegatedTransferStrategy, DirectTransferStrategy
from services.upload_service import UploadService

MiB = 1024 * 1024


async def no_sleep(_seconds):
    await asyncio.sleep(0)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.delays: List[float] = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.delays.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeFileStore(FileStore):
    def __init__(self, files: Dict[str, int] = None):
        self.files = dict(files or {})

    def size(self, locator):
        if locator not in self.files:
            raise FileNotFoundError(locator)
        return self.files[locator]

    def read(self, locator, offset, length):
        return bytes((offset + i) % 251 for i in range(min(length, 16))) + b"\0" * max(0, length - 16)


class FakeControlPlane(ControlPlane):
    def __init__(self, finalize_ok=True, **kwargs):
        kwargs.setdefault("sleep", no_sleep)
        super().__init__(**kwargs)
        self.finalize_ok = finalize_ok
        self.presign_calls = []
        self.finalize_calls = []

    async def _presign_once(self, upload_id, filename, chunk_count, mime_type):
        self.presign_calls.append((upload_id, filename, chunk_count, mime_type))
        return PresignedUrlSet(
            presign_urls=[f"https://s3.test/{upload_id}/part/{i}" for i in range(chunk_count)]
        )

    async def _finalize_once(self, upload_id, filename, total_chunks):
        self.finalize_calls.append((upload_id, filename, total_chunks))
        if not self.finalize_ok:
            raise ControlPlaneError("finalize rejected")


class FakeProbe:
    def __init__(self, reachable=True):
        self.reachable = reachable
        self.calls = 0

    async def is_reachable(self):
        self.calls += 1
        return self.reachable


class FakeTransport:
    def __init__(self):
        self.submissions = []
        self.cancelled = []
        self._ids = itertools.count(1)

    async def submit(self, source, url, method, headers):
        handle = f"h-{next(self._ids)}"
        self.submissions.append((handle, source, url, method, headers))
        return handle

    async def cancel(self, handle):
        self.cancelled.append(handle)


class EarlyReportingTransport(FakeTransport):
    """Agent that reports a transfer before its submit response returns."""

    def __init__(self, correlation, status=200):
        super().__init__()
        self.correlation = correlation
        self.status = status

    async def submit(self, source, url, method, headers):
        handle = await super().submit(source, url, method, headers)
        self.correlation.on_progress(handle, 50)
        self.correlation.on_completed(handle, self.status)
        return handle


class RecordingSink:
    def __init__(self):
        self.notifications = []

    def notify(self, title, body):
        self.notifications.append((title, body))


class ProgressRecordingStore(InMemoryJobStore):
    def __init__(self):
        super().__init__()
        self.progress_history: Dict[str, List[int]] = {}

    def _write(self, job):
        history = self.progress_history.setdefault(job.id, [])
        if not history or history[-1] != job.progress:
            history.append(job.progress)
        return super()._write(job)


def ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, headers={"ETag": '"etag"'})


def make_direct_strategy(handler=ok_handler, file_store=None, probe=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("sleep", no_sleep)
    return DirectTransferStrategy(
        client, file_store or FakeFileStore(), probe or FakeProbe(), **kwargs
    )


class ServiceHarness:
    def __init__(self, handler=ok_handler, finalize_ok=True, files=None, **direct_kwargs):
        self.store = ProgressRecordingStore()
        self.file_store = FakeFileStore(files or {"file:///video.mp4": 12 * MiB})
        self.control_plane = FakeControlPlane(finalize_ok=finalize_ok)
        self.transport = FakeTransport()
        self.correlation = TransportCorrelation()
        self.sink = RecordingSink()
        self.handler = handler
        self.direct_kwargs = direct_kwargs
        self.service = UploadService(
            store=self.store,
            control_plane=self.control_plane,
            file_store=self.file_store,
            direct_strategy_factory=self._direct,
            delegated_strategy_factory=lambda: DelegatedTransferStrategy(self.transport, self.correlation),
            notifier=UploadNotifier(self.sink),
            chunk_size=5 * MiB,
            max_active_jobs=2,
        )

    def _direct(self):
        return make_direct_strategy(self.handler, file_store=self.file_store, **self.direct_kwargs)


@pytest.fixture
def harness():
    return ServiceHarness()
