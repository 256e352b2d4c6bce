# services/notifications.py
import logging
from typing import Dict, Protocol

from models.upload_models import UploadJob

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, title: str, body: str) -> None:
        ...


class LoggingNotificationSink:
    def notify(self, title: str, body: str) -> None:
        logger.info("[notification] %s: %s", title, body)


class UploadNotifier:
    """User-facing notifications for the lifecycle of an upload job."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink
        self._last_progress: Dict[str, int] = {}

    def _send(self, title: str, body: str):
        # Fire-and-forget, a broken sink must never affect an upload.
        try:
            self.sink.notify(title, body)
        except Exception:
            logger.exception("Notification sink failed for %r", title)

    def started(self, job: UploadJob):
        self._last_progress.pop(job.id, None)
        self._send("Upload Started", f"Uploading {job.target_id}")

    def progress(self, job: UploadJob, progress: int):
        if self._last_progress.get(job.id) == progress:
            return
        self._last_progress[job.id] = progress
        self._send("Uploading...", f"{job.target_id} - {progress}% complete")

    def completed(self, job: UploadJob):
        self._last_progress.pop(job.id, None)
        self._send("Upload Complete", f"Successfully uploaded {job.target_id}")

    def failed(self, job: UploadJob):
        self._last_progress.pop(job.id, None)
        self._send("Upload Failed", f"Failed to upload {job.target_id}")
