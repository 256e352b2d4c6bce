# services/errors.py
from typing import Iterable


class UploadError(Exception):
    """Base class for failures that move an upload job to ``failed``."""

    reason = "Upload failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.reason)


class EmptySource(UploadError):
    reason = "Source file is empty, nothing to upload"


class PresignExhausted(UploadError):
    def __init__(self, attempts: int, last_error: str = ""):
        self.attempts = attempts
        message = f"Could not obtain upload URLs after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)


class ChunkUploadExhausted(UploadError):
    def __init__(self, indices: Iterable[int]):
        self.indices = sorted(indices)
        parts = ", ".join(str(i) for i in self.indices)
        super().__init__(f"Chunk upload retries exhausted for chunk(s) {parts}")


class TransportError(UploadError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Transfer error: {message}")


class HttpError(UploadError):
    def __init__(self, status: int):
        self.status = status
        super().__init__(f"HTTP error {status}")


class TooManyChunkFailures(UploadError):
    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Too many chunk failures ({count})")


class OfflineTimeout(UploadError):
    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"No connectivity for {int(seconds)}s, upload aborted")


class FinalizeFailure(UploadError):
    reason = "Could not finalize upload"


class JobNotFound(LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Upload job {job_id} not found")


class InvalidTransition(ValueError):
    def __init__(self, job_id: str, current, target):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move job {job_id} from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )
