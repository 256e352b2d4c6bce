# models/upload_models.py
from pydantic import BaseModel, ConfigDict, Field
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from datetime import datetime
from enum import Enum

class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"

class LifecycleState(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"

class PauseOrigin(str, Enum):
    USER = "user"
    INTERRUPTED = "interrupted"  # process stopped mid-upload, resumed by the queue

class UploadJobCreate(BaseModel):
    id: str
    file_uri: str
    target_id: str
    filename: str
    mime_type: str = "video/mp4"

class UploadJob(BaseModel):
    id: str
    file_uri: str
    file_size: int
    target_id: str
    filename: str
    mime_type: str = "video/mp4"
    status: UploadStatus = UploadStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    error: Optional[str] = None
    paused_by: Optional[PauseOrigin] = None
    transport_handles: Dict[int, str] = {}
    attempt: int = 0
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

@dataclass(frozen=True)
class Chunk:
    index: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

@dataclass(frozen=True)
class ChunkSource:
    """Reference to a chunk's bytes inside the source file."""
    locator: str
    offset: int
    length: int

class PresignedUrlSet(BaseModel):
    presign_urls: List[str] = []

    def matches(self, chunk_count: int) -> bool:
        return len(self.presign_urls) == chunk_count

# Control-plane wire contract

class PresignRequest(BaseModel):
    id: str
    filename: str
    filetype: str
    total_parts: int

class PresignResult(BaseModel):
    presign_urls: List[str] = []

class PresignResponse(BaseModel):
    status: Union[str, int, bool, None] = None
    result: Optional[PresignResult] = None

class FinalizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    filename: str
    expected_size: int = Field(alias="expectedSize")

class FinalizeResponse(BaseModel):
    status: Union[str, int, bool, None] = None

# Transfer events reported by a strategy to the job that owns it

@dataclass(frozen=True)
class ChunkSubmitted:
    index: int
    handle: str

@dataclass(frozen=True)
class ChunkProgress:
    index: int
    percent: int

@dataclass(frozen=True)
class ChunkCompleted:
    index: int
    status: int = 200

@dataclass(frozen=True)
class ChunkFailed:
    index: int
    error: Exception
    fatal: bool = False

@dataclass(frozen=True)
class TransferAborted:
    error: Exception

TransferEvent = Union[ChunkSubmitted, ChunkProgress, ChunkCompleted, ChunkFailed, TransferAborted]

# HTTP surface payloads

class LifecycleUpdate(BaseModel):
    state: LifecycleState

class TransportEventType(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"

class TransportEventPayload(BaseModel):
    handle: str
    event: TransportEventType
    progress: Optional[int] = None
    status: Optional[int] = None
    message: Optional[str] = None
