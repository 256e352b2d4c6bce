# config.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    # Control plane
    control_plane: str = "http"
    api_base_url: str = "https://api.paraspot.ai/api"
    record_notify_url: Optional[str] = None
    reachability_url: Optional[str] = None
    transfer_agent_url: Optional[str] = None
    request_timeout: float = 60.0

    # S3 backend (CONTROL_PLANE=s3)
    bucket_name: Optional[str] = None
    aws_region: str = "us-east-1"
    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    presigned_url_expiry: int = 3600

    # Job store, empty means in-memory
    redis_url: Optional[str] = None

    chunk_size: int = 5 * 1024 * 1024  # 5MB, S3 minimum part size
    upload_concurrency: int = 4
    max_active_jobs: int = 2

    presign_max_retries: int = 5
    presign_retry_base: float = 5.0
    presign_retry_step: float = 2.0

    finalize_max_retries: int = 5

    chunk_max_retries: int = 5
    chunk_retry_base: float = 1.0
    chunk_retry_step: float = 1.0
    max_chunk_failures: int = 10

    offline_poll_interval: float = 5.0
    offline_timeout: float = 120.0

    queue_poll_interval: float = 5.0

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        defaults = cls()

        def _int(name: str, default: int) -> int:
            value = os.getenv(name)
            return int(value) if value else default

        def _float(name: str, default: float) -> float:
            value = os.getenv(name)
            return float(value) if value else default

        return cls(
            control_plane=os.getenv("CONTROL_PLANE", defaults.control_plane).strip().lower(),
            api_base_url=os.getenv("API_BASE_URL", defaults.api_base_url),
            record_notify_url=os.getenv("RECORD_NOTIFY_URL") or None,
            reachability_url=os.getenv("REACHABILITY_URL") or None,
            transfer_agent_url=os.getenv("TRANSFER_AGENT_URL") or None,
            request_timeout=_float("REQUEST_TIMEOUT", defaults.request_timeout),
            bucket_name=os.getenv("BUCKET_NAME") or None,
            aws_region=os.getenv("AWS_REGION", defaults.aws_region),
            aws_access_key=os.getenv("AWS_ACCESS_KEY") or None,
            aws_secret_key=os.getenv("AWS_SECRET_KEY") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            chunk_size=_int("CHUNK_SIZE_BYTES", defaults.chunk_size),
            upload_concurrency=_int("UPLOAD_CONCURRENCY", defaults.upload_concurrency),
            max_active_jobs=_int("MAX_ACTIVE_JOBS", defaults.max_active_jobs),
            presign_max_retries=_int("PRESIGN_MAX_RETRIES", defaults.presign_max_retries),
            finalize_max_retries=_int("FINALIZE_MAX_RETRIES", defaults.finalize_max_retries),
            chunk_max_retries=_int("CHUNK_MAX_RETRIES", defaults.chunk_max_retries),
            max_chunk_failures=_int("MAX_CHUNK_FAILURES", defaults.max_chunk_failures),
            offline_poll_interval=_float("OFFLINE_POLL_INTERVAL", defaults.offline_poll_interval),
            offline_timeout=_float("OFFLINE_TIMEOUT", defaults.offline_timeout),
            queue_poll_interval=_float("QUEUE_POLL_INTERVAL", defaults.queue_poll_interval),
        )
