# services/control_plane.py
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError

from models.upload_models import (
    FinalizeRequest,
    FinalizeResponse,
    PresignRequest,
    PresignResponse,
    PresignedUrlSet,
)
from services.errors import PresignExhausted

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

SUCCESS_STATUSES = {"success", "ok", "200"}


def is_success_status(status) -> bool:
    if status is True:
        return True
    if status is None or status is False:
        return False
    return str(status).strip().lower() in SUCCESS_STATUSES


class ControlPlaneError(Exception):
    """A single control-plane call did not succeed; eligible for retry."""


class ControlPlane(ABC):
    """Presign and finalize calls with the shared retry policy.

    Subclasses implement one attempt of each call; retries are handled here.
    """

    def __init__(
        self,
        max_retries: int = 5,
        retry_base: float = 5.0,
        retry_step: float = 2.0,
        finalize_max_retries: int = 5,
        sleep: Sleep = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.retry_base = retry_base
        self.retry_step = retry_step
        self.finalize_max_retries = finalize_max_retries
        self._sleep = sleep

    def retry_delay(self, attempt: int) -> float:
        return self.retry_base + attempt * self.retry_step

    async def request_presigned_urls(
        self,
        upload_id: str,
        filename: str,
        chunk_count: int,
        mime_type: str,
        attempt: int = 0,
    ) -> PresignedUrlSet:
        """Request one presigned URL per chunk, retrying on any failure."""
        try:
            url_set = await self._presign_once(upload_id, filename, chunk_count, mime_type)
            if not url_set.matches(chunk_count):
                raise ControlPlaneError(
                    f"expected {chunk_count} upload URLs, got {len(url_set.presign_urls)}"
                )
            return url_set
        except (ControlPlaneError, httpx.HTTPError, ValidationError, ValueError) as e:
            if attempt >= self.max_retries:
                logger.error("Presign for %s failed after %d attempts: %s", upload_id, attempt + 1, e)
                raise PresignExhausted(attempt + 1, str(e)) from e
            delay = self.retry_delay(attempt)
            logger.warning(
                "Presign for %s failed (%s), retry %d/%d in %.1fs",
                upload_id, e, attempt + 1, self.max_retries, delay,
            )
            await self._sleep(delay)
            return await self.request_presigned_urls(
                upload_id, filename, chunk_count, mime_type, attempt + 1
            )

    async def finalize(
        self,
        upload_id: str,
        filename: str,
        total_chunks: int,
        attempt: int = 0,
    ) -> bool:
        """Commit the assembled upload. Returns False once retries are exhausted."""
        try:
            await self._finalize_once(upload_id, filename, total_chunks)
            logger.info("Finalized upload %s (%d parts)", upload_id, total_chunks)
            return True
        except (ControlPlaneError, httpx.HTTPError, ValidationError, ValueError) as e:
            if attempt >= self.finalize_max_retries:
                logger.error("Finalize for %s failed after %d attempts: %s", upload_id, attempt + 1, e)
                return False
            delay = self.retry_delay(attempt)
            logger.warning(
                "Finalize for %s failed (%s), retry %d/%d in %.1fs",
                upload_id, e, attempt + 1, self.finalize_max_retries, delay,
            )
            await self._sleep(delay)
            return await self.finalize(upload_id, filename, total_chunks, attempt + 1)

    @abstractmethod
    async def _presign_once(
        self, upload_id: str, filename: str, chunk_count: int, mime_type: str
    ) -> PresignedUrlSet:
        """Perform one presign call."""

    @abstractmethod
    async def _finalize_once(self, upload_id: str, filename: str, total_chunks: int) -> None:
        """Perform one finalize call, raising ControlPlaneError on a non-success answer."""


class HttpControlPlane(ControlPlane):
    def __init__(self, client: httpx.AsyncClient, base_url: str, **kwargs):
        super().__init__(**kwargs)
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _presign_once(self, upload_id, filename, chunk_count, mime_type):
        payload = PresignRequest(
            id=upload_id, filename=filename, filetype=mime_type, total_parts=chunk_count
        )
        response = await self.client.post(
            f"{self.base_url}/uploads/presign", json=payload.model_dump()
        )
        if not response.is_success:
            raise ControlPlaneError(f"presign returned HTTP {response.status_code}")

        body = PresignResponse.model_validate(response.json())
        if not is_success_status(body.status) or body.result is None:
            raise ControlPlaneError(f"presign returned status {body.status!r}")
        return PresignedUrlSet(presign_urls=body.result.presign_urls)

    async def _finalize_once(self, upload_id, filename, total_chunks):
        payload = FinalizeRequest(id=upload_id, filename=filename, expected_size=total_chunks)
        response = await self.client.post(
            f"{self.base_url}/uploads/finalize", json=payload.model_dump(by_alias=True)
        )
        if not response.is_success:
            raise ControlPlaneError(f"finalize returned HTTP {response.status_code}")

        body = FinalizeResponse.model_validate(response.json())
        if not is_success_status(body.status):
            raise ControlPlaneError(f"finalize returned status {body.status!r}")


class SystemOfRecordNotifier:
    """Tells the downstream system of record that an upload was committed.

    Best effort: the upload is already finalized, so failures are only logged.
    """

    def __init__(self, client: httpx.AsyncClient, url: Optional[str]):
        self.client = client
        self.url = url

    async def notify_uploaded(self, upload_id: str, filename: str, total_chunks: int) -> bool:
        if not self.url:
            return False
        try:
            response = await self.client.post(
                self.url,
                json={"id": upload_id, "filename": filename, "total_parts": total_chunks},
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("System-of-record notification for %s failed: %s", upload_id, e)
            return False
