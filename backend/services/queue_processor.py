# services/queue_processor.py
import asyncio
import logging
from typing import Awaitable, Callable

from services.upload_service import UploadService

logger = logging.getLogger(__name__)


class QueueProcessor:
    """Background loop that keeps the upload queue moving.

    Jobs are normally started by the job store's insert hook; this loop
    catches the ones that could not start then (no capacity, or inserted
    before the event loop was running) and restarts jobs a previous process
    was interrupted in.
    """

    def __init__(
        self,
        upload_service: UploadService,
        poll_interval: float = 5.0,
        error_backoff: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.upload_service = upload_service
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self._sleep = sleep

    async def start_processing(self):
        """Start the queue processing loop"""
        self.upload_service.recover_interrupted_jobs()
        while True:
            try:
                self.process_pending_jobs()
                await self._sleep(self.poll_interval)

            except asyncio.CancelledError:
                logger.info("Queue processor cancelled")
                break
            except Exception as e:
                logger.error(f"Error in queue processor: {e}")
                await self._sleep(self.error_backoff)

    def process_pending_jobs(self):
        started = self.upload_service.start_pending_jobs()
        if started:
            logger.info("Started %d pending upload(s): %s", len(started), ", ".join(started))
        return started
