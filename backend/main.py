import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from config import Settings
from models.upload_models import (
    LifecycleUpdate,
    TransportEventPayload,
    TransportEventType,
    UploadJobCreate,
)
from services.background_transport import TransportCorrelation, WebhookBackgroundTransport
from services.connectivity import ReachabilityProbe
from services.control_plane import HttpControlPlane, SystemOfRecordNotifier
from services.errors import InvalidTransition, JobNotFound
from services.file_store import LocalFileStore
from services.job_store import InMemoryJobStore, RedisJobStore
from services.notifications import LoggingNotificationSink, UploadNotifier
from services.queue_processor import QueueProcessor
from services.s3_control_plane import S3ControlPlane
from services.transfer_strategies import DelegatedTransferStrategy, DirectTransferStrategy
from services.upload_service import UploadService

logger = logging.getLogger(__name__)


def build_upload_service(settings: Settings, client: httpx.AsyncClient, correlation: TransportCorrelation):
    """Construct the upload coordinator and its collaborators once per process."""
    store = RedisJobStore.from_url(settings.redis_url) if settings.redis_url else InMemoryJobStore()
    file_store = LocalFileStore()
    probe = ReachabilityProbe(client, settings.reachability_url or settings.api_base_url)

    retry_policy = dict(
        max_retries=settings.presign_max_retries,
        retry_base=settings.presign_retry_base,
        retry_step=settings.presign_retry_step,
        finalize_max_retries=settings.finalize_max_retries,
    )
    if settings.control_plane == "s3":
        control_plane = S3ControlPlane(
            settings.bucket_name,
            region_name=settings.aws_region,
            aws_access_key=settings.aws_access_key,
            aws_secret_key=settings.aws_secret_key,
            presigned_url_expiry=settings.presigned_url_expiry,
            **retry_policy,
        )
    else:
        control_plane = HttpControlPlane(client, settings.api_base_url, **retry_policy)

    delegated_factory = None
    if settings.transfer_agent_url:
        transport = WebhookBackgroundTransport(client, settings.transfer_agent_url)
        delegated_factory = lambda: DelegatedTransferStrategy(transport, correlation)

    return UploadService(
        store=store,
        control_plane=control_plane,
        file_store=file_store,
        direct_strategy_factory=lambda: DirectTransferStrategy.from_settings(
            settings, client, file_store, probe
        ),
        delegated_strategy_factory=delegated_factory,
        notifier=UploadNotifier(LoggingNotificationSink()),
        record_notifier=SystemOfRecordNotifier(client, settings.record_notify_url),
        chunk_size=settings.chunk_size,
        max_active_jobs=settings.max_active_jobs,
    )


def create_app(
    settings: Optional[Settings] = None,
    upload_service: Optional[UploadService] = None,
    correlation: Optional[TransportCorrelation] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        app_settings = settings or Settings.from_env()
        client = httpx.AsyncClient(timeout=app_settings.request_timeout)
        app.state.correlation = correlation or TransportCorrelation()
        app.state.upload_service = upload_service or build_upload_service(
            app_settings, client, app.state.correlation
        )
        queue_processor = QueueProcessor(
            app.state.upload_service, poll_interval=app_settings.queue_poll_interval
        )
        queue_task = asyncio.create_task(queue_processor.start_processing())

        yield

        # Shutdown
        queue_task.cancel()
        try:
            await queue_task
        except asyncio.CancelledError:
            pass
        await app.state.upload_service.shutdown()
        await client.aclose()

    app = FastAPI(title="Inspection Video Upload Service", lifespan=lifespan)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _service(request: Request) -> UploadService:
        return request.app.state.upload_service

    @app.post("/uploads")
    async def enqueue_upload(request: Request, job_data: UploadJobCreate):
        """Queue a recorded video for upload"""
        try:
            return _service(request).enqueue(job_data)
        except FileNotFoundError:
            raise HTTPException(status_code=400, detail=f"File not found: {job_data.file_uri}")
        except Exception as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/uploads/active")
    async def get_active_uploads(request: Request):
        """Get all jobs that are not completed"""
        return {"jobs": _service(request).get_active_jobs()}

    @app.get("/uploads/{job_id}")
    async def get_upload(request: Request, job_id: str):
        """Get upload job details"""
        try:
            return _service(request).get_job(job_id)
        except JobNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/uploads/{job_id}/pause")
    async def pause_upload(request: Request, job_id: str):
        """Pause an ongoing upload"""
        try:
            return await _service(request).pause_upload(job_id)
        except JobNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/uploads/{job_id}/resume")
    async def resume_upload(request: Request, job_id: str):
        """Resume a paused upload"""
        try:
            return _service(request).resume_upload(job_id)
        except JobNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/uploads/{job_id}/retry")
    async def retry_upload(request: Request, job_id: str):
        """Retry a failed upload from the first chunk"""
        try:
            return _service(request).retry_upload(job_id)
        except JobNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.delete("/uploads/{job_id}")
    async def cancel_upload(request: Request, job_id: str):
        """Cancel an upload and remove it from the queue"""
        try:
            await _service(request).cancel_upload(job_id)
            return {"status": "cancelled"}
        except JobNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/lifecycle")
    async def update_lifecycle(request: Request, update: LifecycleUpdate):
        """Report the app moving to the foreground or background"""
        _service(request).set_lifecycle(update.state)
        return {"state": update.state}

    @app.post("/transport/events")
    async def transport_event(request: Request, payload: TransportEventPayload):
        """Callback channel for the background transfer agent"""
        correlation: TransportCorrelation = request.app.state.correlation
        if payload.event == TransportEventType.PROGRESS:
            correlation.on_progress(payload.handle, payload.progress or 0)
        elif payload.event == TransportEventType.COMPLETED:
            correlation.on_completed(payload.handle, payload.status if payload.status is not None else 200)
        else:
            correlation.on_error(payload.handle, payload.message or "Upload failed")
        return {"status": "accepted"}

    return app


app = create_app()
