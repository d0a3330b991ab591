from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from .configuration import configure_logging, make_runtime_config
from .database import JobDatabase
from .errors import AdmissionError, JobNotFoundError, RenderError
from .identity import IdentityStore
from .interfaces import Identity
from .job_manager import ConversionRequest, JobManager
from .materials import MaterialsRegistry
from .models import (
    APIKeyCreate,
    APIKeyCreated,
    APIKeyRecord,
    JobDetail,
    JobStatusView,
    JobSummary,
    TrialResult,
)
from .staging import StagedBatch
from .storage import LocalStorage, build_storage
from .utils import ensure_directory, utcnow

UPLOAD_CHUNK_SIZE = 1024 * 1024

config = make_runtime_config()
configure_logging(config.logging.level)
logger = logging.getLogger(__name__)

database_path = Path(config.paths.database_file)
job_database = JobDatabase(database_path)
identity_store = IdentityStore(database_path)
materials_registry = MaterialsRegistry(database_path)
storage = build_storage(config)

job_manager = JobManager(
    job_store=job_database,
    storage=storage,
    materials=materials_registry,
    config=config,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    logger.info("Shutting down, waiting for running conversions")
    job_manager.shutdown(wait=True)


app = FastAPI(title="Image Convert API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if isinstance(storage, LocalStorage):
    app.mount("/outputs", StaticFiles(directory=ensure_directory(storage.root)), name="outputs")


def get_job_manager() -> JobManager:
    return job_manager


def get_identity_store() -> IdentityStore:
    return identity_store


def get_identity(
    x_api_key: str = Header(...),
    store: IdentityStore = Depends(get_identity_store),
) -> Identity:
    identity = store.validate_key(x_api_key)
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid or revoked API key")
    return identity


def require_master_key(x_api_key: str = Header(...)) -> None:
    master_key = config.auth.master_key
    if not master_key or not secrets.compare_digest(x_api_key, str(master_key)):
        raise HTTPException(status_code=401, detail="Admin access requires the master key")


async def _stage_upload(staged: StagedBatch, upload: UploadFile, max_bytes: int) -> None:
    """
    Stream one upload into the staging area.

    Reading stops once the size limit is exceeded; the recorded size is then
    already above the limit and validation rejects the batch.
    """
    original_name = upload.filename or "image"
    name, destination = staged.reserve(original_name)
    size = 0
    with destination.open("wb") as buffer:
        while chunk := await upload.read(UPLOAD_CHUNK_SIZE):
            size += len(chunk)
            buffer.write(chunk)
            if size > max_bytes:
                break
    await upload.close()
    staged.register(name, original_name, destination, size, upload.content_type or "")


async def _stage_uploads(manager: JobManager, uploads: List[UploadFile]) -> StagedBatch:
    staged = manager.new_staging_area()
    try:
        for upload in uploads:
            await _stage_upload(staged, upload, manager.limits.max_item_bytes)
    except Exception:
        staged.release()
        raise
    return staged


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/health/conversions")
def conversion_health(manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "staging_dir": str(manager.staging_root),
        "staging_dir_exists": manager.staging_root.exists(),
        "storage": getattr(storage, "mode", "custom"),
        "active_jobs": len(manager.active_job_ids()),
        "message": "Image conversion service is ready",
        "timestamp": utcnow().isoformat(),
    }


@app.post("/conversions", response_model=JobSummary, status_code=202)
async def create_conversion(
    images: Optional[List[UploadFile]] = File(None),
    target_format: str = Form(""),
    class_code: str = Form(""),
    identity: Identity = Depends(get_identity),
    manager: JobManager = Depends(get_job_manager),
) -> JobSummary:
    staged = await _stage_uploads(manager, images or [])
    try:
        return manager.submit(
            ConversionRequest(
                owner=identity,
                batch=staged,
                target_format=target_format,
                destination=class_code,
            )
        )
    except AdmissionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/conversions/test", response_model=TrialResult)
async def test_conversion(
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_identity),
    manager: JobManager = Depends(get_job_manager),
) -> TrialResult:
    if image is None:
        raise HTTPException(status_code=400, detail="No image uploaded")

    staged = await _stage_uploads(manager, [image])
    try:
        return await run_in_threadpool(manager.trial_convert, staged)
    except AdmissionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RenderError as exc:
        raise HTTPException(status_code=422, detail=f"Test conversion failed: {exc.detail}") from exc


@app.get("/conversions", response_model=list[JobSummary])
def list_conversions(
    identity: Identity = Depends(get_identity),
    manager: JobManager = Depends(get_job_manager),
) -> list[JobSummary]:
    return manager.list_history(identity)


@app.get("/conversions/{job_id}", response_model=JobDetail)
def get_conversion(
    job_id: str,
    identity: Identity = Depends(get_identity),
    manager: JobManager = Depends(get_job_manager),
) -> JobDetail:
    try:
        return manager.get_job(job_id, identity)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Conversion not found") from exc


@app.get("/conversions/{job_id}/status", response_model=JobStatusView)
def conversion_status(
    job_id: str,
    identity: Identity = Depends(get_identity),
    manager: JobManager = Depends(get_job_manager),
) -> JobStatusView:
    try:
        return manager.get_status(job_id, identity)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Conversion not found") from exc


@app.post("/admin/keys", response_model=APIKeyCreated, status_code=201, dependencies=[Depends(require_master_key)])
def create_api_key(payload: APIKeyCreate, store: IdentityStore = Depends(get_identity_store)) -> APIKeyCreated:
    raw_key, record = store.create_key(payload.owner_id, payload.display_name, payload.role)
    logger.info(f"Issued API key {record.prefix}... for {record.owner_id} ({record.role.value})")
    return APIKeyCreated(api_key=raw_key, record=record)


@app.get("/admin/keys", response_model=list[APIKeyRecord], dependencies=[Depends(require_master_key)])
def list_api_keys(store: IdentityStore = Depends(get_identity_store)) -> list[APIKeyRecord]:
    return store.list_keys()


@app.delete("/admin/keys/{key_id}", dependencies=[Depends(require_master_key)])
def revoke_api_key(key_id: str, store: IdentityStore = Depends(get_identity_store)) -> Dict[str, str]:
    if not store.revoke_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"status": "revoked"}
