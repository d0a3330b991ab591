"""
Job orchestration and lifecycle management for image conversions.

This module manages the end-to-end lifecycle of conversion jobs:
- Admission of a staged image batch and creation of its job record
- Detached execution of the conversion on a thread pool
- The pending -> processing -> completed/failed state machine
- Upload of the finished document and its registration as a class material
- Read-only status and history queries for polling clients

The JobManager class provides the core business logic for the API. It talks to
persistence, storage and the materials registry only through the protocols in
interfaces.py.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

from omegaconf import DictConfig

from .configuration import make_runtime_config
from .converters import PdfConverter, RenderSettings, get_converter
from .errors import (
    AdmissionError,
    EmptyOutputError,
    InvalidTransitionError,
    JobFailure,
    JobNotFoundError,
    UpstreamError,
)
from .interfaces import ArtifactDescriptor, Identity, JobStore, MaterialsGateway, StorageGateway
from .models import (
    InputItem,
    JobDetail,
    JobEvent,
    JobMetadata,
    JobStatus,
    JobStatusView,
    JobSummary,
    ResultArtifact,
    TargetFormat,
    TrialResult,
)
from .staging import StagedBatch
from .utils import ensure_directory, format_file_size, utcnow
from .validation import BatchLimits, validate_batch

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass
class JobRecord:
    """
    Internal representation of a conversion job with full state.

    After admission a record is mutated only by the executor thread that runs
    its job. Everyone else works on copies loaded from the job store.

    Attributes:
        id: Unique job identifier (hex UUID)
        owner: Owner id of the submitting educator
        owner_name: Display name forwarded to the materials registry
        input_items: Metadata of the submitted images, in order
        target_format: Requested output format
        destination: Upper-cased class code the document is shared with
        status: Current state machine status
        created_at: Admission timestamp (UTC)
        updated_at: Last modification timestamp (UTC)
        started_at: When the job entered processing
        completed_at: When the job reached a terminal status
        processing_duration_ms: started_at to completed_at, in milliseconds
        result_artifact: The stored document (completed jobs only)
        error_detail: Human-readable failure reason (failed jobs only)
        metadata: Page, placeholder and size information
        events: Chronological list of job lifecycle events
    """

    id: str
    owner: str
    owner_name: str
    input_items: List[InputItem]
    target_format: TargetFormat
    destination: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None
    result_artifact: Optional[ResultArtifact] = None
    error_detail: Optional[str] = None
    metadata: JobMetadata = field(default_factory=JobMetadata)
    events: List[JobEvent] = field(default_factory=list)

    def _transition(self, new_status: JobStatus, message: str) -> datetime:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        now = utcnow()
        self.status = new_status
        self.updated_at = now
        self.events.append(JobEvent(timestamp=now, message=message))
        return now

    def mark_processing(self) -> None:
        self.started_at = self._transition(JobStatus.PROCESSING, "Conversion started.")

    def mark_completed(self, artifact: ResultArtifact) -> None:
        now = self._transition(JobStatus.COMPLETED, "Conversion completed.")
        self.result_artifact = artifact
        self._finish(now)

    def mark_failed(self, detail: str) -> None:
        detail = detail or "conversion failed"
        now = self._transition(JobStatus.FAILED, f"Conversion failed: {detail}")
        self.error_detail = detail
        self._finish(now)

    def _finish(self, now: datetime) -> None:
        self.completed_at = now
        started = self.started_at or self.created_at
        self.processing_duration_ms = max(0, int((now - started).total_seconds() * 1000))

    def to_summary(self) -> JobSummary:
        """
        Convert to a lightweight summary representation.

        Returns:
            JobSummary with essential fields for history views
        """
        return JobSummary(
            id=self.id,
            owner=self.owner,
            status=self.status,
            target_format=self.target_format,
            destination=self.destination,
            image_count=len(self.input_items),
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
            processing_duration_ms=self.processing_duration_ms,
            result_url=self.result_artifact.url if self.result_artifact else None,
        )

    def to_detail(self) -> JobDetail:
        """
        Convert to a detailed representation with full information.

        Returns:
            JobDetail with input items, metadata and events
        """
        summary = self.to_summary()
        return JobDetail(
            **summary.model_dump(),
            owner_name=self.owner_name,
            input_items=[item.model_copy() for item in self.input_items],
            result_artifact=self.result_artifact.model_copy() if self.result_artifact else None,
            error_detail=self.error_detail,
            started_at=self.started_at,
            metadata=self.metadata.model_copy(),
            events=[event.model_copy() for event in self.events],
        )

    def to_status_view(self) -> JobStatusView:
        return JobStatusView(
            id=self.id,
            status=self.status,
            result_artifact=self.result_artifact.model_copy() if self.result_artifact else None,
            error_detail=self.error_detail,
            processing_duration_ms=self.processing_duration_ms,
        )


@dataclass
class ConversionRequest:
    """A submission as received from the HTTP layer, before validation."""

    owner: Identity
    batch: StagedBatch
    target_format: Optional[str]
    destination: Optional[str]


class JobManager:
    """
    Central coordinator for conversion job lifecycle management.

    This class orchestrates all aspects of a conversion:
    - Validating a batch and registering a pending job (submit)
    - Running the conversion on a background thread (_run_job)
    - Answering status, detail and history queries from the job store

    Thread Safety:
        Job records are never shared between threads: the executor owns the
        record it was handed and readers load fresh copies from the store.
        The lock only guards the table of in-flight futures.

    Attributes:
        config: Runtime configuration
        staging_root: Base directory for per-batch staging areas
        limits: Batch admission limits
        render_settings: Layout settings passed to converters
    """

    def __init__(
        self,
        job_store: JobStore,
        storage: StorageGateway,
        materials: MaterialsGateway,
        config: Optional[DictConfig] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        """
        Initialize the job manager.

        Args:
            job_store: Persistence for job records
            storage: Durable storage for finished documents
            materials: Registry that shares documents with a class
            config: Runtime configuration (default: packaged config.yaml)
            max_workers: Concurrent conversions (default: executor.max_workers)
        """
        self.config = config if config is not None else make_runtime_config()
        self.staging_root = ensure_directory(Path(self.config.paths.staging_dir))
        self.limits = BatchLimits.from_config(self.config)
        self.render_settings = RenderSettings.from_config(self.config)
        self.history_limit = int(self.config.history.limit)
        self._store = job_store
        self._storage = storage
        self._materials = materials
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or int(self.config.executor.max_workers),
            thread_name_prefix="conversion",
        )
        self._futures: Dict[str, Future] = {}
        self._lock = Lock()

    def new_staging_area(self) -> StagedBatch:
        """Create an empty staging area owned by the caller until submit()."""
        return StagedBatch(self.staging_root)

    # Scheduling

    def submit(self, request: ConversionRequest) -> JobSummary:
        """
        Admit a batch and start its conversion in the background.

        This method:
        1. Validates the staged batch (AdmissionError is the only error a
           submitter ever sees)
        2. Persists a pending job record
        3. Hands the record and the staging area to the thread pool
        4. Returns without waiting for the conversion

        Args:
            request: Owner, staged images, target format and class code

        Returns:
            JobSummary of the pending job

        Raises:
            AdmissionError: If the batch is rejected; no job record exists then

        Note:
            Ownership of request.batch passes to the job manager in every
            case: it is released here on rejection and by the executor
            otherwise.
        """
        staged = request.batch
        try:
            admitted = validate_batch(staged.input_items(), request.target_format, request.destination, self.limits)
        except AdmissionError as exc:
            logger.info(f"Rejected conversion request from {request.owner.owner_id}: {exc}")
            staged.release()
            raise

        now = utcnow()
        record = JobRecord(
            id=uuid4().hex,
            owner=request.owner.owner_id,
            owner_name=request.owner.display_name or request.owner.owner_id,
            input_items=list(admitted.items),
            target_format=admitted.target_format,
            destination=admitted.destination,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            metadata=JobMetadata(image_count=len(admitted.items), quality=self.render_settings.quality),
        )
        record.events.append(JobEvent(timestamp=now, message="Job registered and awaiting execution."))

        try:
            self._store.create_job(record)
        except Exception:
            staged.release()
            raise

        # Snapshot before the hand-off; afterwards the record belongs to the executor
        summary = record.to_summary()

        try:
            future = self._executor.submit(self._run_job, record, staged)
        except RuntimeError:
            logger.error(f"Executor unavailable, conversion {record.id} stays pending")
            staged.release()
            raise

        with self._lock:
            self._futures[record.id] = future
        future.add_done_callback(partial(self._on_job_done, record.id))

        logger.info(
            f"Conversion {record.id} admitted: {len(record.input_items)} image(s) -> "
            f"{record.target_format.value} for {record.destination}"
        )
        return summary

    def _on_job_done(self, job_id: str, future: Future) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
        if future.cancelled():
            logger.warning(f"Conversion {job_id} was cancelled before it started")
            return
        exc = future.exception()
        if exc is not None:
            logger.error(f"Conversion {job_id} ended without a terminal status: {exc!r}")

    # Execution

    def _run_job(self, record: JobRecord, staged: StagedBatch) -> None:
        """
        Execute one conversion job (runs in a background thread).

        Staged images are released on every exit path, before the terminal
        status is written. Failures of any step are recorded on the job and
        never re-raised; nothing is retried.

        Args:
            record: The job record, now exclusively owned by this call
            staged: The job's staging area, now exclusively owned by this call
        """
        processing = False
        artifact: Optional[ResultArtifact] = None
        failure: Optional[str] = None
        try:
            self._advance(record, record.mark_processing)
            processing = True
            logger.info(f"Conversion {record.id} started")
            artifact = self._execute(record, staged)
        except JobFailure as exc:
            failure = exc.detail
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error in conversion {record.id}")
            failure = str(exc) or exc.__class__.__name__
        finally:
            staged.release()

        if not processing:
            logger.error(f"Conversion {record.id} could not start: {failure}")
            return

        if artifact is not None:
            self._advance(record, partial(record.mark_completed, artifact))
            logger.info(f"Conversion {record.id} completed in {record.processing_duration_ms} ms: {artifact.url}")
        else:
            self._advance(record, partial(record.mark_failed, failure or ""))
            logger.warning(f"Conversion {record.id} failed: {record.error_detail}")

    def _advance(self, record: JobRecord, change: Callable[[], None]) -> None:
        """Apply an in-memory transition and persist it with a status check."""
        expected = record.status
        change()
        if not self._store.save_transition(record, expected):
            raise InvalidTransitionError(
                f"Job {record.id} is no longer {expected.value} in the job store"
            )

    def _execute(self, record: JobRecord, staged: StagedBatch) -> ResultArtifact:
        """
        Render, upload and register the document for one job.

        Raises:
            RenderError: If no image could be rendered
            EmptyOutputError: If the renderer produced no bytes
            UpstreamError: If storage or the materials registry fails
        """
        converter = get_converter(record.target_format, self.render_settings)
        rendered = converter.render(staged.images, title=f"Converted images for {record.destination}")
        if not rendered.content:
            raise EmptyOutputError()

        byte_size = len(rendered.content)
        record.metadata.page_count = rendered.unit_count
        record.metadata.placeholder_count = len(rendered.placeholder_indices)
        record.metadata.file_size = format_file_size(byte_size)
        if rendered.placeholder_indices:
            logger.warning(
                f"Conversion {record.id}: placeholder used for image(s) {rendered.placeholder_indices}"
            )

        suggested_name = f"converted_{int(time.time() * 1000)}.{rendered.extension}"
        stored = self._call_upstream(self._storage.put, rendered.content, suggested_name, rendered.mime_type)
        # The rendered buffer is not needed past the upload
        del rendered

        artifact = ResultArtifact(
            name=stored.name,
            original_name=f"images_converted.{converter.extension}",
            url=stored.url,
            byte_size=byte_size,
            mime_type=converter.mime_type,
            storage_id=stored.storage_id,
        )
        descriptor = ArtifactDescriptor(
            name=artifact.name,
            original_name=artifact.original_name,
            url=artifact.url,
            byte_size=artifact.byte_size,
            mime_type=artifact.mime_type,
            storage_id=artifact.storage_id,
            conversion_id=record.id,
        )
        owner = Identity(owner_id=record.owner, display_name=record.owner_name)
        artifact.material_id = self._call_upstream(self._materials.register, descriptor, record.destination, owner)
        return artifact

    @staticmethod
    def _call_upstream(operation: Callable[..., T], *args: Any) -> T:
        """Run a collaborator call, turning any failure into UpstreamError."""
        try:
            return operation(*args)
        except UpstreamError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise UpstreamError(str(exc) or exc.__class__.__name__) from exc

    # Status reporting

    def _load_visible(self, job_id: str, identity: Identity) -> JobRecord:
        record = self._store.get_job(job_id)
        if record is None or not (identity.is_admin or record.owner == identity.owner_id):
            raise JobNotFoundError(f"Conversion {job_id} not found")
        return record

    def get_status(self, job_id: str, identity: Identity) -> JobStatusView:
        """
        Get the current status of a job.

        Read-only; repeated calls without job-side progress return equal
        snapshots.

        Raises:
            JobNotFoundError: If the job does not exist or belongs to another
                owner (admins can see every job)
        """
        return self._load_visible(job_id, identity).to_status_view()

    def get_job(self, job_id: str, identity: Identity) -> JobDetail:
        """Get detailed information about a job, with the same visibility rules as get_status."""
        return self._load_visible(job_id, identity).to_detail()

    def list_history(self, identity: Identity, limit: Optional[int] = None) -> List[JobSummary]:
        """
        Get the caller's conversions, newest first.

        Args:
            identity: The caller
            limit: Maximum entries (default: history.limit from configuration)
        """
        records = self._store.list_jobs_for_owner(identity.owner_id, limit or self.history_limit)
        return [record.to_summary() for record in records]

    # Trial conversion

    def trial_convert(self, staged: StagedBatch) -> TrialResult:
        """
        Convert a single image to PDF synchronously, without creating a job.

        The staging area is released before returning. Nothing is uploaded or
        registered.

        Raises:
            AdmissionError: If the batch is not exactly one acceptable image
            RenderError: If the image cannot be rendered
        """
        with staged:
            if len(staged) != 1:
                raise AdmissionError("Exactly one image is required for a test conversion")
            validate_batch(staged.input_items(), TargetFormat.PDF, "TEST", self.limits)
            original_size = staged.images[0].byte_size
            result = PdfConverter(self.render_settings).render(staged.images, title="Test conversion")
        return TrialResult(original_size=original_size, converted_size=len(result.content))

    # Detached job bookkeeping

    def active_job_ids(self) -> List[str]:
        """Ids of jobs whose background execution has not finished yet."""
        with self._lock:
            return [job_id for job_id, future in self._futures.items() if not future.done()]

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """
        Block until a job's background execution has finished.

        Returns:
            True if the job is no longer running (or was never tracked),
            False if the timeout elapsed first
        """
        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            return True
        done, _ = wait([future], timeout=timeout)
        return bool(done)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for running conversions."""
        self._executor.shutdown(wait=wait)
