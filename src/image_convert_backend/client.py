"""
Minimal HTTP client for submitting conversions and polling their status.

Polling is bounded: wait() gives up after max_attempts and reports that the
conversion is taking longer than expected. Giving up is not a job failure;
the job keeps running server-side and can be polled again later.
"""

from __future__ import annotations

import logging
import mimetypes
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

import httpx

from .errors import AdmissionError, JobNotFoundError
from .models import JobStatus

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Conversion is taking longer than expected"

UploadTuple = Tuple[str, bytes, str]


@dataclass
class PollResult:
    job_id: str
    status: JobStatus
    attempts: int
    snapshot: Dict[str, Any] = field(default_factory=dict)
    timed_out: bool = False
    message: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status.is_terminal

    @property
    def result_url(self) -> Optional[str]:
        artifact = self.snapshot.get("result_artifact") or {}
        return artifact.get("url")


class ConversionClient:
    """
    Talks to the conversion API with an educator's API key.

    Args:
        base_url: API root, e.g. "http://localhost:8000"
        api_key: Value sent in the X-API-Key header
        http: Pre-built httpx.Client (e.g. a FastAPI TestClient); its base URL
            is used as-is
        timeout: Request timeout in seconds for the client built here
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: str = "",
        http: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        self._owns_http = http is None
        self._http = http if http is not None else httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {"X-API-Key": api_key}

    def close(self) -> None:
        """Close the HTTP client if it was built here; injected clients stay open."""
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "ConversionClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def submit(self, images: Sequence[UploadTuple], target_format: str, class_code: str) -> str:
        """
        Submit a batch of (filename, bytes, mime_type) images.

        Returns:
            The new job id

        Raises:
            AdmissionError: If the server rejected the batch
            httpx.HTTPStatusError: For any other unsuccessful response
        """
        files = [("images", (name, data, mime_type)) for name, data, mime_type in images]
        response = self._http.post(
            "/conversions",
            files=files,
            data={"target_format": target_format, "class_code": class_code},
            headers=self._headers,
        )
        if response.status_code == 400:
            raise AdmissionError(response.json().get("detail", "Conversion rejected"))
        response.raise_for_status()
        job_id = response.json()["id"]
        logger.info(f"Submitted {len(files)} image(s) as conversion {job_id}")
        return job_id

    def submit_files(self, paths: Iterable[Path], target_format: str, class_code: str) -> str:
        """Read image files from disk and submit them in the given order."""
        images = []
        for path in map(Path, paths):
            mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            images.append((path.name, path.read_bytes(), mime_type))
        return self.submit(images, target_format, class_code)

    def get_status(self, job_id: str) -> Dict[str, Any]:
        response = self._http.get(f"/conversions/{job_id}/status", headers=self._headers)
        if response.status_code == 404:
            raise JobNotFoundError(f"Conversion {job_id} not found")
        response.raise_for_status()
        return response.json()

    def wait(
        self,
        job_id: str,
        interval: float = 2.0,
        max_attempts: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> PollResult:
        """
        Poll a job until it reaches a terminal status or attempts run out.

        Args:
            job_id: Conversion to poll
            interval: Seconds between polls
            max_attempts: Upper bound on status requests
            sleep: Sleep function, replaceable in tests
        """
        snapshot: Dict[str, Any] = {}
        status = JobStatus.PENDING
        for attempt in range(1, max_attempts + 1):
            snapshot = self.get_status(job_id)
            status = JobStatus(snapshot["status"])
            if status.is_terminal:
                message = snapshot.get("error_detail") if status == JobStatus.FAILED else None
                return PollResult(job_id=job_id, status=status, attempts=attempt, snapshot=snapshot, message=message)
            if attempt < max_attempts:
                sleep(interval)

        logger.warning(f"Conversion {job_id} still {status.value} after {max_attempts} polls")
        return PollResult(
            job_id=job_id,
            status=status,
            attempts=max_attempts,
            snapshot=snapshot,
            timed_out=True,
            message=TIMEOUT_MESSAGE,
        )
