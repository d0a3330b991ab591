"""
Collaborator interfaces used by the job manager.

The job manager only talks to persistence, object storage and the class
materials registry through these protocols, so HTTP handlers, tests and
alternative deployments can plug in their own implementations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Protocol

from .models import JobStatus, Role

if TYPE_CHECKING:
    from .job_manager import JobRecord


@dataclass(frozen=True)
class Identity:
    """Already-authenticated caller as resolved from an API key."""

    owner_id: str
    display_name: str
    role: Role = Role.EDUCATOR

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class StoredObject:
    name: str
    url: str
    storage_id: str


@dataclass(frozen=True)
class ArtifactDescriptor:
    name: str
    original_name: str
    url: str
    byte_size: int
    mime_type: str
    storage_id: str
    conversion_id: str


class JobStore(Protocol):
    def create_job(self, record: "JobRecord") -> None:
        ...

    def get_job(self, job_id: str) -> Optional["JobRecord"]:
        ...

    def list_jobs_for_owner(self, owner: Optional[str], limit: int) -> List["JobRecord"]:
        ...

    def save_transition(self, record: "JobRecord", expected_status: JobStatus) -> bool:
        ...


class StorageGateway(Protocol):
    def put(self, data: bytes, suggested_name: str, content_type: Optional[str] = None) -> StoredObject:
        """Durably store the bytes; raises UpstreamError on failure."""
        ...


class MaterialsGateway(Protocol):
    def register(self, artifact: ArtifactDescriptor, destination: str, owner: Identity) -> str:
        """Share the artifact with the destination class; returns the record id."""
        ...
