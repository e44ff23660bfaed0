from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"


class TrackerState(str, Enum):
    POLLING = "polling"
    BACKOFF = "backoff"
    DONE = "done"


@dataclass(slots=True)
class JobRecord:
    job_id: str
    shot_id: str | None
    title: str | None
    operation_name: str
    status: JobStatus
    created_at: str
    file_path: str | None = None


@dataclass(slots=True, frozen=True)
class QueueEntry:
    entry_id: str
    title: str
    prompt: str


@dataclass(slots=True, frozen=True)
class EnqueueReceipt:
    position: int
    queue_length: int


@dataclass(slots=True, frozen=True)
class SubmissionReceipt:
    job_id: str
    title: str
    operation_name: str


@dataclass(slots=True)
class PauseState:
    is_paused: bool = False
    paused_until: datetime | None = None


@dataclass(slots=True, frozen=True)
class QueueStatus:
    length: int
    is_processing: bool
    is_paused: bool
    paused_until: datetime | None
    head_preview: QueueEntry | None
    is_running: bool


@dataclass(slots=True)
class RetryState:
    retry_count: int = 0
    next_attempt_at: float | None = None


@dataclass(slots=True, frozen=True)
class OperationStatus:
    done: bool
    artifact_ref: str | None = None


@dataclass(slots=True, frozen=True)
class PollerStatus:
    is_active: bool
    tracked_jobs: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class RemoteVideo:
    name: str
    mime_type: str

    @property
    def file_id(self) -> str:
        return self.name.split("/", 1)[-1]

    @property
    def extension(self) -> str:
        return ".mp4" if self.mime_type == "video/mp4" else ".bin"
