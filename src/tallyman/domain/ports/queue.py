"""Port for the job-queue transport that drives background processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime
    from uuid import UUID


class QueueName(StrEnum):
    FILE_PROCESSING = "file-processing"
    RECONCILIATION = "reconciliation"


class BackoffKind(StrEnum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class QueueJobState(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Backoff:
    kind: BackoffKind = BackoffKind.EXPONENTIAL
    delay_seconds: float = 5.0

    def delay_for(self, failed_attempts: int) -> float:
        """Delay before the next attempt after ``failed_attempts`` failures."""

        if failed_attempts < 1:
            return 0.0
        if self.kind is BackoffKind.EXPONENTIAL:
            return self.delay_seconds * 2 ** (failed_attempts - 1)
        return self.delay_seconds


@dataclass(frozen=True, slots=True)
class EnqueueOptions:
    attempts: int = 1
    backoff: Backoff = field(default_factory=Backoff)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")


@dataclass(frozen=True, slots=True)
class QueueJobStatus:
    """Transport-side view of one queued job."""

    handle: str
    state: QueueJobState
    progress: int = 0
    failed_reason: str | None = None
    finished_at: datetime | None = None


type QueuePayload = Mapping[str, object]
type ProgressReporter = Callable[[int], None]


@runtime_checkable
class QueueTransport(Protocol):
    """At-least-once delivery with bounded retries and progress reporting."""

    def enqueue(
        self,
        queue: QueueName,
        job_id: UUID,
        payload: QueuePayload,
        options: EnqueueOptions,
        *,
        handle: str | None = None,
    ) -> str:
        """Schedule work and return the transport handle.

        A caller-chosen ``handle`` that is still known to the transport is not
        scheduled twice.
        """
        ...

    def get_job(self, handle: str) -> QueueJobStatus | None: ...


@runtime_checkable
class QueueProcessor(Protocol):
    """Callable run by a worker for one delivery of a queued job."""

    def __call__(
        self, job_id: UUID, payload: QueuePayload, report_progress: ProgressReporter
    ) -> None: ...


type RetriesExhausted = Callable[[UUID, QueuePayload, BaseException], None]
