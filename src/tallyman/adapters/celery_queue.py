"""Celery transport for ingestion and reconciliation jobs.

Each queue is served by one bound task. A delivery that raises is retried
after the job's backoff until its attempts are used up; the last failure is
handed to the queue's ``on_exhausted`` hook before the task is marked failed.

Without a broker the Celery app runs eagerly: a job, retries included, is
executed by the process that enqueues it and its states still land in the
result backend.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from celery import Celery, states
from celery.result import AsyncResult

from tallyman.domain.ports import Backoff, BackoffKind, QueueJobState, QueueJobStatus

if TYPE_CHECKING:
    from celery import Task

    from tallyman.config import QueueConfig
    from tallyman.domain.ports import (
        EnqueueOptions,
        QueueName,
        QueuePayload,
        QueueProcessor,
        RetriesExhausted,
    )

log = logging.getLogger(__name__)

# custom task states written by this transport
QUEUED = "QUEUED"
PROGRESS = "PROGRESS"

_JOB_STATES: dict[str, QueueJobState] = {
    QUEUED: QueueJobState.WAITING,
    states.RECEIVED: QueueJobState.WAITING,
    states.STARTED: QueueJobState.ACTIVE,
    PROGRESS: QueueJobState.ACTIVE,
    states.RETRY: QueueJobState.DELAYED,
    states.SUCCESS: QueueJobState.COMPLETED,
    states.FAILURE: QueueJobState.FAILED,
    states.REVOKED: QueueJobState.FAILED,
}

_SCHEDULED_STATES = frozenset({QUEUED, states.RECEIVED, states.STARTED, PROGRESS, states.RETRY})


def create_celery_app(config: QueueConfig) -> Celery:
    app = Celery(
        "tallyman",
        # eager apps still open producers; keep them in-process
        broker=config.broker_url or "memory://",
        backend=config.result_backend,
        set_as_current=False,
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=config.workers,
        result_expires=config.result_ttl_seconds,
        task_always_eager=config.eager,
        task_eager_propagates=False,
        task_store_eager_result=True,
    )
    return app


def _bounded(progress: int) -> int:
    return max(0, min(100, int(progress)))


def _as_datetime(value: object) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class CeleryQueue:
    """Queue transport that runs each registered processor as a Celery task."""

    def __init__(self, celery: Celery) -> None:
        self._celery = celery
        self._tasks: dict[QueueName, Task] = {}

    @classmethod
    def from_config(cls, config: QueueConfig) -> CeleryQueue:
        return cls(create_celery_app(config))

    @property
    def celery(self) -> Celery:
        return self._celery

    @property
    def eager(self) -> bool:
        return bool(self._celery.conf.task_always_eager)

    def register(
        self,
        queue: QueueName,
        processor: QueueProcessor,
        *,
        on_exhausted: RetriesExhausted | None = None,
    ) -> None:
        """Serve ``queue`` with ``processor``.

        ``on_exhausted`` runs once a delivery has failed on its last attempt,
        before the task is marked failed.
        """

        def deliver(
            task: Task,
            job_id: str,
            payload: dict[str, object],
            attempts: int,
            backoff_kind: str,
            backoff_delay: float,
        ) -> None:
            def report_progress(progress: int) -> None:
                task.update_state(state=PROGRESS, meta={"progress": _bounded(progress)})

            try:
                processor(UUID(job_id), payload, report_progress)
            except Exception as exc:
                failed = task.request.retries + 1
                if failed >= attempts:
                    log.error(
                        "Queue job %s failed after %d attempts: %s", task.request.id, failed, exc
                    )
                    if on_exhausted is not None:
                        on_exhausted(UUID(job_id), payload, exc)
                    raise
                delay = Backoff(BackoffKind(backoff_kind), backoff_delay).delay_for(failed)
                log.warning(
                    "Queue job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    task.request.id,
                    failed,
                    attempts,
                    delay,
                    exc,
                )
                raise task.retry(exc=exc, countdown=delay, max_retries=attempts - 1) from exc

        self._tasks[queue] = self._celery.task(
            bind=True, name=f"tallyman.{queue.value}", shared=False, lazy=False
        )(deliver)

    # QueueTransport ----------------------------------------------------

    def enqueue(
        self,
        queue: QueueName,
        job_id: UUID,
        payload: QueuePayload,
        options: EnqueueOptions,
        *,
        handle: str | None = None,
    ) -> str:
        task = self._tasks.get(queue)
        if task is None:
            raise LookupError(f"No processor registered for queue {queue.value}")
        resolved = handle or f"{queue.value}-{uuid.uuid4().hex}"
        if AsyncResult(resolved, app=self._celery).state in _SCHEDULED_STATES:
            log.info("Queue job %s already scheduled; not enqueuing again", resolved)
            return resolved

        self._celery.backend.store_result(resolved, {"progress": 0}, QUEUED)
        log.info("Enqueued %s job %s for %s", queue.value, resolved, job_id)
        task.apply_async(
            kwargs={
                "job_id": str(job_id),
                "payload": dict(payload),
                "attempts": options.attempts,
                "backoff_kind": options.backoff.kind.value,
                "backoff_delay": options.backoff.delay_seconds,
            },
            task_id=resolved,
            queue=queue.value,
        )
        return resolved

    def get_job(self, handle: str) -> QueueJobStatus | None:
        result = AsyncResult(handle, app=self._celery)
        state = result.state
        if state == states.PENDING:
            return None
        job_state = _JOB_STATES.get(state, QueueJobState.ACTIVE)
        info = result.info
        progress = 0
        if job_state is QueueJobState.COMPLETED:
            progress = 100
        elif isinstance(info, dict):
            progress = _bounded(info.get("progress", 0))
        return QueueJobStatus(
            handle=handle,
            state=job_state,
            progress=progress,
            failed_reason=str(info) if isinstance(info, BaseException) else None,
            finished_at=_as_datetime(result.date_done) if state in states.READY_STATES else None,
        )

    # Worker ------------------------------------------------------------

    def run_worker(self) -> None:
        """Consume the registered queues until the worker is stopped."""

        if self.eager:
            log.info("No broker configured; jobs run as soon as they are enqueued")
            return
        queues = ",".join(queue.value for queue in self._tasks)
        self._celery.worker_main(
            ["worker", "--pool=threads", f"--queues={queues}", "--loglevel=INFO"]
        )


if TYPE_CHECKING:
    from tallyman.domain.ports import QueueTransport

    _queue_check: QueueTransport = CeleryQueue(Celery())
