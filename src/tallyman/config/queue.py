"""Queue transport defaults for ingestion and reconciliation jobs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from tallyman.domain.ports.queue import Backoff, BackoffKind, EnqueueOptions

from .env import env_int

DEFAULT_WORKERS = 2
DEFAULT_RESULT_BACKEND = "cache+memory://"
DEFAULT_RESULT_TTL_SECONDS = 24 * 60 * 60


def _ingestion_options() -> EnqueueOptions:
    return EnqueueOptions(
        attempts=3,
        backoff=Backoff(kind=BackoffKind.EXPONENTIAL, delay_seconds=5.0),
    )


def _reconciliation_options() -> EnqueueOptions:
    return EnqueueOptions(
        attempts=2,
        backoff=Backoff(kind=BackoffKind.FIXED, delay_seconds=3.0),
    )


@dataclass(frozen=True, slots=True)
class QueueConfig:
    """Celery connection settings and per-queue delivery options.

    Without a ``broker_url`` jobs run eagerly in the process that enqueues
    them. A broker moves them to ``tallyman worker`` processes, which then
    also need a shared ``result_backend`` such as Redis for job states.
    """

    ingestion: EnqueueOptions = field(default_factory=_ingestion_options)
    reconciliation: EnqueueOptions = field(default_factory=_reconciliation_options)
    workers: int = DEFAULT_WORKERS
    broker_url: str | None = None
    result_backend: str = DEFAULT_RESULT_BACKEND
    result_ttl_seconds: int = DEFAULT_RESULT_TTL_SECONDS

    @property
    def eager(self) -> bool:
        return self.broker_url is None


def _default_result_backend(broker_url: str | None) -> str:
    # a Redis broker doubles as the result store unless one is configured
    if broker_url is not None and broker_url.startswith(("redis://", "rediss://")):
        return broker_url
    return DEFAULT_RESULT_BACKEND


def get_queue_config() -> QueueConfig:
    broker_url = os.getenv("TALLYMAN_BROKER_URL") or None
    return QueueConfig(
        workers=env_int("TALLYMAN_WORKERS", DEFAULT_WORKERS, minimum=1),
        broker_url=broker_url,
        result_backend=os.getenv("TALLYMAN_RESULT_BACKEND")
        or _default_result_backend(broker_url),
        result_ttl_seconds=env_int(
            "TALLYMAN_RESULT_TTL_SECONDS", DEFAULT_RESULT_TTL_SECONDS, minimum=1
        ),
    )
