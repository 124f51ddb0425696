"""Defaults for ingestion and reconciliation runs."""

from __future__ import annotations

from dataclasses import dataclass

from .env import env_int

DEFAULT_RULE_CACHE_TTL_SECONDS = 300
DEFAULT_INGEST_BATCH_SIZE = 1000
DEFAULT_PREVIEW_ROWS = 20


@dataclass(frozen=True, slots=True)
class ReconciliationConfig:
    rule_cache_ttl_seconds: int = DEFAULT_RULE_CACHE_TTL_SECONDS
    ingest_batch_size: int = DEFAULT_INGEST_BATCH_SIZE
    preview_rows: int = DEFAULT_PREVIEW_ROWS


def get_reconciliation_config() -> ReconciliationConfig:
    return ReconciliationConfig(
        rule_cache_ttl_seconds=env_int(
            "TALLYMAN_RULE_CACHE_TTL_SECONDS", DEFAULT_RULE_CACHE_TTL_SECONDS
        ),
        ingest_batch_size=env_int(
            "TALLYMAN_INGEST_BATCH_SIZE", DEFAULT_INGEST_BATCH_SIZE, minimum=1
        ),
        preview_rows=env_int("TALLYMAN_PREVIEW_ROWS", DEFAULT_PREVIEW_ROWS, minimum=1),
    )
