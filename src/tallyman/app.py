"""Application orchestration entry points.

``build_app`` wires the domain services to the configured adapters; the
resulting :class:`TallymanApp` is the surface used by the CLI and by any
other collaborator (HTTP layer, scheduler, tests).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from logging import getLogger
from typing import TYPE_CHECKING

from tallyman.adapters.artifacts import LocalArtifactStore
from tallyman.adapters.celery_queue import CeleryQueue
from tallyman.adapters.csv_decoder import CsvTabularDecoder
from tallyman.adapters.rules import draft_from_definition
from tallyman.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork, is_started, startup
from tallyman.config import (
    get_queue_config,
    get_reconciliation_config,
    get_storage_config,
)
from tallyman.domain.audit_ledger import AuditLedger
from tallyman.domain.corrections import CorrectionService
from tallyman.domain.ingest_pipeline import IngestionPipeline, ReconciliationRunner
from tallyman.domain.jobs import JobOrchestrator, file_type_for
from tallyman.domain.model import ColumnMapping
from tallyman.domain.ports import QueueName
from tallyman.domain.queries import ReconciliationQueries
from tallyman.domain.reconciliation import ReconciliationEngine, RuleCache
from tallyman.domain.rules import RuleChanges, RuleService

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from pathlib import Path
    from uuid import UUID

    from tallyman.adapters.rules import RuleDefinition
    from tallyman.config import QueueConfig, ReconciliationConfig, StorageConfig
    from tallyman.domain.jobs import JobStatusView, Submission
    from tallyman.domain.model import (
        AuditEntityType,
        AuditLog,
        MatchingRule,
        ReconciliationResult,
        Record,
        RequestOrigin,
        RuleType,
        UploadJob,
    )
    from tallyman.domain.ports import (
        ArtifactStore,
        AuditFilter,
        JobFilter,
        Page,
        PageRequest,
        ResultFilter,
        TablePreview,
        TabularDecoder,
        UnitOfWorkFactory,
    )
    from tallyman.domain.queries import ReconciliationSummary, UploadStatistics
    from tallyman.domain.rules import RuleDraft

log = getLogger(__name__)


@dataclass(slots=True)
class TallymanApp:
    unit_of_work_factory: UnitOfWorkFactory
    decoder: TabularDecoder
    artifacts: ArtifactStore
    queue: CeleryQueue
    rule_cache: RuleCache
    engine: ReconciliationEngine
    orchestrator: JobOrchestrator
    pipeline: IngestionPipeline
    reconciliation_runner: ReconciliationRunner
    rules: RuleService
    corrections: CorrectionService
    queries: ReconciliationQueries
    preview_rows: int

    # uploads -----------------------------------------------------------

    def preview_upload(self, path: Path, *, limit: int | None = None) -> TablePreview:
        """First rows of a file so the caller can build a column mapping."""

        return self.decoder.preview(path, file_type_for(path.name), limit or self.preview_rows)

    def submit_upload(
        self,
        content: bytes,
        file_name: str,
        mapping: ColumnMapping | Mapping[str, str],
        actor_id: str,
        *,
        origin: RequestOrigin | None = None,
    ) -> Submission:
        column_mapping = (
            mapping if isinstance(mapping, ColumnMapping) else ColumnMapping.from_dict(mapping)
        )
        return self.orchestrator.submit(content, file_name, column_mapping, actor_id, origin=origin)

    def get_job_status(self, job_id: UUID) -> JobStatusView:
        return self.orchestrator.status(job_id)

    def list_jobs(
        self, job_filter: JobFilter | None = None, page: PageRequest | None = None
    ) -> Page[UploadJob]:
        return self.queries.list_jobs(job_filter, page)

    def upload_statistics(self, job_filter: JobFilter | None = None) -> UploadStatistics:
        return self.queries.upload_statistics(job_filter)

    def retry_upload(
        self, job_id: UUID, actor_id: str, *, origin: RequestOrigin | None = None
    ) -> UploadJob:
        return self.orchestrator.retry(job_id, actor_id, origin=origin)

    def reprocess_upload(self, job_id: UUID, actor_id: str) -> str:
        """Queue a re-classification of the job's records; returns the queue handle."""

        return self.orchestrator.request_reconciliation(job_id, actor_id)

    # results and audit -------------------------------------------------

    def list_results(
        self, result_filter: ResultFilter | None = None, page: PageRequest | None = None
    ) -> Page[ReconciliationResult]:
        return self.queries.list_results(result_filter, page)

    def reconciliation_summary(
        self, result_filter: ResultFilter | None = None
    ) -> ReconciliationSummary:
        return self.queries.reconciliation_summary(result_filter)

    def get_audit_timeline(
        self, *, record_id: UUID | None = None, job_id: UUID | None = None
    ) -> list[AuditLog]:
        with self.unit_of_work_factory() as uow:
            return AuditLedger(uow.repositories.audit_logs).timeline(
                record_id=record_id, job_id=job_id
            )

    def search_audit_logs(
        self, audit_filter: AuditFilter | None = None, page: PageRequest | None = None
    ) -> Page[AuditLog]:
        with self.unit_of_work_factory() as uow:
            return AuditLedger(uow.repositories.audit_logs).search(audit_filter, page)

    def record_unauthorized_attempt(
        self,
        *,
        actor_id: str,
        entity_type: AuditEntityType,
        attempted: str,
        record_id: UUID | None = None,
        job_id: UUID | None = None,
        origin: RequestOrigin | None = None,
    ) -> AuditLog:
        with self.unit_of_work_factory() as uow:
            entry = AuditLedger(uow.repositories.audit_logs).record_unauthorized_attempt(
                actor_id=actor_id,
                entity_type=entity_type,
                attempted=attempted,
                record_id=record_id,
                job_id=job_id,
                origin=origin,
            )
            uow.commit()
        return entry

    def manual_correction(
        self,
        record_id: UUID,
        fields: Mapping[str, object],
        actor_id: str,
        *,
        origin: RequestOrigin | None = None,
    ) -> Record:
        return self.corrections.correct(record_id, fields, actor_id, origin=origin)

    # rules -------------------------------------------------------------

    def create_rule(self, draft: RuleDraft, *, actor_id: str) -> MatchingRule:
        return self.rules.create(draft, actor_id=actor_id)

    def update_rule(self, rule_id: UUID, changes: RuleChanges, *, actor_id: str) -> MatchingRule:
        return self.rules.update(rule_id, changes, actor_id=actor_id)

    def delete_rule(self, rule_id: UUID) -> None:
        self.rules.delete(rule_id)

    def toggle_rule(self, rule_id: UUID, *, actor_id: str) -> MatchingRule:
        return self.rules.toggle(rule_id, actor_id=actor_id)

    def reorder_rules(self, priorities: Mapping[UUID, int], *, actor_id: str) -> list[MatchingRule]:
        return self.rules.reorder(priorities, actor_id=actor_id)

    def get_rule(self, rule_id: UUID) -> MatchingRule:
        return self.rules.get(rule_id)

    def list_rules(
        self, *, enabled: bool | None = None, rule_type: RuleType | None = None
    ) -> list[MatchingRule]:
        return self.rules.list_rules(enabled=enabled, rule_type=rule_type)

    def seed_default_rules(self, *, actor_id: str | None = None) -> int:
        return self.rules.seed_default_rules(actor_id=actor_id)

    def import_rules(
        self, definitions: Iterable[RuleDefinition], *, actor_id: str
    ) -> list[MatchingRule]:
        """Create each rule, or update the existing rule carrying the same name."""

        existing = {rule.name: rule for rule in self.rules.list_rules()}
        imported: list[MatchingRule] = []
        for definition in definitions:
            draft = draft_from_definition(definition)
            current = existing.get(draft.name)
            if current is None:
                imported.append(self.rules.create(draft, actor_id=actor_id))
                continue
            changes = RuleChanges(
                config=draft.config,
                priority=draft.priority,
                enabled=draft.enabled,
                description=draft.description,
            )
            imported.append(self.rules.update(current.id, changes, actor_id=actor_id))
        return imported

    # worker ------------------------------------------------------------

    def run_worker(self) -> None:
        """Re-enqueue jobs a stopped worker left unfinished, then consume the queues.

        Without a broker the re-enqueued jobs run right away and the call returns.
        """

        resumed = self.orchestrator.requeue_unfinished()
        log.info("Worker started, %d unfinished jobs resumed", resumed)
        self.queue.run_worker()


def build_app(
    *,
    unit_of_work_factory: UnitOfWorkFactory | None = None,
    decoder: TabularDecoder | None = None,
    artifacts: ArtifactStore | None = None,
    queue: CeleryQueue | None = None,
    storage: StorageConfig | None = None,
    reconciliation: ReconciliationConfig | None = None,
    queue_config: QueueConfig | None = None,
) -> TallymanApp:
    """Assemble the application from configuration and optional adapter overrides."""

    reconciliation = reconciliation or get_reconciliation_config()
    queue_config = queue_config or get_queue_config()

    if unit_of_work_factory is None:
        if not is_started():
            startup()
        unit_of_work_factory = SqlAlchemyUnitOfWork
    if artifacts is None:
        storage = storage or get_storage_config()
        artifacts = LocalArtifactStore(storage.uploads_path())
    decoder = decoder or CsvTabularDecoder()
    queue = queue or CeleryQueue.from_config(queue_config)

    uow_factory = unit_of_work_factory

    def load_rules() -> list[MatchingRule]:
        with uow_factory() as uow:
            return uow.repositories.rules.list_rules(enabled_only=True)

    rule_cache = RuleCache(
        load_rules, ttl=timedelta(seconds=reconciliation.rule_cache_ttl_seconds)
    )
    engine = ReconciliationEngine(rule_cache)
    pipeline = IngestionPipeline(
        unit_of_work_factory=uow_factory,
        decoder=decoder,
        artifacts=artifacts,
        engine=engine,
        batch_size=reconciliation.ingest_batch_size,
    )
    runner = ReconciliationRunner(unit_of_work_factory=uow_factory, engine=engine)
    queue.register(QueueName.FILE_PROCESSING, pipeline, on_exhausted=pipeline.give_up)
    queue.register(QueueName.RECONCILIATION, runner)

    orchestrator = JobOrchestrator(
        unit_of_work_factory=uow_factory,
        artifacts=artifacts,
        queue=queue,
        ingestion_options=queue_config.ingestion,
        reconciliation_options=queue_config.reconciliation,
    )
    log.debug("Application assembled (eager queue: %s)", queue.eager)
    return TallymanApp(
        unit_of_work_factory=uow_factory,
        decoder=decoder,
        artifacts=artifacts,
        queue=queue,
        rule_cache=rule_cache,
        engine=engine,
        orchestrator=orchestrator,
        pipeline=pipeline,
        reconciliation_runner=runner,
        rules=RuleService(uow_factory, rule_cache),
        corrections=CorrectionService(uow_factory),
        queries=ReconciliationQueries(uow_factory),
        preview_rows=reconciliation.preview_rows,
    )
