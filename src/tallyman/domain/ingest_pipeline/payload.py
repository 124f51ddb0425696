"""Queue payloads exchanged between the job orchestrator and the workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from tallyman.domain.model import ColumnMapping, FileType

if TYPE_CHECKING:
    from tallyman.domain.ports import QueuePayload


@dataclass(frozen=True, slots=True)
class IngestRequest:
    artifact_key: str
    mapping: ColumnMapping
    actor_id: str
    file_type: FileType = FileType.CSV

    def to_payload(self) -> dict[str, object]:
        return {
            "artifact_key": self.artifact_key,
            "mapping": self.mapping.to_dict(),
            "actor_id": self.actor_id,
            "file_type": self.file_type.value,
        }

    @classmethod
    def from_payload(cls, payload: QueuePayload) -> IngestRequest:
        raw_mapping = payload.get("mapping")
        if not isinstance(raw_mapping, dict):
            raise ValueError("Ingestion payload carries no column mapping")
        return cls(
            artifact_key=str(payload["artifact_key"]),
            mapping=ColumnMapping.from_dict(raw_mapping),
            actor_id=str(payload["actor_id"]),
            file_type=FileType(str(payload.get("file_type", FileType.CSV.value))),
        )


@dataclass(frozen=True, slots=True)
class ReconcileRequest:
    actor_id: str

    def to_payload(self) -> dict[str, object]:
        return {"actor_id": self.actor_id}

    @classmethod
    def from_payload(cls, payload: QueuePayload) -> ReconcileRequest:
        return cls(actor_id=str(payload["actor_id"]))
