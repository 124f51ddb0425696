"""Domain exceptions.

Row-level and per-record reconciliation failures are accumulated as values and
never surface through these types; everything here propagates to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID


class TallymanError(RuntimeError):
    """Base class for domain errors."""


class RuleStoreUnavailable(TallymanError):
    """Raised when matching rules cannot be loaded and no snapshot exists."""


class RuleNotFound(TallymanError):
    def __init__(self, rule_id: UUID) -> None:
        super().__init__(f"Matching rule not found: {rule_id}")
        self.rule_id = rule_id


class DuplicateRuleName(TallymanError):
    def __init__(self, name: str) -> None:
        super().__init__(f"A matching rule named {name!r} already exists")
        self.name = name


class JobNotFound(TallymanError):
    def __init__(self, job_id: UUID) -> None:
        super().__init__(f"Upload job not found: {job_id}")
        self.job_id = job_id


class RecordNotFound(TallymanError):
    def __init__(self, record_id: UUID) -> None:
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id


class InvalidJobState(TallymanError):
    """Raised when a job lifecycle operation is not allowed in the current state."""


class ArtifactMissing(TallymanError):
    """Raised when the uploaded file of a job is no longer available."""


class InvalidColumnMapping(TallymanError):
    """Raised when a column mapping lacks required logical fields."""


class InvalidCorrection(TallymanError):
    """Raised when a manual correction carries no usable or invalid fields."""


class AuditLogImmutableError(TallymanError):
    """Raised on any attempt to modify or delete an existing audit entry."""


class UnsupportedFileType(TallymanError):
    def __init__(self, file_name: str) -> None:
        super().__init__(f"Only CSV and Excel files are supported: {file_name}")
        self.file_name = file_name


class UnreadableFile(TallymanError):
    """Raised when an uploaded file cannot be decoded into rows."""
