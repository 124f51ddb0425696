"""Port for the tabular file decoder."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from tallyman.domain.model import FileType

PREVIEW_ROWS = 20

type Row = Mapping[str, object]


@dataclass(frozen=True, slots=True)
class DecodedTable:
    rows: Sequence[Row]
    columns: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class TablePreview:
    rows: Sequence[Row]
    total_rows: int
    columns: tuple[str, ...]


@runtime_checkable
class TabularDecoder(Protocol):
    def decode(self, path: Path, file_type: FileType) -> DecodedTable: ...

    def preview(
        self, path: Path, file_type: FileType, limit: int = PREVIEW_ROWS
    ) -> TablePreview: ...
