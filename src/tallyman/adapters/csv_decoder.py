"""Decode uploaded CSV files into rows keyed by header."""

from __future__ import annotations

import csv
import logging
from itertools import islice
from typing import TYPE_CHECKING

from tallyman.domain.errors import UnreadableFile
from tallyman.domain.model import FileType
from tallyman.domain.ports import PREVIEW_ROWS, DecodedTable, TablePreview

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from tallyman.domain.ports import Row

log = logging.getLogger(__name__)

DEFAULT_ENCODING = "utf-8-sig"


class CsvTabularDecoder:
    """Reads comma-separated files with a header row.

    Cells are kept as strings; typing happens during row validation. Cells
    beyond the header width are dropped and short rows leave the missing
    columns as ``None``. Spreadsheets are decoded by a separate collaborator.
    """

    def __init__(self, *, delimiter: str = ",", encoding: str = DEFAULT_ENCODING) -> None:
        self.delimiter = delimiter
        self.encoding = encoding

    def decode(self, path: Path, file_type: FileType) -> DecodedTable:
        self._require_csv(path, file_type)
        with path.open("r", newline="", encoding=self.encoding) as handle:
            reader = csv.DictReader(handle, delimiter=self.delimiter)
            columns = self._columns(reader, path)
            rows = list(self._rows(reader, path))
        log.info("Decoded %d rows from %s", len(rows), path.name)
        return DecodedTable(rows=rows, columns=columns)

    def preview(self, path: Path, file_type: FileType, limit: int = PREVIEW_ROWS) -> TablePreview:
        self._require_csv(path, file_type)
        with path.open("r", newline="", encoding=self.encoding) as handle:
            reader = csv.DictReader(handle, delimiter=self.delimiter)
            columns = self._columns(reader, path)
            rows = self._rows(reader, path)
            head = list(islice(rows, limit))
            total = len(head) + sum(1 for _ in rows)
        return TablePreview(rows=head, total_rows=total, columns=columns)

    @staticmethod
    def _require_csv(path: Path, file_type: FileType) -> None:
        if file_type is not FileType.CSV:
            raise UnreadableFile(f"{path.name}: no decoder configured for {file_type} files")

    @staticmethod
    def _columns(reader: csv.DictReader[str], path: Path) -> tuple[str, ...]:
        try:
            fieldnames = reader.fieldnames
        except (csv.Error, UnicodeDecodeError) as exc:
            raise UnreadableFile(f"{path.name}: {exc}") from exc
        if not fieldnames:
            return ()
        return tuple(name.strip() for name in fieldnames)

    @staticmethod
    def _rows(reader: csv.DictReader[str], path: Path) -> Iterator[Row]:
        fieldnames = [name.strip() for name in reader.fieldnames or ()]
        try:
            for raw in reader:
                yield {
                    column: raw.get(original)
                    for column, original in zip(fieldnames, reader.fieldnames or (), strict=True)
                }
        except (csv.Error, UnicodeDecodeError) as exc:
            raise UnreadableFile(f"{path.name} line {reader.line_num}: {exc}") from exc
