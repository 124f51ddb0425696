"""Filesystem storage for uploaded files awaiting processing."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

log = logging.getLogger(__name__)


class LocalArtifactStore:
    """Keeps each artifact as one file below ``root``.

    Writes go to a temporary file in the same directory and are renamed into
    place, so readers never observe a partially written artifact.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def save(self, key: str, content: bytes) -> Path:
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-", suffix=".part")
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        log.debug("Stored artifact %s (%d bytes)", key, len(content))
        return target

    def path_for(self, key: str) -> Path:
        name = Path(key).name
        if not name or name != key or name in {".", ".."}:
            raise ValueError(f"Invalid artifact key: {key!r}")
        return self.root / name

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def discard(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)
        log.debug("Discarded artifact %s", key)


if TYPE_CHECKING:
    from tallyman.domain.ports import ArtifactStore

    _store_check: ArtifactStore = LocalArtifactStore(Path())
