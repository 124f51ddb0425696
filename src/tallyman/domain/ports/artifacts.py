"""Port for storing uploaded files between submission and processing."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pathlib import Path


@runtime_checkable
class ArtifactStore(Protocol):
    def save(self, key: str, content: bytes) -> Path: ...

    def path_for(self, key: str) -> Path: ...

    def exists(self, key: str) -> bool: ...

    def discard(self, key: str) -> None:
        """Remove the artifact; missing artifacts are ignored."""
        ...
