"""Per-workspace-root state held by the orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from managed_indexer.errors import ErrorKind, IndexerError

if TYPE_CHECKING:  # pragma: no cover
    from managed_indexer.api_client import ServerManifest
    from managed_indexer.git_watcher import GitWatcher


@dataclass(frozen=True)
class WorkspaceRoot:
    path: str
    name: str = ""

    @classmethod
    def from_path(cls, path: str) -> "WorkspaceRoot":
        resolved = os.path.abspath(os.path.expanduser(str(path)))
        return cls(path=resolved, name=os.path.basename(resolved.rstrip(os.sep)) or resolved)


@dataclass(eq=False)
class WorkspaceRootState:
    """Mutable record for one root; owns its watcher.

    ``manifest`` is only ever replaced wholesale. ``manifest_branch`` names
    the branch the cached manifest was fetched for.
    """

    root: WorkspaceRoot
    git_branch: Optional[str] = None
    project_id: Optional[str] = None
    manifest: Optional["ServerManifest"] = None
    manifest_branch: Optional[str] = None
    is_indexing: bool = False
    repository_url: Optional[str] = None
    last_error: Optional[IndexerError] = None
    watcher: Optional["GitWatcher"] = None

    @property
    def path(self) -> str:
        return self.root.path

    def record_error(self, error: IndexerError) -> None:
        self.last_error = error

    def clear_error(self, kind: Optional[ErrorKind] = None) -> None:
        """Clear the stored error; with ``kind`` only when it matches."""
        if self.last_error is None:
            return
        if kind is None or self.last_error.kind == kind:
            self.last_error = None

    def set_manifest(self, manifest: "ServerManifest", branch: str) -> None:
        self.manifest = manifest
        self.manifest_branch = branch

    def manifest_for(self, branch: str) -> Optional["ServerManifest"]:
        if self.manifest is not None and self.manifest_branch == branch:
            return self.manifest
        return None

    def snapshot(self, manifest_fetch_in_flight: bool = False) -> Dict[str, Any]:
        return {
            "path": self.root.path,
            "name": self.root.name,
            "gitBranch": self.git_branch,
            "projectId": self.project_id,
            "repositoryUrl": self.repository_url,
            "isIndexing": self.is_indexing,
            "hasManifest": self.manifest is not None,
            "manifestBranch": self.manifest_branch,
            "manifestFileCount": len(self.manifest) if self.manifest is not None else 0,
            "hasWatcher": self.watcher is not None,
            "manifestFetchInFlight": manifest_fetch_in_flight,
            "error": self.last_error.to_dict() if self.last_error else None,
        }
