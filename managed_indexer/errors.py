"""Error kinds recorded on workspace root state, and the exception hierarchy."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    SETUP = "setup"
    SCAN = "scan"
    FILE_UPSERT = "file-upsert"
    GIT = "git"
    MANIFEST = "manifest"
    CONFIG = "config"


@dataclass(frozen=True)
class IndexerError:
    """A failure recorded on a workspace root for introspection.

    ``timestamp`` is epoch milliseconds. ``details`` holds the raw exception
    text (or any other diagnostic payload) when one is available.
    """

    kind: ErrorKind
    message: str
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    file_path: Optional[str] = None
    branch: Optional[str] = None
    operation: Optional[str] = None
    details: Optional[Any] = None

    @classmethod
    def from_exception(
        cls,
        kind: ErrorKind,
        message: str,
        exc: BaseException,
        *,
        file_path: Optional[str] = None,
        branch: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> "IndexerError":
        return cls(
            kind=kind,
            message=f"{message}: {exc}",
            file_path=file_path,
            branch=branch,
            operation=operation,
            details=repr(exc),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        context = {
            k: v
            for k, v in (
                ("filePath", self.file_path),
                ("branch", self.branch),
                ("operation", self.operation),
            )
            if v is not None
        }
        if context:
            out["context"] = context
        if self.details is not None:
            out["details"] = self.details
        return out


class ManagedIndexerError(Exception):
    """Base exception for all managed indexer errors."""


class GitCommandError(ManagedIndexerError):
    """A git invocation exited non-zero or could not be started."""

    def __init__(self, cmd, returncode: Optional[int], stderr: str = "", context: Optional[str] = None):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.context = context
        where = f" while {context}" if context else ""
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"git command failed{where} (exit {returncode}){detail}")


class ApiError(ManagedIndexerError):
    """The remote indexing API answered with an error or was unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ConfigurationError(ManagedIndexerError):
    """Error in configuration files or environment setup."""


class ProjectNotConfiguredError(ManagedIndexerError):
    """No project id could be resolved for a repository."""
