"""Keep a remote code-search index in sync with local git working copies."""

from managed_indexer.errors import (
    ApiError,
    ConfigurationError,
    ErrorKind,
    GitCommandError,
    IndexerError,
    ManagedIndexerError,
    ProjectNotConfiguredError,
)
from managed_indexer.events import (
    BranchChanged,
    EventEmitter,
    FileChanged,
    FileDeleted,
    ScanEnd,
    ScanStart,
    WatcherEvent,
)
from managed_indexer.git_watcher import GitStateSnapshot, GitWatcher
from managed_indexer.orchestrator import ManagedIndexer

__all__ = [
    "ApiError",
    "BranchChanged",
    "ConfigurationError",
    "ErrorKind",
    "EventEmitter",
    "FileChanged",
    "FileDeleted",
    "GitCommandError",
    "GitStateSnapshot",
    "GitWatcher",
    "IndexerError",
    "ManagedIndexer",
    "ManagedIndexerError",
    "ProjectNotConfiguredError",
    "ScanEnd",
    "ScanStart",
    "WatcherEvent",
]
