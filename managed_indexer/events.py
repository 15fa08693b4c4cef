"""Events emitted by GitWatcher and the channel that delivers them.

Every event carries the branch it was produced on, whether that branch is the
repository's base branch, and a back-reference to the emitting watcher. The
back-reference is an identity key for consumers; it is excluded from
equality and repr so events compare by value.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, List, Optional, Union

from managed_indexer.disposable import Disposable
from managed_indexer.logger import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from managed_indexer.git_watcher import GitWatcher

logger = get_logger(__name__)


@dataclass(frozen=True)
class _BaseEvent:
    type: ClassVar[str] = ""

    branch: str
    is_base_branch: bool
    watcher: Optional["GitWatcher"] = field(default=None, compare=False, repr=False, kw_only=True)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        for f in fields(self):
            if f.name != "watcher":
                out[f.name] = getattr(self, f.name)
        return out


@dataclass(frozen=True)
class ScanStart(_BaseEvent):
    type: ClassVar[str] = "scan-start"


@dataclass(frozen=True)
class ScanEnd(_BaseEvent):
    type: ClassVar[str] = "scan-end"


@dataclass(frozen=True)
class FileChanged(_BaseEvent):
    """A tracked file that exists, with its git blob hash."""

    type: ClassVar[str] = "file-changed"

    file_path: str
    file_hash: str


@dataclass(frozen=True)
class FileDeleted(_BaseEvent):
    type: ClassVar[str] = "file-deleted"

    file_path: str


@dataclass(frozen=True)
class BranchChanged(_BaseEvent):
    type: ClassVar[str] = "branch-changed"

    previous_branch: str
    new_branch: str


WatcherEvent = Union[ScanStart, ScanEnd, FileChanged, FileDeleted, BranchChanged]
EventHandler = Callable[[WatcherEvent], Any]


class EventEmitter:
    """Synchronous one-producer, many-consumer channel.

    Handlers run in registration order inside ``emit``. A handler that raises
    is logged and skipped so the remaining handlers still see the event.
    """

    def __init__(self) -> None:
        self._handlers: List[Callable[[Any], Any]] = []

    def subscribe(self, handler: Callable[[Any], Any]) -> Disposable:
        self._handlers.append(handler)

        def _remove() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return Disposable(_remove)

    def emit(self, event: Any) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as exc:
                logger.error(
                    f"[events] handler {getattr(handler, '__qualname__', handler)!s} failed: {exc}",
                    exc_info=True,
                )

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)


__all__ = [
    "BranchChanged",
    "EventEmitter",
    "EventHandler",
    "FileChanged",
    "FileDeleted",
    "ScanEnd",
    "ScanStart",
    "WatcherEvent",
]
