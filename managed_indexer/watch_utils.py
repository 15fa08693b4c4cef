"""Watchdog helpers shared by the git watcher and the environment host."""

from __future__ import annotations

import os
from typing import Callable, Iterable, Optional, Type

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from managed_indexer.logger import get_logger

logger = get_logger(__name__)

# Read-only notifications some platforms emit; they never signal a ref change
_IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})


def create_observer(use_polling: bool, observer_cls: Type[BaseObserver] = Observer) -> BaseObserver:
    """Create a watchdog observer based on configuration."""
    if use_polling:
        logger.info("[watch_mode] Using polling observer")
        return PollingObserver()
    return observer_cls()


class CallbackHandler(FileSystemEventHandler):
    """Invoke a callback for events touching any of ``names`` (all events when ``names`` is None).

    Both source and destination paths are checked so that lock-file renames
    (``HEAD.lock`` -> ``HEAD``) are recognised.
    """

    def __init__(self, callback: Callable[[], None], names: Optional[Iterable[str]] = None):
        super().__init__()
        self._callback = callback
        self._names = frozenset(names) if names is not None else None

    def matches(self, event: FileSystemEvent) -> bool:
        if event.event_type in _IGNORED_EVENT_TYPES:
            return False
        if self._names is None:
            return True
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if raw and os.path.basename(os.fsdecode(raw)) in self._names:
                return True
        return False

    def on_any_event(self, event: FileSystemEvent) -> None:
        if self.matches(event):
            self._callback()


__all__ = ["CallbackHandler", "create_observer"]
