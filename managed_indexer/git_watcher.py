"""GitWatcher - turns git repository state into a stream of typed events.

The watcher:
- emits ``ScanStart``/``ScanEnd`` around every scan
- emits ``FileChanged`` (with the git blob hash) for tracked files
- emits ``FileDeleted`` for files removed relative to the base branch
- emits ``BranchChanged`` when HEAD moves to another branch
- rescans when the branch or commit changes

On the base branch a scan lists every tracked file. On any other branch it
only reports files that differ from the base branch.

Usage::

    watcher = GitWatcher("/path/to/repo")
    watcher.on_event(print)
    await watcher.scan()
    await watcher.start()
    ...
    watcher.dispose()
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set

from watchdog.observers.api import BaseObserver

from managed_indexer import exec_lines, git_utils
from managed_indexer.disposable import CompositeDisposable, Disposable
from managed_indexer.events import (
    BranchChanged,
    EventEmitter,
    FileChanged,
    FileDeleted,
    ScanEnd,
    ScanStart,
    WatcherEvent,
)
from managed_indexer.logger import get_logger
from managed_indexer.watch_utils import CallbackHandler, create_observer

logger = get_logger(__name__)


@dataclass(frozen=True)
class GitStateSnapshot:
    branch: str
    commit: str
    is_detached: bool = False


class GitWatcher:
    """Watches one working copy. Disposing it releases every watch handle."""

    def __init__(
        self,
        cwd: str,
        default_branch_override: Optional[str] = None,
        *,
        use_polling: bool = False,
        observer_factory: Optional[Callable[[], BaseObserver]] = None,
    ):
        self.cwd = str(cwd)
        self.default_branch_override = default_branch_override
        self._use_polling = use_polling
        self._observer_factory = observer_factory
        self._emitter = EventEmitter()
        self._error_emitter = EventEmitter()
        self._disposables = CompositeDisposable()
        self._observer: Optional[BaseObserver] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Future] = set()
        self._current_state: Optional[GitStateSnapshot] = None
        self._is_processing = False
        self._default_branch: Optional[str] = None
        self._disposed = False

    def __repr__(self) -> str:
        return f"GitWatcher(cwd={self.cwd!r})"

    @property
    def current_state(self) -> Optional[GitStateSnapshot]:
        return self._current_state

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def on_event(self, handler: Callable[[WatcherEvent], object]) -> Disposable:
        """Register a handler for every event this watcher emits."""
        return self._emitter.subscribe(handler)

    def on_error(self, handler: Callable[[BaseException], object]) -> Disposable:
        """Register a handler for failures raised while reacting to git changes."""
        return self._error_emitter.subscribe(handler)

    def _emit(self, event: WatcherEvent) -> None:
        self._emitter.emit(event)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------
    async def scan(self) -> None:
        """Scan the repository and emit file events.

        On the base branch every tracked file is emitted; on other branches
        only the files that differ from the base branch. Nothing is emitted
        in detached-HEAD state. Errors propagate to the caller.
        """
        try:
            if await git_utils.is_detached_head(self.cwd):
                return

            current_branch = await git_utils.get_current_branch(self.cwd)
            default_branch = await self._get_default_branch()

            if current_branch.lower() == default_branch.lower():
                await self._scan_all_files(current_branch)
            else:
                await self._scan_diff_files(current_branch, default_branch)
        except Exception as exc:
            logger.error(f"[git_watcher] Error during scan of {self.cwd}: {exc}")
            raise

    async def _emit_ls_files(self, args: Iterable[str], branch: str, is_base_branch: bool, context: str) -> int:
        count = 0
        # Paths come from git output and must not be read as glob or magic pathspecs
        argv = [*exec_lines.GIT, "--literal-pathspecs", "ls-files", "-s", *args]
        async for line in exec_lines.exec_get_lines(argv, self.cwd, context):
            parsed = git_utils.parse_ls_files_line(line)
            if parsed is None:
                continue
            file_hash, file_path = parsed
            self._emit(
                FileChanged(
                    branch=branch,
                    is_base_branch=is_base_branch,
                    file_path=file_path,
                    file_hash=file_hash,
                    watcher=self,
                )
            )
            count += 1
        return count

    async def _scan_all_files(self, branch: str) -> None:
        self._emit(ScanStart(branch=branch, is_base_branch=True, watcher=self))
        count = await self._emit_ls_files((), branch, True, "scanning git tracked files")
        logger.debug(f"[git_watcher] full scan of {self.cwd} on {branch}: {count} file(s)")
        self._emit(ScanEnd(branch=branch, is_base_branch=True, watcher=self))

    async def _scan_diff_files(self, current_branch: str, default_branch: str) -> None:
        self._emit(ScanStart(branch=current_branch, is_base_branch=False, watcher=self))

        diff = await git_utils.get_git_diff(current_branch, default_branch, self.cwd)

        for deleted in diff.deleted:
            self._emit(
                FileDeleted(branch=current_branch, is_base_branch=False, file_path=deleted, watcher=self)
            )

        files_to_scan = [*diff.added, *diff.modified]
        if files_to_scan:
            # One ls-files call for the whole set; argv form keeps paths with spaces intact
            await self._emit_ls_files(
                ["--", *files_to_scan], current_branch, False, "getting file hashes for diff files"
            )
        logger.debug(
            f"[git_watcher] diff scan of {self.cwd} ({current_branch} vs {default_branch}): "
            f"{len(files_to_scan)} changed, {len(diff.deleted)} deleted"
        )
        self._emit(ScanEnd(branch=current_branch, is_base_branch=False, watcher=self))

    async def _get_default_branch(self) -> str:
        if self._default_branch:
            return self._default_branch
        if self.default_branch_override:
            self._default_branch = self.default_branch_override
            return self._default_branch
        self._default_branch = await git_utils.get_base_branch(self.cwd)
        return self._default_branch

    # ------------------------------------------------------------------
    # Live monitoring
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Capture the current git state and begin watching git metadata."""
        if self._disposed:
            return
        try:
            self._loop = asyncio.get_running_loop()
            if not await git_utils.is_detached_head(self.cwd):
                branch, commit = await asyncio.gather(
                    git_utils.get_current_branch(self.cwd),
                    git_utils.get_current_commit_sha(self.cwd),
                )
                self._current_state = GitStateSnapshot(branch=branch, commit=commit)
            await self._setup_git_watchers()
        except Exception as exc:
            logger.error(f"[git_watcher] Failed to initialize watcher for {self.cwd}: {exc}")

    def _ensure_observer(self) -> BaseObserver:
        if self._observer is None:
            factory = self._observer_factory or (lambda: create_observer(self._use_polling))
            self._observer = factory()
        return self._observer

    def _watch(self, path: str, *, recursive: bool, names: Optional[Iterable[str]], label: str) -> bool:
        try:
            observer = self._ensure_observer()
            handler = CallbackHandler(self._on_git_metadata_event, names)
            watch = observer.schedule(handler, path, recursive=recursive)
        except Exception as exc:
            logger.warning(f"[git_watcher] Could not watch {label} in {self.cwd}: {exc}")
            return False
        self._disposables.add(Disposable(lambda: observer.remove_handler_for_watch(handler, watch)))
        return True

    async def _setup_git_watchers(self) -> None:
        # The host's file watching skips .git, so these metadata files are watched directly
        head_path = await git_utils.get_git_head_path(self.cwd)
        if not os.path.isabs(head_path):
            head_path = os.path.join(self.cwd, head_path)
        git_dir = os.path.dirname(head_path)

        # packed-refs may only appear after the first gc or fetch, so it is matched by name
        watched = self._watch(git_dir, recursive=False, names={"HEAD", "packed-refs"}, label="HEAD and packed-refs")

        refs_heads = os.path.join(git_dir, "refs", "heads")
        if os.path.isdir(refs_heads):
            watched = self._watch(refs_heads, recursive=True, names=None, label="branch refs") or watched

        if watched and self._observer is not None and not self._disposed:
            self._observer.start()

    def _on_git_metadata_event(self) -> None:
        # Called on a watchdog thread
        loop = self._loop
        if loop is None or self._disposed or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._trigger_git_change)
        except RuntimeError:
            # Loop shut down between the check and the call
            pass

    def _trigger_git_change(self) -> None:
        if self._disposed or self._is_processing:
            return
        task = asyncio.ensure_future(self.handle_git_change())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_git_change(self) -> None:
        """React to a git metadata change.

        At most one cycle runs at a time; triggers that arrive while one is
        running are dropped.
        """
        if self._is_processing:
            return
        self._is_processing = True
        try:
            if await git_utils.is_detached_head(self.cwd):
                self._current_state = None
                return

            branch, commit = await asyncio.gather(
                git_utils.get_current_branch(self.cwd),
                git_utils.get_current_commit_sha(self.cwd),
            )
            new_state = GitStateSnapshot(branch=branch, commit=commit)
            previous = self._current_state

            if previous == new_state:
                return

            if previous is not None and previous.branch != new_state.branch:
                default_branch = await self._get_default_branch()
                self._emit(
                    BranchChanged(
                        branch=new_state.branch,
                        is_base_branch=new_state.branch.lower() == default_branch.lower(),
                        previous_branch=previous.branch,
                        new_branch=new_state.branch,
                        watcher=self,
                    )
                )

            await self.scan()
            self._current_state = new_state
        except Exception as exc:
            logger.error(f"[git_watcher] Error handling git change in {self.cwd}: {exc}")
            self._error_emitter.emit(exc)
        finally:
            self._is_processing = False

    # ------------------------------------------------------------------
    # Disposal
    # ------------------------------------------------------------------
    def dispose(self) -> None:
        """Drop all subscribers and release every watch handle. Safe to call twice."""
        self._emitter.clear()
        self._error_emitter.clear()
        if self._disposed:
            return
        self._disposed = True
        self._disposables.dispose()
        observer, self._observer = self._observer, None
        if observer is not None and observer.is_alive():
            observer.stop()
            observer.join(timeout=2.0)


__all__ = ["GitStateSnapshot", "GitWatcher"]
