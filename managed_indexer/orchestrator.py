"""ManagedIndexer - keeps the remote index in sync with local working copies.

The indexer:
1. reads credentials from the host and checks that the organization has
   code indexing enabled
2. for every workspace root that is a git repository with a configured
   project, fetches the server manifest for the current branch and attaches
   a GitWatcher
3. runs an initial scan, then watches git metadata for branch/commit changes
4. uploads every changed file whose ``(path, hash)`` the manifest does not
   already list, through one process-wide concurrency limiter

Failures are recorded on the affected root's state and never stop the other
roots. Credential or workspace-root changes trigger a full dispose-then-start.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from managed_indexer import git_utils
from managed_indexer.api_client import (
    ApiClient,
    Organization,
    ServerManifest,
    UpsertFileRequest,
    is_code_indexing_enabled,
)
from managed_indexer.config import IndexerSettings, is_supported_file
from managed_indexer.disposable import CompositeDisposable
from managed_indexer.errors import (
    ConfigurationError,
    ErrorKind,
    IndexerError,
    ProjectNotConfiguredError,
)
from managed_indexer.events import (
    BranchChanged,
    FileChanged,
    FileDeleted,
    ScanEnd,
    ScanStart,
    WatcherEvent,
)
from managed_indexer.git_watcher import GitWatcher
from managed_indexer.host import Credentials, WorkspaceHost
from managed_indexer.limiter import ConcurrencyLimiter
from managed_indexer.logger import ContextLogger, get_logger
from managed_indexer.project_config import get_project_config
from managed_indexer.single_flight import SingleFlight
from managed_indexer.state import WorkspaceRoot, WorkspaceRootState

logger = get_logger(__name__)

WatcherFactory = Callable[..., GitWatcher]


class ManagedIndexer:
    def __init__(
        self,
        host: WorkspaceHost,
        api: Optional[ApiClient] = None,
        settings: Optional[IndexerSettings] = None,
        watcher_factory: WatcherFactory = GitWatcher,
        limiter: Optional[ConcurrencyLimiter] = None,
    ):
        self.host = host
        self.settings = settings or IndexerSettings.from_env()
        self.api = api or ApiClient(self.settings.api_url, self.settings.timeout, self.settings.max_retries)
        self.config: Optional[Credentials] = None
        self.organization: Optional[Organization] = None
        self.is_active = False
        self.workspace_root_state: List[WorkspaceRootState] = []

        self._watcher_factory = watcher_factory
        # Shared by every root; built once for the lifetime of the indexer
        self._limiter = limiter or ConcurrencyLimiter(self.settings.max_concurrent_files)
        self._manifest_flights: SingleFlight[ServerManifest] = SingleFlight()
        self._listeners = CompositeDisposable()
        self._tasks: Set[asyncio.Task] = set()
        self._restart_lock = asyncio.Lock()
        self._generation = 0

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    # ------------------------------------------------------------------
    # Configuration and feature gate
    # ------------------------------------------------------------------
    def fetch_config(self) -> Credentials:
        self.config = self.host.get_credentials()
        return self.config

    async def fetch_organization(self) -> Optional[Organization]:
        config = self.fetch_config()
        if not config.complete:
            self.organization = None
            return None
        generation = self._generation
        organization = await self.api.afetch_organization(
            config.token,
            config.organization_id,
            config.tester_warnings_disabled_until,
        )
        # A restart may have fetched for newer credentials meanwhile
        if generation == self._generation:
            self.organization = organization
        return organization

    async def is_enabled(self) -> bool:
        try:
            organization = await self.fetch_organization()
        except Exception as exc:
            logger.error(f"[managed_indexer] Organization lookup failed: {exc}")
            return False

        if organization is None:
            logger.info("[managed_indexer] No organization found, skipping managed indexing")
            return False

        return is_code_indexing_enabled(organization)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def _subscribe_host(self) -> None:
        if len(self._listeners):
            return
        self._listeners.add(
            self.host.on_did_change_credentials(lambda: self._spawn(self.on_credentials_changed()))
        )
        self._listeners.add(
            self.host.on_did_change_workspace_roots(lambda: self._spawn(self.on_workspace_roots_changed()))
        )

    async def start(self, watch: bool = True) -> None:
        """Set up every workspace root and run the initial scans.

        With ``watch=False`` the watchers scan once and never install git
        metadata watches (one-shot sync).
        """
        # Any dispose after this point abandons this start
        generation = self._generation
        self._subscribe_host()

        roots = self.host.workspace_roots()
        if not roots:
            logger.info("[managed_indexer] No workspace roots found, skipping managed indexing")
            return

        if not await self.is_enabled():
            logger.info("[managed_indexer] Managed indexing is not enabled")
            return

        config = self.config
        if config is None or not config.complete:
            logger.info("[managed_indexer] No organization ID or token found, skipping managed indexing")
            return

        if generation != self._generation:
            logger.debug("[managed_indexer] Disposed during startup checks, abandoning start")
            return

        self.is_active = True

        states = await asyncio.gather(*(self._create_root_state(root, config) for root in roots))
        built = [s for s in states if s is not None]

        if generation != self._generation:
            # Disposed while roots were being set up
            for state in built:
                if state.watcher is not None:
                    state.watcher.dispose()
            return

        self.workspace_root_state = built
        logger.info(
            f"[managed_indexer] Tracking {len(built)} workspace root(s), "
            f"{sum(1 for s in built if s.watcher is not None)} with a watcher"
        )

        await asyncio.gather(*(self._start_watcher(s, watch) for s in built if s.watcher is not None))

    async def _create_root_state(self, root: WorkspaceRoot, config: Credentials) -> Optional[WorkspaceRootState]:
        log = ContextLogger(logger, root=root.path)

        if not await git_utils.is_git_repository(root.path):
            log.debug(f"[managed_indexer] {root.path} is not a git repository, skipping")
            return None

        state = WorkspaceRootState(root=root)

        try:
            info, branch = await asyncio.gather(
                git_utils.get_git_repository_info(root.path),
                git_utils.get_current_branch(root.path),
            )
        except Exception as exc:
            log.error(f"[managed_indexer] Failed to read git info for {root.path}: {exc}")
            state.record_error(
                IndexerError.from_exception(ErrorKind.GIT, "Failed to read git info", exc, operation="start")
            )
            return state

        state.git_branch = branch
        state.repository_url = info.repository_url

        try:
            project = await asyncio.to_thread(
                get_project_config, root.path, info.repository_url, self.settings.projects_file
            )
        except ConfigurationError as exc:
            log.error(f"[managed_indexer] Invalid project configuration for {root.path}: {exc}")
            state.record_error(
                IndexerError.from_exception(
                    ErrorKind.CONFIG, "Invalid project configuration", exc, branch=branch, operation="start"
                )
            )
            return state

        if project is None:
            log.info(f"[managed_indexer] No project ID found for workspace root {root.path}")
            return None

        state.project_id = project.project_id

        try:
            manifest = await self.api.aget_server_manifest(
                config.organization_id, project.project_id, branch, config.token
            )
        except Exception as exc:
            log.error(f"[managed_indexer] Failed to fetch manifest for {root.path} ({branch}): {exc}")
            state.record_error(
                IndexerError.from_exception(
                    ErrorKind.MANIFEST, "Failed to fetch manifest", exc, branch=branch, operation="start"
                )
            )
            return state

        state.set_manifest(manifest, branch)

        try:
            watcher = self._watcher_factory(
                root.path,
                self.settings.default_branch_override,
                use_polling=self.settings.use_polling,
            )
            watcher.on_event(self._on_watcher_event)
            watcher.on_error(lambda exc, _state=state: self._on_watcher_error(_state, exc))
        except Exception as exc:
            log.error(f"[managed_indexer] Failed to create git watcher for {root.path}: {exc}")
            state.record_error(
                IndexerError.from_exception(
                    ErrorKind.SCAN, "Failed to create git watcher", exc, branch=branch, operation="start"
                )
            )
            return state

        state.watcher = watcher
        log.info(
            f"[managed_indexer] Ready: {root.path} (project {project.project_id}, branch {branch}, "
            f"{len(manifest)} indexed file(s))"
        )
        return state

    async def _start_watcher(self, state: WorkspaceRootState, watch: bool = True) -> None:
        watcher = state.watcher
        try:
            await watcher.scan()
        except Exception as exc:
            state.is_indexing = False
            state.record_error(
                IndexerError.from_exception(
                    ErrorKind.SCAN, "Initial scan failed", exc, branch=state.git_branch, operation="scan"
                )
            )
        if watch:
            # Started even after a failed scan so the next git change can recover
            await watcher.start()

    def dispose(self) -> None:
        self._listeners.dispose()
        self._listeners = CompositeDisposable()

        for state in self.workspace_root_state:
            if state.watcher is not None:
                state.watcher.dispose()
        self.workspace_root_state = []

        self.is_active = False
        self._generation += 1

    async def restart(self) -> None:
        async with self._restart_lock:
            self.dispose()
            await self.start()

    async def on_credentials_changed(self) -> None:
        logger.info("[managed_indexer] Credentials changed, restarting")
        await self.restart()

    async def on_workspace_roots_changed(self) -> None:
        logger.info("[managed_indexer] Workspace roots changed, restarting")
        await self.restart()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until every event handler spawned so far, and any it spawned, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    def _on_watcher_event(self, event: WatcherEvent) -> None:
        self._spawn(self.on_event(event))

    def _on_watcher_error(self, state: WorkspaceRootState, exc: BaseException) -> None:
        state.is_indexing = False
        state.record_error(
            IndexerError.from_exception(
                ErrorKind.SCAN, "Rescan after git change failed", exc, branch=state.git_branch, operation="scan"
            )
        )

    def _state_for(self, watcher: Optional[GitWatcher]) -> Optional[WorkspaceRootState]:
        for state in self.workspace_root_state:
            if state.watcher is not None and state.watcher is watcher:
                return state
        return None

    async def on_event(self, event: WatcherEvent) -> None:
        if not self.is_active:
            return

        state = self._state_for(event.watcher)
        if state is None:
            logger.warning("[managed_indexer] Received event for unknown watcher")
            return

        await self._dispatch(state, event)

    async def _dispatch(self, state: WorkspaceRootState, event: WatcherEvent) -> None:
        if isinstance(event, ScanStart):
            state.is_indexing = True
            state.clear_error()
            logger.info(f"[managed_indexer] Scan started on branch {event.branch}")

        elif isinstance(event, ScanEnd):
            state.is_indexing = False
            logger.info(f"[managed_indexer] Scan completed on branch {event.branch}")

        elif isinstance(event, FileDeleted):
            # Deletions are not propagated to the remote index
            logger.info(f"[managed_indexer] File deleted: {event.file_path} on branch {event.branch}")

        elif isinstance(event, BranchChanged):
            logger.info(
                f"[managed_indexer] Branch changed from {event.previous_branch} to {event.new_branch} "
                f"in {state.path}"
            )
            state.git_branch = event.new_branch
            try:
                await self.get_manifest(state, event.new_branch)
            except Exception as exc:
                logger.warning(f"[managed_indexer] Manifest refresh for {event.new_branch} failed: {exc}")

        elif isinstance(event, FileChanged):
            await self._handle_file_changed(state, event)

    def _relative_path(self, state: WorkspaceRootState, file_path: str) -> str:
        if not os.path.isabs(file_path):
            return file_path
        return Path(os.path.relpath(file_path, state.path)).as_posix()

    async def _handle_file_changed(self, state: WorkspaceRootState, event: FileChanged) -> None:
        file_path = self._relative_path(state, event.file_path)

        if not is_supported_file(file_path, self.settings.extensions):
            logger.debug(f"[managed_indexer] Skipping unsupported file: {file_path}")
            return

        try:
            manifest = await self.get_manifest(state, event.branch)
        except Exception as exc:
            logger.warning(f"[managed_indexer] No manifest for {event.branch}, skipping {file_path}: {exc}")
            return

        if manifest.contains(file_path, event.file_hash):
            return

        await self._limiter.run(self._upsert_file, state, event, file_path)

    async def _upsert_file(self, state: WorkspaceRootState, event: FileChanged, file_path: str) -> None:
        config = self.config
        if config is None or not config.complete:
            logger.warning("[managed_indexer] Missing token or organization ID, skipping file upsert")
            return

        absolute_path = os.path.join(state.path, file_path)
        try:
            file_buffer = await asyncio.to_thread(Path(absolute_path).read_bytes)
            await self.api.aupsert_file(
                UpsertFileRequest(
                    file_buffer=file_buffer,
                    file_hash=event.file_hash,
                    file_path=file_path,
                    git_branch=event.branch,
                    is_base_branch=event.is_base_branch,
                    organization_id=config.organization_id,
                    project_id=state.project_id,
                    token=config.token,
                )
            )
        except Exception as exc:
            logger.error(f"[managed_indexer] Failed to upsert file {file_path}: {exc}")
            state.record_error(
                IndexerError.from_exception(
                    ErrorKind.FILE_UPSERT,
                    f"Failed to upsert file {file_path}",
                    exc,
                    file_path=file_path,
                    branch=event.branch,
                    operation="upsert",
                )
            )
            return

        state.clear_error(ErrorKind.FILE_UPSERT)
        logger.info(f"[managed_indexer] Successfully upserted file: {file_path} (branch: {event.branch})")

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------
    async def get_manifest(self, state: WorkspaceRootState, branch: str) -> ServerManifest:
        """Manifest for ``branch``, fetching it at most once at a time per root and branch."""
        key = (state.path, branch)
        if not self._manifest_flights.in_flight(key):
            cached = state.manifest_for(branch)
            if cached is not None:
                return cached
        return await self._manifest_flights.do(key, lambda: self._fetch_manifest(state, branch))

    async def _fetch_manifest(self, state: WorkspaceRootState, branch: str) -> ServerManifest:
        config = self.config
        if config is None or not config.complete:
            raise ConfigurationError("Missing token or organization ID")

        try:
            # Mapping may have changed since start-up
            project = await asyncio.to_thread(
                get_project_config, state.path, state.repository_url, self.settings.projects_file
            )
            if project is None:
                raise ProjectNotConfiguredError(f"No project ID found for {state.path}")
            state.project_id = project.project_id

            manifest = await self.api.aget_server_manifest(
                config.organization_id, project.project_id, branch, config.token
            )
        except Exception as exc:
            state.record_error(
                IndexerError.from_exception(
                    ErrorKind.MANIFEST, "Failed to fetch manifest", exc, branch=branch, operation="manifest"
                )
            )
            raise

        state.set_manifest(manifest, branch)
        state.clear_error(ErrorKind.MANIFEST)
        logger.info(f"[managed_indexer] Fetched manifest for {state.path} ({branch}): {len(manifest)} file(s)")
        return manifest

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get_state_snapshot(self) -> List[Dict[str, Any]]:
        in_flight = {key[0] for key in self._manifest_flights.keys()}
        return [state.snapshot(state.path in in_flight) for state in self.workspace_root_state]


__all__ = ["ManagedIndexer"]
