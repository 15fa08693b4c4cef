"""The environment the indexer runs in: workspace roots and credentials.

``WorkspaceHost`` is the seam the orchestrator depends on. ``EnvWorkspaceHost``
is the implementation used by the CLI: roots come from the command line,
credentials from the process environment or a dotenv file that is reloaded
whenever it changes on disk.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

from dotenv import dotenv_values

from managed_indexer.disposable import CompositeDisposable, Disposable
from managed_indexer.events import EventEmitter
from managed_indexer.logger import get_logger, safe_int
from managed_indexer.state import WorkspaceRoot
from managed_indexer.watch_utils import CallbackHandler, create_observer

logger = get_logger(__name__)

TOKEN_ENV = "MANAGED_INDEXER_TOKEN"
ORGANIZATION_ENV = "MANAGED_INDEXER_ORGANIZATION_ID"
TESTER_WARNINGS_ENV = "MANAGED_INDEXER_TESTER_WARNINGS_DISABLED_UNTIL"


@dataclass(frozen=True)
class Credentials:
    token: Optional[str] = None
    organization_id: Optional[str] = None
    tester_warnings_disabled_until: Optional[int] = None

    @property
    def complete(self) -> bool:
        return bool(self.token and self.organization_id)

    @classmethod
    def from_mapping(cls, env: Mapping[str, Optional[str]]) -> "Credentials":
        until = safe_int(env.get(TESTER_WARNINGS_ENV), 0, logger, TESTER_WARNINGS_ENV)
        return cls(
            token=(env.get(TOKEN_ENV) or "").strip() or None,
            organization_id=(env.get(ORGANIZATION_ENV) or "").strip() or None,
            tester_warnings_disabled_until=until or None,
        )

    def __repr__(self) -> str:
        token = "set" if self.token else None
        return (
            f"Credentials(token={token}, organization_id={self.organization_id!r}, "
            f"tester_warnings_disabled_until={self.tester_warnings_disabled_until!r})"
        )


class WorkspaceHost(Protocol):
    def workspace_roots(self) -> List[WorkspaceRoot]: ...

    def get_credentials(self) -> Credentials: ...

    def on_did_change_workspace_roots(self, listener: Callable[[], object]) -> Disposable: ...

    def on_did_change_credentials(self, listener: Callable[[], object]) -> Disposable: ...


class EnvWorkspaceHost:
    """Workspace host backed by CLI arguments and environment variables.

    When ``env_file`` is given its values override the process environment,
    and edits to it are picked up through a watchdog watch. Listeners always
    run on the event loop that called ``start_watching``.
    """

    def __init__(
        self,
        roots: Iterable[Union[str, os.PathLike]],
        env_file: Optional[Union[str, os.PathLike]] = None,
        environ: Optional[Mapping[str, str]] = None,
        use_polling: bool = False,
    ):
        self._roots: List[WorkspaceRoot] = [WorkspaceRoot.from_path(str(r)) for r in roots]
        self.env_file = Path(env_file).expanduser().resolve() if env_file else None
        self._environ = environ
        self._use_polling = use_polling
        self._roots_changed = EventEmitter()
        self._credentials_changed = EventEmitter()
        self._disposables = CompositeDisposable()
        self._observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._credentials = self._load_credentials()

    def _load_credentials(self) -> Credentials:
        env = dict(os.environ if self._environ is None else self._environ)
        if self.env_file is not None and self.env_file.is_file():
            env.update({k: v for k, v in dotenv_values(self.env_file).items() if v is not None})
        return Credentials.from_mapping(env)

    def workspace_roots(self) -> List[WorkspaceRoot]:
        return list(self._roots)

    def get_credentials(self) -> Credentials:
        return self._credentials

    def on_did_change_workspace_roots(self, listener: Callable[[], object]) -> Disposable:
        return self._roots_changed.subscribe(lambda _event: listener())

    def on_did_change_credentials(self, listener: Callable[[], object]) -> Disposable:
        return self._credentials_changed.subscribe(lambda _event: listener())

    def set_workspace_roots(self, roots: Sequence[Union[str, os.PathLike]]) -> None:
        new_roots = [WorkspaceRoot.from_path(str(r)) for r in roots]
        if new_roots == self._roots:
            return
        self._roots = new_roots
        logger.info(f"[host] workspace roots changed: {[r.path for r in new_roots]}")
        self._roots_changed.emit(None)

    def reload_credentials(self) -> bool:
        """Re-read credentials; notify listeners and return True when they changed."""
        credentials = self._load_credentials()
        if credentials == self._credentials:
            return False
        self._credentials = credentials
        logger.info("[host] credentials changed")
        self._credentials_changed.emit(None)
        return True

    def start_watching(self) -> None:
        """Watch ``env_file`` for edits. No-op without an env file."""
        if self.env_file is None or self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        observer = create_observer(self._use_polling)
        handler = CallbackHandler(self._on_env_file_event, {self.env_file.name})
        try:
            watch = observer.schedule(handler, str(self.env_file.parent), recursive=False)
        except OSError as e:
            logger.warning(f"[host] Could not watch {self.env_file}: {e}")
            return
        self._disposables.add(Disposable(lambda: observer.remove_handler_for_watch(handler, watch)))
        observer.start()
        self._observer = observer

    def _on_env_file_event(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.reload_credentials)
        except RuntimeError:
            pass

    def dispose(self) -> None:
        self._roots_changed.clear()
        self._credentials_changed.clear()
        self._disposables.dispose()
        observer, self._observer = self._observer, None
        if observer is not None and observer.is_alive():
            observer.stop()
            observer.join(timeout=2.0)


__all__ = ["Credentials", "EnvWorkspaceHost", "WorkspaceHost"]
