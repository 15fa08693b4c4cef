"""Sync command: one-shot scan and upload of every workspace root."""
from __future__ import annotations

import argparse
import sys

from managed_indexer.cli.core import output_json, resolve_roots, run_async, setup_environment
from managed_indexer.host import EnvWorkspaceHost
from managed_indexer.orchestrator import ManagedIndexer


async def _sync(roots, env_file, settings):
    host = EnvWorkspaceHost(roots, env_file=env_file)
    indexer = ManagedIndexer(host, settings=settings)
    try:
        await indexer.start(watch=False)
        await indexer.drain()
        return indexer.is_active, indexer.get_state_snapshot()
    finally:
        indexer.dispose()
        host.dispose()
        indexer.api.close()


def cmd_sync(args: argparse.Namespace) -> None:
    """Scan each root once, upload what the server is missing, print per-root state."""
    settings = setup_environment(args)
    roots = resolve_roots(getattr(args, "roots", None))

    active, snapshot = run_async(_sync(roots, getattr(args, "env_file", None), settings))
    failed = [s for s in snapshot if s.get("error")]
    output_json({
        "ok": active and not failed,
        "active": active,
        "roots": snapshot,
    })
    if not active or failed:
        sys.exit(1)
