"""Watch command: keep workspace roots in sync as git state changes (daemon mode)."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys

from managed_indexer.cli.core import resolve_roots, run_async, setup_environment
from managed_indexer.host import EnvWorkspaceHost
from managed_indexer.logger import get_logger
from managed_indexer.orchestrator import ManagedIndexer

logger = get_logger(__name__)


async def _watch(roots, env_file, settings, status_interval: float) -> None:
    host = EnvWorkspaceHost(roots, env_file=env_file, use_polling=settings.use_polling)
    indexer = ManagedIndexer(host, settings=settings)
    try:
        host.start_watching()
        await indexer.start()
        if not indexer.is_active:
            print("Managed indexing is not active; waiting for credential changes", file=sys.stderr)
        while True:
            if status_interval > 0:
                await asyncio.sleep(status_interval)
                logger.info(f"[watch] state: {json.dumps(indexer.get_state_snapshot(), default=str)}")
            else:
                await asyncio.sleep(3600)
    finally:
        indexer.dispose()
        host.dispose()
        indexer.api.close()


def cmd_watch(args: argparse.Namespace) -> None:
    """Watch roots for branch/commit changes and upload changed files."""
    settings = setup_environment(args)
    roots = resolve_roots(getattr(args, "roots", None))

    print(f"Watching {', '.join(roots)} -> {settings.api_url}", file=sys.stderr)
    try:
        run_async(_watch(roots, getattr(args, "env_file", None), settings, args.status_interval))
    except KeyboardInterrupt:
        print("\nStopping watcher...", file=sys.stderr)
