"""Scan command: print the events a watcher emits for one root, without uploading."""
from __future__ import annotations

import argparse

from managed_indexer.cli.core import output_json_line, resolve_roots, run_async
from managed_indexer.config import IndexerSettings
from managed_indexer.git_watcher import GitWatcher


async def _scan(root: str, default_branch) -> None:
    watcher = GitWatcher(root, default_branch)
    watcher.on_event(lambda event: output_json_line(event.to_dict()))
    try:
        await watcher.scan()
    finally:
        watcher.dispose()


def cmd_scan(args: argparse.Namespace) -> None:
    root = resolve_roots([args.root])[0]
    branch = getattr(args, "default_branch", None) or IndexerSettings.from_env().default_branch_override
    run_async(_scan(root, branch))
