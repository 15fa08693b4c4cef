"""Shared helpers for CLI commands."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional

from dotenv import find_dotenv, load_dotenv

from managed_indexer.config import IndexerSettings
from managed_indexer.logger import use_json_output


def setup_environment(args: argparse.Namespace) -> IndexerSettings:
    """Load the dotenv file (if any), apply logging flags and read settings."""
    env_file = getattr(args, "env_file", None)
    if env_file:
        load_dotenv(env_file, override=True)
    else:
        load_dotenv(find_dotenv(usecwd=True))

    if os.environ.get("LOG_FORMAT", "").strip().lower() == "json":
        use_json_output(os.environ.get("LOG_LEVEL"))

    settings = IndexerSettings.from_env()
    api_url = getattr(args, "api_url", None)
    branch = getattr(args, "default_branch", None)
    if api_url or branch:
        settings = replace(
            settings,
            api_url=(api_url or settings.api_url).rstrip("/"),
            default_branch_override=branch or settings.default_branch_override,
        )
    return settings


def resolve_roots(paths: Optional[List[str]]) -> List[str]:
    return [str(Path(p).expanduser().resolve()) for p in (paths or ["."])]


def output_json(data: Any) -> None:
    """Write JSON to stdout, single place for all commands."""
    json.dump(data, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def output_json_line(data: Any) -> None:
    sys.stdout.write(json.dumps(data, default=str))
    sys.stdout.write("\n")
    sys.stdout.flush()


def run_async(coro) -> Any:
    """Run an async coroutine from sync CLI context."""
    return asyncio.run(coro)
