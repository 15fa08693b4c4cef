"""Environment-based configuration for the managed indexer.

Values are read from the process environment (optionally populated from a
``.env`` file by the CLI) into an immutable ``IndexerSettings``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Mapping, Optional

from managed_indexer.logger import get_logger, safe_bool, safe_int

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_TIMEOUT_SECS = 30
DEFAULT_MAX_RETRIES = 3
# Process-wide cap on concurrent file uploads across all workspace roots
MANAGED_MAX_CONCURRENT_FILES = 10

PROJECT_CONFIG_DIR = ".managed-indexer"
PROJECT_CONFIG_FILE = "config.json"
DEFAULT_PROJECTS_FILE = Path("~/.config/managed-indexer/projects.json")


# ---------------------------------------------------------------------------
# Supported file extensions
# ---------------------------------------------------------------------------
SUPPORTED_EXTENSIONS: FrozenSet[str] = frozenset(
    {
        # Core languages
        ".py", ".js", ".ts", ".tsx", ".jsx", ".mjs", ".cjs", ".java", ".go",
        ".rs", ".rb", ".php", ".c", ".h", ".cpp", ".cc", ".hpp", ".cs",
        ".kt", ".swift", ".scala",
        # Shell/scripting
        ".sh", ".ps1", ".psm1", ".pl", ".lua",
        # Data/config
        ".sql", ".md", ".yml", ".yaml", ".toml", ".ini", ".cfg", ".json", ".xml",
        # Web
        ".html", ".htm", ".css", ".scss", ".sass", ".less", ".vue", ".svelte",
        # Infrastructure
        ".tf", ".tfvars", ".hcl", ".dockerfile",
        # Additional languages
        ".elm", ".dart", ".r", ".m", ".clj", ".cljs", ".hs", ".ml", ".zig",
        ".nim", ".ex", ".exs", ".erl",
    }
)


def _parse_extensions(raw: Optional[str]) -> FrozenSet[str]:
    if not raw or not raw.strip():
        return SUPPORTED_EXTENSIONS
    exts = set()
    for item in raw.split(","):
        item = item.strip().lower()
        if not item:
            continue
        exts.add(item if item.startswith(".") else f".{item}")
    return frozenset(exts) or SUPPORTED_EXTENSIONS


def is_supported_file(file_path: str, extensions: FrozenSet[str] = SUPPORTED_EXTENSIONS) -> bool:
    """Check a repository-relative path against the extension allow-list."""
    suffix = Path(file_path).suffix.lower()
    return bool(suffix) and suffix in extensions


@dataclass(frozen=True)
class IndexerSettings:
    api_url: str = DEFAULT_API_URL
    timeout: int = DEFAULT_TIMEOUT_SECS
    max_retries: int = DEFAULT_MAX_RETRIES
    max_concurrent_files: int = MANAGED_MAX_CONCURRENT_FILES
    default_branch_override: Optional[str] = None
    use_polling: bool = False
    extensions: FrozenSet[str] = field(default=SUPPORTED_EXTENSIONS)
    projects_file: Path = DEFAULT_PROJECTS_FILE

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "IndexerSettings":
        env = os.environ if env is None else env
        max_concurrent = safe_int(
            env.get("MANAGED_INDEXER_MAX_CONCURRENT_FILES"),
            MANAGED_MAX_CONCURRENT_FILES,
            logger,
            "MANAGED_INDEXER_MAX_CONCURRENT_FILES",
        )
        return cls(
            api_url=(env.get("MANAGED_INDEXER_API_URL") or DEFAULT_API_URL).rstrip("/"),
            timeout=safe_int(env.get("MANAGED_INDEXER_TIMEOUT"), DEFAULT_TIMEOUT_SECS, logger, "MANAGED_INDEXER_TIMEOUT"),
            max_retries=safe_int(env.get("MANAGED_INDEXER_MAX_RETRIES"), DEFAULT_MAX_RETRIES, logger, "MANAGED_INDEXER_MAX_RETRIES"),
            max_concurrent_files=max(1, max_concurrent),
            default_branch_override=(env.get("MANAGED_INDEXER_DEFAULT_BRANCH") or "").strip() or None,
            use_polling=safe_bool(env.get("MANAGED_INDEXER_USE_POLLING"), False, logger, "MANAGED_INDEXER_USE_POLLING"),
            extensions=_parse_extensions(env.get("MANAGED_INDEXER_EXTENSIONS")),
            projects_file=Path(env.get("MANAGED_INDEXER_PROJECTS_FILE") or DEFAULT_PROJECTS_FILE).expanduser(),
        )
