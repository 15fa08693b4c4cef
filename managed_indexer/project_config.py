"""Resolve the remote project id for a working copy.

Lookup order:

1. ``<root>/.managed-indexer/config.json`` containing ``{"project": {"id": ...}}``
2. the user mapping file (``MANAGED_INDEXER_PROJECTS_FILE``), a JSON object
   mapping normalized repository URLs to project ids
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from managed_indexer.config import DEFAULT_PROJECTS_FILE, PROJECT_CONFIG_DIR, PROJECT_CONFIG_FILE
from managed_indexer.errors import ConfigurationError
from managed_indexer.git_utils import sanitize_repository_url
from managed_indexer.logger import get_logger

logger = get_logger(__name__)

_SCP_LIKE_RE = re.compile(r"^(?:(?P<user>[^@/]+)@)?(?P<host>[^:/]+):(?P<path>(?!/).+)$")


@dataclass(frozen=True)
class ProjectConfig:
    project_id: str
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {"project": {"id": self.project_id}}


def normalize_repository_url(url: Optional[str]) -> Optional[str]:
    """Canonical form used as the mapping key.

    ``git@github.com:Org/Repo.git`` and ``https://user@GitHub.com/Org/Repo/``
    both become ``https://github.com/Org/Repo``.
    """
    if not url or not url.strip():
        return None
    url = url.strip()
    if "://" not in url:
        m = _SCP_LIKE_RE.match(url)
        if not m:
            return url.rstrip("/")
        url = f"https://{m.group('host')}/{m.group('path')}"
    url = sanitize_repository_url(url)
    scheme, _, rest = url.partition("://")
    host, _, path = rest.partition("/")
    if scheme.lower() in ("ssh", "git", "git+ssh", "http"):
        scheme = "https"
    host = host.lower()
    if ":" in host:
        # Drop ssh ports; https default port too
        name, _, port = host.partition(":")
        if not port.isdigit() or port in ("22", "443"):
            host = name
    path = path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return f"{scheme.lower()}://{host}/{path}" if path else f"{scheme.lower()}://{host}"


def _read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e


def _from_project_file(root: Path) -> Optional[ProjectConfig]:
    config_path = root / PROJECT_CONFIG_DIR / PROJECT_CONFIG_FILE
    if not config_path.is_file():
        return None
    data = _read_json(config_path)
    project = data.get("project") if isinstance(data, dict) else None
    project_id = project.get("id") if isinstance(project, dict) else None
    if not project_id:
        logger.debug(f"[project_config] {config_path} has no project.id")
        return None
    return ProjectConfig(project_id=str(project_id), source=str(config_path))


def _from_mapping_file(projects_file: Path, repository_url: Optional[str]) -> Optional[ProjectConfig]:
    key = normalize_repository_url(repository_url)
    if not key or not projects_file.is_file():
        return None
    data = _read_json(projects_file)
    if not isinstance(data, dict):
        raise ConfigurationError(f"{projects_file} must contain a JSON object")
    for raw_url, project_id in data.items():
        if normalize_repository_url(raw_url) == key and project_id:
            return ProjectConfig(project_id=str(project_id), source=str(projects_file))
    return None


def get_project_config(
    root: Union[str, os.PathLike],
    repository_url: Optional[str],
    projects_file: Optional[Union[str, os.PathLike]] = None,
) -> Optional[ProjectConfig]:
    """Project config for ``root``, or ``None`` when the repository is not configured.

    Raises:
        ConfigurationError: a config file exists but cannot be parsed
    """
    found = _from_project_file(Path(root))
    if found is not None:
        return found
    mapping = Path(projects_file).expanduser() if projects_file else DEFAULT_PROJECTS_FILE.expanduser()
    return _from_mapping_file(mapping, repository_url)


__all__ = ["ProjectConfig", "get_project_config", "normalize_repository_url"]
