"""Manifest command: show what the server already has indexed for a root."""
from __future__ import annotations

import argparse

from managed_indexer import git_utils
from managed_indexer.api_client import ApiClient
from managed_indexer.cli.core import output_json, resolve_roots, run_async, setup_environment
from managed_indexer.errors import ConfigurationError, ProjectNotConfiguredError
from managed_indexer.host import EnvWorkspaceHost
from managed_indexer.project_config import get_project_config


async def _manifest(root: str, branch, env_file, settings):
    credentials = EnvWorkspaceHost([root], env_file=env_file).get_credentials()
    if not credentials.complete:
        raise ConfigurationError("MANAGED_INDEXER_TOKEN and MANAGED_INDEXER_ORGANIZATION_ID must be set")

    info = await git_utils.get_git_repository_info(root)
    branch = branch or await git_utils.get_current_branch(root)
    project = get_project_config(root, info.repository_url, settings.projects_file)
    if project is None:
        raise ProjectNotConfiguredError(f"No project ID found for {root}")

    with ApiClient(settings.api_url, settings.timeout, settings.max_retries) as api:
        manifest = await api.aget_server_manifest(
            credentials.organization_id, project.project_id, branch, credentials.token
        )
    return {
        "ok": True,
        "root": root,
        "projectId": project.project_id,
        "branch": branch,
        "fileCount": len(manifest),
        **manifest.to_dict(),
    }


def cmd_manifest(args: argparse.Namespace) -> None:
    settings = setup_environment(args)
    root = resolve_roots([args.root])[0]
    output_json(run_async(_manifest(root, getattr(args, "branch", None), getattr(args, "env_file", None), settings)))
