"""HTTP client for the remote code-indexing service.

Blocking calls go through a ``requests.Session`` with urllib3 retries on
throttling and server errors; the ``a*`` variants run them on a worker
thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from managed_indexer.config import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_SECS
from managed_indexer.errors import ApiError
from managed_indexer.logger import get_logger

logger = get_logger(__name__)

MANIFEST_PATH = "/api/code-indexing/manifest"
UPSERT_PATH = "/api/code-indexing/upsert-by-file"
ORGANIZATION_PATH = "/api/organizations/{organization_id}"

TESTER_HEADER = "X-Tester-Warnings"
TESTER_HEADER_VALUE = "SUPPRESS"

_RETRY_STATUSES = (429, 500, 502, 503, 504)


@dataclass(frozen=True)
class ManifestFile:
    file_path: str
    file_hash: str


@dataclass(frozen=True)
class ServerManifest:
    """Remote record of already-indexed ``(file_path, file_hash)`` pairs for one branch."""

    files: Tuple[ManifestFile, ...] = ()
    _index: FrozenSet[Tuple[str, str]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        files = tuple(self.files)
        object.__setattr__(self, "files", files)
        object.__setattr__(self, "_index", frozenset((f.file_path, f.file_hash) for f in files))

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "ServerManifest":
        files = []
        for item in payload.get("files") or ():
            path = item.get("filePath")
            file_hash = item.get("fileHash")
            if path and file_hash:
                files.append(ManifestFile(file_path=str(path), file_hash=str(file_hash)))
        return cls(files=tuple(files))

    def contains(self, file_path: str, file_hash: str) -> bool:
        return (file_path, file_hash) in self._index

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[ManifestFile]:
        return iter(self.files)

    def to_dict(self) -> Dict[str, Any]:
        return {"files": [{"filePath": f.file_path, "fileHash": f.file_hash} for f in self.files]}


@dataclass(frozen=True)
class UpsertFileRequest:
    file_buffer: bytes = field(repr=False)
    file_hash: str
    file_path: str
    git_branch: str
    is_base_branch: bool
    organization_id: str
    project_id: str
    token: str = field(repr=False)


@dataclass(frozen=True)
class Organization:
    id: str
    name: str = ""
    settings: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "Organization":
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name") or ""),
            settings=dict(payload.get("settings") or {}),
        )


def is_code_indexing_enabled(organization: Optional[Organization]) -> bool:
    if organization is None:
        return False
    return bool(organization.settings.get("code_indexing_enabled", False))


def _error_message(response: requests.Response) -> str:
    try:
        detail = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(detail, dict):
        err = detail.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
        if detail.get("message"):
            return str(detail["message"])
    return str(detail)[:200]


class ApiClient:
    """Client for the manifest, upsert and organization endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: int = DEFAULT_TIMEOUT_SECS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        if session is None:
            session = requests.Session()
            retry_strategy = Retry(
                total=max_retries,
                backoff_factor=1,
                status_forcelist=list(_RETRY_STATUSES),
                allowed_methods=None,
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _auth_headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def _request(self, method: str, path: str, what: str, **kwargs: Any) -> requests.Response:
        connect_timeout = min(self.timeout, 10)
        try:
            response = self.session.request(
                method,
                self._url(path),
                timeout=(connect_timeout, self.timeout),
                **kwargs,
            )
        except requests.exceptions.Timeout as e:
            raise ApiError(f"{what} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise ApiError(f"{what}: cannot connect to {self.base_url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ApiError(f"{what} failed: {e}") from e
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response, what: str) -> None:
        if 200 <= response.status_code < 300:
            return
        message = _error_message(response)
        raise ApiError(
            f"{what} failed with HTTP {response.status_code}: {message}",
            status_code=response.status_code,
            body=response.text[:1000],
        )

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------
    def get_server_manifest(self, organization_id: str, project_id: str, branch: str, token: str) -> ServerManifest:
        what = "Manifest fetch"
        response = self._request(
            "GET",
            MANIFEST_PATH,
            what,
            params={"organizationId": organization_id, "projectId": project_id, "gitBranch": branch},
            headers=self._auth_headers(token),
        )
        self._raise_for_status(response, what)
        try:
            payload = response.json()
        except ValueError as e:
            raise ApiError(f"{what} returned invalid JSON", status_code=response.status_code) from e
        manifest = ServerManifest.from_json(payload or {})
        logger.debug(f"[api_client] manifest for {project_id}@{branch}: {len(manifest)} file(s)")
        return manifest

    def upsert_file(self, request: UpsertFileRequest) -> None:
        what = f"Upsert of {request.file_path}"
        data = {
            "fileHash": request.file_hash,
            "filePath": request.file_path,
            "gitBranch": request.git_branch,
            "isBaseBranch": "true" if request.is_base_branch else "false",
            "organizationId": request.organization_id,
            "projectId": request.project_id,
        }
        files = {"file": (request.file_path.rsplit("/", 1)[-1], request.file_buffer, "application/octet-stream")}
        response = self._request(
            "POST",
            UPSERT_PATH,
            what,
            data=data,
            files=files,
            headers=self._auth_headers(request.token),
        )
        self._raise_for_status(response, what)

    def fetch_organization(
        self,
        token: str,
        organization_id: str,
        tester_warnings_disabled_until: Optional[int] = None,
    ) -> Optional[Organization]:
        """Look up an organization; ``None`` when the server does not know it.

        ``tester_warnings_disabled_until`` is an epoch-millisecond deadline;
        while it lies in the future the tester suppression header is sent.
        """
        what = f"Organization lookup for {organization_id}"
        headers = self._auth_headers(token)
        if tester_warnings_disabled_until and tester_warnings_disabled_until > time.time() * 1000:
            headers[TESTER_HEADER] = TESTER_HEADER_VALUE
        response = self._request(
            "GET",
            ORGANIZATION_PATH.format(organization_id=organization_id),
            what,
            headers=headers,
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, what)
        try:
            return Organization.from_json(response.json() or {})
        except ValueError as e:
            raise ApiError(f"{what} returned invalid JSON", status_code=response.status_code) from e

    # ------------------------------------------------------------------
    # Async wrappers
    # ------------------------------------------------------------------
    async def aget_server_manifest(self, organization_id: str, project_id: str, branch: str, token: str) -> ServerManifest:
        return await asyncio.to_thread(self.get_server_manifest, organization_id, project_id, branch, token)

    async def aupsert_file(self, request: UpsertFileRequest) -> None:
        await asyncio.to_thread(self.upsert_file, request)

    async def afetch_organization(
        self,
        token: str,
        organization_id: str,
        tester_warnings_disabled_until: Optional[int] = None,
    ) -> Optional[Organization]:
        return await asyncio.to_thread(
            self.fetch_organization, token, organization_id, tester_warnings_disabled_until
        )


__all__ = [
    "ApiClient",
    "ManifestFile",
    "Organization",
    "ServerManifest",
    "UpsertFileRequest",
    "is_code_indexing_enabled",
]
