"""Repository port and its GitHub REST adapter.

Only the low-level git data API is used: refs, commits, blobs and trees.
Every response refreshes the shared ``RateLimitState`` before it is
classified, so the executor's preflight check sees the latest quota.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
import re
import time
from typing import Any, Protocol

import httpx

from deployease.errors import ConfigurationError, NotFoundError
from deployease.observability.logging import Logger, NullLogger, with_span
from deployease.remote.http import raise_for_remote_status, transport_error
from deployease.resilience.rate_limit import RateLimitState

_REPO_URL = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")


def parse_repository_url(url: str | None) -> tuple[str, str]:
    if not url:
        raise ConfigurationError("REPOSITORY_URL is not configured")
    match = _REPO_URL.search(url.strip())
    if not match:
        raise ConfigurationError(f"Invalid repository URL: {url}")
    return match.group(1), match.group(2)


@dataclass(slots=True)
class CommitInfo:
    sha: str
    tree_sha: str
    message: str = ""
    parents: list[str] = field(default_factory=list)
    date: str | None = None
    url: str | None = None
    author: str | None = None


@dataclass(slots=True)
class TreeEntry:
    path: str
    blob_sha: str
    mode: str = "100644"


class RepositoryClient(Protocol):
    """Remote version-control operations the core depends on."""

    async def get_repository(self) -> dict[str, Any]: ...
    async def list_branches(self) -> list[str]: ...
    async def get_ref(self, branch: str) -> str: ...
    async def create_ref(self, branch: str, sha: str) -> None: ...
    async def update_ref(self, branch: str, sha: str, *, force: bool = False) -> None: ...
    async def get_commit(self, sha: str) -> CommitInfo: ...
    async def create_blob(self, content: str, encoding: str = "utf-8") -> str: ...
    async def create_tree(self, base_tree: str, entries: list[TreeEntry]) -> str: ...
    async def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> CommitInfo: ...
    async def list_commits(self, branch: str, per_page: int = 10) -> list[CommitInfo]: ...
    async def get_file_content(self, path: str, ref: str) -> str: ...
    async def refresh_rate_limit(self) -> RateLimitState: ...
    async def aclose(self) -> None: ...


def _commit_from_payload(payload: dict[str, Any]) -> CommitInfo:
    # /git/commits returns the commit at top level, /commits nests it.
    inner = payload.get("commit", payload)
    author = inner.get("author") or {}
    tree = inner.get("tree") or {}
    return CommitInfo(
        sha=payload["sha"],
        tree_sha=tree.get("sha", ""),
        message=inner.get("message", ""),
        parents=[p["sha"] for p in payload.get("parents", [])],
        date=author.get("date"),
        url=payload.get("html_url") or payload.get("url"),
        author=author.get("name"),
    )


def _branch_fields(
    self: GitHubClient, branch: str | None = None, *args: Any, **kwargs: Any
) -> dict[str, Any]:
    return {"repo": self.full_name, "branch": branch}


def _repo_fields(self: GitHubClient, *args: Any, **kwargs: Any) -> dict[str, Any]:
    return {"repo": self.full_name}


class GitHubClient:
    def __init__(
        self,
        token: str | None,
        repository_url: str | None,
        *,
        rate_limit: RateLimitState,
        api_url: str = "https://api.github.com",
        timeout: float = 15.0,
        logger: Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not token:
            raise ConfigurationError("GITHUB_TOKEN is not configured")
        self.owner, self.repo = parse_repository_url(repository_url)
        self.rate_limit = rate_limit
        self._logger = logger or NullLogger()
        self._http = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "deployease",
            },
        )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _repo_path(self, suffix: str = "") -> str:
        return f"/repos/{self.owner}/{self.repo}{suffix}"

    async def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise transport_error(exc, operation) from exc
        self.rate_limit.update_from_headers(response.headers, time.time())
        raise_for_remote_status(response, operation)
        return response

    @with_span("github.repository", fields_fn=_repo_fields)
    async def get_repository(self) -> dict[str, Any]:
        response = await self._request("GET", self._repo_path(), "get repository")
        return response.json()

    @with_span("github.rate_limit", fields_fn=_repo_fields)
    async def refresh_rate_limit(self) -> RateLimitState:
        response = await self._request("GET", "/rate_limit", "get rate limit")
        core = response.json().get("resources", {}).get("core", {})
        self.rate_limit.update(
            remaining=core.get("remaining"),
            reset_at=float(core["reset"]) if "reset" in core else None,
            limit=core.get("limit"),
            now=time.time(),
        )
        return self.rate_limit

    @with_span("github.list_branches", fields_fn=_repo_fields)
    async def list_branches(self) -> list[str]:
        response = await self._request(
            "GET", self._repo_path("/branches"), "list branches", params={"per_page": 100}
        )
        return [item["name"] for item in response.json()]

    @with_span("github.get_ref", fields_fn=_branch_fields)
    async def get_ref(self, branch: str) -> str:
        response = await self._request(
            "GET", self._repo_path(f"/git/ref/heads/{branch}"), f"get ref {branch}"
        )
        return response.json()["object"]["sha"]

    @with_span("github.create_ref", fields_fn=_branch_fields)
    async def create_ref(self, branch: str, sha: str) -> None:
        await self._request(
            "POST",
            self._repo_path("/git/refs"),
            f"create ref {branch}",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )

    @with_span("github.update_ref", fields_fn=_branch_fields)
    async def update_ref(self, branch: str, sha: str, *, force: bool = False) -> None:
        await self._request(
            "PATCH",
            self._repo_path(f"/git/refs/heads/{branch}"),
            f"update ref {branch}",
            json={"sha": sha, "force": force},
        )

    @with_span("github.get_commit", fields_fn=_repo_fields)
    async def get_commit(self, sha: str) -> CommitInfo:
        response = await self._request(
            "GET", self._repo_path(f"/git/commits/{sha}"), f"get commit {sha[:7]}"
        )
        return _commit_from_payload(response.json())

    @with_span("github.create_blob", fields_fn=_repo_fields)
    async def create_blob(self, content: str, encoding: str = "utf-8") -> str:
        response = await self._request(
            "POST",
            self._repo_path("/git/blobs"),
            "create blob",
            json={"content": content, "encoding": encoding},
        )
        return response.json()["sha"]

    @with_span("github.create_tree", fields_fn=_repo_fields)
    async def create_tree(self, base_tree: str, entries: list[TreeEntry]) -> str:
        response = await self._request(
            "POST",
            self._repo_path("/git/trees"),
            "create tree",
            json={
                "base_tree": base_tree,
                "tree": [
                    {"path": e.path, "mode": e.mode, "type": "blob", "sha": e.blob_sha}
                    for e in entries
                ],
            },
        )
        return response.json()["sha"]

    @with_span("github.create_commit", fields_fn=_repo_fields)
    async def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> CommitInfo:
        response = await self._request(
            "POST",
            self._repo_path("/git/commits"),
            "create commit",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        return _commit_from_payload(response.json())

    @with_span("github.list_commits", fields_fn=_branch_fields)
    async def list_commits(self, branch: str, per_page: int = 10) -> list[CommitInfo]:
        response = await self._request(
            "GET",
            self._repo_path("/commits"),
            f"list commits {branch}",
            params={"sha": branch, "per_page": per_page},
        )
        return [_commit_from_payload(item) for item in response.json()]

    @with_span("github.get_file", fields_fn=_repo_fields)
    async def get_file_content(self, path: str, ref: str) -> str:
        response = await self._request(
            "GET",
            self._repo_path(f"/contents/{path}"),
            f"get file {path}",
            params={"ref": ref},
        )
        payload = response.json()
        if isinstance(payload, list):
            raise NotFoundError(f"{path} is a directory, not a file")
        return base64.b64decode(payload.get("content", "")).decode("utf-8")

    async def aclose(self) -> None:
        await self._http.aclose()
