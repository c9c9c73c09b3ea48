"""Hand-written fakes shared by the test modules."""

from __future__ import annotations

import base64
from collections import Counter
from datetime import datetime, timedelta, timezone
import hashlib
from itertools import count
from typing import Any

from deployease.config import AppSettings
from deployease.errors import ConflictError, NotFoundError
from deployease.remote.github import CommitInfo, TreeEntry
from deployease.resilience.rate_limit import RateLimitState
from deployease.runtime import build_runtime

WRITE_METHODS = ("create_ref", "update_ref", "create_blob", "create_tree", "create_commit")
EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeRepository:
    """In-memory git object store implementing the repository port.

    Seeds ``main``, ``blue`` and ``green`` from one root commit. Exceptions
    queued in ``fail_next[method]`` are raised by the next calls to that method.
    """

    def __init__(self, *, branches: tuple[str, ...] = ("main", "blue", "green")) -> None:
        self._ids = count(1)
        self.blobs: dict[str, str] = {}
        self.trees: dict[str, dict[str, str]] = {}
        self.commits: dict[str, CommitInfo] = {}
        self.refs: dict[str, str] = {}
        self.calls: Counter[str] = Counter()
        self.fail_next: dict[str, list[Exception]] = {}
        self.rate_limit = RateLimitState()
        self.closed = False

        empty_tree = self._new_sha("tree")
        self.trees[empty_tree] = {}
        root = self._commit("Initial commit", empty_tree, [])
        for branch in branches:
            self.refs[branch] = root.sha

    # ----- helpers -----

    def _new_sha(self, kind: str) -> str:
        return hashlib.sha1(f"{kind}-{next(self._ids)}".encode()).hexdigest()

    def _commit(self, message: str, tree_sha: str, parents: list[str]) -> CommitInfo:
        sha = self._new_sha("commit")
        commit = CommitInfo(
            sha=sha,
            tree_sha=tree_sha,
            message=message,
            parents=list(parents),
            date=(EPOCH + timedelta(minutes=len(self.commits))).isoformat(),
            url=f"https://github.com/acme/site/commit/{sha}",
            author="deployease",
        )
        self.commits[sha] = commit
        return commit

    def _track(self, name: str) -> None:
        self.calls[name] += 1
        queue = self.fail_next.get(name)
        if queue:
            raise queue.pop(0)

    def fail(self, method: str, *errors: Exception) -> None:
        self.fail_next.setdefault(method, []).extend(errors)

    def _resolve(self, ref: str) -> str:
        if ref in self.refs:
            return self.refs[ref]
        matches = [sha for sha in self.commits if sha.startswith(ref)]
        if len(matches) != 1:
            raise NotFoundError(f"unknown ref {ref}")
        return matches[0]

    def _is_ancestor(self, ancestor: str, descendant: str) -> bool:
        pending = [descendant]
        seen: set[str] = set()
        while pending:
            sha = pending.pop()
            if sha == ancestor:
                return True
            if sha in seen or sha not in self.commits:
                continue
            seen.add(sha)
            pending.extend(self.commits[sha].parents)
        return False

    @property
    def writes(self) -> int:
        return sum(self.calls[name] for name in WRITE_METHODS)

    def file_at(self, branch: str, path: str) -> str | None:
        tree = self.trees[self.commits[self.refs[branch]].tree_sha]
        blob = tree.get(path)
        return self.blobs[blob] if blob else None

    def seed(self, branch: str, files: dict[str, str], message: str = "seed") -> str:
        """Commit ``files`` directly on ``branch`` without counting calls."""
        tip = self.refs[branch]
        tree = dict(self.trees[self.commits[tip].tree_sha])
        for path, content in files.items():
            blob = self._new_sha("blob")
            self.blobs[blob] = content
            tree[path] = blob
        tree_sha = self._new_sha("tree")
        self.trees[tree_sha] = tree
        commit = self._commit(message, tree_sha, [tip])
        self.refs[branch] = commit.sha
        return commit.sha

    # ----- RepositoryClient -----

    async def get_repository(self) -> dict[str, Any]:
        self._track("get_repository")
        return {"full_name": "acme/site", "default_branch": "main"}

    async def list_branches(self) -> list[str]:
        self._track("list_branches")
        return list(self.refs)

    async def get_ref(self, branch: str) -> str:
        self._track("get_ref")
        if branch not in self.refs:
            raise NotFoundError(f"get ref {branch}: resource not found")
        return self.refs[branch]

    async def create_ref(self, branch: str, sha: str) -> None:
        self._track("create_ref")
        if branch in self.refs:
            raise ConflictError(f"create ref {branch}: reference already exists")
        self.refs[branch] = sha

    async def update_ref(self, branch: str, sha: str, *, force: bool = False) -> None:
        self._track("update_ref")
        if branch not in self.refs:
            raise NotFoundError(f"update ref {branch}: resource not found")
        if not force and not self._is_ancestor(self.refs[branch], sha):
            raise ConflictError(f"update ref {branch}: branch moved concurrently")
        self.refs[branch] = sha

    async def get_commit(self, sha: str) -> CommitInfo:
        self._track("get_commit")
        return self.commits[self._resolve(sha)]

    async def create_blob(self, content: str, encoding: str = "utf-8") -> str:
        self._track("create_blob")
        blob = self._new_sha("blob")
        self.blobs[blob] = (
            base64.b64decode(content).decode("utf-8") if encoding == "base64" else content
        )
        return blob

    async def create_tree(self, base_tree: str, entries: list[TreeEntry]) -> str:
        self._track("create_tree")
        tree = dict(self.trees[base_tree])
        for entry in entries:
            tree[entry.path] = entry.blob_sha
        tree_sha = self._new_sha("tree")
        self.trees[tree_sha] = tree
        return tree_sha

    async def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> CommitInfo:
        self._track("create_commit")
        return self._commit(message, tree_sha, parents)

    async def list_commits(self, branch: str, per_page: int = 10) -> list[CommitInfo]:
        self._track("list_commits")
        if branch not in self.refs:
            raise NotFoundError(f"list commits {branch}: resource not found")
        history: list[CommitInfo] = []
        sha: str | None = self.refs[branch]
        while sha and len(history) < per_page:
            commit = self.commits[sha]
            history.append(commit)
            sha = commit.parents[0] if commit.parents else None
        return history

    async def get_file_content(self, path: str, ref: str) -> str:
        self._track("get_file_content")
        tree = self.trees[self.commits[self._resolve(ref)].tree_sha]
        if path not in tree:
            raise NotFoundError(f"get file {path}: resource not found")
        return self.blobs[tree[path]]

    async def refresh_rate_limit(self) -> RateLimitState:
        self._track("refresh_rate_limit")
        return self.rate_limit

    async def aclose(self) -> None:
        self.closed = True


class FakeHosting:
    def __init__(
        self,
        *,
        enabled: bool = True,
        purge_error: Exception | None = None,
        deploy_error: Exception | None = None,
    ) -> None:
        self.enabled = enabled
        self.purge_error = purge_error
        self.deploy_error = deploy_error
        self.purges = 0
        self.builds: list[str] = []
        self.deploys: dict[str, dict[str, Any]] = {}
        self.closed = False

    async def verify_connection(self) -> dict[str, Any]:
        if not self.enabled:
            return {"connected": False, "error": "Netlify is not configured"}
        return {"connected": True, "siteName": "site", "url": "https://site.netlify.app"}

    async def trigger_deploy(self, branch: str) -> dict[str, Any]:
        if self.deploy_error is not None:
            raise self.deploy_error
        self.builds.append(branch)
        return {"success": True, "deploy_id": f"build-{len(self.builds)}", "branch": branch}

    async def latest_deploy(self, branch: str) -> dict[str, Any] | None:
        return self.deploys.get(branch)

    async def purge_cache(self) -> None:
        if self.purge_error is not None:
            raise self.purge_error
        self.purges += 1

    async def aclose(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]


class RecordingLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def info(self, event: str, **fields: Any) -> None:
        self.records.append(("info", event, fields))

    def warn(self, event: str, **fields: Any) -> None:
        self.records.append(("warn", event, fields))

    def error(self, event: str, **fields: Any) -> None:
        self.records.append(("error", event, fields))

    def events(self) -> list[str]:
        return [event for _, event, _ in self.records]


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def settings_for_tests(**overrides: Any) -> AppSettings:
    values: dict[str, Any] = {
        "github_token": "test-token",
        "repository_url": "https://github.com/acme/site",
        "netlify_token": "netlify-token",
        "netlify_site_id": "site-id",
        "netlify_site_name": "site",
        "cors_origins": ["http://localhost:3000"],
    }
    values.update(overrides)
    return AppSettings(**values)


def make_runtime(repo=None, hosting=None, **overrides: Any):
    return build_runtime(
        settings_for_tests(**overrides),
        repo=repo if repo is not None else FakeRepository(),
        hosting=hosting if hosting is not None else FakeHosting(),
        sleep=SleepRecorder(),
    )
