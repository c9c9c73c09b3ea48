"""Builds one remote commit from a file set: blob → tree → commit → ref."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from deployease.contracts.models import FileSpec
from deployease.contracts.types import Branch
from deployease.errors import NotFoundError
from deployease.remote.github import CommitInfo, RepositoryClient, TreeEntry
from deployease.resilience.retry import RetryExecutor

logger = logging.getLogger(__name__)

COMMIT_STEP_RETRIES = 4
BLOB_CONCURRENCY = 8


class CommitBuilder:
    def __init__(
        self,
        repo: RepositoryClient,
        executor: RetryExecutor,
        *,
        commit_retries: int = COMMIT_STEP_RETRIES,
        blob_concurrency: int = BLOB_CONCURRENCY,
    ) -> None:
        self.repo = repo
        self.executor = executor
        self._commit_retries = commit_retries
        self._blob_slots = asyncio.Semaphore(blob_concurrency)

    async def branch_tip(self, branch: Branch) -> str:
        result = await self.executor.execute(
            lambda: self.repo.get_ref(branch.value), f"github.get_ref.{branch.value}"
        )
        return result.value

    async def ensure_branch(self, branch: Branch) -> bool:
        """Create ``branch`` from the ``main`` tip when it does not exist.

        Returns True when the branch was created. A missing ``main`` is a
        NotFoundError: there is nothing to branch from.
        """
        try:
            await self.branch_tip(branch)
            return False
        except NotFoundError:
            if branch is Branch.MAIN:
                raise
        main_sha = await self.branch_tip(Branch.MAIN)
        await self.executor.execute(
            lambda: self.repo.create_ref(branch.value, main_sha), f"github.create_ref.{branch.value}"
        )
        logger.info(
            "branch.created",
            extra={"extra": {"branch": branch.value, "from_sha": main_sha}},
        )
        return True

    async def _create_blob(self, spec: FileSpec) -> TreeEntry:
        async with self._blob_slots:
            result = await self.executor.execute(
                lambda: self.repo.create_blob(spec.content, spec.encoding), "github.create_blob"
            )
        return TreeEntry(path=spec.path, blob_sha=result.value)

    async def commit_files(
        self, branch: Branch, files: Sequence[FileSpec], message: str
    ) -> CommitInfo:
        """Commit ``files`` on top of the current tip of ``branch``.

        The final ref update is not forced: if the branch moved since its tip
        was read, the provider rejects it and ConflictError propagates.
        Objects created before a failing step are left unreferenced.
        """
        tip = await self.branch_tip(branch)
        base = (
            await self.executor.execute(lambda: self.repo.get_commit(tip), "github.get_commit")
        ).value
        entries = await asyncio.gather(*(self._create_blob(spec) for spec in files))
        tree_sha = (
            await self.executor.execute(
                lambda: self.repo.create_tree(base.tree_sha, list(entries)), "github.create_tree"
            )
        ).value
        commit = (
            await self.executor.execute(
                lambda: self.repo.create_commit(message, tree_sha, [tip]),
                "github.create_commit",
                max_retries=self._commit_retries,
            )
        ).value
        await self.executor.execute(
            lambda: self.repo.update_ref(branch.value, commit.sha, force=False),
            f"github.update_ref.{branch.value}",
            max_retries=self._commit_retries,
        )
        logger.info(
            "commit.created",
            extra={
                "extra": {
                    "branch": branch.value,
                    "commit": commit.sha,
                    "parent": tip,
                    "files": len(files),
                }
            },
        )
        return commit
