"""Deployment entry point: dedup, commit, history and rollback per branch."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import re
from typing import Any, Iterable

from deployease.contracts.models import DeploymentRecord, FileSpec, HistoryPage, utcnow
from deployease.contracts.types import DEPLOYABLE_BRANCHES, Branch
from deployease.deploy.commit_builder import CommitBuilder
from deployease.deploy.files import file_set_hash, parse_branch, validate_files
from deployease.deploy.store import DeploymentStore, InMemoryDeploymentStore
from deployease.errors import (
    DeployEaseError,
    NotFoundError,
    ValidationError,
    raise_operation_failure,
)
from deployease.observability.metrics import DEPLOYMENTS
from deployease.observability.telemetry import get_tracer
from deployease.orchestrator.locks import KeyedLock
from deployease.remote.github import CommitInfo

logger = logging.getLogger(__name__)

DEDUPE_TTL_SECONDS = 5 * 60
HISTORY_TTL_SECONDS = 5 * 60
DEFAULT_HISTORY_LIMIT = 10
MAX_HISTORY_LIMIT = 30

_COMMIT_ID = re.compile(r"^[0-9a-fA-F]{7,40}$")


def _parse_commit_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def history_key(branch: Branch, limit: int) -> str:
    return f"history-{branch.value}-{limit}"


class DeploymentRecorder:
    def __init__(
        self,
        builder: CommitBuilder,
        store: DeploymentStore | None = None,
        *,
        dedupe_ttl: float = DEDUPE_TTL_SECONDS,
        history_ttl: float = HISTORY_TTL_SECONDS,
    ) -> None:
        self.builder = builder
        self.repo = builder.repo
        self.executor = builder.executor
        self.cache = builder.executor.cache
        self.store = store or InMemoryDeploymentStore()
        self._dedupe_ttl = dedupe_ttl
        self._history_ttl = history_ttl
        self._locks = KeyedLock()
        self._tracer = get_tracer(__name__)

    async def deploy(
        self,
        branch: str | Branch,
        files: Iterable[FileSpec],
        message: str | None = None,
        *,
        dedupe: bool = True,
        allow_main: bool = False,
    ) -> DeploymentRecord:
        """Commit ``files`` to ``branch`` and record the deployment.

        The same file set sent to the same branch within the dedup window
        returns the earlier record without touching the remote.
        """
        target = parse_branch(branch, allow_main=allow_main)
        specs = validate_files(files)
        digest = file_set_hash(specs)
        dedupe_key = f"deploy-{target.value}-{digest}"

        async with self._locks.lock(target.value):
            if dedupe:
                hit = self.cache.get(dedupe_key)
                if hit is not None:
                    logger.info(
                        "deploy.deduplicated",
                        extra={"extra": {"branch": target.value, "commit": hit.value.commit_id}},
                    )
                    DEPLOYMENTS.labels(branch=target.value, outcome="deduplicated").inc()
                    return hit.value.model_copy(update={"deduplicated": True})

            summary = message or f"Deploy {len(specs)} file(s) to {target.value}"
            with self._tracer.start_as_current_span("deployment.commit") as span:
                span.set_attribute("branch", target.value)
                span.set_attribute("files", len(specs))
                try:
                    if target is not Branch.MAIN:
                        await self.builder.ensure_branch(target)
                    commit = await self.builder.commit_files(
                        target, specs, f"{summary} [{digest[:7]}]"
                    )
                except Exception as exc:
                    DEPLOYMENTS.labels(branch=target.value, outcome="failed").inc()
                    raise_operation_failure(f"Failed to deploy to {target.value}", exc)
                span.set_attribute("commit", commit.sha)

            record = DeploymentRecord(
                environment=target,
                commit_id=commit.sha,
                file_set_hash=digest,
                message=summary,
                url=commit.url,
            )
            self.store.append(record)
            self.cache.set(dedupe_key, record, self._dedupe_ttl)
            self.cache.invalidate_prefix(f"history-{target.value}-")
            DEPLOYMENTS.labels(branch=target.value, outcome="committed").inc()
            logger.info(
                "deploy.committed",
                extra={"extra": {"branch": target.value, "commit": commit.sha, "hash": digest}},
            )
            return record

    async def rollback_to_commit(self, branch: str | Branch, commit_id: str) -> DeploymentRecord:
        """Force the branch reference back to ``commit_id``.

        No new commit is created: history after the target is dropped from
        the branch. The commit is verified before the reference moves.
        """
        target = parse_branch(branch)
        if not commit_id or not _COMMIT_ID.match(commit_id):
            raise ValidationError(f"Invalid commit id: {commit_id!r}")

        async with self._locks.lock(target.value):
            with self._tracer.start_as_current_span("deployment.rollback") as span:
                span.set_attribute("branch", target.value)
                span.set_attribute("commit", commit_id)
                try:
                    commit = (
                        await self.executor.execute(
                            lambda: self.repo.get_commit(commit_id),
                            "github.get_commit",
                            max_retries=2,
                        )
                    ).value
                except NotFoundError as exc:
                    raise NotFoundError(f"Commit {commit_id} not found") from exc
                except Exception as exc:
                    raise_operation_failure(f"Failed to verify commit {commit_id}", exc)
                try:
                    await self.executor.execute(
                        lambda: self.repo.update_ref(target.value, commit.sha, force=True),
                        f"github.update_ref.{target.value}",
                        max_retries=3,
                    )
                except Exception as exc:
                    DEPLOYMENTS.labels(branch=target.value, outcome="rollback_failed").inc()
                    raise_operation_failure(f"Failed to rollback {target.value}", exc)

            committed_at = _parse_commit_date(commit.date)
            dropped = self.store.truncate_after(target, commit.sha, committed_at)
            self.cache.invalidate_prefix(f"history-{target.value}-")
            self.cache.invalidate_prefix(f"deploy-{target.value}-")
            known = self.store.find_by_commit(target, commit.sha)
            DEPLOYMENTS.labels(branch=target.value, outcome="rolled_back").inc()
            logger.info(
                "deploy.rolled_back",
                extra={"extra": {"branch": target.value, "commit": commit.sha, "dropped": dropped}},
            )
            return DeploymentRecord(
                environment=target,
                commit_id=commit.sha,
                file_set_hash=known.file_set_hash if known else None,
                timestamp=utcnow(),
                message=f"Rollback to {commit.sha[:7]}",
                url=commit.url,
            )

    def _to_record(self, branch: Branch, commit: CommitInfo) -> DeploymentRecord:
        known = self.store.find_by_commit(branch, commit.sha)
        return DeploymentRecord(
            environment=branch,
            commit_id=commit.sha,
            file_set_hash=known.file_set_hash if known else None,
            timestamp=_parse_commit_date(commit.date) or datetime.now(timezone.utc),
            message=commit.message,
            url=commit.url,
            author=commit.author,
        )

    async def history(self, branch: str | Branch, limit: int = DEFAULT_HISTORY_LIMIT) -> HistoryPage:
        """Newest-first deployments of ``branch``; a missing branch has no history."""
        target = parse_branch(branch, allow_main=True)
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        try:
            result = await self.executor.execute(
                lambda: self.repo.list_commits(target.value, per_page=limit),
                f"github.list_commits.{target.value}",
                cache_key=history_key(target, limit),
                cache_ttl=self._history_ttl,
            )
        except NotFoundError:
            return HistoryPage(environment=target)
        except Exception as exc:
            raise_operation_failure(f"Failed to fetch deployment history for {target.value}", exc)
        return HistoryPage(
            environment=target,
            deployments=[self._to_record(target, commit) for commit in result.value],
            stale=result.stale,
        )

    async def history_all(self, limit: int = DEFAULT_HISTORY_LIMIT) -> dict[str, HistoryPage]:
        results = await asyncio.gather(
            *(self.history(branch, limit) for branch in DEPLOYABLE_BRANCHES),
            return_exceptions=True,
        )
        pages: dict[str, HistoryPage] = {}
        for branch, result in zip(DEPLOYABLE_BRANCHES, results):
            if isinstance(result, DeployEaseError):
                logger.warning(
                    "history.unavailable",
                    extra={"extra": {"branch": branch.value, "error": str(result)}},
                )
                pages[branch.value] = HistoryPage(environment=branch, error=str(result))
            elif isinstance(result, BaseException):
                raise result
            else:
                pages[branch.value] = result
        return pages

    async def initialize_repository(self, required_files: Iterable[FileSpec] = ()) -> dict[str, Any]:
        """Ensure ``main``, ``blue`` and ``green`` exist and seed files on ``main``.

        ``required_files`` are committed to ``main`` only when absent there.
        """
        try:
            await self.executor.execute(self.repo.get_repository, "github.get_repository")
            branches = set(
                (await self.executor.execute(self.repo.list_branches, "github.list_branches")).value
            )
        except Exception as exc:
            raise_operation_failure("Failed to access repository", exc)
        if Branch.MAIN.value not in branches:
            raise NotFoundError("Branch 'main' does not exist; create it before initializing")

        status: dict[str, str] = {Branch.MAIN.value: "exists"}
        for branch in DEPLOYABLE_BRANCHES:
            if branch.value in branches:
                status[branch.value] = "exists"
                continue
            try:
                await self.builder.ensure_branch(branch)
            except Exception as exc:
                raise_operation_failure(f"Failed to create branch {branch.value}", exc)
            status[branch.value] = "created"

        missing: list[FileSpec] = []
        for spec in required_files:
            try:
                await self.executor.execute(
                    lambda: self.repo.get_file_content(spec.path, Branch.MAIN.value),
                    "github.get_file",
                )
            except NotFoundError:
                missing.append(spec)
            except Exception as exc:
                raise_operation_failure(f"Failed to read {spec.path} on main", exc)
        seeded: list[str] = []
        if missing:
            await self.deploy(
                Branch.MAIN, missing, "Initialize DeployEase routing", dedupe=False, allow_main=True
            )
            seeded = [spec.path for spec in missing]
        return {
            "status": "initialized",
            "branches": status,
            "seededFiles": seeded,
            "timestamp": utcnow().isoformat(),
        }
