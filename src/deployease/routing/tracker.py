"""Reads and writes the active-environment marker committed on ``main``."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from deployease.contracts.models import DeploymentRecord, FileSpec, RoutingMarker
from deployease.contracts.types import Branch, Environment
from deployease.deploy.recorder import DeploymentRecorder
from deployease.errors import NotFoundError, ValidationError, raise_operation_failure
from deployease.routing.rules import ROUTING_FILE, parse_marker, render_rules

logger = logging.getLogger(__name__)

ACTIVE_BRANCH_KEY = "active-branch"
ACTIVE_BRANCH_TTL_SECONDS = 10 * 60


def parse_environment(value: str | Environment) -> Environment:
    try:
        return Environment(str(getattr(value, "value", value)).lower())
    except ValueError as exc:
        raise ValidationError(
            f"Invalid environment: {value}. Must be 'blue', 'green' or 'none'"
        ) from exc


class ActiveEnvironmentTracker:
    def __init__(
        self,
        recorder: DeploymentRecorder,
        branch_urls: Mapping[str, str],
        *,
        ttl: float = ACTIVE_BRANCH_TTL_SECONDS,
    ) -> None:
        self.recorder = recorder
        self.repo = recorder.repo
        self.executor = recorder.executor
        self.cache = recorder.cache
        self.branch_urls = dict(branch_urls)
        self._ttl = ttl

    def rules_file(self, environment: Environment) -> FileSpec:
        return FileSpec(path=ROUTING_FILE, content=render_rules(environment, self.branch_urls))

    async def _read_marker(self) -> RoutingMarker:
        tip = await self.repo.get_ref(Branch.MAIN.value)
        try:
            content = await self.repo.get_file_content(ROUTING_FILE, tip)
        except NotFoundError:
            return RoutingMarker(active_environment=Environment.NONE, source_commit_id=tip)
        return RoutingMarker(
            active_environment=parse_marker(content, self.branch_urls),
            source_commit_id=tip,
        )

    async def read(self) -> RoutingMarker:
        try:
            result = await self.executor.execute(
                self._read_marker,
                "routing.read_marker",
                cache_key=ACTIVE_BRANCH_KEY,
                cache_ttl=self._ttl,
            )
        except Exception as exc:
            raise_operation_failure("Failed to detect active environment", exc)
        marker: RoutingMarker = result.value
        if result.stale:
            return marker.model_copy(update={"stale": True})
        return marker

    async def get_active(self) -> Environment:
        return (await self.read()).active_environment

    async def set_active(self, environment: str | Environment) -> DeploymentRecord:
        """Commit routing rules for ``environment`` on ``main``.

        The cached marker is dropped before returning so the next read in
        this process goes back to the repository.
        """
        target = parse_environment(environment)
        # Dedup is bypassed: blue -> green -> blue must commit every time.
        record = await self.recorder.deploy(
            Branch.MAIN,
            [self.rules_file(target)],
            f"Switch traffic to {target.value}",
            dedupe=False,
            allow_main=True,
        )
        self.invalidate()
        logger.info(
            "routing.active_set",
            extra={"extra": {"environment": target.value, "commit": record.commit_id}},
        )
        return record

    def invalidate(self) -> None:
        self.cache.invalidate(ACTIVE_BRANCH_KEY)

    async def initialize(self, environment: str | Environment) -> dict[str, Any]:
        """Create missing branches and seed routing rules when ``main`` has none."""
        target = parse_environment(environment)
        outcome = await self.recorder.initialize_repository([self.rules_file(target)])
        self.invalidate()
        outcome["activeEnvironment"] = (await self.get_active()).value
        return outcome
