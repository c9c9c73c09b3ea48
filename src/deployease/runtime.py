"""Service container built once at startup and torn down at shutdown.

Every stateful piece (result cache, rate-limit state, remote clients,
notification bus) hangs off one ``DeployRuntime``; nothing is kept in
module globals.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from deployease.config import AppSettings, get_app_settings
from deployease.contracts.types import Environment
from deployease.deploy.commit_builder import CommitBuilder
from deployease.deploy.recorder import DeploymentRecorder
from deployease.deploy.store import (
    DeploymentStore,
    InMemoryDeploymentStore,
    JsonFileDeploymentStore,
)
from deployease.notifications.bus import NotificationBus
from deployease.observability.logging import Logger, NullLogger
from deployease.orchestrator.coordinator import TrafficSwitchCoordinator
from deployease.remote.github import GitHubClient, RepositoryClient
from deployease.remote.netlify import HostingClient, NetlifyClient
from deployease.resilience.cache import ResultCache
from deployease.resilience.rate_limit import RateLimitState
from deployease.resilience.retry import RetryExecutor
from deployease.routing.tracker import ActiveEnvironmentTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeployRuntime:
    settings: AppSettings
    cache: ResultCache
    rate_limit: RateLimitState
    executor: RetryExecutor
    hosting_executor: RetryExecutor
    repo: RepositoryClient
    hosting: HostingClient
    store: DeploymentStore
    recorder: DeploymentRecorder
    tracker: ActiveEnvironmentTracker
    coordinator: TrafficSwitchCoordinator
    bus: NotificationBus
    obs: Logger

    async def aclose(self) -> None:
        await self.bus.stop()
        await self.repo.aclose()
        await self.hosting.aclose()
        logger.info("runtime.closed")


def build_runtime(
    settings: AppSettings | None = None,
    *,
    repo: RepositoryClient | None = None,
    hosting: HostingClient | None = None,
    store: DeploymentStore | None = None,
    obs: Logger | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> DeployRuntime:
    """Wire the service graph. Injected clients replace the HTTP adapters."""
    settings = settings or get_app_settings()
    obs = obs or NullLogger()
    cache = ResultCache()
    rate_limit = RateLimitState()

    if repo is None:
        repo = GitHubClient(
            settings.github_token,
            settings.repository_url,
            rate_limit=rate_limit,
            api_url=settings.github_api_url,
            timeout=settings.http_timeout_seconds,
            logger=obs,
        )
    if hosting is None:
        hosting = NetlifyClient(
            settings.netlify_token,
            settings.netlify_site_id,
            build_hooks=settings.build_hooks,
            api_url=settings.netlify_api_url,
            timeout=settings.http_timeout_seconds,
            logger=obs,
        )
    if store is None:
        store = (
            JsonFileDeploymentStore(Path(settings.deployment_store_dir))
            if settings.deployment_store_dir
            else InMemoryDeploymentStore()
        )

    executor = RetryExecutor(cache, rate_limit, logger=obs, sleep=sleep)
    # The hosting provider has its own quota; keep it out of the repository's.
    hosting_executor = RetryExecutor(cache, RateLimitState(), logger=obs, sleep=sleep)

    builder = CommitBuilder(repo, executor)
    recorder = DeploymentRecorder(builder, store)
    tracker = ActiveEnvironmentTracker(recorder, settings.branch_urls())
    bus = NotificationBus(heartbeat_interval=settings.heartbeat_interval_seconds)
    coordinator = TrafficSwitchCoordinator(
        tracker,
        hosting,
        hosting_executor,
        bus,
        initial_environment=Environment(settings.initial_active_environment),
    )
    return DeployRuntime(
        settings=settings,
        cache=cache,
        rate_limit=rate_limit,
        executor=executor,
        hosting_executor=hosting_executor,
        repo=repo,
        hosting=hosting,
        store=store,
        recorder=recorder,
        tracker=tracker,
        coordinator=coordinator,
        bus=bus,
        obs=obs,
    )
