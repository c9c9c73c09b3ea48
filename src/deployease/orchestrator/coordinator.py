"""Traffic switch orchestration and environment status."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from deployease.contracts import events
from deployease.contracts.models import EnvironmentHealth, EnvironmentStatus, SwitchResult
from deployease.contracts.types import Branch, Environment
from deployease.errors import (
    DeployEaseError,
    PartialFailure,
    RateLimitedError,
    TransientError,
    raise_operation_failure,
)
from deployease.notifications.bus import NotificationBus
from deployease.observability.metrics import SWITCH_DURATION, SWITCHES
from deployease.observability.telemetry import get_tracer
from deployease.orchestrator.locks import KeyedLock
from deployease.orchestrator.state_machine import SwitchOperation
from deployease.remote.netlify import HostingClient, health_from_deploy
from deployease.resilience.retry import RetryExecutor
from deployease.routing.tracker import ActiveEnvironmentTracker, parse_environment

logger = logging.getLogger(__name__)

SITE_LOCK = "site"
STATUS_KEY = "environment-status"
STATUS_TTL_SECONDS = 30
HOSTING_RETRIES = 2


class TrafficSwitchCoordinator:
    """Runs switches one at a time per site.

    checking -> committing -> purging -> broadcasting -> done, or failed.
    Only a commit failure fails the call; purge and build-trigger failures
    are reported in the result, broadcast failures are only logged.
    """

    def __init__(
        self,
        tracker: ActiveEnvironmentTracker,
        hosting: HostingClient,
        hosting_executor: RetryExecutor,
        bus: NotificationBus | None = None,
        *,
        initial_environment: Environment = Environment.BLUE,
        trigger_main_build: bool = True,
    ) -> None:
        self.tracker = tracker
        self.hosting = hosting
        self.hosting_executor = hosting_executor
        self.cache = tracker.cache
        self.bus = bus
        self.initial_environment = initial_environment
        self._trigger_main_build = trigger_main_build
        self._locks = KeyedLock()
        self._tracer = get_tracer(__name__)

    async def switch(self, target: str | Environment) -> SwitchResult:
        environment = parse_environment(target)
        async with self._locks.lock(SITE_LOCK):
            return await self._switch(environment, events.ENVIRONMENT_SWITCH)

    async def restore_initial(self) -> SwitchResult:
        """Route traffic back to the environment configured as initially active."""
        async with self._locks.lock(SITE_LOCK):
            return await self._switch(self.initial_environment, events.ENVIRONMENT_ROLLBACK)

    async def _switch(self, target: Environment, event_type: str) -> SwitchResult:
        operation = SwitchOperation(to_environment=target)
        with SWITCH_DURATION.labels(target=target.value).time():
            with self._tracer.start_as_current_span("traffic.switch") as span:
                span.set_attribute("target", target.value)
                try:
                    result = await self._run(operation, event_type)
                except Exception:
                    operation.fail()
                    SWITCHES.labels(outcome="failed").inc()
                    logger.error(
                        "switch.failed",
                        extra={
                            "extra": {
                                "target": target.value,
                                "previous": getattr(operation.from_environment, "value", None),
                                "state_path": [s.value for s in operation.visited],
                            }
                        },
                    )
                    raise
                span.set_attribute("previous", result.previous_environment.value)
                span.set_attribute("changed", result.changed)
        return result

    async def _run(self, operation: SwitchOperation, event_type: str) -> SwitchResult:
        target = operation.to_environment
        marker = await self.tracker.read()
        current = marker.active_environment
        operation.from_environment = current
        if marker.stale:
            self._refuse_on_stale_marker(target, current)
        if current == target:
            operation.advance("no_op")
            SWITCHES.labels(outcome="noop").inc()
            logger.info("switch.noop", extra={"extra": {"environment": target.value}})
            return SwitchResult(
                changed=False,
                previous_environment=current,
                active_environment=current,
                commit_id=marker.source_commit_id,
            )

        operation.advance("commit")
        record = await self.tracker.set_active(target)

        operation.advance("purge")
        purged, purge_problem = await self._best_effort(
            "netlify.purge_cache", self.hosting.purge_cache, "CDN cache purge failed"
        )
        deploy_triggered: bool | None = None
        build_problem: PartialFailure | None = None
        if self._trigger_main_build:
            deploy_triggered, build_problem = await self._best_effort(
                "netlify.trigger_deploy.main",
                lambda: self.hosting.trigger_deploy(Branch.MAIN.value),
                "Build trigger for main failed",
            )
        self.tracker.invalidate()
        self.cache.invalidate(STATUS_KEY)

        operation.advance("broadcast")
        message = events.EnvironmentChanged(
            type=event_type, new_active=target.value, previous_active=current.value
        )
        try:
            if self.bus is not None:
                await self.bus.broadcast(message.to_wire())
        except Exception:
            logger.exception("switch.broadcast_failed", extra={"extra": {"target": target.value}})

        operation.advance("finish")
        problems = [p.detail for p in (purge_problem, build_problem) if p is not None]
        SWITCHES.labels(outcome="partial" if problems else "switched").inc()
        logger.info(
            "switch.done",
            extra={
                "extra": {
                    "previous": current.value,
                    "active": target.value,
                    "commit": record.commit_id,
                    "purged": purged,
                }
            },
        )
        return SwitchResult(
            changed=True,
            previous_environment=current,
            active_environment=target,
            commit_id=record.commit_id,
            purge_succeeded=purged,
            deploy_triggered=deploy_triggered,
            partial_failure="; ".join(problems) or None,
        )

    def _refuse_on_stale_marker(self, target: Environment, cached: Environment) -> None:
        """A switch is never decided on a cached marker the repository could not confirm."""
        executor = self.tracker.executor
        wait = executor.quota_wait()
        logger.warning(
            "switch.stale_marker",
            extra={"extra": {"target": target.value, "cached": cached.value, "wait_seconds": wait}},
        )
        if wait is not None:
            raise RateLimitedError(wait, reset_at=executor.rate_limit.reset_at)
        raise_operation_failure(
            "Failed to verify active environment",
            TransientError("active environment marker only available from stale cache"),
        )

    async def _best_effort(
        self, name: str, call: Callable[[], Awaitable[Any]], description: str
    ) -> tuple[bool, PartialFailure | None]:
        try:
            await self.hosting_executor.execute(
                call, name, max_retries=HOSTING_RETRIES, preflight_rate_check=False
            )
        except Exception as exc:
            problem = PartialFailure(f"{description}: {type(exc).__name__}")
            fields = {"step": name, "detail": problem.detail, "error": str(exc)}
            if isinstance(exc, DeployEaseError):
                logger.warning("switch.partial_failure", extra={"extra": fields})
            else:
                # Untyped failure from the hosting adapter, e.g. an unparseable 2xx body.
                logger.error("switch.partial_failure", exc_info=exc, extra={"extra": fields})
            return False, problem
        return True, None

    async def _health(self, branch: str) -> EnvironmentHealth:
        if not self.hosting.enabled:
            return EnvironmentHealth(status="disabled")
        try:
            result = await self.hosting_executor.execute(
                lambda: self.hosting.latest_deploy(branch),
                f"netlify.latest_deploy.{branch}",
                max_retries=HOSTING_RETRIES,
                preflight_rate_check=False,
            )
        except DeployEaseError as exc:
            return EnvironmentHealth(status="unknown", error=str(exc))
        return health_from_deploy(result.value)

    async def status(self) -> EnvironmentStatus:
        hit = self.cache.get(STATUS_KEY)
        if hit is not None:
            return hit.value
        marker = await self.tracker.read()
        blue, green = await asyncio.gather(self._health("blue"), self._health("green"))
        active = marker.active_environment
        status = EnvironmentStatus(
            active_environment=active,
            initial_environment=self.initial_environment,
            is_swapped=active not in (self.initial_environment, Environment.NONE),
            branch_urls=self.tracker.branch_urls,
            environments={"blue": blue, "green": green},
            stale=marker.stale,
        )
        if not marker.stale:
            self.cache.set(STATUS_KEY, status, STATUS_TTL_SECONDS)
        return status

    async def trigger_build(self, branch: str) -> dict[str, Any]:
        """Ask the host to rebuild ``branch``; failures are reported, not raised."""
        try:
            result = await self.hosting_executor.execute(
                lambda: self.hosting.trigger_deploy(branch),
                f"netlify.trigger_deploy.{branch}",
                max_retries=HOSTING_RETRIES,
                preflight_rate_check=False,
            )
        except Exception as exc:
            logger.warning(
                "build.trigger_failed",
                extra={"extra": {"branch": branch, "error": str(exc)}},
            )
            return {"success": False, "branch": branch, "error": type(exc).__name__}
        return result.value
