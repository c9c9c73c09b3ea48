import asyncio
import time

import pytest

from deployease.contracts import events
from deployease.contracts.models import FileSpec
from deployease.contracts.types import Environment
from deployease.errors import ConflictError, OperationFailed, RateLimitedError, TransientError
from deployease.observability.metrics import SWITCHES
from deployease.orchestrator.coordinator import STATUS_KEY
from deployease.routing.tracker import ACTIVE_BRANCH_KEY
from deployease.orchestrator.state_machine import SwitchOperation
from deployease.contracts.types import SwitchState
from deployease.routing.rules import render_rules
from fakes import FakeHosting, FakeRepository, FakeTransport, make_runtime


def _start_on(runtime, repo, environment: Environment) -> None:
    repo.seed("main", {"_redirects": render_rules(environment, runtime.tracker.branch_urls)})


@pytest.mark.asyncio
async def test_switch_commits_purges_and_broadcasts(runtime, repo, hosting):
    _start_on(runtime, repo, Environment.BLUE)
    observer = FakeTransport()
    await runtime.bus.connect(observer)

    result = await runtime.coordinator.switch("green")

    assert result.changed is True
    assert result.previous_environment is Environment.BLUE
    assert result.active_environment is Environment.GREEN
    assert result.commit_id == repo.refs["main"]
    assert result.purge_succeeded is True
    assert result.deploy_triggered is True
    assert result.partial_failure is None
    assert hosting.purges == 1
    assert hosting.builds == ["main"]
    change = observer.sent[-1]
    assert change["type"] == events.ENVIRONMENT_SWITCH
    assert change["newActive"] == "green"
    assert change["previousActive"] == "blue"
    assert await runtime.tracker.get_active() is Environment.GREEN


@pytest.mark.asyncio
async def test_switch_to_active_environment_is_a_no_op(runtime, repo, hosting):
    _start_on(runtime, repo, Environment.BLUE)
    observer = FakeTransport()
    await runtime.bus.connect(observer)
    before = SWITCHES.labels(outcome="noop").value

    result = await runtime.coordinator.switch("blue")

    assert result.changed is False
    assert result.active_environment is Environment.BLUE
    assert repo.writes == 0
    assert hosting.purges == 0
    assert observer.types() == [events.CONNECTION_ACK]
    assert SWITCHES.labels(outcome="noop").value == before + 1


@pytest.mark.asyncio
async def test_purge_failure_is_reported_not_raised(repo):
    hosting = FakeHosting(purge_error=TransientError("purge 503", status_code=503))
    runtime = make_runtime(repo=repo, hosting=hosting)
    _start_on(runtime, repo, Environment.BLUE)

    result = await runtime.coordinator.switch("green")

    assert result.changed is True
    assert result.purge_succeeded is False
    assert "CDN cache purge failed" in result.partial_failure
    assert await runtime.tracker.get_active() is Environment.GREEN


@pytest.mark.asyncio
async def test_status_without_hosting_reports_disabled(repo):
    runtime = make_runtime(repo=repo, hosting=FakeHosting(enabled=False))
    _start_on(runtime, repo, Environment.GREEN)

    status = await runtime.coordinator.status()

    assert status.active_environment is Environment.GREEN
    assert {env.status for env in status.environments.values()} == {"disabled"}


@pytest.mark.asyncio
async def test_commit_failure_fails_the_switch_and_keeps_previous(runtime, repo, hosting):
    _start_on(runtime, repo, Environment.BLUE)
    repo.fail("update_ref", ConflictError("branch moved"))
    observer = FakeTransport()
    await runtime.bus.connect(observer)

    with pytest.raises(ConflictError):
        await runtime.coordinator.switch("green")

    assert hosting.purges == 0
    assert observer.types() == [events.CONNECTION_ACK]
    assert await runtime.tracker.get_active() is Environment.BLUE


@pytest.mark.asyncio
async def test_broadcast_failure_never_escalates(runtime, repo):
    _start_on(runtime, repo, Environment.BLUE)

    async def broken_broadcast(message, predicate=None):
        raise RuntimeError("bus down")

    runtime.coordinator.bus.broadcast = broken_broadcast

    result = await runtime.coordinator.switch("green")

    assert result.changed is True


@pytest.mark.asyncio
async def test_concurrent_switches_are_serialized(runtime, repo):
    _start_on(runtime, repo, Environment.BLUE)

    first, second = await asyncio.gather(
        runtime.coordinator.switch("green"), runtime.coordinator.switch("green")
    )

    assert sorted([first.changed, second.changed]) == [False, True]
    assert repo.calls["create_commit"] == 1


@pytest.mark.asyncio
async def test_switch_invalidates_status_cache(runtime, repo):
    _start_on(runtime, repo, Environment.BLUE)
    status = await runtime.coordinator.status()
    assert status.active_environment is Environment.BLUE
    assert STATUS_KEY in runtime.cache

    await runtime.coordinator.switch("green")

    assert STATUS_KEY not in runtime.cache
    status = await runtime.coordinator.status()
    assert status.active_environment is Environment.GREEN
    assert status.is_swapped is True


@pytest.mark.asyncio
async def test_status_reports_health_per_environment(runtime, repo, hosting):
    _start_on(runtime, repo, Environment.BLUE)
    hosting.deploys = {
        "blue": {"id": "d1", "state": "ready", "deploy_ssl_url": "https://d1.netlify.app"},
        "green": {"id": "d2", "state": "building"},
    }

    status = await runtime.coordinator.status()

    assert status.environments["blue"].status == "online"
    assert status.environments["green"].status == "deploying"
    assert status.is_swapped is False
    assert status.branch_urls["green"] == "https://green--site.netlify.app"


@pytest.mark.asyncio
async def test_restore_initial_broadcasts_rollback_event(runtime, repo):
    _start_on(runtime, repo, Environment.GREEN)
    observer = FakeTransport()
    await runtime.bus.connect(observer)

    result = await runtime.coordinator.restore_initial()

    assert result.active_environment is Environment.BLUE
    assert observer.sent[-1]["type"] == events.ENVIRONMENT_ROLLBACK


@pytest.mark.asyncio
async def test_maintenance_switch(runtime, repo):
    _start_on(runtime, repo, Environment.BLUE)

    result = await runtime.coordinator.switch("none")

    assert result.active_environment is Environment.NONE
    assert "/maintenance.html" in repo.file_at("main", "_redirects")


@pytest.mark.asyncio
async def test_unexpected_read_failure_marks_operation_failed(runtime, repo):
    repo.fail("get_ref", *(TransientError("down") for _ in range(3)))

    with pytest.raises(OperationFailed):
        await runtime.coordinator.switch("green")



@pytest.mark.asyncio
async def test_untyped_purge_error_is_reported_after_commit(repo):
    hosting = FakeHosting(purge_error=ValueError("Expecting value: line 1 column 1 (char 0)"))
    runtime = make_runtime(repo=repo, hosting=hosting)
    _start_on(runtime, repo, Environment.BLUE)
    observer = FakeTransport()
    await runtime.bus.connect(observer)

    result = await runtime.coordinator.switch("green")

    assert result.changed is True
    assert result.purge_succeeded is False
    assert result.deploy_triggered is True
    assert result.partial_failure == "CDN cache purge failed: ValueError"
    assert observer.sent[-1]["newActive"] == "green"
    assert await runtime.tracker.get_active() is Environment.GREEN


@pytest.mark.asyncio
async def test_untyped_build_trigger_error_is_reported_after_commit(repo):
    hosting = FakeHosting(deploy_error=ValueError("Expecting value: line 1 column 1 (char 0)"))
    runtime = make_runtime(repo=repo, hosting=hosting)
    _start_on(runtime, repo, Environment.BLUE)
    runtime.cache.set(STATUS_KEY, "cached-status", ttl=60)

    result = await runtime.coordinator.switch("green")

    assert result.changed is True
    assert result.purge_succeeded is True
    assert result.deploy_triggered is False
    assert result.partial_failure == "Build trigger for main failed: ValueError"
    assert STATUS_KEY not in runtime.cache


def _expire_marker_after_moving_main(runtime, repo, cached: Environment, actual: Environment):
    marker = runtime.cache.get(ACTIVE_BRANCH_KEY).value
    assert marker.active_environment is cached
    # Past its normal ttl, still inside the degraded window.
    runtime.cache.set(ACTIVE_BRANCH_KEY, marker, ttl=0)
    _start_on(runtime, repo, actual)


@pytest.mark.asyncio
async def test_switch_refuses_stale_marker_while_rate_limited(runtime, repo, hosting):
    _start_on(runtime, repo, Environment.BLUE)
    await runtime.tracker.read()
    _expire_marker_after_moving_main(runtime, repo, Environment.BLUE, Environment.GREEN)
    now = time.time()
    runtime.rate_limit.update(remaining=0, reset_at=now + 120, now=now)
    tip = repo.refs["main"]

    with pytest.raises(RateLimitedError) as excinfo:
        await runtime.coordinator.switch("blue")

    assert 100 <= excinfo.value.wait_seconds <= 120
    assert repo.refs["main"] == tip
    assert hosting.purges == 0


@pytest.mark.asyncio
async def test_switch_refuses_stale_marker_when_repository_unreachable(runtime, repo, hosting):
    _start_on(runtime, repo, Environment.BLUE)
    await runtime.tracker.read()
    _expire_marker_after_moving_main(runtime, repo, Environment.BLUE, Environment.GREEN)
    repo.fail("get_ref", *(TransientError("502 from provider", status_code=502) for _ in range(3)))
    writes = repo.writes

    with pytest.raises(OperationFailed) as excinfo:
        await runtime.coordinator.switch("green")

    assert excinfo.value.status_code == 502
    assert repo.writes == writes
    assert hosting.purges == 0


def test_switch_operation_state_path():
    operation = SwitchOperation(to_environment=Environment.GREEN)
    for trigger in ("commit", "purge", "broadcast", "finish"):
        operation.advance(trigger)

    assert operation.state is SwitchState.DONE
    assert operation.visited == [
        SwitchState.CHECKING,
        SwitchState.COMMITTING,
        SwitchState.PURGING,
        SwitchState.BROADCASTING,
        SwitchState.DONE,
    ]
    operation.fail()  # no transition out of done
    assert operation.state is SwitchState.DONE


def test_switch_operation_rejects_skipping_steps():
    operation = SwitchOperation(to_environment=Environment.GREEN)
    with pytest.raises(RuntimeError):
        operation.advance("broadcast")
    operation.fail()
    assert operation.state is SwitchState.FAILED


@pytest.mark.asyncio
async def test_blue_green_release_scenario():
    repo = FakeRepository()
    runtime = make_runtime(repo=repo)
    _start_on(runtime, repo, Environment.BLUE)
    c0 = await runtime.recorder.deploy(
        "blue", [FileSpec(path="index.html", content="<h1>v0</h1>")], "C0"
    )
    c01 = await runtime.recorder.deploy(
        "blue", [FileSpec(path="index.html", content="<h1>v0.1</h1>")]
    )

    c1 = await runtime.recorder.deploy(
        "green",
        [
            FileSpec(path="index.html", content="<h1>v1</h1>"),
            FileSpec(path="styles.css", content="h1{color:green}"),
            FileSpec(path="app.js", content="start()"),
        ],
        "C1",
    )
    assert repo.refs["green"] == c1.commit_id

    switched = await runtime.coordinator.switch("green")
    assert (switched.changed, switched.previous_environment, switched.active_environment) == (
        True,
        Environment.BLUE,
        Environment.GREEN,
    )

    again = await runtime.coordinator.switch("green")
    assert again.changed is False

    await runtime.recorder.rollback_to_commit("blue", c0.commit_id)
    assert repo.refs["blue"] == c0.commit_id
    history = await runtime.recorder.history("blue")
    assert history.deployments[0].commit_id == c0.commit_id
    assert c01.commit_id not in {r.commit_id for r in history.deployments}
    assert runtime.store.find_by_commit(c01.environment, c01.commit_id) is None
