import pytest

from deployease.contracts.types import Environment
from deployease.errors import OperationFailed, TransientError, ValidationError
from deployease.routing.rules import render_rules
from deployease.routing.tracker import ACTIVE_BRANCH_KEY


def _seed_active(runtime, repo, environment: Environment) -> str:
    return repo.seed("main", {"_redirects": render_rules(environment, runtime.tracker.branch_urls)})


@pytest.mark.asyncio
async def test_missing_routing_file_means_no_active_environment(runtime):
    marker = await runtime.tracker.read()

    assert marker.active_environment is Environment.NONE
    assert marker.stale is False


@pytest.mark.asyncio
async def test_get_active_reads_marker_on_main(runtime, repo):
    sha = _seed_active(runtime, repo, Environment.BLUE)

    marker = await runtime.tracker.read()

    assert marker.active_environment is Environment.BLUE
    assert marker.source_commit_id == sha


@pytest.mark.asyncio
async def test_reads_are_cached(runtime, repo):
    _seed_active(runtime, repo, Environment.BLUE)

    await runtime.tracker.get_active()
    await runtime.tracker.get_active()

    assert repo.calls["get_file_content"] == 1
    assert ACTIVE_BRANCH_KEY in runtime.cache


@pytest.mark.asyncio
async def test_set_active_is_visible_immediately(runtime, repo):
    _seed_active(runtime, repo, Environment.BLUE)
    assert await runtime.tracker.get_active() is Environment.BLUE

    record = await runtime.tracker.set_active("green")

    assert repo.refs["main"] == record.commit_id
    assert "# ACTIVE_BRANCH: green" in repo.file_at("main", "_redirects")
    assert await runtime.tracker.get_active() is Environment.GREEN


@pytest.mark.asyncio
async def test_switching_back_commits_again(runtime, repo):
    await runtime.tracker.set_active("blue")
    await runtime.tracker.set_active("green")
    await runtime.tracker.set_active("blue")

    assert repo.calls["create_commit"] == 3
    assert await runtime.tracker.get_active() is Environment.BLUE


@pytest.mark.asyncio
async def test_set_active_rejects_unknown_environment(runtime, repo):
    with pytest.raises(ValidationError):
        await runtime.tracker.set_active("purple")
    assert repo.writes == 0


@pytest.mark.asyncio
async def test_failed_read_is_not_reported_as_none(runtime, repo):
    repo.fail("get_ref", *(TransientError("502") for _ in range(3)))

    with pytest.raises(OperationFailed):
        await runtime.tracker.get_active()


@pytest.mark.asyncio
async def test_rate_limited_read_serves_stale_marker(runtime, repo):
    _seed_active(runtime, repo, Environment.GREEN)
    await runtime.tracker.read()
    # Force the entry past its fresh window and exhaust the quota.
    runtime.cache._entries[ACTIVE_BRANCH_KEY].expires_at = 0
    runtime.rate_limit.update(remaining=0, reset_at=4_000_000_000.0, now=0)

    marker = await runtime.tracker.read()

    assert marker.active_environment is Environment.GREEN
    assert marker.stale is True
