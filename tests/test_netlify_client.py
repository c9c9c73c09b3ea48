import json

import httpx
import pytest

from deployease.errors import ConfigurationError, TransientError
from deployease.remote.netlify import NetlifyClient, health_from_deploy


def _client(handler, **kwargs) -> NetlifyClient:
    kwargs.setdefault("token", "nf-token")
    kwargs.setdefault("site_id", "site-1")
    return NetlifyClient(
        kwargs.pop("token"),
        kwargs.pop("site_id"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class Recorder:
    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response


@pytest.mark.parametrize(
    "state,status",
    [("ready", "online"), ("error", "offline"), ("building", "deploying"), ("enqueued", "deploying")],
)
def test_health_from_deploy(state, status):
    health = health_from_deploy({"id": "d1", "state": state, "deploy_url": "http://d1"})

    assert health.status == status
    assert health.deploy_id == "d1"
    assert health.deploy_url == "http://d1"


def test_no_deploy_is_unknown():
    assert health_from_deploy(None).status == "unknown"


@pytest.mark.asyncio
async def test_purge_posts_site_id():
    recorder = Recorder(httpx.Response(202))
    client = _client(recorder)

    await client.purge_cache()

    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path.endswith("/purge")
    assert json.loads(request.content) == {"site_id": "site-1"}
    assert request.headers["authorization"] == "Bearer nf-token"


@pytest.mark.asyncio
async def test_trigger_deploy_uses_build_hook_when_configured():
    recorder = Recorder(httpx.Response(200))
    client = _client(recorder, build_hooks={"green": "https://hooks.example/green"})

    result = await client.trigger_deploy("green")

    assert result["success"] is True
    assert str(recorder.requests[0].url) == "https://hooks.example/green"


@pytest.mark.asyncio
async def test_trigger_deploy_falls_back_to_builds_api():
    recorder = Recorder(httpx.Response(200, json={"deploy_id": "d9"}))
    client = _client(recorder)

    result = await client.trigger_deploy("main")

    request = recorder.requests[0]
    assert request.url.path.endswith("/sites/site-1/builds")
    assert json.loads(request.content)["branch"] == "main"
    assert result["deploy_id"] == "d9"


@pytest.mark.asyncio
async def test_latest_deploy_filters_by_branch():
    recorder = Recorder(httpx.Response(200, json=[{"id": "d2", "state": "ready"}]))
    client = _client(recorder)

    deploy = await client.latest_deploy("blue")

    assert deploy == {"id": "d2", "state": "ready"}
    assert recorder.requests[0].url.params["branch"] == "blue"


@pytest.mark.asyncio
async def test_disabled_client_refuses_calls():
    client = _client(Recorder(httpx.Response(200)), token=None)

    assert client.enabled is False
    with pytest.raises(ConfigurationError):
        await client.purge_cache()
    assert (await client.verify_connection())["connected"] is False


@pytest.mark.asyncio
async def test_verify_connection_reports_site():
    client = _client(
        Recorder(httpx.Response(200, json={"name": "site", "ssl_url": "https://site.netlify.app"}))
    )

    result = await client.verify_connection()

    assert result["connected"] is True
    assert result["url"] == "https://site.netlify.app"


@pytest.mark.asyncio
async def test_verify_connection_swallows_provider_errors():
    client = _client(Recorder(httpx.Response(503)))

    assert (await client.verify_connection())["connected"] is False


@pytest.mark.asyncio
async def test_server_error_is_transient():
    client = _client(Recorder(httpx.Response(500)))

    with pytest.raises(TransientError):
        await client.purge_cache()
