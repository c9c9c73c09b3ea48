"""Hosting/CDN port and its Netlify REST adapter."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from deployease.contracts.models import EnvironmentHealth
from deployease.errors import ConfigurationError, DeployEaseError
from deployease.observability.logging import Logger, NullLogger, with_span
from deployease.remote.http import raise_for_remote_status, transport_error

_HEALTH_BY_STATE = {
    "ready": "online",
    "error": "offline",
    "building": "deploying",
    "enqueued": "deploying",
    "processing": "deploying",
}


def health_from_deploy(deploy: dict[str, Any] | None) -> EnvironmentHealth:
    if not deploy:
        return EnvironmentHealth(status="unknown")
    state = str(deploy.get("state") or "unknown")
    return EnvironmentHealth(
        status=_HEALTH_BY_STATE.get(state, state),
        deploy_id=deploy.get("id"),
        deploy_url=deploy.get("deploy_ssl_url") or deploy.get("deploy_url"),
        updated_at=deploy.get("updated_at") or deploy.get("created_at"),
        error=deploy.get("error_message"),
    )


class HostingClient(Protocol):
    """Hosting provider operations: builds, deploy status, CDN purge."""

    @property
    def enabled(self) -> bool: ...
    async def verify_connection(self) -> dict[str, Any]: ...
    async def trigger_deploy(self, branch: str) -> dict[str, Any]: ...
    async def latest_deploy(self, branch: str) -> dict[str, Any] | None: ...
    async def purge_cache(self) -> None: ...
    async def aclose(self) -> None: ...


def _branch_fields(
    self: NetlifyClient, branch: str | None = None, *args: Any, **kwargs: Any
) -> dict[str, Any]:
    return {"site_id": self.site_id, "branch": branch}


def _site_fields(self: NetlifyClient, *args: Any, **kwargs: Any) -> dict[str, Any]:
    return {"site_id": self.site_id}


class NetlifyClient:
    def __init__(
        self,
        token: str | None,
        site_id: str | None,
        *,
        build_hooks: dict[str, str] | None = None,
        api_url: str = "https://api.netlify.com/api/v1",
        timeout: float = 15.0,
        logger: Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.site_id = site_id
        self._token = token
        self._build_hooks = dict(build_hooks or {})
        self._logger = logger or NullLogger()
        headers = {"User-Agent": "deployease"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=api_url.rstrip("/"), timeout=timeout, transport=transport, headers=headers
        )

    @property
    def enabled(self) -> bool:
        return bool(self._token and self.site_id)

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise ConfigurationError("Netlify is not configured (NETLIFY_TOKEN / NETLIFY_SITE_ID)")

    async def _request(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise transport_error(exc, operation) from exc
        raise_for_remote_status(response, operation)
        return response

    @with_span("netlify.verify", fields_fn=_site_fields)
    async def verify_connection(self) -> dict[str, Any]:
        if not self.enabled:
            return {"connected": False, "error": "Netlify is not configured"}
        try:
            response = await self._request("GET", f"/sites/{self.site_id}", "get site")
        except DeployEaseError as exc:
            self._logger.warn("netlify.verify_failed", error=str(exc))
            return {"connected": False, "error": "Unable to reach Netlify"}
        site = response.json()
        return {
            "connected": True,
            "siteName": site.get("name"),
            "url": site.get("ssl_url") or site.get("url"),
            "adminUrl": site.get("admin_url"),
        }

    @with_span("netlify.trigger_deploy", fields_fn=_branch_fields)
    async def trigger_deploy(self, branch: str) -> dict[str, Any]:
        hook = self._build_hooks.get(branch)
        if hook:
            await self._request("POST", hook, f"build hook {branch}", json={})
            return {"success": True, "deploy_id": None, "deploy_url": None, "branch": branch}
        self._require_enabled()
        response = await self._request(
            "POST",
            f"/sites/{self.site_id}/builds",
            f"trigger build {branch}",
            json={"branch": branch, "clear_cache": True},
        )
        build = response.json()
        return {
            "success": True,
            "deploy_id": build.get("deploy_id") or build.get("id"),
            "deploy_url": build.get("deploy_ssl_url") or build.get("deploy_url"),
            "branch": branch,
        }

    @with_span("netlify.latest_deploy", fields_fn=_branch_fields)
    async def latest_deploy(self, branch: str) -> dict[str, Any] | None:
        self._require_enabled()
        response = await self._request(
            "GET",
            f"/sites/{self.site_id}/deploys",
            f"list deploys {branch}",
            params={"branch": branch, "per_page": 1},
        )
        deploys = response.json()
        return deploys[0] if deploys else None

    @with_span("netlify.purge", fields_fn=_site_fields)
    async def purge_cache(self) -> None:
        self._require_enabled()
        await self._request("POST", "/purge", "purge cache", json={"site_id": self.site_id})

    async def aclose(self) -> None:
        await self._http.aclose()
