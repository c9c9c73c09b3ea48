"""Pydantic models exchanged between DeployEase components and the API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from deployease.contracts.types import Branch, Environment


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    """Snake case in Python, camel case on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class FileSpec(ApiModel):
    path: str
    content: str
    encoding: Literal["utf-8", "base64"] = "utf-8"


class DeploymentRecord(ApiModel):
    environment: Branch
    commit_id: str
    file_set_hash: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    message: str = ""
    url: str | None = None
    author: str | None = None
    # Set on records served from the dedup window; never stored or sent.
    deduplicated: bool = Field(default=False, exclude=True)


class RoutingMarker(ApiModel):
    active_environment: Environment
    source_commit_id: str | None = None
    stale: bool = False


class SwitchResult(ApiModel):
    changed: bool
    previous_environment: Environment
    active_environment: Environment
    commit_id: str | None = None
    purge_succeeded: bool | None = None
    deploy_triggered: bool | None = None
    partial_failure: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class EnvironmentHealth(ApiModel):
    status: str
    deploy_id: str | None = None
    deploy_url: str | None = None
    updated_at: str | None = None
    error: str | None = None


class EnvironmentStatus(ApiModel):
    active_environment: Environment
    initial_environment: Environment
    is_swapped: bool
    branch_urls: dict[str, str]
    environments: dict[str, EnvironmentHealth]
    stale: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class HistoryPage(ApiModel):
    environment: Branch
    deployments: list[DeploymentRecord] = Field(default_factory=list)
    stale: bool = False
    error: str | None = None
