"""Real-time channel messages. Every message is a JSON object with a ``type``."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from deployease.contracts.models import ApiModel, utcnow

CONNECTION_ACK = "connection_ack"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
SUBSCRIPTION_ACK = "subscription_ack"
PING = "ping"
PONG = "pong"
LOG = "log"
DEPLOY_STATUS = "deploy_status"
DEPLOYMENT_HISTORY = "deployment_history"
REQUEST_HISTORY = "request_history"
ENVIRONMENT_SWITCH = "environment_switch"
ENVIRONMENT_ROLLBACK = "environment_rollback"
ERROR = "error"

DEPLOYMENT_LOGS_CHANNEL = "deployment_logs"


class ConnectionAck(ApiModel):
    type: Literal["connection_ack"] = CONNECTION_ACK
    status: str = "connected"
    client_id: str
    heartbeat_interval: float
    timestamp: datetime = Field(default_factory=utcnow)


class SubscriptionAck(ApiModel):
    type: Literal["subscription_ack"] = SUBSCRIPTION_ACK
    channels: list[str]
    timestamp: datetime = Field(default_factory=utcnow)


class Ping(ApiModel):
    type: Literal["ping"] = PING
    timestamp: datetime = Field(default_factory=utcnow)


class Pong(ApiModel):
    type: Literal["pong"] = PONG
    timestamp: datetime = Field(default_factory=utcnow)


class LogEvent(ApiModel):
    type: Literal["log"] = LOG
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class DeployStatus(ApiModel):
    type: Literal["deploy_status"] = DEPLOY_STATUS
    status: str
    message: str
    branch: str | None = None
    commit_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class DeploymentHistory(ApiModel):
    type: Literal["deployment_history"] = DEPLOYMENT_HISTORY
    data: dict[str, list[dict[str, Any]]]
    timestamp: datetime = Field(default_factory=utcnow)


class EnvironmentChanged(ApiModel):
    type: Literal["environment_switch", "environment_rollback"] = ENVIRONMENT_SWITCH
    new_active: str
    previous_active: str
    timestamp: datetime = Field(default_factory=utcnow)


class ErrorMessage(ApiModel):
    type: Literal["error"] = ERROR
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
