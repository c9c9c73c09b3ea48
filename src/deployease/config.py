"""Typed settings for the DeployEase service.

Values resolve from the process environment first, then from a ``.env`` file
(``DOTENV_PATH``, default ``./.env``). Missing or malformed values fall back
to the defaults on ``AppSettings``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import os
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

ENVIRONMENTS = ("blue", "green")


class ConfigSource(Protocol):
    def get(self, key: str) -> str | None: ...


def parse_dotenv(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines; supports ``export`` prefixes, comments and quoted values."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip().removeprefix("export ").strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key.strip()] = value
    return values


class EnvConfigSource:
    def get(self, key: str) -> str | None:
        return os.environ.get(key)


class DotEnvConfigSource:
    """Reads a ``.env`` file once, on first lookup. A missing file is empty."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._values: dict[str, str] | None = None

    def get(self, key: str) -> str | None:
        if self._values is None:
            try:
                self._values = parse_dotenv(self.path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                self._values = {}
        return self._values.get(key)


@dataclass(slots=True)
class ConfigAdapter:
    """First source with a value wins."""

    sources: tuple[ConfigSource, ...]

    def get(self, key: str, default: str | None = None) -> str | None:
        return next(
            (value for value in (s.get(key) for s in self.sources) if value is not None),
            default,
        )


@lru_cache
def _config_adapter() -> ConfigAdapter:
    dotenv = Path(os.getenv("DOTENV_PATH", ".env"))
    return ConfigAdapter((EnvConfigSource(), DotEnvConfigSource(dotenv)))


def get_config_value(key: str, default: str | None = None) -> str | None:
    return _config_adapter().get(key, default)


def _csv(raw: str) -> list[str] | None:
    items = [part.strip() for part in raw.split(",") if part.strip()]
    return items or None


def _positive_seconds(raw: str) -> float | None:
    try:
        seconds = float(raw)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _environment(raw: str) -> str | None:
    name = raw.strip().lower()
    return name if name in ENVIRONMENTS else None


@dataclass(slots=True)
class AppSettings:
    app_env: str = "dev"
    service_name: str = "deployease"
    app_version: str = "0.1.0"
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    repository_url: str | None = None

    netlify_token: str | None = None
    netlify_site_id: str | None = None
    netlify_api_url: str = "https://api.netlify.com/api/v1"
    netlify_site_name: str = "deployeaselive"
    netlify_site_url: str | None = None
    build_hooks: dict[str, str] = field(default_factory=dict)

    http_timeout_seconds: float = 15.0
    heartbeat_interval_seconds: float = 30.0
    initial_active_environment: str = "blue"
    deployment_store_dir: str | None = None
    obs_log_file: str | None = None

    def cors_allowlist(self) -> list[str]:
        if self.app_env == "dev" and not self.cors_origins:
            return ["*"]
        return self.cors_origins

    def site_url(self) -> str:
        return self.netlify_site_url or f"https://{self.netlify_site_name}.netlify.app"

    def branch_urls(self) -> dict[str, str]:
        """Branch deploy URLs, e.g. ``https://blue--site.netlify.app``."""
        return {env: f"https://{env}--{self.netlify_site_name}.netlify.app" for env in ENVIRONMENTS}

    def hosting_enabled(self) -> bool:
        return bool(self.netlify_token and self.netlify_site_id)


# Settings attribute -> (variable name, parser). A parser returning None keeps the default.
_VARIABLES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "app_env": ("APP_ENV", str),
    "service_name": ("SERVICE_NAME", str),
    "app_version": ("APP_VERSION", str),
    "cors_origins": ("CORS_ORIGINS", _csv),
    "log_level": ("LOG_LEVEL", str.upper),
    "github_token": ("GITHUB_TOKEN", str),
    "github_api_url": ("GITHUB_API_URL", str),
    "repository_url": ("REPOSITORY_URL", str),
    "netlify_token": ("NETLIFY_TOKEN", str),
    "netlify_site_id": ("NETLIFY_SITE_ID", str),
    "netlify_api_url": ("NETLIFY_API_URL", str),
    "netlify_site_name": ("NETLIFY_SITE_NAME", str),
    "netlify_site_url": ("NETLIFY_SITE_URL", str),
    "http_timeout_seconds": ("HTTP_TIMEOUT_SECONDS", _positive_seconds),
    "heartbeat_interval_seconds": ("HEARTBEAT_INTERVAL_SECONDS", _positive_seconds),
    "initial_active_environment": ("INITIAL_ACTIVE_ENVIRONMENT", _environment),
    "deployment_store_dir": ("DEPLOYMENT_STORE_DIR", str),
    "obs_log_file": ("OBS_LOG_FILE", str),
}

# Deploy hooks per branch; ``main`` carries the maintenance page.
_HOOK_VARIABLES = {"blue": "NETLIFY_BLUE_HOOK", "green": "NETLIFY_GREEN_HOOK", "main": "NETLIFY_MAIN_HOOK"}


@lru_cache
def get_app_settings() -> AppSettings:
    overrides: dict[str, Any] = {}
    for attr, (variable, parse) in _VARIABLES.items():
        raw = get_config_value(variable)
        if not raw:
            continue
        parsed = parse(raw)
        if parsed is not None:
            overrides[attr] = parsed
    hooks = {branch: hook for branch, var in _HOOK_VARIABLES.items() if (hook := get_config_value(var))}
    return AppSettings(build_hooks=hooks, **overrides)
