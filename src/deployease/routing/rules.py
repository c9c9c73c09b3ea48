"""Rendering and parsing of the ``_redirects`` routing-rules file.

Pure functions only; the tracker owns all I/O.
"""

from __future__ import annotations

import re
from typing import Mapping

from deployease.contracts.types import Environment

ROUTING_FILE = "_redirects"

_MARKER = re.compile(r"^#\s*ACTIVE_BRANCH:\s*(blue|green|none)\b", re.IGNORECASE | re.MULTILINE)


def render_rules(environment: Environment, branch_urls: Mapping[str, str]) -> str:
    """Return the routing rules sending all traffic to ``environment``."""
    if environment is Environment.NONE:
        return render_maintenance_rules()
    target = branch_urls[environment.value].rstrip("/")
    return "\n".join(
        [
            "# DeployEase Blue-Green Traffic Routing",
            f"# Route all traffic to {environment.value} branch deployment",
            f"/*  {target}/:splat  302!",
            "",
            "# Root path redirect",
            f"/  {target}/  302",
            "",
            "# API and static assets from branch deploys",
            f"/api/*  {target}/api/:splat  302",
            f"/assets/*  {target}/assets/:splat  302",
            "",
            "# Configuration marker - DO NOT REMOVE",
            f"# ACTIVE_BRANCH: {environment.value}",
            "",
        ]
    )


def render_maintenance_rules() -> str:
    return "\n".join(
        [
            "# DeployEase Blue-Green Traffic Routing",
            "# No active environment - maintenance mode",
            "/favicon.ico  /favicon.ico  200",
            "/robots.txt  /robots.txt  200",
            "/.netlify/*  /.netlify/:splat  200",
            "/api/*  /api/:splat  200",
            "/assets/*  /assets/:splat  200",
            "/*  /maintenance.html  200",
            "",
            "# Configuration marker - DO NOT REMOVE",
            "# ACTIVE_BRANCH: none",
            "",
        ]
    )


def parse_marker(content: str, branch_urls: Mapping[str, str]) -> Environment:
    """Read the active environment from rules content.

    The explicit marker wins. Without it, an environment is active only if
    its branch URL is the sole one mentioned in the rules.
    """
    match = _MARKER.search(content)
    if match:
        return Environment(match.group(1).lower())
    mentioned = [
        env
        for env in (Environment.BLUE, Environment.GREEN)
        if branch_urls.get(env.value) and branch_urls[env.value] in content
    ]
    if len(mentioned) == 1:
        return mentioned[0]
    return Environment.NONE
