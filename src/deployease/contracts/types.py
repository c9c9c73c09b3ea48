"""Shared enums for DeployEase contracts."""

from __future__ import annotations

from enum import Enum


class Environment(str, Enum):
    """Routing targets; ``none`` is the maintenance state."""

    BLUE = "blue"
    GREEN = "green"
    NONE = "none"


class Branch(str, Enum):
    """Lines of history the service writes to."""

    MAIN = "main"
    BLUE = "blue"
    GREEN = "green"


class SwitchState(str, Enum):
    """Steps of a single traffic switch."""

    CHECKING = "checking"
    COMMITTING = "committing"
    PURGING = "purging"
    BROADCASTING = "broadcasting"
    DONE = "done"
    FAILED = "failed"


DEPLOYABLE_BRANCHES: tuple[Branch, ...] = (Branch.BLUE, Branch.GREEN)
