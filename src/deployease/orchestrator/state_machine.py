"""Step tracking for one traffic switch.

A switch walks CHECKING -> COMMITTING -> PURGING -> BROADCASTING -> DONE, or
CHECKING -> DONE when the target is already active. Any step before DONE may
drop to FAILED. Out-of-order triggers raise ``RuntimeError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from deployease.contracts.types import Environment, SwitchState

_S = SwitchState

TRANSITIONS: dict[tuple[str, SwitchState], SwitchState] = {
    ("no_op", _S.CHECKING): _S.DONE,
    ("commit", _S.CHECKING): _S.COMMITTING,
    ("purge", _S.COMMITTING): _S.PURGING,
    ("broadcast", _S.PURGING): _S.BROADCASTING,
    ("finish", _S.BROADCASTING): _S.DONE,
    **{("fail", step): _S.FAILED for step in (_S.CHECKING, _S.COMMITTING, _S.PURGING, _S.BROADCASTING)},
}


@dataclass
class SwitchOperation:
    """Transient record of one switch call; never persisted."""

    to_environment: Environment
    from_environment: Environment | None = None
    visited: list[SwitchState] = field(default_factory=lambda: [SwitchState.CHECKING])

    @property
    def state(self) -> SwitchState:
        return self.visited[-1]

    @property
    def finished(self) -> bool:
        return self.state in (SwitchState.DONE, SwitchState.FAILED)

    def can(self, trigger: str) -> bool:
        return (trigger, self.state) in TRANSITIONS

    def advance(self, trigger: str) -> SwitchState:
        dest = TRANSITIONS.get((trigger, self.state))
        if dest is None:
            raise RuntimeError(f"No transition for trigger '{trigger}' from state '{self.state.value}'")
        self.visited.append(dest)
        return dest

    def fail(self) -> None:
        """Mark the switch failed; a no-op once it has finished."""
        if self.can("fail"):
            self.advance("fail")
