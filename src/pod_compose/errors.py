from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ReplicaSlot


class ComposeError(Exception):
    """Base class for every error raised by pod-compose."""


class SpecError(ComposeError):
    """The compose file is malformed or unusable. Raised before any mutation."""


class CycleError(SpecError):
    """The services' dependencies form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class RuntimeConnectionError(ComposeError, ConnectionError):
    """The container runtime cannot be reached."""


class RuntimeAdapterError(ComposeError):
    """A single runtime call failed."""


class ActionError(ComposeError):
    """One step of one replica action failed."""

    def __init__(self, slot: ReplicaSlot, step: str, cause: Exception):
        self.slot = slot
        self.step = step
        self.cause = cause
        super().__init__(f"{slot}: {step} failed: {cause}")


class PartialFailure(ActionError):
    """
    A recreate removed the old container but could not bring up the new one.
    The slot is left without a container; it is not rolled back.
    """

    def __init__(self, slot: ReplicaSlot, step: str, cause: Exception):
        super().__init__(slot, step, cause)
        left = "absent" if step == "create" else "not running"
        self.args = (f"{slot}: old container removed but {step} failed, replica is {left}: {cause}",)
