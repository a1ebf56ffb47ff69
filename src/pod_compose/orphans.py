from __future__ import annotations

import logging

from .inspector import ObservedState
from .models import Action, ActionKind, ContainerRecord, Project, ReplicaSlot

logger = logging.getLogger(__name__)


def find_orphans(project: Project, observed: ObservedState) -> list[ContainerRecord]:
    """
    Containers labelled with this project whose service is gone from the compose file.
    A scaled-down replica of a service that still exists is not an orphan.
    """
    orphans = [r for r in observed.records() if r.service is None or r.service not in project.services]
    orphans.sort(key=lambda r: r.name)
    logger.debug("found orphans: %s", [r.name for r in orphans])
    return orphans


def orphan_actions(orphans: list[ContainerRecord], remove: bool) -> tuple[list[Action], list[str]]:
    """Returns (actions, warnings). Exactly one of the two is non-empty when orphans exist."""
    if not remove:
        warnings = [
            f"Found orphan container {r.name} (service '{r.service or '?'}'), rerun with --remove-orphans to remove it."
            for r in orphans
        ]
        return [], warnings

    actions = [
        Action(
            ActionKind.REMOVE,
            ReplicaSlot(r.service or "", r.replica if r.replica is not None else -1),
            record=r,
            orphan=True,
        )
        for r in orphans
    ]
    return actions, []
