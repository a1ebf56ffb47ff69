from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .adapters import RuntimeAdapter
from .models import ContainerRecord, ReplicaSlot

logger = logging.getLogger(__name__)


@dataclass
class ObservedState:
    """A snapshot of the project's containers, valid for one run only."""

    slots: dict[ReplicaSlot, ContainerRecord] = field(default_factory=dict)
    # Records that carry a service label but could not claim a slot of their own
    unplaced: list[ContainerRecord] = field(default_factory=list)
    # Records owned by the project but with no service label at all
    unlabeled: list[ContainerRecord] = field(default_factory=list)

    def records(self) -> list[ContainerRecord]:
        return list(self.slots.values()) + self.unplaced + self.unlabeled

    def for_service(self, service: str) -> list[ContainerRecord]:
        owned = [r for slot, r in self.slots.items() if slot.service == service]
        owned += [r for r in self.unplaced if r.service == service]
        return owned


def _rank(record: ContainerRecord) -> tuple[bool, str]:
    return (not record.status.is_up, record.id)


class StateInspector:
    def __init__(self, adapter: RuntimeAdapter):
        self.adapter = adapter

    def snapshot(self, project: str) -> ObservedState:
        """
        Reads every container carrying the project label and maps it to its replica slot.
        Raises RuntimeConnectionError when the runtime is unreachable.
        """
        state = ObservedState()
        records = self.adapter.list_owned_containers(project)

        for record in sorted(records, key=_rank):
            if record.project != project:
                continue
            if record.service is None:
                state.unlabeled.append(record)
                continue

            slot = record.slot
            if slot is None or slot in state.slots:
                logger.debug("container %s has no free slot, marking unplaced", record.name)
                state.unplaced.append(record)
                continue

            state.slots[slot] = record

        state.unplaced.sort(key=lambda r: r.name)
        state.unlabeled.sort(key=lambda r: r.name)
        return state
