"""
Pure planning: (desired project, observed containers) -> ordered list of actions.

Nothing in here talks to the runtime. Given the same inputs the same list comes
out, whatever order the runtime listed its containers in.
"""

from __future__ import annotations

from .inspector import ObservedState
from .models import Action, ActionKind, ContainerRecord, ContainerStatus, Project, ReplicaSlot, ServiceSpec


def _slot_of(service: str, record: ContainerRecord) -> ReplicaSlot:
    return ReplicaSlot(service, record.replica if record.replica is not None else -1)


def _converge(slot: ReplicaSlot, service: ServiceSpec, fingerprint: str, record: ContainerRecord | None) -> Action:
    if record is None:
        return Action(ActionKind.CREATE, slot, service=service)

    if record.fingerprint != fingerprint:
        return Action(ActionKind.RECREATE, slot, service=service, record=record)

    if record.status.is_up:
        return Action(ActionKind.NOOP, slot, service=service, record=record)
    if record.status in (ContainerStatus.CREATED, ContainerStatus.EXITED):
        return Action(ActionKind.START, slot, service=service, record=record)

    # dead or unknown: not worth trying to start
    return Action(ActionKind.RECREATE, slot, service=service, record=record)


def _removals(
    service: str, records: list[tuple[ReplicaSlot, ContainerRecord]], unplaced: list[ContainerRecord]
) -> list[Action]:
    """Highest index first, so the low, most stable replicas go last."""
    ordered = sorted(records, key=lambda item: item[0].index, reverse=True)
    actions = [Action(ActionKind.REMOVE, slot, record=record) for slot, record in ordered]
    for record in sorted(unplaced, key=lambda r: r.name):
        actions.append(Action(ActionKind.REMOVE, _slot_of(service, record), record=record))
    return actions


def plan_up(project: Project, observed: ObservedState) -> list[Action]:
    actions: list[Action] = []

    for name in sorted(project.services):
        service = project.services[name]
        fingerprint = service.fingerprint()

        for index in range(service.replicas):
            slot = ReplicaSlot(name, index)
            actions.append(_converge(slot, service, fingerprint, observed.slots.get(slot)))

        surplus = [
            (slot, r) for slot, r in observed.slots.items() if slot.service == name and slot.index >= service.replicas
        ]
        unplaced = [r for r in observed.unplaced if r.service == name]
        actions.extend(_removals(name, surplus, unplaced))

    return actions


def plan_stop(project: Project, observed: ObservedState) -> list[Action]:
    actions: list[Action] = []

    for name in sorted(project.services):
        records = [(_slot_of(name, r), r) for r in observed.for_service(name) if r.status.is_up]
        for slot, record in sorted(records, key=lambda item: (item[0].index, item[1].name)):
            actions.append(Action(ActionKind.STOP, slot, record=record))

    return actions


def plan_down(project: Project, observed: ObservedState) -> list[Action]:
    actions: list[Action] = []

    for name in sorted(project.services):
        placed = [(slot, r) for slot, r in observed.slots.items() if slot.service == name]
        unplaced = [r for r in observed.unplaced if r.service == name]
        actions.extend(_removals(name, placed, unplaced))

    return actions


def pending_changes(actions: list[Action]) -> list[Action]:
    return [a for a in actions if a.kind is not ActionKind.NOOP]
