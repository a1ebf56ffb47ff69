from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from rich.console import Console

from .adapters import RuntimeAdapter
from .errors import ActionError, PartialFailure, RuntimeAdapterError
from .graph import DependencyGraph
from .models import Action, ActionKind, ContainerRecord, Project
from .report import ActionResult, Outcome, RunReport, SlotState

logger = logging.getLogger(__name__)

_VERBS = {
    ActionKind.CREATE: "Created",
    ActionKind.RECREATE: "Recreated",
    ActionKind.REMOVE: "Removed",
    ActionKind.START: "Started",
    ActionKind.STOP: "Stopped",
}

_NEEDS_IMAGE = (ActionKind.CREATE, ActionKind.RECREATE)


@dataclass
class Plan:
    """Everything one command is about to do, decided before the first runtime call."""

    command: str
    project: Project
    graph: DependencyGraph
    actions: list[Action]
    descending: bool = False
    # Scale-down removes the highest index first, so those removals run one after another
    ordered_removals: bool = False
    # Services whose images could not be pulled or built
    failed_services: set[str] = field(default_factory=set)

    def layers(self) -> list[list[str]]:
        layers = self.graph.layers()
        return list(reversed(layers)) if self.descending else layers


class Scheduler:
    """
    Applies a plan layer by layer. Actions of one layer run concurrently on a
    bounded thread pool; the next layer is only dispatched once every action of
    the current one has finished, successfully or not.
    """

    def __init__(
        self,
        adapter: RuntimeAdapter,
        max_workers: int = 4,
        stop_timeout: int = 5,
        deadline: float | None = None,
        console: Console | None = None,
    ):
        self.adapter = adapter
        self.max_workers = max(1, int(max_workers))
        self.stop_timeout = stop_timeout
        self.deadline = deadline
        self.console = console or Console()
        self._cancel = threading.Event()
        self._started_at: float | None = None

    def cancel(self) -> None:
        """Stops dispatching. Calls already in flight are allowed to finish."""
        if not self._cancel.is_set():
            logger.info("cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _remaining(self) -> float | None:
        if self.deadline is None or self._started_at is None:
            return None
        return max(0.0, self.deadline - (time.monotonic() - self._started_at))

    def execute(self, plan: Plan) -> RunReport:
        report = RunReport(plan.command)
        self._started_at = time.monotonic()
        failed = set(plan.failed_services)

        by_service: dict[str, list[Action]] = {}
        for action in plan.actions:
            if not action.orphan:
                by_service.setdefault(action.slot.service, []).append(action)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="pod-compose") as pool:
            orphans = [a for a in plan.actions if a.orphan]
            if orphans:
                for result in self._run_layer(pool, plan, orphans):
                    report.add(result)

            for depth, layer in enumerate(plan.layers()):
                batch: list[Action] = []
                for service in layer:
                    upstream = plan.graph.dependencies_of(service) & failed
                    for action in by_service.get(service, []):
                        blocked = set(upstream)
                        if action.kind in _NEEDS_IMAGE and service in plan.failed_services:
                            blocked.add(service)
                        if action.kind is ActionKind.NOOP:
                            report.add(ActionResult(action, Outcome.NOOP))
                        elif blocked:
                            reason = f"blocked by failed service: {', '.join(sorted(blocked))}"
                            report.add(ActionResult(action, Outcome.SKIPPED, error=reason))
                        else:
                            batch.append(action)

                if not batch:
                    continue

                logger.debug("layer %d: dispatching %d actions", depth, len(batch))
                for result in self._run_layer(pool, plan, batch):
                    report.add(result)
                    if result.outcome in (Outcome.FAILED, Outcome.PARTIAL_FAILURE):
                        failed.add(result.service)

        report.cancelled = self.cancelled
        return report

    def _tasks(self, plan: Plan, actions: list[Action]) -> list[Callable[[], list[ActionResult]]]:
        """
        One task per slot. With ordered removals, the removals of one service
        share a single task and run in plan order.
        """
        tasks: list[Callable[[], list[ActionResult]]] = []
        removals: dict[str, list[Action]] = {}

        for action in actions:
            if plan.ordered_removals and action.kind is ActionKind.REMOVE and not action.orphan:
                removals.setdefault(action.slot.service, []).append(action)
            else:
                tasks.append(lambda a=action: [self._apply(plan, a)])

        for chain in removals.values():
            tasks.append(lambda c=chain: [self._apply(plan, a) for a in c])

        return tasks

    def _run_layer(self, pool: ThreadPoolExecutor, plan: Plan, actions: list[Action]) -> list[ActionResult]:
        remaining = self._remaining()
        if remaining == 0.0:
            self.cancel()

        if self.cancelled:
            return [ActionResult(a, Outcome.SKIPPED, error="cancelled before dispatch") for a in actions]

        futures: list[Future[list[ActionResult]]] = [pool.submit(task) for task in self._tasks(plan, actions)]

        # Layer barrier
        _, not_done = wait(futures, timeout=remaining)
        if not_done:
            logger.warning("deadline of %ss reached, letting %d in-flight tasks finish", self.deadline, len(not_done))
            self.cancel()
            wait(not_done)

        results: list[ActionResult] = []
        for future in futures:
            results.extend(future.result())
        return results

    def _apply(self, plan: Plan, action: Action) -> ActionResult:
        if self.cancelled:
            return ActionResult(action, Outcome.SKIPPED, error="cancelled before dispatch")

        states: list[SlotState] = []
        try:
            if action.kind is ActionKind.CREATE:
                states.append(SlotState.ABSENT)
                self._create_and_start(plan, action, states)

            elif action.kind is ActionKind.RECREATE:
                self._remove(action, action.record, states)
                try:
                    self._create_and_start(plan, action, states)
                except ActionError as e:
                    raise PartialFailure(action.slot, e.step, e.cause) from e

            elif action.kind is ActionKind.REMOVE:
                self._remove(action, action.record, states)

            elif action.kind is ActionKind.STOP:
                states.append(SlotState.RUNNING)
                self._step(action, states, SlotState.STOPPING, "stop", self._stop_call(action.record))
                states.append(SlotState.STOPPED)

            elif action.kind is ActionKind.START:
                states.append(SlotState.STOPPED)
                self._step(
                    action, states, SlotState.STARTING, "start", lambda: self.adapter.start_container(action.record.id)
                )
                states.append(SlotState.RUNNING)

            else:
                return ActionResult(action, Outcome.NOOP)

        except PartialFailure as e:
            self.console.print(f"[bold magenta]⚠️  {action.target}: {e}[/bold magenta]")
            return ActionResult(action, Outcome.PARTIAL_FAILURE, states, str(e))
        except ActionError as e:
            self.console.print(f"[bold red]❌ {action.target}: {e.step} failed:[/bold red] {e.cause}")
            return ActionResult(action, Outcome.FAILED, states, str(e))

        self.console.print(f"   [green]✓ {_VERBS[action.kind]} {action.target}[/green]")
        return ActionResult(action, Outcome.SUCCEEDED, states)

    def _step(self, action: Action, states: list[SlotState], state: SlotState, step: str, call: Callable[[], object]):
        states.append(state)
        try:
            return call()
        except Exception as e:
            # Whatever a runtime call raises stays with its own slot.
            if not isinstance(e, RuntimeAdapterError):
                logger.exception("%s of %s raised unexpectedly", step, action.target)
            states.append(SlotState.FAILED)
            raise ActionError(action.slot, step, e) from e

    def _stop_call(self, record: ContainerRecord) -> Callable[[], None]:
        return lambda: self.adapter.stop_container(record.id, self.stop_timeout)

    def _remove(self, action: Action, record: ContainerRecord, states: list[SlotState]) -> None:
        if record.status.is_up:
            states.append(SlotState.RUNNING)
            self._step(action, states, SlotState.STOPPING, "stop", self._stop_call(record))
        states.append(SlotState.STOPPED)
        self._step(action, states, SlotState.REMOVING, "remove", lambda: self.adapter.remove_container(record.id))
        states.append(SlotState.ABSENT)

    def _create_and_start(self, plan: Plan, action: Action, states: list[SlotState]) -> None:
        project = plan.project
        container_id = self._step(
            action,
            states,
            SlotState.CREATING,
            "create",
            lambda: self.adapter.create_container(project.name, action.service, action.slot.index, project.network),
        )
        states.append(SlotState.CREATED)
        self._step(action, states, SlotState.STARTING, "start", lambda: self.adapter.start_container(container_id))
        states.append(SlotState.RUNNING)
