from __future__ import annotations

import logging

from rich.console import Console

from .adapters import RuntimeAdapter
from .diff import plan_down, plan_stop, plan_up
from .errors import RuntimeAdapterError
from .graph import DependencyGraph
from .inspector import ObservedState, StateInspector
from .models import Action, ActionKind, Project
from .orphans import find_orphans, orphan_actions
from .report import ActionResult, Outcome, RunReport
from .scheduler import Plan, Scheduler

logger = logging.getLogger(__name__)


class Composer:
    """
    Runs one command against one project. Holds nothing between commands:
    every command re-reads the runtime before deciding what to do.
    """

    def __init__(self, project: Project, adapter: RuntimeAdapter, scheduler: Scheduler, console: Console | None = None):
        self.project = project
        self.adapter = adapter
        self.scheduler = scheduler
        self.console = console or Console()
        self.inspector = StateInspector(adapter)

    def _prepare(self) -> tuple[DependencyGraph, ObservedState]:
        # Both raise before anything is changed: CycleError, then RuntimeConnectionError
        graph = DependencyGraph.from_project(self.project)
        observed = self.inspector.snapshot(self.project.name)
        return graph, observed

    def _orphans(self, observed: ObservedState, remove: bool) -> tuple[list[Action], list[str]]:
        orphans = find_orphans(self.project, observed)
        if not orphans:
            logger.info("found no orphans")
        return orphan_actions(orphans, remove)

    def plan(self, command: str, remove_orphans: bool = False) -> tuple[Plan, list[str]]:
        """Computes what `command` would do, without touching the runtime beyond one read."""
        graph, observed = self._prepare()
        actions, warnings = self._orphans(observed, remove_orphans)

        if command == "up":
            actions += plan_up(self.project, observed)
        elif command == "stop":
            actions += plan_stop(self.project, observed)
        elif command == "down":
            actions += plan_down(self.project, observed)
        else:
            raise ValueError(f"Unknown command '{command}'")

        plan = Plan(
            command,
            self.project,
            graph,
            actions,
            descending=command != "up",
            ordered_removals=command == "up",
        )
        return plan, warnings

    def up(self, remove_orphans: bool = False, build: bool = False) -> RunReport:
        plan, warnings = self.plan("up", remove_orphans)
        report = RunReport("up", warnings=warnings)

        pending = {a.slot.service for a in plan.actions if a.kind in (ActionKind.CREATE, ActionKind.RECREATE)}
        for result in self._ensure_images(sorted(pending), build):
            report.add(result)
            plan.failed_services.add(result.service)

        if pending:
            try:
                self.adapter.ensure_network(self.project.network, self.project.name)
            except RuntimeAdapterError as e:
                self.console.print(f"[bold red]❌ Network {self.project.network}:[/bold red] {e}")
                report.add(ActionResult(None, Outcome.FAILED, error=str(e), subject=self.project.network))
                plan.failed_services.update(pending)

        report.extend(self.scheduler.execute(plan))
        return report

    def stop(self, remove_orphans: bool = False) -> RunReport:
        plan, warnings = self.plan("stop", remove_orphans)
        report = RunReport("stop", warnings=warnings)
        report.extend(self.scheduler.execute(plan))
        return report

    def down(self, remove_orphans: bool = False) -> RunReport:
        plan, warnings = self.plan("down", remove_orphans)
        report = RunReport("down", warnings=warnings)
        report.extend(self.scheduler.execute(plan))

        # Orphans left in place may still be attached to the network
        if report.ok and not warnings and not report.cancelled:
            try:
                self.adapter.remove_network(self.project.network)
            except RuntimeAdapterError as e:
                self.console.print(f"[dim red]Warning: could not remove network {self.project.network}: {e}[/dim red]")
        return report

    def build(self, pull: bool = False) -> RunReport:
        """Builds every service that declares a build context. `pull` refreshes base images first."""
        report = RunReport("build")
        names = sorted(name for name, svc in self.project.services.items() if svc.build is not None)
        if not names:
            self.console.print("[dim]No service declares a build context.[/dim]")
        for name in names:
            report.add(self._build_one(name, pull))
        return report

    def _build_one(self, name: str, pull: bool = False) -> ActionResult:
        service = self.project.services[name]
        self.console.print(f"[blue]⚙️  Building {name} ({service.image})...[/blue]")
        try:
            self.adapter.build_image(service.build, service.image, pull=pull)
        except RuntimeAdapterError as e:
            self.console.print(f"[bold red]❌ Build of {name} failed:[/bold red] {e}")
            return ActionResult(None, Outcome.FAILED, error=str(e), subject=name)
        self.console.print(f"   [green]✓ Built {service.image}[/green]")
        return ActionResult(None, Outcome.SUCCEEDED, subject=name)

    def _ensure_images(self, services: list[str], build: bool) -> list[ActionResult]:
        """Builds or pulls images for services about to get new containers. Returns failures only."""
        failures = []
        for name in services:
            service = self.project.services[name]
            try:
                if service.build is not None and (build or not self.adapter.image_exists(service.image)):
                    result = self._build_one(name)
                    if result.outcome is Outcome.FAILED:
                        failures.append(result)
                elif service.build is None and not self.adapter.image_exists(service.image):
                    self.console.print(f"[dim]Pulling {service.image}...[/dim]")
                    self.adapter.pull_image(service.image)
            except RuntimeAdapterError as e:
                self.console.print(f"[bold red]❌ Image for {name}:[/bold red] {e}")
                failures.append(ActionResult(None, Outcome.FAILED, error=str(e), subject=name))
        return failures
