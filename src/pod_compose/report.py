from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum

from rich.console import Console
from rich.table import Table

from .models import Action


class SlotState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    REMOVING = "removing"
    FAILED = "failed"


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    NOOP = "noop"
    FAILED = "failed"
    PARTIAL_FAILURE = "partial-failure"
    SKIPPED = "skipped"

    @property
    def is_error(self) -> bool:
        return self in (Outcome.FAILED, Outcome.PARTIAL_FAILURE, Outcome.SKIPPED)


_STYLES = {
    Outcome.SUCCEEDED: "green",
    Outcome.NOOP: "dim",
    Outcome.FAILED: "bold red",
    Outcome.PARTIAL_FAILURE: "bold magenta",
    Outcome.SKIPPED: "yellow",
}


@dataclass
class ActionResult:
    action: Action | None
    outcome: Outcome
    states: list[SlotState] = field(default_factory=list)
    error: str | None = None
    # Set for results that do not belong to a replica slot, such as an image build
    subject: str | None = None

    @property
    def service(self) -> str:
        if self.action is not None:
            return self.action.slot.service
        return self.subject or ""

    @property
    def target(self) -> str:
        if self.action is not None:
            return self.action.target
        return self.subject or ""

    @property
    def final_state(self) -> SlotState | None:
        return self.states[-1] if self.states else None


@dataclass
class RunReport:
    command: str
    results: list[ActionResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False

    def add(self, result: ActionResult) -> None:
        self.results.append(result)

    def extend(self, other: RunReport) -> None:
        self.results.extend(other.results)
        self.warnings.extend(other.warnings)
        self.cancelled = self.cancelled or other.cancelled

    @property
    def ok(self) -> bool:
        return not any(r.outcome.is_error for r in self.results)

    @property
    def exit_code(self) -> int:
        # Orphan warnings are informational and never change the exit code
        return 0 if self.ok else 1

    def with_outcome(self, *outcomes: Outcome) -> list[ActionResult]:
        return [r for r in self.results if r.outcome in outcomes]

    def by_service(self) -> dict[str, dict[Outcome, int]]:
        breakdown: dict[str, dict[Outcome, int]] = defaultdict(lambda: defaultdict(int))
        for r in self.results:
            breakdown[r.service][r.outcome] += 1
        return {service: dict(counts) for service, counts in sorted(breakdown.items())}

    def render(self, console: Console) -> None:
        table = Table(title=f"pod-compose {self.command}", show_lines=False)
        table.add_column("Target")
        table.add_column("Action")
        table.add_column("Outcome")
        table.add_column("Detail", overflow="fold")

        for r in self.results:
            kind = r.action.kind.value if r.action is not None else self.command
            style = _STYLES[r.outcome]
            table.add_row(r.target, kind, f"[{style}]{r.outcome.value}[/{style}]", r.error or "")

        if self.results:
            console.print(table)

        for warning in self.warnings:
            console.print(f"[bold cyan]INFO:[/bold cyan] {warning}")

        if self.cancelled:
            console.print("[bold orange1]🛑 Run was interrupted, undispatched actions were skipped.[/bold orange1]")

        for service, counts in self.by_service().items():
            if any(outcome.is_error for outcome in counts):
                summary = ", ".join(f"{n} {o.value}" for o, n in counts.items())
                console.print(f"[bold red]❌ {service}:[/bold red] {summary}")
