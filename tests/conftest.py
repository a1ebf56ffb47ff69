"""
Shared fixtures. The container runtime is replaced by an in-memory fake that
records every call, so no Docker daemon is needed.
"""

from __future__ import annotations

import io
import itertools
import threading
from collections.abc import Callable

import pytest
from rich.console import Console

from pod_compose.adapters import ownership_labels
from pod_compose.composer import Composer
from pod_compose.errors import RuntimeAdapterError, RuntimeConnectionError
from pod_compose.models import LABEL_PROJECT, BuildSpec, ContainerRecord, ContainerStatus, Project, ServiceSpec
from pod_compose.scheduler import Scheduler

READ_ONLY_CALLS = {"list", "image_exists"}


class FakeRuntime:
    """Implements the runtime adapter contract against a dict of containers."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.images: set[str] = set()
        self.networks: set[str] = set()
        # tag -> whether the build was asked to pull base images
        self.build_pulls: dict[str, bool] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], str] = {}
        self.unreachable = False
        # Called (outside the lock) with (op, target) on every mutating call
        self.hook: Callable[[str, str], None] | None = None
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    # -- test helpers --------------------------------------------------

    def seed(self, project: str, service: ServiceSpec, replica: int, status: str = "running", **label_overrides) -> str:
        labels = ownership_labels(project, service, replica)
        labels.update(label_overrides)
        return self.seed_raw(f"{project}_{service.name}_{replica}", labels, status)

    def seed_raw(self, name: str, labels: dict[str, str], status: str = "running") -> str:
        container_id = f"c{next(self._ids):04d}"
        self.containers[container_id] = {"name": name, "status": status, "labels": dict(labels)}
        return container_id

    def fail(self, op: str, target: str, message: str = "boom") -> None:
        self.failures[(op, target)] = message

    def by_name(self, name: str) -> dict | None:
        return next((c for c in self.containers.values() if c["name"] == name), None)

    def names(self) -> set[str]:
        return {c["name"] for c in self.containers.values()}

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] not in READ_ONLY_CALLS]

    def index_of(self, op: str, target: str) -> int:
        return self.calls.index((op, target))

    def _record(self, op: str, target: str) -> None:
        with self._lock:
            self.calls.append((op, target))
        if self.hook is not None and op not in READ_ONLY_CALLS:
            self.hook(op, target)
        if (op, target) in self.failures:
            raise RuntimeAdapterError(self.failures[(op, target)])

    def _name(self, container_id: str) -> str:
        try:
            return self.containers[container_id]["name"]
        except KeyError:
            raise RuntimeAdapterError(f"Container {container_id} not found") from None

    # -- adapter contract ----------------------------------------------

    def list_owned_containers(self, project: str) -> list[ContainerRecord]:
        if self.unreachable:
            raise RuntimeConnectionError("runtime is down")
        self._record("list", project)
        return [
            ContainerRecord(id=cid, name=c["name"], status=ContainerStatus.parse(c["status"]), labels=dict(c["labels"]))
            for cid, c in self.containers.items()
            if c["labels"].get(LABEL_PROJECT) == project
        ]

    def create_container(self, project: str, service: ServiceSpec, replica: int, network: str | None = None) -> str:
        name = f"{project}_{service.name}_{replica}"
        self._record("create", name)
        with self._lock:
            if self.by_name(name) is not None:
                raise RuntimeAdapterError(f"name {name} already in use")
            container_id = f"c{next(self._ids):04d}"
            labels = ownership_labels(project, service, replica)
            self.containers[container_id] = {
                "name": name, "status": "created", "labels": labels, "image": service.image
            }
        return container_id

    def start_container(self, container_id: str) -> None:
        self._record("start", self._name(container_id))
        self.containers[container_id]["status"] = "running"

    def stop_container(self, container_id: str, timeout: int) -> None:
        self._record("stop", self._name(container_id))
        self.containers[container_id]["status"] = "exited"

    def remove_container(self, container_id: str) -> None:
        self._record("remove", self._name(container_id))
        with self._lock:
            del self.containers[container_id]

    def build_image(self, build: BuildSpec, tag: str, pull: bool = False) -> str:
        self._record("build", tag)
        self.build_pulls[tag] = pull
        self.images.add(tag)
        return tag

    def image_exists(self, image: str) -> bool:
        self._record("image_exists", image)
        return image in self.images

    def pull_image(self, image: str) -> str:
        self._record("pull", image)
        self.images.add(image)
        return image

    def ensure_network(self, name: str, project: str) -> None:
        self._record("ensure_network", name)
        self.networks.add(name)

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        self.networks.discard(name)


def make_project(name: str = "app", **services: dict) -> Project:
    return Project.model_validate(
        {"name": name, "services": {svc: {"name": svc, **spec} for svc, spec in services.items()}}
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def app_project() -> Project:
    """api (2 replicas) and web, which depends on api."""
    return make_project(
        api={"image": "myapi:v1", "replicas": 2},
        web={"image": "nginx", "depends_on": ["api"]},
    )


@pytest.fixture
def make_composer(runtime, quiet_console):
    def _make(project: Project, workers: int = 4, deadline: float | None = None) -> Composer:
        runtime.images.update(svc.image for svc in project.services.values())
        scheduler = Scheduler(runtime, max_workers=workers, stop_timeout=1, deadline=deadline, console=quiet_console)
        return Composer(project, runtime, scheduler, console=quiet_console)

    return _make
