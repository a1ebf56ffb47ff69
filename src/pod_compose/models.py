from __future__ import annotations

import hashlib
import json
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import CycleError, SpecError

LABEL_PROJECT = "io.podman.compose.project"
LABEL_SERVICE = "io.podman.compose.service"
LABEL_REPLICA = "io.podman.compose.replica"
LABEL_HASH = "io.podman.compose.hash"


def _as_mapping(value: Any) -> Any:
    """Accepts both compose spellings: a mapping or a list of KEY=VALUE strings."""
    if isinstance(value, list):
        pairs = {}
        for item in value:
            key, _, val = str(item).partition("=")
            pairs[key] = val
        return pairs
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    return value


def _has_tag(image: str) -> bool:
    last = image.rsplit("/", 1)[-1]
    return ":" in last or "@" in last


PORT_PROTOCOLS = ("tcp", "udp", "sctp")


@dataclass(frozen=True)
class PortMapping:
    """One compose port entry. Ranges are inclusive (first, last) pairs."""

    container: tuple[int, int]
    host: tuple[int, int] | None = None
    host_ip: str | None = None
    protocol: str = "tcp"

    def pairs(self) -> list[tuple[int, int | None]]:
        """(container port, host port) for every port in the range."""
        first, last = self.container
        return [
            (port, self.host[0] + offset if self.host else None)
            for offset, port in enumerate(range(first, last + 1))
        ]


def _port_range(text: str, entry: str) -> tuple[int, int]:
    first, sep, last = text.partition("-")
    try:
        low = int(first)
        high = int(last) if sep else low
    except ValueError:
        raise SpecError(f"Invalid port '{text}' in '{entry}'") from None
    if not 1 <= low <= high <= 65535:
        raise SpecError(f"Port range '{text}' in '{entry}' must lie within 1-65535")
    return low, high


def split_port(entry: str) -> PortMapping:
    """
    Parses "[[host_ip:]host[-host_end]:]container[-container_end][/proto]".
    A host range must be as wide as the container range it maps.
    """
    spec, _, protocol = entry.partition("/")
    protocol = protocol or "tcp"
    if protocol not in PORT_PROTOCOLS:
        raise SpecError(f"Unknown protocol '{protocol}' in port '{entry}'")

    parts = spec.split(":")
    container = _port_range(parts[-1], entry)
    host = _port_range(parts[-2], entry) if len(parts) > 1 and parts[-2] else None
    host_ip = ":".join(parts[:-2]) or None

    if host and host[1] - host[0] != container[1] - container[0]:
        raise SpecError(f"Host and container ranges in port '{entry}' differ in size")
    return PortMapping(container=container, host=host, host_ip=host_ip, protocol=protocol)


class BuildSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    context: str = Field(..., description="Build context directory")
    dockerfile: str = Field("Dockerfile", description="Dockerfile path, relative to the context")
    args: dict[str, str] = Field(default_factory=dict)
    target: str | None = None

    @field_validator("args", mode="before")
    @classmethod
    def normalize_args(cls, v: Any) -> Any:
        return _as_mapping(v)


class ServiceSpec(BaseModel):
    name: str = Field(..., pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$", description="Service name")
    image: str | None = Field(None, description="Image reference to run")
    build: BuildSpec | None = Field(None, description="Build context for the service image")
    command: list[str] | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    ports: list[str] = Field(default_factory=list, description="host:container[/proto] mappings")
    volumes: list[str] = Field(default_factory=list, description="source:target[:mode] mappings")
    replicas: int = Field(1, ge=0, description="Number of replica containers")
    depends_on: list[str] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("image")
    @classmethod
    def validate_image_tag(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not _has_tag(v):
            return f"{v}:latest"
        return v

    @field_validator("build", mode="before")
    @classmethod
    def normalize_build(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"context": v}
        return v

    @field_validator("command", mode="before")
    @classmethod
    def normalize_command(cls, v: Any) -> Any:
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("environment", "labels", mode="before")
    @classmethod
    def normalize_mapping(cls, v: Any) -> Any:
        return _as_mapping(v)

    @field_validator("ports", mode="before")
    @classmethod
    def normalize_ports(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [str(p) for p in v]
        return v

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: list[str]) -> list[str]:
        for entry in v:
            split_port(entry)
        return v

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_depends_on(cls, v: Any) -> Any:
        # Long form: {db: {condition: service_started}}
        if isinstance(v, dict):
            return list(v)
        return v

    @model_validator(mode="after")
    def require_image_or_build(self) -> ServiceSpec:
        if self.image is None and self.build is None:
            raise SpecError(f"Service '{self.name}' has neither an image nor a build context")
        return self

    def fingerprint(self) -> str:
        """
        Digest of everything that changes how the container runs.
        Replica count and dependencies are left out: scaling or re-ordering a
        service must not recreate its containers.
        """
        payload = self.model_dump(mode="json", exclude={"replicas", "depends_on"})
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class Project(BaseModel):
    name: str = Field(..., pattern=r"^[a-z0-9][a-z0-9_\-]*$", description="Project identifier")
    services: dict[str, ServiceSpec] = Field(default_factory=dict)
    network: str | None = Field(None, description="Shared project network, defaults to <name>_default")

    @model_validator(mode="after")
    def check_services(self) -> Project:
        if self.network is None:
            self.network = f"{self.name}_default"

        for key, service in list(self.services.items()):
            if service.name != key:
                raise SpecError(f"Service key '{key}' does not match service name '{service.name}'")
            if service.image is None:
                # Repository names must be lowercase, service names need not be.
                image = f"{self.name}_{key.lower()}:latest"
                self.services[key] = service.model_copy(update={"image": image})

        for service in self.services.values():
            for dep in service.depends_on:
                if dep == service.name:
                    raise CycleError([service.name, service.name])
                if dep not in self.services:
                    raise SpecError(f"Service '{service.name}' depends on undefined service '{dep}'")
        return self

    def container_name(self, slot: ReplicaSlot) -> str:
        return f"{self.name}_{slot.service}_{slot.index}"


@dataclass(frozen=True, order=True)
class ReplicaSlot:
    service: str
    index: int

    def __str__(self) -> str:
        return f"{self.service}-{self.index}"


class ContainerStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> ContainerStatus:
        # Podman reports "configured" for a container that was never started.
        if raw == "configured":
            return cls.CREATED
        if raw == "stopped":
            return cls.EXITED
        try:
            return cls((raw or "").lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_up(self) -> bool:
        return self in (ContainerStatus.RUNNING, ContainerStatus.PAUSED, ContainerStatus.RESTARTING)


@dataclass(frozen=True)
class ContainerRecord:
    """What the runtime reports for one container. Rebuilt from the runtime on every run."""

    id: str
    name: str
    status: ContainerStatus
    labels: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def project(self) -> str | None:
        return self.labels.get(LABEL_PROJECT)

    @property
    def service(self) -> str | None:
        return self.labels.get(LABEL_SERVICE)

    @property
    def replica(self) -> int | None:
        raw = self.labels.get(LABEL_REPLICA)
        if raw is None or not raw.isdigit():
            return None
        return int(raw)

    @property
    def fingerprint(self) -> str | None:
        return self.labels.get(LABEL_HASH)

    @property
    def slot(self) -> ReplicaSlot | None:
        if self.service is None or self.replica is None:
            return None
        return ReplicaSlot(self.service, self.replica)


class ActionKind(str, Enum):
    CREATE = "create"
    RECREATE = "recreate"
    REMOVE = "remove"
    NOOP = "noop"
    START = "start"
    STOP = "stop"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    slot: ReplicaSlot
    service: ServiceSpec | None = None
    record: ContainerRecord | None = None
    orphan: bool = False

    @property
    def target(self) -> str:
        """Human readable name of what the action touches."""
        if (self.orphan or self.slot.index < 0) and self.record is not None:
            return self.record.name
        return str(self.slot)

    def __str__(self) -> str:
        return f"{self.kind.value.capitalize()}({self.target})"
