from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.types import Mount
from requests.exceptions import RequestException

from .errors import RuntimeAdapterError, RuntimeConnectionError
from .models import (
    LABEL_HASH,
    LABEL_PROJECT,
    LABEL_REPLICA,
    LABEL_SERVICE,
    BuildSpec,
    ContainerRecord,
    ContainerStatus,
    ServiceSpec,
    split_port,
)
from .settings import AppSettings

logger = logging.getLogger(__name__)


class RuntimeAdapter(Protocol):
    """
    Everything the engine may ask of a container runtime.
    Implementations must tolerate being called from several worker threads at once.
    """

    def list_owned_containers(self, project: str) -> list[ContainerRecord]: ...

    def create_container(self, project: str, service: ServiceSpec, replica: int, network: str | None = None) -> str: ...

    def start_container(self, container_id: str) -> None: ...

    def stop_container(self, container_id: str, timeout: int) -> None: ...

    def remove_container(self, container_id: str) -> None: ...

    def build_image(self, build: BuildSpec, tag: str, pull: bool = False) -> str: ...

    def image_exists(self, image: str) -> bool: ...

    def pull_image(self, image: str) -> str: ...

    def ensure_network(self, name: str, project: str) -> None: ...

    def remove_network(self, name: str) -> None: ...


def ownership_labels(project: str, service: ServiceSpec, replica: int) -> dict[str, str]:
    labels = dict(service.labels)
    labels.update(
        {
            LABEL_PROJECT: project,
            LABEL_SERVICE: service.name,
            LABEL_REPLICA: str(replica),
            LABEL_HASH: service.fingerprint(),
        }
    )
    return labels


def parse_ports(ports: list[str]) -> dict[str, Any]:
    """
    Translates compose port strings into the SDK mapping, one key per container port.
    "8080:80" -> {"80/tcp": 8080}, "127.0.0.1:53:53/udp" -> {"53/udp": ("127.0.0.1", 53)}, "80" -> {"80/tcp": None}
    """
    mapping: dict[str, Any] = {}
    for entry in ports:
        port = split_port(entry)
        for container_port, host_port in port.pairs():
            key = f"{container_port}/{port.protocol}"
            if port.host_ip is None:
                mapping[key] = host_port
            elif host_port is None:
                mapping[key] = (port.host_ip,)
            else:
                mapping[key] = (port.host_ip, host_port)
    return mapping


def parse_volumes(volumes: list[str]) -> tuple[list[str], list[Mount]]:
    """
    Splits compose volume strings into SDK binds and mounts.
    "src:target[:mode]" is a bind or named volume with the mode defaulted to rw.
    A lone "target" is an anonymous volume, which the binds list cannot express.
    """
    binds, mounts = [], []
    for entry in volumes:
        parts = entry.split(":")
        if len(parts) == 1:
            mounts.append(Mount(target=entry, source=None, type="volume"))
            continue
        if len(parts) == 2:
            parts.append("rw")
        binds.append(":".join(parts))
    return binds, mounts


# Every SDK failure, plus what requests raises when the socket drops mid-call.
RUNTIME_ERRORS = (DockerException, RequestException)


class DockerAdapter:
    """Runtime adapter over the Docker Engine API, which Podman also serves."""

    def __init__(self, client: docker.DockerClient):
        self.client = client

    def _container(self, container_id: str):
        try:
            return self.client.containers.get(container_id)
        except NotFound as e:
            raise RuntimeAdapterError(f"Container {container_id} not found") from e
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not inspect {container_id}: {e}") from e

    def list_owned_containers(self, project: str) -> list[ContainerRecord]:
        try:
            containers = self.client.containers.list(all=True, filters={"label": f"{LABEL_PROJECT}={project}"})
        except RUNTIME_ERRORS as e:
            raise RuntimeConnectionError(f"Could not list containers: {e}") from e

        records = []
        for c in containers:
            labels = c.labels or {}
            # The label filter is the ownership rule; re-check it rather than trust the backend.
            if labels.get(LABEL_PROJECT) != project:
                continue
            records.append(
                ContainerRecord(id=c.id, name=c.name, status=ContainerStatus.parse(c.status), labels=dict(labels))
            )
        logger.debug("project %s owns %d containers", project, len(records))
        return records

    def create_container(self, project: str, service: ServiceSpec, replica: int, network: str | None = None) -> str:
        name = f"{project}_{service.name}_{replica}"
        binds, mounts = parse_volumes(service.volumes)
        try:
            container = self.client.containers.create(
                service.image,
                command=service.command,
                name=name,
                environment=service.environment,
                ports=parse_ports(service.ports),
                volumes=binds,
                mounts=mounts,
                labels=ownership_labels(project, service, replica),
                network=network,
                detach=True,
            )
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not create {name}: {e}") from e
        logger.debug("created %s (%s)", name, container.id)
        return container.id

    def start_container(self, container_id: str) -> None:
        container = self._container(container_id)
        try:
            container.start()
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not start {container_id}: {e}") from e

    def stop_container(self, container_id: str, timeout: int) -> None:
        container = self._container(container_id)
        try:
            container.stop(timeout=timeout)
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not stop {container_id}: {e}") from e

    def remove_container(self, container_id: str) -> None:
        container = self._container(container_id)
        try:
            container.remove()
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not remove {container_id}: {e}") from e

    def build_image(self, build: BuildSpec, tag: str, pull: bool = False) -> str:
        """Builds and tags an image. `pull` refreshes the base images named in the Dockerfile."""
        try:
            image, logs = self.client.images.build(
                path=build.context,
                dockerfile=build.dockerfile,
                buildargs=build.args,
                target=build.target,
                tag=tag,
                pull=pull,
                rm=True,
            )
            for chunk in logs:
                if "stream" in chunk:
                    logger.debug(chunk["stream"].rstrip())
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not build {tag}: {e}") from e
        return tag

    def image_exists(self, image: str) -> bool:
        try:
            self.client.images.get(image)
            return True
        except ImageNotFound:
            return False
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not inspect image {image}: {e}") from e

    def pull_image(self, image: str) -> str:
        try:
            self.client.images.pull(image)
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not pull {image}: {e}") from e
        return image

    def ensure_network(self, name: str, project: str) -> None:
        try:
            self.client.networks.get(name)
        except NotFound:
            try:
                self.client.networks.create(name, driver="bridge", labels={LABEL_PROJECT: project})
            except RUNTIME_ERRORS as e:
                raise RuntimeAdapterError(f"Could not create network {name}: {e}") from e
            logger.debug("created network %s", name)
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not inspect network {name}: {e}") from e

    def remove_network(self, name: str) -> None:
        try:
            self.client.networks.get(name).remove()
        except NotFound:
            return
        except RUNTIME_ERRORS as e:
            raise RuntimeAdapterError(f"Could not remove network {name}: {e}") from e


def _docker_client(settings: AppSettings) -> docker.DockerClient:
    if settings.DOCKER_BASE_URL:
        return docker.DockerClient(base_url=settings.DOCKER_BASE_URL)
    return docker.from_env()


def _podman_client(settings: AppSettings) -> docker.DockerClient:
    return docker.DockerClient(base_url=settings.PODMAN_BASE_URL)


BACKENDS: dict[str, Callable[[AppSettings], docker.DockerClient]] = {
    "docker": _docker_client,
    "podman": _podman_client,
}


def connect(settings: AppSettings) -> RuntimeAdapter:
    """Selects the backend named in the settings and checks that it answers."""
    try:
        factory = BACKENDS[settings.BACKEND]
    except KeyError:
        raise RuntimeConnectionError(
            f"Unknown backend '{settings.BACKEND}', expected one of: {', '.join(sorted(BACKENDS))}"
        ) from None

    try:
        client = factory(settings)
        client.ping()
    except RUNTIME_ERRORS as e:
        raise RuntimeConnectionError(f"Could not connect to the {settings.BACKEND} daemon: {e}") from e

    logger.debug("connected to %s", settings.BACKEND)
    return DockerAdapter(client)
