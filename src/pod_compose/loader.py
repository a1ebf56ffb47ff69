from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .errors import SpecError
from .models import Project

logger = logging.getLogger(__name__)

COMPOSE_FILE_NAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")


def find_compose_file(start: Path | None = None) -> Path:
    """Looks for a compose file in `start` and then in each of its parents."""
    start = (start or Path.cwd()).resolve()
    for directory in (start, *start.parents):
        for name in COMPOSE_FILE_NAMES:
            candidate = directory / name
            if candidate.is_file():
                logger.info("found compose file %s", candidate)
                return candidate
    raise SpecError(
        "Couldn't find a docker-compose.yml file in the current working directory or any of its parents."
    )


def project_name_from(directory: Path) -> str:
    name = re.sub(r"[^a-z0-9_\-]", "", directory.name.lower()).lstrip("_-")
    if not name:
        raise SpecError(f"Couldn't determine the project name from '{directory}', pass one explicitly.")
    return name


def _service_entry(name: str, raw: Any, base: Path) -> dict[str, Any]:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise SpecError(f"Service '{name}' must be a mapping")

    entry = {k.replace("-", "_"): v for k, v in raw.items()}
    entry["name"] = name

    deploy = entry.pop("deploy", None) or {}
    if "replicas" not in entry and isinstance(deploy, dict) and "replicas" in deploy:
        entry["replicas"] = deploy["replicas"]

    build = entry.get("build")
    if isinstance(build, str):
        build = {"context": build}
    if isinstance(build, dict) and "context" in build:
        build = dict(build)
        build["context"] = str((base / build["context"]).resolve())
        entry["build"] = build

    if isinstance(entry.get("volumes"), list):
        entry["volumes"] = [_resolve_volume(str(v), base) for v in entry["volumes"]]

    return entry


def _resolve_volume(volume: str, base: Path) -> str:
    """Relative and home-relative bind sources become absolute; named volumes are left alone."""
    source, sep, rest = volume.partition(":")
    if sep and source.startswith((".", "~")):
        source = str((base / Path(source).expanduser()).resolve())
    return f"{source}{sep}{rest}"


def parse_project(data: Any, name: str, base: Path) -> Project:
    if not isinstance(data, dict):
        raise SpecError("Compose file must be a mapping at the top level")

    services = data.get("services")
    if not isinstance(services, dict) or not services:
        raise SpecError("Compose file has no 'services' section")

    networks = data.get("networks") or {}
    network = None
    if isinstance(networks, dict) and isinstance(networks.get("default"), dict):
        network = networks["default"].get("name")

    try:
        return Project.model_validate(
            {
                "name": name,
                "network": network,
                "services": {svc: _service_entry(svc, raw, base) for svc, raw in services.items()},
            }
        )
    except ValidationError as e:
        raise SpecError(f"Invalid compose file:\n{e}") from e


def load_project(path: Path, project_name: str | None = None) -> Project:
    """Reads and validates a compose file. Every problem surfaces as SpecError."""
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise SpecError(f"Couldn't read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise SpecError(f"Couldn't parse {path}: {e}") from e

    base = path.resolve().parent
    name = project_name or project_name_from(base)
    logger.info("project name %s", name)
    return parse_project(raw, name, base)
