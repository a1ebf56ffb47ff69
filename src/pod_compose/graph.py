from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from .errors import CycleError, SpecError
from .models import Project

logger = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


class DependencyGraph:
    """
    Services as nodes, edges running from a dependency to its dependents.
    Layers are computed once; a cycle anywhere makes the whole graph unusable.
    """

    def __init__(self, dependencies: Mapping[str, Iterable[str]]):
        self._deps: dict[str, frozenset[str]] = {name: frozenset(deps) for name, deps in dependencies.items()}
        self._dependents: dict[str, set[str]] = {name: set() for name in self._deps}

        for name, deps in self._deps.items():
            for dep in deps:
                if dep not in self._deps:
                    raise SpecError(f"Service '{name}' depends on undefined service '{dep}'")
                self._dependents[dep].add(name)

        self._check_acyclic()
        self._layers = self._build_layers()
        self._layer_index = {name: i for i, layer in enumerate(self._layers) for name in layer}

    @classmethod
    def from_project(cls, project: Project) -> DependencyGraph:
        return cls({name: service.depends_on for name, service in project.services.items()})

    def _check_acyclic(self) -> None:
        """Depth-first colouring; a back edge to a grey node is a cycle."""
        color = {name: _WHITE for name in self._deps}

        for root in sorted(self._deps):
            if color[root] != _WHITE:
                continue
            path = [root]
            color[root] = _GREY
            stack = [iter(sorted(self._deps[root]))]

            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    color[path.pop()] = _BLACK
                    continue
                if color[child] == _GREY:
                    cycle = path[path.index(child):] + [child]
                    logger.debug("cycle found while visiting %s", root)
                    raise CycleError(cycle)
                if color[child] == _WHITE:
                    color[child] = _GREY
                    path.append(child)
                    stack.append(iter(sorted(self._deps[child])))

    def _build_layers(self) -> list[list[str]]:
        remaining = {name: set(deps) for name, deps in self._deps.items()}
        layers: list[list[str]] = []

        while remaining:
            ready = sorted(name for name, deps in remaining.items() if not deps)
            if not ready:
                # _check_acyclic guarantees progress
                raise CycleError(sorted(remaining))
            layers.append(ready)
            for name in ready:
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)

        return layers

    def layers(self) -> list[list[str]]:
        return [list(layer) for layer in self._layers]

    def layer_of(self, service: str) -> int:
        return self._layer_index[service]

    def dependencies_of(self, service: str) -> set[str]:
        """All services `service` needs, directly or transitively."""
        return self._walk(service, self._deps)

    def dependents_of(self, service: str) -> set[str]:
        """All services that need `service`, directly or transitively."""
        return self._walk(service, self._dependents)

    @staticmethod
    def _walk(start: str, edges: Mapping[str, Iterable[str]]) -> set[str]:
        seen: set[str] = set()
        todo = list(edges[start])
        while todo:
            name = todo.pop()
            if name in seen:
                continue
            seen.add(name)
            todo.extend(edges[name])
        return seen

    def __contains__(self, service: str) -> bool:
        return service in self._deps

    def __len__(self) -> int:
        return len(self._deps)
