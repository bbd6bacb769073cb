from __future__ import annotations

from typing import Iterable, Mapping

from .errors import ConfigurationError, CycleError


def _check_known(graph: Mapping[str, Iterable[str]]) -> None:
    for name, deps in graph.items():
        for dep in deps:
            if dep not in graph:
                raise ConfigurationError(f"unknown dependency '{dep}'", service=name)


def find_cycle(graph: Mapping[str, Iterable[str]], among: Iterable[str] | None = None) -> list[str]:
    """Return one dependency cycle (in edge order) or [] if there is none.

    `among` restricts the search to a subset of nodes, e.g. the ones a
    topological sort could not place.
    """
    nodes = list(graph) if among is None else [n for n in graph if n in set(among)]
    allowed = set(nodes)
    color: dict[str, int] = {}  # 1 = on stack, 2 = done
    stack: list[str] = []

    def visit(n: str) -> list[str]:
        color[n] = 1
        stack.append(n)
        for dep in graph.get(n, ()):
            if dep not in allowed:
                continue
            if color.get(dep) == 1:
                return stack[stack.index(dep):]
            if dep not in color:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[n] = 2
        return []

    for n in nodes:
        if n not in color:
            found = visit(n)
            if found:
                return found
    return []


def resolve_order(graph: Mapping[str, Iterable[str]]) -> list[str]:
    """Topological start order: dependencies first.

    Among services that are ready at the same time the one declared first
    wins, so the result is deterministic for a given descriptor.
    """
    _check_known(graph)
    position = {name: i for i, name in enumerate(graph)}
    remaining = {name: set(deps) for name, deps in graph.items()}
    dependents: dict[str, list[str]] = {name: [] for name in graph}
    for name, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = sorted((n for n, deps in remaining.items() if not deps), key=position.__getitem__)
    order: list[str] = []
    while ready:
        n = ready.pop(0)
        order.append(n)
        for child in dependents[n]:
            remaining[child].discard(n)
            if not remaining[child]:
                ready.append(child)
        ready.sort(key=position.__getitem__)

    if len(order) != len(remaining):
        stuck = [n for n in graph if n not in set(order)]
        raise CycleError(find_cycle(graph, among=stuck) or stuck)
    return order


def dependents_of(graph: Mapping[str, Iterable[str]], name: str) -> list[str]:
    """All services that transitively depend on `name`, in declaration order."""
    hit = {name}
    changed = True
    while changed:
        changed = False
        for n, deps in graph.items():
            if n not in hit and any(d in hit for d in deps):
                hit.add(n)
                changed = True
    return [n for n in graph if n in hit and n != name]
