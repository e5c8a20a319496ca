"""Helpers for dependency references held by business key."""

from collections.abc import Iterable, Mapping


def find_dependency_cycle(
    graph: Mapping[str, Iterable[str]],
    start: str,
) -> list[str] | None:
    """Return a dependency path that leads from ``start`` back to itself, if any.

    ``graph`` maps a key to the keys it depends on. Keys that do not appear in
    the graph are dangling references and end the walk.
    """
    stack: list[tuple[str, list[str]]] = [(start, [start])]
    seen: set[str] = set()
    while stack:
        node, path = stack.pop()
        for dep in graph.get(node, ()):
            if dep == start:
                return path + [start]
            if dep in seen:
                continue
            seen.add(dep)
            stack.append((dep, path + [dep]))
    return None


def unsatisfied(
    dependencies: Iterable[str],
    statuses: Mapping[str, object],
    done: object,
) -> list[str]:
    """Dependency keys whose status is not ``done``. Unknown keys count as unsatisfied."""
    return [dep for dep in dependencies if statuses.get(dep) != done]
