"""Dependency graphs over task ids: cycle detection and ordering.

Graphs are plain maps from a task id to the ids it depends on. Traversal
is iterative so deep chains never hit the interpreter's recursion limit.
"""

from collections import deque
from collections.abc import Mapping, Sequence

from coe_orchestrator.errors import DependencyCycleError

Graph = Mapping[str, Sequence[str]]


def detect_cycles(graph: Graph) -> list[list[str]]:
    """Return every cycle found by a depth-first walk, each closed on its start node."""
    visited: set[str] = set()
    cycles: list[list[str]] = []

    for root in graph:
        if root in visited:
            continue
        on_stack: set[str] = {root}
        path = [root]
        stack = [(root, iter(graph.get(root, ())))]
        visited.add(root)

        while stack:
            node, deps = stack[-1]
            for dep in deps:
                if dep in on_stack:
                    cycles.append(path[path.index(dep):] + [dep])
                elif dep not in visited:
                    visited.add(dep)
                    on_stack.add(dep)
                    path.append(dep)
                    stack.append((dep, iter(graph.get(dep, ()))))
                    break
            else:
                stack.pop()
                on_stack.discard(node)
                path.pop()

    return cycles


def find_path(graph: Graph, start: str, goal: str) -> list[str] | None:
    """Shortest dependency path from ``start`` to ``goal``, if any."""
    parents: dict[str, str | None] = {start: None}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        if node == goal:
            path = [node]
            while (parent := parents[path[-1]]) is not None:
                path.append(parent)
            return path[::-1]
        for dep in graph.get(node, ()):
            if dep not in parents:
                parents[dep] = node
                queue.append(dep)
    return None


def would_create_cycle(graph: Graph, task_id: str, depends_on: str) -> list[str] | None:
    """The cycle that adding ``task_id -> depends_on`` would close, or None."""
    if task_id == depends_on:
        return [task_id, task_id]
    path = find_path(graph, depends_on, task_id)
    if path is None:
        return None
    return [task_id] + path


def topological_order(graph: Graph) -> list[str]:
    """Order tasks so every task comes after its dependencies."""
    nodes = set(graph)
    for deps in graph.values():
        nodes.update(deps)

    pending = {n: 0 for n in nodes}
    dependents: dict[str, list[str]] = {n: [] for n in nodes}
    for task_id, deps in graph.items():
        for dep in set(deps):
            pending[task_id] += 1
            dependents[dep].append(task_id)

    ready = deque(sorted(n for n, count in pending.items() if count == 0))
    order = []
    while ready:
        node = ready.popleft()
        order.append(node)
        for dependent in sorted(dependents[node]):
            pending[dependent] -= 1
            if pending[dependent] == 0:
                ready.append(dependent)

    if len(order) != len(nodes):
        raise DependencyCycleError(detect_cycles(graph)[0])
    return order
