"""Dependency graph validation for tasks and goals.

Both graphs are validated whenever nodes are created or linked, so a
cyclic or dangling ``depends_on`` is rejected at write time instead of
leaving tasks silently unspawnable.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping


class DependencyCycleError(ValueError):
    """A ``depends_on`` edge would create a cycle or names an unknown node."""

    def __init__(self, message: str, cycle: list[str] | None = None) -> None:
        super().__init__(message)
        self.cycle = cycle or []


def find_cycle(edges: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return one cycle as a node list (first node repeated at the end), or None.

    Edges pointing at nodes absent from *edges* are ignored here; use
    :func:`check_unknown` to reject them.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in edges}
    parent: dict[str, str] = {}

    for root in edges:
        if color[root] != WHITE:
            continue
        stack: list[tuple[str, list[str]]] = [(root, list(edges[root]))]
        color[root] = GREY
        while stack:
            node, pending = stack[-1]
            if not pending:
                color[node] = BLACK
                stack.pop()
                continue
            nxt = pending.pop()
            if nxt not in color:
                continue
            if color[nxt] == GREY:
                cycle = [nxt]
                cur = node
                while cur != nxt:
                    cycle.append(cur)
                    cur = parent[cur]
                cycle.append(nxt)
                cycle.reverse()
                return cycle
            if color[nxt] == WHITE:
                parent[nxt] = node
                color[nxt] = GREY
                stack.append((nxt, list(edges[nxt])))
    return None


def check_unknown(edges: Mapping[str, Iterable[str]], kind: str) -> None:
    for node, deps in edges.items():
        for dep in deps:
            if dep == node:
                raise DependencyCycleError(f"{kind} {node} cannot depend on itself", [node, node])
            if dep not in edges:
                raise DependencyCycleError(f"{kind} {node} depends on unknown {kind} {dep}")


def validate_task_dependencies(tasks: list[dict]) -> None:
    """Raise DependencyCycleError if the tasks of one goal are not a DAG."""
    edges = {t["id"]: list(t.get("depends_on") or []) for t in tasks}
    check_unknown(edges, "task")
    cycle = find_cycle(edges)
    if cycle:
        raise DependencyCycleError(f"Task dependency cycle: {' -> '.join(cycle)}", cycle)


def validate_goal_dependencies(goals: list[dict]) -> None:
    """Raise DependencyCycleError if goal-level dependencies are not a DAG."""
    edges = {g["id"]: list(g.get("depends_on") or []) for g in goals}
    check_unknown(edges, "goal")
    cycle = find_cycle(edges)
    if cycle:
        raise DependencyCycleError(f"Goal dependency cycle: {' -> '.join(cycle)}", cycle)
