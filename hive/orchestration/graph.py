"""
Dependency Graph — Ordering Work Before It Runs.

Nodes are task identities; an edge ``a -> b`` means "a must succeed before b
may start". The graph is built once per batch from validated descriptors and
is read-only afterwards, which lets the scheduler consult it without locking.

Cycles are detected with a three-colour depth-first search. A cycle is never a
per-task problem: the whole batch is rejected and the identities forming the
cycle are named explicitly.
"""

from __future__ import annotations

import heapq
from typing import Iterable, Sequence

from hive.orchestration.errors import BatchRejection
from hive.orchestration.models import TaskDescriptor, Violation, ViolationCode

_WHITE, _GREY, _BLACK = 0, 1, 2


def find_cycles(order: Sequence[str], edges: dict[str, Sequence[str]]) -> list[list[str]]:
    """Return every cycle reached by a DFS over ``edges`` (node -> dependencies).

    Each cycle is reported once, as the path of identities from the first
    node the search entered to the node that closed the loop. Traversal follows
    ``order`` so the output is deterministic.
    """
    colour = {node: _WHITE for node in order}
    cycles: list[list[str]] = []
    seen: set[frozenset[str]] = set()

    for start in order:
        if colour[start] != _WHITE:
            continue
        # Iterative DFS; each frame is (node, iterator over its dependencies).
        path: list[str] = [start]
        stack = [(start, iter(edges.get(start, ())))]
        colour[start] = _GREY
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                state = colour.get(dep)
                if state is None:
                    continue  # unknown reference, reported by the validator
                if state == _WHITE:
                    colour[dep] = _GREY
                    path.append(dep)
                    stack.append((dep, iter(edges.get(dep, ()))))
                    advanced = True
                    break
                if state == _GREY:
                    cycle = path[path.index(dep):]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
            if not advanced:
                colour[node] = _BLACK
                stack.pop()
                path.pop()
    return cycles


def cycle_violations(cycles: Iterable[list[str]]) -> list[Violation]:
    return [
        Violation(
            code=ViolationCode.DEPENDENCY_CYCLE,
            message="Dependency cycle: " + " -> ".join([*cycle, cycle[0]]),
            task_ids=tuple(cycle),
        )
        for cycle in cycles
    ]


class DependencyGraph:
    """Immutable DAG over the tasks of one batch."""

    def __init__(
        self,
        order: list[str],
        predecessors: dict[str, tuple[str, ...]],
        successors: dict[str, tuple[str, ...]],
    ):
        self._order = order
        self._index = {task_id: i for i, task_id in enumerate(order)}
        self._predecessors = predecessors
        self._successors = successors

    @classmethod
    def build(
        cls,
        descriptors: Sequence[TaskDescriptor],
        batch_id: str = "",
    ) -> "DependencyGraph":
        """Build the graph, rejecting unknown references and cycles."""
        order = [d.task_id for d in descriptors]
        known = set(order)
        predecessors: dict[str, tuple[str, ...]] = {}
        violations: list[Violation] = []
        for descriptor in descriptors:
            deps = tuple(dict.fromkeys(descriptor.depends_on))
            missing = [dep for dep in deps if dep not in known]
            if missing:
                violations.append(Violation(
                    code=ViolationCode.UNKNOWN_DEPENDENCY,
                    message=(
                        f"Task '{descriptor.task_id}' depends on unknown "
                        f"task(s): {', '.join(missing)}"
                    ),
                    task_ids=(descriptor.task_id, *missing),
                ))
            predecessors[descriptor.task_id] = deps

        violations.extend(cycle_violations(find_cycles(order, predecessors)))
        if violations:
            raise BatchRejection(batch_id, violations)

        successors: dict[str, list[str]] = {task_id: [] for task_id in order}
        for task_id in order:
            for dep in predecessors[task_id]:
                successors[dep].append(task_id)
        return cls(
            order=order,
            predecessors=predecessors,
            successors={k: tuple(v) for k, v in successors.items()},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    @property
    def nodes(self) -> list[str]:
        return list(self._order)

    def predecessors(self, task_id: str) -> tuple[str, ...]:
        return self._predecessors[task_id]

    def successors(self, task_id: str) -> tuple[str, ...]:
        return self._successors[task_id]

    def roots(self) -> list[str]:
        return [t for t in self._order if not self._predecessors[t]]

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties broken by submission order."""
        indegree = {t: len(self._predecessors[t]) for t in self._order}
        ready = [self._index[t] for t in self._order if indegree[t] == 0]
        heapq.heapify(ready)
        result: list[str] = []
        while ready:
            task_id = self._order[heapq.heappop(ready)]
            result.append(task_id)
            for succ in self._successors[task_id]:
                indegree[succ] -= 1
                if indegree[succ] == 0:
                    heapq.heappush(ready, self._index[succ])
        return result

    def levels(self) -> list[list[str]]:
        """Group tasks into tiers: tier N depends only on tiers < N."""
        depth: dict[str, int] = {}
        for task_id in self.topological_order():
            preds = self._predecessors[task_id]
            depth[task_id] = 1 + max((depth[p] for p in preds), default=-1)
        tiers: list[list[str]] = []
        for task_id in self._order:
            level = depth[task_id]
            while len(tiers) <= level:
                tiers.append([])
            tiers[level].append(task_id)
        return tiers

    def descendants(self, task_id: str) -> list[str]:
        """Every task transitively depending on ``task_id``, in topological order."""
        found: set[str] = set()
        frontier = list(self._successors[task_id])
        while frontier:
            node = frontier.pop()
            if node in found:
                continue
            found.add(node)
            frontier.extend(self._successors[node])
        return [t for t in self.topological_order() if t in found]
