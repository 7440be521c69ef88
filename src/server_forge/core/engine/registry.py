"""
StepRegistry — the declarative step graph and its execution order.

Planning is pure and happens before anything touches the machine, so a
bad graph (duplicate id, unknown prerequisite, cycle) fails fast and is
safe to fix and retry.

Ordering is Kahn's algorithm with ties broken by registration order:
for a fixed registration sequence the plan is always the same, which
is what lets rollback talk about "reverse order" unambiguously.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from server_forge.core.errors import (
    CyclicDependencyError,
    DuplicateStepError,
    MissingDependencyError,
)
from server_forge.core.models.step import Step

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """Steps in a valid execution order, plus the dependency map.

    The order is total, but steps whose prerequisites are satisfied may
    still run concurrently; ``requires`` is what the engine schedules on.
    """

    steps: list[Step] = field(default_factory=list)
    requires: dict[str, frozenset[str]] = field(default_factory=dict)

    @property
    def order(self) -> list[str]:
        return [s.id for s in self.steps]

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def get(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def prerequisites(self, step_id: str) -> set[str]:
        """All transitive prerequisites of a step."""
        seen: set[str] = set()
        stack = list(self.requires.get(step_id, ()))
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.add(dep)
            stack.extend(self.requires.get(dep, ()))
        return seen


class StepRegistry:
    """Holds named steps and produces an execution plan."""

    def __init__(self) -> None:
        self._steps: dict[str, Step] = {}

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def register(self, step: Step) -> Step:
        """Add a step. Raises DuplicateStepError on a reused id."""
        if step.id in self._steps:
            raise DuplicateStepError(step.id)
        self._steps[step.id] = step
        logger.debug("Registered step: %s (requires=%s)", step.id, sorted(step.requires))
        return step

    def get(self, step_id: str) -> Step | None:
        return self._steps.get(step_id)

    def list_steps(self) -> list[str]:
        """Step ids in registration order."""
        return list(self._steps)

    def build_plan(self) -> ExecutionPlan:
        """Topologically sort the registered steps.

        Raises:
            MissingDependencyError: A step requires an unregistered id.
            CyclicDependencyError: The graph has a cycle (named).
        """
        # Missing refs first, reported in registration order
        for step in self._steps.values():
            for dep in sorted(step.requires):
                if dep not in self._steps:
                    raise MissingDependencyError(step.id, dep)

        position = {sid: i for i, sid in enumerate(self._steps)}
        in_degree = {sid: len(step.requires) for sid, step in self._steps.items()}
        dependents: dict[str, list[str]] = {sid: [] for sid in self._steps}
        for step in self._steps.values():
            for dep in step.requires:
                dependents[dep].append(step.id)

        # Min-heap on registration position → deterministic tie-break
        ready = [(position[sid], sid) for sid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)

        ordered: list[Step] = []
        while ready:
            _, sid = heapq.heappop(ready)
            ordered.append(self._steps[sid])
            for successor in dependents[sid]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(ready, (position[successor], successor))

        if len(ordered) < len(self._steps):
            remaining = {sid for sid, deg in in_degree.items() if deg > 0}
            raise CyclicDependencyError(self._find_cycle(remaining))

        logger.info("Built plan with %d steps", len(ordered))
        return ExecutionPlan(
            steps=ordered,
            requires={s.id: s.requires for s in ordered},
        )

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        """Walk prerequisites among unsorted steps until a node repeats.

        Every unsorted step has at least one unsorted prerequisite, so
        the walk can never dead-end.
        """
        start = min(remaining, key=lambda sid: list(self._steps).index(sid))
        path: list[str] = []
        index: dict[str, int] = {}
        node = start
        while node not in index:
            index[node] = len(path)
            path.append(node)
            node = min(
                (d for d in self._steps[node].requires if d in remaining),
                key=lambda sid: list(self._steps).index(sid),
            )
        cycle = path[index[node]:]
        return [*cycle, node]
