# dag.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .notebook import Notebook
from .tags import RESERVED_NAMES, step_color


def all_steps(notebook: Notebook) -> List[str]:
    """
    Declared step names, in first-appearance order.

    Empty (merge) names and reserved roles are excluded: they are never
    selectable as dependencies.
    """
    seen: Dict[str, None] = {}
    for idx in range(notebook.cell_count()):
        mt = notebook.get_step_tags(idx)
        if mt and mt.name and mt.name not in RESERVED_NAMES:
            seen.setdefault(mt.name, None)
    return list(seen)


def previous_visible_step(notebook: Notebook, index: int) -> Optional[str]:
    """Closest step name before ``index`` that is neither empty nor ``skip``."""
    for i in range(index - 1, -1, -1):
        mt = notebook.get_step_tags(i)
        if mt and mt.name and mt.name != "skip":
            return mt.name
    return None


def merge_notice(notebook: Notebook, index: int) -> Optional[str]:
    mt = notebook.get_step_tags(index)
    if mt is not None and mt.name:
        return None
    prev = previous_visible_step(notebook, index)
    if prev is None:
        return None
    return f"Leave step name empty to merge code to block {prev}"


@dataclass(frozen=True)
class DependencyChoice:
    value: str
    color: str


def dependency_choices(notebook: Notebook, current: Optional[str]) -> List[DependencyChoice]:
    """Steps the step ``current`` may depend on, with their colours."""
    return [
        DependencyChoice(value=name, color=f"#{step_color(name)}")
        for name in all_steps(notebook)
        if name != current
    ]


@dataclass
class StepGraph:
    """
    Step graph recomputed from the current tag state.

    steps: step name -> indices of the cells that make up the step
    edges: (dependency, step) pairs, dependency runs BEFORE step
    dangling: edges whose dependency is not a declared step
    """
    steps: Dict[str, List[int]] = field(default_factory=dict)
    edges: Set[Tuple[str, str]] = field(default_factory=set)
    dangling: Set[Tuple[str, str]] = field(default_factory=set)

    def needs(self, name: str) -> List[str]:
        return sorted(dep for dep, step in self.edges if step == name)


def build_graph(notebook: Notebook) -> StepGraph:
    """
    Assign every tagged code cell to a step and collect dependency edges.

    Cells with an empty name inherit the previous visible step. Reserved
    roles are kept as their own segments but never take part in edges.
    """
    graph = StepGraph()
    declared = set(all_steps(notebook))
    current: Optional[str] = None

    for idx in range(notebook.cell_count()):
        mt = notebook.get_step_tags(idx)
        if mt is None:
            continue
        if mt.name:
            current = mt.name
            owner = mt.name
        else:
            owner = current
        if owner is None or owner == "skip":
            continue
        graph.steps.setdefault(owner, []).append(idx)

        if owner in RESERVED_NAMES:
            continue
        for dep in mt.dependencies:
            if dep in declared and dep != owner:
                graph.edges.add((dep, owner))
            else:
                graph.dangling.add((dep, owner))

    return graph


def build_dag(graph: StepGraph) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """Adjacency (dependency -> dependents) and in-degree per pipeline step."""
    names = [n for n in graph.steps if n not in RESERVED_NAMES]
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for dep, step in graph.edges:
        if step not in adj[dep]:
            adj[dep].add(step)
            indeg[step] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Group steps into execution stages.

    A step lands in the first stage after all of its dependencies; each
    stage is sorted by name.

    Raises:
        ValueError: the dependency edges form a cycle
    """
    waiting = dict(indeg)
    ready = sorted(n for n, d in waiting.items() if d == 0)
    stages: List[List[str]] = []

    while ready:
        stages.append(ready)
        unlocked: Set[str] = set()
        for step in ready:
            del waiting[step]
            for dependent in adj.get(step, ()):
                waiting[dependent] -= 1
                if waiting[dependent] == 0:
                    unlocked.add(dependent)
        ready = sorted(unlocked)

    if waiting:
        raise ValueError(f"Step graph has a cycle. Stuck steps: {sorted(waiting)}")
    return stages
