# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .errors import CycleError, DuplicateStageError, UnknownDependencyError
from .model import Stage


@dataclass(frozen=True)
class Graph:
    """
    Immutable stage graph.

    `order` is declaration order and is the tie-break for every listing
    the graph produces, so dispatch is deterministic.
    """
    stages: Mapping[str, Stage]
    order: Tuple[str, ...]
    adj: Mapping[str, Tuple[str, ...]]      # dep -> dependents
    needs: Mapping[str, Tuple[str, ...]]    # stage -> deps

    def __len__(self) -> int:
        return len(self.order)

    def __iter__(self):
        return (self.stages[name] for name in self.order)

    def __getitem__(self, stage_id: str) -> Stage:
        return self.stages[stage_id]

    def dependents(self, stage_id: str) -> Tuple[str, ...]:
        return self.adj[stage_id]

    def descendants(self, stage_id: str) -> List[str]:
        """Transitive dependents of `stage_id`, in declaration order."""
        seen: Set[str] = set()
        q = deque(self.adj[stage_id])
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.adj[node])
        return [name for name in self.order if name in seen]

    def ready(
        self,
        completed: Iterable[str],
        failed: Iterable[str] = (),
        started: Iterable[str] = (),
    ) -> List[str]:
        """
        Stages whose every dependency is in `completed` and that are not
        downstream of anything in `failed`.

        `started` excludes stages that were already dispatched or resolved.
        """
        completed = set(completed)
        started = set(started)
        blocked: Set[str] = set()
        for name in failed:
            blocked.add(name)
            blocked.update(self.descendants(name))

        out: List[str] = []
        for name in self.order:
            if name in completed or name in started or name in blocked:
                continue
            if all(dep in completed for dep in self.needs[name]):
                out.append(name)
        return out

    def waves(self) -> List[List[str]]:
        """
        Topological "waves": every stage in a wave can run in parallel once
        the previous waves are done. Used for plan output; the scheduler
        itself does not wait for wave boundaries.
        """
        indeg = {name: len(self.needs[name]) for name in self.order}
        position = {name: i for i, name in enumerate(self.order)}
        current = [name for name in self.order if indeg[name] == 0]
        levels: List[List[str]] = []

        while current:
            levels.append(current)
            nxt: List[str] = []
            for node in current:
                for child in self.adj[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            current = sorted(nxt, key=position.__getitem__)

        return levels


def build_graph(stages: Iterable[Stage]) -> Graph:
    """
    Build and validate the stage graph.

    Raises:
      DuplicateStageError: two stages share an id
      UnknownDependencyError: a `needs` entry does not resolve
      CycleError: the dependencies are not acyclic
    """
    stages = list(stages)
    names = [s.id for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateStageError(dupes)

    name_set = set(names)
    adj: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}
    needs: Dict[str, Tuple[str, ...]] = {}

    for stage in stages:
        deps: List[str] = []
        for dep in stage.needs:
            if dep not in name_set:
                raise UnknownDependencyError(stage.id, dep, names)
            if dep in deps:
                continue
            deps.append(dep)
            # Edge dep -> stage (dep must finish before stage)
            adj[dep].append(stage.id)
            indeg[stage.id] += 1
        needs[stage.id] = tuple(deps)

    # Kahn's algorithm, only to prove acyclicity
    q = deque(n for n in names if indeg[n] == 0)
    remaining = dict(indeg)
    processed = 0
    while q:
        node = q.popleft()
        processed += 1
        for child in adj[node]:
            remaining[child] -= 1
            if remaining[child] == 0:
                q.append(child)

    if processed != len(names):
        stuck = [n for n in names if remaining[n] > 0]
        raise CycleError(stuck)

    return Graph(
        stages={s.id: s for s in stages},
        order=tuple(names),
        adj={n: tuple(children) for n, children in adj.items()},
        needs=needs,
    )
