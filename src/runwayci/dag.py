# dag.py
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import ConfigError, CyclicDependencyError
from .model import Job, PipelineDefinition


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Returns:
      adj:   need -> dependents (in declaration order)
      indeg: job -> number of needs
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise ConfigError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].append(job.name)
                indeg[job.name] += 1

    return adj, indeg


def find_cycle(needs: Mapping[str, Iterable[str]], order: Optional[List[str]] = None) -> Optional[List[str]]:
    """
    Return one dependency cycle as a closed path (["a", "b", "a"]), or None.
    Walks jobs in declaration order so the reported cycle is deterministic.
    The walk keeps its own stack, so chain length is not bounded by recursion.
    """
    order = order or list(needs)
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in needs}

    for root in order:
        if color[root] != WHITE:
            continue
        color[root] = GREY
        path: List[str] = [root]
        pending: List[Iterator[str]] = [iter(needs.get(root, ()))]
        while pending:
            need = next(pending[-1], None)
            if need is None:
                pending.pop()
                color[path.pop()] = BLACK
                continue
            if need not in color:
                continue
            if color[need] == GREY:
                return path[path.index(need):] + [need]
            if color[need] == WHITE:
                color[need] = GREY
                path.append(need)
                pending.append(iter(needs.get(need, ())))
    return None


def topo_levels(adj: Dict[str, List[str]], indeg: Dict[str, int], order: List[str]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (batches).
    Each batch can run in parallel; ties keep declaration order.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    position = {name: i for i, name in enumerate(order)}
    current = [n for n in order if indeg[n] == 0]

    levels: List[List[str]] = []
    processed = 0

    while current:
        levels.append(current)
        processed += len(current)
        unlocked: Set[str] = set()
        for node in current:
            for child in adj.get(node, []):
                indeg[child] -= 1
                if indeg[child] == 0:
                    unlocked.add(child)
        current = sorted(unlocked, key=position.__getitem__)

    if processed != len(indeg):
        stuck = [n for n in order if indeg[n] > 0]
        raise ConfigError(f"DAG has a cycle. Stuck jobs: {stuck}")

    return levels


def check_acyclic(jobs: Mapping[str, Job]) -> None:
    cycle = find_cycle({name: job.needs for name, job in jobs.items()}, list(jobs))
    if cycle:
        raise CyclicDependencyError(cycle)


def plan_batches(definition: PipelineDefinition) -> List[List[Job]]:
    """
    Ordered batches of jobs. Every job appears in exactly one batch, after
    all of its needs.
    """
    check_acyclic(definition.jobs)
    adj, indeg = build_dag(definition.jobs.values())
    levels = topo_levels(adj, indeg, definition.job_names)
    return [[definition.jobs[name] for name in level] for level in levels]
