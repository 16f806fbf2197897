"""
Dependency graph construction and level-by-level parallel execution.

``run_graph`` is Kahn's algorithm run in batches: every task whose
dependencies have all completed forms the next batch, the batch runs on up
to ``max_concurrency`` threads, and the next batch is only computed once the
whole batch has finished. Ready sets are sorted so dispatch order is
reproducible.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .errors import CycleError, UnknownTaskError
from .taskfile import Environment

logger = logging.getLogger(__name__)

Graph = Mapping[str, Sequence[str]]

UNVISITED = 0
VISITING = 1
DONE = 2


class Runner(Protocol):
    def run(self, name: str) -> None: ...


def build_graph(env: Environment, root: str) -> Dict[str, List[str]]:
    """Map every task reachable from ``root`` to its direct dependencies."""
    if root not in env.tasks:
        raise UnknownTaskError(root)

    graph: Dict[str, List[str]] = {}
    pending = [root]
    while pending:
        name = pending.pop()
        if name in graph:
            continue
        deps = list(env.tasks[name].depends)
        for dep in deps:
            if dep not in env.tasks:
                raise UnknownTaskError(dep, kind="dependency")
        graph[name] = deps
        pending.extend(dep for dep in reversed(deps) if dep not in graph)
    return graph


def find_cycle(graph: Graph) -> List[str]:
    """
    Return one cycle as a closed path (``["a", "b", "a"]``), or ``[]``.

    Depth-first search with an explicit stack; roots are visited in sorted
    order so the reported cycle is deterministic.
    """
    state: Dict[str, int] = {}
    for root in sorted(graph):
        if state.get(root, UNVISITED) != UNVISITED:
            continue
        state[root] = VISITING
        path = [root]
        stack = [iter(graph.get(root, ()))]
        while stack:
            for dep in stack[-1]:
                dep_state = state.get(dep, UNVISITED)
                if dep_state == VISITING:
                    return path[path.index(dep):] + [dep]
                if dep_state == UNVISITED:
                    state[dep] = VISITING
                    path.append(dep)
                    stack.append(iter(graph.get(dep, ())))
                    break
            else:
                stack.pop()
                state[path.pop()] = DONE
    return []


def run_graph(runner: Runner, graph: Graph, max_concurrency: int) -> None:
    if max_concurrency < 1:
        max_concurrency = 1

    remaining: Dict[str, int] = {}
    dependents: Dict[str, List[str]] = {}
    for name, deps in graph.items():
        remaining[name] = len(deps)
        for dep in deps:
            remaining.setdefault(dep, 0)
            dependents.setdefault(dep, []).append(name)

    ready = sorted(name for name, count in remaining.items() if count == 0)
    processed = 0
    while ready:
        batch = ready
        logger.debug("Dispatching batch %s", batch)
        error = run_batch(runner, batch, max_concurrency)
        if error is not None:
            raise error

        processed += len(batch)
        ready = []
        for name in batch:
            for dependent in dependents.get(name, ()):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)
        ready.sort()

    if processed < len(remaining):
        raise CycleError(find_cycle(graph))


def run_batch(runner: Runner, batch: Iterable[str], max_concurrency: int) -> Optional[BaseException]:
    """
    Run one ready set to completion; return the first failure by completion time.

    Slots are taken by the dispatching thread, so tasks start in batch order
    and at most ``max_concurrency`` are in flight.
    """
    slots = threading.BoundedSemaphore(max(1, max_concurrency))
    lock = threading.Lock()
    failures: List[BaseException] = []

    def worker(name: str) -> None:
        try:
            runner.run(name)
        except BaseException as exc:
            logger.debug("Task %s failed: %r", name, exc)
            with lock:
                failures.append(exc)
        finally:
            slots.release()

    threads: List[threading.Thread] = []
    for name in batch:
        slots.acquire()
        thread = threading.Thread(target=worker, args=(name,), name=f"weave-task-{name}", daemon=True)
        threads.append(thread)
        thread.start()
    for thread in threads:
        thread.join()

    return failures[0] if failures else None
