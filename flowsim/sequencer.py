"""
Calculation order for one sequential-modular pass.

Tear streams are removed from the graph and the remaining DAG is sorted
with Kahn's algorithm. Plans are cached per (structure version, tear set),
so repeated passes and repeated solves of an unchanged flowsheet reuse the
same order.
"""

from __future__ import annotations

import heapq
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Tuple

from loguru import logger

from .errors import CyclicDependencyError

if TYPE_CHECKING:
    from .flowsheet import Flowsheet


@dataclass(frozen=True)
class SequencePlan:
    order: Tuple[str, ...]
    tears: FrozenSet[str]
    # op -> operations whose outlets it consumes within a pass (tears excluded)
    dependencies: Dict[str, FrozenSet[str]]

    def waves(self) -> List[List[str]]:
        """Group the order into levels whose members are mutually independent."""
        level: Dict[str, int] = {}
        for op_id in self.order:
            deps = self.dependencies[op_id]
            level[op_id] = 1 + max((level[d] for d in deps), default=-1)
        waves: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for op_id in self.order:
            waves[level[op_id]].append(op_id)
        return waves


class Sequencer:
    """Topological ordering of a flowsheet with its tear streams removed."""

    def __init__(self, flowsheet: "Flowsheet") -> None:
        self.flowsheet = flowsheet
        self._cache: Dict[Tuple[int, FrozenSet[str]], SequencePlan] = {}
        self._lock = threading.Lock()

    def plan(self, tears: Iterable[str]) -> SequencePlan:
        key = (self.flowsheet.version, frozenset(tears))
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        plan = self._compute(key[1])
        with self._lock:
            # Older versions can never be requested again
            self._cache = {k: v for k, v in self._cache.items() if k[0] == key[0]}
            self._cache[key] = plan
        return plan

    def _compute(self, tears: FrozenSet[str]) -> SequencePlan:
        fs = self.flowsheet
        position = {op_id: i for i, op_id in enumerate(fs.operations)}
        in_degree = {op_id: 0 for op_id in fs.operations}
        adj: Dict[str, List[str]] = {op_id: [] for op_id in fs.operations}
        deps: Dict[str, set] = {op_id: set() for op_id in fs.operations}

        for stream in fs.internal_streams():
            if stream.id in tears:
                continue
            src, dst = stream.source[0], stream.target[0]
            adj[src].append(dst)
            in_degree[dst] += 1
            deps[dst].add(src)

        # Kahn's algorithm; ties resolved by insertion order for determinism
        ready = [(position[op_id], op_id) for op_id, d in in_degree.items() if d == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            _, u = heapq.heappop(ready)
            order.append(u)
            for v in adj[u]:
                in_degree[v] -= 1
                if in_degree[v] == 0:
                    heapq.heappush(ready, (position[v], v))

        if len(order) != len(fs.operations):
            remaining = [op_id for op_id in fs.operations if op_id not in set(order)]
            raise CyclicDependencyError(
                f"Operations {remaining} still form a cycle after removing tears {sorted(tears)}",
                remaining=remaining,
            )

        logger.debug("Calculation order (tears {}): {}", sorted(tears), order)
        return SequencePlan(
            order=tuple(order),
            tears=tears,
            dependencies={k: frozenset(v) for k, v in deps.items()},
        )
