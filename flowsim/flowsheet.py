"""
Flowsheet graph: an id-indexed store of unit operations and streams.

Operations are nodes, streams are edges identified by id. A stream with no
producer is a boundary feed, a stream with no consumer is a product. Each
inlet and each outlet port carries at most one stream, so no stream can
ever have two producers.

Recycle loops show up as strongly connected components; each must carry at
least one tear stream before the graph can be sequenced.
"""

from __future__ import annotations

import itertools
import math
import threading
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from loguru import logger

from .errors import FlowsheetLockedError, TopologyError, ValidationError
from .schemas import (
    FeedSpec,
    FlowsheetDefinition,
    OperationSpec,
    PortRef,
    StreamGuess,
    StreamSpec,
)
from .sequencer import Sequencer
from .unit_operations import UnitOpBase, create_operation

# SCCs with at most this many candidate edges are torn by exhaustive search
EXACT_TEAR_SEARCH_LIMIT = 12


@dataclass
class Stream:
    """A directed edge in the flowsheet graph."""

    id: str
    source: Optional[Tuple[str, int]] = None  # (operation id, outlet index); None = feed
    target: Optional[Tuple[str, int]] = None  # (operation id, inlet index); None = product
    feed: Optional[FeedSpec] = None
    guess: Optional[StreamGuess] = None

    @property
    def is_feed(self) -> bool:
        return self.source is None

    @property
    def is_product(self) -> bool:
        return self.target is None

    @property
    def is_internal(self) -> bool:
        return self.source is not None and self.target is not None


class Flowsheet:
    """Graph of unit operations connected by streams."""

    def __init__(
        self,
        components: Sequence[str],
        name: str = "flowsheet",
        property_package: Any = None,
        solver_overrides: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not components:
            raise ValidationError("At least one component is required")
        if len(set(components)) != len(components):
            raise ValidationError(f"Duplicate component names: {list(components)}")
        self.name = name
        self.components: List[str] = list(components)
        self.property_package = property_package
        self.solver_overrides: Dict[str, Any] = dict(solver_overrides or {})

        self.operations: Dict[str, UnitOpBase] = {}
        self.streams: Dict[str, Stream] = {}
        self.tear_streams: List[str] = []

        self._inlets: Dict[str, Dict[int, str]] = defaultdict(dict)  # op -> {index: stream}
        self._outlets: Dict[str, Dict[int, str]] = defaultdict(dict)

        # Bumped on every structural change; keys the sequencer cache
        self.version = 0
        self._guard = threading.Lock()
        self._active_solves = 0
        self._sequencer: Optional[Sequencer] = None

    # ------------------------------------------------------------------
    # Solve locking
    # ------------------------------------------------------------------

    @contextmanager
    def solving(self) -> Iterator["Flowsheet"]:
        """Hold the flowsheet read-only for the duration of a solve."""
        with self._guard:
            self._active_solves += 1
        try:
            yield self
        finally:
            with self._guard:
                self._active_solves -= 1

    @property
    def is_locked(self) -> bool:
        return self._active_solves > 0

    @contextmanager
    def _mutating(self) -> Iterator[None]:
        """Hold the guard across the lock check and the structural change."""
        with self._guard:
            if self._active_solves:
                raise FlowsheetLockedError(
                    f"Flowsheet '{self.name}' is being solved; structural changes are rejected"
                )
            self.version += 1
            yield

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def add_operation(
        self,
        kind: str,
        params: Any = None,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        """Add a unit operation; parameters are validated against its kind."""
        with self._mutating():
            if id is None:
                n = sum(1 for op in self.operations.values() if op.kind == kind) + 1
                id = f"{kind}-{n}"
                while id in self.operations:
                    n += 1
                    id = f"{kind}-{n}"
            if id in self.operations:
                raise TopologyError(f"Operation '{id}' already exists", operation_id=id)
            self.operations[id] = create_operation(kind, params, id=id, name=name)
            return id

    def _new_stream_id(self, id: Optional[str]) -> str:
        if id is None:
            id = f"s{len(self.streams) + 1}"
            while id in self.streams:
                id = f"{id}_"
        if id in self.streams:
            raise TopologyError(f"Stream '{id}' already exists")
        return id

    def _op(self, op_id: str) -> UnitOpBase:
        op = self.operations.get(op_id)
        if op is None:
            raise TopologyError(f"Unknown operation '{op_id}'", operation_id=op_id)
        return op

    def _claim_inlet(self, consumer: str, inlet_index: Optional[int]) -> int:
        op = self._op(consumer)
        taken = self._inlets[consumer]
        if inlet_index is None:
            inlet_index = 0
            while inlet_index in taken:
                inlet_index += 1
        if inlet_index in taken:
            raise TopologyError(
                f"Inlet {inlet_index} of '{consumer}' already has a producer "
                f"(stream '{taken[inlet_index]}')",
                operation_id=consumer,
            )
        if inlet_index < 0 or (op.max_inlets is not None and inlet_index >= op.max_inlets):
            raise TopologyError(
                f"'{consumer}' ({op.kind}) has no inlet {inlet_index}", operation_id=consumer
            )
        return inlet_index

    def connect(
        self,
        producer: str,
        outlet_index: int,
        consumer: Optional[str] = None,
        inlet_index: Optional[int] = None,
        id: Optional[str] = None,
    ) -> str:
        """Add a stream from a producer outlet to a consumer inlet (or a product)."""
        with self._mutating():
            op = self._op(producer)
            if not 0 <= outlet_index < op.outlet_count():
                raise TopologyError(
                    f"'{producer}' ({op.kind}) has no outlet {outlet_index}", operation_id=producer
                )
            if outlet_index in self._outlets[producer]:
                raise TopologyError(
                    f"Outlet {outlet_index} of '{producer}' already feeds stream "
                    f"'{self._outlets[producer][outlet_index]}'",
                    operation_id=producer,
                )
            target = None
            if consumer is not None:
                target = (consumer, self._claim_inlet(consumer, inlet_index))
            stream_id = self._new_stream_id(id)

            self.streams[stream_id] = Stream(
                id=stream_id, source=(producer, outlet_index), target=target
            )
            self._outlets[producer][outlet_index] = stream_id
            if target is not None:
                self._inlets[target[0]][target[1]] = stream_id
            return stream_id

    def add_feed(
        self,
        consumer: str,
        inlet_index: Optional[int],
        feed: Union[FeedSpec, Mapping[str, Any]],
        id: Optional[str] = None,
    ) -> str:
        """Add a specified boundary stream entering ``consumer``."""
        if not isinstance(feed, FeedSpec):
            feed = FeedSpec.model_validate(feed)
        with self._mutating():
            index = self._claim_inlet(consumer, inlet_index)
            stream_id = self._new_stream_id(id)
            self.streams[stream_id] = Stream(id=stream_id, target=(consumer, index), feed=feed)
            self._inlets[consumer][index] = stream_id
            return stream_id

    def designate_tear(self, stream_id: str) -> None:
        with self._mutating():
            if stream_id not in self.streams:
                raise TopologyError(f"Unknown tear stream '{stream_id}'")
            if stream_id not in self.tear_streams:
                self.tear_streams.append(stream_id)

    def clear_tears(self) -> None:
        with self._mutating():
            self.tear_streams = []

    def set_tear_guess(self, stream_id: str, guess: Union[StreamGuess, Mapping[str, Any]]) -> None:
        """Store an initial estimate for a (potential) tear stream."""
        stream = self.streams.get(stream_id)
        if stream is None:
            raise TopologyError(f"Unknown stream '{stream_id}'")
        if not isinstance(guess, StreamGuess):
            guess = StreamGuess.model_validate(guess)
        with self._guard:
            if self._active_solves:
                raise FlowsheetLockedError(f"Flowsheet '{self.name}' is being solved")
            stream.guess = guess

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def inlet_streams(self, op_id: str) -> List[str]:
        ports = self._inlets.get(op_id, {})
        return [ports[i] for i in sorted(ports)]

    def outlet_streams(self, op_id: str) -> List[str]:
        ports = self._outlets.get(op_id, {})
        return [ports[i] for i in sorted(ports)]

    def feeds(self) -> List[Stream]:
        return [s for s in self.streams.values() if s.is_feed]

    def products(self) -> List[Stream]:
        return [s for s in self.streams.values() if s.is_product and not s.is_feed]

    def internal_streams(self) -> List[Stream]:
        return [s for s in self.streams.values() if s.is_internal]

    def successors(self, op_id: str) -> List[str]:
        return [
            self.streams[sid].target[0]
            for sid in self.outlet_streams(op_id)
            if self.streams[sid].target is not None
        ]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise ValidationError/TopologyError if the flowsheet cannot be solved."""
        if not self.operations:
            raise ValidationError("Flowsheet has no operations")

        for op_id, op in self.operations.items():
            inlets = self._inlets.get(op_id, {})
            if sorted(inlets) != list(range(len(inlets))):
                raise TopologyError(
                    f"'{op_id}' inlet indices {sorted(inlets)} are not contiguous from 0",
                    operation_id=op_id,
                )
            if len(inlets) < op.min_inlets:
                raise ValidationError(
                    f"'{op_id}' ({op.kind}) needs at least {op.min_inlets} inlet(s), "
                    f"has {len(inlets)}",
                    operation_id=op_id,
                )
            outlets = self._outlets.get(op_id, {})
            missing = [i for i in range(op.outlet_count()) if i not in outlets]
            if missing:
                raise TopologyError(
                    f"'{op_id}' ({op.kind}) outlet(s) {missing} are not connected",
                    operation_id=op_id,
                )

            unknown = op.unknown_components(self.components)
            if unknown:
                raise ValidationError(
                    f"'{op_id}' references unknown component(s) {unknown}", operation_id=op_id
                )
            dof = op.degrees_of_freedom(self.components)
            if dof > 0:
                raise ValidationError(
                    f"'{op_id}' ({op.kind}) is under-specified: {dof} degree(s) of freedom",
                    operation_id=op_id,
                )
            if dof < 0:
                raise ValidationError(
                    f"'{op_id}' ({op.kind}) is over-specified: {-dof} redundant specification(s)",
                    operation_id=op_id,
                )

        for stream in self.streams.values():
            if stream.is_feed and stream.feed is None:
                raise ValidationError(f"Boundary stream '{stream.id}' has no feed specification")
            if stream.is_feed and stream.is_product:
                raise TopologyError(f"Stream '{stream.id}' is connected to nothing")
            names = []
            if stream.feed is not None:
                names.extend(stream.feed.flows)
            if stream.guess is not None:
                names.extend(stream.guess.molar_flows)
            unknown = sorted({c for c in names if c not in self.components})
            if unknown:
                raise ValidationError(f"Stream '{stream.id}' references unknown component(s) {unknown}")

        for sid in self.tear_streams:
            stream = self.streams.get(sid)
            if stream is None or not stream.is_internal:
                raise TopologyError(f"Tear stream '{sid}' is not an internal stream")

    # ------------------------------------------------------------------
    # Cycle analysis
    # ------------------------------------------------------------------

    def _edges(self, nodes: Optional[Set[str]] = None) -> List[Stream]:
        edges = []
        for stream in self.streams.values():
            if not stream.is_internal:
                continue
            if nodes is None or (stream.source[0] in nodes and stream.target[0] in nodes):
                edges.append(stream)
        return edges

    def strongly_connected_components(self) -> List[List[str]]:
        """Find strongly connected components using Tarjan's algorithm."""
        index_counter = [0]
        stack: List[str] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        sccs: List[List[str]] = []

        def strongconnect(v: str) -> None:
            index[v] = index_counter[0]
            lowlink[v] = index_counter[0]
            index_counter[0] += 1
            stack.append(v)
            on_stack.add(v)

            for w in self.successors(v):
                if w not in index:
                    strongconnect(w)
                    lowlink[v] = min(lowlink[v], lowlink[w])
                elif w in on_stack:
                    lowlink[v] = min(lowlink[v], index[w])

            if lowlink[v] == index[v]:
                scc: List[str] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    scc.append(w)
                    if w == v:
                        break
                sccs.append(scc)

        for v in self.operations:
            if v not in index:
                strongconnect(v)
        return sccs

    def recycle_components(self) -> List[List[str]]:
        """SCCs that contain a cycle: more than one operation, or a self-loop."""
        recycles = []
        for scc in self.strongly_connected_components():
            if len(scc) > 1 or any(s.source[0] == s.target[0] for s in self._edges(set(scc))):
                recycles.append(scc)
        return recycles

    @staticmethod
    def _is_acyclic(nodes: Set[str], edges: List[Stream], torn: Set[str]) -> bool:
        in_degree = {n: 0 for n in nodes}
        adj: Dict[str, List[str]] = defaultdict(list)
        for e in edges:
            if e.id in torn:
                continue
            adj[e.source[0]].append(e.target[0])
            in_degree[e.target[0]] += 1
        queue = deque(n for n, d in in_degree.items() if d == 0)
        seen = 0
        while queue:
            u = queue.popleft()
            seen += 1
            for v in adj[u]:
                in_degree[v] -= 1
                if in_degree[v] == 0:
                    queue.append(v)
        return seen == len(nodes)

    def stream_magnitude(self, stream_id: str) -> float:
        """Best known total flow of a stream (inf when unknown)."""
        stream = self.streams[stream_id]
        if stream.guess is not None and stream.guess.molar_flows:
            return sum(stream.guess.molar_flows.values())
        return math.inf

    def select_tear_streams(
        self,
        scc: Sequence[str],
        magnitudes: Optional[Mapping[str, float]] = None,
    ) -> List[str]:
        """
        Choose a small set of streams whose removal makes ``scc`` acyclic.

        User-designated tears inside the SCC are always kept. Small SCCs are
        searched exhaustively for a minimum set; larger ones use the
        Eades-Lin-Smyth ordering followed by pruning of redundant tears
        (an approximation: minimum feedback arc set is NP-hard). Ties go to
        the stream with the smallest known magnitude, then the smallest id.
        """
        nodes = set(scc)
        edges = self._edges(nodes)

        def key(stream_id: str) -> Tuple[float, str]:
            if magnitudes is not None and stream_id in magnitudes:
                return (magnitudes[stream_id], stream_id)
            return (self.stream_magnitude(stream_id), stream_id)

        fixed = [e.id for e in edges if e.id in self.tear_streams]
        # A self-loop can only be broken by tearing it
        fixed += [e.id for e in edges if e.source[0] == e.target[0] and e.id not in fixed]
        if self._is_acyclic(nodes, edges, set(fixed)):
            return sorted(fixed, key=key)

        candidates = sorted((e.id for e in edges if e.id not in fixed), key=key)
        if len(candidates) <= EXACT_TEAR_SEARCH_LIMIT:
            for size in range(1, len(candidates) + 1):
                for combo in itertools.combinations(candidates, size):
                    if self._is_acyclic(nodes, edges, set(fixed) | set(combo)):
                        return sorted(fixed + list(combo), key=key)

        tears = set(fixed) | self._eades_lin_smyth(nodes, [e for e in edges if e.id not in fixed])
        # Drop tears that are not needed, trying the largest first
        for sid in sorted(tears - set(fixed), key=key, reverse=True):
            if self._is_acyclic(nodes, edges, tears - {sid}):
                tears.discard(sid)
        logger.debug("Greedy tear selection for {} operations: {}", len(nodes), sorted(tears))
        return sorted(tears, key=key)

    @staticmethod
    def _eades_lin_smyth(nodes: Set[str], edges: List[Stream]) -> Set[str]:
        """Back edges of the Eades-Lin-Smyth vertex ordering."""
        remaining = set(nodes)
        out_adj: Dict[str, List[Stream]] = defaultdict(list)
        in_adj: Dict[str, List[Stream]] = defaultdict(list)
        for e in edges:
            out_adj[e.source[0]].append(e)
            in_adj[e.target[0]].append(e)

        def out_deg(v: str) -> int:
            return sum(1 for e in out_adj[v] if e.target[0] in remaining and e.target[0] != v)

        def in_deg(v: str) -> int:
            return sum(1 for e in in_adj[v] if e.source[0] in remaining and e.source[0] != v)

        head: List[str] = []
        tail: List[str] = []
        while remaining:
            changed = True
            while changed:
                changed = False
                for v in sorted(remaining):
                    if out_deg(v) == 0:
                        tail.insert(0, v)
                        remaining.discard(v)
                        changed = True
                    elif in_deg(v) == 0:
                        head.append(v)
                        remaining.discard(v)
                        changed = True
            if remaining:
                v = max(sorted(remaining), key=lambda u: out_deg(u) - in_deg(u))
                head.append(v)
                remaining.discard(v)

        position = {v: i for i, v in enumerate(head + tail)}
        return {e.id for e in edges if position[e.source[0]] >= position[e.target[0]]}

    @property
    def sequencer(self) -> Sequencer:
        if self._sequencer is None:
            self._sequencer = Sequencer(self)
        return self._sequencer

    # ------------------------------------------------------------------
    # Definition round-trip
    # ------------------------------------------------------------------

    def to_definition(self) -> FlowsheetDefinition:
        operations = [
            OperationSpec(id=op.id, name=op.name if op.name != op.id else None, params=op.params)
            for op in self.operations.values()
        ]
        streams = []
        for s in self.streams.values():
            streams.append(
                StreamSpec(
                    id=s.id,
                    source=PortRef(operation=s.source[0], port=s.source[1]) if s.source else None,
                    target=PortRef(operation=s.target[0], port=s.target[1]) if s.target else None,
                    feed=s.feed,
                    guess=s.guess,
                )
            )
        return FlowsheetDefinition(
            name=self.name,
            components=list(self.components),
            property_package=self.property_package,
            operations=operations,
            streams=streams,
            tear_streams=list(self.tear_streams),
            solver=dict(self.solver_overrides),
        )

    @classmethod
    def from_definition(cls, definition: Union[FlowsheetDefinition, Mapping[str, Any]]) -> "Flowsheet":
        if not isinstance(definition, FlowsheetDefinition):
            definition = FlowsheetDefinition.model_validate(definition)
        fs = cls(
            definition.components,
            name=definition.name,
            property_package=definition.property_package,
            solver_overrides=definition.solver,
        )
        for spec in definition.operations:
            fs.add_operation(spec.kind, spec.params, id=spec.id, name=spec.name)
        for spec in definition.streams:
            target = spec.target
            if spec.source is None:
                if spec.feed is None or target is None:
                    raise TopologyError(f"Stream '{spec.id}' has no producer and is not a feed")
                fs.add_feed(target.operation, target.port, spec.feed, id=spec.id)
            else:
                if spec.feed is not None:
                    raise ValidationError(f"Stream '{spec.id}' has both a producer and a feed spec")
                fs.connect(
                    spec.source.operation,
                    spec.source.port,
                    target.operation if target else None,
                    target.port if target else None,
                    id=spec.id,
                )
            if spec.guess is not None:
                fs.set_tear_guess(spec.id, spec.guess)
        for sid in definition.tear_streams:
            fs.designate_tear(sid)
        return fs
