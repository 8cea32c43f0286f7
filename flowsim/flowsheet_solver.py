"""
Sequential-modular flowsheet solver.

  1. Validate the flowsheet (structure, degrees of freedom, parameters)
  2. Detect recycle loops via Tarjan's SCC algorithm and select tear streams
  3. Order the operations with the tears removed (cached per tear set)
  4. Iterate passes, accelerating the tear guesses until all tears converge
  5. Report mass & energy balance closure

Each solve owns its accelerator, so the same flowsheet can be solved
concurrently from several threads.
"""

from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
from loguru import logger

from . import diagnostics
from .accelerator import ConvergenceAccelerator
from .cancellation import CancellationToken
from .config import SolverSettings
from .errors import (
    ConvergenceError,
    MaxIterationsExceeded,
    OperationError,
    ValidationError,
)
from .flowsheet import Flowsheet, Stream
from .properties import PropertyPackage
from .sequencer import SequencePlan
from .streams import StreamState
from .unit_operations import T_DEFAULT, EvaluationContext, OperationOutput


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class SolveResult:
    flowsheet_name: str
    iterations: int
    streams: Dict[str, StreamState]
    outputs: Dict[str, OperationOutput]
    residuals: Dict[str, Tuple[float, float]]
    tear_streams: List[str]
    tear_trace: Dict[str, List[float]]
    mass_balance_error: float
    energy_balance_error: float
    element_balance_error: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    seed: int = 0
    converged: bool = True


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------


class FlowsheetSolver:
    """Sequential-modular flowsheet solver with tear-stream handling."""

    def __init__(
        self,
        flowsheet: Flowsheet,
        properties: PropertyPackage,
        settings: Optional[SolverSettings] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.flowsheet = flowsheet
        self.properties = properties
        self.settings = settings or SolverSettings()
        self.cancel = cancel or CancellationToken()
        self.flash_retries = 0
        self._retry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def solve(self, initial_guesses: Optional[Mapping[str, StreamState]] = None) -> SolveResult:
        """
        Run the sequential-modular solve loop.

        ``initial_guesses`` (e.g. the streams of a previous result) take
        precedence over guesses stored on the flowsheet. Raises
        ValidationError before the first iteration, OperationError or
        ConvergenceError during iteration, SolveCancelled on cancellation.
        """
        fs = self.flowsheet
        with self._retry_lock:
            self.flash_retries = 0
        with fs.solving():
            self.cancel.raise_if_cancelled(iteration=0)
            self.precheck()

            feeds = {s.id: self._create_feed_stream(s) for s in fs.feeds()}
            tears = self._select_tears(initial_guesses)
            plan = fs.sequencer.plan(tears)
            if tears:
                logger.info("Tear streams: {}", tears)

            guesses = {sid: self._initial_tear_estimate(sid, feeds, initial_guesses) for sid in tears}
            accel = ConvergenceAccelerator(tears, self.settings)

            iteration = 0
            try:
                while True:
                    iteration += 1
                    if iteration > self.settings.max_iterations:
                        raise MaxIterationsExceeded(
                            f"No convergence after {self.settings.max_iterations} iterations "
                            f"(residual {accel.residuals[-1]:.3e})",
                            iteration=self.settings.max_iterations,
                            trace=accel.full_trace(),
                            best_iterate=accel.best_iterate,
                            best_residual=accel.best_residual,
                        )
                    self.cancel.raise_if_cancelled(iteration=iteration)

                    computed, outputs = self._run_pass(plan, feeds, guesses, iteration)
                    if not tears:
                        break

                    x = {sid: guesses[sid].to_vector() for sid in tears}
                    g = {sid: computed[sid].to_vector() for sid in tears}
                    step = accel.step(x, g)
                    logger.info("Iteration {}: max tear error = {:.2e}", iteration, step.residual)
                    if step.converged:
                        break
                    guesses = {
                        sid: self._vector_to_stream(sid, vec, iteration)
                        for sid, vec in step.next_guess.items()
                    }
            except OperationError as exc:
                if exc.iteration is None:
                    exc.iteration = iteration
                exc.trace = accel.full_trace()
                logger.error("{}", exc)
                raise
            except ConvergenceError as exc:
                logger.error("Solve failed at iteration {}: {}", exc.iteration, exc)
                raise

            return self._finish(fs, feeds, computed, outputs, tears, accel, iteration)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def precheck(self) -> None:
        """Structural validation plus per-operation parameter checks."""
        fs = self.flowsheet
        fs.validate()
        if list(self.properties.component_names) != list(fs.components):
            raise ValidationError(
                f"Property package components {self.properties.component_names} "
                f"do not match flowsheet components {fs.components}"
            )
        for op in fs.operations.values():
            op.check(self.properties)

    def _context(self, operation_id: Optional[str], iteration: Optional[int]) -> EvaluationContext:
        return EvaluationContext(
            self.properties,
            cancel=self.cancel,
            seed=self.settings.seed,
            operation_id=operation_id,
            iteration=iteration,
            perturbation=self.settings.retry_perturbation,
        )

    def _create_feed_stream(self, stream: Stream) -> StreamState:
        """Resolve a boundary feed specification into a flashed stream."""
        feed = stream.feed
        mws = self.properties.molecular_weights
        flows = []
        for name, mw in zip(self.flowsheet.components, mws):
            value = feed.flows.get(name, 0.0)
            flows.append(value / (mw / 1000.0) if feed.basis == "mass" else value)

        ctx = self._context(stream.id, 0)
        if feed.temperature is not None:
            return ctx.stream_pt(feed.temperature, feed.pressure, flows)
        return ctx.stream_ph(feed.pressure, feed.enthalpy, flows, T_guess=T_DEFAULT)

    def _select_tears(self, initial_guesses: Optional[Mapping[str, StreamState]]) -> List[str]:
        fs = self.flowsheet
        magnitudes = {}
        if initial_guesses:
            magnitudes = {sid: s.molar_flow for sid, s in initial_guesses.items() if sid in fs.streams}

        tears: List[str] = [sid for sid in fs.tear_streams]
        for scc in fs.recycle_components():
            for sid in fs.select_tear_streams(scc, magnitudes or None):
                if sid not in tears:
                    tears.append(sid)
        return tears

    def _initial_tear_estimate(
        self,
        stream_id: str,
        feeds: Mapping[str, StreamState],
        initial_guesses: Optional[Mapping[str, StreamState]],
    ) -> StreamState:
        """
        Warm start > stored guess > feed-seeded default.

        The default carries the combined flow of the boundary feeds entering
        the tear's recycle loop (all feeds if none enter it) at the first such
        feed's temperature and the highest feed pressure, so operations on
        the torn inlet never start from an empty stream.
        """
        names = self.flowsheet.components
        if initial_guesses and stream_id in initial_guesses:
            vec = initial_guesses[stream_id].to_vector()
        else:
            stored = self.flowsheet.streams[stream_id].guess
            if stored is not None:
                flows = [stored.molar_flows.get(c, 0.0) for c in names]
                vec = np.array([stored.temperature, stored.pressure] + flows)
            elif feeds:
                seeds = self._loop_feeds(stream_id, feeds)
                P = max(s.pressure for s in feeds.values())
                flows = np.sum([s.molar_flows for s in seeds], axis=0)
                vec = np.concatenate(([seeds[0].temperature, P], flows))
            else:
                vec = np.array([T_DEFAULT, 101325.0] + [0.0] * len(names))
        return self._vector_to_stream(stream_id, vec, 0)

    def _loop_feeds(self, stream_id: str, feeds: Mapping[str, StreamState]) -> List[StreamState]:
        fs = self.flowsheet
        producer = fs.streams[stream_id].source[0]
        for scc in fs.recycle_components():
            if producer in scc:
                members = set(scc)
                entering = [feeds[s.id] for s in fs.feeds() if s.target[0] in members]
                if entering:
                    return entering
        return list(feeds.values())

    def _vector_to_stream(self, stream_id: str, vec: np.ndarray, iteration: int) -> StreamState:
        """Rebuild a tear guess from ``[T, P, n...]`` with a PT flash."""
        T = max(float(vec[0]), self.settings.min_temperature)
        P = max(float(vec[1]), self.settings.min_pressure)
        flows = [max(float(n), 0.0) for n in vec[2:]]
        producer = self.flowsheet.streams[stream_id].source[0]
        return self._context(producer, iteration).stream_pt(T, P, flows)

    # ------------------------------------------------------------------
    # Pass execution
    # ------------------------------------------------------------------

    def _evaluate(
        self, op_id: str, inlets: List[StreamState], iteration: int
    ) -> OperationOutput:
        op = self.flowsheet.operations[op_id]
        self.cancel.raise_if_cancelled(iteration=iteration)
        ctx = self._context(op_id, iteration)
        try:
            output = op.evaluate(inlets, ctx)
        except OperationError as exc:
            if exc.operation_id is None:
                exc.operation_id = op_id
            exc.iteration = iteration
            raise
        finally:
            with self._retry_lock:
                self.flash_retries += ctx.flash_retries
        if len(output.outlets) != op.outlet_count():
            raise OperationError(
                f"Produced {len(output.outlets)} outlets, expected {op.outlet_count()}",
                operation_id=op_id,
                iteration=iteration,
            )
        return output

    def _run_pass(
        self,
        plan: SequencePlan,
        feeds: Mapping[str, StreamState],
        guesses: Mapping[str, StreamState],
        iteration: int,
    ) -> Tuple[Dict[str, StreamState], Dict[str, OperationOutput]]:
        """Evaluate every operation once; tears are read from ``guesses``."""
        fs = self.flowsheet
        computed: Dict[str, StreamState] = dict(feeds)
        outputs: Dict[str, OperationOutput] = {}

        def inlets_of(op_id: str) -> List[StreamState]:
            return [guesses[sid] if sid in guesses else computed[sid] for sid in fs.inlet_streams(op_id)]

        def store(op_id: str, output: OperationOutput) -> None:
            outputs[op_id] = output
            for sid, state in zip(fs.outlet_streams(op_id), output.outlets):
                computed[sid] = state

        if self.settings.max_workers <= 1:
            for op_id in plan.order:
                store(op_id, self._evaluate(op_id, inlets_of(op_id), iteration))
            return computed, outputs

        # Dynamic scheduling: an operation is submitted as soon as all its
        # in-pass producers are done; outlets are written on this thread only.
        remaining = {op_id: set(plan.dependencies[op_id]) for op_id in plan.order}
        running: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
            try:
                while remaining or running:
                    for op_id in [o for o in plan.order if o in remaining and not remaining[o]]:
                        del remaining[op_id]
                        running[pool.submit(self._evaluate, op_id, inlets_of(op_id), iteration)] = op_id
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                    for future in done:
                        op_id = running.pop(future)
                        store(op_id, future.result())
                        for deps in remaining.values():
                            deps.discard(op_id)
            except BaseException:
                for future in running:
                    future.cancel()
                raise
        return computed, outputs

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _finish(
        self,
        fs: Flowsheet,
        feeds: Dict[str, StreamState],
        computed: Dict[str, StreamState],
        outputs: Dict[str, OperationOutput],
        tears: List[str],
        accel: ConvergenceAccelerator,
        iteration: int,
    ) -> SolveResult:
        streams = {sid: computed[sid] for sid in fs.streams}
        mass_err = diagnostics.boundary_mass_balance(fs, streams)
        energy_err = diagnostics.boundary_energy_balance(fs, streams, outputs)
        element_err = diagnostics.element_balance(fs, streams, self.properties.formulas())
        residuals = diagnostics.operation_residuals(fs, streams, outputs)

        warnings: List[str] = []
        if mass_err > 1e-6:
            warnings.append(f"Mass balance error is {mass_err:.3e} (relative)")
        if energy_err > 1e-4:
            warnings.append(f"Energy balance error is {energy_err:.3e} (relative)")
        if self.flash_retries:
            warnings.append(f"{self.flash_retries} flash calculation(s) needed a retry")

        logger.info(
            "Solve '{}' converged in {} iteration(s); mass error {:.2e}, energy error {:.2e}",
            fs.name, iteration, mass_err, energy_err,
        )
        return SolveResult(
            flowsheet_name=fs.name,
            iterations=iteration,
            streams=streams,
            outputs=outputs,
            residuals=residuals,
            tear_streams=list(tears),
            tear_trace=accel.full_trace() if tears else {},
            mass_balance_error=mass_err,
            energy_balance_error=energy_err,
            element_balance_error=element_err,
            warnings=warnings,
            diagnostics={
                "accelerator_mode": accel.mode.value,
                "convergence": diagnostics.convergence_rate(accel.residuals),
                "flash_retries": self.flash_retries,
            },
            seed=self.settings.seed,
        )
