"""
Tear-stream convergence acceleration.

Each tear stream is represented by the state vector ``[T, P, n_1..n_N]``.
One accelerator instance owns the full iteration history of one solve;
concurrent solves never share an instance.

Modes:
  - initializing: direct substitution until two (guess, computed) pairs exist
  - accelerating: bounded Wegstein, component by component
  - broyden: rank-one ("good") Broyden on the scaled residual g(x) - x,
    entered when Wegstein stalls or selected explicitly
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

import numpy as np
from loguru import logger

from .config import SolverSettings
from .errors import Diverged


class AcceleratorMode(str, Enum):
    INITIALIZING = "initializing"
    ACCELERATING = "accelerating"
    BROYDEN = "broyden"
    CONVERGED = "converged"
    DIVERGED = "diverged"


@dataclass
class AcceleratorStep:
    iteration: int
    residual: float
    tear_residuals: Dict[str, float]
    converged: bool
    next_guess: Dict[str, np.ndarray] = field(default_factory=dict)


def relative_error(x: np.ndarray, g: np.ndarray) -> float:
    """Relative infinity norm between a guessed and a computed tear vector.

    Temperature and pressure are compared relative to their own
    magnitude, component flows relative to the total flow.
    """
    err_T = abs(g[0] - x[0]) / max(abs(x[0]), abs(g[0]), 1.0)
    err_P = abs(g[1] - x[1]) / max(abs(x[1]), abs(g[1]), 1.0)
    total = max(float(np.sum(np.abs(x[2:]))), float(np.sum(np.abs(g[2:]))))
    if total <= 0.0:
        err_n = 0.0
    else:
        err_n = float(np.max(np.abs(g[2:] - x[2:]))) / total
    return max(err_T, err_P, err_n)


class ConvergenceAccelerator:
    """Per-solve history and update rule for all tear streams."""

    def __init__(self, tear_ids: Sequence[str], settings: SolverSettings) -> None:
        self.tear_ids = list(tear_ids)
        self.settings = settings
        self.mode = AcceleratorMode.INITIALIZING
        self.iteration = 0

        self._x: Dict[str, List[np.ndarray]] = {sid: [] for sid in self.tear_ids}
        self._g: Dict[str, List[np.ndarray]] = {sid: [] for sid in self.tear_ids}
        self.residuals: List[float] = []
        self.trace: Dict[str, List[float]] = {sid: [] for sid in self.tear_ids}

        self._below_tolerance = 0
        self._growing = 0
        self._stalled = 0

        self.best_residual: Optional[float] = None
        self.best_iterate: Dict[str, List[float]] = {}

        # Broyden state (scaled variables, all tears concatenated)
        self._scale: Optional[np.ndarray] = None
        self._J: Optional[np.ndarray] = None
        self._u_prev: Optional[np.ndarray] = None
        self._f_prev: Optional[np.ndarray] = None

        if settings.method == "broyden":
            self.mode = AcceleratorMode.BROYDEN

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def full_trace(self) -> Dict[str, List[float]]:
        trace = {sid: list(v) for sid, v in self.trace.items()}
        trace["__norm__"] = list(self.residuals)
        return trace

    def step(self, x: Dict[str, np.ndarray], g: Dict[str, np.ndarray]) -> AcceleratorStep:
        """Record one (guess, computed) pair per tear and propose the next guesses."""
        self.iteration += 1
        per_tear = {sid: relative_error(x[sid], g[sid]) for sid in self.tear_ids}
        norm = max(per_tear.values(), default=0.0)

        for sid in self.tear_ids:
            self._x[sid].append(np.array(x[sid], dtype=float))
            self._g[sid].append(np.array(g[sid], dtype=float))
            self.trace[sid].append(per_tear[sid])
        previous = self.residuals[-1] if self.residuals else None
        self.residuals.append(norm)

        if self.best_residual is None or norm < self.best_residual:
            self.best_residual = norm
            self.best_iterate = {sid: list(map(float, g[sid])) for sid in self.tear_ids}

        # All tears are judged together
        if norm < self.settings.tolerance:
            self._below_tolerance += 1
        else:
            self._below_tolerance = 0
        if self._below_tolerance >= self.settings.converged_iterations:
            self.mode = AcceleratorMode.CONVERGED
            return AcceleratorStep(self.iteration, norm, per_tear, converged=True)

        self._check_divergence(norm, previous)
        self._check_stall(norm, previous)

        if self.settings.method == "direct" or self.mode == AcceleratorMode.INITIALIZING:
            proposal = {sid: g[sid].copy() for sid in self.tear_ids}
            if self.settings.method != "direct":
                self.mode = AcceleratorMode.ACCELERATING
        elif self.mode == AcceleratorMode.BROYDEN:
            proposal = self._broyden(x, g)
        else:
            proposal = {sid: self._wegstein(sid) for sid in self.tear_ids}

        return AcceleratorStep(
            self.iteration,
            norm,
            per_tear,
            converged=False,
            next_guess={sid: self._floor(v) for sid, v in proposal.items()},
        )

    # ------------------------------------------------------------------
    # Criteria
    # ------------------------------------------------------------------

    def _check_divergence(self, norm: float, previous: Optional[float]) -> None:
        if previous is not None and norm > self.settings.growth_factor * previous:
            self._growing += 1
        else:
            self._growing = 0
        if self._growing >= self.settings.divergence_window:
            self.mode = AcceleratorMode.DIVERGED
            raise Diverged(
                f"Tear residual grew for {self._growing} consecutive iterations "
                f"(now {norm:.3e})",
                iteration=self.iteration,
                trace=self.full_trace(),
                best_iterate=self.best_iterate,
                best_residual=self.best_residual,
            )

    def _check_stall(self, norm: float, previous: Optional[float]) -> None:
        if self.mode != AcceleratorMode.ACCELERATING or previous is None or previous <= 0:
            self._stalled = 0
            return
        if norm / previous >= self.settings.stall_ratio:
            self._stalled += 1
        else:
            self._stalled = 0
        if self._stalled >= self.settings.stall_iterations:
            logger.info(
                "Wegstein stalled for {} iterations at residual {:.3e}; switching to Broyden",
                self._stalled, norm,
            )
            self.mode = AcceleratorMode.BROYDEN
            self._stalled = 0

    # ------------------------------------------------------------------
    # Update rules
    # ------------------------------------------------------------------

    def _wegstein(self, sid: str) -> np.ndarray:
        """
        Wegstein acceleration using the two most recent (x, g(x)) pairs:
            s_i = (g_k,i - g_k-1,i) / (x_k,i - x_k-1,i)
            q_i = s_i / (s_i - 1)
            x_k+1,i = q_i * x_k,i + (1 - q_i) * g_k,i

        Components whose q is undefined or outside the configured band fall
        back to direct substitution.
        """
        x_n, x_nm1 = self._x[sid][-1], self._x[sid][-2]
        g_n, g_nm1 = self._g[sid][-1], self._g[sid][-2]
        result = g_n.copy()
        for i in range(len(x_n)):
            dx = x_n[i] - x_nm1[i]
            if abs(dx) <= 1e-14 * max(abs(x_n[i]), 1.0):
                continue
            s = (g_n[i] - g_nm1[i]) / dx
            if abs(s - 1.0) < 1e-12:
                continue
            q = s / (s - 1.0)
            if not self.settings.wegstein_q_min <= q <= self.settings.wegstein_q_max:
                continue
            result[i] = q * x_n[i] + (1.0 - q) * g_n[i]
        return result

    def _stack(self, vectors: Dict[str, np.ndarray]) -> np.ndarray:
        return np.concatenate([np.asarray(vectors[sid], dtype=float) for sid in self.tear_ids])

    def _unstack(self, flat: np.ndarray) -> Dict[str, np.ndarray]:
        out: Dict[str, np.ndarray] = {}
        offset = 0
        for sid in self.tear_ids:
            size = len(self._x[sid][-1])
            out[sid] = flat[offset:offset + size].copy()
            offset += size
        return out

    def _broyden_scale(self, g: Dict[str, np.ndarray]) -> np.ndarray:
        parts = []
        for sid in self.tear_ids:
            vec = g[sid]
            total = max(float(np.sum(np.abs(vec[2:]))), 1e-12)
            parts.append(np.concatenate([[max(abs(vec[0]), 1.0), max(abs(vec[1]), 1.0)], np.full(len(vec) - 2, total)]))
        return np.concatenate(parts)

    def _broyden(self, x: Dict[str, np.ndarray], g: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Good Broyden update on f(u) = (g - x) / scale; J starts at -I."""
        if self._scale is None:
            self._scale = self._broyden_scale(g)
        u = self._stack(x) / self._scale
        f = (self._stack(g) - self._stack(x)) / self._scale

        if self._J is None:
            self._J = -np.eye(len(u))
        elif self._u_prev is not None:
            du = u - self._u_prev
            df = f - self._f_prev
            denom = float(du @ du)
            if denom > 1e-30:
                self._J = self._J + np.outer(df - self._J @ du, du) / denom

        try:
            step = np.linalg.solve(self._J, -f)
        except np.linalg.LinAlgError:
            logger.debug("Broyden Jacobian singular; resetting to -I")
            self._J = -np.eye(len(u))
            step = f.copy()
        if not np.all(np.isfinite(step)):
            self._J = -np.eye(len(u))
            step = f.copy()

        self._u_prev, self._f_prev = u, f
        return self._unstack((u + step) * self._scale)

    def _floor(self, vec: np.ndarray) -> np.ndarray:
        out = np.array(vec, dtype=float)
        out[0] = max(out[0], self.settings.min_temperature)
        out[1] = max(out[1], self.settings.min_pressure)
        out[2:] = np.clip(out[2:], 0.0, None)
        return out
