"""
Exception hierarchy for the flowsheet engine.

Structural problems (``ValidationError`` and its subclasses) are raised
before the first iteration. ``OperationError`` and ``ConvergenceError`` are
raised during a solve and carry enough context (operation id, iteration,
residual trace) to reproduce the failure without verbose logging.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class FlowsimError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Structural errors
# ---------------------------------------------------------------------------


class ValidationError(FlowsimError):
    """The flowsheet cannot be solved as built (DOF, missing connections)."""

    def __init__(self, message: str, operation_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.operation_id = operation_id


class TopologyError(ValidationError):
    """Duplicate producers, dangling ports or a malformed tear set."""


class FlowsheetLockedError(TopologyError):
    """Structural mutation attempted while a solve is running."""


class CyclicDependencyError(FlowsimError):
    """Removing the tear set did not make the graph acyclic.

    This signals a tear-selection bug, not a user error.
    """

    def __init__(self, message: str, remaining: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.remaining = remaining or []


# ---------------------------------------------------------------------------
# Evaluation errors
# ---------------------------------------------------------------------------


class OperationError(FlowsimError):
    """A unit operation could not produce its outlets."""

    def __init__(
        self,
        message: str,
        operation_id: Optional[str] = None,
        iteration: Optional[int] = None,
        trace: Optional[Dict[str, List[float]]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation_id = operation_id
        self.iteration = iteration
        self.trace = trace or {}

    def __str__(self) -> str:
        where = f"[{self.operation_id}] " if self.operation_id else ""
        when = f" (iteration {self.iteration})" if self.iteration is not None else ""
        return f"{where}{self.message}{when}"


class Infeasible(OperationError):
    """Negative flow, impossible energy balance, second-law violation."""


class PropertyFailure(OperationError):
    """The property package could not converge a flash for this operation."""


class ParameterOutOfRange(OperationError):
    """A parameter value is outside what the operation can honour."""


# ---------------------------------------------------------------------------
# Outer-loop errors
# ---------------------------------------------------------------------------


class ConvergenceError(FlowsimError):
    """Tear-stream iteration failed; carries the best iterate and the trace."""

    def __init__(
        self,
        message: str,
        iteration: int,
        trace: Dict[str, List[float]],
        best_iterate: Optional[Dict[str, Any]] = None,
        best_residual: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.iteration = iteration
        self.trace = trace
        self.best_iterate = best_iterate or {}
        self.best_residual = best_residual


class Diverged(ConvergenceError):
    """Residual norm kept growing beyond the configured growth factor."""


class MaxIterationsExceeded(ConvergenceError):
    """Iteration cap reached without convergence."""


class SolveCancelled(FlowsimError):
    """The solve was cancelled through its cancellation token."""

    def __init__(self, message: str = "Solve cancelled", iteration: Optional[int] = None) -> None:
        super().__init__(message)
        self.iteration = iteration


# ---------------------------------------------------------------------------
# Property package errors
# ---------------------------------------------------------------------------


class PropertyError(FlowsimError):
    """Raised by property packages when a state calculation fails."""


class DidNotConverge(PropertyError):
    """An iterative flash calculation did not converge."""
