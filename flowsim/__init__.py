"""Steady-state sequential-modular flowsheet simulation."""

__version__ = "0.1.0"

from .cancellation import CancellationToken
from .config import SolverSettings
from .errors import (
    ConvergenceError,
    CyclicDependencyError,
    Diverged,
    FlowsheetLockedError,
    FlowsimError,
    Infeasible,
    MaxIterationsExceeded,
    OperationError,
    ParameterOutOfRange,
    PropertyFailure,
    SolveCancelled,
    TopologyError,
    ValidationError,
)
from .flowsheet import Flowsheet
from .flowsheet_solver import FlowsheetSolver, SolveResult
from .ideal_package import IdealPropertyPackage
from .properties import FlashKind, FlashSpec, PhaseState, PropertyPackage
from .streams import StreamState

__all__ = [
    "CancellationToken",
    "ConvergenceError",
    "CyclicDependencyError",
    "Diverged",
    "FlashKind",
    "FlashSpec",
    "Flowsheet",
    "FlowsheetLockedError",
    "FlowsheetSolver",
    "FlowsimError",
    "IdealPropertyPackage",
    "Infeasible",
    "MaxIterationsExceeded",
    "OperationError",
    "ParameterOutOfRange",
    "PhaseState",
    "PropertyFailure",
    "PropertyPackage",
    "SolveCancelled",
    "SolveResult",
    "SolverSettings",
    "StreamState",
    "TopologyError",
    "ValidationError",
]
