"""
Stream state records flowing between unit operations.

Streams are stored on a molar-flow basis (mol/s per component). Phase
information is filled in by the property package; an empty (zero-flow)
stream is legal and is never flashed.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .properties import PhaseState


@dataclass
class StreamState:
    """Fully resolved stream state after a flash calculation."""

    temperature: float  # K
    pressure: float  # Pa
    molar_flows: List[float]  # mol/s per component

    phase: str = "liquid"  # "vapor", "liquid", "two-phase"
    vapor_fraction: float = 0.0
    # Vapor-phase composition (None if single liquid phase)
    ys: Optional[List[float]] = None
    # Liquid-phase composition (None if single vapor phase)
    xs: Optional[List[float]] = None

    # Thermodynamic properties (molar basis)
    enthalpy: float = 0.0  # J/mol
    entropy: float = 0.0  # J/(mol·K)
    density: Optional[float] = None  # kg/m³

    component_mws: List[float] = field(default_factory=list)  # g/mol per component
    component_names: List[str] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    @property
    def molar_flow(self) -> float:
        """Total molar flow in mol/s."""
        return float(sum(self.molar_flows))

    @property
    def is_empty(self) -> bool:
        return self.molar_flow <= 0.0

    @property
    def zs(self) -> List[float]:
        """Overall mole fractions (all zero for an empty stream)."""
        total = self.molar_flow
        if total <= 0.0:
            return [0.0] * len(self.molar_flows)
        return [n / total for n in self.molar_flows]

    @property
    def mass_flows(self) -> List[float]:
        """Per-component mass flows in kg/s."""
        return [n * mw / 1000.0 for n, mw in zip(self.molar_flows, self.component_mws)]

    @property
    def mass_flow(self) -> float:
        """Total mass flow in kg/s."""
        return float(sum(self.mass_flows))

    @property
    def molecular_weight(self) -> float:
        """Mixture molecular weight in g/mol."""
        return sum(z * mw for z, mw in zip(self.zs, self.component_mws))

    @property
    def enthalpy_flow(self) -> float:
        """Enthalpy flow in W."""
        if self.is_empty:
            return 0.0
        return self.molar_flow * self.enthalpy

    def flows_by_name(self) -> Dict[str, float]:
        return dict(zip(self.component_names, self.molar_flows))

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_phase(
        cls,
        state: PhaseState,
        molar_flows: Sequence[float],
        component_names: Sequence[str],
        component_mws: Sequence[float],
    ) -> "StreamState":
        return cls(
            temperature=state.temperature,
            pressure=state.pressure,
            molar_flows=[float(n) for n in molar_flows],
            phase=state.phase,
            vapor_fraction=state.vapor_fraction,
            ys=list(state.ys) if state.ys is not None else None,
            xs=list(state.xs) if state.xs is not None else None,
            enthalpy=state.enthalpy,
            entropy=state.entropy,
            density=state.density,
            component_mws=list(component_mws),
            component_names=list(component_names),
        )

    @classmethod
    def empty(
        cls,
        temperature: float,
        pressure: float,
        component_names: Sequence[str],
        component_mws: Sequence[float],
    ) -> "StreamState":
        return cls(
            temperature=temperature,
            pressure=pressure,
            molar_flows=[0.0] * len(component_names),
            component_mws=list(component_mws),
            component_names=list(component_names),
        )

    def copy(self) -> "StreamState":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Tear-vector conversion: [T, P, n_1..n_N]
    # ------------------------------------------------------------------

    def to_vector(self) -> np.ndarray:
        return np.array([self.temperature, self.pressure] + list(self.molar_flows), dtype=float)
