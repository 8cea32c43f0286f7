"""
Property package interface.

The engine treats a property package as an opaque, possibly slow and
possibly non-deterministic oracle: given a flash specification it returns
the phase state of a mixture or raises ``PropertyError``. Concrete packages
live in ``ideal_package`` (constant-Cp ideal solution) and ``thermo_engine``
(Caleb Bell's ``thermo`` library).
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .cancellation import CancellationToken


class FlashKind(str, Enum):
    PT = "PT"
    PH = "PH"
    PS = "PS"
    TVF = "TVF"
    BUBBLE_T = "BUBBLE_T"
    DEW_T = "DEW_T"


@dataclass(frozen=True)
class FlashSpec:
    """Two independent state specifications over an overall composition."""

    kind: FlashKind
    zs: Tuple[float, ...]
    T: Optional[float] = None  # K
    P: Optional[float] = None  # Pa
    H: Optional[float] = None  # J/mol
    S: Optional[float] = None  # J/(mol·K)
    VF: Optional[float] = None
    # Starting temperature for iterative flashes; perturbed on retry
    T_guess: Optional[float] = None

    @classmethod
    def pt(cls, T: float, P: float, zs: Sequence[float]) -> "FlashSpec":
        return cls(FlashKind.PT, tuple(zs), T=T, P=P)

    @classmethod
    def ph(cls, P: float, H: float, zs: Sequence[float], T_guess: Optional[float] = None) -> "FlashSpec":
        return cls(FlashKind.PH, tuple(zs), P=P, H=H, T_guess=T_guess)

    @classmethod
    def ps(cls, P: float, S: float, zs: Sequence[float], T_guess: Optional[float] = None) -> "FlashSpec":
        return cls(FlashKind.PS, tuple(zs), P=P, S=S, T_guess=T_guess)

    @classmethod
    def tvf(cls, T: float, VF: float, zs: Sequence[float]) -> "FlashSpec":
        return cls(FlashKind.TVF, tuple(zs), T=T, VF=VF)

    @classmethod
    def bubble_point(cls, P: float, zs: Sequence[float]) -> "FlashSpec":
        return cls(FlashKind.BUBBLE_T, tuple(zs), P=P, VF=0.0)

    @classmethod
    def dew_point(cls, P: float, zs: Sequence[float]) -> "FlashSpec":
        return cls(FlashKind.DEW_T, tuple(zs), P=P, VF=1.0)

    def with_guess(self, T_guess: float) -> "FlashSpec":
        return dataclasses.replace(self, T_guess=T_guess)


@dataclass
class PhaseState:
    """Result of a flash calculation (molar basis)."""

    temperature: float  # K
    pressure: float  # Pa
    phase: str  # "vapor", "liquid", "two-phase"
    vapor_fraction: float
    zs: List[float]
    ys: Optional[List[float]] = None
    xs: Optional[List[float]] = None
    enthalpy: float = 0.0  # J/mol
    entropy: float = 0.0  # J/(mol·K)
    density: Optional[float] = None  # kg/m³
    molecular_weight: float = 0.0  # g/mol
    extra: Dict[str, float] = field(default_factory=dict)


def phase_label(vapor_fraction: float) -> str:
    if vapor_fraction > 0.9999:
        return "vapor"
    if vapor_fraction < 0.0001:
        return "liquid"
    return "two-phase"


def normalise(zs: Sequence[float]) -> List[float]:
    """Normalise mole fractions to sum to 1.0."""
    total = sum(zs)
    if total <= 0:
        raise ValueError("Mole fractions must sum to a positive value")
    return [z / total for z in zs]


class PropertyPackage(ABC):
    """Pluggable physical-property oracle consumed by unit operations."""

    #: Ordered component identities, fixed at flowsheet-build time
    component_names: List[str]

    @property
    def n(self) -> int:
        return len(self.component_names)

    @property
    @abstractmethod
    def molecular_weights(self) -> List[float]:
        """Molecular weights in g/mol, aligned with ``component_names``."""

    def formulas(self) -> Optional[List[Dict[str, float]]]:
        """Elemental composition per component, or None when unknown."""
        return None

    @abstractmethod
    def flash(self, spec: FlashSpec, cancel: Optional[CancellationToken] = None) -> PhaseState:
        """Resolve the phase state for ``spec``; raise ``PropertyError`` on failure."""

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    def pt_flash(self, T: float, P: float, zs: Sequence[float]) -> PhaseState:
        return self.flash(FlashSpec.pt(T, P, zs))

    def ph_flash(self, P: float, H: float, zs: Sequence[float]) -> PhaseState:
        return self.flash(FlashSpec.ph(P, H, zs))

    def bubble_point_T(self, P: float, zs: Sequence[float]) -> float:
        return self.flash(FlashSpec.bubble_point(P, zs)).temperature

    def dew_point_T(self, P: float, zs: Sequence[float]) -> float:
        return self.flash(FlashSpec.dew_point(P, zs)).temperature

    def mixture_mw(self, zs: Sequence[float]) -> float:
        """Mixture molecular weight in g/mol."""
        return sum(z * mw for z, mw in zip(zs, self.molecular_weights))

    def index_of(self, name: str) -> int:
        try:
            return self.component_names.index(name)
        except ValueError as exc:
            raise KeyError(f"Unknown component '{name}'") from exc
