"""
Post-solve balance checks and convergence diagnostics.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Tuple

from .streams import StreamState

if TYPE_CHECKING:
    from .flowsheet import Flowsheet
    from .unit_operations import OperationOutput


def boundary_mass_balance(flowsheet: "Flowsheet", streams: Mapping[str, StreamState]) -> float:
    """Relative mismatch between boundary mass in and mass out."""
    mass_in = sum(streams[s.id].mass_flow for s in flowsheet.feeds())
    mass_out = sum(streams[s.id].mass_flow for s in flowsheet.products())
    scale = max(mass_in, mass_out)
    if scale <= 0.0:
        return 0.0
    return abs(mass_in - mass_out) / scale


def boundary_energy_balance(
    flowsheet: "Flowsheet",
    streams: Mapping[str, StreamState],
    outputs: Mapping[str, "OperationOutput"],
) -> float:
    """Relative mismatch of feed enthalpy + duties against product enthalpy.

    Heat-exchanger duty moves between two process streams and is therefore
    reported as zero external duty by the exchanger itself.
    """
    h_in = sum(streams[s.id].enthalpy_flow for s in flowsheet.feeds())
    h_out = sum(streams[s.id].enthalpy_flow for s in flowsheet.products())
    duty = sum(out.duty for out in outputs.values())
    scale = max(abs(h_in), abs(h_out), abs(duty), 1.0)
    return abs(h_in + duty - h_out) / scale


def element_balance(
    flowsheet: "Flowsheet",
    streams: Mapping[str, StreamState],
    formulas: Optional[Sequence[Mapping[str, float]]],
) -> Optional[float]:
    """Largest relative elemental mismatch across the boundary (None without formulas)."""
    if formulas is None:
        return None

    def atoms(stream_ids: List[str]) -> Dict[str, float]:
        totals: Dict[str, float] = {}
        for sid in stream_ids:
            for n, formula in zip(streams[sid].molar_flows, formulas):
                for el, count in formula.items():
                    totals[el] = totals.get(el, 0.0) + n * count
        return totals

    into = atoms([s.id for s in flowsheet.feeds()])
    out = atoms([s.id for s in flowsheet.products()])
    worst = 0.0
    for el in set(into) | set(out):
        a, b = into.get(el, 0.0), out.get(el, 0.0)
        scale = max(abs(a), abs(b))
        if scale > 0:
            worst = max(worst, abs(a - b) / scale)
    return worst


def operation_residuals(
    flowsheet: "Flowsheet",
    streams: Mapping[str, StreamState],
    outputs: Mapping[str, "OperationOutput"],
) -> Dict[str, Tuple[float, float]]:
    """Per-operation (mass in - out [kg/s], energy in + duty - out [W])."""
    residuals: Dict[str, Tuple[float, float]] = {}
    for op_id in flowsheet.operations:
        inlets = [streams[sid] for sid in flowsheet.inlet_streams(op_id)]
        outlets = [streams[sid] for sid in flowsheet.outlet_streams(op_id)]
        mass = sum(s.mass_flow for s in inlets) - sum(s.mass_flow for s in outlets)
        duty = outputs[op_id].duty if op_id in outputs else 0.0
        energy = sum(s.enthalpy_flow for s in inlets) + duty - sum(s.enthalpy_flow for s in outlets)
        residuals[op_id] = (mass, energy)
    return residuals


def convergence_rate(residuals: Sequence[float], window: int = 5) -> Dict[str, object]:
    """Estimate the asymptotic reduction ratio of a residual history."""
    positive = [r for r in residuals if r > 0.0]
    tail = positive[-(window + 1):]
    if len(tail) < 2:
        return {"rate": None, "stagnating": False, "oscillating": False}

    ratios = [b / a for a, b in zip(tail, tail[1:])]
    rate = math.exp(sum(math.log(r) for r in ratios) / len(ratios))
    ups = [b > a for a, b in zip(tail, tail[1:])]
    oscillating = len(ups) >= 3 and all(u != v for u, v in zip(ups, ups[1:]))
    return {"rate": rate, "stagnating": rate > 0.95, "oscillating": oscillating}
