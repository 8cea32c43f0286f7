"""
Ideal-solution property package.

Constant heat capacities, a constant heat of vaporisation and Antoine vapour
pressures combined through Raoult's law. Cheap and deterministic, which
makes it the default package for tests and for flowsheets that only need
consistent mass/energy bookkeeping.

Reference state: pure liquid at 298.15 K and 101325 Pa with enthalpy equal
to the formation enthalpy ``hf``. Components without Antoine coefficients
are non-volatile and always stay in the liquid phase.
"""

from __future__ import annotations

import math
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from scipy.optimize import brentq

from .cancellation import CancellationToken
from .errors import DidNotConverge, PropertyError
from .properties import FlashKind, FlashSpec, PhaseState, PropertyPackage, normalise, phase_label
from .schemas import IdealComponentSpec

R = 8.314462618  # J/(mol·K)
T_REF = 298.15  # K
P_REF = 101325.0  # Pa

T_MIN = 1.0  # K
T_MAX = 5000.0  # K


class IdealPropertyPackage(PropertyPackage):
    """Raoult's-law VLE with constant-Cp enthalpies."""

    def __init__(self, components: Sequence[IdealComponentSpec]) -> None:
        if not components:
            raise ValueError("At least one component is required")
        names = [c.name for c in components]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate component names: {names}")

        self.components = list(components)
        self.component_names = names
        self._mws = [c.mw for c in components]
        self._cpl = [c.cp_liquid for c in components]
        self._cpv = [c.cp_vapor if c.cp_vapor is not None else c.cp_liquid for c in components]
        self._hvap = [c.hvap for c in components]
        self._hf = [c.hf for c in components]
        self._rho = [c.liquid_density for c in components]
        self._antoine = [tuple(c.antoine) if c.antoine is not None else None for c in components]

        logger.debug("IdealPropertyPackage initialised: components={}", names)

    @property
    def molecular_weights(self) -> List[float]:
        return list(self._mws)

    def formulas(self) -> Optional[List[Dict[str, float]]]:
        if all(c.formula is not None for c in self.components):
            return [dict(c.formula) for c in self.components]
        return None

    # ------------------------------------------------------------------
    # Pure-component correlations
    # ------------------------------------------------------------------

    def psat(self, i: int, T: float) -> float:
        """Vapour pressure of component ``i`` in Pa (0 when non-volatile)."""
        coeffs = self._antoine[i]
        if coeffs is None:
            return 0.0
        A, B, C = coeffs
        if T + C <= 0.0:
            return 0.0
        return math.exp(A - B / (T + C))

    def _h_liquid(self, i: int, T: float) -> float:
        return self._hf[i] + self._cpl[i] * (T - T_REF)

    def _h_vapor(self, i: int, T: float) -> float:
        return self._hf[i] + self._hvap[i] + self._cpv[i] * (T - T_REF)

    def _s_liquid(self, i: int, T: float) -> float:
        return self._cpl[i] * math.log(T / T_REF)

    def _s_vapor(self, i: int, T: float, P: float) -> float:
        return self._cpv[i] * math.log(T / T_REF) + self._hvap[i] / T_REF - R * math.log(P / P_REF)

    # ------------------------------------------------------------------
    # Flash dispatch
    # ------------------------------------------------------------------

    def flash(self, spec: FlashSpec, cancel: Optional[CancellationToken] = None) -> PhaseState:
        try:
            zs = normalise(spec.zs)
        except ValueError as exc:
            raise PropertyError(str(exc)) from exc
        if len(zs) != self.n:
            raise PropertyError(f"Composition has {len(zs)} entries, expected {self.n}")

        if spec.kind == FlashKind.PT:
            return self._pt(spec.T, spec.P, zs)
        if spec.kind == FlashKind.PH:
            return self._p_prop(spec.P, spec.H, zs, spec.T_guess, "enthalpy", cancel)
        if spec.kind == FlashKind.PS:
            return self._p_prop(spec.P, spec.S, zs, spec.T_guess, "entropy", cancel)
        if spec.kind == FlashKind.TVF:
            return self._tvf(spec.T, spec.VF, zs, cancel)
        if spec.kind == FlashKind.BUBBLE_T:
            return self._saturation_T(spec.P, zs, spec.T_guess, dew=False, cancel=cancel)
        if spec.kind == FlashKind.DEW_T:
            return self._saturation_T(spec.P, zs, spec.T_guess, dew=True, cancel=cancel)
        raise PropertyError(f"Unsupported flash kind {spec.kind}")

    # ------------------------------------------------------------------
    # PT flash (Rachford-Rice)
    # ------------------------------------------------------------------

    def _pt(self, T: float, P: float, zs: List[float]) -> PhaseState:
        if T is None or P is None or T <= 0 or P <= 0:
            raise PropertyError(f"PT flash needs positive T and P, got T={T}, P={P}")
        Ks = [self.psat(i, T) / P for i in range(self.n)]
        beta = self._rachford_rice(zs, Ks)
        xs, ys = self._split(zs, Ks, beta)
        return self._state(T, P, zs, beta, xs, ys)

    @staticmethod
    def _rachford_rice(zs: Sequence[float], Ks: Sequence[float]) -> float:
        def g(beta: float) -> float:
            return sum(z * (K - 1.0) / (1.0 + beta * (K - 1.0)) for z, K in zip(zs, Ks))

        if g(0.0) <= 0.0:
            return 0.0
        has_heavy = any(z > 0.0 and K == 0.0 for z, K in zip(zs, Ks))
        hi = 1.0 - 1e-14 if has_heavy else 1.0
        if g(hi) >= 0.0:
            return hi if has_heavy else 1.0
        return brentq(g, 0.0, hi, xtol=1e-14, rtol=1e-12)

    @staticmethod
    def _split(zs: Sequence[float], Ks: Sequence[float], beta: float) -> Tuple[List[float], List[float]]:
        xs = [z / (1.0 + beta * (K - 1.0)) for z, K in zip(zs, Ks)]
        ys = [K * x for K, x in zip(Ks, xs)]
        sx, sy = sum(xs), sum(ys)
        xs = [x / sx for x in xs] if sx > 0 else list(zs)
        ys = [y / sy for y in ys] if sy > 0 else list(zs)
        return xs, ys

    def _state(
        self,
        T: float,
        P: float,
        zs: List[float],
        beta: float,
        xs: List[float],
        ys: List[float],
    ) -> PhaseState:
        n = self.n
        h_l = sum(xs[i] * self._h_liquid(i, T) for i in range(n))
        h_v = sum(ys[i] * self._h_vapor(i, T) for i in range(n))
        s_l = sum(xs[i] * self._s_liquid(i, T) for i in range(n)) - R * _mixing(xs)
        s_v = sum(ys[i] * self._s_vapor(i, T, P) for i in range(n)) - R * _mixing(ys)

        mass = sum(z * mw for z, mw in zip(zs, self._mws)) / 1000.0  # kg per mol mixture
        v_liq = (1.0 - beta) * sum(xs[i] * self._mws[i] / 1000.0 / self._rho[i] for i in range(n))
        v_vap = beta * R * T / P
        volume = v_liq + v_vap

        return PhaseState(
            temperature=T,
            pressure=P,
            phase=phase_label(beta),
            vapor_fraction=beta,
            zs=list(zs),
            ys=ys if beta > 0.0 else None,
            xs=xs if beta < 1.0 else None,
            enthalpy=(1.0 - beta) * h_l + beta * h_v,
            entropy=(1.0 - beta) * s_l + beta * s_v,
            density=mass / volume if volume > 0 else None,
            molecular_weight=mass * 1000.0,
        )

    # ------------------------------------------------------------------
    # PH / PS flash
    # ------------------------------------------------------------------

    def _p_prop(
        self,
        P: float,
        target: float,
        zs: List[float],
        T_guess: Optional[float],
        prop: str,
        cancel: Optional[CancellationToken],
    ) -> PhaseState:
        if P is None or target is None or P <= 0:
            raise PropertyError(f"P{prop[0].upper()} flash needs P and {prop}")

        def residual(T: float) -> float:
            if cancel is not None:
                cancel.raise_if_cancelled()
            return getattr(self._pt(T, P, zs), prop) - target

        T_root = _bracketed_root(residual, T_guess or T_REF, f"P-{prop} flash")
        state = self._pt(T_root, P, zs)
        tol = 1e-7 * max(1.0, abs(target))
        if abs(getattr(state, prop) - target) <= tol:
            return state

        # Single volatile species: the property jumps at the saturation
        # temperature, resolve the split by the lever rule.
        if prop == "enthalpy":
            low = sum(z * self._h_liquid(i, T_root) for i, z in enumerate(zs))
            high = sum(z * self._h_vapor(i, T_root) for i, z in enumerate(zs))
        else:
            low = sum(z * self._s_liquid(i, T_root) for i, z in enumerate(zs)) - R * _mixing(zs)
            high = sum(z * self._s_vapor(i, T_root, P) for i, z in enumerate(zs)) - R * _mixing(zs)
        if high <= low:
            raise DidNotConverge(f"P-{prop} flash did not converge at P={P:.1f} Pa")
        beta = min(max((target - low) / (high - low), 0.0), 1.0)
        state = self._state(T_root, P, zs, beta, list(zs), list(zs))
        if abs(getattr(state, prop) - target) > tol:
            raise DidNotConverge(f"P-{prop} flash did not converge at P={P:.1f} Pa")
        return state

    # ------------------------------------------------------------------
    # T-VF flash and saturation temperatures
    # ------------------------------------------------------------------

    def _tvf(
        self, T: float, VF: float, zs: List[float], cancel: Optional[CancellationToken]
    ) -> PhaseState:
        if T is None or VF is None or not 0.0 <= VF <= 1.0:
            raise PropertyError(f"T-VF flash needs T and 0 <= VF <= 1, got T={T}, VF={VF}")
        psats = [self.psat(i, T) for i in range(self.n)]
        if not any(z > 0 and p > 0 for z, p in zip(zs, psats)):
            raise DidNotConverge("T-VF flash: mixture has no volatile component")

        p_bubble = sum(z * p for z, p in zip(zs, psats))
        heavy = any(z > 0 and p == 0.0 for z, p in zip(zs, psats))
        if VF == 0.0:
            P = p_bubble
        elif heavy:
            if VF == 1.0:
                raise DidNotConverge("T-VF flash: dew point undefined with non-volatile components")
            P = self._solve_p(zs, psats, VF, p_bubble * 1e-12, p_bubble, cancel)
        else:
            p_dew = 1.0 / sum(z / p for z, p in zip(zs, psats) if z > 0)
            P = p_dew if VF == 1.0 else self._solve_p(zs, psats, VF, p_dew, p_bubble, cancel)

        Ks = [p / P for p in psats]
        xs, ys = self._split(zs, Ks, VF)
        return self._state(T, P, zs, VF, xs, ys)

    @staticmethod
    def _solve_p(
        zs: Sequence[float],
        psats: Sequence[float],
        VF: float,
        lo: float,
        hi: float,
        cancel: Optional[CancellationToken],
    ) -> float:
        def g(P: float) -> float:
            if cancel is not None:
                cancel.raise_if_cancelled()
            return sum(
                z * (p / P - 1.0) / (1.0 + VF * (p / P - 1.0)) for z, p in zip(zs, psats)
            )

        if hi - lo <= 1e-12 * hi:
            return hi
        return brentq(g, lo, hi, xtol=1e-10, rtol=1e-12)

    def _saturation_T(
        self,
        P: float,
        zs: List[float],
        T_guess: Optional[float],
        dew: bool,
        cancel: Optional[CancellationToken],
    ) -> PhaseState:
        if P is None or P <= 0:
            raise PropertyError("Saturation temperature needs a positive pressure")
        volatile = [self._antoine[i] is not None for i in range(self.n)]
        if dew and any(z > 0 and not v for z, v in zip(zs, volatile)):
            raise DidNotConverge("Dew point undefined with non-volatile components")
        if not any(z > 0 and v for z, v in zip(zs, volatile)):
            raise DidNotConverge("Bubble point undefined: no volatile component")

        def residual(T: float) -> float:
            if cancel is not None:
                cancel.raise_if_cancelled()
            psats = [self.psat(i, T) for i in range(self.n)]
            if dew:
                if any(z > 0 and p <= 0.0 for z, p in zip(zs, psats)):
                    return -1.0
                return 1.0 - sum(z * P / p for z, p in zip(zs, psats) if z > 0)
            return sum(z * p for z, p in zip(zs, psats)) / P - 1.0

        T = _bracketed_root(residual, T_guess or T_REF, "dew point" if dew else "bubble point")
        beta = 1.0 if dew else 0.0
        Ks = [self.psat(i, T) / P for i in range(self.n)]
        xs, ys = self._split(zs, Ks, beta)
        return self._state(T, P, zs, beta, xs, ys)


def _mixing(fractions: Sequence[float]) -> float:
    return sum(f * math.log(f) for f in fractions if f > 0.0)


def _bracketed_root(f: Callable[[float], float], T0: float, what: str) -> float:
    """Find a root of a temperature-increasing residual, expanding from T0."""
    lo = hi = min(max(T0, T_MIN), T_MAX)
    f_lo = f_hi = f(lo)
    if f_lo == 0.0:
        return lo
    step = 5.0
    for _ in range(80):
        if f_lo > 0.0:
            lo = max(T_MIN, lo - step)
            f_lo = f(lo)
        if f_hi < 0.0:
            hi = min(T_MAX, hi + step)
            f_hi = f(hi)
        if f_lo <= 0.0 <= f_hi:
            break
        if lo <= T_MIN and hi >= T_MAX:
            break
        step *= 1.5
    else:
        raise DidNotConverge(f"{what}: could not bracket a temperature")
    if not f_lo <= 0.0 <= f_hi:
        raise DidNotConverge(f"{what}: no solution between {T_MIN} K and {T_MAX} K")
    if f_lo == 0.0:
        return lo
    if f_hi == 0.0:
        return hi
    return brentq(f, lo, hi, xtol=1e-10, rtol=1e-13)
