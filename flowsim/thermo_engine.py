"""
Equation-of-state property package using Caleb Bell's `thermo` library.

Provides:
  - Peng-Robinson and SRK cubic equations of state with IPDB kij values
  - an ideal-liquid (Raoult) activity model with a PR vapour phase
  - PT, PH, PS, T-VF flashes and bubble/dew temperatures

Enthalpies returned by this package include the ideal-gas formation
enthalpy of each component, so reactor energy balances close without a
separate heat-of-reaction term.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional

from chemicals import identifiers
from loguru import logger
from thermo import (
    CEOSGas,
    CEOSLiquid,
    ChemicalConstantsPackage,
    FlashPureVLS,
    FlashVL,
    GibbsExcessLiquid,
    PRMIX,
    SRKMIX,
)
from thermo.interaction_parameters import IPDB

from .cancellation import CancellationToken
from .errors import DidNotConverge, PropertyError
from .properties import FlashKind, FlashSpec, PhaseState, PropertyPackage, normalise, phase_label


class ThermoPropertyPackage(PropertyPackage):
    """
    Wraps the ``thermo`` library for a given set of components and property
    method.
    """

    SUPPORTED_PACKAGES = {"Peng-Robinson", "SRK", "Raoult"}

    _PACKAGE_ALIASES: Dict[str, str] = {
        "peng-robinson": "Peng-Robinson",
        "peng robinson": "Peng-Robinson",
        "pr": "Peng-Robinson",
        "srk": "SRK",
        "soave-redlich-kwong": "SRK",
        "raoult": "Raoult",
        "ideal": "Raoult",
        "ideal-liquid": "Raoult",
    }

    @classmethod
    def _normalize_package_name(cls, name: str) -> str:
        if name in cls.SUPPORTED_PACKAGES:
            return name
        alias = cls._PACKAGE_ALIASES.get(name.lower().strip())
        if alias is None:
            raise ValueError(
                f"Unsupported property package '{name}'. Supported: {sorted(cls.SUPPORTED_PACKAGES)}"
            )
        return alias

    def __init__(
        self,
        component_names: List[str],
        property_package: str = "Peng-Robinson",
    ) -> None:
        if not component_names:
            raise ValueError("At least one component is required")

        property_package = self._normalize_package_name(property_package)
        self.component_names = list(component_names)
        self.property_package_name = property_package

        logger.info(
            "Initialising ThermoPropertyPackage: components={}, package={}",
            component_names,
            property_package,
        )

        self.cas_numbers = self._resolve_cas(self.component_names)
        self.constants, self.correlations = ChemicalConstantsPackage.from_IDs(self.cas_numbers)
        self._hf = self._formation_enthalpies()
        self._build_flasher(property_package)

    # ------------------------------------------------------------------
    # Initialisation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_cas(names: List[str]) -> List[str]:
        """Resolve chemical names to CAS registry numbers."""
        cas_list: List[str] = []
        for name in names:
            try:
                cas_list.append(identifiers.CAS_from_any(name.replace("_", " ").strip()))
            except Exception as exc:
                raise ValueError(
                    f"Could not resolve compound '{name}'. "
                    "Use IUPAC or common names (e.g. 'water', 'methane', 'ethanol')."
                ) from exc
        return cas_list

    def _formation_enthalpies(self) -> List[float]:
        hfs = []
        for name, hf in zip(self.component_names, self.constants.Hfgs):
            if hf is None:
                logger.warning("No formation enthalpy for {}; using 0 J/mol", name)
                hf = 0.0
            hfs.append(float(hf))
        return hfs

    def _build_flasher(self, pkg: str) -> None:
        """Instantiate the EOS / activity-coefficient model and flash object."""
        eos_class = SRKMIX if pkg == "SRK" else PRMIX
        eos_kwargs = dict(
            Tcs=self.constants.Tcs,
            Pcs=self.constants.Pcs,
            omegas=self.constants.omegas,
            kijs=self._get_kijs(pkg),
        )
        gas = CEOSGas(eos_class, eos_kwargs=eos_kwargs, HeatCapacityGases=self.correlations.HeatCapacityGases)
        if pkg == "Raoult":
            liquid = GibbsExcessLiquid(
                VaporPressures=self.correlations.VaporPressures,
                HeatCapacityGases=self.correlations.HeatCapacityGases,
                VolumeLiquids=self.correlations.VolumeLiquids,
                use_Poynting=True,
                use_phis_sat=False,
            )
        else:
            liquid = CEOSLiquid(eos_class, eos_kwargs=eos_kwargs, HeatCapacityGases=self.correlations.HeatCapacityGases)

        if self.n == 1:
            self.flasher = FlashPureVLS(
                constants=self.constants,
                correlations=self.correlations,
                gas=gas,
                liquids=[liquid],
                solids=[],
            )
        else:
            self.flasher = FlashVL(
                constants=self.constants,
                correlations=self.correlations,
                gas=gas,
                liquid=liquid,
            )

    def _get_kijs(self, pkg: str) -> List[List[float]]:
        """Return binary interaction parameters (zeros where IPDB has no data)."""
        n = self.n
        kijs = [[0.0] * n for _ in range(n)]
        if pkg not in ("Peng-Robinson", "SRK"):
            return kijs
        key = "PR kij" if pkg == "Peng-Robinson" else "SRK kij"
        for i in range(n):
            for j in range(i + 1, n):
                try:
                    kij = IPDB.get_ip_specific(self.cas_numbers[i], self.cas_numbers[j], key)
                except Exception:
                    continue  # No data available; keep 0.0
                kijs[i][j] = kijs[j][i] = kij
        return kijs

    # ------------------------------------------------------------------
    # PropertyPackage interface
    # ------------------------------------------------------------------

    @property
    def molecular_weights(self) -> List[float]:
        return list(self.constants.MWs)

    def formulas(self) -> Optional[List[Dict[str, float]]]:
        atomss = getattr(self.constants, "atomss", None)
        if not atomss or any(not atoms for atoms in atomss):
            return None
        return [{el: float(cnt) for el, cnt in atoms.items()} for atoms in atomss]

    def flash(self, spec: FlashSpec, cancel: Optional[CancellationToken] = None) -> PhaseState:
        try:
            zs = normalise(spec.zs)
        except ValueError as exc:
            raise PropertyError(str(exc)) from exc
        if cancel is not None:
            cancel.raise_if_cancelled()

        hf_mix = sum(z * hf for z, hf in zip(zs, self._hf))
        if spec.kind == FlashKind.PT:
            kwargs = dict(T=spec.T, P=spec.P)
        elif spec.kind == FlashKind.PH:
            kwargs = dict(P=spec.P, H=spec.H - hf_mix)
        elif spec.kind == FlashKind.PS:
            kwargs = dict(P=spec.P, S=spec.S)
        elif spec.kind == FlashKind.TVF:
            kwargs = dict(T=spec.T, VF=spec.VF)
        elif spec.kind in (FlashKind.BUBBLE_T, FlashKind.DEW_T):
            kwargs = dict(P=spec.P, VF=spec.VF)
        else:
            raise PropertyError(f"Unsupported flash kind {spec.kind}")

        try:
            result = self.flasher.flash(zs=zs, **kwargs)
        except Exception as exc:
            raise DidNotConverge(f"{spec.kind.value} flash failed: {str(exc)[:200]}") from exc
        if cancel is not None:
            cancel.raise_if_cancelled()
        return self._build_phase_state(result, zs, hf_mix)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_phase_state(self, flash_result, zs: List[float], hf_mix: float) -> PhaseState:
        """Convert a thermo flash result into a PhaseState."""
        vf = flash_result.VF if flash_result.VF is not None else 0.0

        ys = None
        xs = None
        if getattr(flash_result, "gas", None) is not None:
            ys = list(flash_result.gas.zs)
        if getattr(flash_result, "liquid0", None) is not None:
            xs = list(flash_result.liquid0.zs)

        # These are methods in thermo, not attributes
        enthalpy = self._safe_call(flash_result, "H", 0.0)
        entropy = self._safe_call(flash_result, "S", 0.0)
        rho = self._safe_call(flash_result, "rho_mass", None)

        return PhaseState(
            temperature=flash_result.T,
            pressure=flash_result.P,
            phase=phase_label(vf),
            vapor_fraction=vf,
            zs=list(zs),
            ys=ys,
            xs=xs,
            enthalpy=enthalpy + hf_mix,
            entropy=entropy,
            density=rho,
            molecular_weight=self.mixture_mw(zs),
            extra={"Cp": self._safe_call(flash_result, "Cp", 0.0)},
        )

    @staticmethod
    def _safe_call(obj, method_name: str, default):
        """Call a property method on the flash result, returning default on error."""
        try:
            method = getattr(obj, method_name, None)
            if method is None:
                return default
            val = method() if callable(method) else method
        except Exception:
            return default
        if val is None or (isinstance(val, float) and math.isnan(val)):
            return default
        return val
