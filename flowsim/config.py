"""
Solver configuration.

Defaults follow conventional sequential-modular practice (Wegstein with a
bounded acceleration factor, 1e-4 relative tolerance). Every value can be
overridden from the environment (``FLOWSIM_TOLERANCE=1e-6``), from the
``solver`` block of a flowsheet definition, or from CLI flags, in
increasing order of precedence.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SolverSettings(BaseSettings):
    """Tolerances, accelerator tuning and execution options for one solve."""

    model_config = SettingsConfigDict(env_prefix="FLOWSIM_", extra="forbid")

    tolerance: float = Field(default=1e-4, gt=0, description="Relative infinity-norm tolerance")
    max_iterations: int = Field(default=100, ge=1)
    # Consecutive iterations below tolerance required to declare convergence
    converged_iterations: int = Field(default=2, ge=1)

    method: Literal["direct", "wegstein", "broyden"] = "wegstein"
    wegstein_q_min: float = -5.0
    wegstein_q_max: float = 0.0
    # Switch from Wegstein to Broyden after this many non-improving iterations
    stall_iterations: int = Field(default=3, ge=1)
    stall_ratio: float = Field(default=0.99, gt=0)

    # Divergence: residual grows by more than growth_factor for this many iterations
    divergence_window: int = Field(default=10, ge=1)
    growth_factor: float = Field(default=1.0, gt=0)

    # Floors applied when a guessed state is rebuilt
    min_temperature: float = Field(default=1.0, gt=0)  # K
    min_pressure: float = Field(default=1.0, gt=0)  # Pa

    max_workers: int = Field(default=1, ge=1)
    seed: int = 0
    # Relative perturbation of T_guess when a flash is retried
    retry_perturbation: float = Field(default=0.05, ge=0)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_band(self) -> "SolverSettings":
        if self.wegstein_q_min > self.wegstein_q_max:
            raise ValueError("wegstein_q_min must not exceed wegstein_q_max")
        return self

    def merged(self, overrides: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "SolverSettings":
        """Return a copy with ``overrides`` and non-None keyword values applied."""
        data = self.model_dump()
        data.update(overrides or {})
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return SolverSettings.model_validate(data)
