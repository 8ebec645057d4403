"""
Analysis settings.

Defaults can be overridden with ``FINDSPOT_*`` environment variables or a
``.env`` file, e.g. ``FINDSPOT_NSIM=99`` or
``FINDSPOT_MODEL_FORMULAS='["~ 1", "~ elevation"]'``.
"""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AnalysisSettings(BaseSettings):
    # Monte Carlo envelopes
    nsim: int = Field(39, ge=1)
    nrank: int = Field(1, ge=1)
    global_envelope: bool = False
    seed: Optional[int] = None

    # Exploratory estimates
    rhohat_points: int = Field(128, ge=2)
    confidence: float = Field(0.95, gt=0, lt=1)

    # Pair correlation
    pcf_points: int = Field(128, ge=2)
    rmax: Optional[float] = Field(None, gt=0)

    # Covariates and model fitting
    slope_length: Optional[float] = Field(None, gt=0)
    dummy_stride: int = Field(1, ge=1)
    model_formulas: Optional[List[str]] = None
    refit_envelope: bool = False

    model_config = SettingsConfigDict(env_prefix="FINDSPOT_", env_file=".env", extra="ignore")

    @field_validator("model_formulas")
    @classmethod
    def _non_empty(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and len(v) == 0:
            raise ValueError("model_formulas must not be empty")
        return v
