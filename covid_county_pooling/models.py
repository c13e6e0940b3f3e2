"""
Data Models for County Partial-Pooling Risk Maps
County input records, posterior summaries and map-layer definitions
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, Field, field_validator, model_validator


# Column order of the county CSV
COUNTY_COLUMNS: List[str] = [
    "fips",
    "county",
    "state",
    "cases",
    "deaths",
    "cases_prev",
    "covariate",
    "population",
    "n_eff",
    "risk",
    "ascertainment_bias",
    "event_size",
]

# Nullable dtypes so that rows with gaps survive parsing and are dropped later
COUNTY_DTYPES: Dict[str, str] = {
    "fips": "Int64",
    "county": "string",
    "state": "string",
    "cases": "Int64",
    "deaths": "Int64",
    "cases_prev": "Int64",
    "covariate": "float64",
    "population": "Int64",
    "n_eff": "float64",
    "risk": "float64",
    "ascertainment_bias": "float64",
    "event_size": "float64",
}

REQUIRED_COLUMNS: List[str] = ["fips", "cases", "population"]


class CountyRecord(BaseModel):
    """One county row of the case/death/population table"""

    fips: int = Field(..., gt=0, description="County FIPS identifier")
    county: str = Field(..., description="County name")
    state: str = Field(..., description="State name")

    cases: int = Field(..., ge=0, description="Cumulative case count")
    deaths: Optional[int] = Field(None, ge=0, description="Cumulative death count")
    cases_prev: Optional[int] = Field(None, ge=0, description="Case count for the prior period")

    covariate: Optional[float] = Field(None, description="Risk covariate")
    population: int = Field(..., gt=0, description="Resident population")
    n_eff: Optional[float] = Field(None, description="Effective population parameter")
    risk: Optional[float] = Field(None, description="Risk score")
    ascertainment_bias: Optional[float] = Field(None, gt=0, description="Ascertainment bias factor")
    event_size: Optional[float] = Field(None, description="Event size parameter")

    @field_validator("county", "state")
    @classmethod
    def strip_names(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode="after")
    def check_cases_within_population(self):
        if self.cases > self.population:
            raise ValueError("cases cannot exceed population")
        return self

    @property
    def fips_code(self) -> str:
        """Zero-padded 5-digit FIPS string"""
        return f"{self.fips:05d}"


@dataclass
class PosteriorSummary:
    """Posterior summary of the infection probability for one county"""
    fips: int
    p_median: float
    p_mean: float
    p_sd: float
    p_ci_lower: float
    p_ci_upper: float

    @staticmethod
    def to_frame(summaries: List["PosteriorSummary"]) -> pd.DataFrame:
        return pd.DataFrame([asdict(s) for s in summaries])


@dataclass
class FitDiagnostics:
    """MCMC convergence diagnostics"""
    rhat_max: float
    ess_bulk_min: float
    n_divergences: int
    bfmi_min: Optional[float] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return not self.warnings

    def to_dict(self) -> Dict:
        result = asdict(self)
        result["converged"] = self.converged
        return result


@dataclass
class ResidualStatistics:
    """Summary of expected-minus-observed residuals across counties"""
    n_counties: int
    mean_residual: float
    mean_absolute_error: float
    rmse: float
    mean_percentage_error: float
    n_outliers: int
    outlier_fraction: float

    def to_dict(self) -> Dict:
        return asdict(self)


class MapLayer(Enum):
    """Choropleth layers rendered on the county map"""
    RATE = "rate"
    RESIDUALS = "residuals"

    @property
    def title(self) -> str:
        return {
            MapLayer.RATE: "Estimated infection rate (posterior median)",
            MapLayer.RESIDUALS: "Residuals (expected - observed)",
        }[self]

    @property
    def diverging(self) -> bool:
        return self is MapLayer.RESIDUALS

    def column(self, residual_column: str = "standardized_residual") -> str:
        if self is MapLayer.RATE:
            return "p_median"
        return residual_column
