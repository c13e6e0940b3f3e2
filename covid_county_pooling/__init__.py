"""
COVID-19 County Partial-Pooling Risk Maps.

Estimates a per-county probability of infection from case counts and
population with a hierarchical binomial model, then maps the estimates:

1. Fetch county counts and boundary polygons → join on FIPS
2. Hierarchical Beta-Binomial model (PyMC) → posterior median per county
3. Expected counts and residuals → rate and residual choropleths
"""

__version__ = "1.0.0"
__author__ = "GenZ COVID-19 Response Team"

from .config import CountyModelConfig
from .data_ingestion import CountyDataLoader, join_boundaries
from .hierarchical_model import HierarchicalBinomialModel
from .residuals import build_map_records, compute_residual_statistics
from .visualization import ChoroplethMapper
from .pipeline import CountyPoolingPipeline

__all__ = [
    'CountyModelConfig',
    'CountyDataLoader',
    'join_boundaries',
    'HierarchicalBinomialModel',
    'build_map_records',
    'compute_residual_statistics',
    'ChoroplethMapper',
    'CountyPoolingPipeline',
]
