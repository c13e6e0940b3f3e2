"""
Synthetic county data for demos and tests.

Counts are simulated from the same generative model that is fitted, so a
correct fit should recover the per-county probabilities.
"""

from typing import Iterable, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import box

from .models import COUNTY_COLUMNS

STATES = ["Alabama", "Georgia", "Ohio", "Texas", "Washington"]


def simulate_county_data(
    n_counties: int = 60,
    phi: float = 0.05,
    kappa: float = 40.0,
    seed: Optional[int] = 42
) -> pd.DataFrame:
    """
    Simulate one row per county with all twelve columns.

    Args:
        n_counties: Number of counties
        phi: Population mean probability of infection
        kappa: Beta concentration
        seed: Random seed

    Returns:
        DataFrame in the county table schema
    """
    rng = np.random.default_rng(seed)

    population = np.round(rng.lognormal(mean=10.0, sigma=1.2, size=n_counties)).astype(np.int64)
    population = np.maximum(population, 500)

    theta = rng.beta(phi * kappa, (1.0 - phi) * kappa, size=n_counties)
    cases = rng.binomial(population, theta)
    cases_prev = rng.binomial(cases, 0.8)
    deaths = rng.binomial(cases, 0.015)

    state_fips = rng.choice([1, 13, 39, 48, 53], size=n_counties)
    state_lookup = dict(zip([1, 13, 39, 48, 53], STATES))
    fips = state_fips * 1000 + np.arange(1, 2 * n_counties, 2)

    ascertainment_bias = rng.uniform(3.0, 5.0, size=n_counties)
    event_size = np.full(n_counties, 25.0)
    n_eff = population * theta * ascertainment_bias
    # Probability that at least one of event_size attendees is infected
    risk = 1.0 - np.power(1.0 - np.clip(theta * ascertainment_bias, 0, 1), event_size)

    df = pd.DataFrame({
        'fips': fips,
        'county': [f"County {i + 1}" for i in range(n_counties)],
        'state': [state_lookup[s] for s in state_fips],
        'cases': cases,
        'deaths': deaths,
        'cases_prev': cases_prev,
        'covariate': rng.normal(0.0, 1.0, size=n_counties),
        'population': population,
        'n_eff': n_eff,
        'risk': risk,
        'ascertainment_bias': ascertainment_bias,
        'event_size': event_size,
    })

    return df[COUNTY_COLUMNS]


def make_grid_boundaries(fips: Iterable[int], cell_degrees: float = 1.0) -> gpd.GeoDataFrame:
    """
    Square lon/lat polygons laid out on a grid over the continental US.

    Args:
        fips: County identifiers, one polygon each
        cell_degrees: Width of each square

    Returns:
        GeoDataFrame with fips, fips_code and geometry
    """
    fips = [int(f) for f in fips]
    n_cols = max(1, int(np.ceil(np.sqrt(len(fips)))))
    west, south = -118.0, 30.0

    geometries = []
    for i in range(len(fips)):
        row, col = divmod(i, n_cols)
        x0 = west + col * cell_degrees
        y0 = south + row * cell_degrees
        geometries.append(box(x0, y0, x0 + cell_degrees, y0 + cell_degrees))

    return gpd.GeoDataFrame(
        {'fips': fips, 'fips_code': [f"{f:05d}" for f in fips]},
        geometry=geometries,
        crs="EPSG:4326"
    )


def boundaries_to_geojson(boundaries: gpd.GeoDataFrame) -> str:
    """Serialise boundaries with the FIPS code as the feature id"""
    return boundaries.set_index('fips_code')[['geometry']].to_json()
