"""
Pytest configuration and fixtures for county partial-pooling tests
"""

import json
import tempfile
from pathlib import Path

import arviz as az
import numpy as np
import pandas as pd
import pytest

from covid_county_pooling.data_ingestion import join_boundaries
from covid_county_pooling.synthetic import (
    boundaries_to_geojson,
    make_grid_boundaries,
    simulate_county_data,
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def county_data():
    """Twenty simulated counties in the county table schema."""
    return simulate_county_data(n_counties=20, seed=7)


@pytest.fixture
def boundaries(county_data):
    """One square polygon per simulated county."""
    return make_grid_boundaries(county_data['fips'])


@pytest.fixture
def joined(county_data, boundaries):
    """County records joined to their polygons."""
    return join_boundaries(county_data, boundaries)


@pytest.fixture
def county_csv(temp_dir, county_data):
    """County table written to disk."""
    path = temp_dir / "counties.csv"
    county_data.to_csv(path, index=False)
    return path


@pytest.fixture
def geojson_path(temp_dir, boundaries):
    """Boundary GeoJSON written to disk with FIPS feature ids."""
    path = temp_dir / "counties.geojson"
    path.write_text(boundaries_to_geojson(boundaries))
    return path


@pytest.fixture
def small_counties():
    """Three counties with hand-picked counts."""
    return pd.DataFrame({
        'fips': [1003, 1001, 1005],
        'county': ['Baldwin', 'Autauga', 'Barbour'],
        'state': ['Alabama', 'Alabama', 'Alabama'],
        'cases': [200, 50, 0],
        'population': [10000, 5000, 2000],
    })


@pytest.fixture
def fake_trace():
    """
    InferenceData shaped like a fitted model over small_counties.

    theta draws for county i are centred on 0.01 * (i + 1) so the medians
    are known in advance.
    """
    rng = np.random.default_rng(0)
    n_chains, n_draws = 2, 200
    county_ids = np.array([1001, 1003, 1005])
    centres = np.array([0.01, 0.02, 0.03])

    theta = centres + rng.normal(0.0, 0.001, size=(n_chains, n_draws, len(county_ids)))

    return az.from_dict(
        posterior={
            'phi': rng.uniform(0.015, 0.025, size=(n_chains, n_draws)),
            'kappa': rng.uniform(50.0, 150.0, size=(n_chains, n_draws)),
            'theta': theta,
        },
        sample_stats={
            'diverging': np.zeros((n_chains, n_draws), dtype=bool),
        },
        coords={'county': county_ids},
        dims={'theta': ['county']},
    )


@pytest.fixture
def geojson_features():
    """Minimal FeatureCollection using both id styles."""
    square = {
        "type": "Polygon",
        "coordinates": [[[-88, 32], [-87, 32], [-87, 33], [-88, 33], [-88, 32]]],
    }
    return {
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "id": "01001", "properties": {"NAME": "Autauga"}, "geometry": square},
            {"type": "Feature", "properties": {"STATE": "01", "COUNTY": "003"}, "geometry": square},
        ],
    }


@pytest.fixture
def geojson_text(geojson_features):
    return json.dumps(geojson_features)
