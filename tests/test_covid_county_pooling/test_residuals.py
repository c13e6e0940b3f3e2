"""
Tests for map records and residual statistics
"""

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box
import geopandas as gpd

from covid_county_pooling.residuals import (
    build_map_records,
    compute_residual_statistics,
    rate_per_100k,
)


@pytest.fixture
def three_counties():
    return gpd.GeoDataFrame(
        {
            'fips': [1001, 1003, 1005],
            'county': ['Autauga', 'Baldwin', 'Barbour'],
            'state': ['Alabama'] * 3,
            'cases': [50, 200, 0],
            'population': [5000, 10000, 2000],
        },
        geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1), box(2, 0, 3, 1)],
        crs="EPSG:4326",
    )


@pytest.fixture
def three_summaries():
    return pd.DataFrame({
        'fips': [1001, 1003, 1005],
        'p_median': [0.012, 0.019, 0.0],
    })


def test_rate_per_100k():
    assert rate_per_100k(0.0123) == pytest.approx(1230.0)


class TestBuildMapRecords:
    """Test residual fields on the joined records"""

    def test_expected_and_residual(self, three_counties, three_summaries):
        records = build_map_records(three_counties, three_summaries)

        np.testing.assert_allclose(records['expected_count'], [60.0, 190.0, 0.0])
        # expected - observed
        np.testing.assert_allclose(records['residual'], [10.0, -10.0, 0.0])
        np.testing.assert_allclose(records['rate_per_100k'], [1200.0, 1900.0, 0.0])

    def test_standardized_residual(self, three_counties, three_summaries):
        records = build_map_records(three_counties, three_summaries)

        expected_z = 10.0 / np.sqrt(5000 * 0.012 * 0.988)
        assert records.loc[0, 'standardized_residual'] == pytest.approx(expected_z)
        # Zero variance when p is zero
        assert np.isnan(records.loc[2, 'standardized_residual'])

    def test_percentage_error(self, three_counties, three_summaries):
        records = build_map_records(three_counties, three_summaries)

        assert records.loc[0, 'percentage_error'] == pytest.approx(20.0)
        assert records.loc[1, 'percentage_error'] == pytest.approx(-5.0)
        # Undefined with no observed cases
        assert np.isnan(records.loc[2, 'percentage_error'])

    def test_keeps_geometry(self, three_counties, three_summaries):
        records = build_map_records(three_counties, three_summaries)

        assert isinstance(records, gpd.GeoDataFrame)
        assert records.crs == three_counties.crs
        assert records.geometry.notna().all()

    def test_missing_estimates_dropped(self, three_counties, three_summaries):
        records = build_map_records(three_counties, three_summaries.iloc[:2])
        assert list(records['fips']) == [1001, 1003]


class TestResidualStatistics:
    """Test summary statistics"""

    def test_statistics(self, three_counties, three_summaries):
        stats = compute_residual_statistics(build_map_records(three_counties, three_summaries))

        assert stats.n_counties == 3
        assert stats.mean_residual == pytest.approx(0.0)
        assert stats.mean_absolute_error == pytest.approx(20.0 / 3)
        assert stats.rmse == pytest.approx(np.sqrt(200.0 / 3))
        assert stats.mean_percentage_error == pytest.approx(7.5)
        assert stats.n_outliers == 0

    def test_outliers(self, three_counties):
        summaries = pd.DataFrame({'fips': [1001, 1003, 1005], 'p_median': [0.03, 0.02, 0.001]})
        stats = compute_residual_statistics(build_map_records(three_counties, summaries))

        # 1001: expected 150 vs 50 observed
        assert stats.n_outliers >= 1
        assert 0 < stats.outlier_fraction <= 1
